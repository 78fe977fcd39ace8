from __future__ import annotations

import os

from fastapi import APIRouter, Depends

from ...transforms.source_transform import available_passes
from ..dependencies import Services, get_services

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthcheck(services: Services = Depends(get_services)):
    return {
        "status": "ok",
        "service": "qastudio-pipeline",
        "version": os.getenv("APP_VERSION", "dev"),
        "bundleRoot": str(services.settings.bundle_root),
        "passes": available_passes(),
    }
