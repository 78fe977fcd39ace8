from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..dependencies import Services, get_services, http_error

router = APIRouter(prefix="/locators", tags=["locators"])


class LocatorStatusRequest(BaseModel):
    strategyType: str
    locator: str
    state: str = Field(..., description="One of healthy, warning, failing.")
    note: Optional[str] = None
    lastTest: Optional[str] = None


class LocatorUpdateRequest(BaseModel):
    strategyType: str
    locator: str
    newLocator: str
    newStrategyType: Optional[str] = None
    tests: Optional[List[str]] = Field(None, description="Limit the rewrite to these bundles; defaults to every user.")


@router.get("")
async def locator_index(services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        entries = services.locators.build_index()
    except Exception as exc:
        raise http_error(exc) from exc
    return {"locators": [entry.to_dict() for entry in entries]}


@router.put("/status")
async def set_locator_status(req: LocatorStatusRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        record = services.locators.set_status(req.strategyType, req.locator, req.state, req.note, req.lastTest)
    except Exception as exc:
        raise http_error(exc) from exc
    return record.to_dict()


@router.post("/update")
async def update_locator(req: LocatorUpdateRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        return services.locators.update_locator(
            req.strategyType, req.locator, req.newLocator, req.tests, req.newStrategyType
        )
    except Exception as exc:
        raise http_error(exc) from exc
