from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ...transforms import source_transform
from ...transforms.navigation_cleanup import NavigationCleanup
from ...transforms.parameter_detector import detect
from ..dependencies import Services, get_services

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


class SourcePayload(BaseModel):
    source: str


class DetectPayload(BaseModel):
    source: str
    clean: bool = Field(True, description="Run navigation cleanup before detection.")


class TransformPayload(BaseModel):
    passName: str
    source: str
    options: Dict[str, Any] = Field(default_factory=dict)


class TransformResponse(BaseModel):
    source: str
    changedSpans: List[Dict[str, int]]


def _cleanup_pass(services: Services) -> NavigationCleanup:
    return NavigationCleanup(services.settings.auth_domains, services.settings.routing_param)


@router.get("/passes")
async def list_passes() -> Dict[str, List[str]]:
    return {"passes": source_transform.available_passes()}


@router.post("/cleanup", response_model=TransformResponse)
async def cleanup_source(req: SourcePayload, services: Services = Depends(get_services)) -> TransformResponse:
    result = _cleanup_pass(services).transform(req.source)
    return TransformResponse(source=result.source, changedSpans=[s.to_dict() for s in result.changed_spans])


@router.post("/detect")
async def detect_parameters(req: DetectPayload, services: Services = Depends(get_services)) -> Dict[str, Any]:
    source = _cleanup_pass(services).transform(req.source).source if req.clean else req.source
    return {"source": source, "candidates": [c.to_dict() for c in detect(source)]}


@router.post("/transform", response_model=TransformResponse)
async def run_transform(req: TransformPayload) -> TransformResponse:
    try:
        source, spans = source_transform.apply(req.passName, req.source, **req.options)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
    except TypeError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid options for {req.passName}: {exc}") from exc
    return TransformResponse(source=source, changedSpans=[s.to_dict() for s in spans])
