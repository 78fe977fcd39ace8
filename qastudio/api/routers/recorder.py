from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ...recorder.recording_session import RecordingSession
from ...transforms.parameter_detector import detect
from ..dependencies import Services, get_services, http_error
from ..events import step_events
from ..sse import sse_response
from .bundles import ParameterBindingPayload, parse_selected_locators

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recorder/sessions", tags=["recorder"])


class SessionCreateRequest(BaseModel):
    testName: str = Field("", description="Working name; can be changed when generating.")
    module: Optional[str] = None


class StepEventRequest(BaseModel):
    actionKind: str
    targetLocatorCandidates: List[Dict[str, Any]] = Field(default_factory=list)
    value: Optional[str] = None
    frameContext: List[str] = Field(default_factory=list)
    timestamp: Optional[float] = None
    screenshotRef: Optional[str] = None
    description: Optional[str] = None
    assertion: Optional[str] = None


class DescriptionRequest(BaseModel):
    description: str


class CompileRequest(BaseModel):
    testName: Optional[str] = None
    module: Optional[str] = None
    selectedLocators: Dict[str, Union[int, Dict[str, Any]]] = Field(default_factory=dict)
    parameterBindings: List[ParameterBindingPayload] = Field(default_factory=list)


def _session(services: Services, session_id: str) -> RecordingSession:
    try:
        return services.sessions.get(session_id)
    except KeyError as exc:
        raise http_error(exc) from exc


@router.post("", status_code=201)
async def create_session(req: SessionCreateRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    session = services.sessions.create(req.testName, req.module)
    session.add_listener(step_events.step_listener(session.session_id))
    return session.to_dict()


@router.get("")
async def list_sessions(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return {
        "sessions": [
            {"sessionId": s.session_id, "testName": s.test_name, "state": s.state, "stepCount": len(s.steps)}
            for s in services.sessions.list()
        ]
    }


@router.get("/{session_id}")
async def get_session(session_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    return _session(services, session_id).to_dict()


@router.post("/{session_id}/events", status_code=201)
async def append_step(session_id: str, req: StepEventRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    session = _session(services, session_id)
    try:
        step = session.append(req.model_dump())
    except Exception as exc:
        raise http_error(exc) from exc
    return step.to_dict()


@router.patch("/{session_id}/steps/{order}")
async def describe_step(session_id: str, order: int, req: DescriptionRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    session = _session(services, session_id)
    try:
        return session.set_description(order, req.description).to_dict()
    except Exception as exc:
        raise http_error(exc) from exc


@router.post("/{session_id}/stop")
async def stop_session(session_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    session = _session(services, session_id)
    try:
        session.stop()
    except Exception as exc:
        raise http_error(exc) from exc
    step_events.close(session_id, session.state)
    return session.to_dict()


@router.delete("/{session_id}")
async def discard_session(session_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    session = _session(services, session_id)
    try:
        session.discard()
    except Exception as exc:
        raise http_error(exc) from exc
    services.sessions.remove(session_id)
    step_events.close(session_id, session.state)
    return {"sessionId": session_id, "state": session.state}


@router.get("/{session_id}/source")
async def session_source(session_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Raw capture, its cleaned form and the parameter candidates found in it."""
    session = _session(services, session_id)
    settings = services.settings
    cleaned = session.cleaned_source(settings.auth_domains, settings.routing_param)
    return {
        "source": session.to_source(),
        "cleanedSource": cleaned,
        "candidates": [c.to_dict() for c in detect(cleaned)],
    }


@router.post("/{session_id}/generate")
async def compile_session(session_id: str, req: CompileRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    session = _session(services, session_id)
    try:
        bundle = session.compile(
            services.writer,
            req.testName,
            req.module,
            parse_selected_locators(req.selectedLocators),
            [{"id": b.id, "variableName": b.variableName} for b in req.parameterBindings],
        )
    except Exception as exc:
        raise http_error(exc) from exc
    services.sessions.remove(session_id)
    logger.info("Session %s compiled into bundle %s", session_id, bundle.slug)
    return bundle.to_dict()


@router.get("/{session_id}/stream")
async def stream_steps(session_id: str, services: Services = Depends(get_services)) -> StreamingResponse:
    _session(services, session_id)
    return sse_response(step_events, session_id)
