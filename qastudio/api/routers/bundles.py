from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, Field

from ...core.models import Locator, RecordedStep
from ..dependencies import Services, get_services, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bundles", tags=["bundles"])


class ParameterBindingPayload(BaseModel):
    id: str
    variableName: str


class GenerateRequest(BaseModel):
    testName: str
    module: Optional[str] = None
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    selectedLocators: Dict[str, Union[int, Dict[str, Any]]] = Field(
        default_factory=dict, description="Step order -> candidate index or explicit locator."
    )
    parameterBindings: List[ParameterBindingPayload] = Field(default_factory=list)


class AddStepRequest(BaseModel):
    body: Optional[str] = None
    step: Optional[Dict[str, Any]] = None
    index: Optional[int] = None
    description: str = ""


class UpdateStepRequest(BaseModel):
    body: str
    description: Optional[str] = None


class ReorderRequest(BaseModel):
    start: int
    stop: Optional[int] = None
    toIndex: int


class RunRequest(BaseModel):
    status: str


def parse_selected_locators(raw: Dict[str, Union[int, Dict[str, Any]]]) -> Dict[int, Union[int, Locator]]:
    selected: Dict[int, Union[int, Locator]] = {}
    for key, value in raw.items():
        order = int(key)
        selected[order] = value if isinstance(value, int) else Locator.from_dict(value)
    return selected


def parse_steps(raw: List[Dict[str, Any]]) -> List[RecordedStep]:
    return [RecordedStep.from_dict(item, order=item.get("order", position)) for position, item in enumerate(raw, start=1)]


def _step_ref(ref: str) -> Union[int, str]:
    return int(ref) if ref.isdigit() else ref


@router.post("")
async def generate_bundle(req: GenerateRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        bundle = services.writer.generate(
            req.testName,
            parse_steps(req.steps),
            req.module,
            parse_selected_locators(req.selectedLocators),
            [{"id": b.id, "variableName": b.variableName} for b in req.parameterBindings],
        )
    except Exception as exc:
        raise http_error(exc) from exc
    return bundle.to_dict()


@router.get("")
async def list_bundles(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return {"bundles": services.store.list_bundles()}


@router.get("/{slug}")
async def get_bundle(slug: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        return services.store.load_bundle(slug).to_dict()
    except Exception as exc:
        raise http_error(exc) from exc


@router.get("/{slug}/steps")
async def list_steps(slug: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        steps = services.updater.list_steps(slug)
    except Exception as exc:
        raise http_error(exc) from exc
    return {"steps": [step.to_dict() for step in steps]}


@router.post("/{slug}/steps")
async def add_step(slug: str, req: AddStepRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        recorded = RecordedStep.from_dict(req.step, order=0) if req.step else None
        edit = services.updater.add_step(slug, req.body, req.index, req.description, step=recorded)
    except Exception as exc:
        raise http_error(exc) from exc
    return edit.to_dict()


@router.put("/{slug}/steps/{ref}")
async def update_step(slug: str, ref: str, req: UpdateStepRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        edit = services.updater.update_step(slug, _step_ref(ref), req.body, req.description)
    except Exception as exc:
        raise http_error(exc) from exc
    return edit.to_dict()


@router.delete("/{slug}/steps/{ref}")
async def delete_step(slug: str, ref: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        edit = services.updater.delete_step(slug, _step_ref(ref))
    except Exception as exc:
        raise http_error(exc) from exc
    return edit.to_dict()


@router.post("/{slug}/steps/reorder")
async def reorder_steps(slug: str, req: ReorderRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    stop = req.stop if req.stop is not None else req.start + 1
    try:
        edit = services.updater.reorder_steps(slug, (req.start, stop), req.toIndex)
    except Exception as exc:
        raise http_error(exc) from exc
    return edit.to_dict()


@router.get("/{slug}/data")
async def read_data(slug: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        return {"rows": services.data.read_rows(slug)}
    except Exception as exc:
        raise http_error(exc) from exc


@router.put("/{slug}/data")
async def write_data(slug: str, rows: List[Dict[str, Any]], services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        services.store.require_complete(slug, "write-data")
        return {"rows": services.data.write_rows(slug, rows)}
    except Exception as exc:
        raise http_error(exc) from exc


@router.post("/{slug}/data/import")
async def import_data(slug: str, file: UploadFile = File(...), merge: bool = False, services: Services = Depends(get_services)) -> Dict[str, Any]:
    raw = await file.read()
    try:
        services.store.require_complete(slug, "import-data")
        rows = services.data.import_excel(slug, raw, merge=merge)
    except Exception as exc:
        raise http_error(exc) from exc
    return {"rows": rows}


@router.get("/{slug}/data/export")
async def export_data(slug: str, services: Services = Depends(get_services)) -> Response:
    try:
        content = services.data.export_excel(slug)
    except Exception as exc:
        raise http_error(exc) from exc
    return Response(
        content=content,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{slug}Data.xlsx"'},
    )


@router.post("/{slug}/runs")
async def record_run(slug: str, req: RunRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        meta = services.store.record_run(slug, req.status)
    except Exception as exc:
        raise http_error(exc) from exc
    return {"lastRunAt": meta.get("lastRunAt"), "lastStatus": meta.get("lastStatus")}
