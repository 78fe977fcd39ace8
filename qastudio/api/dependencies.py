from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional

from fastapi import HTTPException

from ..core.config import Settings
from ..core.errors import (
    BundleIncompleteError,
    BundleNotFoundError,
    BundleOperationError,
    RecordingStateError,
    SpecWriteError,
    StepAnchorError,
)
from ..generators.spec_generator import SpecGenerator
from ..recorder.recording_session import RecordingSessionRegistry
from ..services.bundle_store import BundleStore
from ..services.data_writer import DataWriter
from ..services.locator_evaluator import LocatorEvaluator
from ..services.locator_maintenance import LocatorMaintenance
from ..services.spec_updater import SpecUpdater
from ..services.spec_writer import SpecWriter


@dataclass
class Services:
    settings: Settings
    store: BundleStore = field(init=False)
    writer: SpecWriter = field(init=False)
    updater: SpecUpdater = field(init=False)
    data: DataWriter = field(init=False)
    locators: LocatorMaintenance = field(init=False)
    sessions: RecordingSessionRegistry = field(init=False)

    def __post_init__(self) -> None:
        root = self.settings.bundle_root
        generator = SpecGenerator(
            auth_domains=self.settings.auth_domains,
            routing_param=self.settings.routing_param,
            control_attribute=self.settings.control_attribute,
        )
        self.store = BundleStore(root)
        self.writer = SpecWriter(root, generator)
        self.updater = SpecUpdater(root)
        self.data = DataWriter(root)
        self.locators = LocatorMaintenance(root)
        self.sessions = RecordingSessionRegistry(
            lambda: LocatorEvaluator(self.settings.locator_timeout_ms, self.settings.control_attribute)
        )


_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    global _services
    with _services_lock:
        if _services is None:
            _services = Services(Settings.from_env())
        return _services


def http_error(exc: Exception) -> HTTPException:
    """Translate pipeline errors into HTTP responses with slug/path/operation detail."""
    if isinstance(exc, BundleOperationError):
        detail = exc.to_dict()
        if isinstance(exc, BundleNotFoundError):
            return HTTPException(status_code=404, detail=detail)
        if isinstance(exc, (BundleIncompleteError, StepAnchorError)):
            return HTTPException(status_code=409, detail=detail)
        if isinstance(exc, SpecWriteError):
            return HTTPException(status_code=500, detail=detail)
        return HTTPException(status_code=422, detail=detail)
    if isinstance(exc, RecordingStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, KeyError):
        return HTTPException(status_code=404, detail=str(exc.args[0]) if exc.args else "Not found")
    if isinstance(exc, ValueError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
