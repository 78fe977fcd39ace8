"""Capture-time state for one recording.

A session owns its step list for a bounded lifetime (``start`` .. ``stop`` or
``discard``). Capture callbacks may arrive from several threads; appends are
serialised so orders are strictly increasing and listeners see steps in order.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from ..core.errors import RecordingStateError
from ..core.models import LocatorEvaluation, ParameterCandidate, RecordedStep, TestBundle
from ..generators.spec_generator import Bindings, LocatorChoice, capture_source
from ..services.locator_evaluator import LatestEvaluationGate, LocatorEvaluator
from ..services.spec_writer import SpecWriter
from ..transforms.navigation_cleanup import cleanup
from ..transforms.parameter_detector import detect
from ..transforms.wait_cleanup import wait_cleanup

logger = logging.getLogger(__name__)

IDLE = "idle"
RECORDING = "recording"
STOPPED = "stopped"
DISCARDED = "discarded"
COMPILED = "compiled"

StepListener = Callable[[RecordedStep], None]


class RecordingSession:
    def __init__(
        self,
        test_name: str = "",
        module: Optional[str] = None,
        session_id: Optional[str] = None,
        evaluator: Optional[LocatorEvaluator] = None,
        gate: Optional[LatestEvaluationGate] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.test_name = test_name
        self.module = module
        self.evaluator = evaluator or LocatorEvaluator()
        self.gate = gate or LatestEvaluationGate()
        self._clock = clock
        self._lock = threading.RLock()
        self._steps: List[RecordedStep] = []
        self._listeners: List[StepListener] = []
        self._state = IDLE
        self.started_at: Optional[float] = None
        self.stopped_at: Optional[float] = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def steps(self) -> List[RecordedStep]:
        with self._lock:
            return list(self._steps)

    def _require(self, operation: str, *allowed: str) -> None:
        if self._state not in allowed:
            raise RecordingStateError(f"Cannot {operation} a session that is {self._state}")

    def start(self) -> "RecordingSession":
        with self._lock:
            self._require("start", IDLE)
            self._state = RECORDING
            self.started_at = self._clock()
        logger.info("Recording session %s started", self.session_id)
        return self

    def stop(self) -> List[RecordedStep]:
        with self._lock:
            self._require("stop", RECORDING)
            self._state = STOPPED
            self.stopped_at = self._clock()
            steps = list(self._steps)
        logger.info("Recording session %s stopped with %d step(s)", self.session_id, len(steps))
        return steps

    def discard(self) -> None:
        with self._lock:
            self._require("discard", IDLE, RECORDING, STOPPED)
            self._state = DISCARDED
            self._steps.clear()
            self._listeners.clear()
        self.gate.forget(self.session_id)
        logger.info("Recording session %s discarded", self.session_id)

    def add_listener(self, listener: StepListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: StepListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def append(self, event: Union[RecordedStep, Mapping[str, Any]]) -> RecordedStep:
        """Append one captured interaction; order and timestamp are assigned here."""
        with self._lock:
            self._require("append to", RECORDING)
            order = self._steps[-1].order + 1 if self._steps else 1
            if isinstance(event, RecordedStep):
                step = replace(event, order=order, timestamp=event.timestamp or self._clock())
            else:
                step = RecordedStep.from_dict(dict(event), order=order)
                if not event.get("timestamp"):
                    step = replace(step, timestamp=self._clock())
            self._steps.append(step)
            for listener in list(self._listeners):
                try:
                    listener(step)
                except Exception:
                    logger.exception("Step listener failed for session %s", self.session_id)
        return step

    def set_description(self, order: int, description: str) -> RecordedStep:
        with self._lock:
            self._require("edit", RECORDING, STOPPED)
            for position, step in enumerate(self._steps):
                if step.order == order:
                    updated = step.with_description(description)
                    self._steps[position] = updated
                    return updated
        raise KeyError(f"No step with order {order}")

    def to_source(self) -> str:
        source, _ = capture_source(self.steps, control_attribute=self.evaluator.control_attribute)
        return source

    def cleaned_source(self, auth_domains: Optional[Sequence[str]] = None, routing_param: Optional[str] = None) -> str:
        return wait_cleanup(cleanup(self.to_source(), auth_domains, routing_param))

    def detect_parameters(self) -> List[ParameterCandidate]:
        return detect(self.cleaned_source())

    async def inspect(self, page: Any, target: Any) -> Optional[LocatorEvaluation]:
        """Grade a hovered element; ``None`` when a newer inspection superseded this one."""
        self._require("inspect with", RECORDING, STOPPED)
        result = await self.gate.run(self.session_id, lambda: self.evaluator.evaluate(page, target))
        if self._state == DISCARDED:
            return None
        return result

    def compile(
        self,
        writer: SpecWriter,
        test_name: Optional[str] = None,
        module: Optional[str] = None,
        selected_locators: Optional[Mapping[int, LocatorChoice]] = None,
        parameter_bindings: Optional[Bindings] = None,
    ) -> TestBundle:
        """Hand the stopped session's steps to the writer; the session is consumed."""
        with self._lock:
            self._require("compile", STOPPED)
            steps = list(self._steps)
        bundle = writer.generate(
            test_name or self.test_name,
            steps,
            module if module is not None else self.module,
            selected_locators,
            parameter_bindings,
        )
        with self._lock:
            self._state = COMPILED
        self.gate.forget(self.session_id)
        return bundle

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "sessionId": self.session_id,
                "testName": self.test_name,
                "module": self.module,
                "state": self._state,
                "startedAt": self.started_at,
                "stoppedAt": self.stopped_at,
                "steps": [step.to_dict() for step in self._steps],
            }


class RecordingSessionRegistry:
    """Sessions owned by the API process."""

    def __init__(self, evaluator_factory: Callable[[], LocatorEvaluator] = LocatorEvaluator) -> None:
        self._sessions: Dict[str, RecordingSession] = {}
        self._lock = threading.RLock()
        self._evaluator_factory = evaluator_factory
        self.gate = LatestEvaluationGate()

    def create(self, test_name: str = "", module: Optional[str] = None) -> RecordingSession:
        session = RecordingSession(test_name, module, evaluator=self._evaluator_factory(), gate=self.gate)
        with self._lock:
            self._sessions[session.session_id] = session
        return session.start()

    def get(self, session_id: str) -> RecordingSession:
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError:
                raise KeyError(f"Unknown recording session: {session_id}") from None

    def remove(self, session_id: str) -> Optional[RecordingSession]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def list(self) -> List[RecordingSession]:
        with self._lock:
            return list(self._sessions.values())
