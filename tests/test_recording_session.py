"""Tests for the capture-time recording session."""

import threading

import pytest

from qastudio.core.errors import RecordingStateError
from qastudio.core.models import Locator, RecordedStep
from qastudio.recorder.recording_session import (
    COMPILED,
    DISCARDED,
    RECORDING,
    STOPPED,
    RecordingSession,
    RecordingSessionRegistry,
)
from qastudio.services.spec_writer import SpecWriter


def click_event(name):
    return {"actionKind": "click", "targetLocatorCandidates": [{"strategy": "role", "selector": "button", "name": name}]}


def test_orders_start_at_one_and_increase():
    """Orders are assigned from one and stamped with the clock."""
    session = RecordingSession("Create Customer", clock=lambda: 42.0).start()

    first = session.append(click_event("New"))
    second = session.append(RecordedStep(99, "click", locators=(Locator("role", "button", name="Save"),)))

    assert (first.order, second.order) == (1, 2)
    assert first.timestamp == 42.0
    assert second.timestamp == 42.0
    assert session.state == RECORDING


def test_concurrent_appends_keep_strict_order():
    """Appends from many threads get distinct increasing orders."""
    session = RecordingSession().start()
    seen = []
    session.add_listener(lambda step: seen.append(step.order))

    def worker(prefix):
        for i in range(25):
            session.append(click_event(f"{prefix}-{i}"))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    orders = [step.order for step in session.steps]
    assert orders == list(range(1, 201))
    assert seen == orders


def test_failing_listener_does_not_break_capture():
    """A listener that raises does not stop the append."""
    session = RecordingSession().start()

    def broken(step):
        raise RuntimeError("listener down")

    session.add_listener(broken)
    step = session.append(click_event("New"))

    assert step.order == 1
    assert len(session.steps) == 1


def test_append_outside_recording_is_rejected():
    """Appending before start or after stop raises."""
    session = RecordingSession()

    with pytest.raises(RecordingStateError):
        session.append(click_event("New"))

    session.start()
    session.stop()
    with pytest.raises(RecordingStateError):
        session.append(click_event("New"))


def test_discard_drops_steps():
    """A discarded session has no steps and accepts nothing."""
    session = RecordingSession().start()
    session.append(click_event("New"))

    session.discard()

    assert session.state == DISCARDED
    assert session.steps == []
    with pytest.raises(RecordingStateError):
        session.stop()


def test_invalid_action_is_rejected():
    """Unknown action kinds are refused."""
    session = RecordingSession().start()

    with pytest.raises(ValueError):
        session.append({"actionKind": "teleport"})
    assert session.steps == []


def test_description_can_be_edited_after_stop():
    """Descriptions stay editable once capture has stopped."""
    session = RecordingSession().start()
    session.append(click_event("New"))
    session.stop()

    updated = session.set_description(1, "Open the new customer form")

    assert updated.description == "Open the new customer form"
    assert session.steps[0].description == "Open the new customer form"
    with pytest.raises(KeyError):
        session.set_description(5, "missing")


def test_cleaned_source_and_candidates():
    """The session exposes cleaned source and its parameter candidates."""
    session = RecordingSession().start()
    session.append({"actionKind": "navigate", "value": "https://app.example.com/"})
    session.append({"actionKind": "navigate", "value": "https://app.example.com/"})
    session.append(
        {"actionKind": "fill", "targetLocatorCandidates": [{"strategy": "label", "selector": "Customer Name"}], "value": "Acme Corp"}
    )

    assert session.to_source().count("page.goto(") == 2
    assert session.cleaned_source().count("page.goto(") == 1
    assert [c.suggested_name for c in session.detect_parameters()] == ["customerName"]


def test_compile_requires_stop_and_consumes_session(tmp_path, steps):
    """Compiling needs a stopped session and marks it compiled."""
    session = RecordingSession("Create Customer", module="AR").start()
    for step in steps:
        session.append(step)

    writer = SpecWriter(tmp_path)
    with pytest.raises(RecordingStateError):
        session.compile(writer)

    session.stop()
    bundle = session.compile(writer)

    assert session.state == COMPILED
    assert bundle.slug == "create-customer"
    assert bundle.meta_json["module"] == "AR"
    assert (tmp_path / "create-customer" / "create-customer.spec.py").is_file()


def test_registry_creates_started_sessions():
    """Registry sessions start recording and can be looked up."""
    registry = RecordingSessionRegistry()

    session = registry.create("Smoke")

    assert session.state == RECORDING
    assert registry.get(session.session_id) is session
    assert registry.list() == [session]
    assert registry.remove(session.session_id) is session
    with pytest.raises(KeyError):
        registry.get(session.session_id)


def test_stopped_session_serialises_steps():
    """``to_dict`` includes the captured steps."""
    session = RecordingSession("Smoke").start()
    session.append(click_event("New"))
    session.stop()

    payload = session.to_dict()

    assert payload["state"] == STOPPED
    assert payload["steps"][0]["actionKind"] == "click"
    assert payload["steps"][0]["targetLocatorCandidates"][0]["name"] == "New"


def test_removed_listener_stops_receiving_steps():
    """A removed listener sees no further steps."""
    session = RecordingSession().start()
    seen = []
    listener = seen.append
    session.add_listener(listener)
    session.append(click_event("New"))

    session.remove_listener(listener)
    session.append(click_event("Save"))

    assert [step.order for step in seen] == [1]
