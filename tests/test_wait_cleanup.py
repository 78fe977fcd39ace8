"""Tests for collapsing redundant fixed waits in captured scripts."""

import ast

from qastudio.core.models import Locator, RecordedStep
from qastudio.recorder.recording_session import RecordingSession
from qastudio.transforms import source_transform
from qastudio.transforms.wait_cleanup import WaitCleanup, wait_cleanup

HEADER = '''from playwright.sync_api import Page, expect


def test_example(page: Page) -> None:
'''


def script(*statements):
    return HEADER + "".join(f"    {line}\n" for line in statements)


def test_consecutive_timeouts_keep_the_first():
    """A run of fixed sleeps collapses to its first sleep."""
    source = script(
        'page.get_by_role("button", name="New").click()',
        "page.wait_for_timeout(500)",
        "page.wait_for_timeout(1000)",
        "page.wait_for_timeout(2000)",
        'page.get_by_role("button", name="Save").click()',
    )

    result = wait_cleanup(source)

    assert result.count("wait_for_timeout") == 1
    assert "page.wait_for_timeout(500)" in result
    assert 'name="Save").click()' in result
    ast.parse(result)


def test_timeout_after_condition_wait_is_dropped():
    """A sleep right after a load-state, selector or locator wait goes."""
    source = script(
        'page.wait_for_load_state("networkidle")',
        "page.wait_for_timeout(1000)",
        'page.wait_for_selector("#grid")',
        "page.wait_for_timeout(1000)",
        'page.get_by_text("Ready").wait_for()',
        "page.wait_for_timeout(1000)",
    )

    result = wait_cleanup(source)

    assert "wait_for_timeout" not in result
    assert 'page.wait_for_load_state("networkidle")' in result
    assert 'page.wait_for_selector("#grid")' in result
    assert 'page.get_by_text("Ready").wait_for()' in result


def test_timeout_before_condition_wait_stays():
    """Only a sleep that follows another wait is redundant."""
    source = script(
        "page.wait_for_timeout(1000)",
        'page.wait_for_load_state("load")',
    )

    assert wait_cleanup(source) == source


def test_separated_timeouts_are_not_merged():
    """An action or a step marker between two sleeps keeps both."""
    source = script(
        "page.wait_for_timeout(500)",
        'page.get_by_role("button", name="New").click()',
        "page.wait_for_timeout(500)",
        "# [step 0a1b2c3d] Wait for the grid",
        "page.wait_for_timeout(500)",
    )

    assert wait_cleanup(source) == source


def test_async_waits_and_nested_blocks():
    """Awaited waits inside a ``with`` block collapse the same way."""
    source = (
        "async def test_example(page):\n"
        "    async with page.expect_navigation():\n"
        "        await page.wait_for_timeout(300)\n"
        "        await page.wait_for_timeout(300)\n"
        "    await page.wait_for_timeout(300)\n"
    )

    result = wait_cleanup(source)

    assert result.count("wait_for_timeout") == 2
    ast.parse(result)


def test_pass_is_registered_and_reports_spans():
    """The registry exposes the pass under its name with one span per removal."""
    source = script("page.wait_for_timeout(100)", "page.wait_for_timeout(100)", "page.wait_for_timeout(100)")

    updated, spans = source_transform.apply("wait-cleanup", source)

    assert "wait-cleanup" in source_transform.available_passes()
    assert updated.count("wait_for_timeout") == 1
    assert len(spans) == 2


def test_unparsable_source_is_returned_unchanged():
    """Broken input comes back as-is with the parse error attached."""
    broken = "def test_x(page):\n    page.wait_for_timeout(\n"

    result = WaitCleanup().transform(broken)

    assert result.source == broken
    assert result.applied is False
    assert result.error


def test_recording_session_cleans_waits():
    """The session's cleaned source has redundant waits removed."""
    session = RecordingSession()
    session.start()
    session.append(RecordedStep(order=0, action="navigate", value="https://app.example.com/home"))
    session.append(RecordedStep(order=0, action="wait", value="500"))
    session.append(RecordedStep(order=0, action="wait", value="1500"))
    session.append(RecordedStep(order=0, action="click", locators=(Locator("role", "button", name="Save"),)))

    cleaned = session.cleaned_source()

    assert cleaned.count("wait_for_timeout") == 1
