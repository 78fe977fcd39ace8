"""Tests for locator grading against a stand-in page."""

import asyncio

from qastudio.core.models import Locator, QualityScore, UniquenessResult
from qastudio.services.locator_evaluator import (
    LatestEvaluationGate,
    LocatorEvaluator,
    quality_score,
    uniqueness_from_count,
    usability_score,
)


class FakeQuery:
    def __init__(self, count, delay=0.0):
        self._count = count
        self._delay = delay

    async def count(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        return self._count


class FakePage:
    """Answers ``count()`` from a table keyed by the locator call."""

    def __init__(self, counts, delay=0.0):
        self.counts = counts
        self.delay = delay
        self.frames = []

    def _query(self, key):
        return FakeQuery(self.counts.get(key, 0), self.delay)

    def get_by_role(self, role, name=None, exact=False):
        return self._query(("role", role, name))

    def get_by_label(self, text, exact=False):
        return self._query(("label", text))

    def get_by_placeholder(self, text, exact=False):
        return self._query(("placeholder", text))

    def get_by_text(self, text, exact=False):
        return self._query(("text", text))

    def get_by_test_id(self, test_id):
        return self._query(("testid", test_id))

    def locator(self, selector):
        return self._query(("locator", selector))

    def frame_locator(self, selector):
        self.frames.append(selector)
        return self


class FakeElement:
    def __init__(self, description):
        self.description = description

    async def evaluate(self, script, control_attribute):
        return self.description


class FakePlaywrightLocator:
    def __init__(self, element):
        self.element = element

    async def element_handle(self, timeout=None):
        return self.element


def run(coro):
    return asyncio.run(coro)


def test_quality_table():
    """Strategy quality scores and levels."""
    assert quality_score(Locator("controlname", "CustName")).score == 100
    assert quality_score(Locator("role", "button", name="Save")).score == 95
    assert quality_score(Locator("xpath", "//div")).level == "weak"
    assert quality_score(Locator("css", "div > span", flagged=True)).level == "poor"


def test_uniqueness_scores():
    """Match counts map to uniqueness scores."""
    assert uniqueness_from_count(1) == UniquenessResult(True, 1, 100)
    assert uniqueness_from_count(0) == UniquenessResult(False, 0, 0)
    assert uniqueness_from_count(3).score == 80
    assert uniqueness_from_count(20).score == 0
    assert uniqueness_from_count(-1) == UniquenessResult(False, -1, 0)


def test_usability_weights_quality_and_uniqueness():
    """Usability is the weighted mix of quality and uniqueness."""
    score = usability_score(QualityScore(85, "good", ""), UniquenessResult(False, 2, 90), "strong")

    # 85 * 0.6 + 90 * 0.4 = 87.0
    assert score.score == 87
    assert score.level == "good"
    assert usability_score(QualityScore(1, "", ""), UniquenessResult(False, 0, 0), "weak").score == 1


def test_unique_role_locator_is_excellent():
    """A role locator with one match grades excellent."""
    page = FakePage({("role", "button", "Save"): 1})

    result = run(LocatorEvaluator().evaluate(page, Locator("role", "button", name="Save")))

    assert result.quality.score == 95
    assert result.uniqueness.is_unique is True
    assert result.usability.score == 97
    assert result.usability.level == "excellent"
    assert result.expression == 'page.get_by_role("button", name="Save")'
    assert result.strength == "strong"


def test_ambiguous_locator_mentions_match_count():
    """Several matches are called out in the recommendation."""
    page = FakePage({("text", "Edit"): 4})

    result = run(LocatorEvaluator().evaluate(page, Locator("text", "Edit")))

    assert result.uniqueness.match_count == 4
    assert "matches 4 elements" in result.usability.recommendation


def test_weak_locator_suggests_test_identifier():
    """Structural CSS gets a test id suggestion."""
    page = FakePage({("locator", "div:nth-of-type(2) > span"): 1})
    target = Locator("css", "div:nth-of-type(2) > span", flagged=True)

    result = run(LocatorEvaluator().evaluate(page, target))

    assert result.strength == "weak"
    assert "stable test identifier" in result.usability.recommendation


def test_expression_targets_are_parsed():
    """A locator expression string is parsed before grading."""
    page = FakePage({("label", "Customer Name"): 1})

    result = run(LocatorEvaluator().evaluate(page, 'page.get_by_label("Customer Name")'))

    assert result.locator == Locator("label", "Customer Name")
    assert result.usability.level == "excellent"


def test_frame_chain_is_followed():
    """Frame selectors are entered before counting."""
    page = FakePage({("role", "button", "Post"): 1})
    target = (Locator("role", "button", name="Post"), ("iframe#main",))

    result = run(LocatorEvaluator().evaluate(page, target))

    assert page.frames == ["iframe#main"]
    assert result.expression.startswith('page.frame_locator("iframe#main")')


def test_live_element_is_described_then_counted():
    """Elements and Playwright locators resolve to the same grade."""
    element = FakeElement({"strategy": "controlname", "selector": "CustTable_Name"})
    page = FakePage({("locator", '[data-dyn-controlname="CustTable_Name"]'): 1})

    direct = run(LocatorEvaluator().evaluate(page, element))
    via_locator = run(LocatorEvaluator().evaluate(page, FakePlaywrightLocator(element)))

    assert direct.locator == Locator("controlname", "CustTable_Name")
    assert direct.quality.score == 100
    assert via_locator.to_dict() == direct.to_dict()


def test_control_name_with_quotes_is_escaped_in_the_query():
    """A control name holding quotes is counted with an escaped attribute selector."""
    element = FakeElement({"strategy": "controlname", "selector": 'Grid_"Name"'})
    page = FakePage({("locator", '[data-dyn-controlname="Grid_\\"Name\\""]'): 1})

    result = run(LocatorEvaluator().evaluate(page, element))

    assert result.uniqueness.match_count == 1
    assert result.locator == Locator("controlname", 'Grid_"Name"')


def test_unresolvable_target_is_graded_poor():
    """An element the page cannot describe grades poor."""
    page = FakePage({})

    result = run(LocatorEvaluator().evaluate(page, FakeElement(None)))

    assert result.usability.level == "poor"
    assert result.usability.score == 0
    assert result.uniqueness.match_count == -1


def test_slow_count_times_out_with_negative_match_count():
    """A count slower than the timeout reports -1 matches."""
    page = FakePage({("role", "button", "Save"): 1}, delay=1.0)

    result = run(LocatorEvaluator(timeout_ms=20).evaluate(page, Locator("role", "button", name="Save")))

    assert result.uniqueness.match_count == -1
    assert result.uniqueness.score == 0
    assert "timed out" in result.usability.recommendation


def test_gate_drops_superseded_results():
    """Only the newest inspection of a session reports a result."""
    async def scenario():
        gate = LatestEvaluationGate()
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "first"

        async def fast():
            return "second"

        first = asyncio.ensure_future(gate.run("session-1", slow))
        await asyncio.sleep(0)
        second = await gate.run("session-1", fast)
        release.set()
        return await first, second

    assert run(scenario()) == (None, "second")


def test_gate_sessions_are_independent():
    """Tokens of one session do not supersede another's."""
    gate = LatestEvaluationGate()
    token_a = gate.issue("a")
    gate.issue("b")

    assert gate.is_current("a", token_a)
    gate.invalidate("a")
    assert not gate.is_current("a", token_a)
