"""Live-DOM grading of element locators.

The evaluator only reads from the page: one ``evaluate`` call to describe a
hovered element and one ``count()`` query per locator.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple, TypeVar

from ..core.config import DEFAULT_CONTROL_ATTRIBUTE, DEFAULT_LOCATOR_TIMEOUT_MS
from ..core.models import (
    Locator,
    LocatorEvaluation,
    QualityScore,
    UniquenessResult,
    UsabilityScore,
)
from ..generators.locator_generator import control_selector, parse_locator_expression, render_locator, strategy_strength

logger = logging.getLogger(__name__)

T = TypeVar("T")

_QUALITY_TABLE: Dict[str, Tuple[int, str, str]] = {
    "controlname": (100, "excellent", "Application control name, the most stable anchor the page offers"),
    "role": (95, "excellent", "Accessibility-based, semantic and stable"),
    "label": (90, "good", "Label-based, user-friendly and relatively stable"),
    "testid": (88, "good", "Test ID attribute, purpose-built for testing"),
    "placeholder": (85, "good", "Placeholder-based, stable for form inputs"),
    "text": (70, "medium", "Text-based, may change with translations or content updates"),
    "css": (60, "medium", "CSS selector, moderate stability"),
    "xpath": (30, "weak", "XPath selector, very fragile and not recommended"),
}

_USABILITY_LEVELS = (
    (90, "excellent", "This locator is highly recommended. It is stable, semantic and unique."),
    (75, "good", "This locator should work reliably. Consider whether a better alternative exists."),
    (50, "medium", "This locator may be fragile and could break with UI changes."),
    (0, "poor", "This locator is not recommended and is likely to break."),
)

UNRESOLVED_RECOMMENDATION = "The element could not be resolved. Hover it again or pick a different element."

# Describes a live element without touching page state.
_DESCRIBE_ELEMENT_JS = """
(el, controlAttr) => {
  const clean = (v) => (v || '').replace(/\\s+/g, ' ').trim();
  const owner = el.closest('[' + controlAttr + ']');
  if (owner) {
    return { strategy: 'controlname', selector: owner.getAttribute(controlAttr) };
  }
  const tag = el.tagName.toLowerCase();
  const type = (el.getAttribute('type') || '').toLowerCase();
  const implicitRoles = {
    button: 'button', a: el.hasAttribute('href') ? 'link' : '', select: 'combobox',
    textarea: 'textbox', h1: 'heading', h2: 'heading', h3: 'heading', h4: 'heading',
  };
  let role = el.getAttribute('role') || implicitRoles[tag] || '';
  if (tag === 'input') {
    role = { checkbox: 'checkbox', radio: 'radio', submit: 'button', button: 'button' }[type] || 'textbox';
  }
  let labelText = clean(el.getAttribute('aria-label'));
  if (!labelText && el.labels && el.labels.length) {
    labelText = clean(el.labels[0].innerText);
  }
  const labelledBy = el.getAttribute('aria-labelledby');
  if (!labelText && labelledBy) {
    const ref = document.getElementById(labelledBy.split(' ')[0]);
    labelText = ref ? clean(ref.innerText) : '';
  }
  const text = clean(el.innerText);
  const isField = ['input', 'textarea', 'select'].includes(tag);
  if (role && !isField) {
    const name = labelText || (text.length <= 80 ? text : '');
    if (name) return { strategy: 'role', selector: role, name: name };
  }
  if (isField && labelText) return { strategy: 'label', selector: labelText };
  const testId = el.getAttribute('data-testid');
  if (testId) return { strategy: 'testid', selector: testId };
  const placeholder = clean(el.getAttribute('placeholder'));
  if (placeholder) return { strategy: 'placeholder', selector: placeholder };
  if (text && text.length <= 50 && el.children.length === 0) return { strategy: 'text', selector: text };
  if (el.id && !/\\d{3,}/.test(el.id)) return { strategy: 'css', selector: '#' + CSS.escape(el.id) };
  const parts = [];
  let node = el;
  while (node && node.nodeType === 1 && parts.length < 4) {
    let part = node.tagName.toLowerCase();
    const parent = node.parentElement;
    if (parent) {
      const same = Array.from(parent.children).filter((c) => c.tagName === node.tagName);
      if (same.length > 1) part += ':nth-of-type(' + (same.indexOf(node) + 1) + ')';
    }
    parts.unshift(part);
    node = parent;
  }
  return { strategy: 'css', selector: parts.join(' > '), flagged: true };
}
"""


def quality_score(locator: Locator) -> QualityScore:
    if locator.strategy == "css" and locator.flagged:
        return QualityScore(40, "poor", "CSS fallback selector, fragile and may break with UI changes")
    score, level, reason = _QUALITY_TABLE.get(locator.strategy, (0, "weak", "Unknown locator strategy"))
    return QualityScore(score, level, reason)


def uniqueness_from_count(count: int) -> UniquenessResult:
    if count < 0:
        return UniquenessResult(False, -1, 0)
    if count == 1:
        return UniquenessResult(True, 1, 100)
    if count == 0:
        return UniquenessResult(False, 0, 0)
    return UniquenessResult(False, count, max(0, 100 - (count - 1) * 10))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def usability_score(quality: QualityScore, uniqueness: UniquenessResult, strength: str) -> UsabilityScore:
    score = _round_half_up(quality.score * 0.6 + uniqueness.score * 0.4)
    level, recommendation = "poor", _USABILITY_LEVELS[-1][2]
    for threshold, name, text in _USABILITY_LEVELS:
        if score >= threshold:
            level, recommendation = name, text
            break

    hints = []
    if uniqueness.match_count == 0:
        hints.append("It matches no element on the current page.")
    elif uniqueness.match_count > 1:
        hints.append(f"It matches {uniqueness.match_count} elements; scope it to a parent or add a stable test identifier attribute.")
    elif uniqueness.match_count < 0:
        hints.append("The uniqueness query failed or timed out.")
    if strength == "weak" and uniqueness.match_count <= 1:
        hints.append("Add a stable test identifier attribute to the element.")
    if hints:
        recommendation = " ".join([recommendation, *hints])
    return UsabilityScore(score, level, recommendation)


def unresolved_evaluation(reason: str = "Element could not be resolved") -> LocatorEvaluation:
    locator = Locator("css", "", flagged=True)
    return LocatorEvaluation(
        locator=locator,
        expression="",
        strength="weak",
        quality=QualityScore(0, "weak", reason),
        uniqueness=UniquenessResult(False, -1, 0),
        usability=UsabilityScore(0, "poor", UNRESOLVED_RECOMMENDATION),
    )


def playwright_locator(page: Any, locator: Locator, frame: Sequence[str] = (), control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE) -> Any:
    """Build a Playwright locator object for ``locator`` on ``page``."""
    scope = page
    for frame_selector in frame:
        scope = scope.frame_locator(frame_selector)
    strategy = locator.strategy
    exact = {"exact": True} if locator.exact else {}
    if strategy == "role":
        kwargs = dict(exact)
        if locator.name:
            kwargs["name"] = locator.name
        return scope.get_by_role(locator.selector, **kwargs)
    if strategy == "label":
        return scope.get_by_label(locator.selector, **exact)
    if strategy == "placeholder":
        return scope.get_by_placeholder(locator.selector, **exact)
    if strategy == "text":
        return scope.get_by_text(locator.selector, **exact)
    if strategy == "testid":
        return scope.get_by_test_id(locator.selector)
    if strategy == "controlname":
        return scope.locator(control_selector(locator.selector, control_attribute))
    if strategy == "xpath":
        selector = locator.selector if locator.selector.startswith("xpath=") else f"xpath={locator.selector}"
        return scope.locator(selector)
    return scope.locator(locator.selector)


class LocatorEvaluator:
    def __init__(
        self,
        timeout_ms: int = DEFAULT_LOCATOR_TIMEOUT_MS,
        control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.control_attribute = control_attribute

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    async def describe_element(self, element: Any) -> Optional[Locator]:
        try:
            raw = await asyncio.wait_for(
                element.evaluate(_DESCRIBE_ELEMENT_JS, self.control_attribute),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:  # detached handles, closed pages, timeouts
            logger.debug("Element description failed: %s", exc)
            return None
        if not raw or not raw.get("selector"):
            return None
        try:
            return Locator.from_dict(raw)
        except ValueError:
            return None

    async def resolve(self, target: Any) -> Optional[Tuple[Locator, Tuple[str, ...]]]:
        """Turn a live element, a Playwright locator, an expression or a ``Locator`` into a locator."""
        if target is None:
            return None
        if isinstance(target, Locator):
            return target, ()
        if isinstance(target, tuple) and target and isinstance(target[0], Locator):
            return target[0], tuple(target[1]) if len(target) > 1 else ()
        if isinstance(target, str):
            return parse_locator_expression(target, self.control_attribute)
        if hasattr(target, "element_handle") and not hasattr(target, "as_element"):
            try:
                target = await target.element_handle(timeout=self.timeout_ms)
            except Exception as exc:
                logger.debug("Locator did not resolve to an element: %s", exc)
                return None
        if target is None or not hasattr(target, "evaluate"):
            return None
        described = await self.describe_element(target)
        return (described, ()) if described else None

    async def count_matches(self, page: Any, locator: Locator, frame: Sequence[str] = ()) -> int:
        query = playwright_locator(page, locator, frame, self.control_attribute)
        return await asyncio.wait_for(query.count(), timeout=self.timeout_seconds)

    async def uniqueness(self, page: Any, locator: Locator, frame: Sequence[str] = ()) -> UniquenessResult:
        try:
            count = await self.count_matches(page, locator, frame)
        except asyncio.TimeoutError:
            logger.info("Uniqueness query timed out after %sms", self.timeout_ms)
            return uniqueness_from_count(-1)
        except Exception as exc:
            logger.warning("Uniqueness query failed: %s", exc)
            return uniqueness_from_count(-1)
        return uniqueness_from_count(int(count))

    async def evaluate(self, page: Any, target: Any) -> LocatorEvaluation:
        resolved = await self.resolve(target)
        if resolved is None:
            return unresolved_evaluation()
        locator, frame = resolved
        quality = quality_score(locator)
        strength = strategy_strength(locator)
        uniqueness = await self.uniqueness(page, locator, frame)
        usability = usability_score(quality, uniqueness, strength)
        return LocatorEvaluation(
            locator=locator,
            expression=render_locator(locator, frame, control_attribute=self.control_attribute),
            strength=strength,
            quality=quality,
            uniqueness=uniqueness,
            usability=usability,
        )


class LatestEvaluationGate:
    """Last-request-wins bookkeeping per live session.

    Every request takes a token; a result is delivered only if its token is
    still the newest one for that session when the evaluation finishes.
    """

    def __init__(self) -> None:
        self._tokens: Dict[str, int] = {}
        self._lock = threading.Lock()

    def issue(self, session_id: str) -> int:
        with self._lock:
            token = self._tokens.get(session_id, 0) + 1
            self._tokens[session_id] = token
            return token

    def is_current(self, session_id: str, token: int) -> bool:
        with self._lock:
            return self._tokens.get(session_id) == token

    def invalidate(self, session_id: str) -> None:
        self.issue(session_id)

    def forget(self, session_id: str) -> None:
        with self._lock:
            self._tokens.pop(session_id, None)

    async def run(self, session_id: str, work: Callable[[], Awaitable[T]]) -> Optional[T]:
        token = self.issue(session_id)
        result = await work()
        if not self.is_current(session_id, token):
            logger.debug("Discarding superseded evaluation for session %s", session_id)
            return None
        return result
