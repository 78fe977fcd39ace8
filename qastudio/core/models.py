from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

STRATEGIES = ("role", "label", "placeholder", "text", "testid", "controlname", "css", "xpath")

ACTIONS = (
    "navigate",
    "click",
    "dblclick",
    "fill",
    "select",
    "check",
    "uncheck",
    "press",
    "hover",
    "wait",
    "comment",
    "assert",
)

# Assertions that target the page rather than an element.
PAGE_ASSERTIONS = ("to_have_url", "to_have_title")
ELEMENT_ASSERTIONS = (
    "to_be_visible",
    "to_have_text",
    "to_contain_text",
    "to_be_checked",
    "to_have_value",
)

LOCATOR_STATES = ("healthy", "warning", "failing")
RUN_STATUSES = ("never_run", "passed", "failed")


@dataclass(frozen=True)
class Locator:
    strategy: str
    selector: str
    name: Optional[str] = None
    exact: bool = False
    flagged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "strategy": self.strategy,
            "selector": self.selector,
            "flagged": self.flagged,
        }
        if self.name is not None:
            payload["name"] = self.name
        if self.exact:
            payload["exact"] = True
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Locator":
        strategy = str(data.get("strategy") or data.get("type") or "css").strip().lower()
        if strategy == "d365-controlname":
            strategy = "controlname"
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown locator strategy: {strategy}")
        selector = data.get("selector")
        if selector is None:
            selector = data.get("value", "")
        return cls(
            strategy=strategy,
            selector=str(selector),
            name=data.get("name"),
            exact=bool(data.get("exact", False)),
            flagged=bool(data.get("flagged", False)),
        )


@dataclass(frozen=True)
class RecordedStep:
    """One captured interaction. Only ``description`` may change after capture."""

    order: int
    action: str
    locators: Tuple[Locator, ...] = ()
    value: Optional[str] = None
    frame: Tuple[str, ...] = ()
    timestamp: float = 0.0
    screenshot: Optional[str] = None
    description: str = ""
    assertion: Optional[str] = None

    @property
    def primary_locator(self) -> Optional[Locator]:
        return self.locators[0] if self.locators else None

    def with_description(self, description: str) -> "RecordedStep":
        return replace(self, description=description)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order,
            "actionKind": self.action,
            "targetLocatorCandidates": [loc.to_dict() for loc in self.locators],
            "value": self.value,
            "frameContext": list(self.frame),
            "timestamp": self.timestamp,
            "screenshotRef": self.screenshot,
            "description": self.description,
            "assertion": self.assertion,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], order: Optional[int] = None) -> "RecordedStep":
        action = str(data.get("actionKind") or data.get("action") or "").strip().lower()
        if action not in ACTIONS:
            raise ValueError(f"Unsupported action kind: {action or '<empty>'}")
        raw_locators = data.get("targetLocatorCandidates") or data.get("locators") or []
        if isinstance(raw_locators, dict):
            raw_locators = [raw_locators]
        locators = tuple(Locator.from_dict(item) for item in raw_locators)
        frame = data.get("frameContext") or data.get("frame") or ()
        if isinstance(frame, str):
            frame = (frame,)
        value = data.get("value")
        return cls(
            order=int(order if order is not None else data.get("order", 0)),
            action=action,
            locators=locators,
            value=None if value is None else str(value),
            frame=tuple(str(item) for item in frame),
            timestamp=float(data.get("timestamp") or time.time()),
            screenshot=data.get("screenshotRef") or data.get("screenshot"),
            description=str(data.get("description") or ""),
            assertion=data.get("assertion"),
        )


@dataclass
class ParameterCandidate:
    id: str
    label: str
    original_value: str
    suggested_name: str
    line: int = 0
    method: str = "fill"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "originalValue": self.original_value,
            "suggestedName": self.suggested_name,
            "line": self.line,
            "method": self.method,
        }


@dataclass(frozen=True)
class SelectedParameter:
    """A confirmed candidate: ``id`` from the detector, ``variable_name`` chosen by the user."""

    id: str
    variable_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "variableName": self.variable_name}


@dataclass
class QualityScore:
    score: int
    level: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "level": self.level, "reason": self.reason}


@dataclass
class UniquenessResult:
    is_unique: bool
    match_count: int
    score: int

    def to_dict(self) -> Dict[str, Any]:
        return {"isUnique": self.is_unique, "matchCount": self.match_count, "score": self.score}


@dataclass
class UsabilityScore:
    score: int
    level: str
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "level": self.level, "recommendation": self.recommendation}


@dataclass
class LocatorEvaluation:
    locator: Locator
    expression: str
    strength: str
    quality: QualityScore
    uniqueness: UniquenessResult
    usability: UsabilityScore

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locator": self.locator.to_dict(),
            "expression": self.expression,
            "strength": self.strength,
            "quality": self.quality.to_dict(),
            "uniqueness": self.uniqueness.to_dict(),
            "usability": self.usability.to_dict(),
        }


@dataclass
class TestBundle:
    slug: str
    spec_source: str
    meta_json: Dict[str, Any]
    meta_markdown: str
    data_file_path: Optional[Path] = None
    directory: Optional[Path] = None
    # Seed values for a freshly created data file.
    default_row: Dict[str, Any] = field(default_factory=dict)

    __test__ = False  # not a pytest class

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "specSource": self.spec_source,
            "metaJson": self.meta_json,
            "metaMarkdown": self.meta_markdown,
            "dataFilePath": str(self.data_file_path) if self.data_file_path else None,
            "directory": str(self.directory) if self.directory else None,
        }


@dataclass
class LocatorStatusRecord:
    state: str
    updated_at: str
    note: Optional[str] = None
    last_test: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"state": self.state, "updatedAt": self.updated_at}
        if self.note:
            payload["note"] = self.note
        if self.last_test:
            payload["lastTest"] = self.last_test
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocatorStatusRecord":
        return cls(
            state=str(data.get("state", "healthy")),
            updated_at=str(data.get("updatedAt", "")),
            note=data.get("note"),
            last_test=data.get("lastTest"),
        )


@dataclass
class LocatorIndexEntry:
    locator: str
    strategy_type: str
    usage_count: int = 0
    used_in_tests: List[str] = field(default_factory=list)
    status: Optional[LocatorStatusRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locator": self.locator,
            "strategyType": self.strategy_type,
            "usageCount": self.usage_count,
            "usedInTests": list(self.used_in_tests),
            "status": self.status.to_dict() if self.status else None,
        }
