"""Assemble recorded steps into a parametrised pytest-playwright spec bundle.

Generation is pure: identical inputs give byte-identical ``spec_source`` and
``meta_json``; the only clock value lives in ``meta_json["generatedAt"]``.
"""

from __future__ import annotations

import ast
import hashlib
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ..core.config import DEFAULT_AUTH_DOMAINS, DEFAULT_CONTROL_ATTRIBUTE, DEFAULT_ROUTING_PARAM
from ..core.errors import SpecGenerationError
from ..core.identifiers import RESERVED_SLUGS, format_test_name, slugify, spec_function_name
from ..core.models import ELEMENT_ASSERTIONS, PAGE_ASSERTIONS, Locator, RecordedStep, SelectedParameter, TestBundle
from ..transforms.navigation_cleanup import NavEntry, plan_removals
from ..transforms.parameter_detector import find_value_sites, parameter_reference
from .locator_generator import render_element, render_locator

logger = logging.getLogger(__name__)

SPEC_EXTENSION = "py"
MARKER_PREFIX = "# [step "
PREVIEW_LINES = 40

LocatorChoice = Union[Locator, int]
Bindings = Union[Mapping[str, str], Iterable[SelectedParameter]]

_SPEC_HEADER = '''"""{title}

Generated from a recorded session. Comments of the form ``# [step <id>]``
anchor in-place step edits; keep them on their own lines.
"""

import json
from pathlib import Path

import pytest
from playwright.sync_api import Page, expect

DATA_FILE = Path(__file__).resolve().parents[1] / "data" / {data_name}


def load_rows():
    if not DATA_FILE.exists():
        return [{{"id": "row-1", "enabled": True, "name": "Default"}}]
    with open(DATA_FILE, "r", encoding="utf-8") as fh:
        rows = json.load(fh)
    return [row for row in rows if row.get("enabled", True)]


@pytest.mark.parametrize("row", load_rows(), ids=lambda row: str(row.get("name") or row.get("id")))
def {function}(page: Page, row: dict) -> None:
'''

_CAPTURE_HEADER = '''import re
from playwright.sync_api import Page, expect


def {function}(page: Page) -> None:
'''


def _lit(value: Optional[str]) -> str:
    return json.dumps("" if value is None else value, ensure_ascii=False)


def step_id(step: RecordedStep) -> str:
    loc = step.primary_locator
    basis = "|".join(
        [
            str(step.order),
            step.action,
            loc.strategy if loc else "",
            loc.selector if loc else "",
            (loc.name or "") if loc else "",
            step.value or "",
        ]
    )
    return hashlib.sha1(basis.encode("utf-8")).hexdigest()[:8]


def marker_line(identifier: str, description: str, indent: str = "    ") -> str:
    text = " ".join(description.split())
    return f"{indent}{MARKER_PREFIX}{identifier}]" + (f" {text}" if text else "")


def describe_step(step: RecordedStep, locator: Optional[Locator] = None) -> str:
    if step.description.strip():
        return " ".join(step.description.split())
    locator = locator or step.primary_locator
    target = ""
    if locator is not None:
        target = locator.name or locator.selector
        if locator.strategy == "role":
            target = f"{locator.name or ''} {locator.selector}".strip()
    action = step.action
    if action == "navigate":
        return f"Navigate to {step.value or ''}".strip()
    if action == "comment":
        return step.value or "Comment"
    if action == "wait":
        return f"Wait for {target}" if locator else f"Wait {step.value or 1000} ms"
    if action == "press":
        return f"Press {step.value or ''}".strip() + (f" in {target}" if target else "")
    if action == "assert":
        kind = (step.assertion or "to_be_visible").replace("_", " ")
        subject = target or "page"
        return f"Assert {subject} {kind}".strip() + (f" {step.value}" if step.value else "")
    return f"{action.capitalize()} {target}".strip()


def render_step_statement(
    step: RecordedStep,
    locator: Optional[Locator] = None,
    value_expr: Optional[str] = None,
    page: str = "page",
    control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE,
) -> Optional[str]:
    """Render one step as a single Python statement, or ``None`` for comment steps.

    Raises ``ValueError`` when an element action has no locator.
    """
    action = step.action
    locator = locator or step.primary_locator
    value = value_expr if value_expr is not None else _lit(step.value)

    if action == "comment":
        return None
    if action == "navigate":
        return f"{page}.goto({_lit(step.value)})"
    if action == "wait" and locator is None:
        try:
            millis = int(float(step.value or 1000))
        except ValueError:
            millis = 1000
        return f"{page}.wait_for_timeout({millis})"
    if action == "press" and locator is None:
        return f"{page}.keyboard.press({value})"
    if action == "assert":
        kind = step.assertion or "to_be_visible"
        if kind in PAGE_ASSERTIONS:
            return f"expect({page}).{kind}({value})"
        if kind not in ELEMENT_ASSERTIONS:
            raise ValueError(f"Unsupported assertion: {kind}")
        if locator is None:
            raise ValueError(f"Assertion {kind} needs a locator")
        target = render_locator(locator, step.frame, page, control_attribute)
        if kind in ("to_be_visible", "to_be_checked"):
            return f"expect({target}).{kind}()"
        return f"expect({target}).{kind}({value})"

    if locator is None:
        raise ValueError(f"Action {action} needs a locator")
    target = render_locator(locator, step.frame, page, control_attribute)
    if action == "fill":
        return f"{target}.fill({value})"
    if action == "select":
        return f"{target}.select_option({value})"
    if action == "press":
        return f"{target}.press({value})"
    if action == "wait":
        return f"{target}.wait_for()"
    if action in ("click", "dblclick", "check", "uncheck", "hover"):
        return f"{target}.{action}()"
    raise ValueError(f"Unsupported action: {action}")


def navigation_entries(steps: Sequence[RecordedStep]) -> List[Tuple[int, NavEntry]]:
    """Map statement-producing steps to cleanup entries (comment steps produce no statement)."""
    entries = []
    for position, step in enumerate(steps):
        if step.action == "comment":
            continue
        if step.action == "navigate":
            entries.append((position, NavEntry(True, step.value)))
        else:
            entries.append((position, NavEntry(False)))
    return entries


def clean_steps(
    steps: Sequence[RecordedStep],
    auth_domains: Iterable[str] = DEFAULT_AUTH_DOMAINS,
    routing_param: str = DEFAULT_ROUTING_PARAM,
) -> List[RecordedStep]:
    """Step-level navigation cleanup, using the same rules as the source pass."""
    mapped = navigation_entries(steps)
    removed = plan_removals([entry for _, entry in mapped], auth_domains, routing_param)
    dropped = {mapped[i][0] for i in removed}
    return [step for position, step in enumerate(steps) if position not in dropped]


def capture_source(
    steps: Sequence[RecordedStep],
    function: str = "test_example",
    control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE,
) -> Tuple[str, Dict[int, int]]:
    """Codegen-style source for ``steps`` using each step's first locator.

    Returns the source and a map of source line number to step order.
    """
    lines = _CAPTURE_HEADER.format(function=function).rstrip("\n").split("\n")
    line_to_order: Dict[int, int] = {}
    for step in steps:
        try:
            statement = render_step_statement(step, control_attribute=control_attribute)
        except ValueError as exc:
            lines.append(f"    # step {step.order} skipped: {exc}")
            continue
        if statement is None:
            lines.append(f"    # {' '.join((step.value or step.description or '').split())}".rstrip())
        else:
            lines.append(f"    {statement}")
            line_to_order[len(lines)] = step.order
    if not line_to_order:
        lines.append("    pass")
    return "\n".join(lines) + "\n", line_to_order


def _normalise_bindings(bindings: Optional[Bindings]) -> "OrderedDict[str, str]":
    result: "OrderedDict[str, str]" = OrderedDict()
    if not bindings:
        return result
    if isinstance(bindings, Mapping):
        for key, name in bindings.items():
            result[str(key)] = str(name)
        return result
    for item in bindings:
        if isinstance(item, SelectedParameter):
            result[item.id] = item.variable_name
        elif isinstance(item, Mapping):
            result[str(item.get("id"))] = str(item.get("variableName") or item.get("variable_name") or "")
    return result


@dataclass
class _BoundValue:
    order: int
    name: str
    label: str
    value: str
    candidate_id: str


class SpecGenerator:
    def __init__(
        self,
        auth_domains: Iterable[str] = DEFAULT_AUTH_DOMAINS,
        routing_param: str = DEFAULT_ROUTING_PARAM,
        control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE,
    ) -> None:
        self.auth_domains = tuple(auth_domains)
        self.routing_param = routing_param
        self.control_attribute = control_attribute

    def _choose_locator(self, step: RecordedStep, selected: Mapping[int, LocatorChoice]) -> Optional[Locator]:
        choice = selected.get(step.order)
        if isinstance(choice, Locator):
            return choice
        if isinstance(choice, int) and not isinstance(choice, bool):
            if 0 <= choice < len(step.locators):
                return step.locators[choice]
            raise SpecGenerationError(
                f"Step {step.order} has no locator candidate #{choice}", operation="generate"
            )
        return step.primary_locator

    def _bind_values(self, steps: Sequence[RecordedStep], bindings: Mapping[str, str]) -> Dict[int, _BoundValue]:
        if not bindings:
            return {}
        source, line_to_order = capture_source(steps, control_attribute=self.control_attribute)
        bound: Dict[int, _BoundValue] = {}
        matched = set()
        for site in find_value_sites(ast.parse(source)):
            name = bindings.get(site.candidate.id)
            order = line_to_order.get(site.candidate.line)
            if not name or order is None:
                continue
            bound[order] = _BoundValue(order, name, site.candidate.label, site.candidate.original_value, site.candidate.id)
            matched.add(site.candidate.id)
        missing = [key for key in bindings if key not in matched]
        if missing:
            logger.warning("Ignoring parameter bindings with no matching step: %s", ", ".join(missing))
        return bound

    def generate(
        self,
        test_name: str,
        steps: Sequence[RecordedStep],
        module: Optional[str] = None,
        selected_locators: Optional[Mapping[int, LocatorChoice]] = None,
        parameter_bindings: Optional[Bindings] = None,
        now: Optional[datetime] = None,
    ) -> TestBundle:
        display_name = " ".join((test_name or "").split())
        slug = slugify(display_name)
        if not slug or slug in RESERVED_SLUGS or not slug.strip("-"):
            raise SpecGenerationError(f"Test name {test_name!r} does not produce a usable slug", slug=slug, operation="generate")

        ordered = sorted(steps, key=lambda s: s.order)
        kept = clean_steps(ordered, self.auth_domains, self.routing_param)
        selected = dict(selected_locators or {})
        bound = self._bind_values(kept, _normalise_bindings(parameter_bindings))

        body: List[str] = []
        step_meta: List[Dict[str, Any]] = []
        locator_usage: "OrderedDict[Tuple[str, str], List[str]]" = OrderedDict()
        assertions: List[Dict[str, Any]] = []
        statement_count = 0
        for step in kept:
            locator = self._choose_locator(step, selected)
            binding = bound.get(step.order)
            value_expr = parameter_reference(binding.name) if binding else None
            try:
                statement = render_step_statement(step, locator, value_expr, control_attribute=self.control_attribute)
            except ValueError as exc:
                raise SpecGenerationError(f"Step {step.order}: {exc}", slug=slug, operation="generate") from exc
            identifier = step_id(step)
            description = describe_step(step, locator)
            body.append(marker_line(identifier, description))
            if statement is not None:
                body.append(f"    {statement}")
                statement_count += 1
            step_meta.append({"id": identifier, "order": step.order, "action": step.action, "description": description})
            if locator is not None and step.action != "navigate":
                key = (locator.strategy, render_element(locator, self.control_attribute))
                locator_usage.setdefault(key, []).append(identifier)
            if step.action == "assert":
                assertions.append({"description": description, "kind": step.assertion or "to_be_visible"})
        if not statement_count:
            body.append("    pass")

        data_name = f"{slug}Data.json"
        spec_source = (
            _SPEC_HEADER.format(
                title=format_test_name(display_name).replace("\\", "/").replace('"""', "'''"),
                data_name=_lit(data_name),
                function=spec_function_name(slug),
            )
            + "\n".join(body)
            + "\n"
        )

        parameters: List[Dict[str, Any]] = []
        default_row: Dict[str, Any] = {}
        for binding in bound.values():
            if binding.name in default_row:
                continue
            default_row[binding.name] = binding.value
            parameters.append(
                {
                    "name": binding.name,
                    "source": binding.label or f"step {binding.order}",
                    "defaultValue": binding.value,
                    "candidateId": binding.candidate_id,
                }
            )

        generated_at = (now or datetime.now(timezone.utc)).isoformat()
        meta = {
            "testName": display_name,
            "slug": slug,
            "module": module,
            "parameters": parameters,
            "assertions": assertions,
            "dataFileRef": f"../data/{data_name}",
            "specFile": f"{slug}.spec.{SPEC_EXTENSION}",
            "steps": step_meta,
            "locators": [
                {"locator": text, "strategyType": strategy, "steps": ids}
                for (strategy, text), ids in locator_usage.items()
            ],
            "lastRunAt": None,
            "lastStatus": "never_run",
            "externalLinks": [],
            "generatedAt": generated_at,
        }
        markdown = render_meta_markdown(meta, spec_source)
        logger.info("Generated spec %s with %d step(s), %d parameter(s)", slug, len(step_meta), len(parameters))
        return TestBundle(
            slug=slug,
            spec_source=spec_source,
            meta_json=meta,
            meta_markdown=markdown,
            default_row=default_row,
        )


def render_meta_markdown(meta: Mapping[str, Any], spec_source: str) -> str:
    lines = [f"# {meta.get('testName') or meta.get('slug')}", ""]
    lines += ["## Test Intent", ""]
    lines.append(
        f"Replays the recorded flow \"{meta.get('testName')}\" in {len(meta.get('steps') or [])} step(s)"
        + (f", including {len(meta['assertions'])} assertion(s)." if meta.get("assertions") else ".")
    )
    lines += ["", "## Module", "", str(meta.get("module") or "Unassigned"), ""]
    lines += [
        "## Structure",
        "",
        f"- Spec: `{meta.get('specFile')}`",
        f"- Data: `{meta.get('dataFileRef')}` (one row per execution)",
        "",
        "## Steps",
        "",
    ]
    for index, step in enumerate(meta.get("steps") or [], start=1):
        lines.append(f"{index}. {step.get('description')}")
    if not meta.get("steps"):
        lines.append("_No steps recorded._")
    lines += ["", "## Parameters", ""]
    for param in meta.get("parameters") or []:
        lines.append(f"- `{param['name']}` from \"{param['source']}\" (default: {json.dumps(param.get('defaultValue'), ensure_ascii=False)})")
    if not meta.get("parameters"):
        lines.append("_None._")
    lines += ["", "## Key Locators & Strategy", ""]
    grouped: "OrderedDict[str, List[str]]" = OrderedDict()
    for entry in meta.get("locators") or []:
        grouped.setdefault(entry["strategyType"], []).append(entry["locator"])
    for strategy, items in grouped.items():
        lines.append(f"### {strategy}")
        lines.extend(f"- `{item}`" for item in items)
        lines.append("")
    if not grouped:
        lines += ["_None._", ""]
    preview = spec_source.splitlines()[:PREVIEW_LINES]
    lines += ["## Code Preview", "", "```python", *preview, "```", ""]
    return "\n".join(lines)
