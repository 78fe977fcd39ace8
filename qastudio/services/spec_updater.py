"""In-place step edits on generated specs.

Steps are addressed by anchors, never by line bookkeeping:

* marker mode: each step starts at a ``# [step <id>] <description>`` comment
  line and owns every line up to the next marker (the last step runs to the
  end of the test function);
* fingerprint mode, for specs without markers: every top-level statement of
  the test function is a step, identified by a hash of its syntax tree.

Every operation either returns a source that still parses or raises
:class:`StepAnchorError`; text outside the affected step regions is copied
byte for byte.
"""

from __future__ import annotations

import ast
import hashlib
import io
import logging
import re
import textwrap
import tokenize
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..core.errors import SpecUpdateError, StepAnchorError
from ..core.file_utils import locked_bundle, read_text
from ..core.models import RecordedStep
from ..generators.locator_generator import locators_in_source, render_element
from ..generators.spec_generator import marker_line, render_step_statement
from ..transforms.source_transform import LineSpan, SourceIndex, owns_whole_lines, source_lines
from .bundle_store import BundleStore

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"^#\s*\[step\s+([A-Za-z0-9_.-]+)\]\s?(.*)$")

StepRef = Union[int, str]

MARKER = "marker"
FINGERPRINT = "fingerprint"

_METHOD_ACTIONS = {
    "goto": "navigate",
    "fill": "fill",
    "type": "fill",
    "press_sequentially": "fill",
    "select_option": "select",
    "click": "click",
    "dblclick": "dblclick",
    "check": "check",
    "uncheck": "uncheck",
    "press": "press",
    "hover": "hover",
    "wait_for": "wait",
    "wait_for_timeout": "wait",
}


@dataclass
class StepInfo:
    id: str
    index: int
    description: str
    start_line: int  # 1-based, inclusive
    end_line: int  # 1-based, exclusive
    text: str
    body: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "index": self.index,
            "description": self.description,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "body": self.body,
        }


@dataclass
class SpecEdit:
    updated_source: str
    updated_line_spans: List[LineSpan]
    step: Optional[StepInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updatedSource": self.updated_source,
            "updatedLineSpans": [span.to_dict() for span in self.updated_line_spans],
            "step": self.step.to_dict() if self.step else None,
        }


@dataclass
class _Layout:
    mode: str
    lines: List[str]
    steps: List[StepInfo]
    indent: str
    insert_line: int  # where an appended step goes when there are no steps
    container: ast.AST
    body_statements: List[ast.stmt]


def _fail(message: str, operation: str) -> StepAnchorError:
    return StepAnchorError(message, operation=operation)


def _parse(source: str, operation: str) -> ast.Module:
    try:
        return ast.parse(source)
    except SyntaxError as exc:
        raise _fail(f"Spec source does not parse: {exc.msg} (line {exc.lineno})", operation) from exc


def _scan_markers(source: str, operation: str) -> List[Tuple[int, str, str]]:
    markers = []
    try:
        tokens = list(tokenize.generate_tokens(io.StringIO(source).readline))
    except (tokenize.TokenError, IndentationError) as exc:
        raise _fail(f"Spec source cannot be tokenized: {exc}", operation) from exc
    for tok in tokens:
        if tok.type != tokenize.COMMENT:
            continue
        match = _MARKER_RE.match(tok.string)
        if not match:
            continue
        if tok.line[: tok.start[1]].strip():
            raise _fail(f"Step marker on line {tok.start[0]} shares its line with code", operation)
        markers.append((tok.start[0], match.group(1), match.group(2).strip()))
    return markers


def _functions(tree: ast.Module) -> List[ast.AST]:
    return [node for node in ast.walk(tree) if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef))]


def _containing_function(tree: ast.Module, line: int) -> Optional[ast.AST]:
    best = None
    for func in _functions(tree):
        if func.lineno <= line and line <= max(func.end_lineno, _last_body_line(func)):
            if best is None or func.lineno > best.lineno:
                best = func
    return best


def _last_body_line(func: ast.AST) -> int:
    return func.body[-1].end_lineno if func.body else func.end_lineno


def _test_function(tree: ast.Module, operation: str) -> ast.AST:
    functions = [f for f in tree.body if isinstance(f, (ast.FunctionDef, ast.AsyncFunctionDef))]
    tests = [f for f in functions if f.name.startswith("test")]
    candidates = tests or functions
    if len(candidates) != 1:
        raise _fail(f"Expected exactly one test function, found {len(candidates)}", operation)
    return candidates[0]


def _is_placeholder(stmt: ast.stmt, position: int) -> bool:
    if isinstance(stmt, ast.Pass):
        return True
    return (
        position == 0
        and isinstance(stmt, ast.Expr)
        and isinstance(stmt.value, ast.Constant)
        and isinstance(stmt.value.value, str)
    )


def _line_indent(line: str) -> str:
    return line[: len(line) - len(line.lstrip(" \t"))]


def _dedented_body(text: str) -> str:
    return textwrap.dedent(text).strip("\n")


def _fingerprint(stmt: ast.stmt) -> str:
    return "fp-" + hashlib.sha1(ast.dump(stmt).encode("utf-8")).hexdigest()[:8]


def _marker_layout(source: str, tree: ast.Module, lines: List[str], markers, operation: str) -> _Layout:
    first_line = markers[0][0]
    container = _containing_function(tree, first_line)
    if container is None:
        raise _fail(f"Step marker on line {first_line} is outside any function", operation)
    body_end = _last_body_line(container)
    for line, _, _ in markers:
        owner = _containing_function(tree, line)
        if owner is not container and not (owner is None and line > body_end):
            raise _fail("Step markers are spread over several functions", operation)
        for stmt in container.body:
            if stmt.lineno < line <= stmt.end_lineno:
                raise _fail(f"Step marker on line {line} is nested inside a block", operation)

    region_end = max(body_end, markers[-1][0]) + 1
    steps: List[StepInfo] = []
    for position, (line, identifier, description) in enumerate(markers):
        end = markers[position + 1][0] if position + 1 < len(markers) else region_end
        text = "".join(lines[line - 1 : end - 1])
        steps.append(
            StepInfo(
                id=identifier,
                index=position,
                description=description,
                start_line=line,
                end_line=end,
                text=text,
                body=_dedented_body("".join(lines[line : end - 1])),
            )
        )
    indent = _line_indent(lines[first_line - 1])
    return _Layout(MARKER, lines, steps, indent, region_end, container, list(container.body))


def _fingerprint_layout(source: str, tree: ast.Module, lines: List[str], operation: str) -> _Layout:
    container = _test_function(tree, operation)
    index = SourceIndex(source)
    steps: List[StepInfo] = []
    seen: Dict[str, int] = {}
    for position, stmt in enumerate(container.body):
        if _is_placeholder(stmt, position):
            continue
        if not owns_whole_lines(index, stmt):
            raise _fail(f"Statement on line {stmt.lineno} shares its line with other code", operation)
        base = _fingerprint(stmt)
        seen[base] = seen.get(base, 0) + 1
        identifier = base if seen[base] == 1 else f"{base}-{seen[base]}"
        text = "".join(lines[stmt.lineno - 1 : stmt.end_lineno])
        steps.append(
            StepInfo(
                id=identifier,
                index=len(steps),
                description="",
                start_line=stmt.lineno,
                end_line=stmt.end_lineno + 1,
                text=text,
                body=_dedented_body(text),
            )
        )
    indent = _line_indent(lines[container.body[0].lineno - 1])
    return _Layout(FINGERPRINT, lines, steps, indent, _last_body_line(container) + 1, container, list(container.body))


def _layout(source: str, operation: str) -> _Layout:
    tree = _parse(source, operation)
    lines = source_lines(source)
    markers = _scan_markers(source, operation)
    if markers:
        return _marker_layout(source, tree, lines, markers, operation)
    return _fingerprint_layout(source, tree, lines, operation)


def _resolve(layout: _Layout, ref: StepRef, operation: str) -> StepInfo:
    if isinstance(ref, bool):
        raise _fail(f"Invalid step reference: {ref!r}", operation)
    if isinstance(ref, int):
        if 0 <= ref < len(layout.steps):
            return layout.steps[ref]
        raise _fail(f"Step index {ref} is out of range (0..{len(layout.steps) - 1})", operation)
    matches = [step for step in layout.steps if step.id == ref]
    if not matches:
        raise _fail(f"No step with id {ref!r}", operation)
    if len(matches) > 1:
        raise _fail(f"Step id {ref!r} appears {len(matches)} times", operation)
    return matches[0]


def _indent_body(body: str, indent: str) -> str:
    out = []
    for line in body.split("\n"):
        out.append(f"{indent}{line}\n" if line.strip() else "\n")
    return "".join(out)


def _validated_body(body: str, operation: str, allow_empty: bool) -> str:
    text = _dedented_body(body or "")
    try:
        parsed = ast.parse(text)
    except SyntaxError as exc:
        raise SpecUpdateError(f"New step body does not parse: {exc.msg}", operation=operation) from exc
    if not parsed.body and not allow_empty:
        raise SpecUpdateError("New step body has no statements", operation=operation)
    return text


def _offset(lines: List[str], line: int) -> int:
    return sum(len(text) for text in lines[: line - 1])


def _splice(source: str, lines: List[str], start_line: int, end_line: int, text: str) -> Tuple[str, LineSpan]:
    start = _offset(lines, start_line)
    end = _offset(lines, end_line)
    # Appending after a final line that has no newline.
    prefix = "\n" if text and start == len(source) and source and not source.endswith("\n") else ""
    updated = source[:start] + prefix + text + source[end:]
    span_end = start_line + text.count("\n") + (0 if not text or text.endswith("\n") else 1)
    return updated, LineSpan(start_line, span_end)


def _check_result(updated: str, operation: str) -> None:
    try:
        ast.parse(updated)
    except SyntaxError as exc:
        raise _fail(f"Edit would leave the spec unparsable: {exc.msg} (line {exc.lineno})", operation) from exc


def _step_at(updated: str, line: int, operation: str) -> Optional[StepInfo]:
    for step in _layout(updated, operation).steps:
        if step.start_line == line:
            return step
    return None


def _removes_every_statement(layout: _Layout, start_line: int, end_line: int) -> bool:
    return all(start_line <= stmt.lineno and stmt.end_lineno < end_line for stmt in layout.body_statements)


def new_step_id(body: str, existing: Sequence[str]) -> str:
    taken = set(existing)
    counter = len(taken)
    while True:
        candidate = hashlib.sha1(f"{body}|{counter}".encode("utf-8")).hexdigest()[:8]
        if candidate not in taken:
            return candidate
        counter += 1


def list_steps(source: str) -> List[StepInfo]:
    return _layout(source, "list-steps").steps


def add_step(
    source: str,
    body: str,
    index: Optional[int] = None,
    description: str = "",
    step_id: Optional[str] = None,
) -> SpecEdit:
    """Insert a step before ``index`` (append when ``None``)."""
    operation = "add-step"
    layout = _layout(source, operation)
    count = len(layout.steps)
    position = count if index is None else index
    if isinstance(position, bool) or not 0 <= position <= count:
        raise _fail(f"Insert position {index} is out of range (0..{count})", operation)

    use_markers = layout.mode == MARKER or count == 0
    text = _validated_body(body, operation, allow_empty=use_markers)
    if use_markers:
        identifier = step_id or new_step_id(text, [s.id for s in layout.steps])
        if any(s.id == identifier for s in layout.steps):
            raise _fail(f"Step id {identifier!r} already exists", operation)
        block = marker_line(identifier, description, layout.indent) + "\n" + (_indent_body(text, layout.indent) if text else "")
    else:
        block = _indent_body(text, layout.indent)

    if position < count:
        at = layout.steps[position].start_line
    elif count:
        at = layout.steps[-1].end_line
    else:
        at = layout.insert_line
    updated, span = _splice(source, layout.lines, at, at, block)
    _check_result(updated, operation)
    return SpecEdit(updated, [span], _step_at(updated, span.start, operation))


def delete_step(source: str, ref: StepRef) -> SpecEdit:
    operation = "delete-step"
    layout = _layout(source, operation)
    step = _resolve(layout, ref, operation)
    replacement = ""
    if _removes_every_statement(layout, step.start_line, step.end_line):
        replacement = f"{layout.indent}pass\n"
    updated, span = _splice(source, layout.lines, step.start_line, step.end_line, replacement)
    _check_result(updated, operation)
    return SpecEdit(updated, [span], step)


def update_step(source: str, ref: StepRef, new_body: str, description: Optional[str] = None) -> SpecEdit:
    operation = "update-step"
    layout = _layout(source, operation)
    step = _resolve(layout, ref, operation)
    text = _validated_body(new_body, operation, allow_empty=layout.mode == MARKER)
    if layout.mode == MARKER:
        label = step.description if description is None else description
        block = marker_line(step.id, label, layout.indent) + "\n" + (_indent_body(text, layout.indent) if text else "")
        if not text and _removes_every_statement(layout, step.start_line, step.end_line):
            block += f"{layout.indent}pass\n"
    else:
        block = _indent_body(text, layout.indent)
    updated, span = _splice(source, layout.lines, step.start_line, step.end_line, block)
    _check_result(updated, operation)
    return SpecEdit(updated, [span], _step_at(updated, span.start, operation))


def reorder_steps(source: str, from_range: Union[int, Tuple[int, int]], to_index: int) -> SpecEdit:
    """Move steps ``[start, stop)`` so the first of them lands at ``to_index``.

    ``to_index`` counts positions in the list after the moved block is taken out.
    """
    operation = "reorder-steps"
    layout = _layout(source, operation)
    count = len(layout.steps)
    start, stop = (from_range, from_range + 1) if isinstance(from_range, int) else from_range
    if not (0 <= start < stop <= count):
        raise _fail(f"Step range [{start}, {stop}) is out of range for {count} step(s)", operation)
    rest = [i for i in range(count) if not start <= i < stop]
    if not 0 <= to_index <= len(rest):
        raise _fail(f"Target position {to_index} is out of range (0..{len(rest)})", operation)
    order = rest[:to_index] + list(range(start, stop)) + rest[to_index:]
    if order == list(range(count)):
        return SpecEdit(source, [], None)

    changed = [slot for slot, original in enumerate(order) if slot != original]
    first, last = changed[0], changed[-1]
    texts = [layout.steps[i].text for i in order]
    for slot in range(first, last + 1):
        if slot < count - 1 and not texts[slot].endswith("\n"):
            texts[slot] += "\n"

    lines = layout.lines
    pieces = [source[: _offset(lines, layout.steps[first].start_line)]]
    for slot in range(first, last + 1):
        pieces.append(texts[slot])
        if slot < last:
            gap_start = _offset(lines, layout.steps[slot].end_line)
            gap_end = _offset(lines, layout.steps[slot + 1].start_line)
            pieces.append(source[gap_start:gap_end])
    pieces.append(source[_offset(lines, layout.steps[last].end_line) :])
    updated = "".join(pieces)
    _check_result(updated, operation)

    new_layout = _layout(updated, operation)
    span = LineSpan(new_layout.steps[first].start_line, new_layout.steps[last].end_line)
    return SpecEdit(updated, [span], new_layout.steps[first])


def replace_in_steps(source: str, old: str, new: str) -> Tuple[SpecEdit, int]:
    """Replace ``old`` with ``new`` inside step regions only; returns the edit and the hit count."""
    operation = "update-locator"
    if not old:
        raise SpecUpdateError("Locator text to replace is empty", operation=operation)
    layout = _layout(source, operation)
    pieces = []
    spans: List[LineSpan] = []
    cursor = 0
    hits = 0
    line_delta = 0
    for step in layout.steps:
        found = step.text.count(old)
        if not found:
            continue
        start = _offset(layout.lines, step.start_line)
        end = _offset(layout.lines, step.end_line)
        replaced = step.text.replace(old, new)
        pieces.append(source[cursor:start])
        pieces.append(replaced)
        cursor = end
        hits += found
        new_start = step.start_line + line_delta
        line_delta += replaced.count("\n") - step.text.count("\n")
        spans.append(LineSpan(new_start, step.end_line + line_delta))
    if not hits:
        return SpecEdit(source, [], None), 0
    pieces.append(source[cursor:])
    updated = "".join(pieces)
    _check_result(updated, operation)
    return SpecEdit(updated, spans, None), hits


_EXPECT_RE = re.compile(r"\bexpect\(")
_ASSERT_KIND_RE = re.compile(r"\)\.(to_\w+)\(")


def infer_action(body: str) -> str:
    if _EXPECT_RE.search(body):
        return "assert"
    try:
        tree = ast.parse(body)
    except SyntaxError:
        return "custom"
    if not tree.body:
        return "comment"
    for node in ast.walk(tree):
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute):
            action = _METHOD_ACTIONS.get(node.func.attr)
            if action:
                return action
    return "custom"


class SpecUpdater:
    """Apply step edits to bundles on disk and keep their meta.json step list current."""

    def __init__(self, bundle_root: Path) -> None:
        self.store = BundleStore(bundle_root)

    def list_steps(self, slug: str) -> List[StepInfo]:
        paths = self.store.require_complete(slug, "list-steps")
        try:
            return list_steps(read_text(paths.spec))
        except StepAnchorError as exc:
            exc.slug, exc.path = slug, str(paths.spec)
            raise

    def add_step(
        self,
        slug: str,
        body: Optional[str] = None,
        index: Optional[int] = None,
        description: str = "",
        step: Optional[RecordedStep] = None,
    ) -> SpecEdit:
        if step is not None:
            try:
                body = render_step_statement(step) or ""
            except ValueError as exc:
                raise SpecUpdateError(str(exc), slug=slug, operation="add-step") from exc
            description = description or step.description
        if body is None:
            raise SpecUpdateError("A step body or recorded step is required", slug=slug, operation="add-step")
        return self._apply(slug, "add-step", lambda src: add_step(src, body, index, description))

    def delete_step(self, slug: str, ref: StepRef) -> SpecEdit:
        return self._apply(slug, "delete-step", lambda src: delete_step(src, ref))

    def update_step(self, slug: str, ref: StepRef, new_body: str, description: Optional[str] = None) -> SpecEdit:
        return self._apply(slug, "update-step", lambda src: update_step(src, ref, new_body, description))

    def reorder_steps(self, slug: str, from_range: Union[int, Tuple[int, int]], to_index: int) -> SpecEdit:
        return self._apply(slug, "reorder-steps", lambda src: reorder_steps(src, from_range, to_index))

    def _apply(self, slug: str, operation: str, edit) -> SpecEdit:
        paths = self.store.require_complete(slug, operation)
        with locked_bundle(paths.directory):
            source = read_text(paths.spec)
            try:
                result = edit(source)
            except SpecUpdateError as exc:
                exc.slug, exc.path, exc.operation = slug, str(paths.spec), exc.operation or operation
                raise
            if result.updated_source == source:
                return result
            meta = self.store.read_meta(slug, operation)
            self.store.write_spec_and_meta(slug, result.updated_source, refresh_meta(meta, result.updated_source), operation)
        logger.info("%s applied to %s", operation, slug)
        return result


def refresh_meta(meta: Dict[str, Any], source: str) -> Dict[str, Any]:
    """Recompute the step list and locator inventory of ``meta`` from ``source``."""
    previous = {item.get("id"): item for item in meta.get("steps") or [] if isinstance(item, dict)}
    steps = []
    assertions = []
    locators: Dict[Tuple[str, str], List[str]] = {}
    for step in list_steps(source):
        known = previous.get(step.id) or {}
        action = infer_action(step.body) if step.body else known.get("action", "comment")
        description = step.description or known.get("description", "")
        steps.append({"id": step.id, "order": step.index, "action": action, "description": description})
        if action == "assert":
            match = _ASSERT_KIND_RE.search(step.body)
            assertions.append({"description": description, "kind": match.group(1) if match else "to_be_visible"})
        for locator in locators_in_source(step.body):
            locators.setdefault((locator.strategy, render_element(locator)), []).append(step.id)
    updated = dict(meta)
    updated["steps"] = steps
    updated["assertions"] = assertions
    updated["locators"] = [
        {"locator": text, "strategyType": strategy, "steps": ids} for (strategy, text), ids in locators.items()
    ]
    updated["updatedAt"] = datetime.now(timezone.utc).isoformat()
    return updated
