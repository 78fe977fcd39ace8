"""Pluggable structural transforms over Python Playwright source.

Passes only see :class:`SourceTransform`; the parsing library (``ast`` here)
stays behind the helpers in this module.
"""

from __future__ import annotations

import ast
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

_LINE_RE = re.compile(r"[^\r\n]*(?:\r\n|\r|\n)|[^\r\n]+\Z")


def source_lines(source: str) -> List[str]:
    """Physical lines with their endings, split only where ``ast`` and ``tokenize`` split.

    Form feeds, ``\\x85`` and ``\\u2028`` stay inside their line.
    """
    return _LINE_RE.findall(source)


@dataclass(frozen=True)
class LineSpan:
    """Half-open 1-based line range ``[start, end)`` in the transformed source."""

    start: int
    end: int

    def to_dict(self) -> Dict[str, int]:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class SourceEdit:
    start: int
    end: int
    text: str


@dataclass
class TransformResult:
    source: str
    changed_spans: List[LineSpan] = field(default_factory=list)
    applied: bool = True
    error: Optional[str] = None


class SourceTransform:
    """Base class for a named pass. Subclasses never raise on bad input."""

    name = ""

    def transform(self, source: str) -> TransformResult:
        raise NotImplementedError


_REGISTRY: Dict[str, Callable[..., SourceTransform]] = {}


def register(name: str, factory: Callable[..., SourceTransform]) -> None:
    _REGISTRY[name] = factory


def available_passes() -> List[str]:
    return sorted(_REGISTRY)


def get_transform(pass_name: str, **options: Any) -> SourceTransform:
    try:
        factory = _REGISTRY[pass_name]
    except KeyError:
        raise KeyError(f"Unknown transform pass: {pass_name}") from None
    return factory(**options)


def apply(pass_name: str, source: str, **options: Any) -> Tuple[str, List[LineSpan]]:
    result = get_transform(pass_name, **options).transform(source)
    if result.error:
        logger.warning("Transform %s not applied: %s", pass_name, result.error)
    return result.source, result.changed_spans


class SourceIndex:
    """Maps ``ast`` (line, utf-8 byte column) positions to string offsets."""

    def __init__(self, source: str) -> None:
        self.source = source
        self.lines = source_lines(source)
        self.line_starts: List[int] = []
        offset = 0
        for line in self.lines:
            self.line_starts.append(offset)
            offset += len(line)
        self.line_starts.append(offset)

    def offset(self, lineno: int, col_offset: int) -> int:
        if lineno - 1 >= len(self.lines):
            return len(self.source)
        line = self.lines[lineno - 1]
        prefix = line.encode("utf-8")[:col_offset].decode("utf-8", errors="ignore")
        return self.line_starts[lineno - 1] + len(prefix)

    def line_start(self, lineno: int) -> int:
        return self.line_starts[min(lineno - 1, len(self.line_starts) - 1)]

    def line_end(self, lineno: int) -> int:
        """Offset just past the newline that ends ``lineno``."""
        return self.line_starts[min(lineno, len(self.line_starts) - 1)]

    def node_span(self, node: ast.AST) -> Tuple[int, int]:
        start = self.offset(node.lineno, node.col_offset)
        end = self.offset(node.end_lineno, node.end_col_offset)
        return start, end

    def text(self, node: ast.AST) -> str:
        start, end = self.node_span(node)
        return self.source[start:end]

    def indentation(self, lineno: int) -> str:
        line = self.lines[lineno - 1] if lineno - 1 < len(self.lines) else ""
        return line[: len(line) - len(line.lstrip(" \t"))]


_BODY_FIELDS = ("body", "orelse", "finalbody")


def child_bodies(stmt: ast.AST) -> Iterator[List[ast.stmt]]:
    for name in _BODY_FIELDS:
        body = getattr(stmt, name, None)
        if isinstance(body, list) and body and isinstance(body[0], ast.stmt):
            yield body
    for handler in getattr(stmt, "handlers", None) or []:
        yield handler.body
    for case in getattr(stmt, "cases", None) or []:
        yield case.body


def walk_statements(body: Sequence[ast.stmt]) -> Iterator[Tuple[ast.stmt, List[ast.stmt]]]:
    """Yield ``(statement, owning body)`` in document order."""
    for stmt in body:
        yield stmt, body  # type: ignore[misc]
        for inner in child_bodies(stmt):
            yield from walk_statements(inner)


def expression_statements(tree: ast.Module) -> List[Tuple[ast.Expr, List[ast.stmt]]]:
    found = [(stmt, owner) for stmt, owner in walk_statements(tree.body) if isinstance(stmt, ast.Expr)]
    found.sort(key=lambda item: (item[0].lineno, item[0].col_offset))
    return found


def unwrap_await(node: ast.AST) -> ast.AST:
    return node.value if isinstance(node, ast.Await) else node


def string_value(node: Optional[ast.AST]) -> Optional[str]:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return node.value
    return None


def keyword_value(call: ast.Call, name: str) -> Optional[ast.AST]:
    for kw in call.keywords:
        if kw.arg == name:
            return kw.value
    return None


def owns_whole_lines(index: SourceIndex, stmt: ast.stmt) -> bool:
    start, end = index.node_span(stmt)
    before = index.source[index.line_start(stmt.lineno) : start]
    after = index.source[end : index.line_end(stmt.end_lineno)]
    after_code = after.split("#", 1)[0]
    return not before.strip() and not after_code.strip()


def removal_edits(index: SourceIndex, doomed: Iterable[Tuple[ast.stmt, List[ast.stmt]]]) -> List[SourceEdit]:
    """Edits deleting statements, leaving ``pass`` where a block would become empty."""
    doomed = list(doomed)
    doomed_ids = {id(stmt) for stmt, _ in doomed}
    emptied: Dict[int, ast.stmt] = {}
    for stmt, owner in doomed:
        if all(id(s) in doomed_ids for s in owner):
            emptied.setdefault(id(owner), owner[0])
    keep_as_pass = {id(stmt) for stmt in emptied.values()}

    edits: List[SourceEdit] = []
    for stmt, _owner in doomed:
        placeholder = id(stmt) in keep_as_pass
        if owns_whole_lines(index, stmt):
            start = index.line_start(stmt.lineno)
            end = index.line_end(stmt.end_lineno)
            text = f"{index.indentation(stmt.lineno)}pass\n" if placeholder else ""
        else:
            start, end = index.node_span(stmt)
            text = "pass"
        edits.append(SourceEdit(start, end, text))
    return edits


def apply_edits(source: str, edits: Iterable[SourceEdit]) -> Tuple[str, List[LineSpan]]:
    """Apply non-overlapping edits and report the touched line spans of the result."""
    ordered = sorted(edits, key=lambda e: (e.start, e.end))
    for prev, cur in zip(ordered, ordered[1:]):
        if cur.start < prev.end:
            raise ValueError("Overlapping source edits")

    pieces: List[str] = []
    spans: List[LineSpan] = []
    cursor = 0
    new_line = 1
    for edit in ordered:
        untouched = source[cursor : edit.start]
        pieces.append(untouched)
        new_line += untouched.count("\n")
        start_line = new_line
        newlines = edit.text.count("\n")
        if not edit.text:
            end_line = start_line
        elif edit.text.endswith("\n"):
            end_line = start_line + newlines
        else:
            end_line = start_line + newlines + 1
        spans.append(LineSpan(start_line, end_line))
        pieces.append(edit.text)
        new_line += newlines
        cursor = edit.end
    pieces.append(source[cursor:])
    return "".join(pieces), spans
