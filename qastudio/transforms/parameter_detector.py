from __future__ import annotations

import ast
import hashlib
import json
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from ..core.identifiers import suggested_parameter_name
from ..core.models import ParameterCandidate
from .source_transform import (
    SourceEdit,
    SourceIndex,
    SourceTransform,
    TransformResult,
    apply_edits,
    keyword_value,
    register,
    string_value,
    unwrap_await,
)

logger = logging.getLogger(__name__)

FILL_METHODS = frozenset({"fill", "type", "press_sequentially"})
SELECT_METHODS = frozenset({"select_option"})
LABEL_SEARCH_DEPTH = 10


@dataclass
class ValueSite:
    candidate: ParameterCandidate
    node: ast.expr


def _value_node(call: ast.Call, method: str) -> Optional[ast.expr]:
    if call.args and string_value(call.args[-1]) is not None:
        return call.args[-1]
    names = ("value", "label") if method in SELECT_METHODS else ("value",)
    for name in names:
        node = keyword_value(call, name)
        if string_value(node) is not None:
            return node  # type: ignore[return-value]
    return None


def _label_from_call(call: ast.Call) -> Optional[str]:
    if not isinstance(call.func, ast.Attribute):
        return None
    method = call.func.attr
    if method in ("get_by_label", "get_by_placeholder"):
        return string_value(call.args[0]) if call.args else string_value(keyword_value(call, "text"))
    if method == "get_by_role":
        return string_value(keyword_value(call, "name"))
    return None


class _Assignments:
    """Latest assignment of each simple name, looked up by line."""

    def __init__(self, tree: ast.AST) -> None:
        self._by_name: Dict[str, List[Tuple[int, ast.expr]]] = {}
        for node in ast.walk(tree):
            if isinstance(node, ast.Assign) and len(node.targets) == 1 and isinstance(node.targets[0], ast.Name):
                self._by_name.setdefault(node.targets[0].id, []).append((node.lineno, node.value))
            elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name) and node.value is not None:
                self._by_name.setdefault(node.target.id, []).append((node.lineno, node.value))
        for items in self._by_name.values():
            items.sort(key=lambda item: item[0])

    def resolve(self, name: str, before_line: int) -> Optional[ast.expr]:
        found = None
        for lineno, value in self._by_name.get(name, ()):
            if lineno >= before_line:
                break
            found = value
        return found


def find_label(receiver: ast.AST, assignments: _Assignments, line: int) -> str:
    node: Optional[ast.AST] = receiver
    depth = 0
    while node is not None and depth < LABEL_SEARCH_DEPTH:
        depth += 1
        node = unwrap_await(node)
        if isinstance(node, ast.Call):
            label = _label_from_call(node)
            if label is not None:
                return label
            node = node.func.value if isinstance(node.func, ast.Attribute) else None
        elif isinstance(node, ast.Attribute):
            node = node.value
        elif isinstance(node, ast.Name):
            resolved = assignments.resolve(node.id, line)
            line = getattr(resolved, "lineno", line)
            node = resolved
        else:
            break
    return ""


def _candidate_id(label: str, value: str, occurrence: int) -> str:
    digest = hashlib.sha1(f"{label}\x1f{value}\x1f{occurrence}".encode("utf-8")).hexdigest()
    return f"param-{digest[:10]}"


def find_value_sites(tree: ast.AST) -> List[ValueSite]:
    assignments = _Assignments(tree)
    calls = [
        node
        for node in ast.walk(tree)
        if isinstance(node, ast.Call)
        and isinstance(node.func, ast.Attribute)
        and node.func.attr in FILL_METHODS | SELECT_METHODS
    ]
    calls.sort(key=lambda c: (c.lineno, c.col_offset))

    seen: Counter = Counter()
    sites: List[ValueSite] = []
    for call in calls:
        method = call.func.attr  # type: ignore[union-attr]
        value_node = _value_node(call, method)
        if value_node is None:
            continue
        value = string_value(value_node) or ""
        label = find_label(call.func.value, assignments, call.lineno)  # type: ignore[union-attr]
        occurrence = seen[(label, value)]
        seen[(label, value)] += 1
        candidate = ParameterCandidate(
            id=_candidate_id(label, value, occurrence),
            label=label,
            original_value=value,
            suggested_name=suggested_parameter_name(label, value),
            line=call.lineno,
            method="select" if method in SELECT_METHODS else "fill",
        )
        sites.append(ValueSite(candidate, value_node))
    return sites


def detect(source: str) -> List[ParameterCandidate]:
    """Propose one parameter per literal fill/select value, in document order."""
    try:
        tree = ast.parse(source)
        return [site.candidate for site in find_value_sites(tree)]
    except (SyntaxError, ValueError, RecursionError) as exc:
        logger.warning("Parameter detection skipped: %s", exc)
        return []


def parameter_reference(variable_name: str, row_name: str = "row") -> str:
    return f"{row_name}[{json.dumps(variable_name, ensure_ascii=False)}]"


class Parameterize(SourceTransform):
    """Replace bound literal values with data-row lookups."""

    name = "parameterize"

    def __init__(self, bindings: Optional[Mapping[str, str]] = None, row_name: str = "row") -> None:
        self.bindings = dict(bindings or {})
        self.row_name = row_name
        self.unmatched: List[str] = []

    def transform(self, source: str) -> TransformResult:
        if not self.bindings:
            return TransformResult(source, [], applied=True)
        try:
            tree = ast.parse(source)
            index = SourceIndex(source)
            edits = []
            matched = set()
            for site in find_value_sites(tree):
                variable = self.bindings.get(site.candidate.id)
                if not variable:
                    continue
                start, end = index.node_span(site.node)
                edits.append(SourceEdit(start, end, parameter_reference(variable, self.row_name)))
                matched.add(site.candidate.id)
            self.unmatched = sorted(set(self.bindings) - matched)
            if self.unmatched:
                logger.warning("Parameter bindings without a matching value: %s", ", ".join(self.unmatched))
            updated, spans = apply_edits(source, edits)
        except (SyntaxError, ValueError, RecursionError) as exc:
            logger.warning("Parameterize skipped: %s", exc)
            return TransformResult(source, [], applied=False, error=str(exc))
        return TransformResult(updated, spans, applied=True)


register(Parameterize.name, Parameterize)
