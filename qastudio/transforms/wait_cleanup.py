from __future__ import annotations

import ast
import logging
from typing import List, Optional, Tuple

from .source_transform import (
    SourceIndex,
    SourceTransform,
    TransformResult,
    apply_edits,
    child_bodies,
    register,
    removal_edits,
    unwrap_await,
)

logger = logging.getLogger(__name__)

TIMEOUT = "timeout"
CONDITION = "condition"

# Waits that block on page or element state.
_CONDITION_WAITS = frozenset({"wait_for_load_state", "wait_for_selector", "wait_for_url", "wait_for"})


def wait_kind(stmt: ast.stmt) -> Optional[str]:
    """``"timeout"`` for ``page.wait_for_timeout(...)``, ``"condition"`` for stronger waits."""
    if not isinstance(stmt, ast.Expr):
        return None
    call = unwrap_await(stmt.value)
    if not (isinstance(call, ast.Call) and isinstance(call.func, ast.Attribute)):
        return None
    if call.func.attr == "wait_for_timeout":
        return TIMEOUT
    if call.func.attr in _CONDITION_WAITS:
        return CONDITION
    return None


def _adjacent(index: SourceIndex, first: ast.stmt, second: ast.stmt) -> bool:
    """Nothing but whitespace separates the two; a comment or step marker keeps them apart."""
    _, end = index.node_span(first)
    start, _ = index.node_span(second)
    return not index.source[end:start].replace(";", " ").strip()


def plan_wait_removals(index: SourceIndex, body: List[ast.stmt]) -> List[Tuple[ast.stmt, List[ast.stmt]]]:
    doomed: List[Tuple[ast.stmt, List[ast.stmt]]] = []
    previous: Optional[ast.stmt] = None
    previous_kind: Optional[str] = None
    for stmt in body:
        kind = wait_kind(stmt)
        if kind == TIMEOUT and previous_kind is not None and _adjacent(index, previous, stmt):
            # The first wait of a run stays.
            doomed.append((stmt, body))
            previous = stmt
            continue
        for inner in child_bodies(stmt):
            doomed.extend(plan_wait_removals(index, inner))
        previous, previous_kind = stmt, kind
    return doomed


class WaitCleanup(SourceTransform):
    """Collapse consecutive ``wait_for_timeout`` calls and drop one that follows a stronger wait."""

    name = "wait-cleanup"

    def transform(self, source: str) -> TransformResult:
        try:
            tree = ast.parse(source)
            index = SourceIndex(source)
            doomed = plan_wait_removals(index, tree.body)
            if not doomed:
                return TransformResult(source, [], applied=True)
            updated, spans = apply_edits(source, removal_edits(index, doomed))
        except (SyntaxError, ValueError, RecursionError) as exc:
            logger.warning("Wait cleanup skipped: %s", exc)
            return TransformResult(source, [], applied=False, error=str(exc))
        logger.info("Wait cleanup removed %d statement(s)", len(doomed))
        return TransformResult(updated, spans, applied=True)


def wait_cleanup(source: str) -> str:
    """Drop redundant fixed sleeps; returns ``source`` unchanged on parse failure."""
    return WaitCleanup().transform(source).source


register(WaitCleanup.name, WaitCleanup)
