from __future__ import annotations

import ast
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set
from urllib.parse import parse_qs, urlsplit

from ..core.config import DEFAULT_AUTH_DOMAINS, DEFAULT_ROUTING_PARAM
from .source_transform import (
    SourceIndex,
    SourceTransform,
    TransformResult,
    apply_edits,
    expression_statements,
    keyword_value,
    register,
    removal_edits,
    string_value,
    unwrap_await,
)

logger = logging.getLogger(__name__)

_PAGE_NAME_RE = re.compile(r"^page\d*$")


@dataclass(frozen=True)
class NavEntry:
    """A statement reduced to what the cleanup rules need to see."""

    is_navigation: bool
    url: Optional[str] = None


def _hostname(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def is_auth_url(url: str, auth_domains: Iterable[str] = DEFAULT_AUTH_DOMAINS) -> bool:
    host = _hostname(url)
    if not host:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in auth_domains)


def routing_value(url: str, routing_param: str = DEFAULT_ROUTING_PARAM) -> Optional[str]:
    try:
        values = parse_qs(urlsplit(url).query).get(routing_param)
    except ValueError:
        return None
    return values[0] if values else None


def equivalent_targets(url: str, other: str, routing_param: str = DEFAULT_ROUTING_PARAM) -> bool:
    if url == other:
        return True
    mine = routing_value(url, routing_param)
    theirs = routing_value(other, routing_param)
    return mine is not None and theirs is not None and mine == theirs


def plan_removals(
    entries: Sequence[NavEntry],
    auth_domains: Iterable[str] = DEFAULT_AUTH_DOMAINS,
    routing_param: str = DEFAULT_ROUTING_PARAM,
) -> Set[int]:
    """Return the indices of ``entries`` that cleanup drops.

    Navigations with an unknown (non-literal) target are never dropped and
    end any run they interrupt.
    """
    auth_domains = tuple(auth_domains)
    removed: Set[int] = {
        i for i, entry in enumerate(entries) if entry.is_navigation and entry.url and is_auth_url(entry.url, auth_domains)
    }

    remaining = [i for i in range(len(entries)) if i not in removed]
    k = 0
    while k < len(remaining):
        entry = entries[remaining[k]]
        if not (entry.is_navigation and entry.url is not None):
            k += 1
            continue
        j = k
        while j + 1 < len(remaining):
            nxt = entries[remaining[j + 1]]
            if not (nxt.is_navigation and nxt.url == entry.url):
                break
            j += 1
        removed.update(remaining[k:j])
        k = j + 1

    last_target: Optional[str] = None
    previous_is_action = False
    seen_navigation = False
    for i, entry in enumerate(entries):
        if i in removed:
            continue
        if not entry.is_navigation:
            previous_is_action = True
            continue
        if (
            previous_is_action
            and seen_navigation
            and entry.url is not None
            and last_target is not None
            and equivalent_targets(entry.url, last_target, routing_param)
        ):
            removed.add(i)
            continue
        last_target = entry.url
        seen_navigation = True
        previous_is_action = False
    return removed


def _is_page_receiver(node: ast.AST) -> bool:
    if isinstance(node, ast.Name):
        return bool(_PAGE_NAME_RE.match(node.id))
    if isinstance(node, ast.Attribute):
        return node.attr == "page" or bool(_PAGE_NAME_RE.match(node.attr))
    return False


def navigation_entry(stmt: ast.Expr) -> NavEntry:
    call = unwrap_await(stmt.value)
    if not (isinstance(call, ast.Call) and isinstance(call.func, ast.Attribute)):
        return NavEntry(False)
    if call.func.attr != "goto" or not _is_page_receiver(call.func.value):
        return NavEntry(False)
    target = call.args[0] if call.args else keyword_value(call, "url")
    return NavEntry(True, string_value(target))


class NavigationCleanup(SourceTransform):
    name = "navigation-cleanup"

    def __init__(self, auth_domains: Optional[Iterable[str]] = None, routing_param: Optional[str] = None) -> None:
        self.auth_domains = tuple(d.lower() for d in (auth_domains or DEFAULT_AUTH_DOMAINS))
        self.routing_param = routing_param or DEFAULT_ROUTING_PARAM

    def transform(self, source: str) -> TransformResult:
        try:
            tree = ast.parse(source)
            statements = expression_statements(tree)
            entries = [navigation_entry(stmt) for stmt, _ in statements]
            removed = plan_removals(entries, self.auth_domains, self.routing_param)
            if not removed:
                return TransformResult(source, [], applied=True)
            index = SourceIndex(source)
            doomed = [statements[i] for i in sorted(removed)]
            updated, spans = apply_edits(source, removal_edits(index, doomed))
        except (SyntaxError, ValueError, RecursionError) as exc:
            logger.warning("Navigation cleanup skipped: %s", exc)
            return TransformResult(source, [], applied=False, error=str(exc))
        logger.info("Navigation cleanup removed %d statement(s)", len(removed))
        return TransformResult(updated, spans, applied=True)


def cleanup(source: str, auth_domains: Optional[Iterable[str]] = None, routing_param: Optional[str] = None) -> str:
    """Drop auth redirects and redundant navigations; returns ``source`` unchanged on parse failure."""
    return NavigationCleanup(auth_domains, routing_param).transform(source).source


register(NavigationCleanup.name, NavigationCleanup)


def navigation_urls(source: str) -> List[str]:
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return []
    urls = []
    for stmt, _ in expression_statements(tree):
        entry = navigation_entry(stmt)
        if entry.is_navigation and entry.url:
            urls.append(entry.url)
    return urls
