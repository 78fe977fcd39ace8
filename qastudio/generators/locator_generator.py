from __future__ import annotations

import ast
import json
import re
from typing import List, Optional, Sequence, Tuple

from ..core.config import DEFAULT_CONTROL_ATTRIBUTE
from ..core.models import Locator

STRONG_STRATEGIES = frozenset({"role", "label", "placeholder", "text"})
MODERATE_STRATEGIES = frozenset({"testid", "controlname"})

_STRUCTURAL_CSS_RE = re.compile(r":nth-(?:child|of-type|last-child)|:(?:first|last)-child|>|~|\+")
_ATTRIBUTE_CSS_RE = re.compile(r"[\[.#]")

# Inventory fallback for bundles whose meta.json lost its locator list.
_STRING = r"\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*'"
_LOCATOR_CALL_RE = re.compile(
    r"\.(get_by_role|get_by_label|get_by_placeholder|get_by_text|get_by_test_id|locator)"
    r"\((?:[^()\"']|" + _STRING + r")*\)"
)

_METHOD_STRATEGY = {
    "get_by_role": "role",
    "get_by_label": "label",
    "get_by_placeholder": "placeholder",
    "get_by_text": "text",
    "get_by_test_id": "testid",
}


def _lit(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def render_element(locator: Locator, control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE) -> str:
    """Render the element part of a locator, e.g. ``get_by_role("button", name="Save")``."""
    strategy = locator.strategy
    exact = ", exact=True" if locator.exact else ""
    if strategy == "role":
        name = f", name={_lit(locator.name)}" if locator.name else ""
        return f"get_by_role({_lit(locator.selector)}{name}{exact})"
    if strategy == "label":
        return f"get_by_label({_lit(locator.selector)}{exact})"
    if strategy == "placeholder":
        return f"get_by_placeholder({_lit(locator.selector)}{exact})"
    if strategy == "text":
        return f"get_by_text({_lit(locator.selector)}{exact})"
    if strategy == "testid":
        return f"get_by_test_id({_lit(locator.selector)})"
    if strategy == "controlname":
        return f"locator({_lit(control_selector(locator.selector, control_attribute))})"
    if strategy == "xpath":
        selector = locator.selector
        if not selector.startswith("xpath="):
            selector = f"xpath={selector}"
        return f"locator({_lit(selector)})"
    return f"locator({_lit(locator.selector)})"


def control_selector(name: str, control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'[{control_attribute}="{escaped}"]'


def render_locator(
    locator: Locator,
    frame: Sequence[str] = (),
    page: str = "page",
    control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE,
) -> str:
    chain = page
    for frame_selector in frame:
        chain += f".frame_locator({_lit(frame_selector)})"
    return f"{chain}.{render_element(locator, control_attribute)}"


def strategy_strength(locator: Locator) -> str:
    """Classify a locator as ``strong``, ``moderate`` or ``weak``."""
    if locator.flagged:
        return "weak"
    if locator.strategy in STRONG_STRATEGIES:
        return "strong"
    if locator.strategy in MODERATE_STRATEGIES:
        return "moderate"
    if locator.strategy == "css":
        selector = locator.selector
        if _ATTRIBUTE_CSS_RE.search(selector) and not _STRUCTURAL_CSS_RE.search(selector):
            return "moderate"
    return "weak"


def _classify_locator_argument(selector: str, control_attribute: str) -> Locator:
    if selector.startswith("xpath=") or selector.startswith("//") or selector.startswith("(//"):
        return Locator("xpath", selector[len("xpath="):] if selector.startswith("xpath=") else selector)
    match = re.fullmatch(r"\[" + re.escape(control_attribute) + r"=[\"'](.*)[\"']\]", selector)
    if match:
        return Locator("controlname", match.group(1))
    if selector.startswith("css="):
        selector = selector[len("css="):]
    return Locator("css", selector)


def _str_arg(call: ast.Call, position: int = 0, keyword: Optional[str] = None) -> Optional[str]:
    if len(call.args) > position and isinstance(call.args[position], ast.Constant):
        value = call.args[position].value
        return value if isinstance(value, str) else None
    if keyword:
        for kw in call.keywords:
            if kw.arg == keyword and isinstance(kw.value, ast.Constant) and isinstance(kw.value.value, str):
                return kw.value.value
    return None


def _kw_bool(call: ast.Call, name: str) -> bool:
    for kw in call.keywords:
        if kw.arg == name and isinstance(kw.value, ast.Constant):
            return bool(kw.value.value)
    return False


def locator_from_call(call: ast.Call, control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE) -> Optional[Locator]:
    if not isinstance(call.func, ast.Attribute):
        return None
    method = call.func.attr
    exact = _kw_bool(call, "exact")
    if method == "get_by_role":
        role = _str_arg(call, keyword="role")
        if role is None:
            return None
        name = None
        for kw in call.keywords:
            if kw.arg == "name" and isinstance(kw.value, ast.Constant) and isinstance(kw.value.value, str):
                name = kw.value.value
        return Locator("role", role, name=name, exact=exact)
    if method in _METHOD_STRATEGY:
        text = _str_arg(call, keyword="text" if method != "get_by_test_id" else "test_id")
        if text is None:
            return None
        return Locator(_METHOD_STRATEGY[method], text, exact=exact)
    if method == "locator":
        selector = _str_arg(call, keyword="selector")
        if selector is None:
            return None
        return _classify_locator_argument(selector, control_attribute)
    return None


def parse_locator_expression(
    expression: str, control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE
) -> Optional[Tuple[Locator, Tuple[str, ...]]]:
    """Parse ``page.frame_locator(...).get_by_*(...)`` back into a locator and its frame chain."""
    try:
        node = ast.parse(expression.strip(), mode="eval").body
    except SyntaxError:
        return None
    return locator_from_node(node, control_attribute)


def locator_from_node(
    node: ast.AST, control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE
) -> Optional[Tuple[Locator, Tuple[str, ...]]]:
    locator: Optional[Locator] = None
    frames: List[str] = []
    current: Optional[ast.AST] = node
    while current is not None:
        if isinstance(current, ast.Call) and isinstance(current.func, ast.Attribute):
            if current.func.attr == "frame_locator":
                selector = _str_arg(current)
                if selector is not None:
                    frames.append(selector)
            elif locator is None:
                locator = locator_from_call(current, control_attribute)
            current = current.func.value
        elif isinstance(current, ast.Attribute):
            current = current.value
        else:
            current = None
    if locator is None:
        return None
    return locator, tuple(reversed(frames))


def locators_in_source(source: str, control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE) -> List[Locator]:
    """Structurally collect the outermost locator of every locator chain in ``source``."""
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return []
    found = []
    receivers = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute):
            if locator_from_call(node, control_attribute) is not None:
                found.append(node)
                inner = node.func.value
                while isinstance(inner, (ast.Call, ast.Attribute)):
                    if isinstance(inner, ast.Call):
                        receivers.add(id(inner))
                        inner = inner.func.value if isinstance(inner.func, ast.Attribute) else None
                    else:
                        inner = inner.value
    found.sort(key=lambda n: (n.lineno, n.col_offset))
    return [
        locator_from_call(node, control_attribute)  # type: ignore[misc]
        for node in found
        if id(node) not in receivers
    ]


def extract_locators_from_source(
    source: str, control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE
) -> List[Tuple[str, str]]:
    """Recover ``(strategy, locator text)`` pairs from generated source by pattern matching."""
    found: List[Tuple[str, str]] = []
    for match in _LOCATOR_CALL_RE.finditer(source):
        text = match.group(0)[1:]
        parsed = parse_locator_expression(f"page.{text}", control_attribute)
        strategy = parsed[0].strategy if parsed else _METHOD_STRATEGY.get(match.group(1), "css")
        found.append((strategy, text))
    return found


def locator_key(strategy: str, locator_text: str) -> str:
    return f"{strategy}:{locator_text.strip()}"
