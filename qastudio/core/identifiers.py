from __future__ import annotations

import re

_WHITESPACE_RE = re.compile(r"\s+")
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9-]")
_CAMEL_FOLD_RE = re.compile(r"[^a-z0-9]+(.)")
_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")

RESERVED_SLUGS = frozenset({"data", "locators"})


def slugify(name: str) -> str:
    """Lower-case, collapse whitespace runs to ``-`` and drop anything outside ``[a-z0-9-]``."""
    lowered = (name or "").lower()
    return _SLUG_STRIP_RE.sub("", _WHITESPACE_RE.sub("-", lowered))


def to_camel_case(text: str, limit: int = 50) -> str:
    folded = _CAMEL_FOLD_RE.sub(lambda m: m.group(1).upper(), (text or "").lower())
    return _NON_ALNUM_RE.sub("", folded)[:limit]


def suggested_parameter_name(label: str, value: str) -> str:
    name = to_camel_case(label) if label.strip() else ""
    if not name:
        name = to_camel_case(value)
    return name or "value"


def format_test_name(name: str) -> str:
    words = [w for w in re.split(r"[\s_\-]+", (name or "").strip()) if w]
    return " ".join(w[:1].upper() + w[1:] for w in words)


def spec_function_name(slug: str) -> str:
    body = re.sub(r"[^a-z0-9]+", "_", slug.lower()).strip("_")
    return f"test_{body}" if body else "test_recorded_flow"
