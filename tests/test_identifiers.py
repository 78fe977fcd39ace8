"""Tests for slugs and generated names."""

import pytest

from qastudio.core.identifiers import format_test_name, slugify, spec_function_name, to_camel_case


def test_slug_example():
    """Words become a lowercase hyphenated slug."""
    assert slugify("Create Sales Order") == "create-sales-order"


@pytest.mark.parametrize(
    "name",
    ["Create Sales Order", "  spaced   out  ", "Ünïcode & Symbols!", "already-a-slug", "Tabs\tand\nnewlines", ""],
)
def test_slug_is_idempotent(name):
    """Slugifying a slug changes nothing."""
    assert slugify(slugify(name)) == slugify(name)


def test_slug_strips_disallowed_characters():
    """Punctuation is dropped from slugs."""
    assert slugify("Order #42 (draft)") == "order-42-draft"


def test_camel_case_fold():
    """Names fold to camelCase and are capped in length."""
    assert to_camel_case("Customer Name") == "customerName"
    assert to_camel_case("e-mail address") == "eMailAddress"
    assert to_camel_case("x" * 80) == "x" * 50


def test_spec_function_name():
    """Slugs map to pytest function names with a fallback."""
    assert spec_function_name("create-sales-order") == "test_create_sales_order"
    assert spec_function_name("---") == "test_recorded_flow"


def test_format_test_name():
    """Slug-ish names render as title case."""
    assert format_test_name("create_sales-order") == "Create Sales Order"
