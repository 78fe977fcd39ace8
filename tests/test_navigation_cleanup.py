"""Tests for redundant-navigation cleanup of captured scripts."""

import ast

from qastudio.transforms import source_transform
from qastudio.transforms.navigation_cleanup import (
    NavEntry,
    NavigationCleanup,
    cleanup,
    equivalent_targets,
    is_auth_url,
    navigation_urls,
    plan_removals,
)

HEADER = '''from playwright.sync_api import Page, expect


def test_example(page: Page) -> None:
'''


def script(*statements):
    return HEADER + "".join(f"    {line}\n" for line in statements)


def test_repeated_navigation_collapses_to_one():
    """Three identical consecutive gotos keep only one."""
    source = script(
        'page.goto("https://app.example.com/home")',
        'page.goto("https://app.example.com/home")',
        'page.goto("https://app.example.com/home")',
        'page.get_by_role("button", name="Save").click()',
    )

    result = cleanup(source)

    assert result.count("page.goto(") == 1
    assert navigation_urls(result) == ["https://app.example.com/home"]
    assert 'get_by_role("button", name="Save").click()' in result


def test_cleanup_is_idempotent():
    """Cleaning an already clean script changes nothing."""
    source = script(
        'page.goto("https://erp.example.com/?mi=CustTable")',
        'page.goto("https://login.microsoftonline.com/common/oauth2")',
        'page.goto("https://erp.example.com/?mi=CustTable")',
        'page.get_by_label("Customer").fill("Acme")',
        'page.goto("https://erp.example.com/?cmp=usmf&mi=CustTable")',
        'page.get_by_role("button", name="New").click()',
    )

    once = cleanup(source)

    assert cleanup(once) == once


def test_auth_redirects_are_removed():
    """Gotos to login hosts are dropped."""
    source = script(
        'page.goto("https://app.example.com/start")',
        'page.goto("https://login.microsoftonline.com/common/oauth2/authorize")',
        'page.goto("https://app.example.com/start")',
        'page.get_by_text("Welcome").click()',
    )

    result = cleanup(source)

    assert "login.microsoftonline.com" not in result
    assert navigation_urls(result) == ["https://app.example.com/start"]


def test_auth_domain_matching_covers_subdomains_only():
    """Subdomains match an auth domain, lookalike hosts do not."""
    assert is_auth_url("https://tenant.okta.com/login")
    assert is_auth_url("https://accounts.google.com/o/oauth2")
    assert not is_auth_url("https://evilokta.com/login")
    assert not is_auth_url("not a url")


def test_navigation_back_to_same_routing_target_is_dropped():
    """A goto after an action that lands on the same routed screen is redundant."""
    source = script(
        'page.goto("https://erp.example.com/?cmp=usmf&mi=CustTableListPage")',
        'page.get_by_role("button", name="New").click()',
        'page.goto("https://erp.example.com/?mi=CustTableListPage&cmp=dat")',
    )

    result = cleanup(source)

    assert navigation_urls(result) == ["https://erp.example.com/?cmp=usmf&mi=CustTableListPage"]


def test_navigation_to_different_routing_target_is_kept():
    """A goto to another routed screen stays."""
    source = script(
        'page.goto("https://erp.example.com/?mi=CustTableListPage")',
        'page.get_by_role("button", name="New").click()',
        'page.goto("https://erp.example.com/?mi=SalesTableListPage")',
    )

    assert cleanup(source) == source


def test_first_navigation_is_never_removed():
    """Nothing precedes the first navigation, so it stays."""
    removed = plan_removals([NavEntry(False), NavEntry(True, "https://a.example.com/")])

    assert removed == set()


def test_non_literal_target_interrupts_runs():
    """A goto to a variable splits a run of identical gotos."""
    source = script(
        'page.goto("https://app.example.com/")',
        "page.goto(base_url)",
        'page.goto("https://app.example.com/")',
    )

    assert cleanup(source) == source


def test_equivalent_targets():
    """Same URL or same routing value means the same target."""
    assert equivalent_targets("https://a/?mi=X", "https://a/?mi=X")
    assert equivalent_targets("https://a/?mi=X&cmp=1", "https://b/?cmp=2&mi=X")
    assert not equivalent_targets("https://a/?mi=X", "https://a/?mi=Y")
    assert not equivalent_targets("https://a/one", "https://a/two")


def test_emptied_body_keeps_a_pass_statement():
    """A body left with no statements gets ``pass``."""
    source = script('page.goto("https://login.live.com/oauth")')

    result = cleanup(source)

    ast.parse(result)
    assert "    pass\n" in result
    assert "login.live.com" not in result


def test_unparseable_source_is_returned_unchanged():
    """Broken input comes back as-is with the error attached."""
    broken = "def test_example(page:\n    page.goto('https://x')\n"

    result = NavigationCleanup().transform(broken)

    assert result.source == broken
    assert result.applied is False
    assert result.error


def test_cleanup_pass_is_registered_and_reports_spans():
    """The registry runs the pass by name and reports one span per removal."""
    source = script(
        'page.goto("https://app.example.com/home")',
        'page.goto("https://app.example.com/home")',
        'page.goto("https://app.example.com/home")',
    )

    updated, spans = source_transform.apply("navigation-cleanup", source)

    assert "navigation-cleanup" in source_transform.available_passes()
    assert updated.count("page.goto(") == 1
    assert len(spans) == 2


def test_custom_auth_domains_and_routing_param():
    """Auth domains and the routing parameter are configurable."""
    source = script(
        'page.goto("https://sso.corp.example/login")',
        'page.goto("https://app.example.com/?screen=Orders")',
        'page.get_by_role("button", name="Refresh").click()',
        'page.goto("https://app.example.com/?screen=Orders&tab=2")',
    )

    result = cleanup(source, auth_domains=["sso.corp.example"], routing_param="screen")

    assert navigation_urls(result) == ["https://app.example.com/?screen=Orders"]
