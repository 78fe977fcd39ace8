"""Tests for turning recorded steps into a spec bundle."""

import ast

import pytest

from qastudio.core.errors import SpecGenerationError
from qastudio.core.models import Locator, RecordedStep, SelectedParameter
from qastudio.generators.spec_generator import SpecGenerator, capture_source, clean_steps, step_id


def test_end_to_end_scenario_body(steps, customer_binding, fixed_now):
    """Auth hop and duplicate navigation disappear, the bound value reads from the data row."""
    bundle = SpecGenerator().generate("Create Customer", steps, "Accounts receivable", None, customer_binding, fixed_now)
    ids = {step.order: step_id(step) for step in steps}

    expected_body = (
        f"    # [step {ids[3]}] Navigate to https://erp.example.com/?mi=CustTableListPage\n"
        '    page.goto("https://erp.example.com/?mi=CustTableListPage")\n'
        f"    # [step {ids[4]}] Click New button\n"
        '    page.get_by_role("button", name="New").click()\n'
        f"    # [step {ids[5]}] Fill Customer Name\n"
        '    page.get_by_label("Customer Name").fill(row["customerName"])\n'
        f"    # [step {ids[6]}] Click Save button\n"
        '    page.get_by_role("button", name="Save").click()\n'
        f"    # [step {ids[7]}] Assert Customer created to be visible\n"
        '    expect(page.get_by_text("Customer created")).to_be_visible()\n'
    )

    assert bundle.slug == "create-customer"
    assert bundle.spec_source.endswith(expected_body)
    assert "login.microsoftonline.com" not in bundle.spec_source
    assert "def test_create_customer(page: Page, row: dict) -> None:" in bundle.spec_source
    assert '/ "data" / "create-customerData.json"' in bundle.spec_source
    ast.parse(bundle.spec_source)


def test_meta_describes_bundle(steps, customer_binding, fixed_now):
    """meta.json lists steps, parameters and locators."""
    bundle = SpecGenerator().generate("Create Customer", steps, "Accounts receivable", None, customer_binding, fixed_now)
    meta = bundle.meta_json

    assert meta["testName"] == "Create Customer"
    assert meta["module"] == "Accounts receivable"
    assert meta["specFile"] == "create-customer.spec.py"
    assert meta["dataFileRef"] == "../data/create-customerData.json"
    assert [s["order"] for s in meta["steps"]] == [3, 4, 5, 6, 7]
    assert meta["parameters"] == [
        {
            "name": "customerName",
            "source": "Customer Name",
            "defaultValue": "Acme Corp",
            "candidateId": customer_binding[0]["id"],
        }
    ]
    assert meta["assertions"] == [{"description": "Assert Customer created to be visible", "kind": "to_be_visible"}]
    assert meta["locators"][0] == {
        "locator": 'get_by_role("button", name="New")',
        "strategyType": "role",
        "steps": [step_id(steps[3])],
    }
    assert meta["lastStatus"] == "never_run"
    assert meta["lastRunAt"] is None
    assert meta["generatedAt"] == "2026-01-15T09:30:00+00:00"
    assert bundle.default_row == {"customerName": "Acme Corp"}


def test_generation_is_deterministic(steps, customer_binding, fixed_now):
    """Same input, in any order, gives the same bundle."""
    first = SpecGenerator().generate("Create Customer", steps, None, None, customer_binding, fixed_now)
    second = SpecGenerator().generate("Create Customer", list(reversed(steps)), None, None, customer_binding, fixed_now)

    assert first.spec_source == second.spec_source
    assert first.meta_json == second.meta_json
    assert first.meta_markdown == second.meta_markdown


def test_markdown_sections(steps, customer_binding, fixed_now):
    """The markdown has every expected section."""
    markdown = SpecGenerator().generate("Create Customer", steps, None, None, customer_binding, fixed_now).meta_markdown

    for heading in ("## Test Intent", "## Module", "## Steps", "## Parameters", "## Key Locators & Strategy", "## Code Preview"):
        assert heading in markdown
    assert "`customerName`" in markdown
    assert "### role" in markdown
    assert "Unassigned" in markdown


def test_selected_locator_by_index_and_explicit(steps, fixed_now):
    """Locator choices by index or by explicit locator are honoured."""
    bundle = SpecGenerator().generate(
        "Create Customer",
        steps,
        selected_locators={4: 1, 6: Locator("testid", "save-btn")},
        now=fixed_now,
    )

    assert 'page.locator("#new-btn").click()' in bundle.spec_source
    assert 'page.get_by_test_id("save-btn").click()' in bundle.spec_source
    assert 'fill("Acme Corp")' in bundle.spec_source


def test_out_of_range_locator_choice_fails(steps):
    """A locator index past the step's list is an error."""
    with pytest.raises(SpecGenerationError):
        SpecGenerator().generate("Create Customer", steps, selected_locators={4: 7})


@pytest.mark.parametrize("name", ["Data", "locators", "!!!", "   "])
def test_unusable_names_are_rejected(steps, name):
    """Names without a usable slug are refused."""
    with pytest.raises(SpecGenerationError):
        SpecGenerator().generate(name, steps)


def test_element_step_without_locator_fails():
    """An element action with no locator names its step."""
    with pytest.raises(SpecGenerationError) as excinfo:
        SpecGenerator().generate("Broken", [RecordedStep(1, "click")])

    assert excinfo.value.slug == "broken"
    assert excinfo.value.operation == "generate"


def test_comment_steps_keep_a_marker_but_no_statement(steps, fixed_now):
    """Comment steps render as a bare marker."""
    with_comment = steps + [RecordedStep(8, "comment", value="Customer saved")]

    bundle = SpecGenerator().generate("Create Customer", with_comment, now=fixed_now)

    assert bundle.meta_json["steps"][-1]["action"] == "comment"
    assert bundle.spec_source.rstrip("\n").endswith(f"# [step {step_id(with_comment[-1])}] Customer saved")


def test_only_auth_navigation_leaves_a_parsable_body(fixed_now):
    """A recording reduced to nothing still parses."""
    bundle = SpecGenerator().generate(
        "Sign In",
        [RecordedStep(1, "navigate", value="https://login.live.com/oauth")],
        now=fixed_now,
    )

    assert bundle.spec_source.endswith("    pass\n")
    assert bundle.meta_json["steps"] == []
    ast.parse(bundle.spec_source)


def test_selected_parameter_objects_are_accepted(steps, customer_binding, fixed_now):
    """Bindings may be given as ``SelectedParameter`` objects."""
    binding = [SelectedParameter(customer_binding[0]["id"], "customer")]

    bundle = SpecGenerator().generate("Create Customer", steps, parameter_bindings=binding, now=fixed_now)

    assert 'fill(row["customer"])' in bundle.spec_source


def test_unknown_bindings_are_ignored(steps, fixed_now):
    """Bindings with no candidate add no parameters."""
    bundle = SpecGenerator().generate("Create Customer", steps, parameter_bindings={"param-missing": "ghost"}, now=fixed_now)

    assert bundle.meta_json["parameters"] == []
    assert "ghost" not in bundle.spec_source


def test_clean_steps_matches_source_cleanup(steps):
    """Step-level cleanup keeps the steps source cleanup keeps."""
    assert [s.order for s in clean_steps(steps)] == [3, 4, 5, 6, 7]


def test_capture_source_maps_lines_to_steps(steps):
    """Capture source maps each statement line to its step order."""
    source, line_to_order = capture_source(steps)
    lines = source.splitlines()

    assert sorted(line_to_order.values()) == [1, 2, 3, 4, 5, 6, 7]
    fill_line = next(line for line, order in line_to_order.items() if order == 5)
    assert lines[fill_line - 1] == '    page.get_by_label("Customer Name").fill("Acme Corp")'
