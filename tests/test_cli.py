import json

from qastudio.cli import main

CAPTURED = '''from playwright.sync_api import Page


def test_example(page: Page) -> None:
    page.goto("https://erp.example.com/?mi=CustTableListPage")
    page.goto("https://login.microsoftonline.com/common/oauth2")
    page.goto("https://erp.example.com/?mi=CustTableListPage")
    page.get_by_label("Customer Name").fill("Acme Corp")
'''


def test_cleanup_prints_cleaned_source(tmp_path, capsys):
    """``cleanup`` prints the script without the auth hop."""
    script = tmp_path / "captured.py"
    script.write_text(CAPTURED, encoding="utf-8")

    assert main(["cleanup", str(script)]) == 0

    out = capsys.readouterr().out
    assert "login.microsoftonline.com" not in out
    assert out.count("page.goto(") == 1


def test_detect_lists_candidates(tmp_path, capsys):
    """``detect`` prints parameter candidates as JSON."""
    script = tmp_path / "captured.py"
    script.write_text(CAPTURED, encoding="utf-8")

    assert main(["detect", str(script)]) == 0

    candidates = json.loads(capsys.readouterr().out)["candidates"]
    assert [c["suggestedName"] for c in candidates] == ["customerName"]


def test_generate_list_and_steps(tmp_path, steps, capsys):
    """Generate a bundle from a recording file, then inspect it."""
    recording = tmp_path / "recording.json"
    recording.write_text(json.dumps({"testName": "Create Customer", "steps": [s.to_dict() for s in steps]}), encoding="utf-8")
    root = str(tmp_path / "bundles")

    assert main(["--bundle-root", root, "generate", str(recording)]) == 0
    assert json.loads(capsys.readouterr().out)["slug"] == "create-customer"

    assert main(["--bundle-root", root, "list"]) == 0
    listed = json.loads(capsys.readouterr().out)["bundles"]
    assert listed[0]["complete"] is True

    assert main(["--bundle-root", root, "steps", "create-customer"]) == 0
    assert len(capsys.readouterr().out.strip().splitlines()) == 5


def test_generate_without_name_fails(tmp_path, steps, capsys):
    """A bare step list needs ``--name``."""
    recording = tmp_path / "recording.json"
    recording.write_text(json.dumps([s.to_dict() for s in steps]), encoding="utf-8")

    assert main(["--bundle-root", str(tmp_path / "bundles"), "generate", str(recording)]) == 1
    assert "test name is required" in json.loads(capsys.readouterr().out)["error"]


def test_missing_bundle_reports_operation(tmp_path, capsys):
    """Errors are printed as JSON with slug and operation."""
    assert main(["--bundle-root", str(tmp_path / "bundles"), "steps", "nope"]) == 1

    error = json.loads(capsys.readouterr().out)["error"]
    assert error["slug"] == "nope"
