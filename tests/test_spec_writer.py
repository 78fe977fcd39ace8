"""Tests for writing bundles to disk."""

import json

import pytest

from qastudio.core import file_utils
from qastudio.core.errors import SpecWriteError
from qastudio.core.models import TestBundle
from qastudio.services.bundle_store import COMPLETE, MISSING_META, BundleStore
from qastudio.services.spec_writer import SpecWriter


def test_bundle_layout(bundle_root, written_bundle):
    """A bundle writes spec, meta and markdown under its slug and data alongside."""
    directory = bundle_root / "create-customer"

    assert (directory / "create-customer.spec.py").is_file()
    assert (directory / "create-customer.meta.json").is_file()
    assert (directory / "create-customer.meta.md").is_file()
    assert (bundle_root / "data" / "create-customerData.json").is_file()
    assert written_bundle.directory == directory
    assert written_bundle.data_file_path == bundle_root / "data" / "create-customerData.json"
    assert not list(directory.glob(".*.tmp"))


def test_written_files_match_bundle(bundle_root, written_bundle):
    """Files on disk hold what the bundle carries."""
    directory = bundle_root / "create-customer"

    assert (directory / "create-customer.spec.py").read_text(encoding="utf-8") == written_bundle.spec_source
    meta = json.loads((directory / "create-customer.meta.json").read_text(encoding="utf-8"))
    assert meta == written_bundle.meta_json


def test_data_file_seeded_with_default_row(bundle_root, written_bundle):
    """A new data file starts with the default row."""
    rows = json.loads((bundle_root / "data" / "create-customerData.json").read_text(encoding="utf-8"))

    assert rows == [{"id": "row-1", "enabled": True, "name": "Default", "customerName": "Acme Corp"}]


def test_regeneration_never_overwrites_data(bundle_root, steps, written_bundle, fixed_now):
    """Regenerating keeps edited data rows."""
    data_file = bundle_root / "data" / "create-customerData.json"
    edited = [{"id": "row-1", "enabled": True, "name": "Edited", "customerName": "Fabrikam"}]
    data_file.write_text(json.dumps(edited), encoding="utf-8")

    SpecWriter(bundle_root).generate("Create Customer", steps, now=fixed_now)

    assert json.loads(data_file.read_text(encoding="utf-8")) == edited


def test_regeneration_keeps_run_history(bundle_root, steps, written_bundle, fixed_now):
    """Run fields carry over into the new meta.json."""
    store = BundleStore(bundle_root)
    store.record_run("create-customer", "passed")

    regenerated = SpecWriter(bundle_root).generate("Create Customer", steps, now=fixed_now)

    assert regenerated.meta_json["lastStatus"] == "passed"
    assert regenerated.meta_json["lastRunAt"]
    assert store.read_meta("create-customer")["lastStatus"] == "passed"


def test_store_lists_complete_and_partial_bundles(bundle_root, written_bundle):
    """The store reports partial bundles with what is missing."""
    partial = bundle_root / "half-done"
    partial.mkdir()
    (partial / "half-done.spec.py").write_text("def test_x():\n    pass\n", encoding="utf-8")

    listing = {entry["slug"]: entry for entry in BundleStore(bundle_root).list_bundles()}

    assert listing["create-customer"]["status"] == COMPLETE
    assert listing["create-customer"]["testName"] == "Create Customer"
    assert listing["half-done"]["status"] == MISSING_META
    assert "data" not in listing


def test_reserved_slug_cannot_be_written(bundle_root):
    """Reserved directory names are never bundle slugs."""
    bundle = TestBundle(slug="data", spec_source="", meta_json={}, meta_markdown="")

    with pytest.raises(SpecWriteError) as excinfo:
        SpecWriter(bundle_root).write(bundle)

    assert excinfo.value.slug == "data"
    assert not (bundle_root / "data" / "data.spec.py").exists()


def test_write_failure_reports_artifact_path(tmp_path, steps):
    """A write failure names the bundle path."""
    blocker = tmp_path / "bundles"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(SpecWriteError) as excinfo:
        SpecWriter(blocker).generate("Create Customer", steps)

    assert excinfo.value.operation == "write"
    assert "create-customer" in excinfo.value.path


def test_unknown_run_status_is_rejected(bundle_root, written_bundle):
    """Run statuses outside the known set raise."""
    with pytest.raises(ValueError):
        BundleStore(bundle_root).record_run("create-customer", "flaky")


def test_failed_regeneration_keeps_previous_bundle(bundle_root, steps, written_bundle, fixed_now, monkeypatch):
    """If meta.json cannot be replaced, the spec and markdown from the last write stay."""
    paths = BundleStore(bundle_root).paths("create-customer")
    before = {path: path.read_bytes() for path in (paths.spec, paths.markdown, paths.meta)}
    real_replace = file_utils.os.replace

    def replace(src, dst):
        if str(dst).endswith(".meta.json"):
            raise OSError("disk full")
        return real_replace(src, dst)

    monkeypatch.setattr(file_utils.os, "replace", replace)

    with pytest.raises(SpecWriteError):
        SpecWriter(bundle_root).generate("Create Customer", steps[:4], now=fixed_now)

    assert {path: path.read_bytes() for path in before} == before
    assert not list(paths.directory.glob(".*.tmp"))
