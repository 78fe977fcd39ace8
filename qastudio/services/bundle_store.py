from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.errors import BundleIncompleteError, BundleNotFoundError, SpecWriteError
from ..core.file_utils import atomic_write_json, dump_json, locked_bundle, read_json, read_text, write_files_together
from ..core.identifiers import RESERVED_SLUGS, slugify
from ..core.models import RUN_STATUSES, TestBundle
from ..generators.spec_generator import SPEC_EXTENSION

logger = logging.getLogger(__name__)

COMPLETE = "complete"
MISSING_META = "missing-meta"
MISSING_SPEC = "missing-spec"
MISSING = "missing"


@dataclass(frozen=True)
class BundlePaths:
    root: Path
    slug: str

    @property
    def directory(self) -> Path:
        return self.root / self.slug

    @property
    def spec(self) -> Path:
        return self.directory / f"{self.slug}.spec.{SPEC_EXTENSION}"

    @property
    def meta(self) -> Path:
        return self.directory / f"{self.slug}.meta.json"

    @property
    def markdown(self) -> Path:
        return self.directory / f"{self.slug}.meta.md"

    @property
    def data(self) -> Path:
        return self.root / "data" / f"{self.slug}Data.json"


def is_valid_slug(slug: str) -> bool:
    return bool(slug) and slug.strip("-") != "" and slugify(slug) == slug and slug not in RESERVED_SLUGS


class BundleStore:
    """Read side of the bundle layout plus run bookkeeping for execution collaborators."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def paths(self, slug: str) -> BundlePaths:
        if not is_valid_slug(slug):
            raise BundleNotFoundError(f"Invalid bundle slug: {slug!r}", slug=slug, operation="resolve")
        return BundlePaths(self.root, slug)

    def status(self, slug: str) -> str:
        paths = self.paths(slug)
        has_spec = paths.spec.is_file()
        has_meta = paths.meta.is_file()
        if has_spec and has_meta:
            return COMPLETE
        if has_spec:
            return MISSING_META
        if has_meta:
            return MISSING_SPEC
        return MISSING

    def list_bundles(self) -> List[Dict[str, Any]]:
        if not self.root.is_dir():
            return []
        results: List[Dict[str, Any]] = []
        for child in sorted(self.root.iterdir()):
            if not child.is_dir() or not is_valid_slug(child.name):
                continue
            state = self.status(child.name)
            if state == MISSING:
                continue
            entry: Dict[str, Any] = {"slug": child.name, "status": state, "complete": state == COMPLETE}
            if state != MISSING_META:
                try:
                    meta = read_json(self.paths(child.name).meta)
                except (OSError, json.JSONDecodeError) as exc:
                    logger.warning("Unreadable meta.json for %s: %s", child.name, exc)
                    entry.update({"status": MISSING_META, "complete": False})
                else:
                    entry.update(
                        {
                            "testName": meta.get("testName"),
                            "module": meta.get("module"),
                            "lastStatus": meta.get("lastStatus"),
                            "lastRunAt": meta.get("lastRunAt"),
                        }
                    )
            results.append(entry)
        return results

    def require_complete(self, slug: str, operation: str) -> BundlePaths:
        paths = self.paths(slug)
        state = self.status(slug)
        if state == MISSING:
            raise BundleNotFoundError(f"Bundle not found: {slug}", slug=slug, path=paths.directory, operation=operation)
        if state == MISSING_META:
            raise BundleIncompleteError("Bundle has a spec but no meta.json", slug=slug, path=paths.meta, operation=operation)
        if state == MISSING_SPEC:
            raise BundleIncompleteError("Bundle has meta.json but no spec", slug=slug, path=paths.spec, operation=operation)
        return paths

    def read_meta(self, slug: str, operation: str = "read-meta") -> Dict[str, Any]:
        paths = self.require_complete(slug, operation)
        try:
            return read_json(paths.meta)
        except json.JSONDecodeError as exc:
            raise BundleIncompleteError(f"meta.json is not valid JSON: {exc}", slug=slug, path=paths.meta, operation=operation) from exc

    def load_bundle(self, slug: str) -> TestBundle:
        paths = self.require_complete(slug, "load")
        meta = self.read_meta(slug, "load")
        markdown = read_text(paths.markdown) if paths.markdown.is_file() else ""
        return TestBundle(
            slug=slug,
            spec_source=read_text(paths.spec),
            meta_json=meta,
            meta_markdown=markdown,
            data_file_path=paths.data if paths.data.is_file() else None,
            directory=paths.directory,
        )

    def write_meta(self, slug: str, meta: Dict[str, Any], operation: str = "write-meta") -> None:
        paths = self.paths(slug)
        try:
            atomic_write_json(paths.meta, meta)
        except OSError as exc:
            raise SpecWriteError(f"Could not write meta.json: {exc}", slug=slug, path=paths.meta, operation=operation) from exc

    def write_spec_and_meta(self, slug: str, source: str, meta: Dict[str, Any], operation: str) -> None:
        """Replace the spec and its meta.json together; on failure neither file changes."""
        paths = self.paths(slug)
        try:
            write_files_together({paths.spec: source, paths.meta: dump_json(meta)})
        except OSError as exc:
            raise SpecWriteError(f"Could not write spec and meta.json: {exc}", slug=slug, path=paths.spec, operation=operation) from exc

    def record_run(self, slug: str, status: str, ran_at: Optional[datetime] = None) -> Dict[str, Any]:
        """Store the outcome of an execution in ``lastRunAt``/``lastStatus``."""
        if status not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {status}")
        paths = self.paths(slug)
        with locked_bundle(paths.directory):
            meta = self.read_meta(slug, "record-run")
            meta["lastStatus"] = status
            meta["lastRunAt"] = (ran_at or datetime.now(timezone.utc)).isoformat()
            self.write_meta(slug, meta, "record-run")
        return meta
