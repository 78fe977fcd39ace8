from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.errors import SpecUpdateError, SpecWriteError
from ..core.file_utils import atomic_write_json, locked_bundle, read_json, read_text
from ..core.models import LOCATOR_STATES, LocatorIndexEntry, LocatorStatusRecord
from ..generators.locator_generator import extract_locators_from_source, locator_key, parse_locator_expression
from .bundle_store import COMPLETE, BundleStore
from .spec_updater import refresh_meta, replace_in_steps

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LocatorMaintenance:
    """Locator inventory across bundles plus the maintenance-status map."""

    def __init__(self, bundle_root: Path) -> None:
        self.store = BundleStore(bundle_root)
        self.status_dir = self.store.root / "locators"
        self.status_path = self.status_dir / "status.json"

    def load_statuses(self) -> Dict[str, LocatorStatusRecord]:
        if not self.status_path.is_file():
            return {}
        try:
            raw = read_json(self.status_path)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable locator status map %s: %s", self.status_path, exc)
            return {}
        return {key: LocatorStatusRecord.from_dict(value) for key, value in raw.items() if isinstance(value, dict)}

    def _save_statuses(self, statuses: Dict[str, LocatorStatusRecord]) -> None:
        payload = {key: record.to_dict() for key, record in sorted(statuses.items())}
        try:
            atomic_write_json(self.status_path, payload)
        except OSError as exc:
            raise SpecWriteError(f"Could not write locator status map: {exc}", path=self.status_path, operation="locator-status") from exc

    def _bundle_locators(self, slug: str) -> List[Tuple[str, str, int]]:
        """``(strategy, locator, uses)`` for one bundle; meta.json first, source scan as fallback."""
        meta = self.store.read_meta(slug, "locator-index")
        recorded = meta.get("locators")
        if isinstance(recorded, list):
            return [
                (str(item.get("strategyType")), str(item.get("locator")), max(1, len(item.get("steps") or [])))
                for item in recorded
                if isinstance(item, dict) and item.get("locator")
            ]
        logger.info("meta.json of %s has no locator list; scanning the spec", slug)
        source = read_text(self.store.paths(slug).spec)
        return [(strategy, text, 1) for strategy, text in extract_locators_from_source(source)]

    def build_index(self) -> List[LocatorIndexEntry]:
        statuses = self.load_statuses()
        entries: Dict[str, LocatorIndexEntry] = {}
        for bundle in self.store.list_bundles():
            if bundle["status"] != COMPLETE:
                continue
            slug = bundle["slug"]
            for strategy, text, uses in self._bundle_locators(slug):
                key = locator_key(strategy, text)
                entry = entries.get(key)
                if entry is None:
                    entry = LocatorIndexEntry(locator=text.strip(), strategy_type=strategy, status=statuses.get(key))
                    entries[key] = entry
                entry.usage_count += uses
                if slug not in entry.used_in_tests:
                    entry.used_in_tests.append(slug)
        return sorted(entries.values(), key=lambda e: (-e.usage_count, e.strategy_type, e.locator))

    def set_status(
        self,
        strategy: str,
        locator: str,
        state: str,
        note: Optional[str] = None,
        last_test: Optional[str] = None,
    ) -> LocatorStatusRecord:
        if state not in LOCATOR_STATES:
            raise ValueError(f"Unknown locator state: {state}")
        record = LocatorStatusRecord(state=state, updated_at=_now(), note=note, last_test=last_test)
        with locked_bundle(self.status_dir):
            statuses = self.load_statuses()
            statuses[locator_key(strategy, locator)] = record
            self._save_statuses(statuses)
        return record

    def update_locator(
        self,
        strategy: str,
        old_locator: str,
        new_locator: str,
        tests: Optional[Iterable[str]] = None,
        new_strategy: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Rewrite ``old_locator`` inside the step regions of the given tests and rekey its status."""
        old_text, new_text = old_locator.strip(), new_locator.strip()
        if not old_text or not new_text:
            raise SpecUpdateError("Both the current and the new locator are required", operation="update-locator")
        if new_strategy is None:
            parsed = parse_locator_expression(f"page.{new_text}")
            new_strategy = parsed[0].strategy if parsed else strategy

        if tests is None:
            key = locator_key(strategy, old_text)
            tests = next((e.used_in_tests for e in self.build_index() if locator_key(e.strategy_type, e.locator) == key), [])

        updated_tests: List[str] = []
        replacements = 0
        for slug in tests:
            paths = self.store.require_complete(slug, "update-locator")
            with locked_bundle(paths.directory):
                source = read_text(paths.spec)
                try:
                    edit, hits = replace_in_steps(source, old_text, new_text)
                except SpecUpdateError as exc:
                    exc.slug, exc.path = slug, str(paths.spec)
                    raise
                if not hits:
                    continue
                meta = self.store.read_meta(slug, "update-locator")
                self.store.write_spec_and_meta(slug, edit.updated_source, refresh_meta(meta, edit.updated_source), "update-locator")
            updated_tests.append(slug)
            replacements += hits

        with locked_bundle(self.status_dir):
            statuses = self.load_statuses()
            record = statuses.pop(locator_key(strategy, old_text), None)
            if record is not None:
                record.updated_at = _now()
                statuses[locator_key(new_strategy, new_text)] = record
                self._save_statuses(statuses)

        logger.info("Replaced locator in %d test(s), %d occurrence(s)", len(updated_tests), replacements)
        return {
            "updatedTests": updated_tests,
            "replacements": replacements,
            "locator": new_text,
            "strategyType": new_strategy,
        }
