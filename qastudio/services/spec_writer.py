from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from ..core.errors import BundleNotFoundError, SpecWriteError
from ..core.file_utils import dump_json, locked_bundle, read_json, write_files_together
from ..core.models import RecordedStep, TestBundle
from ..generators.spec_generator import Bindings, LocatorChoice, SpecGenerator
from .bundle_store import BundleStore

logger = logging.getLogger(__name__)

# Fields owned by execution collaborators; regeneration keeps them.
_CARRIED_META_FIELDS = ("lastRunAt", "lastStatus", "externalLinks")


def default_data_rows(bundle: TestBundle) -> list:
    row: Dict[str, Any] = {"id": "row-1", "enabled": True, "name": "Default"}
    row.update(bundle.default_row)
    return [row]


class SpecWriter:
    """Persist generated bundles with per-bundle locking and atomic file replacement."""

    def __init__(self, bundle_root: Path, generator: Optional[SpecGenerator] = None) -> None:
        self.store = BundleStore(bundle_root)
        self.generator = generator or SpecGenerator()

    @property
    def root(self) -> Path:
        return self.store.root

    def generate(
        self,
        test_name: str,
        steps: Sequence[RecordedStep],
        module: Optional[str] = None,
        selected_locators: Optional[Mapping[int, LocatorChoice]] = None,
        parameter_bindings: Optional[Bindings] = None,
        now: Optional[datetime] = None,
    ) -> TestBundle:
        bundle = self.generator.generate(test_name, steps, module, selected_locators, parameter_bindings, now)
        return self.write(bundle)

    def write(self, bundle: TestBundle) -> TestBundle:
        try:
            paths = self.store.paths(bundle.slug)
        except BundleNotFoundError as exc:
            raise SpecWriteError(exc.message, slug=bundle.slug, operation="write") from exc

        current = paths.directory
        with locked_bundle(paths.directory):
            try:
                paths.directory.mkdir(parents=True, exist_ok=True)
                meta = dict(bundle.meta_json)
                if paths.meta.is_file():
                    current = paths.meta
                    try:
                        previous = read_json(paths.meta)
                    except ValueError:
                        previous = {}
                    for key in _CARRIED_META_FIELDS:
                        if previous.get(key):
                            meta[key] = previous[key]
                artifacts = {
                    paths.spec: bundle.spec_source,
                    paths.markdown: bundle.meta_markdown,
                    paths.meta: dump_json(meta),
                }
                new_data = not paths.data.exists()
                if new_data:
                    artifacts[paths.data] = dump_json(default_data_rows(bundle))
                current = paths.directory
                write_files_together(artifacts)
                if new_data:
                    logger.info("Created data file %s", paths.data)
            except OSError as exc:
                raise SpecWriteError(f"Could not write bundle artifact: {exc}", slug=bundle.slug, path=current, operation="write") from exc

        logger.info("Wrote bundle %s to %s", bundle.slug, paths.directory)
        return TestBundle(
            slug=bundle.slug,
            spec_source=bundle.spec_source,
            meta_json=meta,
            meta_markdown=bundle.meta_markdown,
            data_file_path=paths.data,
            directory=paths.directory,
            default_row=dict(bundle.default_row),
        )
