from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

_REGISTRY_LOCK = threading.Lock()
_BUNDLE_LOCKS: Dict[str, threading.RLock] = {}


def _temp_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.tmp")


def _write_temp(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = _temp_path(path)
    with open(tmp, "w", encoding="utf-8", newline="") as fh:
        fh.write(content)
        fh.flush()
        os.fsync(fh.fileno())
    return tmp


def _discard(tmp: Path) -> None:
    try:
        tmp.unlink(missing_ok=True)
    except OSError:
        logger.warning("Could not remove temporary file %s", tmp)


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` next to ``path`` and rename it into place."""
    tmp = _temp_path(path)
    try:
        _write_temp(path, content)
        os.replace(tmp, path)
    except Exception:
        _discard(tmp)
        raise


def write_files_together(contents: Mapping[Path, str]) -> None:
    """Replace several files so that either every one of them changes or none does.

    All contents are staged next to their targets before the first rename.
    If a rename fails, targets already replaced get their previous content
    back (or are removed when they did not exist) and the error propagates.
    """
    staged: List[Tuple[Path, Path]] = []
    try:
        for path, content in contents.items():
            staged.append((path, _temp_path(path)))
            _write_temp(path, content)
    except Exception:
        for _, tmp in staged:
            _discard(tmp)
        raise

    previous: Dict[Path, Optional[str]] = {path: read_text(path) if path.is_file() else None for path, _ in staged}
    replaced: List[Path] = []
    try:
        for path, tmp in staged:
            os.replace(tmp, path)
            replaced.append(path)
    except Exception:
        for path, tmp in staged[len(replaced):]:
            _discard(tmp)
        for path in reversed(replaced):
            original = previous[path]
            try:
                if original is None:
                    path.unlink(missing_ok=True)
                else:
                    atomic_write_text(path, original)
            except OSError:
                logger.error("Could not restore %s after a failed write", path)
        raise


def dump_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, dump_json(data))


def read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


def read_text(path: Path) -> str:
    with open(path, "r", encoding="utf-8", newline="") as fh:
        return fh.read()


def bundle_lock(directory: Path) -> threading.RLock:
    key = str(directory.resolve())
    with _REGISTRY_LOCK:
        lock = _BUNDLE_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _BUNDLE_LOCKS[key] = lock
        return lock


@contextmanager
def locked_bundle(directory: Path) -> Iterator[None]:
    """Serialize writers against one bundle directory."""
    lock = bundle_lock(directory)
    with lock:
        yield
