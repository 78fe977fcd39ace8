"""Data rows for parametrised specs: JSON on disk, Excel for humans."""

from __future__ import annotations

import io
import logging
import math
import zipfile
from itertools import dropwhile
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..core.errors import SpecWriteError
from ..core.file_utils import atomic_write_json, atomic_write_text, locked_bundle, read_json, read_text
from .bundle_store import BundleStore

logger = logging.getLogger(__name__)

DATA_SHEET = "Data"
_RESERVED_COLUMNS = ("id", "enabled", "name")
_TRUE_WORDS = {"1", "true", "yes", "y", "x", "on"}


def _data_sheet(workbook):
    if DATA_SHEET in workbook.sheetnames:
        return workbook[DATA_SHEET]
    return workbook.active


def load_excel_rows(raw: bytes) -> pd.DataFrame:
    """Read the data sheet of an uploaded workbook as plain cell values.

    The ``Data`` sheet written by :func:`rows_to_excel_bytes` wins, otherwise
    the active sheet is used. Leading blank rows are skipped, the first
    non-blank row is the header and columns without a header are dropped.
    Only cached cell values are read; formulas and sheet metadata are ignored.
    """
    if not raw:
        raise ValueError("No spreadsheet content provided.")
    try:
        workbook = load_workbook(io.BytesIO(raw), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError) as exc:
        raise ValueError(f"Not an .xlsx workbook: {exc}") from exc
    try:
        rows = list(_data_sheet(workbook).iter_rows(values_only=True))
    finally:
        workbook.close()

    rows = list(dropwhile(lambda row: not any(_cell_text(v) for v in row), rows))
    if not rows:
        return pd.DataFrame()
    header = [_cell_text(cell) for cell in rows[0]]
    keep = [idx for idx, name in enumerate(header) if name]
    columns = [header[idx] for idx in keep]
    duplicates = sorted({name for name in columns if columns.count(name) > 1})
    if duplicates:
        raise ValueError(f"Duplicate column header(s) in the data sheet: {', '.join(duplicates)}")
    body = [[row[idx] if idx < len(row) else None for idx in keep] for row in rows[1:]]
    return pd.DataFrame(body, columns=columns, dtype=object)


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


def _truthy(value: Any, default: bool = True) -> bool:
    if isinstance(value, bool):
        return value
    text = _cell_text(value).lower()
    if not text:
        return default
    return text in _TRUE_WORDS


def normalise_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Give every row an ``id``, ``enabled`` flag and ``name``; values become strings."""
    if not isinstance(rows, list):
        raise ValueError("Data rows must be a list of objects.")
    normalised = []
    for position, row in enumerate(rows, start=1):
        if not isinstance(row, dict):
            raise ValueError(f"Row {position} is not an object.")
        out: Dict[str, Any] = {
            "id": _cell_text(row.get("id")) or f"row-{position}",
            "enabled": _truthy(row.get("enabled")),
            "name": _cell_text(row.get("name")) or f"Row {position}",
        }
        for key, value in row.items():
            if key in _RESERVED_COLUMNS or not str(key).strip():
                continue
            out[str(key)] = _cell_text(value)
        normalised.append(out)
    return normalised


def dataframe_to_rows(df: pd.DataFrame) -> List[Dict[str, Any]]:
    df = df.rename(columns=lambda c: str(c).strip())
    records = df.to_dict(orient="records")
    return normalise_rows([r for r in records if any(_cell_text(v) for v in r.values())])


def rows_to_excel_bytes(rows: List[Dict[str, Any]]) -> bytes:
    columns = list(_RESERVED_COLUMNS)
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    df = pd.DataFrame(rows, columns=columns)
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="xlsxwriter") as writer:
        df.to_excel(writer, index=False, sheet_name=DATA_SHEET)
    buffer.seek(0)
    return buffer.read()


class DataWriter:
    def __init__(self, bundle_root: Path) -> None:
        self.store = BundleStore(bundle_root)

    def data_path(self, slug: str) -> Path:
        return self.store.paths(slug).data

    def read_rows(self, slug: str) -> List[Dict[str, Any]]:
        path = self.data_path(slug)
        if not path.is_file():
            return []
        return read_json(path)

    def write_rows(self, slug: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Replace the data rows, keeping the previous file as ``.bak``."""
        paths = self.store.paths(slug)
        normalised = normalise_rows(rows)
        path = paths.data
        backup = path.with_name(path.name + ".bak")
        with locked_bundle(paths.directory):
            try:
                if path.is_file():
                    atomic_write_text(backup, read_text(path))
                atomic_write_json(path, normalised)
            except OSError as exc:
                raise SpecWriteError(f"Could not write data rows: {exc}", slug=slug, path=path, operation="write-data") from exc
        logger.info("Saved %d data row(s) for %s", len(normalised), slug)
        return normalised

    def import_excel(self, slug: str, raw: bytes, merge: bool = False) -> List[Dict[str, Any]]:
        imported = dataframe_to_rows(load_excel_rows(raw))
        if merge:
            existing = {row.get("id"): row for row in self.read_rows(slug)}
            for row in imported:
                existing[row["id"]] = {**existing.get(row["id"], {}), **row}
            imported = list(existing.values())
        return self.write_rows(slug, imported)

    def export_excel(self, slug: str, rows: Optional[List[Dict[str, Any]]] = None) -> bytes:
        return rows_to_excel_bytes(rows if rows is not None else self.read_rows(slug))
