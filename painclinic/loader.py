"""Spreadsheet ingest: visit export (CSV or Excel) -> raw row dicts."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Final

import pandas as pd

from painclinic.exceptions import DataLoadError

EXCEL_SUFFIXES: Final = (".xlsx", ".xls")


def read_frame(path: Path) -> pd.DataFrame:
    """Read the first sheet of ``path`` as text-preserving DataFrame.

    ``keep_default_na=False`` keeps markers such as "None" or "n/a" as strings
    so the pain-score parser sees them verbatim.
    """
    if not path.exists():
        raise DataLoadError(f"Input file not found: {path}", path=str(path))

    suffix = path.suffix.lower()
    try:
        if suffix == ".csv":
            return pd.read_csv(path, keep_default_na=False, encoding="utf-8-sig")
        if suffix in EXCEL_SUFFIXES:
            return pd.read_excel(path, sheet_name=0, keep_default_na=False)
    except (ValueError, OSError, pd.errors.ParserError) as e:
        raise DataLoadError(f"Could not read {path}: {e}", path=str(path)) from e

    raise DataLoadError(f"Unsupported input format '{path.suffix}' (expected .csv, .xlsx or .xls)", path=str(path))


def load_rows(path: Path) -> list[dict[str, Any]]:
    """Load every data row as a column-name -> cell dict, in file order."""
    df = read_frame(Path(path))
    df.columns = [str(c).strip() for c in df.columns]
    rows = df.to_dict(orient="records")
    logging.getLogger(__name__).info("Loaded %d row(s) from %s", len(rows), path)
    return rows
