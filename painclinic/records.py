"""Visit record normalization.

Turns loosely-typed spreadsheet rows into immutable ``PatientRecord`` objects:

• Every column accessor is a total function with a defaulted canonical type.
• Pain-score cells go through ``parse_pain_score`` which understands the
  clinic's textual conventions ("SCORE : 7 (...)", "No Pain", "ไม่พบข้อมูล", ...).
• Rows without an HN are the only rows discarded.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Final

# Spreadsheet column names (exact match, case-sensitive)
COL_VISIT_DATE: Final = "VISIT_DATE"
COL_VISIT_TIME: Final = "VISIT_TIME"
COL_HN: Final = "HN"
COL_EN: Final = "EN"
COL_PATIENT_NAME: Final = "PATIENT_NAME"
COL_DOCTOR: Final = "DOCTOR"
COL_ICD10: Final = "ICD10"
COL_ICD9: Final = "ICD9"
COL_PAIN_INITIAL: Final = "PAIN_SCORE_(แรกรับ)"
COL_PAIN_DISCHARGE: Final = "PAIN_SCORE_(ก่อนจำหน่าย)"
COL_REVENUE: Final = "REVENUES"

# Markers meaning "no data recorded" (substring match)
MISSING_MARKERS: Final[tuple[str, ...]] = ("ไม่พบข้อมูล", "n/a", "no info")
# Markers meaning "no data recorded" (whole-value match)
MISSING_VALUES: Final[frozenset[str]] = frozenset({"-", "unknown"})

SCORE_PATTERN: Final = re.compile(r"score\s*:\s*(\d+)", re.IGNORECASE)
LEADING_DIGITS: Final = re.compile(r"^(\d+)")
LEADING_NUMBER: Final = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    # pandas.NA / NaT compare oddly; their string form is enough to spot them
    return type(value).__name__ in {"NAType", "NaTType"}


def parse_pain_score(value: Any) -> int | None:
    """Extract a pain score from a raw cell.

    Handles "SCORE : 10 (2025-06-04 ,14:12:55)", bare numbers, "No Pain" (0)
    and missing-data markers (None). Never raises.
    """
    if _is_missing(value) or value == "":
        return None
    text = str(value).strip().lower()

    if any(marker in text for marker in MISSING_MARKERS) or text in MISSING_VALUES:
        return None

    # "No Pain" is a real zero, not missing data
    if "no pain" in text or text == "none":
        return 0

    match = SCORE_PATTERN.search(text)
    if match:
        return int(match.group(1))

    match = LEADING_DIGITS.match(text)
    if match:
        return int(match.group(1))

    return None


def coerce_text(value: Any) -> str:
    """Render a cell as trimmed text; missing cells become ''."""
    if _is_missing(value):
        return ""
    if isinstance(value, bool):
        return str(value)
    # Numeric ids come back from spreadsheets as 12345.0
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def coerce_date(value: Any) -> str:
    """Render a visit date as YYYY-MM-DD when the cell holds a real date."""
    if _is_missing(value):
        return ""
    if isinstance(value, (datetime, date)):
        return value.strftime("%Y-%m-%d")
    return coerce_text(value)


def coerce_revenue(value: Any) -> float:
    """Parse a revenue amount, defaulting to 0 for anything unusable."""
    if _is_missing(value) or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        amount = float(value)
    else:
        match = LEADING_NUMBER.match(str(value).strip().replace(",", ""))
        if not match:
            return 0.0
        amount = float(match.group(0))
    if math.isnan(amount) or math.isinf(amount) or amount < 0:
        return 0.0
    return amount


def split_code(composite: str) -> tuple[str, str]:
    """Split "M54.5: Low back pain" into ("M54.5", "Low back pain")."""
    code, _, description = composite.partition(":")
    return code.strip(), description.strip()


@dataclass(frozen=True, slots=True)
class PatientRecord:
    """One clinic visit (one encounter)."""

    visit_date: str
    visit_time: str
    hn: str
    en: str
    patient_name: str
    doctor: str
    icd10: str
    icd9: str
    initial_pain_score: int | None
    discharge_pain_score: int | None
    revenue: float

    @property
    def month(self) -> str:
        return self.visit_date[:7]

    @property
    def icd10_code(self) -> str:
        return split_code(self.icd10)[0]

    @property
    def icd10_description(self) -> str:
        return split_code(self.icd10)[1]

    @property
    def icd9_code(self) -> str:
        return split_code(self.icd9)[0]

    @property
    def icd9_description(self) -> str:
        return split_code(self.icd9)[1]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def normalize_row(row: Mapping[str, Any]) -> PatientRecord:
    """Map one raw row to a PatientRecord. Missing columns get defaults."""
    return PatientRecord(
        visit_date=coerce_date(row.get(COL_VISIT_DATE)),
        visit_time=coerce_text(row.get(COL_VISIT_TIME)),
        hn=coerce_text(row.get(COL_HN)),
        en=coerce_text(row.get(COL_EN)),
        patient_name=coerce_text(row.get(COL_PATIENT_NAME)),
        doctor=coerce_text(row.get(COL_DOCTOR)),
        icd10=coerce_text(row.get(COL_ICD10)),
        icd9=coerce_text(row.get(COL_ICD9)),
        initial_pain_score=parse_pain_score(row.get(COL_PAIN_INITIAL)),
        discharge_pain_score=parse_pain_score(row.get(COL_PAIN_DISCHARGE)),
        revenue=coerce_revenue(row.get(COL_REVENUE)),
    )


def normalize_rows(rows: Iterable[Mapping[str, Any]]) -> list[PatientRecord]:
    """Normalize raw rows, dropping those without an HN. Order is preserved."""
    records: list[PatientRecord] = []
    dropped = 0
    for row in rows:
        record = normalize_row(row)
        if not record.hn:
            dropped += 1
            continue
        records.append(record)

    if dropped:
        logging.getLogger(__name__).debug("Dropped %d row(s) without HN", dropped)
    return records
