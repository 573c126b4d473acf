"""Aggregation engine: every metric the dashboard views consume.

All functions are pure over an immutable record snapshot:

• Same input → same output, including ordering (ties are broken lexically).
• Empty input → zeroed/empty results, never an exception.
• Percentages are guarded against division by zero and default to 0.

Group-bys run on a pandas DataFrame built from the records; per-patient views
work on the records directly because they hand the visits back to the caller.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Final

import pandas as pd
from dateutil.parser import parse as date_parse

from painclinic.date_filter import DateRange, available_dates
from painclinic.records import PatientRecord

TOP_CLUSTERS: Final = 10
TOP_PROVIDERS: Final = 5

UNKNOWN_CODE: Final = "Unknown"
OTHER_CODE: Final = "Other"
DIAGNOSIS_FALLBACK: Final = "Clinical Diagnosis"
PROCEDURE_FALLBACK: Final = "Medical Procedure"
UNKNOWN_PATIENT: Final = "Unknown Patient"
NOT_AVAILABLE: Final = "N/A"


# --------------------------------------------------------------------------------------
# Result types
# --------------------------------------------------------------------------------------


@dataclass(frozen=True)
class CodeCluster:
    code: str
    count: int
    description: str
    share: float  # percent of the filtered record count


@dataclass(frozen=True)
class ClinicalOverview:
    top_icd10: list[CodeCluster]
    top_icd9: list[CodeCluster]
    icd10_clusters_analyzed: int
    icd9_clusters_analyzed: int


@dataclass(frozen=True)
class SummaryMetrics:
    total_patients: int
    avg_initial_pain: float
    avg_discharge_pain: float
    avg_reduction: float
    median_reduction: float
    total_revenue: int
    top_icd10: str
    top_doctor: str


@dataclass(frozen=True)
class MonthlyPainStat:
    month: str
    initial: float
    discharge: float
    initial_count: int
    discharge_count: int
    count: int

    @property
    def reduction_percent(self) -> float:
        return reduction_percent(self.initial, self.discharge)


@dataclass(frozen=True)
class MonthlyRevenue:
    month: str
    revenue: int


@dataclass(frozen=True)
class ProviderRevenue:
    name: str
    revenue: int


@dataclass(frozen=True)
class DiagnosisRevenue:
    code: str
    revenue: int
    count: int
    total_dataset_size: int
    description: str
    share: float  # percent of total revenue


@dataclass(frozen=True)
class RevenueOverview:
    monthly: list[MonthlyRevenue]
    top_providers: list[ProviderRevenue]
    by_diagnosis: list[DiagnosisRevenue]
    total_revenue: float
    avg_revenue: float


@dataclass(frozen=True)
class PainTrendPoint:
    date: str
    initial: int | None
    discharge: int | None
    short_date: str


@dataclass(frozen=True)
class PatientProfile:
    hn: str
    name: str
    visits: list[PatientRecord]
    pain_trend: list[PainTrendPoint]
    total_revenue: float
    avg_improvement: float


@dataclass(frozen=True)
class RepeatPatient:
    hn: str
    count: int
    name: str
    icds: list[str]


@dataclass(frozen=True)
class RepeatVisitMonth:
    month: str
    patients: list[RepeatPatient]


@dataclass(frozen=True)
class MonthlyVolume:
    month: str
    count: int


@dataclass(frozen=True)
class RegistryStats:
    ytd: int
    latest_month: int
    latest_month_name: str


@dataclass(frozen=True)
class AnalyticsReport:
    """Everything derived from one (records, date range, descriptions) snapshot."""

    date_range: DateRange
    available_dates: list[str]
    summary: SummaryMetrics
    clinical: ClinicalOverview
    monthly_pain: list[MonthlyPainStat]
    revenue: RevenueOverview
    monthly_volume: list[MonthlyVolume]
    repeat_visits: list[RepeatVisitMonth]
    registry: RegistryStats
    patients: list[PatientProfile] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["monthly_pain"] = [
            {**asdict(stat), "reduction_percent": stat.reduction_percent} for stat in self.monthly_pain
        ]
        return data


# --------------------------------------------------------------------------------------
# Small numeric helpers
# --------------------------------------------------------------------------------------


def percent(part: float, whole: float) -> float:
    """part / whole * 100, or 0 when whole is 0."""
    return part / whole * 100 if whole else 0.0


def reduction_percent(initial: float, discharge: float) -> float:
    """Relative drop from initial to discharge, in percent (0 if initial <= 0)."""
    return (initial - discharge) / initial * 100 if initial > 0 else 0.0


def _mean(series: pd.Series) -> float:
    value = series.mean()
    return 0.0 if pd.isna(value) else float(value)


def _median(series: pd.Series) -> float:
    value = series.median()
    return 0.0 if pd.isna(value) else float(value)


def _first_non_empty(values: Iterable[str]) -> str:
    for value in values:
        if value:
            return value
    return ""


def records_frame(records: Sequence[PatientRecord]) -> pd.DataFrame:
    """One row per record, with pain scores as float (NaN = no score)."""
    return pd.DataFrame(
        {
            "visit_date": pd.Series([r.visit_date for r in records], dtype="object"),
            "month": pd.Series([r.month for r in records], dtype="object"),
            "hn": pd.Series([r.hn for r in records], dtype="object"),
            "doctor": pd.Series([r.doctor for r in records], dtype="object"),
            "icd10_code": pd.Series([r.icd10_code for r in records], dtype="object"),
            "icd10_description": pd.Series([r.icd10_description for r in records], dtype="object"),
            "icd9_code": pd.Series([r.icd9_code for r in records], dtype="object"),
            "icd9_description": pd.Series([r.icd9_description for r in records], dtype="object"),
            "initial": pd.Series([r.initial_pain_score for r in records], dtype="float64"),
            "discharge": pd.Series([r.discharge_pain_score for r in records], dtype="float64"),
            "revenue": pd.Series([r.revenue for r in records], dtype="float64"),
        }
    )


# --------------------------------------------------------------------------------------
# Clinical view
# --------------------------------------------------------------------------------------


def code_clusters(
    records: Sequence[PatientRecord],
    kind: str = "icd10",
    descriptions: Mapping[str, str] | None = None,
) -> list[CodeCluster]:
    """Group records by ICD-10 (``kind="icd10"``) or ICD-9 (``kind="icd9"``) code.

    Sorted by count descending, then code. The description lookup is only
    consulted for ICD-10 codes.
    """
    if kind not in ("icd10", "icd9"):
        raise ValueError(f"Unknown code kind: {kind}")
    if not records:
        return []

    df = records_frame(records)
    df["code"] = df[f"{kind}_code"].where(df[f"{kind}_code"] != "", UNKNOWN_CODE)
    grouped = df.groupby("code", sort=False).agg(
        visits=("visit_date", "size"),
        name_from_data=(f"{kind}_description", _first_non_empty),
    )

    lookup = descriptions if (descriptions is not None and kind == "icd10") else {}
    fallback = DIAGNOSIS_FALLBACK if kind == "icd10" else PROCEDURE_FALLBACK
    total = len(df)

    clusters = [
        CodeCluster(
            code=str(row.Index),
            count=int(row.visits),
            description=lookup.get(str(row.Index)) or row.name_from_data or fallback,
            share=percent(int(row.visits), total),
        )
        for row in grouped.itertuples()
    ]
    clusters.sort(key=lambda c: (-c.count, c.code))
    return clusters


def clinical_overview(
    records: Sequence[PatientRecord],
    descriptions: Mapping[str, str] | None = None,
) -> ClinicalOverview:
    return _clinical_from_clusters(
        code_clusters(records, "icd10", descriptions),
        code_clusters(records, "icd9"),
    )


def _clinical_from_clusters(icd10: list[CodeCluster], icd9: list[CodeCluster]) -> ClinicalOverview:
    # Top-N is for display; the analyzed counts cover every cluster
    return ClinicalOverview(
        top_icd10=icd10[:TOP_CLUSTERS],
        top_icd9=icd9[:TOP_CLUSTERS],
        icd10_clusters_analyzed=len(icd10),
        icd9_clusters_analyzed=len(icd9),
    )


def top_doctor(records: Iterable[PatientRecord]) -> str:
    """Provider with the most visits (ties broken by name)."""
    counts = Counter(r.doctor for r in records if r.doctor)
    if not counts:
        return NOT_AVAILABLE
    return min(counts.items(), key=lambda item: (-item[1], item[0]))[0]


def summary_metrics(
    records: Sequence[PatientRecord],
    icd10_clusters: Sequence[CodeCluster] | None = None,
) -> SummaryMetrics:
    """Headline numbers: cohort size, mean/median pain reduction, gross revenue."""
    if not records:
        return SummaryMetrics(0, 0.0, 0.0, 0.0, 0.0, 0, NOT_AVAILABLE, NOT_AVAILABLE)

    df = records_frame(records)
    avg_initial = _mean(df["initial"])
    avg_discharge = _mean(df["discharge"])
    med_initial = _median(df["initial"])
    med_discharge = _median(df["discharge"])

    if icd10_clusters is None:
        icd10_clusters = code_clusters(records, "icd10")

    return SummaryMetrics(
        total_patients=len(df),
        avg_initial_pain=avg_initial,
        avg_discharge_pain=avg_discharge,
        avg_reduction=round(reduction_percent(avg_initial, avg_discharge), 1),
        median_reduction=round(reduction_percent(med_initial, med_discharge), 1),
        total_revenue=int(round(float(df["revenue"].sum()))),
        top_icd10=icd10_clusters[0].code if icd10_clusters else NOT_AVAILABLE,
        top_doctor=top_doctor(records),
    )


def monthly_pain_stats(records: Sequence[PatientRecord]) -> list[MonthlyPainStat]:
    """Mean initial/discharge pain per YYYY-MM bucket, oldest month first."""
    if not records:
        return []

    df = records_frame(records)
    grouped = df.groupby("month", sort=True).agg(
        initial=("initial", "mean"),
        discharge=("discharge", "mean"),
        initial_count=("initial", "count"),
        discharge_count=("discharge", "count"),
        visits=("visit_date", "size"),
    )
    return [
        MonthlyPainStat(
            month=str(row.Index),
            initial=0.0 if pd.isna(row.initial) else float(row.initial),
            discharge=0.0 if pd.isna(row.discharge) else float(row.discharge),
            initial_count=int(row.initial_count),
            discharge_count=int(row.discharge_count),
            count=int(row.visits),
        )
        for row in grouped.itertuples()
    ]


# --------------------------------------------------------------------------------------
# Revenue view
# --------------------------------------------------------------------------------------


def revenue_overview(
    records: Sequence[PatientRecord],
    descriptions: Mapping[str, str] | None = None,
) -> RevenueOverview:
    """Revenue by month, by provider (top 5) and by diagnosis.

    Diagnosis share is a fraction of total revenue, not of record count.
    """
    if not records:
        return RevenueOverview([], [], [], 0.0, 0.0)

    lookup = descriptions or {}
    df = records_frame(records)
    total_revenue = float(df["revenue"].sum())
    total_count = len(df)

    by_month = df.groupby("month", sort=True)["revenue"].sum()
    monthly = [MonthlyRevenue(month=str(month), revenue=int(round(rev))) for month, rev in by_month.items()]

    # Rank on unrounded sums; rounding is for display only
    by_doctor = sorted(
        df.groupby("doctor", sort=False)["revenue"].sum().items(),
        key=lambda item: (-float(item[1]), str(item[0])),
    )
    providers = [
        ProviderRevenue(name=str(name), revenue=int(round(rev))) for name, rev in by_doctor[:TOP_PROVIDERS]
    ]

    df["code"] = df["icd10_code"].where(df["icd10_code"] != "", OTHER_CODE)
    by_code = df.groupby("code", sort=False).agg(
        revenue=("revenue", "sum"),
        visits=("visit_date", "size"),
        name_from_data=("icd10_description", _first_non_empty),
    )
    ranked = sorted(by_code.itertuples(), key=lambda row: (-float(row.revenue), str(row.Index)))
    diagnoses = [
        DiagnosisRevenue(
            code=str(row.Index),
            revenue=int(round(row.revenue)),
            count=int(row.visits),
            total_dataset_size=total_count,
            description=lookup.get(str(row.Index)) or row.name_from_data or DIAGNOSIS_FALLBACK,
            share=percent(float(row.revenue), total_revenue),
        )
        for row in ranked
    ]

    return RevenueOverview(
        monthly=monthly,
        top_providers=providers,
        by_diagnosis=diagnoses,
        total_revenue=total_revenue,
        avg_revenue=total_revenue / total_count,
    )


DIAGNOSIS_REVENUE_KEYS: Final = frozenset(f.name for f in fields(DiagnosisRevenue))


def search_diagnosis_revenue(rows: Iterable[DiagnosisRevenue], term: str) -> list[DiagnosisRevenue]:
    """Case-insensitive substring search over code and description."""
    needle = term.strip().lower()
    if not needle:
        return list(rows)
    return [r for r in rows if needle in r.code.lower() or needle in r.description.lower()]


def sort_diagnosis_revenue(
    rows: Iterable[DiagnosisRevenue], key: str = "revenue", descending: bool = True
) -> list[DiagnosisRevenue]:
    """Sort the revenue-by-diagnosis table; text columns compare case-insensitively."""
    if key not in DIAGNOSIS_REVENUE_KEYS:
        raise ValueError(f"Cannot sort by unknown column: {key}")

    def sort_key(row: DiagnosisRevenue) -> Any:
        value = getattr(row, key)
        return value.lower() if isinstance(value, str) else value

    return sorted(rows, key=sort_key, reverse=descending)


# --------------------------------------------------------------------------------------
# Patient views (run on the unfiltered record set)
# --------------------------------------------------------------------------------------


def _short_date(visit_date: str) -> str:
    return "/".join(visit_date.split("-")[1:])


def _build_profile(hn: str, visits: Sequence[PatientRecord]) -> PatientProfile:
    ordered = sorted(visits, key=lambda v: v.visit_date)
    scored = [
        v
        for v in ordered
        if v.initial_pain_score is not None and v.discharge_pain_score is not None and v.initial_pain_score > 0
    ]
    improvement = (
        sum((v.initial_pain_score - v.discharge_pain_score) / v.initial_pain_score for v in scored) / len(scored)
        if scored
        else 0.0
    )
    return PatientProfile(
        hn=hn,
        name=(ordered[0].patient_name if ordered else "") or UNKNOWN_PATIENT,
        visits=ordered,
        pain_trend=[
            PainTrendPoint(
                date=v.visit_date,
                initial=v.initial_pain_score,
                discharge=v.discharge_pain_score,
                short_date=_short_date(v.visit_date),
            )
            for v in ordered
        ],
        total_revenue=sum(v.revenue for v in ordered),
        avg_improvement=round(improvement * 100, 1),
    )


def patient_profile(records: Iterable[PatientRecord], hn: str) -> PatientProfile | None:
    """Full visit history for one patient, or None if the HN is unknown."""
    visits = [r for r in records if r.hn == hn]
    if not visits:
        return None
    return _build_profile(hn, visits)


def patient_profiles(records: Iterable[PatientRecord]) -> list[PatientProfile]:
    """Profiles for every patient, in order of first appearance."""
    by_hn: dict[str, list[PatientRecord]] = {}
    for record in records:
        by_hn.setdefault(record.hn, []).append(record)
    return [_build_profile(hn, visits) for hn, visits in by_hn.items()]


def repeat_visits(records: Iterable[PatientRecord]) -> list[RepeatVisitMonth]:
    """Patients seen more than once in the same month, most recent month first."""
    groups: dict[str, dict[str, RepeatPatient]] = {}
    for record in records:
        patients = groups.setdefault(record.month, {})
        entry = patients.get(record.hn)
        if entry is None:
            entry = RepeatPatient(hn=record.hn, count=0, name=record.patient_name, icds=[])
        icds = entry.icds
        if record.icd10 and record.icd10 not in icds:
            icds = [*icds, record.icd10]
        patients[record.hn] = RepeatPatient(hn=entry.hn, count=entry.count + 1, name=entry.name, icds=icds)

    result = []
    for month, patients in groups.items():
        repeats = sorted(
            (p for p in patients.values() if p.count > 1),
            key=lambda p: (-p.count, p.hn),
        )
        if repeats:
            result.append(RepeatVisitMonth(month=month, patients=repeats))
    result.sort(key=lambda m: m.month, reverse=True)
    return result


def monthly_volume(records: Sequence[PatientRecord]) -> list[MonthlyVolume]:
    """Visit count per month, oldest first."""
    if not records:
        return []
    counts = records_frame(records).groupby("month", sort=True).size()
    return [MonthlyVolume(month=str(month), count=int(n)) for month, n in counts.items()]


# --------------------------------------------------------------------------------------
# Registry view
# --------------------------------------------------------------------------------------


RECORD_KEYS: Final = frozenset(f.name for f in fields(PatientRecord))


def _parse_visit_date(visit_date: str) -> datetime | None:
    if not visit_date:
        return None
    try:
        return date_parse(visit_date)
    except (ValueError, OverflowError):
        return None


def registry_stats(records: Sequence[PatientRecord]) -> RegistryStats:
    """Visit counts for the year and month of the most recent visit."""
    empty = RegistryStats(ytd=0, latest_month=0, latest_month_name=NOT_AVAILABLE)
    if not records:
        return empty

    latest = _parse_visit_date(max(r.visit_date for r in records))
    if latest is None:
        return empty

    parsed = [d for d in (_parse_visit_date(r.visit_date) for r in records) if d is not None]
    ytd = sum(1 for d in parsed if d.year == latest.year)
    month = sum(1 for d in parsed if d.year == latest.year and d.month == latest.month)
    return RegistryStats(ytd=ytd, latest_month=month, latest_month_name=latest.strftime("%B %Y"))


def search_records(records: Iterable[PatientRecord], term: str) -> list[PatientRecord]:
    """Case-insensitive search over patient name, HN, ICD-10 and doctor."""
    needle = term.strip().lower()
    if not needle:
        return list(records)
    return [
        r
        for r in records
        if needle in r.patient_name.lower()
        or needle in r.hn.lower()
        or needle in r.icd10.lower()
        or needle in r.doctor.lower()
    ]


def sort_records(
    records: Iterable[PatientRecord], key: str = "visit_date", descending: bool = True
) -> list[PatientRecord]:
    """Sort by any record field; records with no value for the key go last."""
    if key not in RECORD_KEYS:
        raise ValueError(f"Cannot sort by unknown column: {key}")
    records = list(records)
    present = [r for r in records if getattr(r, key) is not None]
    missing = [r for r in records if getattr(r, key) is None]
    present.sort(key=lambda r: getattr(r, key), reverse=descending)
    return present + missing


# --------------------------------------------------------------------------------------
# Whole-report entry point
# --------------------------------------------------------------------------------------


def analyze(
    records: Sequence[PatientRecord],
    descriptions: Mapping[str, str] | None = None,
    *,
    all_records: Sequence[PatientRecord] | None = None,
    date_range: DateRange | None = None,
) -> AnalyticsReport:
    """Compute every aggregate for the filtered ``records``.

    Patient-level sections (profiles, repeat visits, volume) use
    ``all_records`` when given so they always show full history.
    """
    history = records if all_records is None else all_records
    icd10 = code_clusters(records, "icd10", descriptions)
    icd9 = code_clusters(records, "icd9")

    return AnalyticsReport(
        date_range=date_range or DateRange(),
        available_dates=available_dates(history),
        summary=summary_metrics(records, icd10),
        clinical=_clinical_from_clusters(icd10, icd9),
        monthly_pain=monthly_pain_stats(records),
        revenue=revenue_overview(records, descriptions),
        monthly_volume=monthly_volume(history),
        repeat_visits=repeat_visits(history),
        registry=registry_stats(records),
        patients=patient_profiles(history),
    )
