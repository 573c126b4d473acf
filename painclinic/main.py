"""Pain-clinic visit analytics.

• Reads a visit export (CSV / Excel) whose rows carry HN, dates, ICD-10/ICD-9
  composites, textual pain scores and revenue.
• Normalizes the rows into immutable records, applies the active date window
  and computes every dashboard aggregate (clinical, revenue, patient history,
  repeat visits, registry).
• Optionally asks an OpenAI-compatible LLM (OpenRouter by default) for ICD-10
  descriptions, a cohort-level clinical insight and per-patient narratives.
• Produces an output folder with:
      ├─ report.json            # AnalyticsReport for the active window
      ├─ descriptions.json      # accumulated ICD-10 description cache
      ├─ insights.json          # cohort narrative (--insights)
      └─ narratives/<hn>.json   # per-patient narratives (--narratives)

Configuration comes from a profile in ``profiles/`` (see config.py) or from the
command line, with these environment variables filling the gaps:
    OPENROUTER_API_KEY           – required for any LLM feature
    MODEL_ID                     – default model (default: gpt-4o-mini)
    INSIGHTS_MODEL_ID            – (optional) override for insights / narratives
    MAX_ATTEMPTS                 – (optional) calls per LLM request on rate limits (default 3)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from tqdm import tqdm

from painclinic.aggregation import AnalyticsReport, analyze
from painclinic.config import Config, ProfileConfig, check_api_accessibility
from painclinic.date_filter import DateRange, filter_by_date_range, full_range
from painclinic.descriptions import DescriptionCache
from painclinic.exceptions import ConfigurationError, DataLoadError, PromptError
from painclinic.loader import load_rows
from painclinic.narrative import NarrativeService
from painclinic.records import PatientRecord, normalize_rows

PROFILES_DIR = Path("profiles")
DEFAULT_OUTPUT = Path("output")

# --------------------------------------------------------------------------------------
# Logging helpers
# --------------------------------------------------------------------------------------


def setup_logging() -> None:
    """Configure a root logger that prints to stdout and also persists errors."""
    fmt = "%(asctime)s | %(levelname)-8s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    root = logging.getLogger()
    root.setLevel(logging.INFO)

    out_hdlr = logging.StreamHandler(sys.stdout)
    out_hdlr.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    logs_dir = Path("logs")
    logs_dir.mkdir(exist_ok=True)
    err_hdlr = logging.FileHandler(logs_dir / "error.log", encoding="utf-8")
    err_hdlr.setLevel(logging.ERROR)
    err_hdlr.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root.handlers = [out_hdlr, err_hdlr]

    # Quiet noisy deps
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


def write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def load_description_cache(path: Path) -> DescriptionCache:
    """Seed the cache from a previous run's descriptions.json, if any."""
    if not path.exists():
        return DescriptionCache()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logging.getLogger(__name__).warning("Ignoring unreadable description cache %s: %s", path, e)
        return DescriptionCache()
    return DescriptionCache(data if isinstance(data, dict) else None)


# --------------------------------------------------------------------------------------
# Orchestrator
# --------------------------------------------------------------------------------------


class ClinicReportRunner:
    """Loads visits, builds the report and runs the optional LLM steps."""

    def __init__(self, config: Config, narratives: NarrativeService | None = None) -> None:
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.output_path = config.output_path
        self.output_path.mkdir(parents=True, exist_ok=True)
        self.narratives_dir = self.output_path / "narratives"
        self.descriptions_path = self.output_path / "descriptions.json"

        self._narratives = narratives
        self.all_records: list[PatientRecord] = []
        self.records: list[PatientRecord] = []
        self.date_range = DateRange()
        self.descriptions = load_description_cache(self.descriptions_path)

    @property
    def narratives(self) -> NarrativeService:
        # Built lazily so runs without LLM steps never touch the API client
        if self._narratives is None:
            self._narratives = NarrativeService(self.config)
        return self._narratives

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def load(self) -> None:
        self.all_records = normalize_rows(load_rows(self.config.input_path))
        configured = self.config.date_range
        self.date_range = full_range(self.all_records) if configured.is_unbounded else configured
        self.records = filter_by_date_range(self.all_records, self.date_range)
        self.logger.info(
            "%d record(s) loaded, %d in range %s..%s",
            len(self.all_records),
            len(self.records),
            self.date_range.start or "*",
            self.date_range.end or "*",
        )

    def refresh_descriptions(self) -> None:
        self.descriptions = self.narratives.refresh_descriptions(self.all_records, self.descriptions)
        write_json(self.descriptions_path, self.descriptions.to_dict())

    def build_report(self) -> AnalyticsReport:
        report = analyze(
            self.records,
            self.descriptions,
            all_records=self.all_records,
            date_range=self.date_range,
        )
        write_json(self.output_path / "report.json", report.to_dict())
        self.logger.info("Report written to %s", self.output_path / "report.json")
        return report

    def write_insights(self) -> None:
        insight = self.narratives.clinical_insights(self.records)
        write_json(
            self.output_path / "insights.json",
            {
                "summary": insight.summary,
                "clinicalObservations": insight.clinical_observations,
                "recommendations": insight.recommendations,
                "degraded": insight.degraded,
            },
        )

    def write_narratives(self, report: AnalyticsReport, hns: Sequence[str] = ()) -> int:
        """Write one narrative per selected patient (all patients when ``hns`` is empty)."""
        profiles = report.patients
        if hns:
            wanted = set(hns)
            profiles = [p for p in profiles if p.hn in wanted]
            for hn in sorted(wanted - {p.hn for p in profiles}):
                self.logger.warning("No visits found for HN %s", hn)

        visits_by_hn: dict[str, list[PatientRecord]] = {}
        for record in self.all_records:
            visits_by_hn.setdefault(record.hn, []).append(record)

        for profile in tqdm(profiles, desc="Patient narratives"):
            visits = sorted(visits_by_hn.get(profile.hn, []), key=lambda r: r.visit_date)
            narrative = self.narratives.patient_narrative(profile.name, visits)
            write_json(
                self.narratives_dir / f"{profile.hn}.json",
                {
                    "hn": profile.hn,
                    "name": profile.name,
                    "summary": narrative.summary,
                    "trend": narrative.trend,
                    "keyIndicators": narrative.key_indicators,
                    "degraded": narrative.degraded,
                },
            )
        return len(profiles)

    def llm_available(self) -> bool:
        if not self.config.llm_enabled:
            self.logger.warning("OPENROUTER_API_KEY not set; skipping LLM features")
            return False
        if not check_api_accessibility(self.config.base_url):
            self.logger.warning("LLM API at %s is not reachable; skipping LLM features", self.config.base_url)
            return False
        return True

    def run(
        self,
        *,
        descriptions: bool = False,
        insights: bool = False,
        narratives: bool = False,
        patients: Sequence[str] = (),
    ) -> AnalyticsReport:
        self.load()

        use_llm = (descriptions or insights or narratives) and self.llm_available()
        if use_llm and descriptions:
            self.refresh_descriptions()

        report = self.build_report()

        if use_llm and insights:
            self.write_insights()
        if use_llm and narratives:
            count = self.write_narratives(report, patients)
            self.logger.info("Wrote %d patient narrative(s) to %s", count, self.narratives_dir)
        return report


# --------------------------------------------------------------------------------------
# CLI
# --------------------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="painclinic", description="Pain-clinic visit analytics")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--profile", help="Profile name in profiles/ (YAML or JSON)")
    source.add_argument("--input", type=Path, help="Visit export (.csv, .xlsx, .xls)")
    parser.add_argument("--output", type=Path, help="Output directory (default: output/)")
    parser.add_argument("--start", help="Start of the date window (YYYY-MM-DD)")
    parser.add_argument("--end", help="End of the date window (YYYY-MM-DD)")
    parser.add_argument("--descriptions", action="store_true", help="Fetch missing ICD-10 descriptions")
    parser.add_argument("--insights", action="store_true", help="Generate the cohort clinical insight")
    parser.add_argument("--narratives", action="store_true", help="Generate per-patient narratives")
    parser.add_argument("--patient", action="append", default=[], metavar="HN", help="Limit narratives to HN (repeatable)")
    return parser


def find_profile(name: str, profiles_dir: Path = PROFILES_DIR) -> Path:
    for ext in (".yaml", ".yml", ".json"):
        candidate = profiles_dir / f"{name}{ext}"
        if candidate.exists():
            return candidate
    available = ", ".join(ProfileConfig.list_profiles(profiles_dir)) or "none"
    raise ConfigurationError(f"Profile '{name}' not found in {profiles_dir} (available: {available})")


def config_from_args(args: argparse.Namespace) -> Config:
    if args.profile:
        profile = ProfileConfig.from_file(find_profile(args.profile))
    else:
        profile = ProfileConfig(name="cli", input_path=args.input, output_path=DEFAULT_OUTPUT)

    if args.output:
        profile.output_path = args.output
    if args.start:
        profile.start_date = args.start
    if args.end:
        profile.end_date = args.end
    return Config.from_profile(profile)


def main(argv: Sequence[str] | None = None) -> None:
    """Run the report using CLI arguments, profile and environment variables."""
    load_dotenv(override=True)
    setup_logging()
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args)
    except (ConfigurationError, FileNotFoundError, ValueError) as e:
        raise SystemExit(f"Configuration error: {e}")

    start = datetime.now()
    try:
        ClinicReportRunner(config).run(
            descriptions=args.descriptions,
            insights=args.insights,
            narratives=args.narratives,
            patients=args.patient,
        )
    except DataLoadError as e:
        raise SystemExit(f"Input error: {e}")
    except PromptError as e:
        raise SystemExit(f"Prompt error: {e}")

    logging.getLogger(__name__).info(
        "Finished in %.1fs",
        (datetime.now() - start).total_seconds(),
    )


if __name__ == "__main__":
    main()
