"""Tests for main.py orchestration and CLI."""

import json
import logging
import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from painclinic.config import Config
from painclinic.descriptions import DescriptionCache
from painclinic.main import (
    ClinicReportRunner,
    build_parser,
    config_from_args,
    load_description_cache,
    main,
    setup_logging,
)
from painclinic.narrative import ClinicalInsight, PatientNarrative

CSV = (
    "VISIT_DATE,HN,PATIENT_NAME,DOCTOR,ICD10,PAIN_SCORE_(แรกรับ),PAIN_SCORE_(ก่อนจำหน่าย),REVENUES\n"
    "2024-01-10,H1,Somchai,Dr. A,M54.5: Low back pain,8,4,1000\n"
    "2024-01-20,H2,Malee,Dr. B,G89.4,6,3,500\n"
    "2024-02-05,H1,Somchai,Dr. A,M54.5: Low back pain,7,2,1000\n"
    "2024-02-06,,Ghost,Dr. A,M54.5,5,5,100\n"
)


def _config(tmp_path, **overrides):
    input_path = tmp_path / "visits.csv"
    input_path.write_text(CSV, encoding="utf-8")
    values = {
        "input_path": input_path,
        "output_path": tmp_path / "out",
        "base_url": "https://example.test/v1",
        "api_key": "test-key",
        "model_id": "m",
        "insights_model_id": "m",
        "max_attempts": 1,
    }
    values.update(overrides)
    return Config(**values)


def _narratives():
    service = MagicMock()
    service.refresh_descriptions.side_effect = lambda records, cache: cache.extend({"G89.4": "Chronic pain"})
    service.clinical_insights.return_value = ClinicalInsight("All good", ["obs"], ["rec"])
    service.patient_narrative.return_value = PatientNarrative("Improving", "improving", ["pain down"])
    return service


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_handlers(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        root = logging.getLogger()
        saved = root.handlers[:]
        try:
            setup_logging()
            assert (tmp_path / "logs").is_dir()
            assert len(root.handlers) == 2
            assert root.handlers[1].level == logging.ERROR
            assert logging.getLogger("openai").level == logging.WARNING
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers = saved


class TestClinicReportRunner:
    """Tests for ClinicReportRunner."""

    def test_report_only(self, tmp_path):
        runner = ClinicReportRunner(_config(tmp_path), narratives=_narratives())
        report = runner.run()
        assert report.summary.total_patients == 3
        assert report.date_range.start == "2024-01-10"
        assert report.date_range.end == "2024-02-05"

        data = json.loads((tmp_path / "out" / "report.json").read_text(encoding="utf-8"))
        assert data["summary"]["total_patients"] == 3
        assert not (tmp_path / "out" / "insights.json").exists()

    def test_configured_date_range(self, tmp_path):
        config = _config(tmp_path, start_date="2024-01-01", end_date="2024-01-31")
        report = ClinicReportRunner(config, narratives=_narratives()).run()
        assert report.summary.total_patients == 2
        # patient history ignores the window
        h1 = next(p for p in report.patients if p.hn == "H1")
        assert len(h1.visits) == 2

    @patch("painclinic.main.check_api_accessibility", return_value=True)
    def test_llm_steps(self, _mock_check, tmp_path):
        narratives = _narratives()
        runner = ClinicReportRunner(_config(tmp_path), narratives=narratives)
        report = runner.run(descriptions=True, insights=True, narratives=True)

        out = tmp_path / "out"
        assert json.loads((out / "descriptions.json").read_text(encoding="utf-8")) == {"G89.4": "Chronic pain"}
        assert json.loads((out / "insights.json").read_text(encoding="utf-8"))["summary"] == "All good"
        assert sorted(p.name for p in (out / "narratives").iterdir()) == ["H1.json", "H2.json"]
        assert narratives.patient_narrative.call_count == 2

        top = {c.code: c for c in report.clinical.top_icd10}
        assert top["G89.4"].description == "Chronic pain"

    @patch("painclinic.main.check_api_accessibility", return_value=True)
    def test_descriptions_drawn_from_full_dataset(self, _mock_check, tmp_path):
        """Codes outside the active window still get descriptions."""
        narratives = _narratives()
        config = _config(tmp_path, start_date="2024-02-01", end_date="2024-02-29")
        ClinicReportRunner(config, narratives=narratives).run(descriptions=True)

        records = narratives.refresh_descriptions.call_args.args[0]
        assert len(records) == 3
        assert "G89.4" in {r.icd10_code for r in records}

    @patch("painclinic.main.check_api_accessibility", return_value=True)
    def test_selected_patients(self, _mock_check, tmp_path):
        narratives = _narratives()
        runner = ClinicReportRunner(_config(tmp_path), narratives=narratives)
        runner.run(narratives=True, patients=["H2", "H9"])
        assert narratives.patient_narrative.call_count == 1
        assert (tmp_path / "out" / "narratives" / "H2.json").exists()

    def test_llm_skipped_without_key(self, tmp_path):
        narratives = _narratives()
        runner = ClinicReportRunner(_config(tmp_path, api_key=None), narratives=narratives)
        runner.run(descriptions=True, insights=True, narratives=True)
        narratives.clinical_insights.assert_not_called()
        narratives.refresh_descriptions.assert_not_called()
        assert (tmp_path / "out" / "report.json").exists()

    @patch("painclinic.main.check_api_accessibility", return_value=False)
    def test_llm_skipped_when_unreachable(self, _mock_check, tmp_path):
        narratives = _narratives()
        ClinicReportRunner(_config(tmp_path), narratives=narratives).run(insights=True)
        narratives.clinical_insights.assert_not_called()

    def test_description_cache_seeded_from_previous_run(self, tmp_path):
        out = tmp_path / "out"
        out.mkdir()
        (out / "descriptions.json").write_text(json.dumps({"M54.5": "Lumbago"}), encoding="utf-8")
        report = ClinicReportRunner(_config(tmp_path), narratives=_narratives()).run()
        assert report.clinical.top_icd10[0].description == "Lumbago"


class TestLoadDescriptionCache:
    """Tests for load_description_cache."""

    def test_missing(self, tmp_path):
        assert load_description_cache(tmp_path / "none.json") == DescriptionCache()

    def test_unreadable(self, tmp_path):
        path = tmp_path / "descriptions.json"
        path.write_text("{broken", encoding="utf-8")
        assert len(load_description_cache(path)) == 0


class TestCli:
    """Tests for argument parsing and main()."""

    def test_input_and_profile_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--input", "a.csv", "--profile", "x"])

    def test_config_from_input(self, tmp_path):
        args = build_parser().parse_args(
            ["--input", "a.csv", "--output", str(tmp_path), "--start", "2024-01-01", "--end", "2024-01-31"]
        )
        with patch.dict(os.environ, {}, clear=True):
            config = config_from_args(args)
        assert config.input_path == Path("a.csv")
        assert config.output_path == tmp_path
        assert config.date_range.start == "2024-01-01"

    def test_config_from_profile(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "profiles").mkdir()
        (tmp_path / "profiles" / "clinic.yaml").write_text(
            "input_path: visits.csv\noutput_path: reports\n", encoding="utf-8"
        )
        args = build_parser().parse_args(["--profile", "clinic"])
        with patch.dict(os.environ, {}, clear=True):
            config = config_from_args(args)
        assert config.output_path == Path("reports")

    def test_main_unknown_profile_exits(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(SystemExit, match="Configuration error"):
            main(["--profile", "missing"])

    def test_main_missing_input_exits(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(SystemExit, match="Input error"):
            main(["--input", str(tmp_path / "missing.csv"), "--output", str(tmp_path / "out")])

    def test_main_writes_report(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        csv = tmp_path / "visits.csv"
        csv.write_text(CSV, encoding="utf-8")
        with patch.dict(os.environ, {}, clear=True):
            main(["--input", str(csv), "--output", str(tmp_path / "out")])
        assert (tmp_path / "out" / "report.json").exists()
