"""Tests for config.py configuration management."""

import json
import os
import urllib.error
from pathlib import Path
from unittest.mock import patch

import pytest

from painclinic.config import Config, ProfileConfig, check_api_accessibility
from painclinic.date_filter import DateRange
from painclinic.exceptions import ConfigurationError


def _profile(**overrides):
    """Create a minimal valid ProfileConfig."""
    defaults = {
        "name": "test",
        "input_path": Path("/path/to/visits.xlsx"),
        "output_path": Path("/path/to/output"),
    }
    defaults.update(overrides)
    return ProfileConfig(**defaults)


def _minimal_env(**overrides):
    """Minimal valid env vars."""
    env = {
        "OPENROUTER_API_KEY": "test-key",
        "MODEL_ID": "test-model",
    }
    env.update(overrides)
    return env


class TestConfigFromProfile:
    """Tests for Config.from_profile() method."""

    def test_missing_input_path_raises(self):
        with patch.dict(os.environ, _minimal_env(), clear=True):
            with pytest.raises(ConfigurationError, match="input_path"):
                Config.from_profile(_profile(input_path=None))

    def test_missing_output_path_raises(self):
        with patch.dict(os.environ, _minimal_env(), clear=True):
            with pytest.raises(ConfigurationError, match="output_path"):
                Config.from_profile(_profile(output_path=None))

    def test_valid_minimal_config(self):
        with patch.dict(os.environ, _minimal_env(), clear=True):
            config = Config.from_profile(_profile())
            assert config.api_key == "test-key"
            assert config.model_id == "test-model"
            assert config.insights_model_id == "test-model"
            assert config.input_path == Path("/path/to/visits.xlsx")
            assert config.llm_enabled

    def test_missing_api_key_disables_llm(self):
        """The report still runs without a key; only LLM steps are skipped."""
        with patch.dict(os.environ, {}, clear=True):
            config = Config.from_profile(_profile())
            assert config.api_key is None
            assert not config.llm_enabled

    def test_default_model(self):
        with patch.dict(os.environ, {}, clear=True):
            assert Config.from_profile(_profile()).model_id == "gpt-4o-mini"

    def test_profile_values_override_env(self):
        with patch.dict(os.environ, _minimal_env(INSIGHTS_MODEL_ID="env-insights"), clear=True):
            config = Config.from_profile(_profile(api_key="profile-key", model_id="profile-model"))
            assert config.api_key == "profile-key"
            assert config.model_id == "profile-model"
            assert config.insights_model_id == "env-insights"

    def test_default_base_url(self):
        with patch.dict(os.environ, _minimal_env(), clear=True):
            config = Config.from_profile(_profile())
            assert config.base_url == "https://openrouter.ai/api/v1"

    def test_default_max_attempts(self):
        with patch.dict(os.environ, _minimal_env(), clear=True):
            assert Config.from_profile(_profile()).max_attempts == 3

    def test_max_attempts_from_env(self):
        with patch.dict(os.environ, _minimal_env(MAX_ATTEMPTS="5"), clear=True):
            assert Config.from_profile(_profile()).max_attempts == 5

    def test_invalid_max_attempts_env_uses_default(self):
        with patch.dict(os.environ, _minimal_env(MAX_ATTEMPTS="many"), clear=True):
            assert Config.from_profile(_profile()).max_attempts == 3

    def test_profile_attempts_override_env(self):
        with patch.dict(os.environ, _minimal_env(MAX_ATTEMPTS="5"), clear=True):
            assert Config.from_profile(_profile(max_attempts=2)).max_attempts == 2

    def test_zero_max_attempts_becomes_one(self):
        with patch.dict(os.environ, _minimal_env(MAX_ATTEMPTS="0"), clear=True):
            assert Config.from_profile(_profile()).max_attempts == 1

    def test_date_range(self):
        with patch.dict(os.environ, _minimal_env(), clear=True):
            config = Config.from_profile(_profile(start_date="2024-01-01", end_date="2024-03-31"))
            assert config.date_range == DateRange("2024-01-01", "2024-03-31")
            assert Config.from_profile(_profile()).date_range.is_unbounded


class TestProfileConfig:
    """Tests for ProfileConfig file loading."""

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "clinic.yaml"
        path.write_text(
            "input_path: data/visits.xlsx\n"
            "output_path: out\n"
            "start_date: '2024-01-01'\n"
            "max_attempts: 4\n",
            encoding="utf-8",
        )
        profile = ProfileConfig.from_file(path)
        assert profile.name == "clinic"
        assert profile.input_path == Path("data/visits.xlsx")
        assert profile.start_date == "2024-01-01"
        assert profile.end_date is None
        assert profile.max_attempts == 4

    def test_from_json(self, tmp_path):
        path = tmp_path / "clinic.json"
        path.write_text(json.dumps({"name": "Main", "input_path": "v.csv", "output_path": "o"}), encoding="utf-8")
        profile = ProfileConfig.from_file(path)
        assert profile.name == "Main"
        assert profile.output_path == Path("o")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ProfileConfig.from_file(tmp_path / "missing.yaml")

    def test_non_mapping_raises(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="mapping"):
            ProfileConfig.from_file(path)

    def test_list_profiles_skips_templates(self, tmp_path):
        for name in ("b.yaml", "a.json", "_template.yaml", "notes.txt"):
            (tmp_path / name).write_text("{}", encoding="utf-8")
        assert ProfileConfig.list_profiles(tmp_path) == ["a", "b"]

    def test_list_profiles_missing_dir(self, tmp_path):
        assert ProfileConfig.list_profiles(tmp_path / "nope") == []


class TestCheckApiAccessibility:
    """Tests for check_api_accessibility."""

    @patch("urllib.request.urlopen")
    def test_reachable(self, mock_urlopen):
        assert check_api_accessibility("https://example.test") is True

    @patch("urllib.request.urlopen")
    def test_http_error_still_reachable(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.HTTPError("https://example.test", 404, "nf", {}, None)
        assert check_api_accessibility("https://example.test") is True

    @patch("urllib.request.urlopen")
    def test_unreachable(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.URLError("no route")
        assert check_api_accessibility("https://example.test") is False
