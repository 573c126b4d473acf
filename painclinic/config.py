"""Configuration management for painclinic.

Centralizes profile-based configuration loading and validation.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from painclinic.date_filter import DateRange
from painclinic.exceptions import ConfigurationError

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL_ID = "gpt-4o-mini"
DEFAULT_MAX_ATTEMPTS = 3


def check_api_accessibility(base_url: str, timeout: int = 10) -> bool:
    """Check if the API base URL is accessible."""
    import urllib.request
    import urllib.error

    try:
        req = urllib.request.Request(base_url, method="HEAD")
        urllib.request.urlopen(req, timeout=timeout)
        return True
    except urllib.error.HTTPError:
        return True
    except (urllib.error.URLError, TimeoutError):
        return False


@dataclass
class ProfileConfig:
    """Profile configuration loaded from YAML file.

    Contains the visit spreadsheet location, the default date window, and
    LLM API settings.
    """

    name: str
    input_path: Path | None = None
    output_path: Path | None = None

    # Active date window (both empty = whole dataset)
    start_date: str | None = None
    end_date: str | None = None

    # API configuration
    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    model_id: str | None = None
    insights_model_id: str | None = None
    max_attempts: int | None = None

    @classmethod
    def from_file(cls, profile_path: Path) -> "ProfileConfig":
        """Load profile from YAML or JSON file."""
        if not profile_path.exists():
            raise FileNotFoundError(f"Profile not found: {profile_path}")

        content = profile_path.read_text(encoding="utf-8")

        if profile_path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        else:
            data = json.loads(content)

        if not isinstance(data, dict):
            raise ConfigurationError(f"Profile '{profile_path}' must contain a mapping")

        def get_path(key: str) -> Path | None:
            val = data.get(key)
            return Path(val) if val else None

        def get_str(key: str) -> str | None:
            val = data.get(key)
            return str(val) if val else None

        return cls(
            name=data.get("name", profile_path.stem),
            input_path=get_path("input_path"),
            output_path=get_path("output_path"),
            start_date=get_str("start_date"),
            end_date=get_str("end_date"),
            base_url=data.get("base_url", DEFAULT_BASE_URL),
            api_key=data.get("api_key"),
            model_id=data.get("model_id"),
            insights_model_id=data.get("insights_model_id"),
            max_attempts=data.get("max_attempts"),
        )

    @classmethod
    def list_profiles(cls, profiles_dir: Path = Path("profiles")) -> list[str]:
        """List available profile names (excludes templates starting with _)."""
        if not profiles_dir.exists():
            return []
        profiles = []
        for ext in ("*.yaml", "*.yml", "*.json"):
            for f in profiles_dir.glob(ext):
                if not f.name.startswith("_"):
                    profiles.append(f.stem)
        return sorted(set(profiles))


@dataclass
class Config:
    """Configuration for the visit analytics run.

    Built from a profile, with environment variables filling API settings the
    profile leaves out.
    """

    # Path Configuration
    input_path: Path
    output_path: Path

    # API Configuration
    base_url: str
    api_key: str | None

    # Model Configuration
    model_id: str
    insights_model_id: str

    # Retry Configuration
    max_attempts: int

    # Date window
    start_date: str = ""
    end_date: str = ""

    @property
    def date_range(self) -> DateRange:
        return DateRange(self.start_date, self.end_date)

    @property
    def llm_enabled(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_profile(cls, profile: ProfileConfig) -> "Config":
        """Load configuration from a profile.

        Args:
            profile: ProfileConfig loaded from YAML/JSON file.

        Returns:
            Config: Validated configuration object.

        Raises:
            ConfigurationError: If required fields are missing.
        """
        # Validate required profile fields
        if not profile.input_path:
            raise ConfigurationError(
                f"Profile '{profile.name}' missing required field: input_path"
            )
        if not profile.output_path:
            raise ConfigurationError(
                f"Profile '{profile.name}' missing required field: output_path"
            )

        api_key = profile.api_key or os.getenv("OPENROUTER_API_KEY") or None
        model_id = profile.model_id or os.getenv("MODEL_ID") or DEFAULT_MODEL_ID
        insights_model_id = profile.insights_model_id or os.getenv("INSIGHTS_MODEL_ID") or model_id

        # Attempts with priority: profile > env > default (at least one call)
        if profile.max_attempts is not None:
            max_attempts_raw = profile.max_attempts
        else:
            try:
                max_attempts_raw = int(os.getenv("MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS)))
            except ValueError:
                max_attempts_raw = DEFAULT_MAX_ATTEMPTS
        max_attempts = max(1, int(max_attempts_raw))

        return cls(
            input_path=profile.input_path,
            output_path=profile.output_path,
            base_url=profile.base_url,
            api_key=api_key,
            model_id=model_id,
            insights_model_id=insights_model_id,
            max_attempts=max_attempts,
            start_date=profile.start_date or "",
            end_date=profile.end_date or "",
        )
