"""LLM-backed narratives with rate-limit aware retries.

• ``LLM`` wraps OpenAI-compatible chat completions and translates client
  errors into ``NarrativeError`` tagged RATE_LIMITED or OTHER.
• ``with_retry`` retries rate-limited calls with exponential backoff + jitter
  and re-raises everything else immediately.
• ``NarrativeService`` never lets a collaborator failure escape: callers get a
  degraded but well-formed result with advisory text instead.
"""

from __future__ import annotations

import json
import logging
import random
import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final, TypeVar

import openai
from openai import OpenAI

from painclinic.config import Config
from painclinic.descriptions import DescriptionCache, codes_needing_descriptions
from painclinic.exceptions import ErrorKind, NarrativeError, PromptError
from painclinic.records import PatientRecord

T = TypeVar("T")

PROMPTS_DIR: Final = Path(__file__).parent / "prompts"
REQUIRED_PROMPTS: Final[tuple[str, ...]] = (
    "clinical_insights.system_prompt",
    "icd_descriptions.system_prompt",
    "patient_narrative.system_prompt",
)

DEFAULT_MAX_ATTEMPTS: Final = 3
INSIGHT_SAMPLE_SIZE: Final = 50
TRENDS: Final[tuple[str, ...]] = ("improving", "stable", "declining", "not enough data")
NO_TREND: Final = "not enough data"

RATE_LIMIT_MARKERS: Final[tuple[str, ...]] = ("429", "quota", "resource_exhausted")

JSON_FENCE: Final = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def load_prompt(name: str) -> str:
    path = PROMPTS_DIR / f"{name}.md"
    if not path.exists():
        raise PromptError(f"Prompt file not found: {path}", prompt_name=name)
    return path.read_text(encoding="utf-8")


# --------------------------------------------------------------------------------------
# Error classification & retry
# --------------------------------------------------------------------------------------


def classify_error(exc: BaseException) -> ErrorKind:
    """Decide whether a failure is a rate limit.

    Typed errors win; the message heuristics only cover clients that raise
    plain exceptions.
    """
    if isinstance(exc, NarrativeError):
        return exc.kind
    if isinstance(exc, openai.RateLimitError):
        return ErrorKind.RATE_LIMITED
    if getattr(exc, "status_code", None) == 429:
        return ErrorKind.RATE_LIMITED

    status = getattr(exc, "status", None)
    if status == 429 or str(status).upper() == "RESOURCE_EXHAUSTED":
        return ErrorKind.RATE_LIMITED

    message = str(exc).lower()
    if any(marker in message for marker in RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMITED
    return ErrorKind.OTHER


def backoff_seconds(attempt: int) -> float:
    """Wait before retry number ``attempt + 1``: 2^(attempt+1.5) s plus up to 1 s jitter."""
    return 2 ** (attempt + 1.5) + random.uniform(0.0, 1.0)


def with_retry(operation: Callable[[], T], max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> T:
    """Run ``operation``, retrying only rate-limited failures.

    Makes at most ``max_attempts`` calls. The last failure (or the first
    non-rate-limit failure) is re-raised to the caller.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        try:
            return operation()
        except Exception as exc:
            attempt += 1
            if attempt >= max_attempts or classify_error(exc) is not ErrorKind.RATE_LIMITED:
                raise
            wait = backoff_seconds(attempt - 1)
            logging.getLogger(__name__).warning(
                "LLM rate limit hit. Retrying in %.1fs... (attempt %d/%d)", wait, attempt, max_attempts
            )
            time.sleep(wait)


# --------------------------------------------------------------------------------------
# OpenAI wrapper
# --------------------------------------------------------------------------------------


@dataclass(slots=True)
class LLM:
    """Lightweight wrapper around OpenAI chat completions returning JSON text."""

    client: OpenAI
    model: str

    def __call__(self, messages: list[dict[str, str]], *, max_tokens: int = 2048, temperature: float = 0.0) -> str:
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                response_format={"type": "json_object"},
            )
        except openai.APIError as exc:
            raise NarrativeError(str(exc), kind=classify_error(exc), cause=exc) from exc

        content = resp.choices[0].message.content if resp.choices else None
        if not content:
            raise NarrativeError(f"Empty response from {self.model}")
        return content.strip()


def parse_json_response(text: str) -> dict[str, Any]:
    """Parse a model reply into a JSON object, tolerating ```json fences."""
    match = JSON_FENCE.match(text.strip())
    body = match.group(1) if match else text
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise NarrativeError(f"Model returned invalid JSON: {exc}", cause=exc) from exc
    if not isinstance(data, dict):
        raise NarrativeError(f"Expected JSON object, got {type(data).__name__}")
    return data


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


# --------------------------------------------------------------------------------------
# Narrative results
# --------------------------------------------------------------------------------------


@dataclass(frozen=True)
class ClinicalInsight:
    summary: str
    clinical_observations: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    degraded: bool = False

    @classmethod
    def from_response(cls, data: Mapping[str, Any]) -> "ClinicalInsight":
        summary = data.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            raise NarrativeError("Insight response is missing 'summary'")
        return cls(
            summary=summary.strip(),
            clinical_observations=_string_list(data.get("clinicalObservations")),
            recommendations=_string_list(data.get("recommendations")),
        )

    @classmethod
    def unavailable(cls, exc: BaseException) -> "ClinicalInsight":
        quota = classify_error(exc) is ErrorKind.RATE_LIMITED
        return cls(
            summary=(
                "API Quota Exceeded. The LLM provider enforces strict limits on requests per minute."
                if quota
                else "Could not generate AI insights at this time due to high traffic."
            ),
            clinical_observations=[
                "Your current API key has hit its hourly or minute-based quota."
                if quota
                else "An unexpected error occurred during medical data synthesis."
            ],
            recommendations=[
                "Wait 60 seconds and try requesting insights again.",
                "Consider using a paid API key for higher volume data analysis.",
                "Check your provider dashboard for quota details.",
            ],
            degraded=True,
        )


@dataclass(frozen=True)
class PatientNarrative:
    summary: str
    trend: str = NO_TREND
    key_indicators: list[str] = field(default_factory=list)
    degraded: bool = False

    @classmethod
    def from_response(cls, data: Mapping[str, Any]) -> "PatientNarrative":
        summary = data.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            raise NarrativeError("Narrative response is missing 'summary'")
        trend = str(data.get("trend", "")).strip().lower()
        return cls(
            summary=summary.strip(),
            trend=trend if trend in TRENDS else NO_TREND,
            key_indicators=_string_list(data.get("keyIndicators")),
        )

    @classmethod
    def unavailable(cls, exc: BaseException) -> "PatientNarrative":
        quota = classify_error(exc) is ErrorKind.RATE_LIMITED
        return cls(
            summary=(
                "Clinical summary unavailable: API Quota exceeded for this minute."
                if quota
                else "Clinical summary currently unavailable due to traffic limits."
            ),
            trend=NO_TREND,
            key_indicators=["Review manual records", "Retry in 60 seconds"],
            degraded=True,
        )


# --------------------------------------------------------------------------------------
# Collaborator calls
# --------------------------------------------------------------------------------------


class NarrativeService:
    """Cohort insights, ICD descriptions and per-patient narratives via the LLM."""

    def __init__(self, config: Config, client: OpenAI | None = None) -> None:
        self.config = config
        self.logger = logging.getLogger(__name__)

        # Retries are handled by with_retry, so the client must not retry on its own
        self.client = client or OpenAI(base_url=config.base_url, api_key=config.api_key, max_retries=0)
        self.llm = {
            "insights": LLM(self.client, config.insights_model_id),
            "narrative": LLM(self.client, config.insights_model_id),
            "descriptions": LLM(self.client, config.model_id),
        }

        self.prompts: dict[str, str] = {}
        self._validate_prompts()

    def _validate_prompts(self) -> None:
        missing = [p for p in REQUIRED_PROMPTS if not (PROMPTS_DIR / f"{p}.md").exists()]
        if missing:
            raise PromptError(f"Missing required prompt files: {', '.join(missing)}", prompt_name=missing[0])

    def _prompt(self, name: str) -> str:
        if name not in self.prompts:
            self.prompts[name] = load_prompt(name)
        return self.prompts[name]

    def _ask(self, role: str, system_prompt: str, user_content: str) -> dict[str, Any]:
        messages = [
            {"role": "system", "content": self._prompt(system_prompt)},
            {"role": "user", "content": user_content},
        ]
        return with_retry(
            lambda: parse_json_response(self.llm[role](messages)),
            self.config.max_attempts,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def clinical_insights(self, records: Sequence[PatientRecord]) -> ClinicalInsight:
        """Cohort-level narrative over the first 50 records."""
        sample = [
            {
                "doctor": r.doctor,
                "diagnosis": r.icd10,
                "painStart": r.initial_pain_score,
                "painEnd": r.discharge_pain_score,
                "revenue": r.revenue,
            }
            for r in records[:INSIGHT_SAMPLE_SIZE]
        ]
        try:
            data = self._ask("insights", "clinical_insights.system_prompt", json.dumps(sample, ensure_ascii=False))
            return ClinicalInsight.from_response(data)
        except Exception as exc:  # noqa: BLE001
            self.logger.error("Clinical insight generation failed: %s", exc)
            return ClinicalInsight.unavailable(exc)

    def icd_descriptions(self, codes: Sequence[str]) -> dict[str, str]:
        """Short descriptions for ICD-10 codes; {} when the lookup fails."""
        if not codes:
            return {}
        try:
            data = self._ask("descriptions", "icd_descriptions.system_prompt", ", ".join(codes))
        except Exception as exc:  # noqa: BLE001
            self.logger.error("Error fetching ICD descriptions: %s", exc)
            return {}

        wanted = set(codes)
        return {
            str(code): text.strip()
            for code, text in data.items()
            if str(code) in wanted and isinstance(text, str) and text.strip()
        }

    def refresh_descriptions(self, records: Sequence[PatientRecord], cache: DescriptionCache) -> DescriptionCache:
        """Fetch descriptions for the most frequent uncached codes and merge them in."""
        codes = codes_needing_descriptions(records, cache)
        if not codes:
            return cache
        self.logger.info("Fetching descriptions for %d ICD-10 code(s)", len(codes))
        return cache.extend(self.icd_descriptions(codes))

    def patient_narrative(self, name: str, visits: Sequence[PatientRecord]) -> PatientNarrative:
        """Progress narrative for one patient's visit history."""
        history = [
            {
                "date": v.visit_date,
                "diagnosis": v.icd10,
                "pain": {"in": v.initial_pain_score, "out": v.discharge_pain_score},
            }
            for v in visits
        ]
        content = f"Patient: {name}\n\nVisits:\n{json.dumps(history, ensure_ascii=False)}"
        try:
            data = self._ask("narrative", "patient_narrative.system_prompt", content)
            return PatientNarrative.from_response(data)
        except Exception as exc:  # noqa: BLE001
            self.logger.error("Patient narrative failed for %s: %s", name, exc)
            return PatientNarrative.unavailable(exc)
