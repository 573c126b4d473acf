"""Custom exceptions for painclinic.

Provides domain-specific error types for better error handling and debugging.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Retry classification for failures of the external LLM collaborator."""

    RATE_LIMITED = "rate_limited"
    OTHER = "other"


class PainClinicError(Exception):
    """Base exception for all painclinic errors."""

    pass


class ConfigurationError(PainClinicError):
    """Raised when configuration is invalid or missing."""

    pass


class DataLoadError(PainClinicError):
    """Raised when a visit spreadsheet cannot be read."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class PromptError(PainClinicError):
    """Raised when a required prompt file is missing or invalid."""

    def __init__(self, message: str, prompt_name: str | None = None):
        super().__init__(message)
        self.prompt_name = prompt_name


class NarrativeError(PainClinicError):
    """Raised by the LLM adapter when a narrative or lookup call fails.

    ``kind`` tells the retry wrapper whether the failure is worth retrying.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.OTHER,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.cause = cause

    @property
    def is_rate_limited(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMITED
