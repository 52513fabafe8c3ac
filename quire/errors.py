"""Error definitions and policy helpers for the Quire pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


class ErrorCategory(Enum):
    """Categorises runtime errors to apply policy thresholds."""

    TRANSLATION = auto()
    REFINEMENT = auto()


class QuireError(Exception):
    """Base exception for all custom errors."""


class ConfigurationError(QuireError):
    """Raised when settings are missing or invalid."""


class UnsupportedFormatError(QuireError):
    """Raised when a file extension maps to no known document format."""


class OpenError(QuireError):
    """Raised when the input document is missing or unreadable."""


class ParseError(QuireError):
    """Raised when a container or its markup is malformed."""


class NoContentError(QuireError):
    """Raised when a document yields no translatable text."""


class ConverterNotFoundError(QuireError):
    """Raised when no external document converter is installed."""


class ConversionFailedError(QuireError):
    """Raised when the external converter exits badly or produces nothing."""

    def __init__(self, message: str, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        base = super().__str__()
        if self.diagnostics:
            return f"{base}\n{self.diagnostics.strip()}"
        return base


class TranslationError(QuireError):
    """Raised when the translator reports a failure for a segment."""


class RefinementError(QuireError):
    """Raised when the refinement backend fails."""


class RefinementConfigurationError(RefinementError):
    """Raised when a refinement backend cannot be built from the settings."""


class RefinementHalted(RefinementError):
    """Raised when a backend reports an explicit error and the queue stops.

    ``partial_text`` holds the best-effort text assembled from the chunks
    that completed before the halt.
    """

    def __init__(self, message: str, partial_text: str = "") -> None:
        super().__init__(message)
        self.partial_text = partial_text


class ReconstructionError(QuireError):
    """Raised when the translated document cannot be written."""


class OverwriteRefusedError(QuireError):
    """Raised when attempting to overwrite an output without consent."""


class PipelineBusyError(QuireError):
    """Raised when a second run is started while one is active."""


class ErrorThresholdExceeded(QuireError):
    """Raised when too many segments failed and the run must stop."""


@dataclass
class ErrorRecord:
    """Stores context for a handled error."""

    category: ErrorCategory
    message: str
    details: Optional[str] = None


class ErrorTracker:
    """Tracks consecutive and aggregate errors to satisfy policy rules."""

    CONSECUTIVE_LIMIT = 3
    TOTAL_LIMIT = 10

    def __init__(self) -> None:
        self.last_category: Optional[ErrorCategory] = None
        self.consecutive: int = 0
        self.total: int = 0

    def register(self, category: ErrorCategory) -> tuple[int, int, bool]:
        """Register a new error and return counters."""

        if self.last_category == category:
            self.consecutive += 1
        else:
            self.last_category = category
            self.consecutive = 1

        self.total += 1

        threshold_reached = (
            self.consecutive >= self.CONSECUTIVE_LIMIT
            or self.total >= self.TOTAL_LIMIT
        )

        return self.consecutive, self.total, threshold_reached

    def reset_consecutive(self) -> None:
        """Reset the consecutive counter after successful work."""

        self.consecutive = 0
        self.last_category = None
