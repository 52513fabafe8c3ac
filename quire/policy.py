"""Error handling policy implementation."""

from __future__ import annotations

import logging
from typing import List, Optional

from .errors import (
    ErrorCategory,
    ErrorRecord,
    ErrorThresholdExceeded,
    ErrorTracker,
    TranslationError,
)

logger = logging.getLogger(__name__)


class ErrorPolicy:
    """Decides whether a failed segment stops the run.

    With ``skip_failed_segments`` a failed segment keeps its source text and
    the run continues until the tracker's thresholds are reached. Otherwise
    the first failure aborts. Refinement problems never abort; they are only
    recorded as warnings.
    """

    def __init__(self, *, skip_failed_segments: bool = False) -> None:
        self.skip_failed_segments = skip_failed_segments
        self.records: List[ErrorRecord] = []
        self.warnings: List[ErrorRecord] = []
        self.tracker = ErrorTracker()

    def record_success(self) -> None:
        """Reset consecutive counters after successful work."""

        self.tracker.reset_consecutive()

    def record_warning(
        self,
        category: ErrorCategory,
        message: str,
        details: Optional[str] = None,
    ) -> None:
        self.warnings.append(ErrorRecord(category=category, message=message, details=details))
        logger.warning(message)

    def handle_translation_failure(
        self,
        message: str,
        details: Optional[str] = None,
    ) -> str:
        """Record a failed segment and return ``"skip"`` or raise."""

        category = ErrorCategory.TRANSLATION
        self.records.append(ErrorRecord(category=category, message=message, details=details))
        consecutive, total, threshold = self.tracker.register(category)
        logger.error(message)

        if not self.skip_failed_segments:
            raise TranslationError(message)

        if threshold:
            reason = (
                f"Repeated translation errors detected ({consecutive} in a row)."
                if consecutive >= self.tracker.CONSECUTIVE_LIMIT
                else f"{total} translation errors encountered."
            )
            raise ErrorThresholdExceeded(f"{reason} Stopping safely.")
        return "skip"

    @property
    def messages(self) -> List[str]:
        return [record.message for record in self.records + self.warnings]
