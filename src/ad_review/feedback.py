"""Record the reviewer's grade and issue count for a completed checklist."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from .errors import HistoryStoreError
from .models import Rating, ReportRecord
from .report_parser import count_issues

LOGGER = logging.getLogger(__name__)

_LEADING_INT = re.compile(r"\s*([+-]?[0-9]+)")

PERSIST_FAILED_WARNING = (
    "The rating is shown here but could not be saved to the history. "
    "It will be lost on reload; try submitting again later."
)


class RatingStore(Protocol):
    def update_rating(
        self, record_id: str, rating: Rating, human_issue_count: int
    ) -> ReportRecord: ...


@dataclass
class RatingSubmission:
    record: ReportRecord
    persisted: bool
    warning: str | None = None

    @property
    def ai_issue_count(self) -> int:
        return self.record.ai_issue_count

    @property
    def difference(self) -> Optional[int]:
        return self.record.issue_difference


def coerce_issue_count(raw: object) -> int:
    """
    Parse a free-form count the way the rating form always has.

    The leading integer wins (" 7件" -> 7); anything without one, and any
    negative value, becomes 0.
    """
    if raw is None or isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return max(0, raw)
    if isinstance(raw, float):
        return max(0, int(raw)) if raw == raw else 0
    match = _LEADING_INT.match(str(raw))
    if not match:
        return 0
    return max(0, int(match.group(1)))


def parse_rating(raw: object) -> Rating:
    if isinstance(raw, Rating):
        return raw
    text = str(raw or "").strip().upper()
    try:
        return Rating(text)
    except ValueError as exc:
        raise ValueError("rating must be one of A, B, C, D, E.") from exc


def issue_difference(raw_output: Optional[str], human_issue_count: Optional[int]) -> Optional[int]:
    """Distance between the AI count (re-derived from the report) and the human count."""
    if human_issue_count is None:
        return None
    return abs(count_issues(raw_output) - human_issue_count)


class FeedbackRecorder:
    """
    Write the reviewer's grade onto a history record.

    Callers reach this only after the checklist reconciled as complete for
    the record being displayed; that gate lives in the review flow, not here.
    """

    def __init__(self, store: RatingStore) -> None:
        self.store = store

    def submit_rating(
        self, record: ReportRecord, rating: object, human_issue_count: object
    ) -> RatingSubmission:
        grade = parse_rating(rating)
        count = coerce_issue_count(human_issue_count)
        displayed = record.model_copy(
            update={"user_rating": grade, "human_issue_count": count}
        )
        if not record.id:
            LOGGER.warning("Rating for unsaved report %r kept locally only", record.title)
            return RatingSubmission(
                record=displayed, persisted=False, warning=PERSIST_FAILED_WARNING
            )
        try:
            stored = self.store.update_rating(record.id, grade, count)
        except HistoryStoreError as exc:
            LOGGER.warning("Failed to persist rating for %s: %s", record.id, exc)
            return RatingSubmission(
                record=displayed, persisted=False, warning=PERSIST_FAILED_WARNING
            )
        LOGGER.info(
            "Stored rating %s (human=%d, ai=%d) for %s",
            grade.value,
            count,
            stored.ai_issue_count,
            record.id,
        )
        return RatingSubmission(record=stored, persisted=True)
