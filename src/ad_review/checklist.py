"""Acknowledgment checklist over the issues of one rendered report.

A ``ReviewSession`` is what a single viewer holds while looking at a report:
the extracted issues, a ``ChecklistStateStore`` bound to the report's content
digest, and the small state machine that gates the rating dialog.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Dict, List, Optional, Set, Union

from .errors import ChecklistStateError
from .report_parser import IssueRecord, content_hash, extract_issues, row_keys

LOGGER = logging.getLogger(__name__)


class ChecklistStateStore:
    """Acknowledgment flags plus the set of keys rendered for the current report."""

    def __init__(self, digest: str = "") -> None:
        self._content_hash = digest
        self._acknowledged: Dict[str, bool] = {}
        self._registered: Set[str] = set()

    @property
    def content_hash(self) -> str:
        return self._content_hash

    @property
    def registered_keys(self) -> frozenset[str]:
        return frozenset(self._registered)

    def bind(self, report_text: Optional[str]) -> bool:
        """
        Attach the store to ``report_text``; reset when its digest changed.

        Returns True when a reset happened. Equal text (by value) keeps the
        current acknowledgments.
        """
        digest = content_hash(report_text)
        if digest == self._content_hash:
            return False
        self.reset()
        self._content_hash = digest
        return True

    def register_key(self, key: str) -> None:
        self._registered.add(key)

    def set_acknowledged(self, key: str, value: bool) -> None:
        self._acknowledged[key] = bool(value)

    def is_acknowledged(self, key: str) -> bool:
        return self._acknowledged.get(key, False)

    def acknowledged_count(self) -> int:
        """Keys that are both registered for this render and acknowledged."""
        return sum(1 for key in self._registered if self._acknowledged.get(key))

    def reset(self) -> None:
        self._acknowledged.clear()
        self._registered.clear()


# --- Reconciliation --------------------------------------------------------


@dataclass(frozen=True)
class Empty:
    unlocks_rating = False

    @property
    def message(self) -> str:
        return "No checklist items were found in this report."


@dataclass(frozen=True)
class Incomplete:
    acknowledged_count: int
    total_count: int
    unlocks_rating = False

    @property
    def unacknowledged_count(self) -> int:
        return max(0, self.total_count - self.acknowledged_count)

    @property
    def message(self) -> str:
        return (
            f"Unchecked items remain: {self.acknowledged_count} / {self.total_count} "
            f"checked, {self.unacknowledged_count} left. Check every highlighted row "
            "before completing."
        )


@dataclass(frozen=True)
class Complete:
    total_count: int
    unlocks_rating = True

    @property
    def message(self) -> str:
        return f"All {self.total_count} items have been checked."


ReconciliationOutcome = Union[Empty, Incomplete, Complete]


def reconcile(
    issues: List[IssueRecord],
    store: ChecklistStateStore,
    on_complete: Optional[Callable[[Complete], None]] = None,
) -> ReconciliationOutcome:
    """
    Compare acknowledged rows against the extracted issues.

    Only keys derived from ``issues`` and the store's bound digest count, and
    only when they were registered by the current render.
    """
    total = len(issues)
    if total == 0:
        return Empty()

    registered = store.registered_keys
    acknowledged = sum(
        1
        for key in row_keys(store.content_hash, issues)
        if key in registered and store.is_acknowledged(key)
    )
    if acknowledged == total:
        outcome = Complete(total_count=total)
        if on_complete is not None:
            on_complete(outcome)
        return outcome
    return Incomplete(acknowledged_count=acknowledged, total_count=total)


# --- Session state machine -------------------------------------------------


class ChecklistStatus(str, Enum):
    FRESH = "fresh"
    POPULATED = "populated"
    VALIDATION_FAILED = "validation_failed"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ChecklistRow:
    key: str
    issue: IssueRecord
    acknowledged: bool
    highlighted: bool


class ReviewSession:
    """Checklist state for one viewer looking at one report."""

    def __init__(self, on_complete: Optional[Callable[[Complete], None]] = None) -> None:
        self.store = ChecklistStateStore()
        self.status = ChecklistStatus.FRESH
        self.validation_active = False
        self._issues: List[IssueRecord] = []
        self._keys: List[str] = []
        self._on_complete = on_complete

    @property
    def issues(self) -> List[IssueRecord]:
        return list(self._issues)

    @property
    def total_count(self) -> int:
        return len(self._issues)

    def load(self, report_text: Optional[str]) -> bool:
        """
        Show ``report_text`` in this session.

        Returns True when the content changed, in which case every
        acknowledgment and the validation highlight are discarded.
        """
        changed = self.store.bind(report_text)
        if not changed and self.status is not ChecklistStatus.FRESH:
            return False
        self._issues = extract_issues(report_text)
        self._keys = row_keys(self.store.content_hash, self._issues)
        self.status = ChecklistStatus.POPULATED
        self.validation_active = False
        LOGGER.debug(
            "Checklist loaded with %d issue rows (digest %s)",
            len(self._issues),
            self.store.content_hash[:12],
        )
        return True

    def render(self) -> List[ChecklistRow]:
        """Register every row key and return the rows for display."""
        rows: List[ChecklistRow] = []
        for key, issue in zip(self._keys, self._issues):
            self.store.register_key(key)
            acknowledged = self.store.is_acknowledged(key)
            rows.append(
                ChecklistRow(
                    key=key,
                    issue=issue,
                    acknowledged=acknowledged,
                    highlighted=self.validation_active and not acknowledged,
                )
            )
        return rows

    def toggle(self, key: str, value: bool) -> None:
        if self.status is ChecklistStatus.FRESH:
            raise ChecklistStateError("No report is loaded in this checklist.")
        if self.status is ChecklistStatus.COMPLETE:
            raise ChecklistStateError("This checklist is already complete.")
        self.store.set_acknowledged(key, value)
        if self.status is ChecklistStatus.VALIDATION_FAILED:
            # Highlighting stays on until the next complete() re-evaluates.
            self.status = ChecklistStatus.POPULATED

    def acknowledged_count(self) -> int:
        return self.store.acknowledged_count()

    def complete(self) -> ReconciliationOutcome:
        if self.status is ChecklistStatus.FRESH:
            raise ChecklistStateError("No report is loaded in this checklist.")
        if self.status is ChecklistStatus.COMPLETE:
            return Complete(total_count=self.total_count)
        self.render()
        outcome = reconcile(self._issues, self.store, on_complete=self._on_complete)
        if isinstance(outcome, Complete):
            self.status = ChecklistStatus.COMPLETE
            self.validation_active = False
        elif isinstance(outcome, Incomplete):
            self.status = ChecklistStatus.VALIDATION_FAILED
            self.validation_active = True
        LOGGER.info("Checklist completion check: %s", type(outcome).__name__)
        return outcome

    @property
    def rating_unlocked(self) -> bool:
        return self.status is ChecklistStatus.COMPLETE


class SessionRegistry:
    """
    One ``ReviewSession`` per (viewer, report); viewers never share a store.

    At most ``max_sessions`` are kept. The least recently used one is
    dropped first.
    """

    def __init__(self, max_sessions: int = 1024) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.max_sessions = max_sessions
        self._sessions: OrderedDict[tuple[str, str], ReviewSession] = OrderedDict()
        self._lock = Lock()

    def session_for(
        self, viewer: str, report_id: str, report_text: Optional[str]
    ) -> ReviewSession:
        """Return the viewer's session with ``report_text`` loaded into it."""
        key = (viewer.lower(), report_id)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = ReviewSession()
                self._sessions[key] = session
                while len(self._sessions) > self.max_sessions:
                    evicted, _ = self._sessions.popitem(last=False)
                    LOGGER.debug("Dropped checklist session %s", evicted)
            else:
                self._sessions.move_to_end(key)
        session.load(report_text)
        return session

    def discard(self, viewer: str, report_id: str) -> None:
        with self._lock:
            self._sessions.pop((viewer.lower(), report_id), None)

    def __len__(self) -> int:
        return len(self._sessions)
