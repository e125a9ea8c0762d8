"""JSONL-backed stores for review history, admin roles, and login events."""

from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Protocol

from pydantic import ValidationError

from .errors import HistoryStoreError, RecordNotFoundError
from .models import AdminUser, LoginEvent, Rating, ReportRecord

LOGGER = logging.getLogger(__name__)

HISTORY_FILE = "analysis_history.jsonl"
ADMIN_FILE = "admin_users.jsonl"
LOGIN_FILE = "login_history.jsonl"

_PATH_LOCKS: dict[str, Lock] = {}
_PATH_LOCKS_GUARD = Lock()


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Serialize writers of one file within this process."""
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.setdefault(key, Lock())
    with lock:
        yield


def _read_jsonl(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    rows: List[Dict[str, Any]] = []
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise HistoryStoreError(f"cannot read {path}: {exc}") from exc
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            rows.append(json.loads(line))
        except json.JSONDecodeError:
            LOGGER.warning("Skipping corrupt line %d in %s", lineno, path.name)
    return rows


def _append_jsonl(path: Path, row: Dict[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(row, ensure_ascii=False))
            f.write("\n")
    except OSError as exc:
        raise HistoryStoreError(f"cannot write {path}: {exc}") from exc


def _rewrite_jsonl(path: Path, rows: List[Dict[str, Any]]) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as f:
            for row in rows:
                f.write(json.dumps(row, ensure_ascii=False))
                f.write("\n")
        os.replace(tmp_path, path)
    except OSError as exc:
        raise HistoryStoreError(f"cannot rewrite {path}: {exc}") from exc


class HistoryStore(Protocol):
    def save(self, record: ReportRecord) -> ReportRecord: ...

    def get(self, record_id: str) -> ReportRecord: ...

    def list(self) -> List[ReportRecord]: ...

    def update_rating(
        self, record_id: str, rating: Rating, human_issue_count: int
    ) -> ReportRecord: ...


class JsonlHistoryStore:
    """Analysis history kept as one JSON object per line."""

    def __init__(self, root: Path) -> None:
        self.path = Path(root) / HISTORY_FILE

    def _load(self, row: Dict[str, Any]) -> ReportRecord:
        try:
            return ReportRecord(**row)
        except ValidationError as exc:
            raise HistoryStoreError(f"invalid history row {row.get('id')}: {exc}") from exc

    def save(self, record: ReportRecord) -> ReportRecord:
        stored = record.model_copy(
            update={
                "id": record.id or os.urandom(8).hex(),
                "created_at": record.created_at or datetime.now(timezone.utc),
            }
        )
        with locked_path(self.path):
            _append_jsonl(self.path, stored.storage_dict())
        LOGGER.info("Saved history record %s (%s)", stored.id, stored.title[:40])
        return stored

    def get(self, record_id: str) -> ReportRecord:
        for row in _read_jsonl(self.path):
            if row.get("id") == record_id:
                return self._load(row)
        raise RecordNotFoundError(f"history record not found: {record_id}")

    def list(self) -> List[ReportRecord]:
        records = [self._load(row) for row in _read_jsonl(self.path)]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def update_rating(
        self, record_id: str, rating: Rating, human_issue_count: int
    ) -> ReportRecord:
        if human_issue_count < 0:
            raise ValueError("human_issue_count must be >= 0.")
        with locked_path(self.path):
            rows = _read_jsonl(self.path)
            updated: Optional[ReportRecord] = None
            for idx, row in enumerate(rows):
                if row.get("id") != record_id:
                    continue
                row = {
                    **row,
                    "user_rating": Rating(rating).value,
                    "human_issue_count": human_issue_count,
                }
                rows[idx] = row
                updated = self._load(row)
                break
            if updated is None:
                raise RecordNotFoundError(f"history record not found: {record_id}")
            _rewrite_jsonl(self.path, rows)
        return updated


class AdminStore:
    """Admin flags per user email; later lines override earlier ones."""

    def __init__(self, root: Path, bootstrap: Optional[set[str]] = None) -> None:
        self.path = Path(root) / ADMIN_FILE
        self.bootstrap = {email.lower() for email in (bootstrap or set())}

    def _flags(self) -> Dict[str, bool]:
        flags: Dict[str, bool] = {}
        for row in _read_jsonl(self.path):
            email = str(row.get("user_email") or "").lower()
            if email:
                flags[email] = bool(row.get("is_admin"))
        return flags

    def is_admin(self, email: Optional[str]) -> bool:
        if not email:
            return False
        key = email.lower()
        if key in self.bootstrap:
            return True
        return self._flags().get(key, False)

    def set_admin(self, email: str, is_admin: bool = True) -> AdminUser:
        entry = AdminUser(user_email=email.lower(), is_admin=is_admin)
        with locked_path(self.path):
            _append_jsonl(self.path, entry.model_dump(mode="json"))
        return entry

    def list(self) -> List[AdminUser]:
        flags = self._flags()
        for email in self.bootstrap:
            flags[email] = True
        return [AdminUser(user_email=e, is_admin=v) for e, v in sorted(flags.items())]


class LoginHistoryStore:
    def __init__(self, root: Path) -> None:
        self.path = Path(root) / LOGIN_FILE

    def record(self, event: LoginEvent) -> LoginEvent:
        with locked_path(self.path):
            _append_jsonl(self.path, event.model_dump(mode="json"))
        return event

    def list(self, limit: int = 1000) -> List[LoginEvent]:
        events = [LoginEvent(**row) for row in _read_jsonl(self.path)]
        events.sort(key=lambda e: e.login_at, reverse=True)
        return events[:limit]
