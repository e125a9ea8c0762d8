"""Statistics over the review history for the dashboard and the admin view."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import AdminUser, LoginEvent, Rating, ReportRecord

HIGH_SCORE = 80
LOW_SCORE = 60
DAILY_WINDOW = 30

# [low, high) per band; None is unbounded.
SCORE_RANGES = {"80-100": (80, None), "60-79": (60, 80), "0-59": (None, 60)}
DATE_RANGES = ("today", "week", "month", "quarter")


@dataclass
class HistoryFilters:
    search: str = ""
    score_range: str = ""
    date_range: str = ""


def _date_key(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).date().isoformat()


def _cutoff(date_range: str, now: datetime) -> Optional[datetime]:
    if date_range == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if date_range == "week":
        return now - timedelta(days=7)
    if date_range == "month":
        return now - timedelta(days=30)
    if date_range == "quarter":
        return now - timedelta(days=91)
    return None


def filter_records(
    records: Iterable[ReportRecord],
    filters: HistoryFilters,
    *,
    now: Optional[datetime] = None,
) -> List[ReportRecord]:
    """Keyword / score band / recency filter used by the history list."""
    if filters.score_range and filters.score_range not in SCORE_RANGES:
        raise ValueError(f"score_range must be one of: {', '.join(SCORE_RANGES)}")
    if filters.date_range and filters.date_range not in DATE_RANGES:
        raise ValueError(f"date_range must be one of: {', '.join(DATE_RANGES)}")

    now = now or datetime.now(timezone.utc)
    needle = filters.search.strip().lower()
    cutoff = _cutoff(filters.date_range, now)
    out: List[ReportRecord] = []
    for record in records:
        if needle and needle not in record.title.lower() and needle not in (record.id or "").lower():
            continue
        if filters.score_range:
            low, high = SCORE_RANGES[filters.score_range]
            if low is not None and record.score < low:
                continue
            if high is not None and record.score >= high:
                continue
        if cutoff is not None and record.created_at < cutoff:
            continue
        out.append(record)
    return out


def history_stats(records: Sequence[ReportRecord]) -> Dict[str, Any]:
    """Headline numbers for the history tab; ``records`` is newest first."""
    total = len(records)
    if total == 0:
        return {
            "total": 0,
            "average_score": None,
            "high_score_rate": None,
            "high_score_count": 0,
            "low_score_count": 0,
            "recent_trend": 0,
        }
    high = sum(1 for r in records if r.score >= HIGH_SCORE)
    low = sum(1 for r in records if r.score < LOW_SCORE)
    trend = records[0].score - records[1].score if total >= 2 else 0
    return {
        "total": total,
        "average_score": round(sum(r.score for r in records) / total),
        "high_score_rate": round(high / total * 100),
        "high_score_count": high,
        "low_score_count": low,
        "recent_trend": trend,
    }


def user_analytics(records: Iterable[ReportRecord]) -> Dict[str, Any]:
    per_user: Dict[str, Dict[str, Any]] = {}
    for record in records:
        email = record.user_email or "unknown"
        entry = per_user.setdefault(
            email,
            {
                "email": email,
                "name": record.user_name or "Unknown",
                "count": 0,
                "last_activity": record.created_at,
            },
        )
        entry["count"] += 1
        if record.created_at > entry["last_activity"]:
            entry["last_activity"] = record.created_at
    rows = sorted(per_user.values(), key=lambda e: e["last_activity"], reverse=True)
    for row in rows:
        row["last_activity"] = row["last_activity"].isoformat()
    return {"total_users": len(rows), "user_report_counts": rows}


def report_analytics(records: Iterable[ReportRecord]) -> Dict[str, Any]:
    daily: Dict[str, List[float]] = defaultdict(list)
    total = 0
    for record in records:
        total += 1
        daily[_date_key(record.created_at)].append(record.score)
    days = sorted(daily, reverse=True)[:DAILY_WINDOW]
    return {
        "total_reports": total,
        "daily_reports": [
            {
                "date": day,
                "count": len(daily[day]),
                "avg_score": round(sum(daily[day]) / len(daily[day])),
            }
            for day in days
        ],
    }


def login_analytics(events: Iterable[LoginEvent]) -> Dict[str, Any]:
    counts: Counter[str] = Counter()
    users: Dict[str, set[str]] = defaultdict(set)
    total = 0
    for event in events:
        total += 1
        day = _date_key(event.login_at)
        counts[day] += 1
        users[day].add(event.user_email.lower())
    days = sorted(counts, reverse=True)[:DAILY_WINDOW]
    return {
        "total_logins": total,
        "daily_logins": [
            {"date": day, "count": counts[day], "unique_users": len(users[day])}
            for day in days
        ],
    }


def usage_analytics(records: Iterable[ReportRecord]) -> Dict[str, Any]:
    per_user: Dict[str, Dict[str, Any]] = {}
    total = 0
    for record in records:
        total += 1
        email = record.user_email or "unknown"
        entry = per_user.setdefault(
            email, {"email": email, "total_usage": 0, "total_score": 0.0, "rated_count": 0}
        )
        entry["total_usage"] += 1
        entry["total_score"] += record.score
        if record.user_rating:
            entry["rated_count"] += 1
    rows = []
    for entry in per_user.values():
        rows.append(
            {
                "email": entry["email"],
                "total_usage": entry["total_usage"],
                "avg_score": round(entry["total_score"] / entry["total_usage"]),
                "rated_count": entry["rated_count"],
            }
        )
    rows.sort(key=lambda r: r["total_usage"], reverse=True)
    return {"total_usage": total, "user_usage": rows}


def accuracy_analytics(records: Iterable[ReportRecord]) -> Dict[str, Any]:
    """
    How well the AI issue counts match what reviewers found.

    Only rated records take part. AI counts are re-derived from each
    record's report text.
    """
    distribution = {grade.value: 0 for grade in Rating}
    differences: List[int] = []
    ai_total = 0
    human_total = 0
    for record in records:
        if record.user_rating is None or record.human_issue_count is None:
            continue
        distribution[record.user_rating.value] += 1
        ai_total += record.ai_issue_count
        human_total += record.human_issue_count
        differences.append(abs(record.ai_issue_count - record.human_issue_count))
    rated = len(differences)
    return {
        "rated_count": rated,
        "rating_distribution": distribution,
        "total_ai_issues": ai_total,
        "total_human_issues": human_total,
        "mean_abs_difference": round(sum(differences) / rated, 2) if rated else None,
        "exact_match_rate": (
            round(sum(1 for d in differences if d == 0) / rated * 100) if rated else None
        ),
    }


def user_directory(
    records: Iterable[ReportRecord], admins: Iterable[AdminUser]
) -> List[Dict[str, Any]]:
    """
    Users known from the history or the admin table, with their role.

    Users with reports come first, most recently active first. Users that
    only appear in the admin table follow in email order.
    """
    users: Dict[str, Dict[str, Any]] = {}
    for record in records:
        if not record.user_email:
            continue
        email = record.user_email.lower()
        entry = users.setdefault(
            email,
            {
                "email": email,
                "name": record.user_name,
                "report_count": 0,
                "last_activity": record.created_at,
                "is_admin": False,
                "has_admin_record": False,
            },
        )
        entry["report_count"] += 1
        if record.created_at > entry["last_activity"]:
            entry["last_activity"] = record.created_at
            entry["name"] = record.user_name or entry["name"]
        elif not entry["name"]:
            entry["name"] = record.user_name
    for admin in admins:
        email = admin.user_email.lower()
        entry = users.setdefault(
            email,
            {
                "email": email,
                "name": None,
                "report_count": 0,
                "last_activity": None,
            },
        )
        entry["is_admin"] = admin.is_admin
        entry["has_admin_record"] = True

    active = [u for u in users.values() if u["last_activity"] is not None]
    active.sort(key=lambda u: u["last_activity"], reverse=True)
    idle = sorted(
        (u for u in users.values() if u["last_activity"] is None), key=lambda u: u["email"]
    )
    rows = active + idle
    for row in active:
        row["last_activity"] = row["last_activity"].isoformat()
    return rows


ANALYTICS_TYPES = ("users", "reports", "login", "usage", "accuracy")


def all_analytics(
    records: Sequence[ReportRecord], events: Sequence[LoginEvent]
) -> Dict[str, Any]:
    return {
        "users": user_analytics(records),
        "reports": report_analytics(records),
        "login": login_analytics(events),
        "usage": usage_analytics(records),
        "accuracy": accuracy_analytics(records),
    }
