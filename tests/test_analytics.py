from datetime import datetime, timedelta, timezone

import pytest

from ad_review.analytics import (
    HistoryFilters,
    accuracy_analytics,
    all_analytics,
    filter_records,
    history_stats,
    login_analytics,
    report_analytics,
    usage_analytics,
    user_analytics,
    user_directory,
)
from ad_review.models import AdminUser, LoginEvent, Rating, ReportRecord


NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)
TWO_ISSUES = "| No. | 指摘箇所 | 指摘内容 |\n|---|---|---|\n| 1 | a | x |\n| 2 | b | y |\n"


def record(title, score, days_ago=0, **extra):
    return ReportRecord(
        id=f"id-{title}",
        title=title,
        score=score,
        created_at=NOW - timedelta(days=days_ago),
        **extra,
    )


def sample_records():
    # newest first, as the store returns them
    return [
        record("ダイエット茶", 85, 0, user_email="a@example.com", raw_output=TWO_ISSUES,
               user_rating=Rating.A, human_issue_count=2),
        record("美容液", 55, 3, user_email="b@example.com", raw_output=TWO_ISSUES,
               user_rating=Rating.C, human_issue_count=5),
        record("サプリ", 70, 20, user_email="a@example.com"),
        record("育毛剤", 40, 60, user_email="c@example.com"),
    ]


def test_filter_by_keyword_score_and_date():
    records = sample_records()

    assert [r.title for r in filter_records(records, HistoryFilters(search="美容"), now=NOW)] == [
        "美容液"
    ]
    assert [r.title for r in filter_records(records, HistoryFilters(search="ID-サプリ"), now=NOW)] == [
        "サプリ"
    ]
    high = filter_records(records, HistoryFilters(score_range="80-100"), now=NOW)
    assert [r.title for r in high] == ["ダイエット茶"]
    week = filter_records(records, HistoryFilters(date_range="week"), now=NOW)
    assert [r.title for r in week] == ["ダイエット茶", "美容液"]
    quarter = filter_records(records, HistoryFilters(date_range="quarter"), now=NOW)
    assert len(quarter) == 4


def test_fractional_scores_fall_in_exactly_one_band():
    records = [record("a", 79.5), record("b", 59.9), record("c", 80), record("d", 60)]

    def titles(band):
        return [r.title for r in filter_records(records, HistoryFilters(score_range=band), now=NOW)]

    assert titles("80-100") == ["c"]
    assert titles("60-79") == ["a", "d"]
    assert titles("0-59") == ["b"]


def test_filter_rejects_unknown_ranges():
    with pytest.raises(ValueError):
        filter_records([], HistoryFilters(score_range="50-60"))
    with pytest.raises(ValueError):
        filter_records([], HistoryFilters(date_range="decade"))


def test_history_stats():
    stats = history_stats(sample_records())

    assert stats == {
        "total": 4,
        "average_score": 62,
        "high_score_rate": 25,
        "high_score_count": 1,
        "low_score_count": 2,
        "recent_trend": 30,
    }


def test_history_stats_empty():
    assert history_stats([])["total"] == 0
    assert history_stats([])["average_score"] is None


def test_user_and_usage_analytics():
    users = user_analytics(sample_records())
    assert users["total_users"] == 3
    top = users["user_report_counts"][0]
    assert top["email"] == "a@example.com"
    assert top["count"] == 2

    usage = usage_analytics(sample_records())
    assert usage["total_usage"] == 4
    first = usage["user_usage"][0]
    assert first == {
        "email": "a@example.com",
        "total_usage": 2,
        "avg_score": 78,
        "rated_count": 1,
    }


def test_report_analytics_groups_by_day():
    data = report_analytics(sample_records())

    assert data["total_reports"] == 4
    assert data["daily_reports"][0] == {"date": "2025-06-15", "count": 1, "avg_score": 85}


def test_login_analytics_counts_unique_users():
    events = [
        LoginEvent(user_email="a@example.com", login_at=NOW),
        LoginEvent(user_email="A@example.com", login_at=NOW - timedelta(hours=1)),
        LoginEvent(user_email="b@example.com", login_at=NOW - timedelta(days=1)),
    ]

    data = login_analytics(events)

    assert data["total_logins"] == 3
    assert data["daily_logins"][0] == {"date": "2025-06-15", "count": 2, "unique_users": 1}


def test_accuracy_analytics_uses_rated_records_only():
    data = accuracy_analytics(sample_records())

    assert data["rated_count"] == 2
    assert data["rating_distribution"] == {"A": 1, "B": 0, "C": 1, "D": 0, "E": 0}
    assert data["total_ai_issues"] == 4
    assert data["total_human_issues"] == 7
    assert data["mean_abs_difference"] == 1.5
    assert data["exact_match_rate"] == 50


def test_all_analytics_has_every_section():
    data = all_analytics(sample_records(), [])

    assert set(data) == {"users", "reports", "login", "usage", "accuracy"}
    assert accuracy_analytics([])["mean_abs_difference"] is None


def test_user_directory_merges_history_and_admins():
    admins = [
        AdminUser(user_email="b@example.com", is_admin=True),
        AdminUser(user_email="z@example.com", is_admin=False),
    ]

    users = user_directory(sample_records(), admins)

    assert [u["email"] for u in users] == [
        "a@example.com",
        "b@example.com",
        "c@example.com",
        "z@example.com",
    ]
    first = users[0]
    assert first["report_count"] == 2
    assert first["last_activity"] == NOW.isoformat()
    assert first["is_admin"] is False
    assert first["has_admin_record"] is False
    assert users[1]["is_admin"] is True
    assert users[3] == {
        "email": "z@example.com",
        "name": None,
        "report_count": 0,
        "last_activity": None,
        "is_admin": False,
        "has_admin_record": True,
    }
