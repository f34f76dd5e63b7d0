from __future__ import annotations

from datetime import timedelta

import pytest

from backend.analytics.dataset import BackofficeDataset
from backend.analytics.models import ReportDefinition, records_from_items
from backend.analytics.service import (
    BackofficeAnalyticsService,
    _calc_delta,
    humanize_label,
    js_round,
    percent,
    time_ago,
)


def test_overview_counts_and_growth(service):
    overview = service.overview()

    assert overview["totalUsers"] == 4
    assert overview["activeUsers"] == 2
    assert overview["completedPrograms"] == 1
    assert overview["completionRate"] == 25
    assert overview["pendingTickets"] == 2
    assert overview["growthPercent"] == 100

    total_card = overview["cards"][0]
    assert total_card.trend == "+100% this month"
    assert total_card.trend_up is True
    assert overview["cards"][1].subtitle == "50% of total"
    assert overview["cards"][3].alert is None


def test_overview_growth_without_previous_month(now):
    dataset = BackofficeDataset({"users": []})
    overview = BackofficeAnalyticsService(dataset, now=now).overview()

    assert overview["growthPercent"] == 0
    assert overview["cards"][0].trend == "0% this month"
    assert overview["completionRate"] == 0


def test_activity_feed_is_newest_first(service):
    feed = service.activity_feed()

    assert [item.type for item in feed[:4]] == [
        "achievement_unlocked",
        "achievement_unlocked",
        "program_completed",
        "user_registered",
    ]
    assert feed[0].message == 'Bob unlocked "One Week"'
    assert feed[0].time == "1 day ago"
    assert feed[1].message == 'Alice unlocked "First Day"'
    assert feed[3].message == "Alice just registered"
    assert len(service.activity_feed(limit=2)) == 2


def test_user_growth_buckets_by_calendar_month(service):
    points = service.user_growth(3)

    assert [point.label for point in points] == ["Apr", "May", "Jun"]
    assert points[0].values == {"newUsers": 1, "activeUsers": 1, "churned": 1}
    assert points[1].values == {"newUsers": 1, "activeUsers": 0, "churned": 0}
    assert points[2].values == {"newUsers": 2, "activeUsers": 2, "churned": 0}


def test_user_growth_rejects_empty_window(service):
    with pytest.raises(ValueError):
        service.user_growth(0)


def test_program_progress_uses_latest_session(service):
    slices = {item.name: item for item in service.program_progress()}

    assert [name for name in slices] == ["Not Started", "Days 1-3", "Days 4-7", "Days 8-10", "Completed"]
    assert slices["Not Started"].value == 1
    assert slices["Days 1-3"].value == 1
    assert slices["Days 4-7"].value == 1
    assert slices["Days 8-10"].value == 0
    assert slices["Completed"].percentage == 25


def test_engagement_all_time(service):
    engagement = service.engagement("all")

    usage = {item.name: (item.value, item.percentage) for item in engagement["featureUsage"]}
    assert usage == {
        "Sessions/Program": (3, 30),
        "Craving Logs": (3, 30),
        "Journal Entries": (2, 20),
        "Progress View": (2, 20),
    }
    assert [(t.name, t.value, t.percentage) for t in engagement["triggers"]] == [
        ("Stress", 2, 67),
        ("Other", 1, 33),
    ]
    assert [(m.name, m.value) for m in engagement["moods"]] == [("Very Good", 1), ("Neutral", 1)]
    assert engagement["slipRate"] == 33

    completion = {point.label: point.values["completionRate"] for point in engagement["sessionCompletion"]}
    assert completion["Day 1"] == 100
    assert completion["Day 5"] == 50
    assert completion["Day 10"] == 100

    intensity = {point.label: point.values["count"] for point in engagement["intensity"]}
    assert intensity == {"1": 0, "2": 1, "3": 1, "4": 0, "5": 1}


def test_engagement_week_filters_by_created(service):
    usage = {item.name: item.percentage for item in service.engagement("week")["featureUsage"]}

    assert usage == {"Craving Logs": 60, "Journal Entries": 40}


def test_engagement_rejects_unknown_range(service):
    with pytest.raises(ValueError):
        service.engagement("decade")


def test_program_performance(service):
    performance = service.program_performance()

    program = performance["programs"][0]
    assert program["name"] == "10-Day Quit Program"
    assert program["enrolled"] == 3
    assert program["active"] == 2
    assert program["completed"] == 1
    assert program["completionRate"] == 33
    assert program["avgDays"] == 10
    assert program["dropoutRate"] == 67

    day = performance["days"][0]
    assert day["day"] == "Day 1"
    assert day["completionRate"] == 50
    assert day["dropOff"] == 50
    assert day["timeSpent"] == 12


def test_retention_curve_and_win_back(service):
    retention = service.retention(30)

    assert retention["churnedUsers"] == 2
    assert retention["churnRate"] == 50
    assert len(retention["curve"]) == 31
    assert retention["curve"][0].values == {"days": 0, "retention": 25}
    assert retention["curve"][1].values["retention"] == 50

    win_back = {row["id"]: row for row in retention["winBack"]}
    assert win_back["u3"]["suggestedAction"] == "Send personalized email"
    assert win_back["u3"]["daysSinceActive"] == 75
    assert win_back["u4"]["suggestedAction"] == "Offer incentive"
    assert win_back["u4"]["lastActive"] is None


def test_retention_rejects_unsupported_range(service):
    with pytest.raises(ValueError):
        service.retention(45)


def test_user_analytics(service):
    analytics = service.user_analytics(30)

    assert (analytics["dau"], analytics["wau"], analytics["mau"]) == (1, 2, 2)
    assert analytics["stickiness"] == 50
    assert len(analytics["growth"]) == 30
    assert analytics["growth"][-1].label == "Jun 15"
    assert analytics["growth"][-1].values["total"] == 4

    cohorts = {cohort["cohort"]: cohort for cohort in analytics["cohorts"]}
    assert list(cohorts) == ["Mar 2024", "Apr 2024", "May 2024", "Jun 2024"]
    assert cohorts["Jun 2024"]["size"] == 2
    assert cohorts["Jun 2024"]["week1"] == 100
    assert cohorts["Jun 2024"]["week2"] == 50
    assert cohorts["May 2024"]["week1"] == 0
    assert cohorts["Mar 2024"]["size"] == 0

    funnel = [(stage.stage, stage.value, stage.percentage) for stage in analytics["funnel"]]
    assert funnel == [
        ("Registered", 4, 100),
        ("Completed KYC", 1, 25),
        ("Started Program", 3, 75),
        ("Completed Day 1", 3, 75),
        ("Completed Program", 1, 25),
    ]


def test_segments_counts_and_trends(service):
    segments = {segment["id"]: segment for segment in service.segments()}

    assert segments["active"]["userCount"] == 2
    assert segments["active"]["trend"] == 100
    assert segments["new-users"]["userCount"] == 1
    assert segments["new-users"]["trend"] == 0
    assert segments["inactive"]["userCount"] == 2
    assert segments["high-risk"]["userCount"] == 0
    assert segments["high-risk"]["trend"] is None
    assert all(segment["isPredefined"] for segment in segments.values())


def test_unknown_segment(service):
    with pytest.raises(ValueError):
        service.segment_count("vip")


def test_support_summary(records):
    summary = BackofficeAnalyticsService.support_summary(records["support_tickets"])

    assert summary["status"] == {"all": 3, "open": 1, "in_progress": 1, "resolved": 1, "closed": 0}
    assert summary["priority"]["high"] == 1
    assert summary["priority"]["urgent"] == 0


def test_achievement_logs_resolve_relations(service, records):
    rows = service.achievement_logs(records["user_achievements"])

    first, second = rows
    assert first["userName"] == "Alice"
    assert first["tier"] == "gold"
    assert first["unlockMethod"] == "Automatic"
    assert second["achievement"] == "One Week"
    assert second["tier"] == "bronze"
    assert second["unlockMethod"] == "Manual"
    assert second["reason"] == "Support credit"

    assert [row["id"] for row in service.achievement_logs(records["user_achievements"], "ALICE")] == ["ua1"]


def test_run_report_with_filters_and_grouping(service):
    report = service.run_report(
        ReportDefinition(
            data_source="users",
            metrics=("Count",),
            filters=({"field": "name", "operator": "contains", "value": "a"},),
            name="Users with an a",
        )
    )
    assert report["total"] == 3
    assert "groups" not in report

    grouped = service.run_report(ReportDefinition(data_source="sessions", metrics=("Count",), group_by="status"))
    assert [(g.name, g.value, g.percentage) for g in grouped["groups"]] == [
        ("in_progress", 2, 67),
        ("completed", 1, 33),
    ]

    numeric = service.run_report(
        ReportDefinition(
            data_source="sessions",
            filters=({"field": "current_day", "operator": "greater_than", "value": 3},),
        )
    )
    assert numeric["total"] == 2


@pytest.mark.parametrize(
    "definition",
    [
        ReportDefinition(data_source="payments"),
        ReportDefinition(data_source="users", metrics=("Slip Rate",)),
        ReportDefinition(data_source="users", filters=({"field": "name", "operator": "like", "value": "a"},)),
    ],
)
def test_run_report_rejects_invalid_definitions(service, definition):
    with pytest.raises(ValueError):
        service.run_report(definition)


@pytest.mark.parametrize(
    "delta,expected",
    [
        (timedelta(seconds=10), "less than a minute ago"),
        (timedelta(minutes=5), "5 minutes ago"),
        (timedelta(hours=3), "about 3 hours ago"),
        (timedelta(days=1, hours=2), "1 day ago"),
        (timedelta(days=60), "2 months ago"),
    ],
)
def test_time_ago(now, delta, expected):
    assert time_ago(now - delta, now) == expected


def test_rounding_helpers():
    assert js_round(2.5) == 3
    assert js_round(-2.5) == -2
    assert percent(1, 3) == 33
    assert percent(5, 0) == 0
    assert _calc_delta(10, 0) is None
    assert _calc_delta(15, 10) == 50
    assert humanize_label("very_good") == "Very Good"


@pytest.mark.parametrize("pending,alert", [(5, None), (6, "warning"), (10, "warning"), (11, "danger")])
def test_pending_ticket_alert_thresholds(now, pending, alert):
    tickets = [{"id": f"t{index}", "status": "open" if index % 2 else "in_progress"} for index in range(pending)]
    tickets.append({"id": "done", "status": "resolved"})
    dataset = BackofficeDataset({"support_tickets": records_from_items("support_tickets", tickets)})

    overview = BackofficeAnalyticsService(dataset, now=now).overview()

    assert overview["pendingTickets"] == pending
    assert overview["cards"][3].alert == alert


def test_progress_from_quit_date_and_slips(service):
    progress = service.progress("u1")

    assert progress["daysSmokeFree"] == 9
    assert progress["cigarettesSmoked"] == 0
    assert progress["cigarettesNotSmoked"] == 90
    assert progress["moneySaved"] == 720
    assert progress["lifeRegainedHours"] == pytest.approx(16.5)
    assert progress["nicotineNotConsumed"] == pytest.approx(72.0)


def test_progress_subtracts_slips_and_never_goes_negative(now):
    items = {
        "user_profiles": [
            {"id": "p1", "user": "u1", "quit_date": "2024-06-13 00:00:00.000Z", "daily_consumption": 1},
            {"id": "p2", "user": "u2", "quit_date": "2024-06-20 08:00:00.000Z", "daily_consumption": 20},
        ],
        "cravings": [
            {"id": "c1", "user": "u1", "type": "slip"},
            {"id": "c2", "user": "u1", "type": "slip"},
            {"id": "c3", "user": "u1", "type": "slip"},
        ],
    }
    dataset = BackofficeDataset({name: records_from_items(name, rows) for name, rows in items.items()})
    service = BackofficeAnalyticsService(dataset, now=now)

    assert service.progress("u1")["daysSmokeFree"] == 2
    assert service.progress("u1")["cigarettesNotSmoked"] == 0
    assert service.progress("u1")["cigarettesSmoked"] == 3
    assert service.progress("u2")["daysSmokeFree"] == 0


def test_progress_without_quit_date_is_empty(service):
    assert service.progress("u2") == {
        "daysSmokeFree": 0,
        "cigarettesNotSmoked": 0,
        "moneySaved": 0,
        "lifeRegainedHours": 0,
        "nicotineNotConsumed": 0,
        "cigarettesSmoked": 0,
    }


def test_achievement_unlocks_skip_already_unlocked(service):
    assert [achievement.id for achievement in service.achievement_unlocks("u1")] == ["a2"]
    assert service.achievement_unlocks("u2") == []


def test_achievement_unlock_rules(now):
    items = {
        "user_profiles": [{"id": "p1", "user": "u1", "quit_date": "2024-06-12 00:00:00.000Z", "daily_consumption": 5}],
        "cravings": [{"id": f"c{index}", "user": "u1", "type": "craving"} for index in range(10)]
        + [{"id": "slip", "user": "u1", "type": "slip"}],
        "session_progress": [
            {"id": f"sp{index}", "user": "u1", "status": "completed" if index < 9 else "in_progress"}
            for index in range(10)
        ],
        "achievements": [
            {"id": "a1", "key": "first_day", "requirement_type": "days_streak", "requirement_value": 1},
            {"id": "a2", "key": "week_warrior", "requirement_type": "days_streak", "requirement_value": 7},
            {"id": "a3", "key": "craving_crusher", "requirement_type": "cravings_resisted", "requirement_value": 10},
            {"id": "a4", "key": "perfect_ten", "requirement_type": "sessions_completed", "requirement_value": 10},
            {"id": "a5", "key": "mystery", "requirement_type": "unknown", "requirement_value": 0},
        ],
        "user_achievements": [
            {"id": "ua1", "user": "u1", "achievement": "old-a1", "expand": {"achievement": {"id": "old-a1", "key": "first_day"}}}
        ],
    }
    dataset = BackofficeDataset({name: records_from_items(name, rows) for name, rows in items.items()})

    unlocks = BackofficeAnalyticsService(dataset, now=now).achievement_unlocks("u1")

    assert [achievement.get("key") for achievement in unlocks] == ["craving_crusher"]


def test_user_detail(service):
    detail = service.user_detail("u2")

    assert detail["user"].get("name") == "Bob"
    assert detail["profile"] is None
    assert detail["currentSession"].id == "s2"
    assert [craving.id for craving in detail["cravings"]] == ["c3", "c2"]
    assert detail["stats"] == {"daysSmokeFree": 0, "totalCravings": 2, "cravingsResisted": 1, "slips": 1}
    assert [row["achievement"] for row in detail["achievements"]] == ["One Week"]


def test_user_detail_unknown_user(service):
    with pytest.raises(LookupError):
        service.user_detail("missing")


def test_flagged_cravings(service):
    rows = service.flagged_cravings()

    assert [row["id"] for row in rows] == ["c2", "c1"]
    assert rows[0]["urgent"] is True
    assert rows[0]["reason"] == "High intensity (5/5) - may need immediate support"
    assert rows[0]["userName"] == "Bob"
    assert rows[1]["reason"] == "Flagged for review"
    assert [row["id"] for row in service.flagged_cravings("alice")] == ["c1"]
    assert [row["id"] for row in service.flagged_cravings("party")] == ["c1"]


def test_flagged_journals(service):
    rows = service.flagged_journals()

    assert [row["id"] for row in rows] == ["j2"]
    assert rows[0]["keywords"] == ["end it"]
    assert rows[0]["userEmail"] == "bob@example.com"
    assert service.flagged_journals("alice") == []


def test_flagged_journal_marker(now):
    entries = [{"id": "j1", "user": "u1", "content": "Quiet day", "flagged": True}]
    dataset = BackofficeDataset({"journal_entries": records_from_items("journal_entries", entries)})

    rows = BackofficeAnalyticsService(dataset, now=now).flagged_journals()

    assert rows[0]["flagged"] is True
    assert rows[0]["keywords"] == []
    assert rows[0]["userName"] == "Unknown User"
