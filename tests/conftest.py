from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from backend.analytics.dataset import BackofficeDataset
from backend.analytics.models import CollectionRecord, records_from_items
from backend.analytics.service import BackofficeAnalyticsService

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def pb_time(value: str) -> str:
    """PocketBase-style timestamp for ``YYYY-MM-DD HH:MM``."""
    return f"{value}:00.000Z"


ALICE = {"id": "u1", "name": "Alice", "email": "alice@example.com"}
BOB = {"id": "u2", "name": "Bob", "email": "bob@example.com"}

ITEMS: Dict[str, List[Dict[str, Any]]] = {
    "users": [
        {**ALICE, "created": pb_time("2024-06-10 09:00"), "lastActive": pb_time("2024-06-14 10:00")},
        {**BOB, "created": pb_time("2024-06-02 09:00"), "lastActive": pb_time("2024-06-15 08:00")},
        {
            "id": "u3",
            "name": "Cara",
            "email": "cara@example.com",
            "created": pb_time("2024-05-20 09:00"),
            "lastActive": pb_time("2024-04-01 10:00"),
        },
        {"id": "u4", "name": "Dan", "email": "dan@example.com", "created": pb_time("2024-04-10 09:00"), "lastActive": ""},
    ],
    "user_profiles": [
        {
            "id": "pr1",
            "user": "u1",
            "quit_date": pb_time("2024-06-05 09:00"),
            "daily_consumption": 10,
            "created": pb_time("2024-06-10 09:05"),
        }
    ],
    "programs": [{"id": "p1", "title": "10-Day Quit Program", "created": pb_time("2024-01-01 00:00")}],
    "program_days": [
        {"id": "d1", "program": "p1", "day_number": 1, "title": "Day One", "created": pb_time("2024-01-01 00:00")}
    ],
    "user_sessions": [
        {
            "id": "s1",
            "user": "u1",
            "program": "p1",
            "status": "completed",
            "current_day": 10,
            "started_at": pb_time("2024-06-01 00:00"),
            "completed_at": pb_time("2024-06-11 00:00"),
            "created": pb_time("2024-06-01 00:00"),
            "updated": pb_time("2024-06-11 00:00"),
        },
        {
            "id": "s2",
            "user": "u2",
            "program": "p1",
            "status": "in_progress",
            "current_day": 5,
            "created": pb_time("2024-06-03 00:00"),
            "updated": pb_time("2024-06-08 00:00"),
        },
        {
            "id": "s3",
            "user": "u3",
            "program": "p1",
            "status": "in_progress",
            "current_day": 2,
            "created": pb_time("2024-05-21 00:00"),
            "updated": pb_time("2024-05-22 00:00"),
        },
    ],
    "session_progress": [
        {"id": "sp1", "user": "u1", "program_day": "d1", "status": "completed", "time_spent_minutes": 12, "created": pb_time("2024-06-01 01:00")},
        {"id": "sp2", "user": "u2", "program_day": "d1", "status": "in_progress", "time_spent_minutes": 0, "created": pb_time("2024-06-03 01:00")},
    ],
    "cravings": [
        {
            "id": "c1",
            "user": "u1",
            "trigger": "stress",
            "type": "craving",
            "intensity": 3,
            "notes": "Friends smoking at a party",
            "flagged": True,
            "created": pb_time("2024-06-11 10:00"),
        },
        {"id": "c2", "user": "u2", "trigger": "stress", "type": "slip", "intensity": 5, "created": pb_time("2024-06-12 10:00")},
        {"id": "c3", "user": "u2", "trigger": "", "type": "craving", "intensity": 2, "created": pb_time("2024-06-13 10:00")},
    ],
    "journal_entries": [
        {"id": "j1", "user": "u1", "mood": "very_good", "content": "Feeling strong today", "created": pb_time("2024-06-12 20:00")},
        {"id": "j2", "user": "u2", "mood": "", "content": "Some days I just want to END IT", "created": pb_time("2024-06-13 20:00")},
    ],
    "achievements": [
        {
            "id": "a1",
            "key": "first_day",
            "title": "First Day",
            "tier": "gold",
            "requirement_type": "days_streak",
            "requirement_value": 1,
            "created": pb_time("2024-01-01 00:00"),
        },
        {
            "id": "a2",
            "key": "week_warrior",
            "title": "One Week",
            "tier": "",
            "requirement_type": "days_streak",
            "requirement_value": 7,
            "created": pb_time("2024-01-01 00:00"),
        },
    ],
    "user_achievements": [
        {
            "id": "ua1",
            "user": "u1",
            "achievement": "a1",
            "unlocked_at": pb_time("2024-06-12 10:00"),
            "created": pb_time("2024-06-12 10:00"),
            "expand": {
                "user": ALICE,
                "achievement": {"id": "a1", "title": "First Day", "tier": "gold"},
            },
        },
        {
            "id": "ua2",
            "user": "u2",
            "achievement": "a2",
            "unlocked_at": pb_time("2024-06-14 10:00"),
            "unlock_method": "manual",
            "reason": "Support credit",
            "created": pb_time("2024-06-14 10:00"),
            "expand": {"user": BOB},
        },
    ],
    "support_tickets": [
        {"id": "t1", "subject": "App crashes", "status": "open", "priority": "high", "created": pb_time("2024-06-14 09:00")},
        {"id": "t2", "subject": "Reset progress", "status": "in_progress", "priority": "low", "created": pb_time("2024-06-13 09:00")},
        {"id": "t3", "subject": "Billing", "status": "resolved", "priority": "medium", "created": pb_time("2024-06-01 09:00")},
    ],
}


def build_records() -> Dict[str, List[CollectionRecord]]:
    return {name: records_from_items(name, items) for name, items in ITEMS.items()}


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def records() -> Dict[str, List[CollectionRecord]]:
    return build_records()


@pytest.fixture
def dataset(records) -> BackofficeDataset:
    return BackofficeDataset(records)


@pytest.fixture
def service(dataset) -> BackofficeAnalyticsService:
    return BackofficeAnalyticsService(dataset, now=NOW)


@pytest.fixture
def snapshot_engine():
    """In-memory SQL snapshot holding every fixture record, shared across threads."""

    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    with engine.begin() as connection:
        connection.execute(
            text("CREATE TABLE records (collection TEXT, id TEXT, created TEXT, updated TEXT, data_json TEXT)")
        )
        for collection, items in ITEMS.items():
            for item in items:
                connection.execute(
                    text(
                        "INSERT INTO records (collection, id, created, updated, data_json) "
                        "VALUES (:collection, :id, :created, :updated, :data)"
                    ),
                    {
                        "collection": collection,
                        "id": item["id"],
                        "created": item.get("created", ""),
                        "updated": item.get("updated", item.get("created", "")),
                        "data": json.dumps(item),
                    },
                )
    yield engine
    engine.dispose()
