"""CSV exports for the users table and the achievement log."""

from __future__ import annotations

import csv
import io
from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence

from .models import CollectionRecord

USER_HEADERS = ["Name", "Email", "User ID", "Registered", "Last Active", "Status"]
ACHIEVEMENT_LOG_HEADERS = ["User", "Email", "Achievement", "Unlocked Date", "Unlock Method"]


def _date(value: Any) -> str:
    return value.date().isoformat() if isinstance(value, datetime) else ""


def _timestamp(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if isinstance(value, datetime) else ""


def _write(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if cell is None else cell for cell in row])
    return buffer.getvalue()


def users_csv(users: Iterable[CollectionRecord]) -> str:
    rows: List[List[Any]] = []
    for user in users:
        rows.append(
            [
                user.get("name", ""),
                user.get("email", ""),
                user.id,
                _date(user.created),
                _date(user.datetime_field("lastActive")),
                "Active",
            ]
        )
    return _write(USER_HEADERS, rows)


def achievement_logs_csv(rows: Iterable[Dict[str, Any]]) -> str:
    return _write(
        ACHIEVEMENT_LOG_HEADERS,
        (
            [
                "" if row.get("userName") == "Unknown User" else row.get("userName"),
                row.get("userEmail"),
                "" if row.get("achievement") == "Unknown Achievement" else row.get("achievement"),
                _timestamp(row.get("unlockedAt")),
                row.get("unlockMethod") or "Automatic",
            ]
            for row in rows
        ),
    )


def export_filename(prefix: str, now: datetime) -> str:
    return f"{prefix}-{now.date().isoformat()}.csv"
