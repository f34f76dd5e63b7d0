from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .models import CollectionRecord

COLLECTIONS = (
    "users",
    "user_profiles",
    "programs",
    "program_days",
    "user_sessions",
    "session_progress",
    "cravings",
    "journal_entries",
    "achievements",
    "user_achievements",
    "support_tickets",
)


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def shift_months(moment: datetime, months: int) -> datetime:
    """Move ``moment`` by whole calendar months, clamping the day of month."""

    index = moment.year * 12 + (moment.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    next_month = datetime(year + (month // 12), month % 12 + 1, 1, tzinfo=moment.tzinfo)
    last_day = (next_month - timedelta(days=1)).day
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))


def day_start(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass
class BackofficeDataset:
    """
    In-memory view over fetched PocketBase collections.

    Collections that were not loaded read as empty so every aggregate can be
    computed from partial data.
    """

    records: Mapping[str, Sequence[CollectionRecord]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.records = {name: tuple(items) for name, items in self.records.items()}

    def collection(self, name: str) -> Sequence[CollectionRecord]:
        return self.records.get(name, ())

    @property
    def users(self) -> Sequence[CollectionRecord]:
        return self.collection("users")

    @property
    def sessions(self) -> Sequence[CollectionRecord]:
        return self.collection("user_sessions")

    @property
    def cravings(self) -> Sequence[CollectionRecord]:
        return self.collection("cravings")

    def records_between(
        self,
        collection: str,
        start: Optional[datetime],
        end: Optional[datetime],
        field: str = "created",
    ) -> List[CollectionRecord]:
        """Records whose ``field`` lies in ``[start, end)``; open bounds when ``None``."""

        selected: List[CollectionRecord] = []
        for record in self.collection(collection):
            moment = record.datetime_field(field)
            if moment is None:
                continue
            if start is not None and moment < start:
                continue
            if end is not None and moment >= end:
                continue
            selected.append(record)
        return selected

    def by_user(self, collection: str) -> Dict[str, List[CollectionRecord]]:
        index: Dict[str, List[CollectionRecord]] = defaultdict(list)
        for record in self.collection(collection):
            user_id = record.get("user")
            if user_id:
                index[str(user_id)].append(record)
        return dict(index)

    @staticmethod
    def group_by_month(
        records: Iterable[CollectionRecord],
        field: str,
        now: datetime,
        months: int,
    ) -> List[Tuple[datetime, List[CollectionRecord]]]:
        """
        Bucket records into the last ``months`` calendar months (oldest first).

        The current month is always the final bucket; records outside the
        covered range are ignored.
        """

        current = month_start(now)
        starts = [shift_months(current, -offset) for offset in range(months - 1, -1, -1)]
        buckets: Dict[datetime, List[CollectionRecord]] = {start: [] for start in starts}
        for record in records:
            moment = record.datetime_field(field)
            if moment is None:
                continue
            key = month_start(moment.astimezone(now.tzinfo or timezone.utc))
            if key in buckets:
                buckets[key].append(record)
        return [(start, buckets[start]) for start in starts]

    @staticmethod
    def group_by_day(
        records: Iterable[CollectionRecord],
        field: str,
        start: datetime,
        end: datetime,
    ) -> Dict[datetime, List[CollectionRecord]]:
        days: Dict[datetime, List[CollectionRecord]] = {}
        cursor = day_start(start)
        while cursor < end:
            days[cursor] = []
            cursor += timedelta(days=1)
        for record in records:
            moment = record.datetime_field(field)
            if moment is None:
                continue
            key = day_start(moment.astimezone(start.tzinfo or timezone.utc))
            if key in days:
                days[key].append(record)
        return days

    @staticmethod
    def count_by(records: Iterable[CollectionRecord], field: str, default: str) -> Dict[str, int]:
        totals: Counter = Counter()
        for record in records:
            totals[str(record.get(field) or default)] += 1
        return dict(totals)
