"""Builders for PocketBase filter expressions."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional, Tuple


def quote(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"Cannot use non-finite number in a filter: {value!r}")
    if isinstance(value, (int, float)):
        return repr(value)
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def equals(field: str, value: Any) -> str:
    return f"{field} = {quote(value)}"


def contains(field: str, value: Any) -> str:
    return f"{field} ~ {quote(value)}"


def gte(field: str, value: Any) -> str:
    return f"{field} >= {quote(value)}"


def lte(field: str, value: Any) -> str:
    return f"{field} <= {quote(value)}"


def any_of(*clauses: Optional[str]) -> Optional[str]:
    parts = [clause for clause in clauses if clause]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return "(" + " || ".join(parts) + ")"


def all_of(*clauses: Optional[str]) -> Optional[str]:
    parts = [clause for clause in clauses if clause]
    if not parts:
        return None
    return " && ".join(parts)


def _selected(value: Optional[str]) -> bool:
    return bool(value) and value != "all"


@dataclass(frozen=True)
class RecordCriteria:
    """
    Structured record filter.

    ``to_filter`` renders the PocketBase expression sent upstream and
    ``matches`` evaluates the same conditions against a loaded record, so a
    SQL snapshot answers a query the way PocketBase would. Search is a
    case-insensitive substring match (PocketBase ``~``); range bounds compare
    the raw stored strings, which sort chronologically for PocketBase dates.
    """

    exact: Tuple[Tuple[str, str], ...] = ()
    search: Optional[str] = None
    search_fields: Tuple[str, ...] = ()
    range_field: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None

    def to_filter(self) -> Optional[str]:
        search = None
        if self.search:
            search = any_of(*(contains(name, self.search) for name in self.search_fields))
        return all_of(
            search,
            *(equals(name, value) for name, value in self.exact),
            gte(self.range_field, self.start) if self.range_field and self.start else None,
            lte(self.range_field, self.end) if self.range_field and self.end else None,
        )

    def matches(self, record: Any) -> bool:
        for name, value in self.exact:
            if str(record.get(name, "")) != str(value):
                return False
        if self.search and self.search_fields:
            needle = self.search.lower()
            if not any(needle in str(record.get(name, "")).lower() for name in self.search_fields):
                return False
        if self.range_field and (self.start or self.end):
            stored = str(record.get(self.range_field, ""))
            if self.start and stored < self.start:
                return False
            if self.end and stored > self.end:
                return False
        return True


def ticket_criteria(
    search: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    category: Optional[str] = None,
) -> RecordCriteria:
    selected = (("status", status), ("priority", priority), ("category", category))
    return RecordCriteria(
        exact=tuple((name, value) for name, value in selected if _selected(value)),
        search=search or None,
        search_fields=("subject", "message"),
    )


def achievement_log_criteria(
    achievement: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> RecordCriteria:
    return RecordCriteria(
        exact=(("achievement", achievement),) if _selected(achievement) else (),
        range_field="unlocked_at",
        start=start or None,
        end=end or None,
    )


def user_search_criteria(search: Optional[str] = None) -> RecordCriteria:
    return RecordCriteria(search=search or None, search_fields=("email", "name"))
