from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse PocketBase (``2024-01-15 10:30:00.123Z``) and ISO-8601 timestamps.

    Empty or malformed values return ``None``; naive values are taken as UTC.
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip().replace(" ", "T", 1)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class CollectionRecord:
    """
    One PocketBase record as returned by the REST API.

    ``data`` keeps every user-defined field verbatim; ``expand`` holds the
    raw expanded relations (``?expand=user,achievement``).
    """

    id: str
    collection: str
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)
    expand: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_item(cls, collection: str, item: Dict[str, Any]) -> "CollectionRecord":
        data = {
            key: value
            for key, value in item.items()
            if key not in {"id", "created", "updated", "expand", "collectionId", "collectionName"}
        }
        expand = item.get("expand")
        return cls(
            id=str(item.get("id") or ""),
            collection=str(item.get("collectionName") or collection),
            created=parse_datetime(item.get("created")),
            updated=parse_datetime(item.get("updated")),
            data=data,
            expand=expand if isinstance(expand, dict) else {},
        )

    def get(self, name: str, default: Any = None) -> Any:
        value = self.data.get(name)
        return default if value is None else value

    def datetime_field(self, name: str) -> Optional[datetime]:
        if name == "created":
            return self.created
        if name == "updated":
            return self.updated
        return parse_datetime(self.data.get(name))

    def related(self, name: str) -> Optional["CollectionRecord"]:
        item = self.expand.get(name)
        if isinstance(item, list):
            item = item[0] if item else None
        if not isinstance(item, dict):
            return None
        return CollectionRecord.from_item(name, item)

    def as_item(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {"id": self.id, "collectionName": self.collection, **self.data}
        item["created"] = self.created.isoformat() if self.created else None
        item["updated"] = self.updated.isoformat() if self.updated else None
        if self.expand:
            item["expand"] = self.expand
        return item


def records_from_items(collection: str, items: Iterable[Dict[str, Any]]) -> List[CollectionRecord]:
    return [CollectionRecord.from_item(collection, item) for item in items]


@dataclass(frozen=True)
class MetricCard:
    key: str
    title: str
    value: float
    subtitle: Optional[str] = None
    trend: Optional[str] = None
    trend_up: Optional[bool] = None
    alert: Optional[str] = None


@dataclass(frozen=True)
class ActivityItem:
    type: str
    message: str
    timestamp: datetime
    time: str


@dataclass(frozen=True)
class ChartSlice:
    name: str
    value: int
    percentage: int = 0


@dataclass(frozen=True)
class SeriesPoint:
    label: str
    values: Dict[str, float]


@dataclass(frozen=True)
class FunnelStage:
    stage: str
    value: int
    percentage: int


@dataclass(frozen=True)
class ReportDefinition:
    data_source: str
    metrics: Sequence[str] = ()
    filters: Sequence[Dict[str, Any]] = ()
    group_by: Optional[str] = None
    name: Optional[str] = None
    chart_type: str = "table"


def serialize(obj: Any) -> Any:
    """
    Convert result dataclasses into JSON-ready structures (camelCase keys).

    Dicts, lists and datetimes are walked recursively so nested view payloads
    can be handed to FastAPI directly.
    """

    if isinstance(obj, MetricCard):
        return {
            "key": obj.key,
            "title": obj.title,
            "value": obj.value,
            "subtitle": obj.subtitle,
            "trend": obj.trend,
            "trendUp": obj.trend_up,
            "alert": obj.alert,
        }
    if isinstance(obj, ActivityItem):
        return {
            "type": obj.type,
            "message": obj.message,
            "timestamp": obj.timestamp.isoformat(),
            "time": obj.time,
        }
    if isinstance(obj, ChartSlice):
        return {"name": obj.name, "value": obj.value, "percentage": obj.percentage}
    if isinstance(obj, SeriesPoint):
        return {"label": obj.label, **obj.values}
    if isinstance(obj, FunnelStage):
        return {"stage": obj.stage, "value": obj.value, "percentage": obj.percentage}
    if isinstance(obj, CollectionRecord):
        return obj.as_item()
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {key: serialize(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [serialize(item) for item in obj]
    return obj
