from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from quit_hero_api.configuration import BackofficeConfig
from quit_hero_api.filters import achievement_log_criteria, ticket_criteria, user_search_criteria
from quit_hero_api.pocketbase import ClientResponseError

from .dataset import BackofficeDataset
from .export import achievement_logs_csv, export_filename, users_csv
from .models import ReportDefinition, serialize
from .repository import RecordRepository, build_repository
from .service import REPORT_SOURCES, BackofficeAnalyticsService

app = FastAPI(title="Quit Hero Backoffice Analytics API", version="0.1.0")

OVERVIEW_COLLECTIONS = ("users", "user_sessions", "user_achievements", "achievements", "support_tickets")
ENGAGEMENT_COLLECTIONS = (
    "user_sessions",
    "cravings",
    "journal_entries",
    "user_achievements",
    "achievements",
    "session_progress",
)
UNLOCK_COLLECTIONS = ("user_achievements", "achievements")
USER_COLLECTIONS = (
    "users",
    "user_profiles",
    "user_sessions",
    "session_progress",
    "cravings",
    "journal_entries",
) + UNLOCK_COLLECTIONS
EXPAND = {"user_achievements": "user,achievement"}


def get_config() -> BackofficeConfig:
    return BackofficeConfig.from_env()


def get_repository(
    authorization: Optional[str] = Header(None),
    config: BackofficeConfig = Depends(get_config),
) -> RecordRepository:
    token = (authorization or "").strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    return build_repository(config, token=token or None)


def get_now() -> datetime:
    return datetime.now(timezone.utc)


class ReportFilter(BaseModel):
    field: str
    operator: Literal["equals", "not_equals", "contains", "greater_than", "less_than"] = "equals"
    value: Any = None


class ReportRequest(BaseModel):
    data_source: str = Field(..., alias="dataSource")
    metrics: List[str] = Field(default_factory=list)
    filters: List[ReportFilter] = Field(default_factory=list)
    group_by: Optional[str] = Field(None, alias="groupBy")
    name: Optional[str] = None
    chart_type: Literal["table", "bar", "line", "pie", "heatmap"] = Field("table", alias="chartType")


def _load(repository: RecordRepository, collections, now: datetime) -> BackofficeAnalyticsService:
    try:
        records = repository.load(list(collections), expand=EXPAND)
    except ClientResponseError as exc:
        raise _upstream_error(exc) from exc
    return BackofficeAnalyticsService(BackofficeDataset(records), now=now)


def _upstream_error(exc: ClientResponseError) -> HTTPException:
    status = exc.status if exc.status >= 400 else 502
    return HTTPException(status_code=status, detail=str(exc))


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/overview")
def overview(
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    service = _load(repository, OVERVIEW_COLLECTIONS, now)
    return serialize({**service.overview(), "activities": service.activity_feed()})


@app.get("/user-growth")
def user_growth(
    months: int = Query(6, ge=1, le=24),
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    service = _load(repository, ("users",), now)
    return serialize({"months": months, "points": service.user_growth(months)})


@app.get("/program-progress")
def program_progress(
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    service = _load(repository, ("users", "user_sessions"), now)
    return serialize({"slices": service.program_progress()})


@app.get("/engagement")
def engagement(
    date_range: str = Query("month"),
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    service = _load(repository, ENGAGEMENT_COLLECTIONS, now)
    try:
        return serialize(service.engagement(date_range))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/program-performance")
def program_performance(
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    service = _load(repository, ("programs", "program_days", "user_sessions", "session_progress"), now)
    return serialize(service.program_performance())


@app.get("/retention")
def retention(
    days: int = Query(90),
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    service = _load(repository, ("users", "user_sessions"), now)
    try:
        return serialize(service.retention(days))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/user-analytics")
def user_analytics(
    days: int = Query(30),
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    service = _load(repository, ("users", "user_sessions", "user_profiles"), now)
    try:
        return serialize(service.user_analytics(days))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/segments")
def segments(
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    service = _load(repository, ("users", "user_sessions", "cravings"), now)
    return serialize({"segments": service.segments()})


@app.get("/support/tickets")
def support_tickets(
    search: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    category: Optional[str] = None,
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    try:
        tickets = repository.list(
            "support_tickets",
            criteria=ticket_criteria(search, status, priority, category),
            sort="-created",
            expand="user",
        )
    except ClientResponseError as exc:
        raise _upstream_error(exc) from exc
    service = BackofficeAnalyticsService(BackofficeDataset({"support_tickets": tickets}), now=now)
    return serialize({"tickets": list(tickets), "summary": service.support_summary(tickets)})


@app.get("/support/flagged-cravings")
def flagged_cravings(
    search: Optional[str] = None,
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    rows = _load(repository, ("users", "cravings"), now).flagged_cravings(search)
    return serialize({"cravings": rows, "total": len(rows)})


@app.get("/support/flagged-journals")
def flagged_journals(
    search: Optional[str] = None,
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    rows = _load(repository, ("users", "journal_entries"), now).flagged_journals(search)
    return serialize({"entries": rows, "total": len(rows)})


@app.get("/users/{user_id}")
def user_detail(
    user_id: str,
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    service = _load(repository, USER_COLLECTIONS, now)
    try:
        return serialize(service.user_detail(user_id))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/users/{user_id}/progress")
def user_progress(
    user_id: str,
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    service = _load(repository, ("user_profiles", "cravings"), now)
    return serialize(service.progress(user_id))


@app.get("/users/{user_id}/achievements/eligible")
def eligible_achievements(
    user_id: str,
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    service = _load(repository, ("user_profiles", "cravings", "session_progress") + UNLOCK_COLLECTIONS, now)
    return serialize({"achievements": service.achievement_unlocks(user_id)})


def _achievement_rows(
    repository: RecordRepository,
    now: datetime,
    achievement: Optional[str],
    start: Optional[str],
    end: Optional[str],
    search: Optional[str],
) -> List[Dict[str, Any]]:
    try:
        logs = repository.list(
            "user_achievements",
            criteria=achievement_log_criteria(achievement, start, end),
            sort="-unlocked_at",
            expand="user,achievement",
        )
        achievements = repository.list("achievements")
    except ClientResponseError as exc:
        raise _upstream_error(exc) from exc
    dataset = BackofficeDataset({"user_achievements": logs, "achievements": achievements})
    return BackofficeAnalyticsService(dataset, now=now).achievement_logs(logs, search)


@app.get("/achievements/logs")
def achievement_logs(
    achievement: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    search: Optional[str] = None,
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    rows = _achievement_rows(repository, now, achievement, start, end, search)
    return serialize({"logs": rows, "total": len(rows)})


@app.get("/achievements/logs.csv")
def achievement_logs_export(
    achievement: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    search: Optional[str] = None,
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Response:
    rows = _achievement_rows(repository, now, achievement, start, end, search)
    return _csv_response(achievement_logs_csv(rows), export_filename("achievement-logs", now))


@app.get("/users.csv")
def users_export(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(25, ge=1, le=500),
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Response:
    try:
        users = repository.page("users", page, per_page, criteria=user_search_criteria(search), sort="-created")
    except ClientResponseError as exc:
        raise _upstream_error(exc) from exc
    return _csv_response(users_csv(users), export_filename("users-export", now))


@app.post("/reports/run")
def run_report(
    request: ReportRequest,
    repository: RecordRepository = Depends(get_repository),
    now: datetime = Depends(get_now),
) -> Dict[str, Any]:
    if request.data_source not in REPORT_SOURCES:
        raise HTTPException(
            status_code=400,
            detail=f"dataSource must be one of: {', '.join(REPORT_SOURCES)}",
        )
    definition = ReportDefinition(
        data_source=request.data_source,
        metrics=tuple(request.metrics),
        filters=tuple(item.model_dump() for item in request.filters),
        group_by=request.group_by or None,
        name=request.name,
        chart_type=request.chart_type,
    )
    service = _load(repository, (REPORT_SOURCES[definition.data_source],), now)
    try:
        return serialize(service.run_report(definition))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
