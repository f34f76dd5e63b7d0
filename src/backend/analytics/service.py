from __future__ import annotations

import math
import re
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from .dataset import BackofficeDataset, day_start, month_start, shift_months
from .models import (
    ActivityItem,
    ChartSlice,
    CollectionRecord,
    FunnelStage,
    MetricCard,
    ReportDefinition,
    SeriesPoint,
)

PROGRAM_DAYS = 10
CHURN_AFTER_DAYS = 30
RANGE_DAYS = (30, 90, 180, 365)
ENGAGEMENT_RANGES = ("week", "month", "all")

PROGRESS_BUCKETS = ("Not Started", "Days 1-3", "Days 4-7", "Days 8-10", "Completed")

TICKET_STATUSES = ("open", "in_progress", "resolved", "closed")
TICKET_PRIORITIES = ("urgent", "high", "medium", "low")
PENDING_TICKET_STATUSES = {"open", "in_progress"}

PRICE_PER_CIGARETTE = 8
LIFE_MINUTES_PER_CIGARETTE = 11
NICOTINE_MG_PER_CIGARETTE = 0.8
EMPTY_PROGRESS = {
    "daysSmokeFree": 0,
    "cigarettesNotSmoked": 0,
    "moneySaved": 0,
    "lifeRegainedHours": 0,
    "nicotineNotConsumed": 0,
    "cigarettesSmoked": 0,
}

FLAGGED_CRAVING_INTENSITY = 4
URGENT_CRAVING_INTENSITY = 5
CONCERNING_KEYWORDS = ("suicide", "self-harm", "hurt myself", "end it")

REPORT_SOURCES = {
    "users": "users",
    "sessions": "user_sessions",
    "cravings": "cravings",
    "journal_entries": "journal_entries",
    "achievements": "user_achievements",
}
REPORT_METRICS = {
    "users": ("Count", "Average Age", "Registration Trend", "Active Users"),
    "sessions": ("Count", "Completion Rate", "Average Time", "Drop-off Points"),
    "cravings": ("Count", "Intensity Distribution", "Trigger Breakdown", "Slip Rate"),
    "journal_entries": ("Count", "Mood Distribution", "Entries per User", "Frequency"),
    "achievements": ("Total Unlocks", "Unlock Rate", "Most Popular", "Average Days to Unlock"),
}
REPORT_OPERATORS = ("equals", "not_equals", "contains", "greater_than", "less_than")

SEGMENTS = (
    {
        "id": "active",
        "name": "Active Users",
        "description": "Users who logged in within the last 7 days",
        "criteria": {"lastLoginDays": 7},
        "period_days": 7,
    },
    {
        "id": "inactive",
        "name": "Inactive Users",
        "description": "Users who have not logged in for 30+ days",
        "criteria": {"lastLoginDays": 30},
        "period_days": 30,
    },
    {
        "id": "high-risk",
        "name": "High Risk",
        "description": "Users with many slips and low session completion",
        "criteria": {"slipsThreshold": 3, "completionRate": 0.5},
        "period_days": None,
    },
    {
        "id": "star-performers",
        "name": "Star Performers",
        "description": "Users who completed the program with no slips",
        "criteria": {"slipsThreshold": 0, "programCompleted": True},
        "period_days": None,
    },
    {
        "id": "new-users",
        "name": "New Users",
        "description": "Users registered within the last 7 days",
        "criteria": {"registrationDays": 7},
        "period_days": 7,
    },
    {
        "id": "churned",
        "name": "Churned",
        "description": "Users not active for 90+ days",
        "criteria": {"lastLoginDays": 90},
        "period_days": 90,
    },
)


def js_round(value: float) -> int:
    """Round half up, the way ``Math.round`` does for the dashboard widgets."""
    return int(math.floor(value + 0.5))


def percent(part: float, whole: float) -> int:
    if not whole:
        return 0
    return js_round(part / whole * 100)


def _calc_delta(current: float, previous: float) -> Optional[int]:
    if previous == 0:
        return None
    return js_round((current - previous) / previous * 100)


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _days_between(later: datetime, earlier: datetime) -> int:
    return math.floor((later - earlier).total_seconds() / 86400)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def time_ago(moment: datetime, now: datetime) -> str:
    seconds = (now - moment).total_seconds()
    suffix = "ago"
    if seconds < 0:
        seconds = -seconds
        suffix = "from now"
    minutes = js_round(seconds / 60)
    if minutes < 1:
        label = "less than a minute"
    elif minutes < 45:
        label = _plural(minutes, "minute")
    elif minutes < 60 * 24:
        label = "about " + _plural(max(1, js_round(minutes / 60)), "hour")
    elif minutes < 60 * 24 * 30:
        label = _plural(max(1, js_round(minutes / (60 * 24))), "day")
    elif minutes < 60 * 24 * 365:
        months = max(1, js_round(minutes / (60 * 24 * 30)))
        label = ("about " if months == 1 else "") + _plural(months, "month")
    else:
        years = max(1, math.floor(minutes / (60 * 24 * 365)))
        label = "about " + _plural(years, "year")
    return f"in {label}" if suffix == "from now" else f"{label} {suffix}"


def humanize_label(value: str) -> str:
    text = value.replace("_", " ", 1)
    return re.sub(r"\b\w", lambda match: match.group().upper(), text)


def _latest(records: Iterable[CollectionRecord]) -> Optional[CollectionRecord]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    ordered = sorted(records, key=lambda record: record.updated or record.created or epoch, reverse=True)
    return ordered[0] if ordered else None


def _newest_first(records: Iterable[CollectionRecord]) -> List[CollectionRecord]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(records, key=lambda record: record.created or epoch, reverse=True)


def _search_hit(search: Optional[str], user: Optional[CollectionRecord], *texts: str) -> bool:
    if not search:
        return True
    needle = search.lower()
    values = list(texts)
    if user is not None:
        values += [str(user.get("name", "")), str(user.get("email", ""))]
    return any(needle in value.lower() for value in values)


class BackofficeAnalyticsService:
    """
    Aggregates fetched PocketBase collections into the backoffice dashboard views.

    Every computation runs in memory against ``now``, which callers can pin
    for reproducible results.
    """

    def __init__(self, dataset: BackofficeDataset, now: Optional[datetime] = None) -> None:
        self.dataset = dataset
        now = now or datetime.now(timezone.utc)
        self.now = now if now.tzinfo else now.replace(tzinfo=timezone.utc)

    # ------------------------------------------------------------------ helpers

    def _last_active(self, user: CollectionRecord) -> Optional[datetime]:
        return user.datetime_field("lastActive")

    def _active_since(self, moment: datetime, users: Optional[Iterable[CollectionRecord]] = None) -> int:
        users = self.dataset.users if users is None else users
        count = 0
        for user in users:
            last_active = self._last_active(user)
            if last_active is not None and last_active > moment:
                count += 1
        return count

    def _days_since_active(self, user: CollectionRecord) -> Optional[int]:
        last_active = self._last_active(user)
        if last_active is None:
            return None
        return _days_between(self.now, last_active)

    def _is_churned(self, user: CollectionRecord) -> bool:
        days = self._days_since_active(user)
        return days is None or days > CHURN_AFTER_DAYS

    def _completed_sessions(self) -> List[CollectionRecord]:
        return [session for session in self.dataset.sessions if session.get("status") == "completed"]

    def _user_name(self, record: Optional[CollectionRecord], default: str) -> str:
        if record is None:
            return default
        return str(record.get("name") or record.get("email") or default)

    def _achievement_for(self, unlock: CollectionRecord) -> Optional[CollectionRecord]:
        achievement = unlock.related("achievement")
        if achievement is not None:
            return achievement
        achievement_id = unlock.get("achievement")
        for candidate in self.dataset.collection("achievements"):
            if candidate.id == achievement_id:
                return candidate
        return None

    # ---------------------------------------------------------------- dashboard

    def overview(self) -> Dict[str, Any]:
        users = self.dataset.users
        total_users = len(users)
        active_users = self._active_since(self.now - timedelta(days=7))
        completed_programs = len(self._completed_sessions())
        completion_rate = percent(completed_programs, total_users)
        pending_tickets = sum(
            1
            for ticket in self.dataset.collection("support_tickets")
            if ticket.get("status") in PENDING_TICKET_STATUSES
        )

        this_month = month_start(self.now)
        last_month = shift_months(this_month, -1)
        this_month_users = len(self.dataset.records_between("users", this_month, None))
        last_month_users = len(self.dataset.records_between("users", last_month, this_month))
        if last_month_users > 0:
            growth_percent = js_round((this_month_users - last_month_users) / last_month_users * 100)
        else:
            growth_percent = 100 if this_month_users > 0 else 0

        if pending_tickets > 10:
            ticket_alert = "danger"
        elif pending_tickets > 5:
            ticket_alert = "warning"
        else:
            ticket_alert = None

        trend = f"+{growth_percent}% this month" if growth_percent > 0 else f"{growth_percent}% this month"
        cards = [
            MetricCard(
                key="total_users",
                title="Total Users",
                value=total_users,
                subtitle="Total Users",
                trend=trend,
                trend_up=growth_percent > 0,
            ),
            MetricCard(
                key="active_users",
                title="Active Users (7d)",
                value=active_users,
                subtitle=f"{percent(active_users, total_users)}% of total",
            ),
            MetricCard(
                key="completed_programs",
                title="Completed Programs",
                value=completed_programs,
                subtitle=f"{completion_rate}% completion rate",
            ),
            MetricCard(
                key="pending_tickets",
                title="Pending Tickets",
                value=pending_tickets,
                subtitle="Pending Tickets",
                alert=ticket_alert,
            ),
        ]
        return {
            "cards": cards,
            "totalUsers": total_users,
            "activeUsers": active_users,
            "completedPrograms": completed_programs,
            "completionRate": completion_rate,
            "pendingTickets": pending_tickets,
            "growthPercent": growth_percent,
        }

    def activity_feed(self, limit: int = 10) -> List[ActivityItem]:
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        activities: List[ActivityItem] = []

        newest_users = sorted(self.dataset.users, key=lambda user: user.created or epoch, reverse=True)
        for user in newest_users[:3]:
            if user.created is None:
                continue
            activities.append(
                ActivityItem(
                    type="user_registered",
                    message=f"{self._user_name(user, 'User')} just registered",
                    timestamp=user.created,
                    time=time_ago(user.created, self.now),
                )
            )

        completions = []
        for session in self._completed_sessions():
            finished = session.datetime_field("completed_at") or session.updated
            if finished is not None:
                completions.append((finished, session))
        completions.sort(key=lambda item: item[0], reverse=True)
        for finished, _ in completions[:2]:
            activities.append(
                ActivityItem(
                    type="program_completed",
                    message="User completed the program",
                    timestamp=finished,
                    time=time_ago(finished, self.now),
                )
            )

        unlocks = []
        for unlock in self.dataset.collection("user_achievements"):
            unlocked_at = unlock.datetime_field("unlocked_at")
            if unlocked_at is not None:
                unlocks.append((unlocked_at, unlock))
        unlocks.sort(key=lambda item: item[0], reverse=True)
        for unlocked_at, unlock in unlocks[:5]:
            user = unlock.related("user")
            achievement = self._achievement_for(unlock)
            user_name = str(user.get("name") or "User") if user else "User"
            title = str(achievement.get("title") or "Achievement") if achievement else "Achievement"
            activities.append(
                ActivityItem(
                    type="achievement_unlocked",
                    message=f'{user_name} unlocked "{title}"',
                    timestamp=unlocked_at,
                    time=time_ago(unlocked_at, self.now),
                )
            )

        activities.sort(key=lambda item: item.timestamp, reverse=True)
        return activities[:limit]

    def user_growth(self, months: int = 6) -> List[SeriesPoint]:
        if months < 1:
            raise ValueError("months must be at least 1")
        users = self.dataset.users
        created_buckets = self.dataset.group_by_month(users, "created", self.now, months)
        active_buckets = dict(self.dataset.group_by_month(users, "lastActive", self.now, months))

        points: List[SeriesPoint] = []
        for start, created in created_buckets:
            active = active_buckets.get(start, [])
            churned = sum(1 for user in active if self._is_churned(user))
            points.append(
                SeriesPoint(
                    label=start.strftime("%b"),
                    values={
                        "newUsers": len(created),
                        "activeUsers": len(active),
                        "churned": churned,
                    },
                )
            )
        return points

    def program_progress(self) -> List[ChartSlice]:
        sessions_by_user = self.dataset.by_user("user_sessions")
        user_ids: List[str] = [user.id for user in self.dataset.users]
        known = set(user_ids)
        user_ids.extend(user_id for user_id in sessions_by_user if user_id not in known)

        counts: Counter = Counter({bucket: 0 for bucket in PROGRESS_BUCKETS})
        for user_id in user_ids:
            session = _latest(sessions_by_user.get(user_id, []))
            counts[self._progress_bucket(session)] += 1

        total = sum(counts.values())
        return [
            ChartSlice(name=bucket, value=counts[bucket], percentage=percent(counts[bucket], total))
            for bucket in PROGRESS_BUCKETS
        ]

    @staticmethod
    def _progress_bucket(session: Optional[CollectionRecord]) -> str:
        if session is None:
            return "Not Started"
        if session.get("status") == "completed":
            return "Completed"
        current_day = _as_int(session.get("current_day"))
        if current_day < 1:
            return "Not Started"
        if current_day <= 3:
            return "Days 1-3"
        if current_day <= 7:
            return "Days 4-7"
        return "Days 8-10"

    # ---------------------------------------------------------------- analytics

    def _range_start(self, date_range: str) -> Optional[datetime]:
        if date_range not in ENGAGEMENT_RANGES:
            raise ValueError(f"Unknown date range: {date_range}")
        if date_range == "week":
            return self.now - timedelta(days=7)
        if date_range == "month":
            return shift_months(self.now, -1)
        return None

    def engagement(self, date_range: str = "month") -> Dict[str, Any]:
        start = self._range_start(date_range)
        sessions = self.dataset.records_between("user_sessions", start, None) if start else list(self.dataset.sessions)
        cravings = self.dataset.records_between("cravings", start, None) if start else list(self.dataset.cravings)
        journal = (
            self.dataset.records_between("journal_entries", start, None)
            if start
            else list(self.dataset.collection("journal_entries"))
        )
        unlocks = (
            self.dataset.records_between("user_achievements", start, None)
            if start
            else list(self.dataset.collection("user_achievements"))
        )
        progress_views = len(
            self.dataset.records_between("session_progress", start, None)
            if start
            else self.dataset.collection("session_progress")
        )

        usage = [
            ("Sessions/Program", len(sessions)),
            ("Craving Logs", len(cravings)),
            ("Journal Entries", len(journal)),
            ("Progress View", progress_views),
        ]
        total_usage = sum(value for _, value in usage)
        feature_usage = [
            ChartSlice(name=name, value=value, percentage=percent(value, total_usage))
            for name, value in usage
            if value > 0
        ]

        session_completion = []
        for day_number in range(1, PROGRAM_DAYS + 1):
            reached = [s for s in sessions if _as_int(s.get("current_day")) >= day_number]
            completed = [
                s
                for s in reached
                if _as_int(s.get("current_day")) > day_number or s.get("status") == "completed"
            ]
            session_completion.append(
                SeriesPoint(
                    label=f"Day {day_number}",
                    values={"completionRate": percent(len(completed), len(reached))},
                )
            )

        trigger_counts = self.dataset.count_by(cravings, "trigger", "other")
        trigger_total = sum(trigger_counts.values())
        triggers = [
            ChartSlice(name=name[:1].upper() + name[1:], value=value, percentage=percent(value, trigger_total))
            for name, value in trigger_counts.items()
        ]

        intensity = [
            SeriesPoint(
                label=str(level),
                values={"count": sum(1 for c in cravings if _as_int(c.get("intensity"), -1) == level)},
            )
            for level in range(1, 6)
        ]

        mood_counts = self.dataset.count_by(journal, "mood", "neutral")
        mood_total = sum(mood_counts.values())
        moods = [
            ChartSlice(name=humanize_label(name), value=value, percentage=percent(value, mood_total))
            for name, value in mood_counts.items()
        ]

        achievement_counts: Counter = Counter()
        for unlock in unlocks:
            achievement = self._achievement_for(unlock)
            if achievement is None:
                continue
            achievement_counts[str(achievement.get("title") or "Unknown")] += 1
        top_achievements = [
            ChartSlice(name=name, value=value)
            for name, value in sorted(achievement_counts.items(), key=lambda item: item[1], reverse=True)[:10]
        ]

        slips = sum(1 for craving in cravings if craving.get("type") == "slip")
        return {
            "dateRange": date_range,
            "featureUsage": feature_usage,
            "sessionCompletion": session_completion,
            "triggers": triggers,
            "intensity": intensity,
            "moods": moods,
            "topAchievements": top_achievements,
            "slipRate": percent(slips, len(cravings)),
        }

    def program_performance(self) -> Dict[str, Any]:
        sessions_by_program: Dict[str, List[CollectionRecord]] = defaultdict(list)
        for session in self.dataset.sessions:
            sessions_by_program[str(session.get("program") or "")].append(session)

        programs = []
        for program in self.dataset.collection("programs"):
            program_sessions = sessions_by_program.get(program.id, [])
            enrolled = len(program_sessions)
            active = sum(1 for s in program_sessions if s.get("status") == "in_progress")
            completed_sessions = [s for s in program_sessions if s.get("status") == "completed"]
            completed = len(completed_sessions)

            total_days = 0
            for session in completed_sessions:
                started = session.datetime_field("started_at")
                finished = session.datetime_field("completed_at")
                if started and finished:
                    total_days += _days_between(finished, started)
            avg_days = js_round(total_days / completed) if completed else 0

            programs.append(
                {
                    "id": program.id,
                    "name": program.get("title", ""),
                    "enrolled": enrolled,
                    "active": active,
                    "completed": completed,
                    "completionRate": percent(completed, enrolled),
                    "avgDays": avg_days,
                    "dropoutRate": percent(enrolled - completed, enrolled),
                }
            )

        progress_by_day: Dict[str, List[CollectionRecord]] = defaultdict(list)
        for progress in self.dataset.collection("session_progress"):
            progress_by_day[str(progress.get("program_day") or "")].append(progress)

        days = []
        for day in self.dataset.collection("program_days"):
            day_progress = progress_by_day.get(day.id, [])
            completed = sum(1 for p in day_progress if p.get("status") == "completed")
            completion_rate = percent(completed, len(day_progress))
            minutes = [value for value in (self._minutes_spent(p) for p in day_progress) if value > 0]
            days.append(
                {
                    "id": day.id,
                    "program": day.get("program"),
                    "day": f"Day {day.get('day_number', '')}",
                    "title": day.get("title", ""),
                    "completionRate": completion_rate,
                    "dropOff": 100 - completion_rate,
                    "timeSpent": js_round(sum(minutes) / len(minutes)) if minutes else 0,
                }
            )

        return {"programs": programs, "days": days}

    @staticmethod
    def _minutes_spent(progress: CollectionRecord) -> float:
        for field in ("time_spent_minutes", "time_spent"):
            value = progress.get(field)
            if value:
                try:
                    return float(value)
                except (TypeError, ValueError):
                    continue
        started = progress.datetime_field("started_at")
        finished = progress.datetime_field("completed_at")
        if started and finished:
            return js_round((finished - started).total_seconds() / 60)
        return 0

    def retention(self, days: int = 90) -> Dict[str, Any]:
        if days not in RANGE_DAYS:
            raise ValueError(f"Unsupported retention range: {days}")
        users = self.dataset.users
        total = len(users)
        days_since = [self._days_since_active(user) for user in users]

        curve = []
        step = max(1, days // 20)
        for offset in range(0, days + 1, step):
            active = sum(1 for value in days_since if value is not None and value <= offset)
            curve.append(SeriesPoint(label=str(offset), values={"days": offset, "retention": percent(active, total)}))

        churned = [user for user in users if self._is_churned(user)]
        sessions_by_user = self.dataset.by_user("user_sessions")
        win_back = []
        for user in churned:
            last_session = _latest(sessions_by_user.get(user.id, []))
            program_day = _as_int(last_session.get("current_day")) if last_session else 0
            if last_session is not None and program_day < 3:
                action = "Send personalized email"
            else:
                action = "Offer incentive"
            win_back.append(
                {
                    "id": user.id,
                    "name": self._user_name(user, ""),
                    "email": user.get("email", ""),
                    "lastActive": self._last_active(user),
                    "daysSinceActive": self._days_since_active(user),
                    "programProgress": program_day,
                    "suggestedAction": action,
                }
            )

        return {
            "days": days,
            "totalUsers": total,
            "churnedUsers": len(churned),
            "churnRate": percent(len(churned), total),
            "curve": curve,
            "winBack": win_back[:20],
            "winBackTotal": len(win_back),
        }

    def user_analytics(self, days: int = 30) -> Dict[str, Any]:
        if days not in RANGE_DAYS:
            raise ValueError(f"Unsupported range: {days}")
        users = self.dataset.users
        dau = self._active_since(self.now - timedelta(days=1))
        wau = self._active_since(self.now - timedelta(days=7))
        mau = self._active_since(shift_months(self.now, -1))

        growth = []
        for offset in range(days - 1, -1, -1):
            moment = self.now - timedelta(days=offset)
            date_key = moment.date()
            new_users = sum(1 for u in users if u.created and u.created.astimezone(timezone.utc).date() == date_key)
            active_users = sum(
                1
                for u in users
                if self._last_active(u) and self._last_active(u).astimezone(timezone.utc).date() == date_key
            )
            total_users = sum(1 for u in users if u.created and u.created <= moment)
            growth.append(
                SeriesPoint(
                    label=f"{moment:%b} {moment.day}",
                    values={"newUsers": new_users, "activeUsers": active_users, "total": total_users},
                )
            )

        cohorts = []
        for offset in range(3, -1, -1):
            cohort_start = month_start(shift_months(self.now, -offset))
            cohort_end = shift_months(cohort_start, 1)
            cohort_users = [u for u in users if u.created and cohort_start <= u.created < cohort_end]
            weeks = {}
            for week in range(1, 5):
                threshold = cohort_start + timedelta(days=7 * week)
                retained = self._active_since(threshold, cohort_users)
                weeks[f"week{week}"] = percent(retained, len(cohort_users))
            cohorts.append({"cohort": f"{cohort_start:%b %Y}", "size": len(cohort_users), **weeks})

        return {
            "days": days,
            "dau": dau,
            "wau": wau,
            "mau": mau,
            "stickiness": percent(dau, mau),
            "growth": growth,
            "cohorts": cohorts,
            "funnel": self._user_funnel(),
        }

    def _user_funnel(self) -> List[FunnelStage]:
        registered_ids = {user.id for user in self.dataset.users}
        registered = len(registered_ids)

        def users_with(records: Iterable[CollectionRecord]) -> Set[str]:
            return {str(record.get("user")) for record in records if record.get("user")}

        profiled = users_with(self.dataset.collection("user_profiles")) & registered_ids
        started = users_with(self.dataset.sessions)
        past_day_one = users_with(
            s
            for s in self.dataset.sessions
            if _as_int(s.get("current_day")) > 1 or s.get("status") == "completed"
        )
        finished = users_with(self._completed_sessions())

        stages = [
            ("Registered", registered),
            ("Completed KYC", len(profiled)),
            ("Started Program", len(started)),
            ("Completed Day 1", len(past_day_one)),
            ("Completed Program", len(finished)),
        ]
        return [FunnelStage(stage=name, value=value, percentage=percent(value, registered)) for name, value in stages]

    # ----------------------------------------------------------------- segments

    def segment_count(self, segment_id: str, reference: Optional[datetime] = None) -> int:
        now = reference or self.now
        users = [u for u in self.dataset.users if reference is None or (u.created and u.created <= now)]
        period = next((s["period_days"] for s in SEGMENTS if s["id"] == segment_id), None)

        if segment_id == "active":
            return self._active_since(now - timedelta(days=period), users)
        if segment_id in ("inactive", "churned"):
            threshold = now - timedelta(days=period)
            return sum(
                1
                for u in users
                if self._last_active(u) is None or self._last_active(u) < threshold
            )
        if segment_id == "new-users":
            threshold = now - timedelta(days=period)
            return sum(1 for u in users if u.created and threshold < u.created <= now)
        if segment_id in ("high-risk", "star-performers"):
            sessions_by_user = self.dataset.by_user("user_sessions")
            cravings_by_user = self.dataset.by_user("cravings")
            count = 0
            for user in users:
                slips = sum(1 for c in cravings_by_user.get(user.id, []) if c.get("type") == "slip")
                completed = sum(1 for s in sessions_by_user.get(user.id, []) if s.get("status") == "completed")
                if segment_id == "high-risk" and slips > 3 and completed < 5:
                    count += 1
                elif segment_id == "star-performers" and completed >= 10 and slips == 0:
                    count += 1
            return count
        raise ValueError(f"Unknown segment: {segment_id}")

    def segments(self) -> List[Dict[str, Any]]:
        result = []
        for segment in SEGMENTS:
            count = self.segment_count(segment["id"])
            trend = None
            if segment["period_days"]:
                previous = self.segment_count(
                    segment["id"], reference=self.now - timedelta(days=segment["period_days"])
                )
                trend = _calc_delta(count, previous)
            result.append(
                {
                    "id": segment["id"],
                    "name": segment["name"],
                    "description": segment["description"],
                    "criteria": segment["criteria"],
                    "isPredefined": True,
                    "userCount": count,
                    "trend": trend,
                }
            )
        return result

    # ----------------------------------------------------------- support & logs

    @staticmethod
    def support_summary(tickets: Sequence[CollectionRecord]) -> Dict[str, Dict[str, int]]:
        statuses = {"all": len(tickets)}
        statuses.update({status: sum(1 for t in tickets if t.get("status") == status) for status in TICKET_STATUSES})
        priorities = {"all": len(tickets)}
        priorities.update(
            {priority: sum(1 for t in tickets if t.get("priority") == priority) for priority in TICKET_PRIORITIES}
        )
        return {"status": statuses, "priority": priorities}

    def achievement_logs(self, logs: Sequence[CollectionRecord], search: Optional[str] = None) -> List[Dict[str, Any]]:
        needle = (search or "").lower()
        rows = []
        for log in logs:
            user = log.related("user")
            achievement = self._achievement_for(log)
            user_name = str(user.get("name", "")) if user else ""
            user_email = str(user.get("email", "")) if user else ""
            title = str(achievement.get("title", "")) if achievement else ""
            if needle and not any(needle in value.lower() for value in (user_name, user_email, title)):
                continue
            manual = log.get("unlock_method") == "manual" or bool(log.get("reason"))
            rows.append(
                {
                    "id": log.id,
                    "userId": user.id if user else log.get("user"),
                    "userName": user_name or "Unknown User",
                    "userEmail": user_email,
                    "achievement": title or "Unknown Achievement",
                    "tier": (achievement.get("tier") if achievement else None) or "bronze",
                    "unlockedAt": log.datetime_field("unlocked_at"),
                    "unlockMethod": "Manual" if manual else "Automatic",
                    "reason": log.get("reason"),
                }
            )
        return rows

    # ------------------------------------------------------------------- users

    def _find_user(self, user_id: str) -> Optional[CollectionRecord]:
        for user in self.dataset.users:
            if user.id == user_id:
                return user
        return None

    def _owner(self, record: CollectionRecord) -> Optional[CollectionRecord]:
        return record.related("user") or self._find_user(str(record.get("user", "")))

    def _user_records(self, collection: str, user_id: str) -> List[CollectionRecord]:
        return list(self.dataset.by_user(collection).get(user_id, ()))

    def progress(self, user_id: str) -> Dict[str, Any]:
        """
        Smoke-free progress for one user.

        Days count whole days from the profile's ``quit_date`` to the start of
        today. Every logged slip is one cigarette smoked and is subtracted
        from ``days * daily_consumption``. Users without a profile or quit
        date get all-zero stats.
        """

        profiles = self._user_records("user_profiles", user_id)
        quit_date = profiles[0].datetime_field("quit_date") if profiles else None
        if quit_date is None:
            return dict(EMPTY_PROGRESS)
        days = max(0, _days_between(day_start(self.now), quit_date))
        smoked = sum(1 for craving in self._user_records("cravings", user_id) if craving.get("type") == "slip")
        not_smoked = max(0, days * _as_int(profiles[0].get("daily_consumption")) - smoked)
        return {
            "daysSmokeFree": days,
            "cigarettesNotSmoked": not_smoked,
            "moneySaved": not_smoked * PRICE_PER_CIGARETTE,
            "lifeRegainedHours": not_smoked * LIFE_MINUTES_PER_CIGARETTE / 60,
            "nicotineNotConsumed": not_smoked * NICOTINE_MG_PER_CIGARETTE,
            "cigarettesSmoked": smoked,
        }

    def achievement_unlocks(self, user_id: str) -> List[CollectionRecord]:
        """Achievements the user qualifies for and has not unlocked yet, easiest first."""

        unlocked_ids: Set[str] = set()
        unlocked_keys: Set[str] = set()
        for unlock in self._user_records("user_achievements", user_id):
            unlocked_ids.add(str(unlock.get("achievement", "")))
            achievement = unlock.related("achievement")
            if achievement is not None and achievement.get("key"):
                unlocked_keys.add(str(achievement.get("key")))

        totals = {
            "days_streak": self.progress(user_id)["daysSmokeFree"],
            "cravings_resisted": sum(
                1 for craving in self._user_records("cravings", user_id) if craving.get("type") == "craving"
            ),
            "sessions_completed": sum(
                1 for day in self._user_records("session_progress", user_id) if day.get("status") == "completed"
            ),
        }
        eligible = []
        achievements = sorted(
            self.dataset.collection("achievements"), key=lambda item: _as_int(item.get("requirement_value"))
        )
        for achievement in achievements:
            if achievement.id in unlocked_ids or str(achievement.get("key", "")) in unlocked_keys:
                continue
            requirement = achievement.get("requirement_type")
            if requirement in totals and totals[requirement] >= _as_int(achievement.get("requirement_value")):
                eligible.append(achievement)
        return eligible

    def user_detail(self, user_id: str) -> Dict[str, Any]:
        user = self._find_user(user_id)
        if user is None:
            raise LookupError(f"User not found: {user_id}")
        profiles = self._user_records("user_profiles", user_id)
        sessions = _newest_first(self._user_records("user_sessions", user_id))
        cravings = _newest_first(self._user_records("cravings", user_id))
        progress = self.progress(user_id)
        return {
            "user": user,
            "profile": profiles[0] if profiles else None,
            "currentSession": sessions[0] if sessions else None,
            "sessions": sessions,
            "cravings": cravings,
            "journalEntries": _newest_first(self._user_records("journal_entries", user_id)),
            "achievements": self.achievement_logs(self._user_records("user_achievements", user_id)),
            "stats": {
                "daysSmokeFree": progress["daysSmokeFree"],
                "totalCravings": len(cravings),
                "cravingsResisted": sum(1 for craving in cravings if craving.get("type") == "craving"),
                "slips": sum(1 for craving in cravings if craving.get("type") == "slip"),
            },
            "progress": progress,
        }

    # ---------------------------------------------------------------- moderation

    def flagged_cravings(self, search: Optional[str] = None) -> List[Dict[str, Any]]:
        """Cravings at intensity 4+ or flagged by an admin, newest first."""

        rows = []
        for craving in _newest_first(self.dataset.cravings):
            intensity = _as_int(craving.get("intensity"))
            flagged = craving.get("flagged") is True
            if intensity < FLAGGED_CRAVING_INTENSITY and not flagged:
                continue
            user = self._owner(craving)
            notes = str(craving.get("notes", ""))
            if not _search_hit(search, user, notes):
                continue
            if intensity >= URGENT_CRAVING_INTENSITY:
                reason = f"High intensity ({intensity}/5) - may need immediate support"
            elif intensity >= FLAGGED_CRAVING_INTENSITY:
                reason = f"High intensity ({intensity}/5) - monitor closely"
            else:
                reason = "Flagged for review"
            rows.append(
                {
                    "id": craving.id,
                    "userId": craving.get("user"),
                    "userName": self._user_name(user, "Unknown User"),
                    "userEmail": str(user.get("email", "")) if user else "",
                    "type": craving.get("type"),
                    "trigger": craving.get("trigger"),
                    "intensity": intensity,
                    "notes": notes,
                    "flagged": flagged,
                    "urgent": intensity >= URGENT_CRAVING_INTENSITY,
                    "reason": reason,
                    "created": craving.created,
                }
            )
        return rows

    def flagged_journals(self, search: Optional[str] = None) -> List[Dict[str, Any]]:
        """Journal entries that mention a concerning keyword or carry the ``flagged`` marker."""

        rows = []
        for entry in _newest_first(self.dataset.collection("journal_entries")):
            content = str(entry.get("content", ""))
            keywords = [keyword for keyword in CONCERNING_KEYWORDS if keyword in content.lower()]
            flagged = entry.get("flagged") is True
            if not keywords and not flagged:
                continue
            user = self._owner(entry)
            if not _search_hit(search, user, content):
                continue
            rows.append(
                {
                    "id": entry.id,
                    "userId": entry.get("user"),
                    "userName": self._user_name(user, "Unknown User"),
                    "userEmail": str(user.get("email", "")) if user else "",
                    "mood": entry.get("mood"),
                    "content": content,
                    "keywords": keywords,
                    "flagged": flagged,
                    "created": entry.created,
                }
            )
        return rows

    # ------------------------------------------------------------------ reports

    def run_report(self, definition: ReportDefinition) -> Dict[str, Any]:
        if definition.data_source not in REPORT_SOURCES:
            raise ValueError(f"Unknown data source: {definition.data_source}")
        allowed = REPORT_METRICS[definition.data_source]
        unknown = [metric for metric in definition.metrics if metric not in allowed]
        if unknown:
            raise ValueError(f"Unsupported metrics for {definition.data_source}: {', '.join(unknown)}")

        records = list(self.dataset.collection(REPORT_SOURCES[definition.data_source]))
        for condition in definition.filters:
            field = condition.get("field")
            if not field:
                continue
            operator = condition.get("operator") or "equals"
            if operator not in REPORT_OPERATORS:
                raise ValueError(f"Unsupported filter operator: {operator}")
            records = [r for r in records if _matches(r, field, operator, condition.get("value"))]

        result: Dict[str, Any] = {
            "name": definition.name,
            "dataSource": definition.data_source,
            "metrics": list(definition.metrics),
            "chartType": definition.chart_type,
            "total": len(records),
        }
        if definition.group_by:
            groups = self.dataset.count_by(records, definition.group_by, "unknown")
            result["groupBy"] = definition.group_by
            result["groups"] = [
                ChartSlice(name=name, value=value, percentage=percent(value, len(records)))
                for name, value in sorted(groups.items(), key=lambda item: item[1], reverse=True)
            ]
        return result


def _field_value(record: CollectionRecord, field: str) -> Any:
    if field == "id":
        return record.id
    if field in ("created", "updated"):
        moment = record.datetime_field(field)
        return moment.isoformat() if moment else None
    return record.get(field)


def _matches(record: CollectionRecord, field: str, operator: str, expected: Any) -> bool:
    actual = _field_value(record, field)
    if operator == "equals":
        return str(actual) == str(expected) if actual is not None else expected in (None, "")
    if operator == "not_equals":
        return str(actual) != str(expected)
    if operator == "contains":
        return actual is not None and str(expected or "").lower() in str(actual).lower()
    try:
        left, right = float(actual), float(expected)
    except (TypeError, ValueError):
        return False
    return left > right if operator == "greater_than" else left < right
