"""
Backoffice analytics helpers.

Turns PocketBase record collections (users, sessions, cravings, tickets and
achievement unlocks) into the aggregates the backoffice dashboards render.
"""

from .dataset import BackofficeDataset  # noqa: F401
from .models import (  # noqa: F401
    ActivityItem,
    ChartSlice,
    CollectionRecord,
    FunnelStage,
    MetricCard,
    ReportDefinition,
    SeriesPoint,
    serialize,
)
from .repository import (  # noqa: F401
    PocketBaseRecordRepository,
    RecordRepository,
    SQLRecordRepository,
    build_repository,
)
from .service import BackofficeAnalyticsService  # noqa: F401
