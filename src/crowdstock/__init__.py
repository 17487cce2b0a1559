"""crowdstock - Confidence-tracking engine for crowd-reported availability."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("crowdstock")
except PackageNotFoundError:
    __version__ = "0+local"
from crowdstock.config import EngineConfig, MqttConfig, OverflowPolicy
from crowdstock.engine import AggregationEngine
from crowdstock.exceptions import (
    CrowdStockConfigError,
    CrowdStockError,
    DuplicateSubmission,
    HistoryLogError,
    InvalidEntityKey,
    InvalidReport,
    UnknownEntity,
)
from crowdstock.history import JsonlReportLog, MemoryReportLog, ReportLog
from crowdstock.models import (
    Aggregate,
    AvailabilityStatus,
    EntityKey,
    PublicStatus,
    RecentReport,
    Report,
    ReportStats,
    StatusView,
)
from crowdstock.notifier import PublishResult, Subscription, SubscriptionNotifier, for_entity, for_location
from crowdstock.query import QueryService
from crowdstock.state.events import ChangeEvent
from crowdstock.state.ledger import EntityLedger, LedgerUpdate
from crowdstock.state.policy import decay, reconcile, resolve

__all__ = [
    "__version__",
    "Aggregate",
    "AggregationEngine",
    "AvailabilityStatus",
    "ChangeEvent",
    "CrowdStockConfigError",
    "CrowdStockError",
    "DuplicateSubmission",
    "EngineConfig",
    "EntityKey",
    "EntityLedger",
    "HistoryLogError",
    "InvalidEntityKey",
    "InvalidReport",
    "JsonlReportLog",
    "LedgerUpdate",
    "MemoryReportLog",
    "MqttConfig",
    "OverflowPolicy",
    "PublicStatus",
    "PublishResult",
    "QueryService",
    "RecentReport",
    "Report",
    "ReportLog",
    "ReportStats",
    "StatusView",
    "Subscription",
    "SubscriptionNotifier",
    "UnknownEntity",
    "decay",
    "for_entity",
    "for_location",
    "reconcile",
    "resolve",
]
