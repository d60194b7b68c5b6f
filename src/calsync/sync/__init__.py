"""Calendar synchronization: classification, retry, journal and scheduling."""

from calsync.sync.engine import CalendarSyncEngine
from calsync.sync.errors import ClassifiedError, ErrorClassifier, ErrorKind, StaticConnectivity
from calsync.sync.provider import CalendarEvent, DateRange
from calsync.sync.scheduler import SyncOptions, SyncParams, SyncState

__all__ = [
    "CalendarEvent",
    "CalendarSyncEngine",
    "ClassifiedError",
    "DateRange",
    "ErrorClassifier",
    "ErrorKind",
    "StaticConnectivity",
    "SyncOptions",
    "SyncParams",
    "SyncState",
]
