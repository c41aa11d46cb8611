"""PostgreSQL persistence for sources, sync cursors, events, and OAuth tokens."""

from calhub.storage.cursors import SyncCursorStore
from calhub.storage.events import (
    EventReconciler,
    ReconcileOutcome,
    ReconciliationError,
    StoredEvent,
)
from calhub.storage.sources import SourceNotFoundError, SourceRepository
from calhub.storage.tokens import PostgresTokenStore

__all__ = [
    "EventReconciler",
    "PostgresTokenStore",
    "ReconcileOutcome",
    "ReconciliationError",
    "SourceNotFoundError",
    "SourceRepository",
    "StoredEvent",
    "SyncCursorStore",
]
