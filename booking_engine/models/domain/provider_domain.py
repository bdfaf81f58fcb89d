# booking_engine/models/domain/provider_domain.py
"""
Domain models for external calendar connections and sync bookkeeping.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel


class ProviderStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    EXPIRED = "expired"


class CalendarProvider(BaseModel):
    """calendar_providers row. Tokens stay encrypted in this object."""

    id: str
    owner_id: str
    tenant_id: str
    provider: str = "google"
    access_token: bytes
    refresh_token: bytes | None = None
    token_expires_at: datetime | None = None
    provider_email: str | None = None
    calendar_id: str | None = None
    sync_token: str | None = None
    sync_enabled: bool = True
    status: ProviderStatus = ProviderStatus.ACTIVE
    last_synced_at: datetime | None = None

    @property
    def target_calendar_id(self) -> str:
        return self.calendar_id or "primary"

    @property
    def is_syncable(self) -> bool:
        """Providers needing re-auth or switched off are never synced."""
        return self.sync_enabled and self.status in (ProviderStatus.ACTIVE, ProviderStatus.ERROR)


class SyncJobKind(StrEnum):
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    PUSH_EVENT = "push_event"


class SyncJobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class SyncJob:
    """Represents a calendar_sync_jobs row."""

    id: str
    kind: SyncJobKind
    provider_id: str
    event_id: str | None
    status: SyncJobStatus
    attempts: int
    next_run_at: datetime
    last_error: str | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class SyncResult:
    provider_id: str
    success: bool = False
    skipped: bool = False
    full_sync: bool = False
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    events_skipped: int = 0
    error: str | None = None
    recoverable: bool = True
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "provider_id": self.provider_id,
            "success": self.success,
            "skipped": self.skipped,
            "full_sync": self.full_sync,
            "events_created": self.events_created,
            "events_updated": self.events_updated,
            "events_deleted": self.events_deleted,
            "events_skipped": self.events_skipped,
            "error": self.error,
        }
