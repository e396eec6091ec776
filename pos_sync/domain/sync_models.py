from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"
    CONFLICT = "conflict"


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    REJECTED = "rejected"
    CONFLICT = "conflict"


class ResolutionOutcome(str, Enum):
    CLIENT_WINS = "client_wins"
    SERVER_WINS = "server_wins"
    MANUAL = "manual"


class CyclePhase(str, Enum):
    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    RECONCILING = "reconciling"
    BACKOFF = "backoff"


class TriggerKind(str, Enum):
    CONNECTIVITY_ONLINE = "connectivity_online"
    CONNECTIVITY_OFFLINE = "connectivity_offline"
    INTERVAL = "interval"
    MANUAL = "manual"


class CycleStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    BACKOFF = "backoff"
    ABORTED = "aborted"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


ACTIVE_QUEUE_STATUSES = (QueueStatus.PENDING, QueueStatus.FAILED)


@dataclass(frozen=True)
class SyncMetadata:
    sync_status: SyncStatus
    client_id: str
    client_created_at: str
    client_updated_at: str
    server_id: str | None = None
    server_synced_at: str | None = None
    sync_attempts: int = 0
    last_sync_error: str | None = None
    base_data: dict[str, Any] | None = None
    conflict_data: dict[str, Any] | None = None
    version: int = 1
    deleted: bool = False


@dataclass(frozen=True)
class Record:
    """Entidad sincronizable: payload de dominio + metadatos de sync."""

    table: str
    id: str
    data: dict[str, Any]
    meta: SyncMetadata

    @property
    def sync_status(self) -> SyncStatus:
        return self.meta.sync_status

    @property
    def client_id(self) -> str:
        return self.meta.client_id

    @property
    def server_id(self) -> str | None:
        return self.meta.server_id

    def with_meta(self, **changes: Any) -> "Record":
        return replace(self, meta=replace(self.meta, **changes))

    def with_data(self, data: dict[str, Any], **meta_changes: Any) -> "Record":
        return replace(self, data=dict(data), meta=replace(self.meta, **meta_changes))


@dataclass(frozen=True)
class SyncQueueEntry:
    table: str
    operation: Operation
    record_id: str
    payload: dict[str, Any]
    enqueued_at: str
    attempts: int = 0
    last_error: str | None = None
    id: int | None = None
    status: QueueStatus = QueueStatus.PENDING
    max_attempts: int = 8
    next_retry_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_QUEUE_STATUSES


@dataclass(frozen=True)
class Conflict:
    table: str
    record_id: str
    client_data: dict[str, Any]
    server_data: dict[str, Any]
    resolution: ResolutionOutcome
    server_timestamp: str | None = None
    detected_at: str | None = None
    conflicting_fields: tuple[str, ...] = ()
    id: int | None = None


@dataclass(frozen=True)
class SyncCheckpoint:
    """Frontera temporal del último pull confirmado por completo."""

    last_synced_at: str | None = None

    @property
    def is_initial(self) -> bool:
        return self.last_synced_at is None

    def advance(self, server_timestamp: str) -> "SyncCheckpoint":
        return SyncCheckpoint(last_synced_at=server_timestamp)


@dataclass(frozen=True)
class TriggerEvent:
    kind: TriggerKind
    force: bool = False


@dataclass(frozen=True)
class QueueCounts:
    pending: int = 0
    processing: int = 0
    failed: int = 0
    rejected: int = 0
    conflict: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.failed + self.rejected + self.conflict


@dataclass(frozen=True)
class SyncStatusCounts:
    pending: int = 0
    failed: int = 0
    conflict: int = 0
    synced: int = 0

    @property
    def total_unsynced(self) -> int:
        return self.pending + self.failed + self.conflict


@dataclass(frozen=True)
class DetailedSyncStatus:
    records: SyncStatusCounts
    queue: QueueCounts
    recent_items: tuple[SyncQueueEntry, ...]
    last_synced_at: str | None
    is_online: bool
    phase: CyclePhase
    open_conflicts: int

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        payload["recent_items"] = [
            {
                "id": item.id,
                "table": item.table,
                "operation": item.operation.value,
                "record_id": item.record_id,
                "status": item.status.value,
                "attempts": item.attempts,
                "last_error": item.last_error,
                "next_retry_at": item.next_retry_at,
            }
            for item in self.recent_items
        ]
        return payload


@dataclass
class SyncCycleReport:
    cycle_id: str
    trigger: TriggerKind
    started_at: str
    finished_at: str | None = None
    status: CycleStatus = CycleStatus.SUCCESS
    pushed: int = 0
    acked: int = 0
    retry_scheduled: int = 0
    rejected: int = 0
    deferred: int = 0
    conflicts: int = 0
    merged: int = 0
    pulled: int = 0
    pull_applied: int = 0
    pull_failures: int = 0
    checkpoint_before: str | None = None
    checkpoint_after: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def checkpoint_advanced(self) -> bool:
        return self.checkpoint_after is not None and self.checkpoint_after != self.checkpoint_before

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["trigger"] = self.trigger.value
        payload["status"] = self.status.value
        payload["checkpoint_advanced"] = self.checkpoint_advanced
        return payload
