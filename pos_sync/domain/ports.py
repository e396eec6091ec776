from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Callable, Iterable, Protocol

from pos_sync.domain.models import SyncConfig
from pos_sync.domain.sync_models import (
    Conflict,
    QueueCounts,
    Record,
    SyncCheckpoint,
    SyncQueueEntry,
    SyncStatusCounts,
)
from pos_sync.domain.sync_protocol import SyncRequest, SyncResponse

RecordPredicate = Callable[[Record], bool]


class UnitOfWork(Protocol):
    def transaction(self) -> AbstractContextManager[None]:
        ...


class RecordLockPort(Protocol):
    def lock(self, table: str, record_id: str) -> AbstractContextManager[None]:
        ...


class LocalStorePort(Protocol):
    def get(self, table: str, record_id: str, *, include_deleted: bool = False) -> Record | None:
        ...

    def put(self, table: str, record: Record) -> Record:
        ...

    def bulk_put(self, table: str, records: Iterable[Record]) -> None:
        ...

    def query(
        self,
        table: str,
        predicate: RecordPredicate | None = None,
        *,
        include_deleted: bool = False,
    ) -> list[Record]:
        ...

    def delete(self, table: str, record_id: str) -> bool:
        ...

    def records_mentioning(self, value: str) -> list[Record]:
        ...

    def replace_identity(self, table: str, current_id: str, server_id: str) -> None:
        ...

    def count_by_status(self) -> SyncStatusCounts:
        ...


class SyncQueuePort(Protocol):
    def enqueue(self, entry: SyncQueueEntry) -> SyncQueueEntry | None:
        ...

    def dequeue_batch(self, max_items: int, *, now: str | None = None) -> list[SyncQueueEntry]:
        ...

    def ack(self, entry: SyncQueueEntry) -> bool:
        ...

    def fail(self, entry: SyncQueueEntry, error: str, *, next_retry_at: str | None = None) -> SyncQueueEntry:
        ...

    def reject(self, entry: SyncQueueEntry, error: str) -> SyncQueueEntry:
        ...

    def block(self, entry: SyncQueueEntry, error: str | None = None) -> SyncQueueEntry:
        ...

    def release(self, entry: SyncQueueEntry) -> None:
        ...

    def recover_in_flight(self) -> int:
        ...

    def retry_rejected(self) -> list[SyncQueueEntry]:
        ...

    def force(self, table: str, record_id: str) -> SyncQueueEntry | None:
        ...

    def get(self, entry_id: int) -> SyncQueueEntry | None:
        ...

    def entry_for(self, table: str, record_id: str) -> SyncQueueEntry | None:
        ...

    def entries_mentioning(self, value: str) -> list[SyncQueueEntry]:
        ...

    def update(self, entry: SyncQueueEntry) -> None:
        ...

    def remove_for(self, table: str, record_id: str) -> int:
        ...

    def counts(self) -> QueueCounts:
        ...

    def list_recent(self, limit: int = 20) -> list[SyncQueueEntry]:
        ...


class IdentityMapPort(Protocol):
    def server_id_for(self, table: str, client_id: str) -> str | None:
        ...

    def client_id_for(self, table: str, server_id: str) -> str | None:
        ...

    def record(self, table: str, client_id: str, server_id: str, mapped_at: str) -> None:
        ...


class ConflictRepository(Protocol):
    def save(self, conflict: Conflict) -> Conflict:
        ...

    def get(self, conflict_id: int) -> Conflict | None:
        ...

    def get_for_record(self, table: str, record_id: str) -> Conflict | None:
        ...

    def list_open(self) -> list[Conflict]:
        ...

    def count_open(self) -> int:
        ...

    def delete(self, conflict_id: int) -> None:
        ...

    def rewrite_record_id(self, table: str, old_id: str, new_id: str) -> None:
        ...


class CheckpointStore(Protocol):
    def load(self) -> SyncCheckpoint:
        ...

    def save(self, checkpoint: SyncCheckpoint) -> None:
        ...


class RemoteSyncPort(Protocol):
    def push(self, request: SyncRequest) -> SyncResponse:
        ...

    def pull(self, since: str | None, cursor: str | None = None) -> SyncResponse:
        ...


class ConnectivityProbe(Protocol):
    def is_online(self) -> bool:
        ...


class SyncConfigStorePort(Protocol):
    def load(self) -> SyncConfig | None:
        ...

    def save(self, config: SyncConfig) -> SyncConfig:
        ...
