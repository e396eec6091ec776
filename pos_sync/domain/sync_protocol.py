from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pos_sync.core.errors import ValidationError
from pos_sync.domain.sync_models import Operation, ResolutionOutcome


def _require(payload: dict[str, Any], key: str, context: str) -> Any:
    if not isinstance(payload, dict):
        raise ValidationError(f"{context}: se esperaba un objeto JSON")
    value = payload.get(key)
    if value is None:
        raise ValidationError(f"{context}: falta '{key}'")
    return value


def _operation(raw: Any, context: str) -> Operation:
    try:
        return Operation(str(raw))
    except ValueError as exc:
        raise ValidationError(f"{context}: operación desconocida {raw!r}") from exc


@dataclass(frozen=True)
class SyncChange:
    table: str
    operation: Operation
    id: str
    data: dict[str, Any]
    client_timestamp: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "operation": self.operation.value,
            "id": self.id,
            "data": self.data,
            "clientTimestamp": self.client_timestamp,
        }


@dataclass(frozen=True)
class SyncRequest:
    last_synced_at: str | None
    changes: tuple[SyncChange, ...] = ()
    cursor: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"changes": [change.to_wire() for change in self.changes]}
        if self.last_synced_at is not None:
            payload["lastSyncedAt"] = self.last_synced_at
        if self.cursor is not None:
            payload["cursor"] = self.cursor
        return payload


@dataclass(frozen=True)
class ServerChange:
    table: str
    operation: Operation
    id: str
    data: dict[str, Any]
    server_timestamp: str
    client_id: str | None = None

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "ServerChange":
        context = "change"
        data = payload.get("data") if isinstance(payload, dict) else None
        return cls(
            table=str(_require(payload, "table", context)),
            operation=_operation(_require(payload, "operation", context), context),
            id=str(_require(payload, "id", context)),
            data=dict(data) if isinstance(data, dict) else {},
            server_timestamp=str(_require(payload, "serverTimestamp", context)),
            client_id=payload.get("clientId"),
        )


@dataclass(frozen=True)
class ConflictPayload:
    table: str
    id: str
    client_data: dict[str, Any]
    server_data: dict[str, Any]
    resolution: ResolutionOutcome
    server_timestamp: str | None = None

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "ConflictPayload":
        context = "conflict"
        raw_resolution = payload.get("resolution") if isinstance(payload, dict) else None
        try:
            resolution = ResolutionOutcome(str(raw_resolution or ResolutionOutcome.MANUAL.value))
        except ValueError as exc:
            raise ValidationError(f"{context}: resolución desconocida {raw_resolution!r}") from exc
        return cls(
            table=str(_require(payload, "table", context)),
            id=str(_require(payload, "id", context)),
            client_data=dict(payload.get("clientData") or {}),
            server_data=dict(payload.get("serverData") or {}),
            resolution=resolution,
            server_timestamp=payload.get("serverTimestamp"),
        )


@dataclass(frozen=True)
class ChangeResult:
    """Acuse por cambio enviado. ``error`` vacío significa aceptado."""

    id: str
    server_id: str | None = None
    error: str | None = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return not self.error

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "ChangeResult":
        server_id = payload.get("serverId") if isinstance(payload, dict) else None
        return cls(
            id=str(_require(payload, "id", "result")),
            server_id=str(server_id) if server_id is not None else None,
            error=payload.get("error") or None,
            retryable=bool(payload.get("retryable", False)),
        )


@dataclass(frozen=True)
class SyncResponse:
    server_timestamp: str
    changes: tuple[ServerChange, ...] = ()
    conflicts: tuple[ConflictPayload, ...] = ()
    results: tuple[ChangeResult, ...] = ()
    has_more: bool = False
    next_cursor: str | None = None

    def result_for(self, change_id: str) -> ChangeResult | None:
        for result in self.results:
            if result.id == change_id:
                return result
        return None

    def conflict_for(self, table: str, change_id: str) -> ConflictPayload | None:
        for conflict in self.conflicts:
            if conflict.table == table and conflict.id == change_id:
                return conflict
        return None

    @classmethod
    def from_wire(cls, payload: Any) -> "SyncResponse":
        if not isinstance(payload, dict):
            raise ValidationError("response: se esperaba un objeto JSON")
        return cls(
            server_timestamp=str(_require(payload, "serverTimestamp", "response")),
            changes=tuple(ServerChange.from_wire(item) for item in payload.get("changes") or ()),
            conflicts=tuple(ConflictPayload.from_wire(item) for item in payload.get("conflicts") or ()),
            results=tuple(ChangeResult.from_wire(item) for item in payload.get("results") or ()),
            has_more=bool(payload.get("hasMore", False)),
            next_cursor=payload.get("nextCursor"),
        )
