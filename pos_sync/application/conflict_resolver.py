from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from pos_sync.domain.payloads import values_equal
from pos_sync.domain.sync_models import ResolutionOutcome
from pos_sync.domain.time_utils import is_not_after

# Marcas de auditoría que ambos lados reescriben en cada guardado; no son cambios de negocio.
VOLATILE_FIELDS = frozenset({"updatedAt"})

_MISSING = object()


class ResolutionRule(str, Enum):
    SERVER_NOT_NEWER = "server_not_newer"
    SERVER_UNCHANGED = "server_unchanged"
    DISJOINT_MERGE = "disjoint_merge"
    OVERLAPPING_FIELDS = "overlapping_fields"
    SERVER_TOMBSTONE = "server_tombstone"
    CLIENT_TOMBSTONE = "client_tombstone"
    BOTH_DELETED = "both_deleted"
    SERVER_DECISION = "server_decision"


@dataclass(frozen=True)
class ClientSnapshot:
    data: Mapping[str, Any]
    base_data: Mapping[str, Any] | None = None
    client_updated_at: str | None = None
    server_synced_at: str | None = None
    deleted: bool = False


@dataclass(frozen=True)
class ServerSnapshot:
    data: Mapping[str, Any]
    server_timestamp: str | None = None
    deleted: bool = False


@dataclass(frozen=True)
class Resolution:
    outcome: ResolutionOutcome
    rule: ResolutionRule
    merged_data: dict[str, Any] | None = None
    field_winners: dict[str, ResolutionOutcome] = field(default_factory=dict)
    conflicting_fields: tuple[str, ...] = ()

    @property
    def is_manual(self) -> bool:
        return self.outcome is ResolutionOutcome.MANUAL


def changed_fields(table: str, base: Mapping[str, Any] | None, current: Mapping[str, Any]) -> set[str]:
    """Campos cuyo valor difiere de la base común (importes comparados exactos)."""
    reference = base or {}
    changed: set[str] = set()
    for name in set(reference) | set(current):
        if name in VOLATILE_FIELDS:
            continue
        before = reference.get(name, _MISSING)
        after = current.get(name, _MISSING)
        if before is _MISSING or after is _MISSING:
            if before is not after:
                changed.add(name)
            continue
        if not values_equal(table, name, before, after):
            changed.add(name)
    return changed


def _same(table: str, name: str, left: Mapping[str, Any], right: Mapping[str, Any]) -> bool:
    left_value = left.get(name, _MISSING)
    right_value = right.get(name, _MISSING)
    if left_value is _MISSING or right_value is _MISSING:
        return left_value is right_value
    return values_equal(table, name, left_value, right_value)


def resolve(table: str, client: ClientSnapshot, server: ServerSnapshot) -> Resolution:
    """Decide cómo conciliar la versión local pendiente con la del servidor.

    Orden de reglas:

    1. El servidor no es más nuevo que la base del cliente (``server_timestamp``
       <= ``server_synced_at``) o no cambió ningún campo: gana el cliente.
    2. Ambos cambiaron campos disjuntos: fusión campo a campo sin conflicto.
    3. Ambos cambiaron algún campo común a valores distintos: ``manual``.

    Los borrados se tratan aparte: borrado en ambos lados gana el servidor;
    borrado del servidor frente a edición local es siempre ``manual``.
    """
    client_data = dict(client.data)
    server_data = dict(server.data)

    if server.deleted and client.deleted:
        return Resolution(ResolutionOutcome.SERVER_WINS, ResolutionRule.BOTH_DELETED, merged_data={})
    if server.deleted:
        return Resolution(
            ResolutionOutcome.MANUAL,
            ResolutionRule.SERVER_TOMBSTONE,
            merged_data=client_data,
            conflicting_fields=tuple(sorted(changed_fields(table, client.base_data, client_data))),
        )

    if is_not_after(server.server_timestamp, client.server_synced_at):
        return Resolution(
            ResolutionOutcome.CLIENT_WINS,
            ResolutionRule.SERVER_NOT_NEWER,
            merged_data=client_data,
            field_winners={name: ResolutionOutcome.CLIENT_WINS for name in client_data},
        )

    server_changed = changed_fields(table, client.base_data, server_data)
    if not server_changed:
        return Resolution(
            ResolutionOutcome.CLIENT_WINS,
            ResolutionRule.SERVER_UNCHANGED,
            merged_data=client_data,
            field_winners={name: ResolutionOutcome.CLIENT_WINS for name in client_data},
        )

    if client.deleted:
        # el servidor editó lo que aquí se borró: el operador decide
        return Resolution(
            ResolutionOutcome.MANUAL,
            ResolutionRule.CLIENT_TOMBSTONE,
            merged_data=server_data,
            conflicting_fields=tuple(sorted(server_changed)),
        )

    client_changed = changed_fields(table, client.base_data, client_data)
    conflicting = sorted(
        name for name in client_changed & server_changed if not _same(table, name, client_data, server_data)
    )
    if conflicting:
        return Resolution(
            ResolutionOutcome.MANUAL,
            ResolutionRule.OVERLAPPING_FIELDS,
            field_winners={name: ResolutionOutcome.MANUAL for name in conflicting},
            conflicting_fields=tuple(conflicting),
        )

    merged = dict(server_data)
    field_winners = {name: ResolutionOutcome.SERVER_WINS for name in server_data}
    for name in client_changed:
        if name in client_data:
            merged[name] = client_data[name]
        else:
            merged.pop(name, None)
        field_winners[name] = ResolutionOutcome.CLIENT_WINS

    nothing_to_push = all(_same(table, name, merged, server_data) for name in set(merged) | set(server_data))
    return Resolution(
        ResolutionOutcome.SERVER_WINS if nothing_to_push else ResolutionOutcome.CLIENT_WINS,
        ResolutionRule.DISJOINT_MERGE,
        merged_data=merged,
        field_winners=field_winners,
    )
