from __future__ import annotations

import logging
import random
import sqlite3
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, replace
from typing import Callable, Iterable

from pos_sync.application.backoff import CycleBackoff, RetryPolicy
from pos_sync.application.conflict_resolver import ClientSnapshot, Resolution, ResolutionRule, ServerSnapshot, resolve
from pos_sync.application.identity_reconciler import IdentityReconciler
from pos_sync.core.errors import (
    AuthenticationRequired,
    ExternalServiceError,
    IdentityMismatch,
    LocalStorageCorruption,
    NetworkUnavailable,
    PersistenceError,
    ServerRejected,
    SyncCancelledError,
    SyncConflictError,
    ValidationError,
)
from pos_sync.core.metrics import metrics_registry
from pos_sync.core.observability import OperationContext, log_event
from pos_sync.core.operational_logging import log_operational_error
from pos_sync.domain.payloads import PAYLOAD_SCHEMAS, iter_references, parse_payload
from pos_sync.domain.ports import (
    CheckpointStore,
    ConflictRepository,
    LocalStorePort,
    RecordLockPort,
    RemoteSyncPort,
    SyncQueuePort,
    UnitOfWork,
)
from pos_sync.domain.sync_models import (
    Conflict,
    CyclePhase,
    CycleStatus,
    Operation,
    QueueStatus,
    Record,
    ResolutionOutcome,
    SyncCheckpoint,
    SyncCycleReport,
    SyncMetadata,
    SyncQueueEntry,
    SyncStatus,
    TriggerEvent,
    TriggerKind,
)
from pos_sync.domain.sync_protocol import ConflictPayload, ServerChange, SyncChange, SyncRequest, SyncResponse
from pos_sync.domain.time_utils import MonotonicClock, is_not_after, to_iso

logger = logging.getLogger(__name__)

PhaseListener = Callable[[CyclePhase], None]

_FORCEFUL_TRIGGERS = (TriggerKind.MANUAL, TriggerKind.CONNECTIVITY_ONLINE)
_PULL_APPLY_ERRORS = (LocalStorageCorruption, PersistenceError, ValidationError, sqlite3.DatabaseError)


class CancellationToken:
    """Token cooperativo para cancelación de sincronizaciones."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelledError("Sincronización cancelada")


@dataclass(frozen=True)
class CoordinatorSettings:
    batch_size: int = 50
    max_workers: int = 4
    call_timeout_seconds: float = 30.0
    retry_policy: RetryPolicy = RetryPolicy()


@dataclass(frozen=True)
class _PushOutcome:
    entry: SyncQueueEntry
    response: SyncResponse | None = None
    error: Exception | None = None


@dataclass
class _PullOutcome:
    server_timestamp: str | None = None
    failures: int = 0


class SyncCoordinator:
    """Máquina de estados de un solo vuelo: push, pull y reconciliación.

    ``IDLE -> PUSHING -> PULLING -> RECONCILING -> IDLE`` en un ciclo correcto,
    ``-> BACKOFF`` si la red falla. Los disparadores que llegan con un ciclo en
    marcha se funden en un único ciclo de seguimiento.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        store: LocalStorePort,
        queue: SyncQueuePort,
        locks: RecordLockPort,
        reconciler: IdentityReconciler,
        conflicts: ConflictRepository,
        checkpoints: CheckpointStore,
        remote: RemoteSyncPort,
        clock: MonotonicClock,
        settings: CoordinatorSettings | None = None,
        *,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._uow = uow
        self._store = store
        self._queue = queue
        self._locks = locks
        self._reconciler = reconciler
        self._conflicts = conflicts
        self._checkpoints = checkpoints
        self._remote = remote
        self._clock = clock
        self._settings = settings or CoordinatorSettings()
        self._rng = rng
        self._backoff = CycleBackoff(self._settings.retry_policy, rng=rng)
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._follow_up: TriggerEvent | None = None
        self._phase = CyclePhase.IDLE
        self._listeners: list[PhaseListener] = []
        self._online = True
        self._token: CancellationToken | None = None
        self._closed = False
        self._recovered = False

    # ------------------------------------------------------------------ estado

    @property
    def phase(self) -> CyclePhase:
        with self._state_lock:
            phase = self._phase
        if phase is CyclePhase.BACKOFF and not self._backoff.is_active(self._clock.now()):
            self._set_phase(CyclePhase.IDLE)
            return CyclePhase.IDLE
        return phase

    @property
    def is_online(self) -> bool:
        with self._state_lock:
            return self._online

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def backoff(self) -> CycleBackoff:
        return self._backoff

    def add_phase_listener(self, listener: PhaseListener) -> None:
        with self._state_lock:
            self._listeners.append(listener)

    def cancel(self) -> None:
        with self._state_lock:
            token = self._token
        if token is not None:
            token.cancel()

    def shutdown(self) -> None:
        with self._state_lock:
            self._closed = True
        self.cancel()

    # ------------------------------------------------------------ disparadores

    def handle_trigger(self, event: TriggerEvent) -> SyncCycleReport | None:
        if event.kind is TriggerKind.CONNECTIVITY_OFFLINE:
            self._set_online(False)
            return None
        if event.kind is TriggerKind.CONNECTIVITY_ONLINE:
            self._set_online(True)
        elif event.kind is TriggerKind.INTERVAL and not self.is_online:
            logger.debug("Disparo periódico ignorado: sin conexión")
            return None
        return self._run_single_flight(event)

    def request_sync(self) -> SyncCycleReport | None:
        return self.handle_trigger(TriggerEvent(TriggerKind.MANUAL))

    def run_cycle(self, trigger: TriggerKind = TriggerKind.MANUAL) -> SyncCycleReport | None:
        return self._run_single_flight(TriggerEvent(trigger, force=True))

    def _run_single_flight(self, event: TriggerEvent) -> SyncCycleReport | None:
        pending: TriggerEvent | None = event
        last_report: SyncCycleReport | None = None
        while pending is not None:
            current = pending
            with self._state_lock:
                if self._closed:
                    return last_report
                if not self._cycle_lock.acquire(blocking=False):
                    self._merge_follow_up(current)
                    logger.info(
                        "Ciclo en curso: disparo fusionado en seguimiento",
                        extra={"extra": {"trigger": current.kind.value}},
                    )
                    return last_report
            try:
                last_report = self._gated_cycle(current)
            finally:
                with self._state_lock:
                    self._cycle_lock.release()
                    pending = self._follow_up
                    self._follow_up = None
            if last_report.status is CycleStatus.CANCELLED:
                break
        return last_report

    def _merge_follow_up(self, event: TriggerEvent) -> None:
        forceful = event.force or event.kind in _FORCEFUL_TRIGGERS
        current = self._follow_up
        if current is None or (forceful and not (current.force or current.kind in _FORCEFUL_TRIGGERS)):
            self._follow_up = event

    def _gated_cycle(self, event: TriggerEvent) -> SyncCycleReport:
        forceful = event.force or event.kind in _FORCEFUL_TRIGGERS
        now = self._clock.now()
        if not forceful and self._backoff.is_active(now):
            report = self._new_report(event.kind)
            report.status = CycleStatus.SKIPPED
            report.finished_at = report.started_at
            logger.info(
                "Ciclo omitido por backoff",
                extra={"extra": {"remaining_seconds": round(self._backoff.remaining_seconds(now), 3)}},
            )
            return report
        return self._execute_cycle(event.kind)

    # ------------------------------------------------------------------- ciclo

    def _execute_cycle(self, trigger: TriggerKind) -> SyncCycleReport:
        token = CancellationToken()
        with self._state_lock:
            self._token = token
        report = self._new_report(trigger)
        started = time.perf_counter()
        with OperationContext("sync_cycle", cycle_id=report.cycle_id):
            log_event(logger, "sync_cycle_started", {"trigger": trigger.value})
            metrics_registry.increment("sync.cycles")
            try:
                if not self._recovered:
                    self._queue.recover_in_flight()
                    self._recovered = True
                checkpoint = self._checkpoints.load()
                report.checkpoint_before = checkpoint.last_synced_at

                self._set_phase(CyclePhase.PUSHING)
                push_storage_failures = self._push(checkpoint, report, token)
                token.raise_if_cancelled()

                self._set_phase(CyclePhase.PULLING)
                pulled = self._pull(checkpoint, report, token)
                token.raise_if_cancelled()

                self._set_phase(CyclePhase.RECONCILING)
                self._advance_checkpoint(checkpoint, pulled, push_storage_failures, report)
                self._backoff.reset()
                report.status = self._final_status(report)
                self._set_phase(CyclePhase.IDLE)
            except SyncCancelledError:
                report.status = CycleStatus.CANCELLED
                report.errors.append("cancelado")
                self._set_phase(CyclePhase.IDLE)
            except NetworkUnavailable as exc:
                until = self._backoff.record_failure(self._clock.now())
                report.status = CycleStatus.BACKOFF
                report.errors.append(str(exc))
                logger.warning(
                    "Servidor no disponible, ciclo en backoff",
                    extra={"extra": {"error": str(exc), "retry_after": until.isoformat()}},
                )
                self._set_phase(CyclePhase.BACKOFF)
            except AuthenticationRequired as exc:
                report.status = CycleStatus.ABORTED
                report.errors.append(str(exc))
                log_operational_error("Sincronización detenida: autenticación requerida", exc=exc)
                self._set_phase(CyclePhase.IDLE)
            except ExternalServiceError as exc:
                # rechazo o conflicto fuera de un push: sin backoff ni checkpoint
                report.status = CycleStatus.ABORTED
                report.errors.append(str(exc))
                log_operational_error("Ciclo abortado por respuesta del servidor", exc=exc)
                self._set_phase(CyclePhase.IDLE)
            except (IdentityMismatch, PersistenceError, sqlite3.DatabaseError) as exc:
                report.status = CycleStatus.ABORTED
                report.errors.append(str(exc))
                log_operational_error("Ciclo de sincronización abortado", exc=exc)
                self._set_phase(CyclePhase.IDLE)
            finally:
                with self._state_lock:
                    self._token = None
                report.finished_at = self._clock.now_iso()
                metrics_registry.increment(f"sync.cycles.{report.status.value}")
                metrics_registry.record_timing("sync.cycle", (time.perf_counter() - started) * 1000)
                log_event(logger, "sync_cycle_finished", report.to_dict())
        return report

    def _new_report(self, trigger: TriggerKind) -> SyncCycleReport:
        return SyncCycleReport(cycle_id=uuid.uuid4().hex[:12], trigger=trigger, started_at=self._clock.now_iso())

    @staticmethod
    def _final_status(report: SyncCycleReport) -> CycleStatus:
        if report.pull_failures or report.rejected or report.retry_scheduled or report.deferred or report.errors:
            return CycleStatus.PARTIAL
        return CycleStatus.SUCCESS

    # -------------------------------------------------------------------- push

    def _push(self, checkpoint: SyncCheckpoint, report: SyncCycleReport, token: CancellationToken) -> int:
        batch = self._queue.dequeue_batch(self._settings.batch_size, now=self._clock.now_iso())
        if not batch:
            return 0
        storage_failures = 0
        blocked_ids: set[str] = set()
        try:
            for wave in self._plan_waves(batch):
                token.raise_if_cancelled()
                ready = self._refresh_wave(wave, blocked_ids, report)
                changes: dict[int | None, SyncChange] = {}
                for entry in ready:
                    try:
                        changes[entry.id] = self._to_change(entry)
                    except LocalStorageCorruption as exc:
                        storage_failures += 1
                        self._isolate_corrupt_entry(
                            entry, exc, blocked_ids, report, "Registro local corrupto al preparar push"
                        )
                ready = [entry for entry in ready if entry.id in changes]
                if not ready:
                    continue
                outcomes = self._send_wave(checkpoint, ready, changes)
                fatal: Exception | None = None
                for outcome in outcomes:
                    try:
                        fatal = self._apply_push_outcome(outcome, report, blocked_ids) or fatal
                    except LocalStorageCorruption as exc:
                        storage_failures += 1
                        self._isolate_corrupt_entry(
                            outcome.entry, exc, blocked_ids, report, "Registro local corrupto al aplicar push"
                        )
                if fatal is not None:
                    raise fatal
        finally:
            for entry in batch:
                self._queue.release(entry)
        return storage_failures

    def _isolate_corrupt_entry(
        self,
        entry: SyncQueueEntry,
        exc: LocalStorageCorruption,
        blocked_ids: set[str],
        report: SyncCycleReport,
        message: str,
    ) -> None:
        blocked_ids.add(entry.record_id)
        self._queue.release(entry)
        report.errors.append(str(exc))
        metrics_registry.increment("sync.push.corrupt")
        log_operational_error(message, exc=exc, extra={"table": exc.table, "record_id": exc.record_id})

    @staticmethod
    def _plan_waves(batch: list[SyncQueueEntry]) -> list[list[SyncQueueEntry]]:
        """Agrupa en oleadas: una entrada va después de las que referencia."""
        waves: list[list[SyncQueueEntry]] = []
        wave_of: dict[str, int] = {}
        for entry in batch:
            level = 0
            for _path, referenced in iter_references(entry.table, entry.payload):
                if referenced in wave_of and referenced != entry.record_id:
                    level = max(level, wave_of[referenced] + 1)
            wave_of[entry.record_id] = level
            while len(waves) <= level:
                waves.append([])
            waves[level].append(entry)
        return waves

    def _refresh_wave(
        self, wave: list[SyncQueueEntry], blocked_ids: set[str], report: SyncCycleReport
    ) -> list[SyncQueueEntry]:
        # la reconciliación de oleadas anteriores reescribe record_id y payloads
        ready: list[SyncQueueEntry] = []
        for entry in wave:
            fresh = self._queue.get(entry.id) if entry.id is not None else None
            if fresh is None or fresh.status is not QueueStatus.PROCESSING:
                continue
            references = {referenced for _path, referenced in iter_references(fresh.table, fresh.payload)}
            if references & blocked_ids:
                self._queue.release(fresh)
                blocked_ids.add(fresh.record_id)
                report.deferred += 1
                logger.info(
                    "Entrada aplazada: depende de un registro no sincronizado",
                    extra={"extra": {"entry_id": fresh.id, "table": fresh.table}},
                )
                continue
            ready.append(fresh)
        return ready

    def _send_wave(
        self,
        checkpoint: SyncCheckpoint,
        entries: list[SyncQueueEntry],
        changes: dict[int | None, SyncChange],
    ) -> list[_PushOutcome]:
        groups: dict[str, list[SyncQueueEntry]] = {}
        for entry in entries:
            groups.setdefault(entry.table, []).append(entry)

        if len(groups) == 1 or self._settings.max_workers <= 1:
            results = [
                outcome
                for group in groups.values()
                for outcome in self._send_group(checkpoint, group, changes)
            ]
        else:
            results = []
            executor = ThreadPoolExecutor(
                max_workers=min(self._settings.max_workers, len(groups)),
                thread_name_prefix="pos-sync-push",
            )
            try:
                futures = [
                    (group, executor.submit(self._send_group, checkpoint, group, changes))
                    for group in groups.values()
                ]
                timeout = self._settings.call_timeout_seconds * 2
                for group, future in futures:
                    try:
                        results.extend(future.result(timeout=timeout))
                    except FuturesTimeoutError:
                        error = NetworkUnavailable(f"Timeout enviando {group[0].table}")
                        results.extend(_PushOutcome(entry, error=error) for entry in group)
            finally:
                executor.shutdown(wait=False, cancel_futures=True)

        order = {entry.id: index for index, entry in enumerate(entries)}
        return sorted(results, key=lambda outcome: order[outcome.entry.id])

    def _send_group(
        self,
        checkpoint: SyncCheckpoint,
        group: list[SyncQueueEntry],
        changes: dict[int | None, SyncChange],
    ) -> list[_PushOutcome]:
        request = SyncRequest(
            last_synced_at=checkpoint.last_synced_at,
            changes=tuple(changes[entry.id] for entry in group),
        )
        try:
            response = self._remote.push(request)
        except SyncConflictError as exc:
            response = SyncResponse(
                server_timestamp=self._clock.now_iso(),
                conflicts=tuple(self._parse_conflicts(exc.conflicts)),
            )
            return [
                _PushOutcome(entry, response=response)
                if response.conflict_for(entry.table, entry.record_id)
                else _PushOutcome(entry, error=exc)
                for entry in group
            ]
        except ServerRejected as exc:
            if len(group) > 1:
                # aislar la entrada rechazada: reintento individual
                return [outcome for entry in group for outcome in self._send_group(checkpoint, [entry], changes)]
            return [_PushOutcome(group[0], error=exc)]
        except (NetworkUnavailable, AuthenticationRequired) as exc:
            return [_PushOutcome(entry, error=exc) for entry in group]
        return [_PushOutcome(entry, response=response) for entry in group]

    @staticmethod
    def _parse_conflicts(raw_conflicts: Iterable[object]) -> list[ConflictPayload]:
        parsed: list[ConflictPayload] = []
        for raw in raw_conflicts:
            if isinstance(raw, ConflictPayload):
                parsed.append(raw)
                continue
            try:
                parsed.append(ConflictPayload.from_wire(raw))  # type: ignore[arg-type]
            except (ValidationError, TypeError, ValueError) as exc:
                logger.warning("Conflicto del servidor ilegible", extra={"extra": {"error": str(exc)}})
        return parsed

    def _to_change(self, entry: SyncQueueEntry) -> SyncChange:
        record = self._store.get(entry.table, entry.record_id, include_deleted=True)
        timestamp = record.meta.client_updated_at if record is not None else entry.enqueued_at
        return SyncChange(
            table=entry.table,
            operation=entry.operation,
            id=entry.record_id,
            data=dict(entry.payload),
            client_timestamp=timestamp,
        )

    def _apply_push_outcome(
        self, outcome: _PushOutcome, report: SyncCycleReport, blocked_ids: set[str]
    ) -> Exception | None:
        """Aplica el resultado de una entrada. Devuelve el error que debe cortar el ciclo."""
        entry = outcome.entry
        report.pushed += 1
        if outcome.error is not None:
            blocked_ids.add(entry.record_id)
            return self._apply_push_error(entry, outcome.error, report)

        response = outcome.response
        assert response is not None
        conflict = response.conflict_for(entry.table, entry.record_id)
        if conflict is not None:
            self._apply_push_conflict(entry, conflict, response.server_timestamp, report)
            blocked_ids.add(entry.record_id)
            return None

        result = response.result_for(entry.record_id)
        if result is not None and not result.ok:
            blocked_ids.add(entry.record_id)
            error: Exception = (
                NetworkUnavailable(result.error or "error temporal")
                if result.retryable
                else ServerRejected(result.error or "rechazado")
            )
            self._apply_push_error(entry, error, report, cycle_level=False)
            return None

        server_id = self._server_id_for(entry, response)
        self._apply_ack(entry, server_id, response.server_timestamp)
        report.acked += 1
        metrics_registry.increment("sync.push.acked")
        return None

    @staticmethod
    def _server_id_for(entry: SyncQueueEntry, response: SyncResponse) -> str:
        result = response.result_for(entry.record_id)
        if result is not None and result.server_id:
            return result.server_id
        for change in response.changes:
            if change.table == entry.table and change.client_id == entry.record_id:
                return change.id
        # sin acuse explícito el servidor conserva el id enviado
        return entry.record_id

    def _apply_ack(self, entry: SyncQueueEntry, server_id: str, server_timestamp: str) -> None:
        record = self._store.get(entry.table, entry.record_id, include_deleted=True)
        lock_key = record.client_id if record is not None else entry.record_id
        with self._locks.lock(entry.table, lock_key):
            with self._uow.transaction():
                if entry.operation is Operation.CREATE:
                    client_id = record.client_id if record is not None else entry.record_id
                    self._reconciler.reconcile(entry.table, client_id, server_id)
                self._queue.ack(entry)
                current_id = server_id if entry.operation is Operation.CREATE else entry.record_id
                record = self._store.get(entry.table, current_id, include_deleted=True)
                if record is None:
                    return
                remaining = self._queue.entry_for(entry.table, record.id)
                if entry.operation is Operation.DELETE:
                    if remaining is None:
                        self._store.delete(entry.table, record.id)
                    return
                if remaining is None and record.sync_status is not SyncStatus.CONFLICT:
                    self._store.put(
                        entry.table,
                        record.with_meta(
                            sync_status=SyncStatus.SYNCED,
                            server_id=record.server_id or server_id,
                            server_synced_at=server_timestamp,
                            base_data=dict(entry.payload),
                            sync_attempts=0,
                            last_sync_error=None,
                        ),
                    )
                else:
                    # hay una edición local posterior: sigue pendiente
                    self._store.put(
                        entry.table,
                        record.with_meta(
                            server_id=record.server_id or server_id,
                            server_synced_at=server_timestamp,
                            base_data=dict(entry.payload),
                        ),
                    )

    def _apply_push_error(
        self,
        entry: SyncQueueEntry,
        error: Exception,
        report: SyncCycleReport,
        *,
        cycle_level: bool = True,
    ) -> Exception | None:
        if isinstance(error, (AuthenticationRequired, SyncConflictError)):
            # sin intento contado: la entrada vuelve tal cual a la cola
            self._queue.release(entry)
            return error if isinstance(error, AuthenticationRequired) else None

        retryable = isinstance(error, NetworkUnavailable)
        with self._uow.transaction():
            if retryable:
                retry_at = self._settings.retry_policy.next_retry_at(
                    self._clock.now(), entry.attempts + 1, rng=self._rng
                )
                updated = self._queue.fail(entry, str(error), next_retry_at=to_iso(retry_at))
            else:
                updated = self._queue.reject(entry, str(error))
            self._mark_record_failed(entry, updated.attempts, str(error))

        if updated.status is QueueStatus.REJECTED:
            report.rejected += 1
            metrics_registry.increment("sync.push.rejected")
            log_operational_error(
                "Cambio rechazado, fuera de rotación hasta reedición",
                exc=error,
                extra={"table": entry.table, "record_id": entry.record_id, "attempts": updated.attempts},
            )
        else:
            report.retry_scheduled += 1
            metrics_registry.increment("sync.push.retry")
        return error if retryable and cycle_level else None

    def _mark_record_failed(self, entry: SyncQueueEntry, attempts: int, error: str) -> None:
        record = self._store.get(entry.table, entry.record_id, include_deleted=True)
        if record is None or record.sync_status is SyncStatus.CONFLICT:
            return
        self._store.put(
            entry.table,
            record.with_meta(sync_status=SyncStatus.FAILED, sync_attempts=attempts, last_sync_error=error),
        )

    def _apply_push_conflict(
        self,
        entry: SyncQueueEntry,
        conflict: ConflictPayload,
        response_timestamp: str,
        report: SyncCycleReport,
    ) -> None:
        record = self._store.get(entry.table, entry.record_id, include_deleted=True)
        if record is None:
            self._queue.ack(entry)
            return
        server_timestamp = conflict.server_timestamp or response_timestamp
        server_decides = conflict.resolution is ResolutionOutcome.SERVER_WINS
        if server_decides:
            # decisión del servidor: no se fusiona ni se reenvía nada
            resolution = Resolution(outcome=ResolutionOutcome.SERVER_WINS, rule=ResolutionRule.SERVER_DECISION)
        else:
            resolution = resolve(
                entry.table,
                self._client_snapshot(record),
                ServerSnapshot(data=conflict.server_data, server_timestamp=server_timestamp),
            )
        if conflict.resolution is ResolutionOutcome.MANUAL and not resolution.is_manual:
            resolution = replace(resolution, outcome=ResolutionOutcome.MANUAL)
        with self._locks.lock(entry.table, record.client_id):
            with self._uow.transaction():
                self._apply_resolution(
                    record,
                    resolution,
                    server_data=conflict.server_data,
                    server_timestamp=server_timestamp,
                    # el servidor envía serverData vacío para un registro borrado
                    server_deleted=server_decides and not conflict.server_data,
                    in_flight=entry,
                    report=report,
                )

    # -------------------------------------------------------------------- pull

    def _pull(self, checkpoint: SyncCheckpoint, report: SyncCycleReport, token: CancellationToken) -> _PullOutcome:
        outcome = _PullOutcome()
        cursor: str | None = None
        while True:
            token.raise_if_cancelled()
            response = self._remote.pull(checkpoint.last_synced_at, cursor)
            if outcome.server_timestamp is None:
                outcome.server_timestamp = response.server_timestamp
            for change in response.changes:
                report.pulled += 1
                try:
                    self._apply_server_change(change, report)
                except _PULL_APPLY_ERRORS as exc:
                    outcome.failures += 1
                    report.pull_failures += 1
                    metrics_registry.increment("sync.pull.failures")
                    log_operational_error(
                        "No se pudo aplicar un cambio del servidor",
                        exc=exc,
                        extra={"table": change.table, "record_id": change.id},
                    )
                    continue
                report.pull_applied += 1
                metrics_registry.increment("sync.pull.applied")
            if not response.has_more or not response.next_cursor:
                break
            cursor = response.next_cursor
        return outcome

    def _apply_server_change(self, change: ServerChange, report: SyncCycleReport) -> None:
        if change.table not in PAYLOAD_SCHEMAS:
            logger.warning("Cambio de tabla desconocida ignorado", extra={"extra": {"table": change.table}})
            return
        local = self._store.get(change.table, change.id, include_deleted=True)
        if local is None and change.client_id:
            local = self._store.get(change.table, change.client_id, include_deleted=True)
            if local is not None and local.id != change.id:
                # eco de una creación propia cuyo ack no llegó
                self._reconciler.reconcile(change.table, local.client_id, change.id)

        lock_key = local.client_id if local is not None else change.id
        with self._locks.lock(change.table, lock_key):
            with self._uow.transaction():
                local = self._store.get(change.table, change.id, include_deleted=True)
                entry = self._queue.entry_for(change.table, local.id) if local is not None else None
                has_local_mutation = local is not None and (
                    entry is not None or local.sync_status is not SyncStatus.SYNCED
                )
                if not has_local_mutation:
                    self._apply_server_version(change, local)
                    return
                assert local is not None
                if local.sync_status is SyncStatus.CONFLICT:
                    self._refresh_open_conflict(local, change)
                    return
                resolution = resolve(
                    change.table,
                    self._client_snapshot(local),
                    ServerSnapshot(
                        data=change.data,
                        server_timestamp=change.server_timestamp,
                        deleted=change.operation is Operation.DELETE,
                    ),
                )
                self._apply_resolution(
                    local,
                    resolution,
                    server_data=change.data,
                    server_timestamp=change.server_timestamp,
                    server_deleted=change.operation is Operation.DELETE,
                    in_flight=None,
                    report=report,
                )

    def _apply_server_version(self, change: ServerChange, local: Record | None) -> None:
        if change.operation is Operation.DELETE:
            if local is not None:
                self._store.delete(change.table, local.id)
            return
        data = parse_payload(change.table, change.data).data
        self._store.put(
            change.table,
            Record(
                table=change.table,
                id=change.id,
                data=data,
                meta=SyncMetadata(
                    sync_status=SyncStatus.SYNCED,
                    client_id=local.client_id if local is not None else change.id,
                    client_created_at=local.meta.client_created_at if local is not None else change.server_timestamp,
                    client_updated_at=local.meta.client_updated_at if local is not None else change.server_timestamp,
                    server_id=change.id,
                    server_synced_at=change.server_timestamp,
                    base_data=dict(data),
                    version=local.meta.version if local is not None else 1,
                ),
            ),
        )

    def _refresh_open_conflict(self, local: Record, change: ServerChange) -> None:
        conflict = self._conflicts.get_for_record(change.table, local.id)
        if conflict is not None:
            self._conflicts.save(
                replace(conflict, server_data=dict(change.data), server_timestamp=change.server_timestamp)
            )
        self._store.put(change.table, local.with_meta(conflict_data=dict(change.data)))

    # ---------------------------------------------------------- resoluciones

    @staticmethod
    def _client_snapshot(record: Record) -> ClientSnapshot:
        return ClientSnapshot(
            data=record.data,
            base_data=record.meta.base_data,
            client_updated_at=record.meta.client_updated_at,
            server_synced_at=record.meta.server_synced_at,
            deleted=record.meta.deleted,
        )

    def _apply_resolution(
        self,
        local: Record,
        resolution: Resolution,
        *,
        server_data: dict,
        server_timestamp: str,
        server_deleted: bool,
        in_flight: SyncQueueEntry | None,
        report: SyncCycleReport,
    ) -> None:
        table = local.table
        if resolution.outcome is ResolutionOutcome.MANUAL:
            self._store.put(table, local.with_meta(sync_status=SyncStatus.CONFLICT, conflict_data=dict(server_data)))
            self._conflicts.save(
                Conflict(
                    table=table,
                    record_id=local.id,
                    client_data=dict(local.data),
                    server_data=dict(server_data),
                    resolution=ResolutionOutcome.MANUAL,
                    server_timestamp=server_timestamp,
                    detected_at=self._clock.now_iso(),
                    conflicting_fields=resolution.conflicting_fields,
                )
            )
            entry = in_flight or self._queue.entry_for(table, local.id)
            if entry is not None:
                self._queue.block(entry, f"conflicto en {', '.join(resolution.conflicting_fields) or 'registro'}")
            report.conflicts += 1
            metrics_registry.increment("sync.conflicts")
            logger.warning(
                "Conflicto manual registrado",
                extra={
                    "extra": {
                        "table": table,
                        "record_id": local.id,
                        "rule": resolution.rule.value,
                        "fields": list(resolution.conflicting_fields),
                    }
                },
            )
            return

        if resolution.outcome is ResolutionOutcome.SERVER_WINS:
            self._queue.remove_for(table, local.id)
            if server_deleted:
                self._store.delete(table, local.id)
                return
            merged = resolution.merged_data if resolution.merged_data is not None else dict(server_data)
            self._store.put(
                table,
                local.with_data(
                    merged,
                    sync_status=SyncStatus.SYNCED,
                    server_id=local.server_id or local.id,
                    base_data=dict(server_data),
                    server_synced_at=server_timestamp,
                    conflict_data=None,
                    deleted=False,
                    sync_attempts=0,
                    last_sync_error=None,
                ),
            )
            report.merged += 1
            return

        # CLIENT_WINS: se empuja la versión local (fusionada si procede)
        payload = resolution.merged_data if resolution.merged_data is not None else dict(local.data)
        if resolution.merged_data is not None and payload != local.data:
            self._store.put(
                table,
                local.with_data(payload, base_data=dict(server_data), server_synced_at=server_timestamp),
            )
            report.merged += 1
        elif in_flight is not None:
            self._store.put(table, local.with_meta(base_data=dict(server_data), server_synced_at=server_timestamp))
        if in_flight is not None:
            self._queue.fail(replace(in_flight, payload=payload), "reenvío tras conflicto resuelto", next_retry_at=None)
            return
        entry = self._queue.entry_for(table, local.id)
        if entry is not None and entry.operation is not Operation.DELETE and entry.payload != payload:
            self._queue.update(replace(entry, payload=payload))

    # -------------------------------------------------------- reconciliación

    def _advance_checkpoint(
        self,
        checkpoint: SyncCheckpoint,
        pulled: _PullOutcome,
        push_storage_failures: int,
        report: SyncCycleReport,
    ) -> None:
        if pulled.failures or push_storage_failures:
            logger.warning(
                "Checkpoint sin avanzar por fallos parciales",
                extra={"extra": {"pull_failures": pulled.failures, "push_storage_failures": push_storage_failures}},
            )
            report.checkpoint_after = checkpoint.last_synced_at
            return
        if pulled.server_timestamp is None:
            report.checkpoint_after = checkpoint.last_synced_at
            return
        if checkpoint.last_synced_at is not None and is_not_after(pulled.server_timestamp, checkpoint.last_synced_at):
            report.checkpoint_after = checkpoint.last_synced_at
            return
        advanced = checkpoint.advance(pulled.server_timestamp)
        self._checkpoints.save(advanced)
        report.checkpoint_after = advanced.last_synced_at

    # ------------------------------------------------------------- utilidades

    def _set_online(self, online: bool) -> None:
        with self._state_lock:
            changed = self._online != online
            self._online = online
        if changed:
            logger.info("Conectividad cambiada", extra={"extra": {"online": online}})
        if not online:
            self.cancel()

    def _set_phase(self, phase: CyclePhase) -> None:
        with self._state_lock:
            if self._phase is phase:
                return
            self._phase = phase
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(phase)
            except Exception as exc:  # noqa: BLE001 - un listener roto no detiene el ciclo
                log_operational_error("Listener de fase falló", exc=exc, extra={"phase": phase.value})
