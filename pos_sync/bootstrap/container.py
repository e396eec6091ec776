from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Callable

from pos_sync.application.backoff import RetryPolicy
from pos_sync.application.conflicts_service import ConflictsService
from pos_sync.application.identity_reconciler import IdentityReconciler
from pos_sync.application.local_mutations import LocalMutationService
from pos_sync.application.sync_coordinator import CoordinatorSettings, SyncCoordinator
from pos_sync.application.sync_scheduler import SyncScheduler
from pos_sync.application.sync_status import SyncStatusService
from pos_sync.bootstrap.settings import SyncSettings
from pos_sync.domain.ports import ConnectivityProbe, RemoteSyncPort
from pos_sync.domain.time_utils import MonotonicClock
from pos_sync.infrastructure.checkpoint_sqlite import SQLiteCheckpointStore
from pos_sync.infrastructure.conflicts_sqlite import SQLiteConflictsRepository
from pos_sync.infrastructure.connectivity import SocketConnectivityProbe
from pos_sync.infrastructure.db import get_connection
from pos_sync.infrastructure.identity_map_sqlite import SQLiteIdentityMap
from pos_sync.infrastructure.local_store_sqlite import SQLiteLocalStore
from pos_sync.infrastructure.migrations import run_migrations
from pos_sync.infrastructure.remote_sync_http import HttpRemoteSync
from pos_sync.infrastructure.sqlite_uow import RecordLocks, SQLiteUnitOfWork
from pos_sync.infrastructure.sync_queue_sqlite import SQLiteSyncQueue


@dataclass
class AppContainer:
    uow: SQLiteUnitOfWork
    store: SQLiteLocalStore
    queue: SQLiteSyncQueue
    conflicts_repository: SQLiteConflictsRepository
    checkpoints: SQLiteCheckpointStore
    mutations: LocalMutationService
    conflicts_service: ConflictsService
    status_service: SyncStatusService
    coordinator: SyncCoordinator | None = None
    scheduler: SyncScheduler | None = None

    def close(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
        self.uow.close()


ConnectionFactory = Callable[[], sqlite3.Connection]


def build_container(
    settings: SyncSettings,
    *,
    connection_factory: ConnectionFactory | None = None,
    remote: RemoteSyncPort | None = None,
    probe: ConnectivityProbe | None = None,
    clock: MonotonicClock | None = None,
) -> AppContainer:
    """Cablea la app. Sin servidor configurado sólo hay operaciones locales."""
    connection = connection_factory() if connection_factory else get_connection(settings.db_path)
    run_migrations(connection)

    clock = clock or MonotonicClock()
    uow = SQLiteUnitOfWork(connection)
    locks = RecordLocks()
    store = SQLiteLocalStore(uow, locks)
    queue = SQLiteSyncQueue(uow, default_max_attempts=settings.max_attempts)
    identity_map = SQLiteIdentityMap(uow)
    conflicts_repository = SQLiteConflictsRepository(uow)
    checkpoints = SQLiteCheckpointStore(uow)

    mutations = LocalMutationService(uow, store, queue, store, clock, max_attempts=settings.max_attempts)
    conflicts_service = ConflictsService(uow, store, queue, conflicts_repository, store, clock)

    if remote is None and settings.is_configured:
        remote = HttpRemoteSync(
            settings.server_url,
            settings.api_token,
            settings.device_id,
            timeout_seconds=settings.request_timeout_seconds,
        )

    coordinator: SyncCoordinator | None = None
    scheduler: SyncScheduler | None = None
    if remote is not None:
        reconciler = IdentityReconciler(uow, store, queue, identity_map, conflicts_repository, clock)
        coordinator = SyncCoordinator(
            uow,
            store,
            queue,
            store,
            reconciler,
            conflicts_repository,
            checkpoints,
            remote,
            clock,
            CoordinatorSettings(
                batch_size=settings.batch_size,
                max_workers=settings.max_workers,
                call_timeout_seconds=settings.request_timeout_seconds,
                retry_policy=RetryPolicy(
                    base_delay_seconds=settings.base_retry_delay_seconds,
                    max_delay_seconds=settings.max_retry_delay_seconds,
                    max_attempts=settings.max_attempts,
                ),
            ),
        )
        if probe is None and settings.is_configured:
            probe = SocketConnectivityProbe(settings.server_url)
        scheduler = SyncScheduler(
            coordinator,
            interval_seconds=settings.sync_interval_seconds,
            probe=probe,
            probe_seconds=settings.connectivity_check_seconds,
        )

    providers: dict[str, Any] = {}
    if coordinator is not None:
        providers = {
            "phase_provider": lambda: coordinator.phase,
            "online_provider": lambda: coordinator.is_online,
        }
    status_service = SyncStatusService(uow, store, queue, conflicts_repository, checkpoints, store, **providers)

    return AppContainer(
        uow=uow,
        store=store,
        queue=queue,
        conflicts_repository=conflicts_repository,
        checkpoints=checkpoints,
        mutations=mutations,
        conflicts_service=conflicts_service,
        status_service=status_service,
        coordinator=coordinator,
        scheduler=scheduler,
    )
