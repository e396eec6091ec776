from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest

from pos_sync.application.backoff import RetryPolicy
from pos_sync.application.conflicts_service import ConflictsService
from pos_sync.application.identity_reconciler import IdentityReconciler
from pos_sync.application.local_mutations import LocalMutationService
from pos_sync.application.sync_coordinator import CoordinatorSettings, SyncCoordinator
from pos_sync.application.sync_status import SyncStatusService
from pos_sync.domain.time_utils import MonotonicClock
from pos_sync.infrastructure.checkpoint_sqlite import SQLiteCheckpointStore
from pos_sync.infrastructure.conflicts_sqlite import SQLiteConflictsRepository
from pos_sync.infrastructure.identity_map_sqlite import SQLiteIdentityMap
from pos_sync.infrastructure.local_store_sqlite import SQLiteLocalStore
from pos_sync.infrastructure.sqlite_uow import SQLiteUnitOfWork
from pos_sync.infrastructure.sync_queue_sqlite import SQLiteSyncQueue
from tests.e2e_sync.fakes import FakeRemoteServer


@dataclass
class SyncHarness:
    server: FakeRemoteServer
    coordinator: SyncCoordinator
    mutations: LocalMutationService
    conflicts: ConflictsService
    status: SyncStatusService
    store: SQLiteLocalStore
    queue: SQLiteSyncQueue
    identity_map: SQLiteIdentityMap
    conflicts_repo: SQLiteConflictsRepository
    checkpoints: SQLiteCheckpointStore
    fake_time: Any


@pytest.fixture
def server() -> FakeRemoteServer:
    return FakeRemoteServer()


@pytest.fixture
def harness(
    uow: SQLiteUnitOfWork,
    store: SQLiteLocalStore,
    queue: SQLiteSyncQueue,
    identity_map: SQLiteIdentityMap,
    conflicts_repo: SQLiteConflictsRepository,
    checkpoints: SQLiteCheckpointStore,
    clock: MonotonicClock,
    fake_time: Any,
    server: FakeRemoteServer,
) -> SyncHarness:
    reconciler = IdentityReconciler(uow, store, queue, identity_map, conflicts_repo, clock)
    coordinator = SyncCoordinator(
        uow,
        store,
        queue,
        store,
        reconciler,
        conflicts_repo,
        checkpoints,
        server,
        clock,
        CoordinatorSettings(batch_size=50, max_workers=4, call_timeout_seconds=5.0, retry_policy=RetryPolicy()),
        rng=lambda: 0.0,
    )
    return SyncHarness(
        server=server,
        coordinator=coordinator,
        mutations=LocalMutationService(uow, store, queue, store, clock),
        conflicts=ConflictsService(uow, store, queue, conflicts_repo, store, clock),
        status=SyncStatusService(
            uow,
            store,
            queue,
            conflicts_repo,
            checkpoints,
            store,
            phase_provider=lambda: coordinator.phase,
            online_provider=lambda: coordinator.is_online,
        ),
        store=store,
        queue=queue,
        identity_map=identity_map,
        conflicts_repo=conflicts_repo,
        checkpoints=checkpoints,
        fake_time=fake_time,
    )
