from __future__ import annotations

import pytest

from pos_sync.application.conflicts_service import ConflictsService
from pos_sync.application.identity_reconciler import IdentityReconciler
from pos_sync.application.local_mutations import LocalMutationService
from pos_sync.application.sync_status import SyncStatusService


@pytest.fixture
def mutations(uow, store, queue, clock) -> LocalMutationService:
    return LocalMutationService(uow, store, queue, store, clock)


@pytest.fixture
def reconciler(uow, store, queue, identity_map, conflicts_repo, clock) -> IdentityReconciler:
    return IdentityReconciler(uow, store, queue, identity_map, conflicts_repo, clock)


@pytest.fixture
def conflicts_service(uow, store, queue, conflicts_repo, clock) -> ConflictsService:
    return ConflictsService(uow, store, queue, conflicts_repo, store, clock)


@pytest.fixture
def status_service(uow, store, queue, conflicts_repo, checkpoints) -> SyncStatusService:
    return SyncStatusService(uow, store, queue, conflicts_repo, checkpoints, store)
