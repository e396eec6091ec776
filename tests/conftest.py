from __future__ import annotations

import importlib
import os
import platform
import sqlite3
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _is_linux_headless() -> bool:
    if platform.system() != "Linux":
        return False
    return not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY"))


if _is_linux_headless():
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
    os.environ.setdefault("QT_OPENGL", "software")


_UI_BACKEND_ERROR: str | None = None


def _detect_ui_backend_issue() -> str | None:
    try:
        importlib.import_module("PySide6")
        importlib.import_module("PySide6.QtCore")
        importlib.import_module("PySide6.QtNetwork")
        return None
    except Exception as exc:  # pragma: no cover - depende del host de ejecución
        return f"PySide6/Qt no disponible para tests UI: {exc}"


def pytest_configure(config: pytest.Config) -> None:
    global _UI_BACKEND_ERROR
    config.addinivalue_line("markers", "ui: tests de interfaz PySide6")
    _UI_BACKEND_ERROR = _detect_ui_backend_issue()


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    skip_ui = None
    if _UI_BACKEND_ERROR is not None:
        skip_ui = pytest.mark.skip(reason=_UI_BACKEND_ERROR)

    for item in items:
        if "tests/ui/" in item.nodeid:
            item.add_marker(pytest.mark.ui)
        if skip_ui is not None and "ui" in item.keywords:
            item.add_marker(skip_ui)


from pos_sync.core.metrics import metrics_registry
from pos_sync.domain.time_utils import MonotonicClock
from pos_sync.infrastructure.checkpoint_sqlite import SQLiteCheckpointStore
from pos_sync.infrastructure.conflicts_sqlite import SQLiteConflictsRepository
from pos_sync.infrastructure.db import get_connection
from pos_sync.infrastructure.identity_map_sqlite import SQLiteIdentityMap
from pos_sync.infrastructure.local_store_sqlite import SQLiteLocalStore
from pos_sync.infrastructure.migrations import run_migrations
from pos_sync.infrastructure.sqlite_uow import RecordLocks, SQLiteUnitOfWork
from pos_sync.infrastructure.sync_queue_sqlite import SQLiteSyncQueue


class FakeTime:
    """Reloj manual para tests: sólo avanza cuando el test lo pide."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    metrics_registry.reset()


@pytest.fixture
def connection() -> sqlite3.Connection:
    conn = get_connection(":memory:")
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def clock(fake_time: FakeTime) -> MonotonicClock:
    return MonotonicClock(fake_time)


@pytest.fixture
def uow(connection: sqlite3.Connection) -> SQLiteUnitOfWork:
    return SQLiteUnitOfWork(connection)


@pytest.fixture
def store(uow: SQLiteUnitOfWork) -> SQLiteLocalStore:
    return SQLiteLocalStore(uow, RecordLocks())


@pytest.fixture
def queue(uow: SQLiteUnitOfWork) -> SQLiteSyncQueue:
    return SQLiteSyncQueue(uow)


@pytest.fixture
def identity_map(uow: SQLiteUnitOfWork) -> SQLiteIdentityMap:
    return SQLiteIdentityMap(uow)


@pytest.fixture
def conflicts_repo(uow: SQLiteUnitOfWork) -> SQLiteConflictsRepository:
    return SQLiteConflictsRepository(uow)


@pytest.fixture
def checkpoints(uow: SQLiteUnitOfWork) -> SQLiteCheckpointStore:
    return SQLiteCheckpointStore(uow)
