from __future__ import annotations

import contextlib
import sqlite3
import threading
import uuid
from collections.abc import Iterator


@contextlib.contextmanager
def transaccion(connection: sqlite3.Connection) -> Iterator[None]:
    """Gestiona transacciones SQLite con soporte de anidamiento vía SAVEPOINT."""
    if connection.in_transaction:
        savepoint_name = f"sp_{uuid.uuid4().hex}"
        connection.execute(f"SAVEPOINT {savepoint_name}")
        try:
            yield
            connection.execute(f"RELEASE SAVEPOINT {savepoint_name}")
        except BaseException:
            connection.execute(f"ROLLBACK TO SAVEPOINT {savepoint_name}")
            connection.execute(f"RELEASE SAVEPOINT {savepoint_name}")
            raise
        return

    connection.execute("BEGIN")
    try:
        yield
        connection.commit()
    except BaseException:
        connection.rollback()
        raise


class SQLiteUnitOfWork:
    """Conexión compartida + RLock: una transacción activa por proceso.

    El hilo que abre la transacción externa la posee hasta el commit; las
    transacciones anidadas del mismo hilo son SAVEPOINTs. Así una mutación de
    UI y su entrada de cola se confirman juntas aunque el coordinador esté
    aplicando un pull en otro hilo.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            with transaccion(self._connection):
                yield self._connection

    @contextlib.contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            yield self._connection

    def close(self) -> None:
        with self._lock:
            self._connection.close()


class RecordLocks:
    """Un ``RLock`` por ``(tabla, id)``: un único escritor por registro."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.RLock] = {}

    def _lock_for(self, table: str, record_id: str) -> threading.RLock:
        key = (table, record_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextlib.contextmanager
    def lock(self, table: str, record_id: str) -> Iterator[None]:
        with self._lock_for(table, record_id):
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
