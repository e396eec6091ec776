from __future__ import annotations

import logging
import threading
from typing import Protocol

from pos_sync.core.operational_logging import log_operational_error
from pos_sync.domain.ports import ConnectivityProbe
from pos_sync.domain.sync_models import SyncCycleReport, TriggerEvent, TriggerKind

logger = logging.getLogger(__name__)


class TriggerHandler(Protocol):
    def handle_trigger(self, event: TriggerEvent) -> SyncCycleReport | None:
        ...

    def shutdown(self) -> None:
        ...


class SyncScheduler:
    """Hilo daemon que alimenta al coordinador con disparadores.

    Cada ``interval_seconds`` emite ``INTERVAL``. Si hay sonda, la consulta
    cada ``probe_seconds`` y traduce los cambios en ``CONNECTIVITY_ONLINE`` /
    ``CONNECTIVITY_OFFLINE``.
    """

    def __init__(
        self,
        coordinator: TriggerHandler,
        *,
        interval_seconds: float = 30.0,
        probe: ConnectivityProbe | None = None,
        probe_seconds: float = 5.0,
    ) -> None:
        self._coordinator = coordinator
        self._interval = max(interval_seconds, 0.1)
        self._probe = probe
        self._probe_seconds = max(probe_seconds, 0.1)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._online: bool | None = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="pos-sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Planificador de sincronización iniciado", extra={"extra": {"interval_seconds": self._interval}})

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self._coordinator.shutdown()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
        logger.info("Planificador de sincronización detenido")

    def set_online(self, online: bool) -> SyncCycleReport | None:
        """Entrada de conectividad; sólo las transiciones generan disparador."""
        with self._lock:
            if self._online is online:
                return None
            self._online = online
        kind = TriggerKind.CONNECTIVITY_ONLINE if online else TriggerKind.CONNECTIVITY_OFFLINE
        return self._dispatch(TriggerEvent(kind))

    def tick(self) -> SyncCycleReport | None:
        return self._dispatch(TriggerEvent(TriggerKind.INTERVAL))

    def _loop(self) -> None:
        elapsed = self._interval
        while not self._stop.is_set():
            if self._probe is not None:
                self.set_online(self._probe.is_online())
            if elapsed >= self._interval:
                self.tick()
                elapsed = 0.0
            step = min(self._probe_seconds if self._probe is not None else self._interval, self._interval - elapsed)
            if self._stop.wait(step):
                break
            elapsed += step

    def _dispatch(self, event: TriggerEvent) -> SyncCycleReport | None:
        try:
            return self._coordinator.handle_trigger(event)
        except Exception as exc:  # noqa: BLE001 - el hilo del planificador no debe morir
            log_operational_error(
                "Fallo inesperado atendiendo disparador",
                exc=exc,
                extra={"trigger": event.kind.value},
            )
            return None
