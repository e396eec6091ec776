from __future__ import annotations

import logging
import traceback
from typing import Callable

from PySide6.QtCore import QObject, Signal, Slot
from PySide6.QtNetwork import QNetworkInformation

from pos_sync.application.sync_coordinator import SyncCoordinator
from pos_sync.domain.sync_models import TriggerEvent, TriggerKind

logger = logging.getLogger(__name__)


class SyncWorker(QObject):
    finished = Signal(object)
    failed = Signal(object)

    def __init__(self, coordinator: SyncCoordinator, trigger: TriggerKind = TriggerKind.MANUAL) -> None:
        super().__init__()
        self._coordinator = coordinator
        self._trigger = trigger

    @Slot()
    def run(self) -> None:
        try:
            report = self._coordinator.handle_trigger(TriggerEvent(self._trigger))
        except Exception as exc:
            logger.exception("Error durante la sincronización")
            self.failed.emit({"error": exc, "details": traceback.format_exc()})
            return
        self.finished.emit(report)


class QtConnectivityMonitor(QObject):
    """Traduce ``QNetworkInformation.reachabilityChanged`` a disparadores."""

    online_changed = Signal(bool)

    def __init__(self, on_online_changed: Callable[[bool], object], parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._callback = on_online_changed
        self._info: QNetworkInformation | None = None

    def start(self) -> bool:
        if not QNetworkInformation.loadDefaultBackend():
            logger.warning("Sin backend de QNetworkInformation: conectividad no monitorizada")
            return False
        self._info = QNetworkInformation.instance()
        if self._info is None:
            return False
        self._info.reachabilityChanged.connect(self._on_reachability_changed)
        self._on_reachability_changed(self._info.reachability())
        return True

    @Slot(QNetworkInformation.Reachability)
    def _on_reachability_changed(self, reachability: QNetworkInformation.Reachability) -> None:
        online = reachability == QNetworkInformation.Reachability.Online
        self.online_changed.emit(online)
        self._callback(online)
