from __future__ import annotations

from unittest.mock import Mock

import pytest

pytest.importorskip("PySide6.QtNetwork")

from PySide6.QtNetwork import QNetworkInformation  # noqa: E402

from pos_sync.domain.sync_models import TriggerEvent, TriggerKind  # noqa: E402
from pos_sync.ui.workers.sync_workers import QtConnectivityMonitor, SyncWorker  # noqa: E402


def test_sync_worker_emite_reporte_al_terminar(qapp) -> None:
    coordinator = Mock()
    report = object()
    coordinator.handle_trigger.return_value = report
    worker = SyncWorker(coordinator)
    finished: list[object] = []
    failed: list[object] = []
    worker.finished.connect(finished.append)
    worker.failed.connect(failed.append)

    worker.run()

    coordinator.handle_trigger.assert_called_once_with(TriggerEvent(TriggerKind.MANUAL))
    assert finished == [report]
    assert failed == []


def test_sync_worker_propaga_excepcion_por_senal_failed(qapp) -> None:
    coordinator = Mock()
    coordinator.handle_trigger.side_effect = RuntimeError("boom")
    worker = SyncWorker(coordinator, TriggerKind.CONNECTIVITY_ONLINE)
    finished: list[object] = []
    failed: list[dict] = []
    worker.finished.connect(finished.append)
    worker.failed.connect(failed.append)

    worker.run()

    assert finished == []
    assert isinstance(failed[0]["error"], RuntimeError)
    assert "boom" in failed[0]["details"]
    coordinator.handle_trigger.assert_called_once_with(TriggerEvent(TriggerKind.CONNECTIVITY_ONLINE))


@pytest.mark.parametrize(
    ("reachability", "expected"),
    [
        (QNetworkInformation.Reachability.Online, True),
        (QNetworkInformation.Reachability.Disconnected, False),
        (QNetworkInformation.Reachability.Local, False),
    ],
)
def test_monitor_traduce_alcanzabilidad_a_online(qapp, reachability, expected) -> None:
    received: list[bool] = []
    monitor = QtConnectivityMonitor(received.append)
    emitted: list[bool] = []
    monitor.online_changed.connect(emitted.append)

    monitor._on_reachability_changed(reachability)

    assert received == [expected]
    assert emitted == [expected]
