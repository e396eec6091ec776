from __future__ import annotations

import pytest


@pytest.fixture
def qapp():
    """QCoreApplication compartida; los workers sólo necesitan el bucle de señales."""
    qt_core = pytest.importorskip("PySide6.QtCore")
    app = qt_core.QCoreApplication.instance() or qt_core.QCoreApplication([])
    yield app
