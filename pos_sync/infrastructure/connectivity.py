from __future__ import annotations

import socket
from urllib.parse import urlsplit


class SocketConnectivityProbe:
    """Comprueba si el servidor de sincronización acepta conexiones TCP."""

    def __init__(self, server_url: str, *, timeout_seconds: float = 3.0) -> None:
        parts = urlsplit(server_url)
        self._host = parts.hostname or ""
        self._port = parts.port or (443 if parts.scheme == "https" else 80)
        self._timeout = timeout_seconds

    def is_online(self) -> bool:
        if not self._host:
            return False
        try:
            socket.create_connection((self._host, self._port), timeout=self._timeout).close()
        except OSError:
            return False
        return True


class StaticConnectivityProbe:
    """Sonda fija controlable desde fuera del planificador."""

    def __init__(self, online: bool = True) -> None:
        self.online = online

    def is_online(self) -> bool:
        return self.online
