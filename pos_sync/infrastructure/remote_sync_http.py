from __future__ import annotations

import logging
from typing import Any

import requests

from pos_sync.core.errors import ServerRejected, ValidationError
from pos_sync.core.metrics import measure_time, metrics_registry
from pos_sync.core.observability import get_correlation_id
from pos_sync.domain.sync_protocol import SyncRequest, SyncResponse
from pos_sync.infrastructure.http_errors import classify_http_error, map_requests_exception

logger = logging.getLogger(__name__)

SYNC_ENDPOINT = "/api/sync"


class HttpRemoteSync:
    """Cliente del endpoint de sincronización del servidor autoritativo.

    Push y pull comparten ``POST /api/sync``: el pull es una petición sin
    cambios. Todos los errores de transporte se traducen a la taxonomía de
    ``pos_sync.core.errors``; nada se reintenta aquí, el coordinador decide.
    """

    def __init__(
        self,
        server_url: str,
        api_token: str,
        device_id: str,
        *,
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._url = server_url.rstrip("/") + SYNC_ENDPOINT
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "X-Client-ID": device_id,
            }
        )
        if api_token:
            self._session.headers["Authorization"] = f"Bearer {api_token}"

    @measure_time("remote.push")
    def push(self, request: SyncRequest) -> SyncResponse:
        metrics_registry.increment("remote.push.changes", len(request.changes))
        return self._post(request.to_wire(), operation="push")

    @measure_time("remote.pull")
    def pull(self, since: str | None, cursor: str | None = None) -> SyncResponse:
        request = SyncRequest(last_synced_at=since, changes=(), cursor=cursor)
        return self._post(request.to_wire(), operation="pull")

    def close(self) -> None:
        self._session.close()

    def _post(self, body: dict[str, Any], *, operation: str) -> SyncResponse:
        headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        try:
            response = self._session.post(self._url, json=body, headers=headers, timeout=self._timeout)
        except requests.exceptions.RequestException as exc:
            metrics_registry.increment(f"remote.{operation}.network_errors")
            raise map_requests_exception(exc) from exc

        if not response.ok:
            metrics_registry.increment(f"remote.{operation}.http_{response.status_code}")
            error = classify_http_error(response)
            logger.warning(
                "Respuesta HTTP de error en sincronización",
                extra={"extra": {"operation": operation, "status_code": response.status_code}},
            )
            raise error

        try:
            parsed = SyncResponse.from_wire(response.json())
        except (ValueError, TypeError, ValidationError) as exc:
            raise ServerRejected(f"Respuesta de sincronización no válida: {exc}") from exc
        logger.debug(
            "Respuesta de sincronización recibida",
            extra={
                "extra": {
                    "operation": operation,
                    "changes": len(parsed.changes),
                    "conflicts": len(parsed.conflicts),
                    "has_more": parsed.has_more,
                }
            },
        )
        return parsed
