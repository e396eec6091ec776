from __future__ import annotations

import json
from typing import Any

import requests

from pos_sync.core.errors import (
    AuthenticationRequired,
    NetworkUnavailable,
    ServerRejected,
    SyncConflictError,
    ValidationError,
)

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})
AUTH_STATUS_CODES = frozenset({401, 403})


def extract_response_status_code(ex: Exception) -> int | None:
    response = getattr(ex, "response", None)
    return getattr(response, "status_code", None)


def _response_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return (response.text or "").strip()[:500]
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return json.dumps(body, ensure_ascii=False)[:500]


def _conflicts_from(response: requests.Response) -> tuple[Any, ...]:
    try:
        body = response.json()
    except ValueError:
        return ()
    if isinstance(body, dict) and isinstance(body.get("conflicts"), list):
        return tuple(body["conflicts"])
    return ()


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def classify_http_error(response: requests.Response) -> Exception:
    status_code = response.status_code
    message = _response_message(response) or f"HTTP {status_code}"
    if is_retryable_status(status_code):
        return NetworkUnavailable(f"Servidor no disponible ({status_code}): {message}")
    if status_code in AUTH_STATUS_CODES:
        return AuthenticationRequired(f"Credenciales no válidas ({status_code}): {message}")
    if status_code == 409:
        return SyncConflictError(f"Conflicto informado por el servidor: {message}", conflicts=_conflicts_from(response))
    return ServerRejected(f"Petición rechazada ({status_code}): {message}", status_code=status_code)


def map_requests_exception(ex: Exception) -> Exception:
    if isinstance(ex, (NetworkUnavailable, AuthenticationRequired, ServerRejected, SyncConflictError)):
        return ex
    if isinstance(ex, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return NetworkUnavailable(f"Sin conexión con el servidor: {ex}")
    if isinstance(ex, requests.exceptions.HTTPError) and ex.response is not None:
        return classify_http_error(ex.response)
    if isinstance(ex, (ValueError, ValidationError)):
        return ServerRejected(f"Respuesta de sincronización no válida: {ex}")
    if isinstance(ex, requests.exceptions.RequestException):
        return NetworkUnavailable(str(ex))
    return ex
