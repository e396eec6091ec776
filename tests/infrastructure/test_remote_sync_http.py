from __future__ import annotations

import json

import pytest
import requests

from pos_sync.core.errors import AuthenticationRequired, NetworkUnavailable, ServerRejected, SyncConflictError
from pos_sync.core.observability import OperationContext
from pos_sync.domain.sync_models import Operation
from pos_sync.domain.sync_protocol import SyncChange, SyncRequest
from pos_sync.infrastructure.http_errors import classify_http_error, map_requests_exception
from pos_sync.infrastructure.remote_sync_http import HttpRemoteSync


def _response(status_code: int, body: object | None = None, *, text: str | None = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.encoding = "utf-8"
    raw = text if text is not None else json.dumps(body)
    response._content = raw.encode("utf-8")
    return response


class _FakeSession:
    def __init__(self, result: requests.Response | Exception) -> None:
        self.headers: dict[str, str] = {}
        self.result = result
        self.calls: list[dict] = []

    def post(self, url, *, json, headers, timeout):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if isinstance(self.result, Exception):
            raise self.result
        return self.result

    def close(self) -> None:
        pass


def _client(session: _FakeSession) -> HttpRemoteSync:
    return HttpRemoteSync("https://pos.example.com/", "secreto", "device-1", timeout_seconds=7, session=session)


def test_push_envia_cabeceras_y_cuerpo() -> None:
    session = _FakeSession(
        _response(200, {"serverTimestamp": "2026-03-01T10:00:00Z", "results": [{"id": "c-1", "serverId": "srv-1"}]})
    )
    client = _client(session)
    request = SyncRequest(
        last_synced_at="2026-03-01T09:00:00Z",
        changes=(SyncChange("customers", Operation.CREATE, "c-1", {"name": "Ana"}, "2026-03-01T09:30:00Z"),),
    )

    with OperationContext("push") as operation:
        response = client.push(request)

    (call,) = session.calls
    assert call["url"] == "https://pos.example.com/api/sync"
    assert call["timeout"] == 7
    assert call["json"]["changes"][0]["operation"] == "create"
    assert call["headers"]["X-Correlation-ID"] == operation.correlation_id
    assert session.headers["Authorization"] == "Bearer secreto"
    assert session.headers["X-Client-ID"] == "device-1"
    assert response.result_for("c-1").server_id == "srv-1"


def test_pull_es_una_peticion_sin_cambios() -> None:
    session = _FakeSession(_response(200, {"serverTimestamp": "2026-03-01T10:00:00Z", "hasMore": False}))

    _client(session).pull(None, "20")

    assert session.calls[0]["json"] == {"changes": [], "cursor": "20"}


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (500, NetworkUnavailable),
        (503, NetworkUnavailable),
        (429, NetworkUnavailable),
        (408, NetworkUnavailable),
        (401, AuthenticationRequired),
        (403, AuthenticationRequired),
        (409, SyncConflictError),
        (400, ServerRejected),
        (422, ServerRejected),
    ],
)
def test_clasificacion_de_errores_http(status_code: int, expected: type) -> None:
    session = _FakeSession(_response(status_code, {"message": "detalle"}))

    with pytest.raises(expected) as exc_info:
        _client(session).pull(None)

    assert "detalle" in str(exc_info.value)


def test_conflicto_409_conserva_los_conflictos() -> None:
    error = classify_http_error(_response(409, {"conflicts": [{"table": "sales", "id": "s-1"}]}))

    assert isinstance(error, SyncConflictError)
    assert error.conflicts == ({"table": "sales", "id": "s-1"},)


def test_cuerpo_no_json_se_recorta_en_el_mensaje() -> None:
    error = classify_http_error(_response(400, text="x" * 1000))

    assert isinstance(error, ServerRejected)
    assert error.status_code == 400
    assert "x" * 500 in str(error) and "x" * 501 not in str(error)


def test_respuesta_200_ilegible_es_rechazo() -> None:
    with pytest.raises(ServerRejected):
        _client(_FakeSession(_response(200, text="<html>"))).pull(None)
    with pytest.raises(ServerRejected):
        _client(_FakeSession(_response(200, {"changes": []}))).pull(None)


@pytest.mark.parametrize(
    "exc",
    [requests.exceptions.ConnectTimeout("t"), requests.exceptions.ConnectionError("c"), requests.exceptions.ReadTimeout("r")],
)
def test_errores_de_transporte_son_red_no_disponible(exc: Exception) -> None:
    with pytest.raises(NetworkUnavailable):
        _client(_FakeSession(exc)).pull(None)


def test_map_requests_exception_respeta_errores_ya_clasificados() -> None:
    original = AuthenticationRequired("401")

    assert map_requests_exception(original) is original
    assert isinstance(map_requests_exception(ValueError("json")), ServerRejected)
    assert isinstance(map_requests_exception(requests.exceptions.RequestException("x")), NetworkUnavailable)
