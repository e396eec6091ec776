from __future__ import annotations

import logging

from pos_sync.core.observability import (
    OperationContext,
    generate_correlation_id,
    get_correlation_id,
    get_cycle_id,
    log_event,
)


def test_operation_context_generates_uuid4_correlation_id() -> None:
    with OperationContext("unit_test") as operation:
        correlation_id = operation.correlation_id
        assert get_correlation_id() == correlation_id

    assert isinstance(correlation_id, str)
    assert len(correlation_id) == 36
    assert correlation_id.count("-") == 4


def test_operation_context_fija_y_restaura_cycle_id() -> None:
    assert get_cycle_id() is None

    with OperationContext("sync_cycle", cycle_id="abc123"):
        assert get_cycle_id() == "abc123"

    assert get_cycle_id() is None
    assert get_correlation_id() is None


def test_log_event_returns_structured_event_dict() -> None:
    logger = logging.getLogger("tests.observability")

    event = log_event(
        logger,
        "sync_cycle_started",
        {"trigger": "manual"},
        "cid-123",
    )

    assert event["event"] == "sync_cycle_started"
    assert event["correlation_id"] == "cid-123"
    assert "timestamp" in event
    assert event["payload"] == {"trigger": "manual"}


def test_log_event_incluye_cycle_id_del_contexto() -> None:
    logger = logging.getLogger("tests.observability")

    with OperationContext("sync_cycle", cycle_id="cycle-9") as operation:
        event = log_event(logger, "sync_cycle_finished", {"status": "success"})

    assert event["cycle_id"] == "cycle-9"
    assert event["correlation_id"] == operation.correlation_id


def test_generate_correlation_id_is_unique() -> None:
    first = generate_correlation_id()
    second = generate_correlation_id()

    assert first != second
