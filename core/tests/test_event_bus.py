"""Tests for the execution event bus and logging setup."""

import asyncio
import json
import logging

import pytest

from intent_router.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    configure_logging,
    set_trace_context,
    strip_ansi_codes,
)
from intent_router.runtime.event_bus import EventBus, EventType, ExecutionEvent


def make_event(event_type=EventType.NODE_COMPLETED, execution_id="exec_1", node_id="a"):
    return ExecutionEvent(type=event_type, execution_id=execution_id, node_id=node_id)


# === PUBLISH / SUBSCRIBE ===


class TestEventBus:
    @pytest.mark.asyncio
    async def test_subscriber_receives_matching_events(self):
        bus = EventBus()
        received: list[ExecutionEvent] = []

        async def handler(event):
            received.append(event)

        bus.subscribe([EventType.NODE_COMPLETED], handler)
        await bus.publish(make_event())
        await bus.publish(make_event(EventType.NODE_FAILED))

        assert [e.type for e in received] == [EventType.NODE_COMPLETED]

    @pytest.mark.asyncio
    async def test_execution_and_node_filters(self):
        bus = EventBus()
        received: list[ExecutionEvent] = []

        async def handler(event):
            received.append(event)

        bus.subscribe(
            [EventType.NODE_COMPLETED], handler, filter_execution="exec_1", filter_node="b"
        )
        await bus.publish(make_event(node_id="a"))
        await bus.publish(make_event(execution_id="exec_2", node_id="b"))
        await bus.publish(make_event(node_id="b"))

        assert len(received) == 1
        assert received[0].node_id == "b"
        assert received[0].execution_id == "exec_1"

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        bus = EventBus()
        received = []

        async def broken(event):
            raise RuntimeError("subscriber bug")

        async def healthy(event):
            received.append(event)

        bus.subscribe([EventType.EXECUTION_STARTED], broken)
        bus.subscribe([EventType.EXECUTION_STARTED], healthy)

        await bus.emit(EventType.EXECUTION_STARTED, "exec_1", graph_id="g")

        assert len(received) == 1
        assert received[0].graph_id == "g"

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        sub_id = bus.subscribe([EventType.NODE_COMPLETED], handler)
        assert bus.unsubscribe(sub_id) is True
        assert bus.unsubscribe(sub_id) is False

        await bus.publish(make_event())
        assert received == []

    @pytest.mark.asyncio
    async def test_history_is_bounded_and_newest_first(self):
        bus = EventBus(max_history=3)
        for node_id in "abcde":
            await bus.publish(make_event(node_id=node_id))

        history = bus.get_history()
        assert [e.node_id for e in history] == ["e", "d", "c"]
        assert [e.node_id for e in bus.get_history(limit=1)] == ["e"]

    @pytest.mark.asyncio
    async def test_history_filters_and_stats(self):
        bus = EventBus()
        await bus.emit(EventType.EXECUTION_STARTED, "exec_1")
        await bus.emit(EventType.NODE_STARTED, "exec_1", node_id="a")
        await bus.emit(EventType.NODE_STARTED, "exec_2", node_id="a")
        await bus.emit_node_retry("exec_2", "a", attempt=1, max_attempts=3, error="boom")

        assert len(bus.get_history(execution_id="exec_2")) == 2
        retry = bus.get_history(event_type=EventType.NODE_RETRY)[0]
        assert retry.data == {"attempt": 1, "max_attempts": 3, "error": "boom"}

        stats = bus.get_stats()
        assert stats["total_events"] == 4
        assert stats["events_by_type"]["node_started"] == 2

    @pytest.mark.asyncio
    async def test_wait_for_event(self):
        bus = EventBus()

        async def publish_later():
            await asyncio.sleep(0.01)
            await bus.emit(EventType.EXECUTION_COMPLETED, "exec_1", output={"ok": True})

        task = asyncio.create_task(publish_later())
        event = await bus.wait_for(EventType.EXECUTION_COMPLETED, execution_id="exec_1", timeout=1)
        await task

        assert event is not None
        assert event.data["output"] == {"ok": True}
        assert bus.get_stats()["subscriptions"] == 0

    @pytest.mark.asyncio
    async def test_wait_for_times_out(self):
        bus = EventBus()
        assert await bus.wait_for(EventType.EXECUTION_COMPLETED, timeout=0.01) is None

    def test_event_to_dict(self):
        data = make_event().to_dict()
        assert data["type"] == "node_completed"
        assert data["node_id"] == "a"
        assert "timestamp" in data


# === LOG FORMATTING ===


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("intent_router.test", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_structured_formatter_includes_trace_context(self):
        set_trace_context(execution_id="exec_42", graph_id="g1")

        line = StructuredFormatter().format(make_record("\033[32mhello\033[0m", event="demo"))
        entry = json.loads(line)

        assert entry["message"] == "hello"
        assert entry["execution_id"] == "exec_42"
        assert entry["graph_id"] == "g1"
        assert entry["event"] == "demo"
        assert entry["level"] == "info"

    def test_human_formatter_prefix(self):
        set_trace_context(execution_id="exec_0123456789", node_id="fetch")

        line = HumanReadableFormatter().format(make_record("working"))

        assert "exec:23456789" in line
        assert "node:fetch" in line
        assert strip_ansi_codes(line).startswith("[INFO    ]")


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    httpx_level = logging.getLogger("httpx").level
    yield root
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    logging.getLogger("httpx").setLevel(httpx_level)


class TestConfigureLogging:
    @pytest.mark.parametrize(
        ("env", "formatter"),
        [
            ({}, HumanReadableFormatter),
            ({"LOG_FORMAT": "json"}, StructuredFormatter),
            ({"ENV": "Production"}, StructuredFormatter),
            ({"LOG_FORMAT": "text", "ENV": "dev"}, HumanReadableFormatter),
        ],
    )
    def test_auto_format_follows_environment(self, root_logger, monkeypatch, env, formatter):
        monkeypatch.delenv("LOG_FORMAT", raising=False)
        monkeypatch.delenv("ENV", raising=False)
        for key, value in env.items():
            monkeypatch.setenv(key, value)

        configure_logging()

        assert len(root_logger.handlers) == 1
        assert type(root_logger.handlers[0].formatter) is formatter
        assert root_logger.level == logging.INFO

    def test_explicit_format_and_level(self, root_logger, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "json")

        configure_logging(level="warning", format="human")

        assert isinstance(root_logger.handlers[0].formatter, HumanReadableFormatter)
        assert root_logger.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_debug_leaves_httpx_logging_alone(self, root_logger):
        logging.getLogger("httpx").setLevel(logging.NOTSET)

        configure_logging(level="DEBUG", format="json")

        assert root_logger.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.NOTSET

    def test_reconfiguring_replaces_handler(self, root_logger):
        configure_logging(format="json")
        configure_logging(format="human")

        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, HumanReadableFormatter)
