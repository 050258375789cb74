"""
Logging setup and trace context for intent graph executions.

Modules log through ``logging.getLogger(__name__)`` as usual. The engine and
the node executor store execution_id, graph_id and node_id in a ContextVar,
and both formatters here read it, so every line written while a node runs
says which execution and node it belongs to:

    ExecutionEngine.execute_graph()   sets execution_id, graph_id
        NodeExecutor.execute()        adds node_id (inside the node's task)
            agent invoker logs        carry all three

Use ``configure_logging(format="json")`` in services and the default
human-readable output on a terminal.
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# asyncio copies the context into each new task, so concurrent node tasks
# keep separate node_id values.
trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# Record attributes (passed via ``extra=``) copied into JSON entries
_EXTRA_FIELDS = ("event", "latency_ms", "attempt", "node_id", "agent", "status")

# (context key, prefix label, how much of the value to show)
_PREFIX_FIELDS = (
    ("execution_id", "exec", lambda v: v[-8:]),
    ("graph_id", "graph", str),
    ("node_id", "node", str),
)


def strip_ansi_codes(text: str) -> str:
    return _ANSI.sub("", text)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, trace context, extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **(trace_context.get() or {}),
        }
        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Coloured level, short trace prefix, message."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        labels = [
            f"{label}:{shorten(context[key])}"
            for key, label, shorten in _PREFIX_FIELDS
            if context.get(key)
        ]
        prefix = f"[{' | '.join(labels)}] " if labels else ""

        color = self.LEVEL_COLORS.get(record.levelname, "")
        line = f"{color}[{record.levelname:<8}]{self.RESET} {prefix}{record.getMessage()}"

        event = getattr(record, "event", None)
        if event is not None:
            line += f" [{event}]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Install a single stderr handler on the root logger.

    Args:
        level: Root log level name
        format: "json", "human", or "auto" (JSON when LOG_FORMAT=json or
            ENV=production)
    """
    if format == "auto":
        wants_json = (
            os.getenv("LOG_FORMAT", "").lower() == "json"
            or os.getenv("ENV", "").lower() == "production"
        )
        format = "json" if wants_json else "human"

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if format == "json" else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs every agent request at INFO
    if level.upper() != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)


def set_trace_context(**kwargs: Any) -> None:
    """Merge fields into the current task's trace context."""
    trace_context.set({**(trace_context.get() or {}), **kwargs})


def get_trace_context() -> dict[str, Any]:
    """Copy of the current trace context (empty when unset)."""
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
