"""Structured JSON logging and calculation ID context."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

calculation_id_var: ContextVar[str] = ContextVar("calculation_id", default="")

_EXTRA_FIELDS = ("scenario", "event", "fields", "duration_ms", "node_id", "cable_type", "status")


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter with calculation ID injection."""

    def format(self, record: logging.LogRecord) -> str:
        import json

        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        cid = calculation_id_var.get("")
        if cid:
            log_entry["calculation_id"] = cid

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Include extra fields
        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry, default=str)


@contextmanager
def calculation_context(
    scenario: str | None = None,
    calculation_id: str | None = None,
) -> Iterator[str]:
    """Tag every log record of a calculation with an ID and log its duration."""
    cid = calculation_id or str(uuid.uuid4())[:8]
    token = calculation_id_var.set(cid)
    start = time.perf_counter()
    status = "error"
    try:
        yield cid
        status = "ok"
    finally:
        duration_ms = round((time.perf_counter() - start) * 1000, 1)
        logging.getLogger("lvflow.calculation").info(
            "Calculation %s %s (%.1fms)",
            cid,
            status,
            duration_ms,
            extra={"scenario": scenario, "duration_ms": duration_ms, "status": status},
        )
        calculation_id_var.reset(token)


def setup_logging(json_format: bool = False, debug: bool = False) -> None:
    """Configure root logger. Use json_format=True for production."""
    root = logging.getLogger()
    root.setLevel(logging.INFO)

    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    # Remove existing handlers to avoid duplicates
    root.handlers.clear()
    root.addHandler(handler)

    # Diagnostics events are only wanted when debugging
    logging.getLogger("lvflow.diagnostics").setLevel(logging.DEBUG if debug else logging.WARNING)
