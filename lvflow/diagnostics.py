"""Structured observability hooks for engine calculations.

Engine components emit named events (``regulation.iteration``,
``forced_mode.distribution``...) with keyword fields. Every event is logged at
DEBUG level with the fields attached as ``extra`` so the JSON formatter of
the application layer can serialize them. A ``Diagnostics`` instance created
with ``record=True`` also keeps the events in memory for inspection, and an
optional sink callable receives each event as it is emitted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiagnosticEvent:
    name: str
    fields: dict[str, Any] = field(default_factory=dict)


class Diagnostics:
    """Event emitter shared by a calculation pass."""

    def __init__(
        self,
        sink: Callable[[DiagnosticEvent], None] | None = None,
        record: bool = False,
    ):
        self._sink = sink
        self._record = record
        self.events: list[DiagnosticEvent] = []

    def emit(self, name: str, **fields: Any) -> None:
        event = DiagnosticEvent(name, dict(fields))
        logger.debug("%s %s", name, fields, extra={"event": name, "fields": fields})
        if self._record:
            self.events.append(event)
        if self._sink is not None:
            self._sink(event)

    def named(self, name: str) -> list[DiagnosticEvent]:
        """Recorded events with the given name, in emission order."""
        return [e for e in self.events if e.name == name]

    def clear(self) -> None:
        self.events.clear()


# Default no-record instance: events still reach the logger.
NULL_DIAGNOSTICS = Diagnostics()
