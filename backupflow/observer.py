# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Observer - Progress and error events from shipping and replay.

Components report what they do through an observer callback instead of
writing to a console. The default observer forwards events to structlog.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class FlowEvent:
    """A single progress or error notification."""

    kind: str
    message: str = ""
    key: str | None = None
    state: str | None = None
    position: int | None = None
    error: str | None = None
    data: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


Observer = Callable[[FlowEvent], None]


def logging_observer(event: FlowEvent) -> None:
    """Send events to the structured log."""
    fields = {
        k: v
        for k, v in (
            ("key", event.key),
            ("state", event.state),
            ("position", event.position),
            ("error", event.error),
        )
        if v is not None
    }
    fields.update(event.data)

    if event.error is not None:
        logger.warning(event.kind, message=event.message, **fields)
    else:
        logger.info(event.kind, message=event.message, **fields)


class RecordingObserver:
    """Keeps events in memory; used by the admin API and tests."""

    def __init__(self, max_events: int = 1000, forward: Observer | None = None):
        self.events: List[FlowEvent] = []
        self.max_events = max_events
        self.forward = forward

    def __call__(self, event: FlowEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]
        if self.forward is not None:
            self.forward(event)

    def kinds(self) -> List[str]:
        return [e.kind for e in self.events]


def notify(observer: Observer | None, event: FlowEvent) -> None:
    """
    Deliver an event without letting a faulty observer break the caller.
    """
    if observer is None:
        return
    try:
        observer(event)
    except Exception as e:
        logger.warning("observer_failed", kind=event.kind, error=str(e))
