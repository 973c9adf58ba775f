# events.py
"""
Event/Log bus for a single run.

Components publish structured events; any number of subscribers consume them
as a lazy, blocking iterator that ends when the bus is closed. Every event is
also appended to a durable EventLog, which is the source of truth for
post-hoc inspection.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, TYPE_CHECKING

from .model import utcnow

if TYPE_CHECKING:
    from .store import EventLog

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    RUN_STARTED = "RunStarted"
    STEP_DISPATCHED = "StepDispatched"
    STEP_OUTPUT_CHUNK = "StepOutputChunk"
    STEP_COMPLETED = "StepCompleted"
    RUN_COMPLETED = "RunCompleted"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    run_id: str
    step_id: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)
    # assigned by the bus on publish
    seq: int = -1
    timestamp: datetime | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "kind": self.kind.value,
            "run_id": self.run_id,
            "step_id": self.step_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        ts = data.get("timestamp")
        return cls(
            kind=EventKind(data["kind"]),
            run_id=data["run_id"],
            step_id=data.get("step_id"),
            data=data.get("data") or {},
            seq=int(data["seq"]),
            timestamp=datetime.fromisoformat(ts) if ts else None,
        )


class EventBus:
    """
    Single-writer, multi-reader event channel for one run.

    Sequence numbers are assigned under one lock, so events of a single step
    reach every subscriber in emission order.
    """

    def __init__(self, run_id: str, log: Optional["EventLog"] = None):
        self.run_id = run_id
        self._log = log
        self._events: List[Event] = []
        self._cond = threading.Condition()
        self._closed = False

    @property
    def offset(self) -> int:
        with self._cond:
            return len(self._events)

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def publish(self, event: Event) -> Event:
        with self._cond:
            if self._closed:
                raise RuntimeError(f"event bus for run {self.run_id} is closed")
            event = replace(event, run_id=self.run_id, seq=len(self._events), timestamp=utcnow())
            self._events.append(event)
            if self._log is not None:
                self._log.append(event)
            self._cond.notify_all()
        return event

    def emit(self, kind: EventKind, step_id: str | None = None, **data: Any) -> Event:
        return self.publish(Event(kind=kind, run_id=self.run_id, step_id=step_id, data=data))

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        if self._log is not None:
            self._log.close(self.run_id)

    def history(self, from_offset: int = 0) -> List[Event]:
        with self._cond:
            return list(self._events[from_offset:])

    def subscribe(self, from_offset: int | None = None) -> Iterator[Event]:
        """
        Iterate events from now on (or from ``from_offset`` for replay).

        The starting point is fixed when subscribe() is called, not on the
        first ``next()``.
        """
        with self._cond:
            start = len(self._events) if from_offset is None else max(0, from_offset)
        return self._follow(start)

    def _follow(self, index: int) -> Iterator[Event]:
        while True:
            with self._cond:
                while index >= len(self._events) and not self._closed:
                    self._cond.wait()
                batch = self._events[index:]
                closed = self._closed
            # never yield while holding the lock
            for event in batch:
                yield event
            index += len(batch)
            if closed and not batch:
                return
