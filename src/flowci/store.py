"""
EventLog - durable, append-only event storage keyed by run id.

Storage backends:
- In-memory (for testing)
- File-based JSON lines, one file per run (default)
- SQL database through SQLAlchemy (``sqlite:///...``, postgres, ...)
"""
from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.pool import StaticPool

from .events import Event

DEFAULT_EVENTS_DIR = ".flowci/runs"


class EventLog(ABC):
    """
    Abstract base class for event persistence.

    Implementations must keep events of a run in sequence order and never
    rewrite an appended event.
    """

    @abstractmethod
    def append(self, event: Event) -> None:
        pass

    @abstractmethod
    def read(self, run_id: str, from_offset: int = 0) -> List[Event]:
        pass

    @abstractmethod
    def run_ids(self) -> List[str]:
        pass

    def close(self, run_id: str) -> None:
        """Called once the run's bus is closed."""


class InMemoryEventLog(EventLog):
    """Keeps events in a dict; with ``max_runs`` only the newest closed runs survive."""

    def __init__(self, max_runs: int | None = None) -> None:
        self.max_runs = max_runs
        self._events: Dict[str, List[Event]] = {}
        self._closed: List[str] = []
        self._lock = threading.Lock()

    def append(self, event: Event) -> None:
        with self._lock:
            self._events.setdefault(event.run_id, []).append(event)

    def read(self, run_id: str, from_offset: int = 0) -> List[Event]:
        with self._lock:
            return [e for e in self._events.get(run_id, []) if e.seq >= from_offset]

    def run_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._events)

    def close(self, run_id: str) -> None:
        with self._lock:
            self._closed.append(run_id)
            while self.max_runs is not None and len(self._closed) > self.max_runs:
                self._events.pop(self._closed.pop(0), None)


class FileEventLog(EventLog):
    """One ``<run_id>.jsonl`` file per run under ``root``."""

    def __init__(self, root: str | Path = DEFAULT_EVENTS_DIR):
        self.root = Path(root)
        self._lock = threading.Lock()

    def path_for(self, run_id: str) -> Path:
        return self.root / f"{run_id}.jsonl"

    def append(self, event: Event) -> None:
        line = json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False)
        with self._lock:
            self.root.mkdir(parents=True, exist_ok=True)
            with self.path_for(event.run_id).open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read(self, run_id: str, from_offset: int = 0) -> List[Event]:
        path = self.path_for(run_id)
        if not path.exists():
            return []
        events = []
        with path.open("r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                event = Event.from_dict(json.loads(line))
                if event.seq >= from_offset:
                    events.append(event)
        return events

    def run_ids(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob("*.jsonl"))


# ---------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class EventRow(Base):
    __tablename__ = "events"
    __table_args__ = (sa.UniqueConstraint("run_id", "seq", name="uq_events_run_seq"),)

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    kind: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    step_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    timestamp: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    data: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)


class SqlEventLog(EventLog):
    def __init__(self, url: str = "sqlite://"):
        kwargs: dict = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = sa.create_engine(url, **kwargs)
        Base.metadata.create_all(self.engine)

    def append(self, event: Event) -> None:
        with Session(self.engine) as s, s.begin():
            s.add(
                EventRow(
                    run_id=event.run_id,
                    seq=event.seq,
                    kind=event.kind.value,
                    step_id=event.step_id,
                    timestamp=event.timestamp,
                    data=dict(event.data),
                )
            )

    def read(self, run_id: str, from_offset: int = 0) -> List[Event]:
        q = (
            sa.select(EventRow)
            .where(EventRow.run_id == run_id, EventRow.seq >= from_offset)
            .order_by(EventRow.seq)
        )
        with Session(self.engine) as s:
            rows = s.scalars(q).all()
            return [
                Event.from_dict(
                    {
                        "seq": row.seq,
                        "kind": row.kind,
                        "run_id": row.run_id,
                        "step_id": row.step_id,
                        "timestamp": row.timestamp.isoformat() if row.timestamp else None,
                        "data": row.data,
                    }
                )
                for row in rows
            ]

    def run_ids(self) -> List[str]:
        with Session(self.engine) as s:
            return list(s.scalars(sa.select(EventRow.run_id).distinct().order_by(EventRow.run_id)))
