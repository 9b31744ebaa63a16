"""Best-effort batched persistence of CoT events.

Producers call :meth:`Store.try_insert_event`, which never blocks: a full
queue drops the event and bumps a counter.  A background writer thread
drains the queue and hands batches to an event sink (normally
:class:`PostgresEventSink`).
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

log = logging.getLogger(__name__)

DEFAULT_INSERT_CAPACITY = 8192
"""Default capacity of the persistence queue."""

DEFAULT_BATCH_MAX = 1000
"""Default maximum rows per flush."""

DEFAULT_FLUSH_INTERVAL = 0.1
"""Default seconds between flushes regardless of fill."""

_DRAIN_POLL = 0.05
_DRAIN_STABLE_FOR = 0.15
_CLOSE = object()


class _Counters:
    """Process-wide named counters, safe to bump from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Counter[str] = Counter()

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._values[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._values[name]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._values)


METRICS = _Counters()
"""Counters for persistence and dispatch outcomes."""


@dataclass(frozen=True)
class CotInsert:
    """One CoT event ready for the ``cot_router`` table.

    Times are milliseconds since the Unix epoch; ``wire_bytes`` holds the
    original framed message so replay can send it back byte for byte.
    """

    uid: str
    cot_type: str
    time_ms: int
    start_ms: int
    stale_ms: int
    how: str
    lat: float
    lon: float
    hae: float
    ce: float
    le: float
    detail: str
    wire_bytes: bytes


class PersistenceDropped(Exception):
    """The persistence queue was full (or closed) and the event was dropped."""


class EventSink(Protocol):
    def write_batch(self, events: Sequence[CotInsert]) -> int: ...

    def recent_wire_bytes(self, window: float) -> list[bytes]: ...


_INSERT_SQL = text(
    "INSERT INTO cot_router "
    "(uid, cot_type, time, start, stale, how, point_hae, point_ce, point_le, "
    "detail, event_pt, wire_bytes) "
    "VALUES ("
    ":uid, :cot_type, "
    "to_timestamp(CAST(:time_ms AS DOUBLE PRECISION) / 1000.0), "
    "to_timestamp(CAST(:start_ms AS DOUBLE PRECISION) / 1000.0), "
    "to_timestamp(CAST(:stale_ms AS DOUBLE PRECISION) / 1000.0), "
    ":how, :hae, :ce, :le, :detail, "
    "ST_SetSRID(ST_MakePoint(:lon, :lat), 4326), "
    ":wire_bytes)"
)

_RECENT_SQL = text(
    "SELECT wire_bytes FROM cot_router "
    "WHERE wire_bytes IS NOT NULL "
    "AND servertime >= now() - make_interval(0, 0, 0, 0, 0, 0, :secs) "
    "ORDER BY servertime ASC"
)


def _normalise_url(url: str) -> str:
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://") :]
    return url


class PostgresEventSink:
    """Writes events to an already-migrated ``cot_router`` table."""

    def __init__(self, engine: Engine | str) -> None:
        if isinstance(engine, str):
            engine = create_engine(_normalise_url(engine), pool_size=8, max_overflow=0)
        self.engine = engine

    def write_batch(self, events: Sequence[CotInsert]) -> int:
        """Insert ``events`` in one transaction and return how many were sent.

        A failing row is logged and the batch continues; a failure to begin
        or commit the transaction propagates.
        """
        if not events:
            return 0
        with self.engine.begin() as conn:
            for ev in events:
                try:
                    conn.execute(
                        _INSERT_SQL,
                        {
                            "uid": ev.uid,
                            "cot_type": ev.cot_type,
                            "time_ms": ev.time_ms,
                            "start_ms": ev.start_ms,
                            "stale_ms": ev.stale_ms,
                            "how": ev.how,
                            "hae": ev.hae,
                            "ce": ev.ce,
                            "le": ev.le,
                            "detail": ev.detail,
                            "lon": ev.lon,
                            "lat": ev.lat,
                            "wire_bytes": bytes(ev.wire_bytes),
                        },
                    )
                except SQLAlchemyError as exc:
                    log.warning("persistence: row insert failed (continuing batch): %s", exc)
        return len(events)

    def recent_wire_bytes(self, window: float) -> list[bytes]:
        """Framed bytes of events stored in the last ``window`` seconds, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(_RECENT_SQL, {"secs": float(window)}).all()
        return [bytes(row[0]) for row in rows]


class Store:
    """Non-blocking event intake backed by a batching writer thread."""

    def __init__(
        self,
        sink: EventSink,
        *,
        channel_capacity: int = DEFAULT_INSERT_CAPACITY,
        batch_max: int = DEFAULT_BATCH_MAX,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
    ) -> None:
        if channel_capacity < 1:
            raise ValueError("channel_capacity must be at least 1")
        if batch_max < 1:
            raise ValueError("batch_max must be at least 1")
        self.sink = sink
        self._queue: queue.Queue[object] = queue.Queue(maxsize=channel_capacity)
        self._batch_max = batch_max
        self._flush_interval = flush_interval
        self._lock = threading.Lock()
        self._inserted = 0
        self._dropped = 0
        self._closed = False
        self._thread: threading.Thread | None = None

    def __enter__(self) -> Store:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self) -> None:
        """Start the background writer; calling it again does nothing."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run_writer, name="tak-store-writer", daemon=True
        )
        self._thread.start()

    def try_insert_event(self, event: CotInsert) -> None:
        """Queue ``event`` for insertion without blocking.

        Raises :class:`PersistenceDropped` when the queue is full or the
        store is closed; the drop is counted first.
        """
        with self._lock:
            if not self._closed:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    pass
            self._dropped += 1
        METRICS.increment("tak.persistence.dropped")
        raise PersistenceDropped

    def inserted_count(self) -> int:
        """Events the writer has committed since start."""
        with self._lock:
            return self._inserted

    def dropped_count(self) -> int:
        """Events refused by :meth:`try_insert_event`."""
        with self._lock:
            return self._dropped

    def recent_wire_bytes(self, window: float) -> list[bytes]:
        """Framed bytes persisted in the last ``window`` seconds, oldest first."""
        return self.sink.recent_wire_bytes(window)

    def wait_for_drain(self, timeout: float) -> int:
        """Wait until the inserted count holds still for 150 ms or ``timeout`` passes.

        Returns the final inserted count.
        """
        deadline = time.monotonic() + timeout
        last = self.inserted_count()
        stable_since = time.monotonic()
        while time.monotonic() < deadline:
            time.sleep(_DRAIN_POLL)
            now = self.inserted_count()
            if now == last:
                if time.monotonic() - stable_since >= _DRAIN_STABLE_FOR:
                    return now
            else:
                last = now
                stable_since = time.monotonic()
        return self.inserted_count()

    def close(self) -> None:
        """Refuse new events, flush what is queued and stop the writer."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._thread is not None:
            self._queue.put(_CLOSE)
            self._thread.join()

    def _flush(self, batch: list[CotInsert]) -> None:
        try:
            self.sink.write_batch(batch)
        except Exception as exc:  # noqa: BLE001 - persistence is best-effort
            log.warning("persistence: batch of %d failed; rows lost: %s", len(batch), exc)
            return
        with self._lock:
            self._inserted += len(batch)
        METRICS.increment("tak.persistence.inserted", len(batch))

    def _run_writer(self) -> None:
        buf: list[CotInsert] = []
        next_flush = time.monotonic() + self._flush_interval
        while True:
            try:
                item = self._queue.get(timeout=max(0.0, next_flush - time.monotonic()))
            except queue.Empty:
                if buf:
                    self._flush(buf)
                    buf = []
                next_flush = time.monotonic() + self._flush_interval
                continue
            while True:
                if item is _CLOSE:
                    if buf:
                        self._flush(buf)
                    return
                buf.append(item)  # type: ignore[arg-type]
                if len(buf) >= self._batch_max:
                    break
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
            if len(buf) >= self._batch_max:
                self._flush(buf)
                buf = []