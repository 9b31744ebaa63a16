"""Per-message pipeline: bus dispatch plus a best-effort persistence side-channel."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .store import METRICS, CotInsert, PersistenceDropped

_I64_MAX = 2**63 - 1

_DISPATCH_COUNTERS = (
    ("delivered", "tak_bus.delivered"),
    ("dropped_full", "tak_bus.dropped_full"),
    ("dropped_closed", "tak_bus.dropped_closed"),
    ("filtered_groups", "tak_bus.filtered_groups"),
    ("filtered_geo", "tak_bus.filtered_geo"),
)


@dataclass(frozen=True)
class Inbound:
    """One event as handed to the bus for fan-out."""

    payload: bytes
    sender_groups: Any
    cot_type: str
    lat: float
    lon: float
    uid: str | None = None
    callsign: str | None = None


@dataclass(frozen=True)
class PipelineStats:
    """Result of one :func:`dispatch_and_persist` call."""

    dispatch: Any
    persisted: bool


class MissingCotEventError(ValueError):
    """The message carried no ``cot_event`` to dispatch or persist."""

    def __init__(self) -> None:
        super().__init__("pipeline: TakMessage missing cot_event")


def _cot_event(msg: Any) -> Any:
    cot = getattr(msg, "cot_event", None)
    if cot is None:
        raise MissingCotEventError
    return cot


def _inbound(cot: Any, sender_groups: Any, payload: bytes) -> Inbound:
    return Inbound(
        payload=payload,
        sender_groups=sender_groups,
        cot_type=cot.type,
        lat=cot.lat,
        lon=cot.lon,
        uid=cot.uid,
        callsign=None,
    )


def _clamp_i64(value: int) -> int:
    return min(int(value), _I64_MAX)


def dispatch_and_persist(bus: Any, store: Any, msg: Any, sender_groups: Any, payload: bytes) -> PipelineStats:
    """Fan ``msg`` out on ``bus`` and queue it on ``store`` for persistence.

    Persistence never blocks dispatch: a full store queue only sets
    ``persisted`` to False.  Raises :class:`MissingCotEventError` when the
    message has no ``cot_event``.
    """
    cot = _cot_event(msg)
    dispatch_stats = bus.dispatch(_inbound(cot, sender_groups, payload))
    record_dispatch_metrics(dispatch_stats)

    detail = cot.detail.xml_detail if getattr(cot, "detail", None) is not None else ""
    insert = CotInsert(
        uid=cot.uid,
        cot_type=cot.type,
        time_ms=_clamp_i64(cot.send_time),
        start_ms=_clamp_i64(cot.start_time),
        stale_ms=_clamp_i64(cot.stale_time),
        how=cot.how,
        lat=cot.lat,
        lon=cot.lon,
        hae=cot.hae,
        ce=cot.ce,
        le=cot.le,
        detail=detail,
        wire_bytes=payload,
    )
    try:
        store.try_insert_event(insert)
        persisted = True
    except PersistenceDropped:
        persisted = False
    return PipelineStats(dispatch=dispatch_stats, persisted=persisted)


def dispatch_only(bus: Any, msg: Any, sender_groups: Any, payload: bytes) -> Any:
    """Fan ``msg`` out on ``bus`` without persisting it; return the dispatch stats."""
    cot = _cot_event(msg)
    stats = bus.dispatch(_inbound(cot, sender_groups, payload))
    record_dispatch_metrics(stats)
    return stats


def record_dispatch_metrics(stats: Any) -> None:
    """Add the non-zero dispatch outcome counts to the process-wide counters."""
    for attr, name in _DISPATCH_COUNTERS:
        value = getattr(stats, attr, 0)
        if value:
            METRICS.increment(name, int(value))