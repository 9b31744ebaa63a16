from collections import deque
from dataclasses import dataclass, field

import pytest

from takrelay.pipeline import (
    Inbound,
    MissingCotEventError,
    dispatch_and_persist,
    dispatch_only,
    record_dispatch_metrics,
)
from takrelay.store import METRICS, PersistenceDropped, Store


@dataclass
class Detail:
    xml_detail: str = ""


@dataclass
class CotEvent:
    type: str
    uid: str
    send_time: int
    start_time: int
    stale_time: int
    how: str
    lat: float
    lon: float
    hae: float
    ce: float
    le: float
    detail: Detail | None = None


@dataclass
class TakMessage:
    cot_event: CotEvent | None = None


def synthetic_takmessage(uid: str, send_time: int = 1_777_266_000_000) -> TakMessage:
    return TakMessage(
        cot_event=CotEvent(
            type="a-f-G-U-C",
            uid=uid,
            send_time=send_time,
            start_time=1_777_266_000_000,
            stale_time=1_777_266_090_000,
            how="m-g",
            lat=34.0,
            lon=-118.0,
            hae=245.0,
            ce=9.0,
            le=9_999_999.0,
            detail=Detail(xml_detail='<takv platform="ATAK-CIV"/>'),
        )
    )


@dataclass
class DispatchStats:
    delivered: int = 0
    dropped_full: int = 0
    dropped_closed: int = 0
    filtered_groups: int = 0
    filtered_geo: int = 0


@dataclass
class FakeBus:
    subscribers: list = field(default_factory=list)
    seen: list = field(default_factory=list)

    def subscribe(self, mask, capacity=1024):
        q = deque()
        self.subscribers.append((mask, q, capacity))
        return q

    def dispatch(self, inbound):
        self.seen.append(inbound)
        stats = DispatchStats()
        for mask, q, capacity in self.subscribers:
            if not mask & inbound.sender_groups:
                stats.filtered_groups += 1
            elif len(q) >= capacity:
                stats.dropped_full += 1
            else:
                q.append(inbound.payload)
                stats.delivered += 1
        return stats


class RecordingSink:
    def __init__(self):
        self.events = []

    def write_batch(self, events):
        self.events.extend(events)
        return len(events)

    def recent_wire_bytes(self, window):
        return []


class RecordingStore:
    def __init__(self, full=False):
        self.full = full
        self.events = []

    def try_insert_event(self, event):
        if self.full:
            raise PersistenceDropped
        self.events.append(event)


def test_dispatch_and_persist_does_both():
    sink = RecordingSink()
    bus = FakeBus()
    rx = bus.subscribe(0b1)
    with Store(sink) as store:
        stats = dispatch_and_persist(
            bus, store, synthetic_takmessage("VIPER01"), 0b1, b"wire-bytes-go-here"
        )
        assert stats.dispatch.delivered == 1
        assert rx.popleft() == b"wire-bytes-go-here"
        assert stats.persisted
        assert store.wait_for_drain(5.0) == 1
    assert [(e.uid, e.cot_type) for e in sink.events] == [("VIPER01", "a-f-G-U-C")]


def test_dispatch_succeeds_even_when_persistence_drops():
    store = Store(RecordingSink(), channel_capacity=4, batch_max=2, flush_interval=5.0)
    bus = FakeBus()
    rx = bus.subscribe(0b1)
    delivered = persisted_true = persisted_false = 0
    for i in range(30):
        s = dispatch_and_persist(bus, store, synthetic_takmessage(f"UID-{i}"), 0b1, b"x")
        delivered += s.dispatch.delivered
        if s.persisted:
            persisted_true += 1
        else:
            persisted_false += 1
    assert delivered == 30
    assert persisted_false > 0
    assert persisted_true > 0
    assert store.dropped_count() == persisted_false
    assert len(rx) == 30


def test_insert_fields_are_carried_over_and_clamped():
    store = RecordingStore()
    msg = synthetic_takmessage("ALPHA", send_time=2**64 - 1)
    dispatch_and_persist(FakeBus(), store, msg, 0b1, b"\xbf\x00")
    (ev,) = store.events
    assert ev.time_ms == 2**63 - 1
    assert ev.start_ms == 1_777_266_000_000
    assert ev.stale_ms == 1_777_266_090_000
    assert ev.detail == '<takv platform="ATAK-CIV"/>'
    assert ev.wire_bytes == b"\xbf\x00"
    assert (ev.lat, ev.lon, ev.hae, ev.ce, ev.le) == (34.0, -118.0, 245.0, 9.0, 9_999_999.0)


def test_missing_detail_persists_empty_string():
    store = RecordingStore()
    msg = synthetic_takmessage("BRAVO")
    msg.cot_event.detail = None
    dispatch_and_persist(FakeBus(), store, msg, 0b1, b"p")
    assert store.events[0].detail == ""


def test_full_store_reports_not_persisted():
    stats = dispatch_and_persist(FakeBus(), RecordingStore(full=True), synthetic_takmessage("C"), 1, b"p")
    assert stats.persisted is False


def test_inbound_built_from_cot_event():
    bus = FakeBus()
    dispatch_only(bus, synthetic_takmessage("DELTA"), 0b10, b"payload")
    assert bus.seen == [
        Inbound(
            payload=b"payload",
            sender_groups=0b10,
            cot_type="a-f-G-U-C",
            lat=34.0,
            lon=-118.0,
            uid="DELTA",
            callsign=None,
        )
    ]


def test_dispatch_only_respects_groups():
    bus = FakeBus()
    bus.subscribe(0b100)
    stats = dispatch_only(bus, synthetic_takmessage("E"), 0b1, b"p")
    assert (stats.delivered, stats.filtered_groups) == (0, 1)


def test_missing_cot_event_raises():
    bus = FakeBus()
    store = RecordingStore()
    with pytest.raises(MissingCotEventError):
        dispatch_and_persist(bus, store, TakMessage(), 1, b"p")
    with pytest.raises(MissingCotEventError):
        dispatch_only(bus, TakMessage(), 1, b"p")
    assert bus.seen == []
    assert store.events == []


def test_record_dispatch_metrics_adds_counts():
    before = METRICS.snapshot()
    record_dispatch_metrics(DispatchStats(delivered=3, dropped_full=2, filtered_geo=0))
    after = METRICS.snapshot()
    assert after["tak_bus.delivered"] - before.get("tak_bus.delivered", 0) == 3
    assert after["tak_bus.dropped_full"] - before.get("tak_bus.dropped_full", 0) == 2
    assert after.get("tak_bus.filtered_geo", 0) == before.get("tak_bus.filtered_geo", 0)