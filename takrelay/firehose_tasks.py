"""Background tasks that run beside the firehose.

:class:`DropWatch` and :func:`run_subscription_dropwatch` report which
subscribers lose frames under load.  :func:`run_plugin_replay` feeds frames
produced by plugins back through the dispatch pipeline after checking them
again.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable
from typing import Any

from .firehose import ALL_GROUPS, FrameError, PersistMode, split_frame
from .pipeline import MissingCotEventError, dispatch_and_persist, dispatch_only

log = logging.getLogger(__name__)


class DropWatch:
    """Turns cumulative per-subscription counters into per-window deltas.

    Each :meth:`tick` compares against the previous one, so the numbers
    cover the recent window rather than the whole process lifetime.
    """

    def __init__(self, top_n: int) -> None:
        self.top_n = top_n
        self._last: dict[Any, tuple[int, int]] = {}

    def tick(self, stats: Iterable[Any]) -> dict[str, Any]:
        """Fold one snapshot of ``(id, delivered, dropped_full)`` entries into a summary.

        Returns a dict with ``subs_total``, ``subs_dropping``,
        ``window_delivered``, ``window_dropped``, ``delivery_pct`` (text with
        two decimals) and ``top``: up to ``top_n`` descriptions of the
        subscriptions that dropped the most in this window.
        """
        snapshot = list(stats)
        deltas: list[tuple[Any, int, int]] = []
        for entry in snapshot:
            prev_delivered, prev_dropped = self._last.get(entry.id, (0, 0))
            delivered = max(0, entry.delivered - prev_delivered)
            dropped = max(0, entry.dropped_full - prev_dropped)
            deltas.append((entry.id, delivered, dropped))
            self._last[entry.id] = (entry.delivered, entry.dropped_full)

        total_delivered = sum(d[1] for d in deltas)
        total_dropped = sum(d[2] for d in deltas)
        total_attempts = total_delivered + total_dropped
        dropping = sum(1 for d in deltas if d[2] > 0)

        deltas.sort(key=lambda d: d[2], reverse=True)
        top = [
            _describe(sub_id, delivered, dropped)
            for sub_id, delivered, dropped in deltas[: self.top_n]
            if dropped > 0
        ]

        delivery_pct = (
            total_delivered * 100.0 / total_attempts if total_attempts > 0 else 100.0
        )
        return {
            "subs_total": len(snapshot),
            "subs_dropping": dropping,
            "window_delivered": total_delivered,
            "window_dropped": total_dropped,
            "delivery_pct": f"{delivery_pct:.2f}",
            "top": top,
        }


def _describe(sub_id: Any, delivered: int, dropped: int) -> str:
    attempts = delivered + dropped
    pct = dropped * 100.0 / attempts if attempts > 0 else 0.0
    return f"sub={sub_id!r} dropped={dropped} ({pct:.1f}%)"


async def _stopped_within(stop: asyncio.Event, seconds: float) -> bool:
    try:
        await asyncio.wait_for(stop.wait(), seconds)
    except TimeoutError:
        return False
    return True


async def run_subscription_dropwatch(
    bus: Any, interval: float, top_n: int, stop: asyncio.Event
) -> int:
    """Log the slowest subscribers every ``interval`` seconds until ``stop`` is set.

    The first log line comes one full interval after start.  Returns the
    number of ticks logged.
    """
    log.info("subscription dropwatch: started interval=%s top_n=%s", interval, top_n)
    watch = DropWatch(top_n)
    ticks = 0
    while not await _stopped_within(stop, interval):
        summary = watch.tick(bus.subscription_stats())
        ticks += 1
        log.info(
            "subscription dropwatch tick subs_total=%s subs_dropping=%s "
            "window_delivered=%s window_dropped=%s delivery_pct=%s top=%s",
            summary["subs_total"],
            summary["subs_dropping"],
            summary["window_delivered"],
            summary["window_dropped"],
            summary["delivery_pct"],
            summary["top"],
        )
    return ticks


def _replay_one(
    framed: bytes,
    bus: Any,
    store: Any,
    persist: PersistMode,
    decoder: Callable[[bytes], Any],
) -> bool:
    try:
        frame = split_frame(framed)
    except FrameError as exc:
        log.warning("plugin replay: invalid framing; dropped: %s", exc)
        return False
    if frame is None:
        log.warning("plugin replay: incomplete frame; dropped")
        return False
    _, payload = frame
    try:
        msg = decoder(payload)
    except Exception as exc:  # noqa: BLE001 - plugin output is untrusted
        log.warning("plugin replay: invalid TakMessage; dropped: %s", exc)
        return False
    try:
        if persist is PersistMode.ON:
            dispatch_and_persist(bus, store, msg, ALL_GROUPS, framed)
        else:
            dispatch_only(bus, msg, ALL_GROUPS, framed)
    except MissingCotEventError as exc:
        log.warning("plugin replay: pipeline rejected: %s", exc)
        return False
    return True


async def run_plugin_replay(
    queue: asyncio.Queue,
    bus: Any,
    store: Any,
    persist: PersistMode,
    decoder: Callable[[bytes], Any],
    stop: asyncio.Event,
) -> tuple[int, int]:
    """Re-dispatch plugin-produced frames until ``stop`` is set or a None arrives.

    Every frame is checked for framing and decoded again before dispatch,
    and is sent with all groups.  Replayed frames are not shown to plugins
    again.  Returns ``(accepted, rejected)``.
    """
    accepted = rejected = 0
    log.info("plugin replay: drainer started")
    stop_task = asyncio.ensure_future(stop.wait())
    try:
        while True:
            if stop.is_set():
                log.info(
                    "plugin replay: shutdown requested; drainer exiting accepted=%s rejected=%s",
                    accepted, rejected,
                )
                return accepted, rejected
            get_task = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait(
                {get_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if get_task not in done:
                get_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await get_task
                continue
            framed = get_task.result()
            if framed is None:
                break
            if _replay_one(bytes(framed), bus, store, persist, decoder):
                accepted += 1
            else:
                rejected += 1
    finally:
        stop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stop_task
    log.info("plugin replay: drainer exited accepted=%s rejected=%s", accepted, rejected)
    return accepted, rejected