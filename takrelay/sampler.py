"""Per-tick sampling of server RSS and metric counters."""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from pathlib import Path

from .promtext import parse_text
from .soak_server import HttpFetchError, read_url_text

_U64_MAX = 2**64 - 1
_METRICS_TIMEOUT = 2.0

CSV_HEADER = (
    "elapsed_s,rss_kb,bus_delivered,bus_dropped_full,persistence_inserted,persistence_dropped"
)


@dataclass(frozen=True)
class Sample:
    """One observation; counters are cumulative snapshots."""

    elapsed_s: float
    rss_kb: int
    bus_delivered: int
    bus_dropped_full: int
    persistence_inserted: int
    persistence_dropped: int


def _counter(metrics: dict[str, float], name: str) -> int:
    value = metrics.get(name, 0.0)
    if math.isnan(value) or value <= 0.0:
        return 0
    if math.isinf(value) or value >= _U64_MAX:
        return _U64_MAX
    return int(value)


async def run(pid: int, metrics_url: str, duration: float, interval: float) -> list[Sample]:
    """Sample every ``interval`` seconds until ``duration`` seconds pass."""
    samples: list[Sample] = []
    started = time.monotonic()
    next_tick = started + interval

    while time.monotonic() - started < duration:
        now = time.monotonic()
        if now < next_tick:
            await asyncio.sleep(next_tick - now)
        next_tick += interval

        elapsed_s = time.monotonic() - started
        try:
            rss_kb = read_rss_kb(pid)
        except OSError:
            rss_kb = 0
        try:
            body = await read_url_text(metrics_url, _METRICS_TIMEOUT)
        except HttpFetchError:
            body = ""
        metrics = parse_text(body)
        samples.append(
            Sample(
                elapsed_s=elapsed_s,
                rss_kb=rss_kb,
                bus_delivered=_counter(metrics, "tak_bus_delivered"),
                bus_dropped_full=_counter(metrics, "tak_bus_dropped_full"),
                persistence_inserted=_counter(metrics, "tak_persistence_inserted"),
                persistence_dropped=_counter(metrics, "tak_persistence_dropped"),
            )
        )
    return samples


def read_rss_kb(pid: int) -> int:
    """Return VmRSS in kB from ``/proc/<pid>/status``."""
    body = Path(f"/proc/{pid}/status").read_text()
    for line in body.splitlines():
        if line.startswith("VmRSS:"):
            for token in line[len("VmRSS:") :].split():
                if token.isascii() and token.isdigit():
                    return int(token)
    raise FileNotFoundError("VmRSS not found")


def write_csv(path: Path | str, samples: list[Sample]) -> None:
    """Write samples as CSV with a header row."""
    with open(path, "w", encoding="utf-8", newline="") as out:
        out.write(CSV_HEADER + "\n")
        for s in samples:
            out.write(
                f"{s.elapsed_s:.3f},{s.rss_kb},{s.bus_delivered},{s.bus_dropped_full},"
                f"{s.persistence_inserted},{s.persistence_dropped}\n"
            )