"""Pinned latency probe launched alongside the soak load generator."""

from __future__ import annotations

import os
import subprocess
import tempfile
from dataclasses import dataclass
from itertools import takewhile
from pathlib import Path

_U64_MAX = 2**64 - 1
_DIGITS = frozenset("0123456789")

# The probe outlives the soak window by this many seconds so it does not
# tear down before the sampler's final metrics tick.
PROBE_TAIL_SECS = 5


@dataclass(frozen=True)
class LatencySummary:
    """Final summary reported by the latency probe."""

    samples: int = 0
    sends: int = 0
    recvs: int = 0
    p50_us: int = 0
    p95_us: int = 0
    p99_us: int = 0
    p999_us: int = 0
    max_us: int = 0


def spawn(
    taktool_bin: Path | str, target: str, rate: int, duration_secs: int
) -> tuple[subprocess.Popen, Path]:
    """Start the probe; return the process and the path its stdout goes to."""
    tmp = Path(tempfile.gettempdir())
    stdout_path = tmp / f"tak-soak-latency-{os.getpid()}.log"
    stderr_path = tmp / f"tak-soak-latency-{os.getpid()}.err.log"

    with open(stdout_path, "wb") as stdout, open(stderr_path, "wb") as stderr:
        child = subprocess.Popen(
            [
                str(taktool_bin),
                "latency",
                "--target",
                target,
                "--rate",
                str(rate),
                "--duration",
                str(duration_secs + PROBE_TAIL_SECS),
                "--json",
            ],
            stdout=stdout,
            stderr=stderr,
        )
    return child, stdout_path


def parse_summary(path: Path | str) -> LatencySummary:
    """Parse the last JSON line of a probe's stdout log.

    Raises ``OSError`` if the file can't be read and ``ValueError`` if it
    holds no JSON summary line.
    """
    raw = Path(path).read_text(encoding="utf-8", errors="replace")
    line = next(
        (ln for ln in reversed(raw.splitlines()) if ln.lstrip().startswith("{")),
        None,
    )
    if line is None:
        raise ValueError(f"no JSON summary line in {path}")
    return LatencySummary(
        samples=extract_u64(line, '"samples":'),
        sends=extract_u64(line, '"sends":'),
        recvs=extract_u64(line, '"recvs":'),
        p50_us=extract_u64(line, '"p50_us":'),
        p95_us=extract_u64(line, '"p95_us":'),
        p99_us=extract_u64(line, '"p99_us":'),
        p999_us=extract_u64(line, '"p999_us":'),
        max_us=extract_u64(line, '"max_us":'),
    )


def extract_u64(line: str, key: str) -> int:
    """Return the unsigned integer right after ``key``, or 0 if absent."""
    start = line.find(key)
    if start == -1:
        return 0
    digits = "".join(takewhile(_DIGITS.__contains__, line[start + len(key) :]))
    if not digits:
        return 0
    value = int(digits)
    return value if value <= _U64_MAX else 0