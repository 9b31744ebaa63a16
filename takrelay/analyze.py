"""RSS drift and throughput analysis of soak samples."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from .latency import LatencySummary
from .sampler import Sample

U64_MAX = 2**64 - 1

# Fewer samples than this cannot support a meaningful regression.
MIN_SAMPLES = 4


@dataclass
class Report:
    """Outcome of one soak run."""

    samples: int
    duration_s: float = 0.0
    rss_start_kb: int = 0
    rss_end_kb: int = 0
    rss_min_kb: int = U64_MAX
    rss_max_kb: int = 0
    rss_slope_kb_per_min: float = 0.0
    rss_drift_threshold: float = 0.0
    deliveries_total: int = 0
    deliveries_per_s: float = 0.0
    dropped_full_total: int = 0
    persisted_total: int = 0
    persistence_dropped_total: int = 0
    latency: LatencySummary | None = None
    max_p99_us_threshold: int = 0
    failed: bool = False
    failure_reasons: list[str] = field(default_factory=list)

    def _fail(self, reason: str) -> None:
        self.failed = True
        self.failure_reasons.append(reason)


def _delta(end: int, start: int) -> int:
    return max(0, end - start)


def attach_latency(
    report: Report, latency: LatencySummary | None, max_p99_us_threshold: int
) -> None:
    """Record the latency probe summary on ``report`` and gate on its p99.

    An absent probe never fails the run; a probe with zero samples or a
    p99 above the threshold does.
    """
    report.latency = latency
    report.max_p99_us_threshold = max_p99_us_threshold
    if latency is None:
        return
    if latency.samples == 0:
        report._fail(
            "latency probe finished with zero samples — peer closed early or fan-out broken"
        )
    elif latency.p99_us > max_p99_us_threshold:
        report._fail(
            f"latency p99 {latency.p99_us} µs exceeds threshold "
            f"{max_p99_us_threshold} µs (max {latency.max_us} µs)"
        )


def analyze(samples: Sequence[Sample], rss_drift_threshold: float) -> Report:
    """Build a report from the samples, failing it on RSS drift or stalled delivery."""
    count = len(samples)
    report = Report(samples=count, rss_drift_threshold=rss_drift_threshold)

    if count < MIN_SAMPLES:
        report._fail(f"only {count} samples — need ≥4 for a meaningful regression")
        return report

    first, last = samples[0], samples[-1]
    report.duration_s = last.elapsed_s - first.elapsed_s
    report.rss_start_kb = first.rss_kb
    report.rss_end_kb = last.rss_kb
    report.deliveries_total = _delta(last.bus_delivered, first.bus_delivered)
    report.dropped_full_total = _delta(last.bus_dropped_full, first.bus_dropped_full)
    report.persisted_total = _delta(last.persistence_inserted, first.persistence_inserted)
    report.persistence_dropped_total = _delta(
        last.persistence_dropped, first.persistence_dropped
    )
    if report.duration_s > 0.0:
        report.deliveries_per_s = report.deliveries_total / report.duration_s

    report.rss_min_kb = min(s.rss_kb for s in samples)
    report.rss_max_kb = max(s.rss_kb for s in samples)

    # Only the back half is regressed: the front half is dominated by the
    # allocator's warm-up growth, which a full-window fit would read as drift.
    window = samples[count // 2 :]
    if len(window) < MIN_SAMPLES:
        report._fail(
            f"late-window only has {len(window)} samples — soak too short for drift analysis"
        )
        return report

    report.rss_slope_kb_per_min = linear_slope(window) * 60.0

    if abs(report.rss_slope_kb_per_min) > rss_drift_threshold:
        report._fail(
            f"RSS drift {report.rss_slope_kb_per_min:.1f} kB/min exceeds threshold "
            f"{rss_drift_threshold:.1f} kB/min "
            f"(start={report.rss_start_kb} kB, end={report.rss_end_kb} kB)"
        )

    if report.deliveries_per_s < 1.0 and count > MIN_SAMPLES:
        report._fail(
            f"no bus deliveries observed across {count} samples — "
            "loadgen or server likely died"
        )

    return report


def linear_slope(window: Sequence[Sample]) -> float:
    """Least-squares slope of RSS (kB) against elapsed seconds."""
    if not window:
        return 0.0
    n = len(window)
    mean_x = sum(s.elapsed_s for s in window) / n
    mean_y = sum(s.rss_kb for s in window) / n
    num = 0.0
    den = 0.0
    for s in window:
        dx = s.elapsed_s - mean_x
        dy = s.rss_kb - mean_y
        num += dx * dy
        den += dx * dx
    return 0.0 if den == 0.0 else num / den


def format_report(report: Report) -> str:
    """Render the human-readable report block."""
    r = report
    lines = [
        "",
        "=== tak-soak report ===",
        f"samples              {r.samples}",
        f"duration_s           {r.duration_s:.1f}",
        f"rss_start_kb         {r.rss_start_kb}",
        f"rss_end_kb           {r.rss_end_kb}",
        f"rss_min_kb           {r.rss_min_kb}",
        f"rss_max_kb           {r.rss_max_kb}",
        f"rss_slope_kb_per_min {r.rss_slope_kb_per_min:.1f}  "
        f"(threshold ±{r.rss_drift_threshold:.0f})",
        f"deliveries_total     {r.deliveries_total}",
        f"deliveries_per_s     {r.deliveries_per_s:.0f}",
        f"dropped_full_total   {r.dropped_full_total}",
        f"persisted_total      {r.persisted_total}",
        f"persist_dropped_tot  {r.persistence_dropped_total}",
        "--- pinned latency probe ---",
    ]
    if r.latency is not None:
        s = r.latency
        lines += [
            f"samples              {s.samples}",
            f"sends                {s.sends}",
            f"recvs                {s.recvs}",
            f"p50_us               {s.p50_us}",
            f"p95_us               {s.p95_us}",
            f"p99_us               {s.p99_us}",
            f"p999_us              {s.p999_us}",
            f"max_us               {s.max_us}",
            f"p99_threshold_us     {r.max_p99_us_threshold}",
        ]
    else:
        lines.append("(disabled or unavailable)")
    lines.append(f"verdict              {'FAIL' if r.failed else 'PASS'}")
    lines += [f"  - {reason}" for reason in r.failure_reasons]
    lines.append("=======================")
    return "\n".join(lines)


def print_report(report: Report) -> None:
    """Print the report block to standard output."""
    print(format_report(report))