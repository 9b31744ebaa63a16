import pytest

from takrelay.analyze import (
    Report,
    analyze,
    attach_latency,
    format_report,
    linear_slope,
    print_report,
)
from takrelay.latency import LatencySummary
from takrelay.sampler import Sample


def s(elapsed_s, rss_kb, delivered, dropped_full=0, inserted=0, persist_dropped=0):
    return Sample(
        elapsed_s=elapsed_s,
        rss_kb=rss_kb,
        bus_delivered=delivered,
        bus_dropped_full=dropped_full,
        persistence_inserted=inserted,
        persistence_dropped=persist_dropped,
    )


def flat_samples():
    return [s(float(i), 100_000, 1000 * i) for i in range(60)]


def test_flat_rss_passes():
    r = analyze(flat_samples(), 1024.0)
    assert not r.failed, r.failure_reasons
    assert abs(r.rss_slope_kb_per_min) < 1.0


def test_drifting_rss_fails():
    samples = [s(float(i), 100_000 + i * 100, 1000 * i) for i in range(60)]
    r = analyze(samples, 1024.0)
    assert r.failed
    assert r.rss_slope_kb_per_min > 1024.0
    assert any("RSS drift" in m for m in r.failure_reasons)


def test_dead_loadgen_fails():
    samples = [s(float(i), 100_000, 0) for i in range(60)]
    r = analyze(samples, 1024.0)
    assert r.failed
    assert any("no bus deliveries" in m for m in r.failure_reasons)


def test_too_few_samples_fails_early():
    samples = [s(float(i), 100_000, 1000 * i) for i in range(3)]
    r = analyze(samples, 1024.0)
    assert r.failed
    assert r.samples == 3
    assert any("only 3 samples" in m for m in r.failure_reasons)
    assert r.rss_min_kb == 2**64 - 1


def test_short_late_window_fails():
    samples = [s(float(i), 100_000, 1000 * i) for i in range(6)]
    r = analyze(samples, 1024.0)
    assert r.failed
    assert any("late-window only has 3 samples" in m for m in r.failure_reasons)


def test_totals_are_window_deltas():
    samples = flat_samples()
    r = analyze(samples, 1024.0)
    assert r.deliveries_total == samples[-1].bus_delivered - samples[0].bus_delivered
    assert r.duration_s == samples[-1].elapsed_s - samples[0].elapsed_s
    assert r.deliveries_per_s == pytest.approx(1000.0)


def test_counter_regression_saturates_at_zero():
    samples = [s(float(i), 100_000, 1000 * i, dropped_full=10 - i % 2) for i in range(9)]
    samples[-1] = s(8.0, 100_000, 8000, dropped_full=5, inserted=3, persist_dropped=0)
    r = analyze(samples, 1024.0)
    assert r.dropped_full_total == 0
    assert r.persisted_total == 3


def test_rss_bounds_tracked():
    samples = flat_samples()
    samples[10] = s(10.0, 90_000, 10_000)
    samples[20] = s(20.0, 120_000, 20_000)
    r = analyze(samples, 1e9)
    assert r.rss_min_kb == 90_000
    assert r.rss_max_kb == 120_000
    assert r.rss_start_kb == 100_000
    assert r.rss_end_kb == 100_000


def test_linear_slope_of_exact_line():
    window = [s(float(x), 7 * x + 500, 0) for x in range(10)]
    assert linear_slope(window) == pytest.approx(7.0)


def test_linear_slope_degenerate_cases():
    assert linear_slope([]) == 0.0
    same_time = [s(5.0, rss, 0) for rss in (1, 2, 3)]
    assert linear_slope(same_time) == 0.0


def test_attach_latency_zero_samples_fails():
    r = analyze(flat_samples(), 1024.0)
    attach_latency(r, LatencySummary(samples=0), 50_000)
    assert r.failed
    assert any("zero samples" in m for m in r.failure_reasons)


def test_attach_latency_high_p99_fails():
    r = analyze(flat_samples(), 1024.0)
    attach_latency(r, LatencySummary(samples=200, p99_us=60_000, max_us=70_000), 50_000)
    assert r.failed
    assert any("exceeds threshold 50000" in m for m in r.failure_reasons)


def test_attach_latency_within_threshold_passes():
    r = analyze(flat_samples(), 1024.0)
    summary = LatencySummary(samples=200, p99_us=456, max_us=565)
    attach_latency(r, summary, 50_000)
    assert not r.failed
    assert r.latency == summary
    assert r.max_p99_us_threshold == 50_000


def test_attach_latency_absent_probe_does_not_fail():
    r = Report(samples=10)
    attach_latency(r, None, 1)
    assert r.latency is None
    assert r.max_p99_us_threshold == 1
    assert not r.failed


def test_format_report_verdicts():
    passing = analyze(flat_samples(), 1024.0)
    text = passing.__class__ and format_report(passing)
    assert "verdict              PASS" in text
    assert "(disabled or unavailable)" in text

    failing = analyze([], 1024.0)
    text = format_report(failing)
    assert "verdict              FAIL" in text
    assert "  - only 0 samples" in text


def test_format_report_includes_latency_block():
    r = analyze(flat_samples(), 1024.0)
    attach_latency(r, LatencySummary(samples=6000, p99_us=376, max_us=1387), 50_000)
    text = format_report(r)
    assert "p99_us               376" in text
    assert "max_us               1387" in text
    assert "(disabled or unavailable)" not in text


def test_print_report_writes_formatted_block(capsys):
    r = analyze(flat_samples(), 1024.0)
    print_report(r)
    assert capsys.readouterr().out == format_report(r) + "\n"