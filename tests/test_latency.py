import stat

import pytest

from takrelay.latency import LatencySummary, extract_u64, parse_summary, spawn


LINE = (
    '{"target":"127.0.0.1:18088","rate":20,"duration":300,"sends":6000,"recvs":6000,'
    '"samples":6000,"p50_us":89,"p95_us":231,"p99_us":376,"p999_us":1387,"max_us":1387}'
)


def test_parse_extracts_all_fields():
    assert extract_u64(LINE, '"samples":') == 6000
    assert extract_u64(LINE, '"p50_us":') == 89
    assert extract_u64(LINE, '"p99_us":') == 376
    assert extract_u64(LINE, '"p999_us":') == 1387
    assert extract_u64(LINE, '"max_us":') == 1387


def test_parse_summary_finds_line_after_human_block(tmp_path):
    path = tmp_path / "latency.log"
    path.write_text(
        "=== latency probe ===\nrate            20 Hz\np99  (us)       376\n"
        "max  (us)       1387\n=====================\n"
        '{"target":"x","rate":20,"duration":10,"sends":200,"recvs":200,"samples":200,'
        '"p50_us":86,"p95_us":281,"p99_us":456,"p999_us":565,"max_us":565}\n'
    )
    s = parse_summary(path)
    assert s.samples == 200
    assert s.p99_us == 456
    assert s == LatencySummary(
        samples=200, sends=200, recvs=200, p50_us=86, p95_us=281, p99_us=456,
        p999_us=565, max_us=565,
    )


def test_missing_field_returns_zero():
    line = '{"samples":100}'
    assert extract_u64(line, '"missing":') == 0
    assert extract_u64(line, '"samples":') == 100


def test_non_numeric_value_returns_zero():
    assert extract_u64('{"samples":"x"}', '"samples":') == 0


def test_overflowing_value_returns_zero():
    assert extract_u64('{"samples":99999999999999999999999}', '"samples":') == 0


def test_parse_summary_without_json_line(tmp_path):
    path = tmp_path / "latency.log"
    path.write_text("=== latency probe ===\nno json here\n")
    with pytest.raises(ValueError, match="no JSON summary line"):
        parse_summary(path)


def test_parse_summary_missing_file(tmp_path):
    with pytest.raises(OSError):
        parse_summary(tmp_path / "absent.log")


def test_parse_summary_uses_last_json_line(tmp_path):
    path = tmp_path / "latency.log"
    path.write_text('{"samples":1}\n  {"samples":2,"p99_us":9}\n')
    s = parse_summary(path)
    assert (s.samples, s.p99_us, s.max_us) == (2, 9, 0)


def test_spawn_passes_probe_arguments(tmp_path):
    script = tmp_path / "fake-taktool"
    script.write_text("#!/bin/sh\nprintf '%s\\n' \"$@\"\n")
    script.chmod(script.stat().st_mode | stat.S_IEXEC)

    child, stdout_path = spawn(script, "127.0.0.1:18088", 20, 300)
    try:
        assert child.wait(timeout=10) == 0
        assert stdout_path.name.startswith("tak-soak-latency-")
        assert stdout_path.read_text().splitlines() == [
            "latency",
            "--target",
            "127.0.0.1:18088",
            "--rate",
            "20",
            "--duration",
            "305",
            "--json",
        ]
    finally:
        stdout_path.unlink(missing_ok=True)
        stdout_path.with_name(stdout_path.name.replace(".log", ".err.log")).unlink(
            missing_ok=True
        )