import asyncio
from pathlib import Path

import pytest

from takrelay.soak_cli import build_parser, main, run_soak

SOAK_ENV = (
    "SOAK_DURATION_SECS",
    "SOAK_SAMPLE_INTERVAL_SECS",
    "SOAK_CONNS",
    "SOAK_RATE",
    "SOAK_MAX_RSS_DRIFT",
    "SOAK_TAK_SERVER",
    "SOAK_TAKTOOL",
    "SOAK_OUT_CSV",
    "SOAK_FIREHOSE_PORT",
    "SOAK_METRICS_PORT",
    "SOAK_LATENCY_RATE",
    "SOAK_NO_LATENCY",
    "SOAK_MAX_P99_US",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in SOAK_ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_documented_values():
    args = build_parser().parse_args([])
    assert args.duration_secs == 300
    assert args.sample_interval_secs == 1
    assert args.conns == 50
    assert args.rate == 200
    assert args.max_rss_drift_kb_per_min == 1024.0
    assert args.tak_server_bin == Path("target/release/tak-server")
    assert args.taktool_bin == Path("target/release/taktool")
    assert args.out_csv is None
    assert args.firehose_port == 18088
    assert args.metrics_port == 19091
    assert args.latency_rate == 20
    assert args.no_latency is False
    assert args.max_p99_us == 50_000


def test_command_line_overrides():
    args = build_parser().parse_args(
        ["--duration-secs", "42", "--rate", "7", "--out-csv", "out.csv", "--no-latency"]
    )
    assert args.duration_secs == 42
    assert args.rate == 7
    assert args.out_csv == Path("out.csv")
    assert args.no_latency is True


def test_environment_supplies_defaults(monkeypatch):
    monkeypatch.setenv("SOAK_DURATION_SECS", "42")
    monkeypatch.setenv("SOAK_MAX_RSS_DRIFT", "2048.5")
    monkeypatch.setenv("SOAK_NO_LATENCY", "true")
    monkeypatch.setenv("SOAK_OUT_CSV", "/tmp/soak.csv")
    args = build_parser().parse_args([])
    assert args.duration_secs == 42
    assert args.max_rss_drift_kb_per_min == 2048.5
    assert args.no_latency is True
    assert args.out_csv == Path("/tmp/soak.csv")


def test_command_line_beats_environment(monkeypatch):
    monkeypatch.setenv("SOAK_CONNS", "9")
    args = build_parser().parse_args(["--conns", "3"])
    assert args.conns == 3


@pytest.mark.parametrize("value", ["false", "0", "off", "no", ""])
def test_falsey_env_flag(monkeypatch, value):
    monkeypatch.setenv("SOAK_NO_LATENCY", value)
    assert build_parser().parse_args([]).no_latency is False


@pytest.mark.parametrize(
    "argv",
    [["--firehose-port", "70000"], ["--rate", "-1"], ["--conns", "many"]],
)
def test_out_of_range_values_rejected(argv):
    with pytest.raises(SystemExit) as excinfo:
        build_parser().parse_args(argv)
    assert excinfo.value.code == 2


def test_invalid_env_value_rejected(monkeypatch):
    monkeypatch.setenv("SOAK_METRICS_PORT", "not-a-port")
    with pytest.raises(SystemExit) as excinfo:
        build_parser().parse_args([])
    assert excinfo.value.code == 2


def test_run_soak_requires_server_binary(tmp_path):
    args = build_parser().parse_args(
        ["--tak-server-bin", str(tmp_path / "missing-server")]
    )
    with pytest.raises(FileNotFoundError, match="tak-server binary not found"):
        asyncio.run(run_soak(args))


def test_run_soak_requires_taktool_binary(tmp_path):
    server_bin = tmp_path / "server"
    server_bin.write_bytes(b"")
    args = build_parser().parse_args(
        ["--tak-server-bin", str(server_bin), "--taktool-bin", str(tmp_path / "missing")]
    )
    with pytest.raises(FileNotFoundError, match="taktool binary not found"):
        asyncio.run(run_soak(args))


def test_main_reports_missing_binary(tmp_path, capsys):
    code = main(["--tak-server-bin", str(tmp_path / "missing-server")])
    assert code == 1
    assert "tak-server binary not found" in capsys.readouterr().err