"""Command line entry point for the wall-clock soak harness."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import subprocess
import sys
from collections.abc import Sequence
from pathlib import Path

from . import latency, sampler, soak_server
from .analyze import analyze, attach_latency, print_report
from .latency import LatencySummary

log = logging.getLogger(__name__)

LOADGEN_STDOUT_LOG = Path("/tmp/tak-soak-loadgen.log")
LOADGEN_STDERR_LOG = Path("/tmp/tak-soak-loadgen.err.log")

READY_TIMEOUT = 30.0
PROBE_EXIT_TIMEOUT = 15.0
# Load generation outlives the soak window so the last sample sees traffic.
LOADGEN_TAIL_SECS = 5

_FALSEY = frozenset({"", "0", "n", "no", "f", "false", "off"})


def _unsigned(bits: int):
    limit = 2**bits - 1

    def parse(text: str) -> int:
        value = int(text)
        if not 0 <= value <= limit:
            raise argparse.ArgumentTypeError(f"{text} is not in 0..={limit}")
        return value

    parse.__name__ = f"u{bits}"
    return parse


def _env_flag(name: str) -> bool:
    value = os.environ.get(name)
    if value is None:
        return False
    return value.strip().lower() not in _FALSEY


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser; unset options fall back to SOAK_* variables."""
    env = os.environ.get
    u16, u32, u64 = _unsigned(16), _unsigned(32), _unsigned(64)
    parser = argparse.ArgumentParser(
        prog="tak-soak", description="wall-clock soak harness for tak-server"
    )
    parser.add_argument(
        "--duration-secs",
        type=u64,
        default=env("SOAK_DURATION_SECS", "300"),
        help="how long to drive load before stopping",
    )
    parser.add_argument(
        "--sample-interval-secs",
        type=u64,
        default=env("SOAK_SAMPLE_INTERVAL_SECS", "1"),
        help="sampling cadence",
    )
    parser.add_argument(
        "--conns", type=u64, default=env("SOAK_CONNS", "50"), help="loadgen connection count"
    )
    parser.add_argument(
        "--rate",
        type=u32,
        default=env("SOAK_RATE", "200"),
        help="loadgen per-connection emit rate (msg/s)",
    )
    parser.add_argument(
        "--max-rss-drift-kb-per-min",
        type=float,
        default=env("SOAK_MAX_RSS_DRIFT", "1024.0"),
        help="fail when the RSS regression slope exceeds this",
    )
    parser.add_argument(
        "--tak-server-bin",
        type=Path,
        default=env("SOAK_TAK_SERVER", "target/release/tak-server"),
        help="path to the server binary",
    )
    parser.add_argument(
        "--taktool-bin",
        type=Path,
        default=env("SOAK_TAKTOOL", "target/release/taktool"),
        help="path to taktool",
    )
    parser.add_argument(
        "--out-csv",
        type=Path,
        default=env("SOAK_OUT_CSV"),
        help="write samples as CSV here",
    )
    parser.add_argument(
        "--firehose-port",
        type=u16,
        default=env("SOAK_FIREHOSE_PORT", "18088"),
        help="firehose port for the server under test",
    )
    parser.add_argument(
        "--metrics-port",
        type=u16,
        default=env("SOAK_METRICS_PORT", "19091"),
        help="metrics port for the server under test",
    )
    parser.add_argument(
        "--latency-rate",
        type=u32,
        default=env("SOAK_LATENCY_RATE", "20"),
        help="send rate of the pinned latency probe",
    )
    parser.add_argument(
        "--no-latency",
        action="store_true",
        default=_env_flag("SOAK_NO_LATENCY"),
        help="skip the pinned latency probe",
    )
    parser.add_argument(
        "--max-p99-us",
        type=u64,
        default=env("SOAK_MAX_P99_US", "50000"),
        help="fail when final p99 dispatch RTT exceeds this many microseconds",
    )
    return parser


def _open_log(path: Path):
    try:
        return open(path, "wb")
    except OSError:
        return subprocess.DEVNULL


def _spawn_loadgen(args: argparse.Namespace, target: str) -> subprocess.Popen:
    stdout = _open_log(LOADGEN_STDOUT_LOG)
    stderr = _open_log(LOADGEN_STDERR_LOG)
    try:
        return subprocess.Popen(
            [
                str(args.taktool_bin),
                "loadgen",
                "--target",
                target,
                "-c",
                str(args.conns),
                "-r",
                str(args.rate),
                "-d",
                str(args.duration_secs + LOADGEN_TAIL_SECS),
                "-m",
                "realistic",
            ],
            stdout=stdout,
            stderr=stderr,
        )
    finally:
        for handle in (stdout, stderr):
            if handle is not subprocess.DEVNULL:
                handle.close()


def _pin_latency_probe(
    args: argparse.Namespace, target: str
) -> tuple[subprocess.Popen, Path] | None:
    if args.no_latency:
        log.info("latency probe disabled via --no-latency")
        return None
    try:
        child, log_path = latency.spawn(
            args.taktool_bin, target, args.latency_rate, args.duration_secs
        )
    except OSError as exc:
        log.warning("failed to spawn latency probe; continuing without it: %s", exc)
        return None
    log.info("latency probe pinned rate=%s log=%s", args.latency_rate, log_path)
    return child, log_path


async def _drain_probe(probe: tuple[subprocess.Popen, Path]) -> LatencySummary | None:
    child, log_path = probe
    try:
        await asyncio.to_thread(child.wait, PROBE_EXIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        log.warning("latency probe didn't exit on time; killing")
        child.kill()
        await asyncio.to_thread(child.wait)
    try:
        return latency.parse_summary(log_path)
    except (OSError, ValueError) as exc:
        log.warning("latency probe summary parse failed: %s", exc)
        return None


def _stop_child(child: subprocess.Popen | None) -> None:
    if child is None:
        return
    if child.poll() is None:
        child.kill()
    child.wait()


def _check_binary(path: Path, name: str, flag: str) -> None:
    if not Path(path).exists():
        raise FileNotFoundError(
            f"{name} binary not found at {path} — build it first or pass {flag}"
        )


async def run_soak(args: argparse.Namespace) -> int:
    """Run one soak and return the process exit code (0 pass, 1 fail)."""
    log.info(
        "tak-soak starting duration_s=%s conns=%s rate=%s firehose_port=%s metrics_port=%s",
        args.duration_secs,
        args.conns,
        args.rate,
        args.firehose_port,
        args.metrics_port,
    )
    _check_binary(args.tak_server_bin, "tak-server", "--tak-server-bin")
    _check_binary(args.taktool_bin, "taktool", "--taktool-bin")

    container, db_url = await asyncio.to_thread(soak_server.start_postgis)
    log.info("postgres ready db_url=%s", db_url)
    try:
        return await _soak_against(args, db_url)
    finally:
        await asyncio.to_thread(container.stop)


async def _soak_against(args: argparse.Namespace, db_url: str) -> int:
    server = soak_server.start_tak_server(
        args.tak_server_bin, db_url, args.firehose_port, args.metrics_port
    )
    log.info("tak-server spawned pid=%s", server.pid)
    loadgen: subprocess.Popen | None = None
    probe: tuple[subprocess.Popen, Path] | None = None
    try:
        metrics_url = f"http://127.0.0.1:{args.metrics_port}/metrics"
        target = f"127.0.0.1:{args.firehose_port}"
        await soak_server.wait_for_ready(metrics_url, target, READY_TIMEOUT)
        log.info("tak-server ready metrics_url=%s firehose_addr=%s", metrics_url, target)

        loadgen = _spawn_loadgen(args, target)
        log.info(
            "loadgen spawned conns=%s rate=%s (msg/s offered = %s)",
            args.conns,
            args.rate,
            args.conns * args.rate,
        )
        probe = _pin_latency_probe(args, target)

        samples = await sampler.run(
            server.pid,
            metrics_url,
            float(args.duration_secs),
            float(args.sample_interval_secs),
        )
        log.info("sampling complete; tearing down sample_count=%s", len(samples))

        # The probe must finish before the server goes away, or its final
        # summary line never reaches disk.
        latency_summary = await _drain_probe(probe) if probe is not None else None
        probe = None
    finally:
        if probe is not None:
            _stop_child(probe[0])
        _stop_child(loadgen)
        _stop_child(server)

    report = analyze(samples, args.max_rss_drift_kb_per_min)
    attach_latency(report, latency_summary, args.max_p99_us)
    print_report(report)

    if args.out_csv is not None:
        sampler.write_csv(args.out_csv, samples)
        log.info("csv written path=%s", args.out_csv)

    if report.failed:
        log.warning("soak FAILED — see report above")
        return 1
    log.info("soak OK")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, run the soak, and return the exit code."""
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run_soak(args))
    except Exception as exc:  # noqa: BLE001 - report any failure at the process boundary
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())