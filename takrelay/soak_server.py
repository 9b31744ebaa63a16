"""Container, server-process and readiness orchestration for soak runs."""

from __future__ import annotations

import asyncio
import contextlib
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

PG_IMAGE = "postgis/postgis:16-3.4"
PG_USER = "user"
PG_PASSWORD = "password"
PG_DB = "tak"
PG_PORT = 5432
PG_READY_MESSAGE = "database system is ready to accept connections"
CONTAINER_START_TIMEOUT = 60.0
CONTAINER_SETTLE_SECONDS = 1.0

SERVER_STDOUT_LOG = Path("/tmp/tak-soak-server.log")
SERVER_STDERR_LOG = Path("/tmp/tak-soak-server.err.log")

READY_MAX_ATTEMPTS = 120
READY_PROBE_TIMEOUT = 1.0
READY_RETRY_DELAY = 0.25


class ReadyTimeoutError(TimeoutError):
    """A container or server did not become ready in time."""


class HttpFetchError(Exception):
    """A plain HTTP GET could not be completed."""


@dataclass
class PostgisContainer:
    """A running PostGIS container, removed on :meth:`stop`."""

    container_id: str
    host: str
    port: int
    _stopped: bool = field(default=False, init=False, repr=False)

    def stop(self) -> None:
        """Force-remove the container; later calls do nothing."""
        if self._stopped:
            return
        subprocess.run(
            ["docker", "rm", "-f", self.container_id],
            check=False,
            capture_output=True,
            text=True,
        )
        self._stopped = True

    def __enter__(self) -> PostgisContainer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


def _docker(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(["docker", *args], check=True, capture_output=True, text=True)


def _wait_for_log(container_id: str, message: str, timeout: float) -> None:
    deadline = time.monotonic() + timeout
    while True:
        logs = _docker("logs", container_id)
        if message in logs.stderr:
            return
        if time.monotonic() > deadline:
            raise ReadyTimeoutError(
                f"container {container_id} did not log {message!r} within {timeout}s"
            )
        time.sleep(0.5)


def _host_port(container_id: str, port: int) -> int:
    mapping = _docker("port", container_id, f"{port}/tcp")
    for line in mapping.stdout.splitlines():
        _, sep, host_port = line.strip().rpartition(":")
        if sep and host_port.isdigit():
            return int(host_port)
    raise RuntimeError(f"no host port mapping for {port}/tcp on {container_id}")


def start_postgis() -> tuple[PostgisContainer, str]:
    """Start a PostGIS container and return it with its connection URL."""
    started = _docker(
        "run",
        "-d",
        "-p",
        str(PG_PORT),
        "-e",
        f"POSTGRES_USER={PG_USER}",
        "-e",
        f"POSTGRES_PASSWORD={PG_PASSWORD}",
        "-e",
        f"POSTGRES_DB={PG_DB}",
        PG_IMAGE,
    )
    container = PostgisContainer(container_id=started.stdout.strip(), host="localhost", port=0)
    try:
        _wait_for_log(container.container_id, PG_READY_MESSAGE, CONTAINER_START_TIMEOUT)
        time.sleep(CONTAINER_SETTLE_SECONDS)
        container.port = _host_port(container.container_id, PG_PORT)
    except BaseException:
        container.stop()
        raise
    url = f"postgres://{PG_USER}:{PG_PASSWORD}@{container.host}:{container.port}/{PG_DB}"
    return container, url


def _open_log(path: Path):
    try:
        return open(path, "wb")
    except OSError:
        return subprocess.DEVNULL


def start_tak_server(
    bin: Path | str, db_url: str, firehose_port: int, metrics_port: int
) -> subprocess.Popen:
    """Spawn the server binary with soak-friendly listeners and no replay."""
    stdout = _open_log(SERVER_STDOUT_LOG)
    stderr = _open_log(SERVER_STDERR_LOG)
    try:
        return subprocess.Popen(
            [
                str(bin),
                "--database-url",
                db_url,
                "--listen-cot",
                f"127.0.0.1:{firehose_port}",
                "--listen-api",
                "127.0.0.1:0",
                "--listen-metrics",
                f"127.0.0.1:{metrics_port}",
                "--replay-window-secs",
                "0",
            ],
            stdout=stdout,
            stderr=stderr,
        )
    finally:
        for handle in (stdout, stderr):
            if handle is not subprocess.DEVNULL:
                handle.close()


def _split_host_port(host_port: str) -> tuple[str, int]:
    host, sep, port = host_port.rpartition(":")
    if not sep or not port.isdigit():
        raise HttpFetchError(f"invalid address {host_port!r}")
    return host.strip("[]"), int(port)


async def _port_open(addr: str, timeout: float) -> bool:
    try:
        host, port = _split_host_port(addr)
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (HttpFetchError, OSError, TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


async def _url_reachable(url: str, timeout: float) -> bool:
    try:
        await read_url_text(url, timeout)
    except HttpFetchError:
        return False
    return True


async def wait_for_ready(metrics_url: str, firehose_addr: str, timeout: float) -> None:
    """Wait until both the metrics endpoint and the firehose port answer.

    Raises :class:`ReadyTimeoutError` once ``timeout`` seconds pass or
    the attempt budget runs out.
    """
    deadline = time.monotonic() + timeout
    attempt = 0
    while True:
        if time.monotonic() > deadline:
            raise ReadyTimeoutError(f"tak-server didn't become ready within {timeout}s")
        attempt += 1
        metrics_ok = await _url_reachable(metrics_url, READY_PROBE_TIMEOUT)
        firehose_ok = await _port_open(firehose_addr, READY_PROBE_TIMEOUT)
        if metrics_ok and firehose_ok:
            return
        if attempt >= READY_MAX_ATTEMPTS:
            raise ReadyTimeoutError(
                f"ready probe timeout: metrics_ok={metrics_ok} firehose_ok={firehose_ok}"
            )
        await asyncio.sleep(READY_RETRY_DELAY)


async def read_url_text(url: str, timeout: float) -> str:
    """GET ``url`` over HTTP/1.0 and return the response body.

    Only ``http://`` is supported; the body is everything after the
    first blank line.
    """
    if not url.startswith("http://"):
        raise HttpFetchError(f"only http:// supported, got {url}")
    rest = url[len("http://") :]
    host_port, slash, tail = rest.partition("/")
    path = f"/{tail}" if slash else "/"
    request = f"GET {path} HTTP/1.0\r\nHost: {host_port}\r\nConnection: close\r\n\r\n"
    host, port = _split_host_port(host_port)

    try:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except TimeoutError:
        raise HttpFetchError("tcp connect timeout") from None
    except OSError as exc:
        raise HttpFetchError(f"connect {host_port}: {exc}") from exc

    try:
        writer.write(request.encode("ascii"))
        await writer.drain()
        raw = await asyncio.wait_for(reader.read(), timeout)
    except TimeoutError:
        raise HttpFetchError("read timeout") from None
    except OSError as exc:
        raise HttpFetchError(f"read {host_port}: {exc}") from exc
    finally:
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()

    text = raw.decode("utf-8", errors="replace")
    header_end = text.find("\r\n\r\n")
    if header_end == -1:
        raise HttpFetchError("no http header terminator")
    return text[header_end + 4 :]