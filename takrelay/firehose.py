"""CoT firehose: accept loops and per-connection reader/writer.

Each connected client is both a publisher (its frames flow through the
dispatch pipeline) and a subscriber (every frame the bus delivers to it is
written back to its socket).  Frames are ``0xBF <varint length> <payload>``.

The bus is duck-typed: ``subscribe(group_mask)`` returns ``(handle, queue)``
where ``queue`` is an :class:`asyncio.Queue` of frames and ``handle`` has an
``id`` and a ``close()``; ``try_send_to(id, frame)`` unicasts and returns
whether it was queued; ``dispatch(inbound)`` fans out.  ``decoder`` turns a
frame payload into a message with an optional ``cot_event``.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import itertools
import logging
import socket
import ssl
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .group_policy import GroupBitvector, GroupPolicy, resolve_groups
from .pipeline import MissingCotEventError, dispatch_and_persist, dispatch_only

log = logging.getLogger(__name__)

FRAME_MAGIC = 0xBF
MAX_VARINT_BYTES = 10
READ_BUF_CAPACITY = 8192

ALL_GROUPS = GroupBitvector.ALL
"""Every bit set: the groups of connections that carry no identity."""


class PersistMode(enum.Enum):
    """Whether inbound events are also queued for persistence."""

    ON = "on"
    OFF = "off"


class FrameError(ValueError):
    """The stream does not hold a valid frame."""


@dataclass(frozen=True)
class PluginEvent:
    """What plugins see of one inbound CoT event."""

    payload: bytes
    cot_type: str
    uid: str
    callsign: str | None
    lat: float
    lon: float
    hae: float
    send_time_ms: int
    sender_groups_low: int


def split_frame(buf: bytes | bytearray) -> tuple[int, bytes] | None:
    """Return ``(total_length, payload)`` of the first frame, or None if incomplete.

    Raises :class:`FrameError` when the magic byte or length prefix is invalid.
    """
    if not buf:
        return None
    if buf[0] != FRAME_MAGIC:
        raise FrameError(f"bad frame magic 0x{buf[0]:02x}")
    length = 0
    shift = 0
    for offset, byte in enumerate(buf[1 : 1 + MAX_VARINT_BYTES], start=1):
        length |= (byte & 0x7F) << shift
        if not byte & 0x80:
            start = offset + 1
            total = start + length
            if len(buf) < total:
                return None
            return total, bytes(buf[start:total])
        shift += 7
    if len(buf) > MAX_VARINT_BYTES:
        raise FrameError("frame length varint too long")
    return None


def build_plugin_event(
    msg: Any, payload: bytes, sender_groups: GroupBitvector
) -> PluginEvent | None:
    """Build a plugin event, or None for a message without a ``cot_event``."""
    cot = getattr(msg, "cot_event", None)
    if cot is None:
        return None
    return PluginEvent(
        payload=payload,
        cot_type=cot.type,
        uid=cot.uid,
        callsign=None,
        lat=cot.lat,
        lon=cot.lon,
        hae=cot.hae,
        send_time_ms=cot.send_time,
        sender_groups_low=sender_groups.words[0],
    )


async def read_loop(
    conn_id: int,
    reader: asyncio.StreamReader,
    bus: Any,
    store: Any,
    persist: PersistMode,
    decoder: Callable[[bytes], Any],
    plugin_host: Any,
    sender_groups: GroupBitvector,
) -> int:
    """Decode and dispatch frames until EOF; return how many were decoded.

    Undecodable frames are logged and dropped.  Raises :class:`FrameError`
    on a corrupt stream and ``OSError`` on a read failure.
    """
    buf = bytearray()
    decoded = 0
    while True:
        chunk = await reader.read(READ_BUF_CAPACITY)
        if not chunk:
            log.debug("firehose: peer EOF conn=%s decoded=%s", conn_id, decoded)
            return decoded
        buf += chunk
        while (frame := split_frame(buf)) is not None:
            total, payload = frame
            framed = bytes(buf[:total])
            del buf[:total]
            try:
                msg = decoder(payload)
            except Exception as exc:  # noqa: BLE001 - any decoder failure drops the frame
                log.warning("firehose: decode failed; frame dropped conn=%s: %s", conn_id, exc)
                continue
            if plugin_host is not None:
                event = build_plugin_event(msg, framed, sender_groups)
                if event is not None:
                    plugin_host.publish(event)
            try:
                if persist is PersistMode.ON:
                    dispatch_and_persist(bus, store, msg, sender_groups, framed)
                else:
                    dispatch_only(bus, msg, sender_groups, framed)
            except MissingCotEventError:
                pass
            decoded += 1


async def write_loop(conn_id: int, writer: Any, queue: asyncio.Queue) -> int:
    """Write queued frames until a None arrives or the socket fails; return the count."""
    sent = 0
    while (frame := await queue.get()) is not None:
        try:
            writer.write(frame)
            await writer.drain()
        except OSError as exc:
            log.debug("firehose: writer exit conn=%s sent=%s: %s", conn_id, sent, exc)
            return sent
        sent += 1
    log.debug("firehose: writer drained conn=%s sent=%s", conn_id, sent)
    return sent


async def _replay(conn_id: int, bus: Any, store: Any, sub_id: Any, window: float) -> None:
    try:
        frames = await asyncio.to_thread(store.recent_wire_bytes, window)
    except Exception as exc:  # noqa: BLE001 - replay is best-effort
        log.warning("firehose: replay query failed; continuing conn=%s: %s", conn_id, exc)
        return
    sent = dropped = 0
    for frame in frames:
        if bus.try_send_to(sub_id, frame):
            sent += 1
        else:
            dropped += 1
    if sent or dropped:
        log.info(
            "firehose: replayed recent events conn=%s sent=%s dropped=%s window_secs=%s",
            conn_id, sent, dropped, int(window),
        )


async def drive_connection(
    conn_id: int,
    reader: asyncio.StreamReader,
    writer: Any,
    bus: Any,
    store: Any,
    persist: PersistMode,
    decoder: Callable[[bytes], Any],
    plugin_host: Any,
    replay_window: float | None,
    sender_groups: GroupBitvector,
) -> None:
    """Subscribe with ``sender_groups``, replay recent events, then pump both directions.

    The same groups filter what this client receives and who receives what
    it publishes.
    """
    handle, queue = bus.subscribe(sender_groups)
    writer_task = asyncio.create_task(write_loop(conn_id, writer, queue))
    try:
        if replay_window is not None and int(replay_window) > 0:
            await _replay(conn_id, bus, store, handle.id, replay_window)
        try:
            await read_loop(
                conn_id, reader, bus, store, persist, decoder, plugin_host, sender_groups
            )
        except (OSError, FrameError) as exc:
            log.debug("firehose: reader exit conn=%s: %s", conn_id, exc)
    finally:
        handle.close()
        writer_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer_task
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()


def _set_nodelay(writer: asyncio.StreamWriter) -> None:
    sock = writer.get_extra_info("socket")
    if sock is not None:
        with contextlib.suppress(OSError):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)


def _peer_dn(ssl_object: ssl.SSLObject | None) -> str:
    cert = ssl_object.getpeercert() if ssl_object is not None else None
    subject = cert.get("subject") if cert else None
    if not subject:
        return "<no-peer-dn>"
    return ",".join(f"{key}={value}" for rdn in subject for key, value in rdn)


async def serve(
    host: str,
    port: int,
    bus: Any,
    store: Any,
    persist: PersistMode,
    decoder: Callable[[bytes], Any],
    plugin_host: Any,
    replay_window: float | None,
    stop: asyncio.Event,
) -> None:
    """Run the plain-TCP accept loop until ``stop`` is set.

    Plain TCP carries no identity, so every connection gets :data:`ALL_GROUPS`.
    """
    ids = itertools.count()

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn_id = next(ids)
        _set_nodelay(writer)
        log.debug("firehose: accepted conn=%s peer=%s", conn_id, writer.get_extra_info("peername"))
        await drive_connection(
            conn_id, reader, writer, bus, store, persist, decoder, plugin_host,
            replay_window, ALL_GROUPS,
        )
        log.debug("firehose: closed conn=%s", conn_id)

    server = await asyncio.start_server(handle, host, port)
    log.info(
        "firehose: accept loop started addr=%s persist=%s replay_window=%s",
        [s.getsockname() for s in server.sockets], persist.value, replay_window,
    )
    try:
        await stop.wait()
        log.info("firehose: shutdown requested; accept loop exiting")
    finally:
        server.close()


async def serve_tls(
    host: str,
    port: int,
    ssl_context: ssl.SSLContext,
    bus: Any,
    store: Any,
    persist: PersistMode,
    decoder: Callable[[bytes], Any],
    plugin_host: Any,
    replay_window: float | None,
    policy: GroupPolicy,
    stop: asyncio.Event,
) -> None:
    """Run the mutual-TLS accept loop until ``stop`` is set.

    Each connection's groups come from its client certificate via ``policy``;
    a certificate that maps to nothing sees nothing and reaches no one.
    """
    ids = itertools.count()

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn_id = next(ids)
        _set_nodelay(writer)
        ssl_object = writer.get_extra_info("ssl_object")
        der = ssl_object.getpeercert(binary_form=True) if ssl_object is not None else None
        groups = resolve_groups([der] if der else [], policy)
        peer = writer.get_extra_info("peername")
        peer_dn = _peer_dn(ssl_object)
        if groups == GroupBitvector.EMPTY:
            log.warning(
                "firehose-tls: cert resolved to empty group bitvector — connection will "
                "see nothing conn=%s peer=%s dn=%s",
                conn_id, peer, peer_dn,
            )
        else:
            log.info(
                "firehose-tls: accepted conn=%s peer=%s dn=%s groups=%s",
                conn_id, peer, peer_dn, groups,
            )
        await drive_connection(
            conn_id, reader, writer, bus, store, persist, decoder, plugin_host,
            replay_window, groups,
        )
        log.debug("firehose-tls: closed conn=%s", conn_id)

    server = await asyncio.start_server(handle, host, port, ssl=ssl_context)
    log.info(
        "firehose-tls: accept loop started addr=%s persist=%s",
        [s.getsockname() for s in server.sockets], persist.value,
    )
    try:
        await stop.wait()
        log.info("firehose-tls: shutdown requested; accept loop exiting")
    finally:
        server.close()