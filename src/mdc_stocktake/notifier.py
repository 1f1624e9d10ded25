"""Best-effort forwarding of counted transactions to a remote listener.

Design:
- One TCP connection, dialled once before the session starts. If the dial
  fails the worker stays offline for the rest of the session and its channel
  is closed straight away.
- Each transaction becomes one compact JSON object. Objects are written
  back-to-back with no delimiter, so a receiver parses a raw stream of
  concatenated JSON values (see :func:`iter_events`).
- Nothing is retried. After a send failure the connection is dropped and the
  worker keeps draining its channel so the session never blocks on it.
"""

from __future__ import annotations

import codecs
import json
import socket
import socketserver
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, Tuple

from . import log
from .constants import DEFAULT_CONNECT_TIMEOUT
from .pipeline import Channel
from .records import Transaction

RECV_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class NotificationEvent:
    """One forwarded transaction as seen by a receiver."""

    sender: str
    location: str
    code: str
    soh: int


def encode_event(sender: str, transaction: Transaction) -> bytes:
    """Serialize a transaction into the wire object."""
    payload = {
        "Sender": sender,
        "Location": transaction.location,
        "Code": transaction.code,
        "Soh": transaction.soh,
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode_event(obj: object) -> NotificationEvent:
    """Validate one decoded JSON value and convert it to an event.

    Raises:
        ValueError: If the value is not an object with the expected fields.
    """
    if not isinstance(obj, dict):
        raise ValueError(f"expected a JSON object, got {type(obj).__name__}")
    try:
        sender, location, code, soh = obj["Sender"], obj["Location"], obj["Code"], obj["Soh"]
    except KeyError as exc:
        raise ValueError(f"event is missing field {exc}") from exc
    if not isinstance(soh, int) or isinstance(soh, bool):
        raise ValueError(f"event Soh must be an integer, got {soh!r}")
    return NotificationEvent(sender=str(sender), location=str(location), code=str(code), soh=soh)


def iter_events(chunks: Iterable[bytes]) -> Iterator[NotificationEvent]:
    """Decode a stream of concatenated JSON objects.

    ``chunks`` may split objects, and multi-byte characters, at arbitrary
    boundaries.

    Raises:
        ValueError: If the stream ends in the middle of an object or contains
            something other than event objects.
    """
    decoder = json.JSONDecoder()
    utf8 = codecs.getincrementaldecoder("utf-8")()
    buffer = ""

    for chunk in chunks:
        buffer += utf8.decode(chunk)
        while True:
            buffer = buffer.lstrip()
            if not buffer:
                break
            try:
                obj, end = decoder.raw_decode(buffer)
            except json.JSONDecodeError:
                # incomplete object, wait for more bytes
                break
            buffer = buffer[end:]
            yield decode_event(obj)

    buffer = (buffer + utf8.decode(b"", final=True)).strip()
    if buffer:
        raise ValueError(f"event stream ended inside an object: {buffer[:40]!r}")


class NotificationWorker:
    """Relays every submitted transaction to the remote listener."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        sender: Optional[str] = None,
        channel: Optional[Channel] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.sender = sender if sender is not None else socket.gethostname()
        self.channel = channel if channel is not None else Channel("notification")
        self.online = False
        self.sent = 0
        self.skipped = 0
        self._sock: Optional[socket.socket] = None
        self._thread = threading.Thread(target=self._run, name="notification-worker", daemon=True)

    def connect(self) -> bool:
        """Dial the listener once; on failure go offline for good."""
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
        except OSError as exc:
            log.error("Could not reach notification listener at %s:%d: %s", self.host, self.port, exc)
            self.online = False
            self.channel.close()
            return False

        sock.settimeout(None)
        self._sock = sock
        self.online = True
        log.info("Forwarding counts to %s:%d as '%s'", self.host, self.port, self.sender)
        return True

    def start(self) -> None:
        if not self.online:
            raise RuntimeError("notification worker is offline")
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread.ident is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        try:
            for transaction in self.channel:
                if self._sock is None:
                    self.skipped += 1
                    continue
                try:
                    payload = encode_event(self.sender, transaction)
                except (TypeError, ValueError) as exc:
                    self.skipped += 1
                    log.error("Could not serialize (%s, %s): %s", transaction.location, transaction.code, exc)
                    continue
                try:
                    self._sock.sendall(payload)
                    self.sent += 1
                except OSError as exc:
                    self.skipped += 1
                    log.error("Lost notification listener, no further counts will be forwarded: %s", exc)
                    self._close_socket()
        finally:
            self._close_socket()
            self.channel.close()

    def _close_socket(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            finally:
                self._sock = None


class _EventStreamHandler(socketserver.BaseRequestHandler):
    server: "EventListener"

    def handle(self) -> None:
        peer = "%s:%d" % self.client_address[:2]
        log.info("Notifier connected from %s", peer)
        chunks = iter(lambda: self.request.recv(RECV_CHUNK_SIZE), b"")
        try:
            for event in iter_events(chunks):
                self.server.on_event(event, self.client_address)
        except (ValueError, OSError) as exc:
            log.error("Dropping notifier %s: %s", peer, exc)
            return
        log.info("Notifier %s disconnected", peer)


class EventListener(socketserver.ThreadingTCPServer):
    """Receiver for forwarded transactions; one thread per sender."""

    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        address: Tuple[str, int],
        on_event: Callable[[NotificationEvent, Tuple[str, int]], None],
    ) -> None:
        super().__init__(address, _EventStreamHandler)
        self.on_event = on_event


def log_event(event: NotificationEvent, client_address: Tuple[str, int]) -> None:
    log.info("%s counted (%s, %s, %d)", event.sender, event.location, event.code, event.soh)
