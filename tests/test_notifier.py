"""Tests for event encoding, stream decoding, and the notification worker."""

from __future__ import annotations

import json
import socket
import threading

import pytest

from mdc_stocktake import notifier
from mdc_stocktake.notifier import EventListener, NotificationEvent, NotificationWorker
from mdc_stocktake.records import END_OF_STREAM, Data, Transaction


# ---------------------------------------------------------------------------
# Encoding and decoding
# ---------------------------------------------------------------------------


def test_encode_event_uses_wire_field_names():
    payload = notifier.encode_event("host-7", Transaction("A1", "SKU001", -3))
    assert payload == b'{"Sender":"host-7","Location":"A1","Code":"SKU001","Soh":-3}'


def test_encode_event_keeps_unicode_codes():
    payload = notifier.encode_event("h", Transaction("B2", "CAFÉ-1", 1))
    assert json.loads(payload.decode("utf-8"))["Code"] == "CAFÉ-1"


def test_iter_events_splits_concatenated_objects():
    stream = (
        notifier.encode_event("h", Transaction("A1", "X", 1))
        + notifier.encode_event("h", Transaction("A1", "Y", 2))
    )
    events = list(notifier.iter_events([stream]))
    assert events == [
        NotificationEvent("h", "A1", "X", 1),
        NotificationEvent("h", "A1", "Y", 2),
    ]


def test_iter_events_handles_arbitrary_chunk_boundaries():
    """Objects and multi-byte characters may be split across reads."""

    stream = b"".join(
        notifier.encode_event("scanner", Transaction("C3", code, n))
        for n, code in enumerate(["ÄPFEL", "SKU002", "ß-9"], start=1)
    )
    chunks = [stream[i:i + 3] for i in range(0, len(stream), 3)]

    events = list(notifier.iter_events(chunks))

    assert [e.code for e in events] == ["ÄPFEL", "SKU002", "ß-9"]
    assert [e.soh for e in events] == [1, 2, 3]


def test_iter_events_tolerates_whitespace_between_objects():
    stream = b' {"Sender":"h","Location":"A1","Code":"X","Soh":1}\n\n{"Sender":"h","Location":"A1","Code":"Y","Soh":2} '
    assert [e.code for e in notifier.iter_events([stream])] == ["X", "Y"]


def test_iter_events_rejects_truncated_stream():
    with pytest.raises(ValueError):
        list(notifier.iter_events([b'{"Sender":"h","Location":"A1"']))


@pytest.mark.parametrize(
    "raw",
    [
        b"[1, 2]",
        b'{"Sender":"h","Location":"A1","Code":"X"}',
        b'{"Sender":"h","Location":"A1","Code":"X","Soh":"5"}',
        b'{"Sender":"h","Location":"A1","Code":"X","Soh":true}',
    ],
)
def test_iter_events_rejects_malformed_events(raw):
    with pytest.raises(ValueError):
        list(notifier.iter_events([raw]))


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


def test_connect_failure_goes_offline_and_closes_channel(unused_port, caplog):
    worker = NotificationWorker("127.0.0.1", unused_port, connect_timeout=1, sender="h")

    assert worker.connect() is False
    assert worker.online is False
    assert worker.channel.closed is True
    assert "Could not reach notification listener" in caplog.text
    with pytest.raises(RuntimeError):
        worker.start()


def test_worker_defaults_sender_to_hostname(unused_port):
    worker = NotificationWorker("127.0.0.1", unused_port)
    assert worker.sender == socket.gethostname()


def test_worker_relays_records_in_order(loopback_server, read_all):
    host, port = loopback_server.getsockname()[:2]
    worker = NotificationWorker(host, port, sender="scanner-2")
    assert worker.connect() is True
    worker.start()

    received: list[bytes] = []
    reader = threading.Thread(target=lambda: received.append(read_all(loopback_server)), daemon=True)
    reader.start()

    sent = [Transaction("A1", f"SKU{i}", i) for i in range(1, 6)]
    for transaction in sent:
        worker.channel.put(Data(transaction))
    worker.channel.put(END_OF_STREAM)
    worker.join(5)
    reader.join(5)

    events = list(notifier.iter_events(received))
    assert [(e.location, e.code, e.soh) for e in events] == [(t.location, t.code, t.soh) for t in sent]
    assert all(e.sender == "scanner-2" for e in events)
    assert worker.channel.closed is True


def test_worker_keeps_draining_after_send_failure(loopback_server, monkeypatch, caplog):
    """A broken connection drops forwarding but never blocks the sender."""

    host, port = loopback_server.getsockname()[:2]
    worker = NotificationWorker(host, port, sender="h")
    assert worker.connect() is True

    class BrokenSocket:
        closed = False

        def sendall(self, _payload: bytes) -> None:
            raise BrokenPipeError("listener went away")

        def close(self) -> None:
            BrokenSocket.closed = True

    worker._sock.close()
    monkeypatch.setattr(worker, "_sock", BrokenSocket())
    worker.start()

    for n in range(3):
        worker.channel.put(Data(Transaction("A1", "X", n)))
    worker.channel.put(END_OF_STREAM)
    worker.join(5)

    assert worker.sent == 0
    assert worker.skipped == 3
    assert BrokenSocket.closed is True
    assert caplog.text.count("Lost notification listener") == 1


def test_worker_skips_unserializable_record(loopback_server, read_all, monkeypatch, caplog):
    host, port = loopback_server.getsockname()[:2]
    worker = NotificationWorker(host, port, sender="h")
    assert worker.connect() is True

    real_encode = notifier.encode_event

    def picky_encode(sender: str, transaction: Transaction) -> bytes:
        if transaction.code == "BAD":
            raise TypeError("cannot encode")
        return real_encode(sender, transaction)

    monkeypatch.setattr(notifier, "encode_event", picky_encode)
    worker.start()

    received: list[bytes] = []
    reader = threading.Thread(target=lambda: received.append(read_all(loopback_server)), daemon=True)
    reader.start()

    for code in ("GOOD1", "BAD", "GOOD2"):
        worker.channel.put(Data(Transaction("A1", code, 1)))
    worker.channel.put(END_OF_STREAM)
    worker.join(5)
    reader.join(5)

    assert [e.code for e in notifier.iter_events(received)] == ["GOOD1", "GOOD2"]
    assert worker.skipped == 1
    assert "Could not serialize (A1, BAD)" in caplog.text


# ---------------------------------------------------------------------------
# Listener
# ---------------------------------------------------------------------------


def test_listener_receives_forwarded_events():
    events: list[NotificationEvent] = []
    got_all = threading.Event()

    def on_event(event: NotificationEvent, client_address) -> None:
        events.append(event)
        if len(events) == 2:
            got_all.set()

    with EventListener(("127.0.0.1", 0), on_event) as server:
        serving = threading.Thread(target=server.serve_forever, daemon=True)
        serving.start()
        try:
            host, port = server.server_address[:2]
            worker = NotificationWorker(host, port, sender="scanner-3")
            assert worker.connect() is True
            worker.start()
            worker.channel.put(Data(Transaction("D4", "SKU010", 2)))
            worker.channel.put(Data(Transaction("D4", "SKU011", 1)))
            worker.channel.put(END_OF_STREAM)
            worker.join(5)

            assert got_all.wait(5)
        finally:
            server.shutdown()
            serving.join(5)

    assert events == [
        NotificationEvent("scanner-3", "D4", "SKU010", 2),
        NotificationEvent("scanner-3", "D4", "SKU011", 1),
    ]


def test_log_event_reports_sender_and_count(caplog):
    notifier.log_event(NotificationEvent("scanner-4", "A1", "SKU001", 3), ("127.0.0.1", 5555))
    assert "scanner-4 counted (A1, SKU001, 3)" in caplog.text
