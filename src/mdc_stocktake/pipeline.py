"""Hand-off between the interactive session and the background workers.

Design:
- Each background worker owns one :class:`Channel`. A channel has no buffer:
  ``put`` returns only once the worker has taken the record, so the session
  can never run more than one record ahead of a worker.
- The session is the single producer, so every worker observes records in
  submission order.
- :class:`PersistenceWorker` keeps one store transaction open for the whole
  session and commits it once, after the end-of-stream record.
- :class:`Pipeline` fans each submitted transaction out to the notifier (when
  online) and to persistence, and runs the shutdown protocol.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Iterator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from . import log
from .data_manager import upsert_count
from .records import END_OF_STREAM, Data, Record, Transaction

if TYPE_CHECKING:
    from .notifier import NotificationWorker


# Failures of a single record; the driver raises the non-SQLAlchemy ones while
# binding parameters, e.g. a lone surrogate in an item code.
RECORD_ERRORS = (SQLAlchemyError, UnicodeError, ValueError, TypeError)


class ChannelClosed(RuntimeError):
    """Raised when sending on a channel that has been closed."""


_EMPTY = object()


class Channel:
    """Zero-capacity rendezvous channel between one producer and one consumer."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._cond = threading.Condition()
        self._pending: object = _EMPTY
        self._sent = 0
        self._received = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def put(self, record: Record) -> None:
        """Block until a receiver has taken ``record``.

        Raises:
            ChannelClosed: If the channel is closed before or during the
                hand-off.
        """
        with self._cond:
            while self._pending is not _EMPTY and not self._closed:
                self._cond.wait()
            if self._closed:
                raise ChannelClosed(f"channel '{self.name}' is closed")

            self._pending = record
            self._sent += 1
            ticket = self._sent
            self._cond.notify_all()

            while self._received < ticket and not self._closed:
                self._cond.wait()
            if self._received < ticket:
                self._pending = _EMPTY
                raise ChannelClosed(f"channel '{self.name}' closed before hand-off")

    def get(self) -> Record:
        """Take the next record, or ``END_OF_STREAM`` once closed and drained."""
        with self._cond:
            while self._pending is _EMPTY and not self._closed:
                self._cond.wait()
            if self._pending is _EMPTY:
                return END_OF_STREAM

            record = self._pending
            self._pending = _EMPTY
            self._received += 1
            self._cond.notify_all()
            return record  # type: ignore[return-value]

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[Transaction]:
        """Yield transactions until an end-of-stream record or closure."""
        while True:
            record = self.get()
            if not isinstance(record, Data):
                return
            yield record.transaction


class PersistenceWorker:
    """Background writer that applies every transaction to the store.

    All writes share one database transaction that is committed after the
    end-of-stream record. A failing record is logged and skipped; it does not
    abort the open transaction.
    """

    def __init__(self, engine: Engine, channel: Optional[Channel] = None) -> None:
        self.engine = engine
        self.channel = channel if channel is not None else Channel("persistence")
        self.stored = 0
        self.failed = 0
        self.committed = False
        self._abandon = threading.Event()
        self._thread = threading.Thread(target=self._run, name="persistence-worker", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread.ident is not None:
            self._thread.join(timeout)

    def abandon(self) -> None:
        """Stop receiving and roll back instead of committing."""
        self._abandon.set()
        self.channel.close()

    def _run(self) -> None:
        try:
            self._consume()
        finally:
            self.channel.close()

    def _consume(self) -> None:
        try:
            conn = self.engine.connect()
            trans = conn.begin()
        except SQLAlchemyError as exc:
            log.error("Could not open a store transaction: %s", exc)
            for _ in self.channel:
                self.failed += 1
            return

        try:
            for transaction in self.channel:
                try:
                    upsert_count(conn, transaction)
                    self.stored += 1
                except RECORD_ERRORS as exc:
                    self.failed += 1
                    log.error(
                        "Could not store (%s, %s, %s): %s",
                        transaction.location,
                        transaction.code,
                        transaction.soh,
                        exc,
                    )

            if self._abandon.is_set():
                log.warning("Stocktake aborted, discarding %d uncommitted counts", self.stored)
                trans.rollback()
                return

            log.debug("Got end of transactions, committing %d counts", self.stored)
            try:
                trans.commit()
                self.committed = True
            except SQLAlchemyError as exc:
                log.error("Could not commit counts to the store: %s", exc)
        finally:
            conn.close()


class Pipeline:
    """Fan-out of submitted transactions to the background workers."""

    def __init__(self, persistence: PersistenceWorker, notifier: Optional["NotificationWorker"] = None) -> None:
        self.persistence = persistence
        self.notifier = notifier
        self._closed = False

    @property
    def online(self) -> bool:
        return self.notifier is not None and self.notifier.online

    def start(self) -> None:
        self.persistence.start()
        if self.online:
            self.notifier.start()  # type: ignore[union-attr]

    def dispatch(self, transaction: Transaction) -> None:
        """Hand ``transaction`` to the notifier (when online), then to persistence."""
        record = Data(transaction)
        if self.online:
            self.notifier.channel.put(record)  # type: ignore[union-attr]
        self.persistence.channel.put(record)

    def close(self) -> None:
        """Send end-of-stream, wait for the workers, and release the channels."""
        if self._closed:
            return
        self._closed = True

        log.debug("Destroying context, sending end of transactions...")
        if self.online and not self.notifier.channel.closed:  # type: ignore[union-attr]
            self.notifier.channel.put(END_OF_STREAM)  # type: ignore[union-attr]
        self.persistence.channel.put(END_OF_STREAM)
        self.persistence.join()
        self.persistence.channel.close()
        if self.notifier is not None:
            self.notifier.join()

    def abort(self, timeout: Optional[float] = None) -> None:
        """Tear down without committing, waiting at most ``timeout`` per worker."""
        if self._closed:
            return
        self._closed = True
        self.persistence.abandon()
        if self.notifier is not None:
            self.notifier.channel.close()
        self.persistence.join(timeout)
        if self.notifier is not None:
            self.notifier.join(timeout)
