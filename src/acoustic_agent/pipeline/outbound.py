"""Outbound hand-off between the analysis pipeline and its consumer."""

import threading
from typing import Optional, Protocol


class Outbound(Protocol):
    """Anything the emitter can ``put`` encoded records into.

    ``queue.Queue(maxsize=1)`` gives the blocking contract (the emitter waits
    for the consumer); ``LatestMailbox`` never blocks the producer.
    """

    def put(self, item: bytes) -> None:
        ...


class LatestMailbox:
    """Single-slot mailbox that keeps only the newest record.

    ``put`` never blocks: a record still waiting when the next one arrives is
    dropped. Records therefore come out in production order, with gaps when
    the consumer is slow.

    Interface:
      mailbox = LatestMailbox()
      mailbox.put(record)            # producer (audio thread / worker)
      record = mailbox.get(timeout)  # consumer; None on timeout
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._item: Optional[bytes] = None
        self._dropped = 0

    def put(self, item: bytes) -> None:
        with self._cond:
            if self._item is not None:
                self._dropped += 1
            self._item = item
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Wait for a record; returns None if none arrives within ``timeout``."""
        with self._cond:
            if self._item is None:
                self._cond.wait_for(lambda: self._item is not None, timeout=timeout)
            item, self._item = self._item, None
            return item

    def get_nowait(self) -> Optional[bytes]:
        with self._cond:
            item, self._item = self._item, None
            return item

    @property
    def dropped(self) -> int:
        """Number of records replaced before a consumer took them."""
        with self._cond:
            return self._dropped

    def __len__(self) -> int:
        with self._cond:
            return 0 if self._item is None else 1
