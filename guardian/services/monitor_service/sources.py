"""Event sources feeding the monitoring pipeline.

Push adapters (chat bots, device agents) and periodic re-scans of a
message store both look the same to the pipeline: an iterable of Message.
"""
import logging
import queue
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Iterable, Iterator, Optional

from guardian.shared.models import Message

logger = logging.getLogger(__name__)


class MessageSource(ABC):
    """Iterable stream of messages; iteration ends once the source is closed."""

    def __init__(self):
        self._closed = threading.Event()

    @abstractmethod
    def __iter__(self) -> Iterator[Message]:
        """Yield messages as they become available."""

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()


class QueueMessageSource(MessageSource):
    """Source that push adapters write into.

    Messages pushed before close() are still yielded; iteration ends once
    the source is closed and drained.
    """

    def __init__(self, maxsize: int = 0, poll_interval: float = 0.5):
        super().__init__()
        self.poll_interval = poll_interval
        self._queue: "queue.Queue[Message]" = queue.Queue(maxsize=maxsize)

    def push(self, message: Message) -> None:
        if self.closed:
            raise RuntimeError("Source is closed")
        self._queue.put(message)

    def __iter__(self) -> Iterator[Message]:
        while True:
            try:
                yield self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                if self.closed:
                    return


class PollingMessageSource(MessageSource):
    """Periodically re-scans a message store.

    Scan windows overlap, so message ids already yielded are remembered
    (up to `seen_capacity` most recent) and skipped.
    """

    def __init__(
        self,
        fetch: Callable[[], Iterable[Message]],
        poll_interval_seconds: float = 30.0,
        seen_capacity: int = 10000,
        max_polls: Optional[int] = None,
    ):
        """Initialize polling source.

        Args:
            fetch: Returns the messages currently in the store
            poll_interval_seconds: Delay between scans
            seen_capacity: How many message ids are remembered for dedup
            max_polls: Stop after this many scans (None: until closed)
        """
        super().__init__()
        self._fetch = fetch
        self.poll_interval_seconds = poll_interval_seconds
        self.seen_capacity = seen_capacity
        self.max_polls = max_polls
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self.polls = 0
        self.fetch_failures = 0

    def __iter__(self) -> Iterator[Message]:
        while not self.closed:
            yield from self.poll_once()
            if self.max_polls is not None and self.polls >= self.max_polls:
                return
            # Returns early when close() is called
            self._closed.wait(self.poll_interval_seconds)

    def poll_once(self) -> Iterator[Message]:
        """Run one scan, yielding messages not seen before."""
        self.polls += 1
        try:
            batch = list(self._fetch())
        except Exception as e:
            self.fetch_failures += 1
            logger.error(
                "MESSAGE_POLL_FAILED",
                extra={
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "poll": self.polls,
                    "consecutive_failures": self.fetch_failures,
                }
            )
            return
        self.fetch_failures = 0

        new = 0
        for message in batch:
            if message.message_id in self._seen:
                continue
            self._remember(message.message_id)
            new += 1
            yield message

        logger.debug(
            "MESSAGE_POLL_COMPLETED",
            extra={"fetched": len(batch), "new": new, "poll": self.polls}
        )

    def _remember(self, message_id: str) -> None:
        self._seen[message_id] = None
        while len(self._seen) > self.seen_capacity:
            self._seen.popitem(last=False)
