"""
Log Broadcaster

Per-job fan-out of log lines to live observers.

Every line is appended to the job's history first and then offered to a
bounded queue drained by a single fan-out task. A subscriber attaching
mid-job receives the history snapshot followed by live lines; lines that
were already in its snapshot are skipped, so nothing is delivered twice.
"""

import asyncio
import threading
from typing import Dict, List, Optional, Protocol, Set, Tuple

import structlog


logger = structlog.get_logger(__name__)

# Outbox capacity of one subscriber; a subscriber this far behind is dropped.
DEFAULT_SUBSCRIBER_BUFFER = 256

_CLOSED = object()


class LogHistory(Protocol):
    """Where the persistent lines live (TaskState in practice)."""

    def append_log(self, line: str) -> int:
        ...

    def log_history(self) -> List[str]:
        ...


class Subscription:
    """
    One observer's view of a job's log.

    Iterate with `async for line in subscription`; iteration ends when the
    channel closes or when the subscriber is dropped for falling behind.
    """

    def __init__(self, channel: "LogChannel", after_seq: int, buffer_size: int):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._capacity = buffer_size
        self.after_seq = after_seq
        self.finished = False
        self.dropped = False

    def _replay(self, lines: List[str]) -> None:
        # The snapshot does not count against the live buffer.
        self._capacity += len(lines)
        for line in lines:
            self._queue.put_nowait(line)

    def _offer(self, line: str) -> bool:
        """Queue a live line; False if the outbox is full."""
        if self.finished:
            return False
        if self._queue.qsize() >= self._capacity:
            return False
        self._queue.put_nowait(line)
        return True

    def _finish(self, dropped: bool = False) -> None:
        if self.finished:
            return
        self.finished = True
        self.dropped = dropped
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> Optional[str]:
        """Next line, or None once the subscription has ended."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep returning None to repeated callers.
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self) -> None:
        """Detach from the channel (observer went away)."""
        self._channel.unsubscribe(self)
        self._finish()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> str:
        line = await self.get()
        if line is None:
            raise StopAsyncIteration
        return line


class LogChannel:
    """
    Live log stream of one job.

    publish() never blocks: when the fan-out queue is full the live copy of
    the line is dropped (it is still in the history). close() is idempotent
    and ends every subscription once the lines queued before it are delivered.
    """

    def __init__(
        self,
        job_id: str,
        history: LogHistory,
        queue_size: int = 100,
        subscriber_buffer: int = DEFAULT_SUBSCRIBER_BUFFER,
    ):
        self.job_id = job_id
        self._history = history
        self._queue_size = queue_size
        self._subscriber_buffer = subscriber_buffer
        self._queue: asyncio.Queue = asyncio.Queue()
        self._subscribers: Set[Subscription] = set()
        self._lock = threading.Lock()
        self._closed = False
        self._fanout: Optional[asyncio.Task] = None
        self.dropped_lines = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def start(self) -> None:
        """Start the fan-out task. Must be called from a running event loop."""
        if self._fanout is None and not self._closed:
            self._fanout = asyncio.create_task(self._run(), name=f"logs:{self.job_id}")

    def publish(self, line: str) -> None:
        with self._lock:
            seq = self._history.append_log(line)
            if self._closed:
                return
            if self._queue.qsize() >= self._queue_size:
                self.dropped_lines += 1
                if self.dropped_lines == 1:
                    logger.warning("Log queue full, dropping live lines", job_id=self.job_id)
                return
            self._queue.put_nowait((seq, line))

    def subscribe(self) -> Subscription:
        """
        Attach an observer.

        The history snapshot and the registration happen under one lock, so
        every line is either in the snapshot or delivered live, never both.
        """
        with self._lock:
            history = self._history.log_history()
            subscription = Subscription(self, after_seq=len(history), buffer_size=self._subscriber_buffer)
            subscription._replay(history)
            if self._closed:
                subscription._finish()
            else:
                self._subscribers.add(subscription)
        logger.debug("Log subscriber attached", job_id=self.job_id, replayed=len(history))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._fanout is not None:
                self._queue.put_nowait(_CLOSED)
                return
            subscribers = self._take_subscribers()
        # No fan-out task ever ran: nothing is queued, end subscriptions now.
        for subscription in subscribers:
            subscription._finish()

    async def wait_closed(self) -> None:
        """Wait until the fan-out task has delivered everything and exited."""
        if self._fanout is not None:
            await asyncio.shield(self._fanout)

    async def _run(self) -> None:
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSED:
                    break
                seq, line = item
                self._deliver(seq, line)
        finally:
            with self._lock:
                subscribers = self._take_subscribers()
            for subscription in subscribers:
                subscription._finish()

    def _deliver(self, seq: int, line: str) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        stale: List[Subscription] = []
        for subscription in subscribers:
            if seq <= subscription.after_seq:
                continue
            if not subscription._offer(line):
                stale.append(subscription)

        for subscription in stale:
            self.unsubscribe(subscription)
            subscription._finish(dropped=True)
            logger.warning("Slow log subscriber dropped", job_id=self.job_id)

    def _take_subscribers(self) -> List[Subscription]:
        subscribers = list(self._subscribers)
        self._subscribers.clear()
        return subscribers


class LogBroadcaster:
    """Owns the log channels of all jobs held by the agent."""

    def __init__(self, queue_size: int = 100, subscriber_buffer: int = DEFAULT_SUBSCRIBER_BUFFER):
        self.queue_size = queue_size
        self.subscriber_buffer = subscriber_buffer
        self._channels: Dict[str, LogChannel] = {}
        self._lock = threading.Lock()

    def open(self, job_id: str, history: LogHistory) -> LogChannel:
        """Create and start the channel of a newly accepted job."""
        channel = LogChannel(
            job_id,
            history,
            queue_size=self.queue_size,
            subscriber_buffer=self.subscriber_buffer,
        )
        with self._lock:
            self._channels[job_id] = channel
        channel.start()
        return channel

    def get(self, job_id: str) -> Optional[LogChannel]:
        with self._lock:
            return self._channels.get(job_id)

    def discard(self, job_ids: List[str]) -> None:
        """Forget channels of evicted jobs, closing any still open."""
        with self._lock:
            channels: List[Tuple[str, LogChannel]] = [
                (job_id, self._channels.pop(job_id)) for job_id in job_ids if job_id in self._channels
            ]
        for _, channel in channels:
            channel.close()

    def close_all(self) -> None:
        with self._lock:
            channels = list(self._channels.values())
        for channel in channels:
            channel.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)
