"""
Task Registry

Single source of truth for which jobs the agent holds and their state.
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional

import structlog

from fleet_agent.domain.entities import TaskState
from fleet_agent.domain.value_objects import TaskStatus, utc_now
from fleet_agent.errors import TaskAlreadyExistsError, TaskNotFoundError


logger = structlog.get_logger(__name__)


class ReadWriteLock:
    """
    Many readers or one writer.

    Writers are preferred: once a writer waits, new readers queue behind it,
    so frequent status queries cannot starve inserts.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class TaskRegistry:
    """
    Mapping from job id to TaskState.

    The map is guarded by a reader/writer lock; each TaskState guards its own
    fields, so mutating one task never blocks queries about another.
    Finished tasks are evicted by reap() according to the retention policy.
    """

    def __init__(self, retention_seconds: float = 3600.0, max_retained: int = 1000):
        """
        Args:
            retention_seconds: How long a finished task stays after its end_time
            max_retained: Maximum number of finished tasks kept
        """
        self._tasks: Dict[str, TaskState] = {}
        self._lock = ReadWriteLock()
        self.retention_seconds = retention_seconds
        self.max_retained = max_retained

    def put(self, task_id: str, state: TaskState) -> None:
        """
        Insert a new task.

        Raises:
            TaskAlreadyExistsError: The id is already present
        """
        with self._lock.write():
            if task_id in self._tasks:
                raise TaskAlreadyExistsError(task_id)
            self._tasks[task_id] = state
        logger.debug("Task registered", task_id=task_id, status=state.status.value)

    def get(self, task_id: str) -> TaskState:
        """
        Raises:
            TaskNotFoundError: No task with this id
        """
        with self._lock.read():
            state = self._tasks.get(task_id)
        if state is None:
            raise TaskNotFoundError(task_id)
        return state

    def find(self, task_id: str) -> Optional[TaskState]:
        with self._lock.read():
            return self._tasks.get(task_id)

    def for_each(self, func: Callable[[TaskState], None]) -> None:
        """Call func for every task; the map is not locked while func runs."""
        for state in self.snapshot():
            func(state)

    def snapshot(self) -> List[TaskState]:
        with self._lock.read():
            return list(self._tasks.values())

    def count(self, status: Optional[TaskStatus] = None) -> int:
        if status is None:
            with self._lock.read():
                return len(self._tasks)
        return sum(1 for state in self.snapshot() if state.status == status)

    def reap(self, now: Optional[datetime] = None) -> List[str]:
        """
        Evict finished tasks.

        Drops terminal tasks whose end_time is older than retention_seconds,
        then the oldest terminal tasks beyond max_retained. Pending and
        running tasks are never evicted.

        Returns:
            Ids of the evicted tasks
        """
        now = now or utc_now()
        cutoff = now - timedelta(seconds=self.retention_seconds)

        finished = [
            state for state in self.snapshot()
            if state.is_terminal and state.end_time is not None
        ]
        finished.sort(key=lambda state: state.end_time)

        expired = [state.id for state in finished if state.end_time <= cutoff]
        survivors = [state.id for state in finished if state.end_time > cutoff]
        overflow = max(len(survivors) - self.max_retained, 0)
        evict = expired + survivors[:overflow]

        if evict:
            with self._lock.write():
                for task_id in evict:
                    self._tasks.pop(task_id, None)
            logger.info("Finished tasks evicted", count=len(evict), remaining=len(self))

        return evict

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._tasks)

    def __contains__(self, task_id: str) -> bool:
        with self._lock.read():
            return task_id in self._tasks
