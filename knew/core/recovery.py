"""
Background recovery queue for KNEW.

Failed transient operations are parked here and replayed with exponential
backoff by a single worker until they succeed or run out of attempts.
"""
import json
import time
import uuid
import asyncio
import logging
from dataclasses import dataclass, field, replace, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import aiohttp
import async_timeout

from knew.core.client import ApiResponse
from knew.core.events import EventBus, Observer, RecoveryStateChanged
from knew.utils.http import REQUEST_TIMEOUT

# Configure logging
logger = logging.getLogger(__name__)

BASE_RETRY_DELAY = 1.0  # seconds
MAX_RETRY_DELAY = 32.0  # seconds
BACKOFF_MULTIPLIER = 2
POLL_INTERVAL = 1.0  # longest single sleep while waiting for the next task
DEFAULT_MAX_RETRIES = 6


class TaskType(str, Enum):
    FETCH_NEWS = "fetch-news"
    ANALYZE_NEWS = "analyze-news"
    API_ERROR = "api-error"


def backoff_delay(retry_count: int, base: float = BASE_RETRY_DELAY, maximum: float = MAX_RETRY_DELAY) -> float:
    """
    Delay before the next attempt: ``min(base * 2**retry_count, maximum)``.

    Args:
        retry_count: Attempts already made
        base: Delay for retry_count 0
        maximum: Upper bound

    Returns:
        Delay in seconds
    """
    return min(base * (BACKOFF_MULTIPLIER ** retry_count), maximum)


@dataclass(frozen=True)
class RecoveryTask:
    id: str
    type: str
    params: Dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    next_retry_at: float = 0.0
    max_retries: int = DEFAULT_MAX_RETRIES
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecoveryTask":
        return cls(
            id=data["id"],
            type=data["type"],
            params=data.get("params") or {},
            retry_count=int(data.get("retry_count", 0)),
            next_retry_at=float(data.get("next_retry_at", 0.0)),
            max_retries=int(data.get("max_retries", DEFAULT_MAX_RETRIES)),
            last_error=data.get("last_error"),
        )


class PersistentQueue:
    """
    Storage behind the recovery queue.

    The queue only depends on these four operations, not on how the tasks
    are persisted.
    """
    def append(self, task: RecoveryTask) -> None:
        raise NotImplementedError

    def remove(self, task_id: str) -> None:
        raise NotImplementedError

    def update(self, task: RecoveryTask) -> None:
        raise NotImplementedError

    def list(self) -> List[RecoveryTask]:
        raise NotImplementedError


class InMemoryQueue(PersistentQueue):
    def __init__(self, tasks: Optional[List[RecoveryTask]] = None):
        self._tasks: Dict[str, RecoveryTask] = {t.id: t for t in tasks or []}

    def append(self, task: RecoveryTask) -> None:
        self._tasks[task.id] = task

    def remove(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)

    def update(self, task: RecoveryTask) -> None:
        if task.id in self._tasks:
            self._tasks[task.id] = task

    def list(self) -> List[RecoveryTask]:
        return list(self._tasks.values())


class JsonFileQueue(InMemoryQueue):
    """
    Recovery queue persisted as a JSON file.

    The file is loaded once at construction and rewritten after every
    mutation. Unreadable files start an empty queue; failed writes are
    logged and the in-memory state stays authoritative.
    """
    def __init__(self, path: str):
        self.path = Path(path)
        super().__init__(self.load())

    def load(self) -> List[RecoveryTask]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            return [RecoveryTask.from_dict(item) for item in raw]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Could not load recovery queue from {self.path}: {e}")
            return []

    def save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump([t.to_dict() for t in self.list()], f, indent=2)
        except (OSError, TypeError) as e:
            logger.error(f"Could not save recovery queue to {self.path}: {e}")

    def append(self, task: RecoveryTask) -> None:
        super().append(task)
        self.save()

    def remove(self, task_id: str) -> None:
        super().remove(task_id)
        self.save()

    def update(self, task: RecoveryTask) -> None:
        super().update(task)
        self.save()


RetryHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


async def replay_api_call(params: Dict[str, Any], session: Optional[aiohttp.ClientSession] = None) -> ApiResponse:
    """
    Replay a raw HTTP call recorded in an ``api-error`` task.

    A 2xx whose JSON body carries an ``error`` field still counts as a
    failure.

    Args:
        params: ``{"url": ..., "method": ..., "json": ..., "headers": ...}``
        session: Optional shared session

    Returns:
        ApiResponse describing the replay
    """
    owns_session = session is None
    session = session or aiohttp.ClientSession()
    try:
        async with async_timeout.timeout(REQUEST_TIMEOUT):
            async with session.request(
                params.get("method", "GET"),
                params["url"],
                json=params.get("json"),
                headers=params.get("headers"),
            ) as response:
                if response.status >= 400:
                    return ApiResponse.failure(f"HTTP {response.status}", None, details={"status": response.status})
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = {"body": await response.text()}
                return ApiResponse(data=data if data is not None else {})
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        return ApiResponse.failure(str(e) or type(e).__name__, None)
    finally:
        if owns_session:
            await session.close()


class RecoveryQueue:
    """
    Replays failed operations with exponential backoff.

    One worker task drains the queue: it retries every task whose
    ``next_retry_at`` has passed, one after another, and otherwise sleeps
    until the earliest one is due (at most ``poll_interval`` at a time so new
    tasks are picked up promptly). A task is removed on success, or on the
    attempt that brings ``retry_count`` to ``max_retries``.
    """
    def __init__(
        self,
        store: Optional[PersistentQueue] = None,
        handlers: Optional[Dict[str, RetryHandler]] = None,
        observer: Optional[Observer] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        base_delay: float = BASE_RETRY_DELAY,
        max_delay: float = MAX_RETRY_DELAY,
        poll_interval: float = POLL_INTERVAL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        auto_start: bool = True,
    ):
        self.store = store if store is not None else InMemoryQueue()
        self.handlers: Dict[str, RetryHandler] = {TaskType.API_ERROR.value: replay_api_call}
        self.handlers.update({_type_value(k): v for k, v in (handlers or {}).items()})
        self.observer = observer or Observer()
        self.bus = bus
        self.clock = clock
        self.sleep = sleep
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.poll_interval = poll_interval
        self.max_retries = max_retries
        self.auto_start = auto_start
        self._worker: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._attempting: Set[str] = set()

    @property
    def pending(self) -> List[RecoveryTask]:
        return self.store.list()

    @property
    def is_recovering(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def register(self, task_type, handler: RetryHandler) -> None:
        """
        Register the retry function for a task type.

        Args:
            task_type: TaskType or its string value
            handler: Coroutine function taking the task params and returning
                an ApiResponse (or a bool)
        """
        self.handlers[_type_value(task_type)] = handler

    def schedule(self, task_type, params: Dict[str, Any], error: Optional[str] = None, max_retries: Optional[int] = None) -> RecoveryTask:
        """
        Queue a failed operation for background retry.

        Args:
            task_type: Kind of operation (TaskType or string)
            params: Parameters needed to replay it
            error: Message of the failure that caused the scheduling
            max_retries: Maximum attempts, defaults to the queue's

        Returns:
            The new task
        """
        type_value = _type_value(task_type)
        task = RecoveryTask(
            id=f"{type_value}-{uuid.uuid4().hex}",
            type=type_value,
            params=dict(params),
            retry_count=0,
            next_retry_at=self.clock() + backoff_delay(0, self.base_delay, self.max_delay),
            max_retries=self.max_retries if max_retries is None else max_retries,
            last_error=error,
        )
        self.store.append(task)
        self.observer.on_task_scheduled(task)

        if self.auto_start:
            self.start()
        return task

    def start(self) -> Optional[asyncio.Task]:
        """Start the worker if it is not already running. Needs a running loop."""
        if self.is_recovering:
            return self._worker
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; recovery worker not started")
            return None
        self._worker = loop.create_task(self._run())
        return self._worker

    async def stop(self) -> None:
        """Cancel the worker; queued tasks stay in the store."""
        worker = self._worker
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    async def drain(self) -> None:
        """Run the worker (starting it if needed) until the queue is empty."""
        worker = self.start()
        if worker is not None:
            await worker

    async def _run(self) -> None:
        self._publish(True)
        try:
            while self.store.list():
                ready = await self._claim_ready()
                if not ready:
                    earliest = min(t.next_retry_at for t in self.store.list())
                    delay = max(0.0, earliest - self.clock())
                    await self.sleep(min(delay, self.poll_interval))
                    continue

                for task in ready:
                    try:
                        await self._attempt(task)
                    finally:
                        self._attempting.discard(task.id)
        finally:
            self._publish(False)

    async def _claim_ready(self) -> List[RecoveryTask]:
        async with self._lock:
            now = self.clock()
            ready = [
                t for t in self.store.list()
                if t.next_retry_at <= now and t.id not in self._attempting
            ]
            self._attempting.update(t.id for t in ready)
            return ready

    async def _attempt(self, task: RecoveryTask) -> None:
        logger.info(f"Retrying task: {task.type} (attempt {task.retry_count + 1}/{task.max_retries})")

        error = task.last_error
        handler = self.handlers.get(task.type)
        if handler is None:
            logger.warning(f"Unknown task type: {task.type}")
            success = False
        else:
            try:
                outcome = await handler(task.params)
                success = _is_success(outcome)
                if not success and isinstance(outcome, ApiResponse) and outcome.error is not None:
                    error = outcome.error.message
            except Exception as e:
                logger.error(f"Error processing task {task.id}: {e}")
                success = False
                error = str(e)

        if success:
            self.store.remove(task.id)
            self.observer.on_task_succeeded(task)
            return

        retry_count = task.retry_count + 1
        if retry_count >= task.max_retries:
            self.store.remove(task.id)
            self.observer.on_task_exhausted(replace(task, retry_count=retry_count, last_error=error))
            return

        delay = backoff_delay(retry_count, self.base_delay, self.max_delay)
        updated = replace(
            task,
            retry_count=retry_count,
            next_retry_at=max(task.next_retry_at, self.clock() + delay),
            last_error=error,
        )
        self.store.update(updated)
        self.observer.on_task_rescheduled(updated, delay)

    def _publish(self, recovering: bool) -> None:
        if self.bus is not None:
            self.bus.publish(RecoveryStateChanged(recovering=recovering, pending=len(self.store.list())))


def _type_value(task_type) -> str:
    return task_type.value if isinstance(task_type, TaskType) else str(task_type)


def _is_success(outcome: Any) -> bool:
    if isinstance(outcome, ApiResponse):
        return outcome.is_success()
    if isinstance(outcome, bool):
        return outcome
    return False
