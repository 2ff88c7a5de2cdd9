"""RecoveryQueue tests."""
import asyncio
import json

import pytest

from knew.core.client import ApiResponse
from knew.core.events import EventBus, Observer, RecoveryStateChanged
from knew.core.recovery import (
    InMemoryQueue,
    JsonFileQueue,
    RecoveryQueue,
    RecoveryTask,
    TaskType,
    backoff_delay,
)
from knew.errors import ErrorCode


class RecordingObserver(Observer):
    def __init__(self):
        self.scheduled = []
        self.succeeded = []
        self.rescheduled = []
        self.exhausted = []

    def on_task_scheduled(self, task):
        self.scheduled.append(task)

    def on_task_succeeded(self, task):
        self.succeeded.append(task)

    def on_task_rescheduled(self, task, delay):
        self.rescheduled.append((task, delay))

    def on_task_exhausted(self, task):
        self.exhausted.append(task)


def make_queue(clock, **kwargs):
    kwargs.setdefault("auto_start", False)
    kwargs.setdefault("poll_interval", 1000)
    return RecoveryQueue(clock=clock, sleep=clock.sleep, **kwargs)


def test_backoff_delay_doubles_and_caps():
    assert [backoff_delay(n) for n in range(8)] == [1, 2, 4, 8, 16, 32, 32, 32]
    assert backoff_delay(3, base=0.5, maximum=3) == 3


def test_schedule_sets_first_retry_one_second_out(clock):
    observer = RecordingObserver()
    queue = make_queue(clock, observer=observer)

    task = queue.schedule(TaskType.FETCH_NEWS, {"text": "x"}, error="boom")

    assert task.retry_count == 0
    assert task.type == "fetch-news"
    assert task.id.startswith("fetch-news-")
    assert task.next_retry_at == clock() + 1
    assert task.last_error == "boom"
    assert queue.pending == [task]
    assert observer.scheduled == [task]


@pytest.mark.asyncio
async def test_failing_task_backs_off_and_is_removed_at_max_retries(clock):
    observer = RecordingObserver()
    attempts = []

    async def always_fails(params):
        attempts.append(clock())
        return ApiResponse.failure("upstream down", ErrorCode.SERVER_ERROR)

    queue = make_queue(clock, observer=observer, handlers={TaskType.FETCH_NEWS: always_fails}, max_retries=8)
    start = clock()
    queue.schedule(TaskType.FETCH_NEWS, {})

    await queue.drain()

    assert len(attempts) == 8
    assert [t - start for t in attempts] == [1, 3, 7, 15, 31, 63, 95, 127]
    gaps = [b - a for a, b in zip(attempts, attempts[1:])]
    assert gaps == [min(2 ** n, 32) for n in range(1, 8)]

    assert [t.retry_count for t, _ in observer.rescheduled] == [1, 2, 3, 4, 5, 6, 7]
    assert len(observer.exhausted) == 1
    assert observer.exhausted[0].retry_count == 8
    assert observer.exhausted[0].last_error == "upstream down"
    assert queue.pending == []


@pytest.mark.asyncio
async def test_successful_retry_removes_task(clock):
    observer = RecordingObserver()
    outcomes = [
        ApiResponse.failure("busy", ErrorCode.RATE_LIMITED),
        ApiResponse(data={"news": []}),
    ]

    async def handler(params):
        return outcomes.pop(0)

    queue = make_queue(clock, observer=observer, handlers={"analyze-news": handler})
    queue.schedule(TaskType.ANALYZE_NEWS, {"url": "https://x/1"})

    await queue.drain()

    assert queue.pending == []
    assert len(observer.succeeded) == 1
    assert observer.exhausted == []


@pytest.mark.asyncio
async def test_error_payload_is_not_counted_as_success(clock):
    observer = RecordingObserver()

    async def handler(params):
        return ApiResponse(data={"error": "quota"})

    queue = make_queue(clock, observer=observer, handlers={TaskType.FETCH_NEWS: handler}, max_retries=2)
    queue.schedule(TaskType.FETCH_NEWS, {})

    await queue.drain()

    assert observer.succeeded == []
    assert len(observer.exhausted) == 1


@pytest.mark.asyncio
async def test_handler_exception_counts_as_failed_attempt(clock):
    observer = RecordingObserver()

    async def handler(params):
        raise RuntimeError("kaput")

    queue = make_queue(clock, observer=observer, handlers={TaskType.FETCH_NEWS: handler}, max_retries=1)
    queue.schedule(TaskType.FETCH_NEWS, {})

    await queue.drain()

    assert observer.exhausted[0].last_error == "kaput"


@pytest.mark.asyncio
async def test_unknown_task_type_fails_until_exhausted(clock):
    observer = RecordingObserver()
    queue = make_queue(clock, observer=observer, max_retries=2)
    queue.schedule("mystery", {})

    await queue.drain()

    assert len(observer.exhausted) == 1
    assert queue.pending == []


@pytest.mark.asyncio
async def test_task_never_dispatched_before_next_retry_at(clock):
    seen = []

    async def handler(params):
        seen.append(clock())
        return True

    queue = make_queue(clock, handlers={TaskType.FETCH_NEWS: handler})
    task = queue.schedule(TaskType.FETCH_NEWS, {})

    await queue.drain()

    assert seen and seen[0] >= task.next_retry_at


@pytest.mark.asyncio
async def test_auto_start_runs_worker_and_publishes_state(clock):
    bus = EventBus()
    states = []
    bus.subscribe(RecoveryStateChanged, lambda e: states.append(e.recovering))

    async def handler(params):
        return True

    queue = RecoveryQueue(
        handlers={TaskType.FETCH_NEWS: handler},
        bus=bus,
        clock=clock,
        sleep=clock.sleep,
    )
    queue.schedule(TaskType.FETCH_NEWS, {})
    assert queue.is_recovering

    await queue.drain()

    assert not queue.is_recovering
    assert states == [True, False]


@pytest.mark.asyncio
async def test_stop_keeps_tasks_queued(clock):
    gate = asyncio.Event()

    async def sleep_forever(seconds):
        await gate.wait()

    queue = RecoveryQueue(clock=clock, sleep=sleep_forever)
    queue.schedule(TaskType.FETCH_NEWS, {})
    await asyncio.sleep(0)

    await queue.stop()

    assert not queue.is_recovering
    assert len(queue.pending) == 1


def test_start_without_running_loop_is_a_no_op(clock):
    queue = make_queue(clock)
    assert queue.start() is None


def test_in_memory_queue_update_ignores_unknown_ids():
    store = InMemoryQueue()
    store.update(RecoveryTask(id="ghost", type="fetch-news"))
    assert store.list() == []


def test_json_file_queue_persists_tasks(tmp_path):
    path = tmp_path / "queue" / "recovery.json"
    store = JsonFileQueue(str(path))
    task = RecoveryTask(id="fetch-news-1", type="fetch-news", params={"text": "x"}, next_retry_at=5.0)

    store.append(task)
    assert json.loads(path.read_text())[0]["id"] == "fetch-news-1"

    reloaded = JsonFileQueue(str(path))
    assert reloaded.list() == [task]

    reloaded.remove(task.id)
    assert JsonFileQueue(str(path)).list() == []


def test_json_file_queue_survives_corrupt_file(tmp_path):
    path = tmp_path / "recovery.json"
    path.write_text("{not json")

    assert JsonFileQueue(str(path)).list() == []


def test_task_dict_round_trip():
    task = RecoveryTask(id="a", type="api-error", params={"url": "https://x"}, retry_count=2, next_retry_at=10.0, last_error="e")
    assert RecoveryTask.from_dict(task.to_dict()) == task
