"""
Observer hooks, system events and the in-process event bus for KNEW.
"""
import time
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

# Configure logging
logger = logging.getLogger(__name__)


class Observer:
    """
    Telemetry hooks called synchronously by the core components.

    Every hook is a no-op here; subclasses override what they care about.
    """
    def on_cache_hit(self, scope: str, key: str) -> None:
        pass

    def on_cache_miss(self, scope: str, key: str) -> None:
        pass

    def on_rate_limited(self, scope: str, subject: Optional[str], endpoint: Optional[str]) -> None:
        pass

    def on_api_call(self, name: str, duration: float, status: str) -> None:
        pass

    def on_degraded(self, key: str) -> None:
        pass

    def on_cooldown(self, until: float, duration: float) -> None:
        pass

    def on_task_scheduled(self, task) -> None:
        pass

    def on_task_succeeded(self, task) -> None:
        pass

    def on_task_rescheduled(self, task, delay: float) -> None:
        pass

    def on_task_exhausted(self, task) -> None:
        pass


class LoggingObserver(Observer):
    """Writes every hook to the module logger."""

    def on_cache_hit(self, scope, key):
        logger.debug(f"[{scope}] cache hit: {key}")

    def on_cache_miss(self, scope, key):
        logger.debug(f"[{scope}] cache miss: {key}")

    def on_rate_limited(self, scope, subject, endpoint):
        logger.warning(f"Rate limited ({scope}) {subject} on {endpoint}")

    def on_api_call(self, name, duration, status):
        logger.info(f"[API] {name} completed in {duration * 1000:.0f}ms ({status})")

    def on_degraded(self, key):
        logger.warning(f"Serving degraded cached response in place of {key}")

    def on_cooldown(self, until, duration):
        logger.warning(f"Rate limit cooldown for {duration:.0f}s")

    def on_task_scheduled(self, task):
        logger.warning(f"Recovery task added: {task.type} ({task.id})")

    def on_task_succeeded(self, task):
        logger.info(f"Recovery task succeeded: {task.id}")

    def on_task_rescheduled(self, task, delay):
        logger.info(f"Recovery task {task.id} rescheduled in {delay:.1f}s (attempt {task.retry_count}/{task.max_retries})")

    def on_task_exhausted(self, task):
        logger.error(f"Recovery task failed after {task.max_retries} attempts: {task.id}")


@dataclass(frozen=True)
class SystemEvent:
    type: str
    severity: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0


class EventSink:
    """Destination for structured system events (database table, queue, ...)."""

    def append(self, event: SystemEvent) -> None:
        raise NotImplementedError


class InMemoryEventSink(EventSink):
    def __init__(self):
        self.events: List[SystemEvent] = []

    def append(self, event: SystemEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[SystemEvent]:
        return [e for e in self.events if e.type == event_type]


class SystemEventObserver(Observer):
    """
    Turns recovery and rate-limit hooks into persisted system events.

    A failing sink is logged and ignored so that telemetry never changes the
    outcome of the operation being observed.
    """
    def __init__(self, sink: EventSink, clock: Callable[[], float] = time.time):
        self.sink = sink
        self.clock = clock

    def _emit(self, event_type: str, severity: str, **metadata) -> None:
        event = SystemEvent(type=event_type, severity=severity, metadata=metadata, created_at=self.clock())
        try:
            self.sink.append(event)
        except Exception as e:
            logger.error(f"Failed to record system event {event_type}: {e}")

    def on_rate_limited(self, scope, subject, endpoint):
        self._emit("RATE_LIMIT_EXCEEDED", "warn", scope=scope, subject=subject, endpoint=endpoint)

    def on_degraded(self, key):
        self._emit("CACHE_DEGRADED", "warn", cache_key=key)

    def on_cooldown(self, until, duration):
        self._emit("RATE_LIMIT_WARNING", "warn", cooldown_until=until, cooldown_seconds=duration)

    def on_task_scheduled(self, task):
        self._emit("RECOVERY_TASK_ADDED", "warn", task_id=task.id, task_type=task.type, retry_count=task.retry_count)

    def on_task_succeeded(self, task):
        self._emit("RECOVERY_TASK_SUCCEEDED", "info", task_id=task.id, task_type=task.type, retry_count=task.retry_count + 1)

    def on_task_exhausted(self, task):
        self._emit(
            "BACKGROUND_JOB_FAILED", "error",
            task_id=task.id, task_type=task.type, retry_count=task.retry_count, error=task.last_error,
        )


class CompositeObserver(Observer):
    """Fans every hook out to several observers; one failing does not stop the rest."""

    def __init__(self, observers: Sequence[Observer]):
        self.observers = list(observers)

    def _dispatch(self, hook: str, *args) -> None:
        for observer in self.observers:
            try:
                getattr(observer, hook)(*args)
            except Exception as e:
                logger.error(f"Observer {type(observer).__name__}.{hook} failed: {e}")

    def on_cache_hit(self, scope, key):
        self._dispatch("on_cache_hit", scope, key)

    def on_cache_miss(self, scope, key):
        self._dispatch("on_cache_miss", scope, key)

    def on_rate_limited(self, scope, subject, endpoint):
        self._dispatch("on_rate_limited", scope, subject, endpoint)

    def on_api_call(self, name, duration, status):
        self._dispatch("on_api_call", name, duration, status)

    def on_degraded(self, key):
        self._dispatch("on_degraded", key)

    def on_cooldown(self, until, duration):
        self._dispatch("on_cooldown", until, duration)

    def on_task_scheduled(self, task):
        self._dispatch("on_task_scheduled", task)

    def on_task_succeeded(self, task):
        self._dispatch("on_task_succeeded", task)

    def on_task_rescheduled(self, task, delay):
        self._dispatch("on_task_rescheduled", task, delay)

    def on_task_exhausted(self, task):
        self._dispatch("on_task_exhausted", task)


# Typed bus events

@dataclass(frozen=True)
class FollowsChanged:
    user_id: Optional[str]
    follows: Tuple = ()


@dataclass(frozen=True)
class RateLimitCooldown:
    until: Optional[float]


@dataclass(frozen=True)
class RecoveryStateChanged:
    recovering: bool
    pending: int


class EventBus:
    """
    Synchronous publish/subscribe keyed by event class.
    """
    def __init__(self):
        self._handlers: Dict[Type, List[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Callable[[Any], None]) -> Callable[[], None]:
        """
        Register a handler.

        Args:
            event_type: Event class to listen for
            handler: Called with the event instance

        Returns:
            Callable that removes the subscription
        """
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: Any) -> int:
        """
        Deliver an event to the handlers registered for its class.

        Returns:
            Number of handlers called
        """
        handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Handler for {type(event).__name__} failed: {e}")
        return len(handlers)


class RateLimitObserver:
    """
    Tracks the client-side cooldown after the backend reported a rate limit.
    """
    def __init__(self, bus: Optional[EventBus] = None, observer: Optional[Observer] = None, clock: Callable[[], float] = time.time):
        self.bus = bus
        self.observer = observer
        self.clock = clock
        self.cooldown_until: Optional[float] = None

    def record_rate_limit(self, cooldown: float = 60.0) -> float:
        """
        Start (or extend) a cooldown.

        Args:
            cooldown: Seconds before requests should be attempted again

        Returns:
            The timestamp the cooldown ends
        """
        until = self.clock() + cooldown
        self.cooldown_until = until
        if self.bus is not None:
            self.bus.publish(RateLimitCooldown(until=until))
        if self.observer is not None:
            self.observer.on_cooldown(until, cooldown)
        return until

    @property
    def rate_limited(self) -> bool:
        self._expire()
        return self.cooldown_until is not None

    @property
    def cooldown_remaining(self) -> int:
        """Whole seconds left, rounded up; 0 when not limited."""
        self._expire()
        if self.cooldown_until is None:
            return 0
        remaining = self.cooldown_until - self.clock()
        return int(-(-remaining // 1))

    def _expire(self) -> None:
        if self.cooldown_until is not None and self.clock() >= self.cooldown_until:
            self.cooldown_until = None
            if self.bus is not None:
                self.bus.publish(RateLimitCooldown(until=None))
