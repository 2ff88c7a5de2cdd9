"""
HTTP utilities for KNEW.
"""
import time
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

# Configure logging
logger = logging.getLogger(__name__)

# Rate limiting configuration
DEFAULT_WINDOW = 60.0  # seconds
SWEEP_INTERVAL = 300.0  # seconds between pruning passes
REQUEST_TIMEOUT = 30  # seconds

IP_LIMIT_MESSAGE = "IP rate limit exceeded. Please try again later."
USER_LIMIT_MESSAGE = "User rate limit exceeded. Please try again later."


@dataclass(frozen=True)
class EndpointLimit:
    subject_limit: int
    ip_limit: int
    window: float = DEFAULT_WINDOW


DEFAULT_LIMIT = EndpointLimit(subject_limit=10, ip_limit=20, window=DEFAULT_WINDOW)


@dataclass(frozen=True)
class Admission:
    """
    Decision returned by RateLimiter.admit().

    ``scope`` is ``"ip"`` or ``"user"`` on refusal so callers can tell which
    counter tripped.
    """
    allowed: bool
    remaining: int
    error: Optional[str] = None
    scope: Optional[str] = None


class RateLimiter:
    """
    Sliding-window admission control with independent IP and user counters.

    Each endpoint has its own ``(subject_limit, ip_limit, window)``; endpoints
    without an entry use DEFAULT_LIMIT. admit() never raises.
    """
    def __init__(
        self,
        limits: Optional[Mapping[str, EndpointLimit]] = None,
        default: EndpointLimit = DEFAULT_LIMIT,
        sweep_interval: float = SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
        observer=None,
    ):
        self.limits = dict(limits or {})
        self.default = default
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.observer = observer
        self.ip_windows: Dict[Tuple[str, str], List[float]] = defaultdict(list)
        self.subject_windows: Dict[Tuple[str, str], List[float]] = defaultdict(list)
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @classmethod
    def from_config(cls, settings: Dict, **kwargs) -> "RateLimiter":
        """
        Build a limiter from the ``rate_limiting`` config section.

        Args:
            settings: The ``rate_limiting`` dictionary
            **kwargs: Passed through to the constructor

        Returns:
            RateLimiter instance
        """
        window = float(settings.get("window_seconds", DEFAULT_WINDOW))
        default_cfg = settings.get("default", {})
        default = EndpointLimit(
            subject_limit=int(default_cfg.get("user_limit", DEFAULT_LIMIT.subject_limit)),
            ip_limit=int(default_cfg.get("ip_limit", DEFAULT_LIMIT.ip_limit)),
            window=float(default_cfg.get("window_seconds", window)),
        )
        limits = {
            name: EndpointLimit(
                subject_limit=int(cfg["user_limit"]),
                ip_limit=int(cfg["ip_limit"]),
                window=float(cfg.get("window_seconds", window)),
            )
            for name, cfg in settings.get("endpoints", {}).items()
        }
        return cls(
            limits=limits,
            default=default,
            sweep_interval=float(settings.get("sweep_interval_seconds", SWEEP_INTERVAL)),
            **kwargs,
        )

    def limit_for(self, endpoint: str) -> EndpointLimit:
        return self.limits.get(endpoint, self.default)

    def _check(self, windows: Dict[Tuple[str, str], List[float]], key: Tuple[str, str], limit: int, window: float, now: float) -> Tuple[bool, int]:
        recent = [t for t in windows.get(key, ()) if now - t < window]
        if len(recent) >= limit:
            windows[key] = recent
            return False, 0

        recent.append(now)
        windows[key] = recent
        return True, limit - len(recent)

    def admit(self, subject_id: Optional[str], client_ip: str, endpoint: str) -> Admission:
        """
        Decide whether a request may proceed.

        The IP counter is checked first; an IP refusal returns before the
        user counter is touched, so it does not consume user quota.

        Args:
            subject_id: Authenticated user id, or None for anonymous callers
            client_ip: Caller's IP address
            endpoint: Logical endpoint name used to pick the limits

        Returns:
            Admission decision
        """
        limit = self.limit_for(endpoint)

        with self._lock:
            now = self.clock()
            self._maybe_sweep(now)

            ip_ok, ip_remaining = self._check(self.ip_windows, (client_ip, endpoint), limit.ip_limit, limit.window, now)
            if not ip_ok:
                logger.warning(f"IP rate limit hit for {client_ip} on {endpoint}")
                self._notify("ip", client_ip, endpoint)
                return Admission(allowed=False, remaining=0, error=IP_LIMIT_MESSAGE, scope="ip")

            if not subject_id:
                return Admission(allowed=True, remaining=ip_remaining)

            user_ok, user_remaining = self._check(self.subject_windows, (subject_id, endpoint), limit.subject_limit, limit.window, now)
            if not user_ok:
                logger.warning(f"User rate limit hit for {subject_id} on {endpoint}")
                self._notify("user", subject_id, endpoint)
                return Admission(allowed=False, remaining=0, error=USER_LIMIT_MESSAGE, scope="user")

            return Admission(allowed=True, remaining=user_remaining)

    def _notify(self, scope: str, subject: str, endpoint: str) -> None:
        if self.observer is not None:
            self.observer.on_rate_limited(scope, subject, endpoint)

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep >= self.sweep_interval:
            self._sweep(now)

    def sweep(self) -> int:
        """
        Drop counters with no timestamps inside the largest configured window.

        Returns:
            Number of counters removed
        """
        with self._lock:
            return self._sweep(self.clock())

    def _sweep(self, now: float) -> int:
        max_window = max([self.default.window] + [l.window for l in self.limits.values()])
        removed = 0
        for windows in (self.ip_windows, self.subject_windows):
            for key in list(windows.keys()):
                recent = [t for t in windows[key] if now - t < max_window]
                if recent:
                    windows[key] = recent
                else:
                    del windows[key]
                    removed += 1
        self._last_sweep = now
        if removed:
            logger.debug(f"Rate limiter sweep removed {removed} idle counters")
        return removed


def get_client_ip(headers: Mapping[str, str]) -> str:
    """
    Extract the caller's IP from proxy headers.

    Args:
        headers: Request headers (case-insensitive mapping preferred)

    Returns:
        First hop of X-Forwarded-For, then X-Real-IP, then ``"unknown"``
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    forwarded = lowered.get('x-forwarded-for')
    if forwarded:
        first = forwarded.split(',')[0].strip()
        if first:
            return first
    return lowered.get('x-real-ip') or 'unknown'
