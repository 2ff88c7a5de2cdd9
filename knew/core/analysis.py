"""
Lazy, cached AI analysis of articles for KNEW.
"""
import asyncio
import logging
from typing import Callable, Dict, Optional

from knew.core.article import AnalysisResult
from knew.core.cache import AnalysisCacheStore, ResponseCache
from knew.core.client import ApiResponse, invoke
from knew.core.events import Observer
from knew.core.recovery import RecoveryQueue, TaskType
from knew.errors import TRANSIENT_CODES

# Configure logging
logger = logging.getLogger(__name__)

MEMORY_TTL = 24 * 60 * 60  # 24 hours
FAILURE_TTL = 60 * 60  # durable lifetime of an "unknown" result
VIEWPORT_MARGIN = 200  # pixels of look-ahead before an article is on screen


class AnalysisService:
    """
    Resolves analyses through memory, an in-flight map, the durable cache and
    finally the AI gateway.

    One instance is shared by every controller in the process, which is what
    makes concurrent requests for the same URL collapse into one call.
    """
    def __init__(
        self,
        gateway,
        durable: Optional[AnalysisCacheStore] = None,
        memory: Optional[ResponseCache] = None,
        observer: Optional[Observer] = None,
        recovery: Optional[RecoveryQueue] = None,
        failure_ttl: float = FAILURE_TTL,
        viewport_margin: float = VIEWPORT_MARGIN,
    ):
        self.gateway = gateway
        self.durable = durable
        self.observer = observer or Observer()
        self.memory = memory if memory is not None else ResponseCache(default_ttl=MEMORY_TTL, max_entries=1000, observer=self.observer, scope="analysis")
        self.recovery = recovery
        self.failure_ttl = failure_ttl
        self.viewport_margin = viewport_margin
        self._in_flight: Dict[str, "asyncio.Future[AnalysisResult]"] = {}
        if recovery is not None:
            recovery.register(TaskType.ANALYZE_NEWS, self.replay)

    def peek(self, url: str) -> Optional[AnalysisResult]:
        """Memory tier only; never does I/O."""
        result = self.memory.get(url, notify=False)
        if result is not None and not result.analyzing:
            return result
        return None

    def is_in_flight(self, url: str) -> bool:
        return url in self._in_flight

    async def resolve(self, url: str, title: str, text: str, on_start: Optional[Callable[[], None]] = None) -> AnalysisResult:
        """
        Return the analysis for ``url``, calling the gateway at most once.

        Args:
            url: Canonical article URL (the cache key)
            title: Article title
            text: Article text
            on_start: Called right before a network call is issued

        Returns:
            The terminal AnalysisResult; failures resolve to an empty result
        """
        cached = self.memory.get(url)
        if cached is not None and not cached.analyzing:
            return cached

        in_flight = self._in_flight.get(url)
        if in_flight is not None:
            return await asyncio.shield(in_flight)

        if self.durable is not None:
            stored = self.durable.get(url)
            if stored:
                result = AnalysisResult.from_payload(stored)
                self.memory.set(url, result)
                self.observer.on_cache_hit("analysis-durable", url)
                return result

        if on_start is not None:
            on_start()

        task = asyncio.ensure_future(self._analyze(url, title, text))
        self._in_flight[url] = task
        task.add_done_callback(lambda _: self._release(url, task))
        return await asyncio.shield(task)

    def _release(self, url: str, task) -> None:
        if self._in_flight.get(url) is task:
            del self._in_flight[url]

    async def _call_gateway(self, url: str, title: str, text: str) -> ApiResponse:
        """
        Run the gateway call; any failure becomes an unsuccessful response.
        """
        try:
            return await invoke(
                "analyze-news",
                lambda: self.gateway.analyze(title, text, url),
                observer=self.observer,
            )
        except Exception as e:
            logger.error(f"Unexpected analysis failure for {url}: {e}")
            return ApiResponse.failure(str(e) or type(e).__name__, None)

    async def _analyze(self, url: str, title: str, text: str) -> AnalysisResult:
        response = await self._call_gateway(url, title, text)
        if response.is_success():
            result = AnalysisResult.from_payload(response.data)
            self._store(url, result)
            return result

        message = response.error.message if response.error else "empty analysis"
        logger.error(f"Analysis error for {url}: {message}")
        result = AnalysisResult()
        self._store(url, result, failed=True)

        code = response.error.code if response.error else None
        if self.recovery is not None and code in TRANSIENT_CODES:
            self.recovery.schedule(TaskType.ANALYZE_NEWS, {"url": url, "title": title, "text": text}, error=message)
        return result

    def _store(self, url: str, result: AnalysisResult, failed: bool = False) -> None:
        self.memory.set(url, result)
        if self.durable is not None:
            self.durable.set(url, result.to_dict(), ttl=self.failure_ttl if failed else None)

    async def replay(self, params: Dict) -> ApiResponse:
        """
        Recovery handler for ``analyze-news`` tasks.

        A successful replay overwrites the "unknown" result cached when the
        original call failed.
        """
        url = params["url"]
        response = await self._call_gateway(url, params.get("title", ""), params.get("text", ""))
        if response.is_success():
            self._store(url, AnalysisResult.from_payload(response.data))
        return response


class LazyAnalysisController:
    """
    Per-article controller that starts analysis the first time the article
    scrolls into (or near) the viewport.

    ``observe()`` may be called on every visibility change; only the first
    qualifying call does anything.
    """
    def __init__(self, service: AnalysisService, url: str, title: str, text: Optional[str] = None, margin: Optional[float] = None):
        self.service = service
        self.url = url
        self.title = title
        self.text = text
        self.margin = service.viewport_margin if margin is None else margin
        self.result = service.peek(url) or AnalysisResult()
        self._started = False
        self._task: Optional[asyncio.Future] = None

    @property
    def is_analyzing(self) -> bool:
        return self.result.analyzing

    @property
    def has_analysis(self) -> bool:
        return self._started or not self.result.is_empty

    def observe(self, distance: float = 0.0) -> Optional[asyncio.Future]:
        """
        Report the element's distance from the viewport.

        Args:
            distance: Pixels between the element and the visible area; zero
                or negative means it is on screen

        Returns:
            The analysis task once triggered, else None
        """
        if self._task is not None or self._started:
            return self._task
        if distance > self.margin or not self.url or not self.text:
            return None
        self._task = asyncio.ensure_future(self.trigger())
        return self._task

    async def trigger(self) -> AnalysisResult:
        """Resolve the analysis now; later calls return the same result."""
        if self._started or not self.url or not self.text:
            return self.result
        self._started = True
        self.result = await self.service.resolve(self.url, self.title, self.text, on_start=self._mark_analyzing)
        return self.result

    def _mark_analyzing(self) -> None:
        self.result = AnalysisResult(analyzing=True)
