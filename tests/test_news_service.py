"""NewsService tests: admission, caching, degraded fallback and recovery."""
import aiohttp
import pytest

from conftest import FakeFetcher, FakeGateway, make_article
from knew.core.cache import ResponseCache
from knew.core.client import STATUS_ERROR, STATUS_RATE_LIMITED, STATUS_SUCCESS
from knew.core.events import Observer, RateLimitObserver
from knew.core.news import NewsService, articles_from, search_kwargs
from knew.core.recovery import RecoveryQueue
from knew.errors import ErrorCode, UpstreamError
from knew.fetchers.gateway import AIGateway
from knew.utils.http import EndpointLimit, RateLimiter


class DegradedObserver(Observer):
    def __init__(self):
        self.degraded = []

    def on_degraded(self, key):
        self.degraded.append(key)


def make_service(clock, fetcher, **kwargs):
    recovery = RecoveryQueue(clock=clock, sleep=clock.sleep, auto_start=False)
    cache = kwargs.pop("cache", None)
    if cache is None:
        cache = ResponseCache(clock=clock)
    return NewsService(fetcher, cache=cache, recovery=recovery, **kwargs), recovery


@pytest.mark.asyncio
async def test_fetches_then_serves_from_cache(clock, fetcher):
    service, _ = make_service(clock, fetcher)
    params = {"text": "climate", "language": "en"}

    first = await service.search_news(params)
    second = await service.search_news({"language": "EN", "text": "Climate"})

    assert first.status == STATUS_SUCCESS
    assert not first.cache_hit
    assert second.cache_hit
    assert len(fetcher.calls) == 1
    assert [a.id for a in articles_from(second)] == ["1", "2"]


@pytest.mark.asyncio
async def test_rate_limited_upstream_serves_degraded_cache(clock):
    fetcher = FakeFetcher(news=[make_article("cached")])
    observer = DegradedObserver()
    service, recovery = make_service(clock, fetcher, observer=observer)
    await service.search_news({"text": "earlier query"})

    fetcher.error = UpstreamError("WorldNews API error: 429", status=429)
    response = await service.search_news({"text": "new query"})

    assert response.status == STATUS_SUCCESS
    assert response.degraded
    assert [a.id for a in articles_from(response)] == ["cached"]
    assert len(observer.degraded) == 1

    assert len(recovery.pending) == 1
    task = recovery.pending[0]
    assert task.type == "fetch-news"
    assert task.retry_count == 0
    assert task.params == {"text": "new query"}


@pytest.mark.asyncio
async def test_rate_limited_upstream_without_cache_surfaces_error(clock):
    fetcher = FakeFetcher(error=UpstreamError("WorldNews API error: 429", status=429))
    cooldown = RateLimitObserver(clock=clock)
    service, recovery = make_service(clock, fetcher, cooldown=cooldown)

    response = await service.search_news({"text": "x"})

    assert response.status == STATUS_RATE_LIMITED
    assert response.error.code == ErrorCode.RATE_LIMITED
    assert not response.degraded
    assert [t.retry_count for t in recovery.pending] == [0]
    assert cooldown.rate_limited
    assert cooldown.cooldown_remaining == 60


@pytest.mark.asyncio
async def test_server_and_network_errors_are_scheduled(clock):
    fetcher = FakeFetcher(error=UpstreamError("WorldNews API error: 503", status=503))
    service, recovery = make_service(clock, fetcher)

    server = await service.search_news({"text": "a"})
    fetcher.error = aiohttp.ClientConnectionError("connection reset")
    network = await service.search_news({"text": "b"})

    assert server.error.code == ErrorCode.SERVER_ERROR
    assert network.error.code == ErrorCode.NETWORK_ERROR
    assert len(recovery.pending) == 2


@pytest.mark.asyncio
async def test_validation_errors_are_not_scheduled_or_degraded(clock):
    fetcher = FakeFetcher()
    service, recovery = make_service(clock, fetcher)
    await service.search_news({"text": "cached"})

    fetcher.error = UpstreamError("WorldNews API error: 400", status=400)
    response = await service.search_news({"text": "bad"})

    assert response.status == STATUS_ERROR
    assert response.error.code == ErrorCode.VALIDATION_ERROR
    assert not response.degraded
    assert recovery.pending == []


@pytest.mark.asyncio
async def test_admission_refusal_never_reaches_upstream(clock, fetcher):
    limiter = RateLimiter(limits={"fetch-news": EndpointLimit(1, 20, 60)}, clock=clock)
    service, _ = make_service(clock, fetcher, limiter=limiter)

    assert (await service.search_news({"text": "a"}, "u1", "1.1.1.1")).status == STATUS_SUCCESS
    refused = await service.search_news({"text": "b"}, "u1", "1.1.1.1")

    assert refused.status == STATUS_RATE_LIMITED
    assert refused.error.message == "User rate limit exceeded. Please try again later."
    assert len(fetcher.calls) == 1


@pytest.mark.asyncio
async def test_recovery_replay_refreshes_cache(clock):
    fetcher = FakeFetcher(error=UpstreamError("WorldNews API error: 500", status=500))
    service, recovery = make_service(clock, fetcher)
    await service.search_news({"text": "x"})

    fetcher.error = None
    await recovery.drain()

    assert recovery.pending == []
    again = await service.search_news({"text": "x"})
    assert again.cache_hit


@pytest.mark.asyncio
async def test_translate_success_and_fallback(clock, fetcher):
    gateway = FakeGateway()
    service, _ = make_service(clock, fetcher, gateway=gateway)
    fields = {"title": "Hello", "text": "World", "url": "https://x/1"}

    translated = await service.translate_article(fields, "es")
    assert translated["translated"]
    assert translated["title"] == "[es] Hello"
    assert translated["url"] == "https://x/1"

    gateway.error = UpstreamError("AI gateway error: 402", status=402)
    fallback = await service.translate_article(fields, "es")
    assert fallback == {**fields, "translated": False}


@pytest.mark.asyncio
async def test_ai_search_parses_then_searches(clock, fetcher, gateway):
    service, _ = make_service(clock, fetcher, gateway=gateway)

    response = await service.ai_search("who won in ohio")

    assert response.status == STATUS_SUCCESS
    assert response.data["query"]["originalQuery"] == "who won in ohio"
    assert fetcher.calls[0]["text"] == "election results"
    assert fetcher.calls[0]["category"] == "politics"
    assert fetcher.calls[0]["entities"] == ["LOC:Ohio"]


@pytest.mark.asyncio
async def test_ai_search_rejects_short_query(clock, fetcher, gateway):
    service, _ = make_service(clock, fetcher, gateway=gateway)

    response = await service.ai_search("x")

    assert response.error.code == ErrorCode.VALIDATION_ERROR
    assert fetcher.calls == []


def test_search_kwargs_folds_state_into_text():
    assert search_kwargs({"text": "fires", "state": "California", "category": "all", "number": 5}) == {
        "text": "fires California",
        "category": "all",
        "number": 5,
    }
    assert search_kwargs({"state": "all"}) == {}


def test_injected_cache_is_kept_when_empty(clock, fetcher):
    cache = ResponseCache(default_ttl=5, clock=clock)

    assert NewsService(fetcher, cache=cache).cache is cache


@pytest.mark.asyncio
async def test_translate_never_raises_for_unexpected_errors(clock, fetcher, monkeypatch):
    monkeypatch.delenv("AI_GATEWAY_API_KEY", raising=False)
    fields = {"title": "Hi"}

    broken, _ = make_service(clock, fetcher, gateway=FakeGateway(error=RuntimeError("boom")))
    unconfigured, _ = make_service(clock, fetcher, gateway=AIGateway(api_key=None))

    assert await broken.translate_article(fields, "es") == {"title": "Hi", "translated": False}
    assert await unconfigured.translate_article(fields, "es") == {"title": "Hi", "translated": False}


@pytest.mark.asyncio
async def test_related_news_searches_topic_and_caches(clock, fetcher):
    service, recovery = make_service(clock, fetcher)

    first = await service.related_news("Elections", language="en", source_country="GB")
    second = await service.related_news("elections", source_country="gb")

    assert first.status == STATUS_SUCCESS
    assert second.cache_hit
    assert fetcher.calls == [{"text": "Elections", "language": "en", "source_countries": "gb", "number": 20}]
    assert recovery.pending == []


@pytest.mark.asyncio
async def test_related_news_validates_topic(clock, fetcher):
    service, _ = make_service(clock, fetcher)

    empty = await service.related_news("  ")
    too_long = await service.related_news("x" * 201)

    assert empty.error.code == ErrorCode.VALIDATION_ERROR
    assert too_long.error.message == "Invalid input parameters"
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_related_news_has_its_own_rate_limit(clock, fetcher):
    limiter = RateLimiter(limits={"fetch-related-news": EndpointLimit(1, 20, 60)}, clock=clock)
    service, _ = make_service(clock, fetcher, limiter=limiter)

    assert (await service.related_news("a", subject_id="u1", client_ip="1.1.1.1")).status == STATUS_SUCCESS
    refused = await service.related_news("b", subject_id="u1", client_ip="1.1.1.1")

    assert refused.status == STATUS_RATE_LIMITED
    assert (await service.search_news({"text": "c"}, "u1", "1.1.1.1")).status == STATUS_SUCCESS
