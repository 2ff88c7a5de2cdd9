"""
News search service for KNEW: admission, caching, fallback and recovery.
"""
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from knew.core.article import Article
from knew.core.cache import ResponseCache, build_cache_key
from knew.core.client import ApiResponse, invoke
from knew.core.dedupe import CancelToken
from knew.core.events import Observer, RateLimitObserver
from knew.core.recovery import RecoveryQueue, TaskType
from knew.errors import TRANSIENT_CODES, ErrorCode
from knew.utils.http import RateLimiter

# Configure logging
logger = logging.getLogger(__name__)

FETCH_NEWS = "fetch-news"
AI_SEARCH_NEWS = "ai-search-news"
TRANSLATE_ARTICLE = "translate-article"
FETCH_RELATED_NEWS = "fetch-related-news"
RELATED_NEWS_COUNT = 20
MAX_TOPIC_LENGTH = 200


def search_kwargs(params: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map request parameters onto WorldNewsFetcher.search arguments.

    A ``state`` other than ``all`` is folded into the search text.
    """
    terms = [params.get('text')]
    state = params.get('state')
    if state and state != 'all':
        terms.append(state)
    kwargs = {k: params[k] for k in ('entities', 'category', 'language', 'source_countries', 'number', 'offset') if params.get(k) is not None}
    text = ' '.join(t for t in terms if t)
    if text:
        kwargs['text'] = text
    return kwargs


def articles_from(response: ApiResponse) -> List[Article]:
    """Articles carried by a search response, empty when there are none."""
    if not isinstance(response.data, dict):
        return []
    return [Article.from_payload(item) for item in response.data.get('news') or []]


class NewsService:
    """
    Serves news searches the way the ``fetch-news`` endpoint does.

    A request is admitted by the rate limiter, answered from the response
    cache when possible and otherwise fetched upstream. Transient upstream
    failures are handed to the recovery queue and answered with the freshest
    cached response, flagged as degraded.
    """
    def __init__(
        self,
        fetcher,
        cache: Optional[ResponseCache] = None,
        limiter: Optional[RateLimiter] = None,
        recovery: Optional[RecoveryQueue] = None,
        gateway=None,
        observer: Optional[Observer] = None,
        cooldown: Optional[RateLimitObserver] = None,
        cache_ttl: Optional[float] = None,
    ):
        self.fetcher = fetcher
        self.observer = observer or Observer()
        self.cache = cache if cache is not None else ResponseCache(observer=self.observer)
        self.limiter = limiter
        self.recovery = recovery
        self.gateway = gateway
        self.cooldown = cooldown
        self.cache_ttl = cache_ttl
        if recovery is not None:
            recovery.register(TaskType.FETCH_NEWS, self.replay_search)

    def _admit(self, subject_id: Optional[str], client_ip: str, endpoint: str) -> Optional[ApiResponse]:
        if self.limiter is None:
            return None
        admission = self.limiter.admit(subject_id, client_ip, endpoint)
        if admission.allowed:
            return None
        logger.warning(f"Rejected {endpoint} request ({admission.scope} limit)")
        return ApiResponse.failure(admission.error, ErrorCode.RATE_LIMITED, details={"scope": admission.scope})

    def _on_rate_limited(self) -> None:
        if self.cooldown is not None:
            self.cooldown.record_rate_limit()

    async def _search(self, params: Dict[str, Any], cancel_token: Optional[CancelToken] = None, name: str = FETCH_NEWS) -> ApiResponse:
        kwargs = search_kwargs(params)
        return await invoke(
            name,
            lambda: self.fetcher.search(cancel_token=cancel_token, **kwargs),
            observer=self.observer,
            cancel_token=cancel_token,
            on_rate_limited=self._on_rate_limited,
        )

    async def search_news(
        self,
        params: Dict[str, Any],
        subject_id: Optional[str] = None,
        client_ip: str = "unknown",
        cancel_token: Optional[CancelToken] = None,
    ) -> ApiResponse:
        """
        Search news with admission control, caching and degraded fallback.

        Args:
            params: Search parameters (text, state, category, language, ...)
            subject_id: Authenticated user id, if any
            client_ip: Caller address for the IP tier
            cancel_token: Aborts the upstream call

        Returns:
            ApiResponse; never raises for upstream failures
        """
        refused = self._admit(subject_id, client_ip, FETCH_NEWS)
        if refused is not None:
            return refused

        key = build_cache_key(params, prefix=FETCH_NEWS)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"Cache hit for {key}")
            return ApiResponse(data=cached, cache_hit=True)

        response = await self._search(params, cancel_token)
        if response.is_success():
            self.cache.set(key, response.data, ttl=self.cache_ttl)
            return response

        code = response.error.code if response.error else None
        if code not in TRANSIENT_CODES:
            return response

        if self.recovery is not None:
            self.recovery.schedule(TaskType.FETCH_NEWS, params, error=response.error.message)

        fallback = self.cache.get_any_valid()
        if fallback is None:
            logger.warning(f"No cached data to fall back on for {key}")
            return response

        logger.warning(f"Serving degraded response for {key}: {response.error.message}")
        self.observer.on_degraded(key)
        return ApiResponse(data=fallback, degraded=True, cache_hit=True)

    async def replay_search(self, params: Dict[str, Any]) -> ApiResponse:
        """
        Recovery handler for ``fetch-news`` tasks.

        Goes straight to the upstream so a cached fallback can never count
        as a successful retry.
        """
        response = await self._search(params)
        if response.is_success():
            self.cache.set(build_cache_key(params, prefix=FETCH_NEWS), response.data, ttl=self.cache_ttl)
        return response

    async def related_news(
        self,
        topic: str,
        language: str = 'en',
        source_country: str = 'us',
        subject_id: Optional[str] = None,
        client_ip: str = "unknown",
        cancel_token: Optional[CancelToken] = None,
    ) -> ApiResponse:
        """
        Latest articles about a topic from one source country.

        Args:
            topic: Free text topic, 1 to 200 characters
            language: Language code
            source_country: Country code of the sources

        Returns:
            ApiResponse with the search payload
        """
        refused = self._admit(subject_id, client_ip, FETCH_RELATED_NEWS)
        if refused is not None:
            return refused
        if not isinstance(topic, str) or not topic.strip() or len(topic) > MAX_TOPIC_LENGTH:
            return ApiResponse.failure("Invalid input parameters", ErrorCode.VALIDATION_ERROR)

        params = {
            'text': topic,
            'language': language,
            'source_countries': (source_country or 'us').lower(),
            'number': RELATED_NEWS_COUNT,
        }
        key = build_cache_key(params, prefix=FETCH_RELATED_NEWS)
        cached = self.cache.get(key)
        if cached is not None:
            return ApiResponse(data=cached, cache_hit=True)

        logger.info(f"Fetching related news for topic: {topic}")
        response = await self._search(params, cancel_token, name=FETCH_RELATED_NEWS)
        if response.is_success():
            self.cache.set(key, response.data, ttl=self.cache_ttl)
        return response

    async def translate_article(
        self,
        fields: Dict[str, Any],
        target_language: str,
        subject_id: Optional[str] = None,
        client_ip: str = "unknown",
    ) -> Dict[str, Any]:
        """
        Translate an article's text fields.

        Args:
            fields: Article fields (title, text, summary, bias, ownership, ...)
            target_language: Language code

        Returns:
            The fields with translated values and ``translated=True``, or the
            original fields with ``translated=False`` when translation failed
        """
        refused = self._admit(subject_id, client_ip, TRANSLATE_ARTICLE)
        if refused is not None:
            return {**fields, 'translated': False}
        if self.gateway is None:
            logger.error("No AI gateway configured for translation")
            return {**fields, 'translated': False}

        try:
            response = await invoke(
                TRANSLATE_ARTICLE,
                lambda: self.gateway.translate(fields, target_language),
                observer=self.observer,
                on_rate_limited=self._on_rate_limited,
            )
        except Exception as e:
            logger.error(f"Unexpected translation failure: {e}")
            return {**fields, 'translated': False}

        if not response.is_success():
            logger.error(f"Translation error: {response.error.message if response.error else 'empty reply'}")
            return {**fields, 'translated': False}
        return {**fields, **response.data, 'language': target_language, 'translated': True}

    async def ai_search(
        self,
        query: str,
        language: str = 'en',
        subject_id: Optional[str] = None,
        client_ip: str = "unknown",
        cancel_token: Optional[CancelToken] = None,
    ) -> ApiResponse:
        """
        Natural language search: parse the query, then run search_news.

        Returns:
            The search response; its data carries the parsed query under
            ``query`` when successful
        """
        refused = self._admit(subject_id, client_ip, AI_SEARCH_NEWS)
        if refused is not None:
            return refused
        if self.gateway is None:
            return ApiResponse.failure("AI search is not configured", ErrorCode.VALIDATION_ERROR)

        parsed_response = await invoke(
            AI_SEARCH_NEWS,
            lambda: self.gateway.parse_search_query(query, language),
            observer=self.observer,
            cancel_token=cancel_token,
            on_rate_limited=self._on_rate_limited,
        )
        if not parsed_response.is_success():
            return parsed_response

        parsed = parsed_response.data
        params: Dict[str, Any] = {'text': parsed.get('searchText') or query, 'language': language}
        categories = parsed.get('categories') or []
        if categories:
            params['category'] = categories[0]
        locations = parsed.get('locations') or []
        if locations:
            params['entities'] = [f"LOC:{loc}" for loc in locations]

        response = await self.search_news(params, subject_id, client_ip, cancel_token)
        if isinstance(response.data, dict):
            return replace(response, data={**response.data, 'query': parsed})
        return response
