"""
WorldNews search API fetcher for KNEW.
"""
import os
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

import aiohttp
import async_timeout
import backoff

from knew.core.dedupe import CancelToken, run_cancellable
from knew.errors import ConfigError, UpstreamError
from knew.utils.http import REQUEST_TIMEOUT

# Configure logging
logger = logging.getLogger(__name__)

WORLDNEWS_URL = "https://api.worldnewsapi.com"


def _join(values: Union[None, str, Iterable[str]]) -> Optional[str]:
    if values is None:
        return None
    if isinstance(values, str):
        return values.strip() or None
    joined = ','.join(v.strip() for v in values if v and v.strip())
    return joined or None


class WorldNewsFetcher:
    """
    Fetches articles from the WorldNews search endpoint.
    """
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = WORLDNEWS_URL,
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the WorldNewsFetcher.

        Args:
            api_key: API key; falls back to the WORLDNEWS_API_KEY environment variable
            base_url: API root
            timeout: Per-request timeout in seconds
            session: Optional externally managed session
        """
        self.api_key = api_key or os.getenv('WORLDNEWS_API_KEY')
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._session = session

    @property
    def session(self):
        """
        Lazy initialization of aiohttp session.

        Returns:
            aiohttp.ClientSession: The HTTP session
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(headers={'Accept': 'application/json'})
        return self._session

    async def close_session(self):
        """Close aiohttp session."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    @backoff.on_exception(
        backoff.expo,
        (aiohttp.ClientError, asyncio.TimeoutError),
        max_tries=3
    )
    async def _get(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        """
        GET a JSON document with retries on network errors and timeouts.

        HTTP error statuses are not retried here; they surface as UpstreamError
        so the caller can tell a 429 from a validation error.
        """
        if not self.api_key:
            raise ConfigError("WORLDNEWS_API_KEY not configured")

        url = f"{self.base_url}{path}"
        async with async_timeout.timeout(self.timeout):
            async with self.session.get(url, params=params, headers={'x-api-key': self.api_key}) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.error(f"WorldNews API error: {response.status} {body[:200]}")
                    raise UpstreamError(f"WorldNews API error: {response.status}", status=response.status, payload=body)
                return await response.json(content_type=None)

    async def search(
        self,
        text: Optional[str] = None,
        entities: Union[None, str, Iterable[str]] = None,
        category: Optional[str] = None,
        language: Optional[str] = None,
        source_countries: Union[None, str, Iterable[str]] = None,
        number: int = 10,
        offset: int = 0,
        cancel_token: Optional[CancelToken] = None,
    ) -> Dict[str, Any]:
        """
        Search news articles.

        Args:
            text: Free text query
            entities: Entity filters (``LOC:California``, ...)
            category: Category filter; ``all`` means none
            language: Language code; ``all`` means none
            source_countries: Country codes, list or comma separated
            number: Page size
            offset: Result offset
            cancel_token: Aborts the request when cancelled

        Returns:
            The decoded response, always containing a ``news`` list
        """
        params = {
            'number': str(number),
            'offset': str(offset),
            'sort': 'publish-time',
            'sort-direction': 'DESC',
        }
        if text:
            params['text'] = text
        if _join(entities):
            params['entities'] = _join(entities)
        if category and category != 'all':
            params['categories'] = category
        if language and language != 'all':
            params['language'] = language
        if _join(source_countries):
            params['source-countries'] = _join(source_countries)

        logger.info(f"Searching news: {params.get('text', '')!r} ({params.get('categories', 'all')})")
        data = await run_cancellable(self._get('/search-news', params), cancel_token)
        news = data.get('news') or []
        logger.info(f"Successfully fetched {len(news)} articles")
        return {**data, 'news': news}

    async def search_many(self, queries: List[str], number: int, offset: int = 0, language: str = 'en', cancel_token: Optional[CancelToken] = None) -> List[Dict[str, Any]]:
        """
        Run several text queries concurrently and concatenate their articles.

        A query answered with 429 contributes nothing instead of failing the
        batch; any other upstream error propagates.

        Args:
            queries: Text queries
            number: Articles requested per query
            offset: Result offset applied to each query
            language: Language code
            cancel_token: Aborts every request when cancelled

        Returns:
            Raw article dictionaries in query order
        """
        async def one(query: str) -> List[Dict[str, Any]]:
            try:
                data = await self.search(text=query, language=language, number=number, offset=offset, cancel_token=cancel_token)
            except UpstreamError as e:
                if e.status == 429:
                    logger.warning(f"Rate limit for query: {query}")
                    return []
                raise
            return data['news']

        results = await asyncio.gather(*(one(q) for q in queries))
        return [article for batch in results for article in batch]
