"""
Personalized, paginated feed for KNEW.
"""
import math
import time
import logging
from typing import Callable, Iterable, List, Optional, Set, Tuple

from knew.core.article import Article, FeedPage, FollowSubscription
from knew.core.cache import ResponseCache
from knew.core.dedupe import CancelToken, RequestDeduplicator
from knew.core.events import EventBus, FollowsChanged
from knew.core.follows import FollowManager, FollowResult
from knew.errors import RequestCancelled

# Configure logging
logger = logging.getLogger(__name__)

PAGE_SIZE = 20
FEED_CACHE_TTL = 10 * 60  # 10 minutes


def _publish_key(article: Article) -> str:
    return article.publish_date or ""


class PersonalizedFeedSource:
    """
    Builds one feed page from the followed states and topics.
    """
    def __init__(self, fetcher):
        self.fetcher = fetcher

    @staticmethod
    def build_queries(states: Iterable[str], topics: Iterable[str]) -> List[str]:
        queries = [f"location:{state}" for state in states]
        queries.extend(topics)
        return queries or ["trending"]

    async def fetch_page(
        self,
        states: List[str],
        topics: List[str],
        page: int,
        page_size: int = PAGE_SIZE,
        exclude_ids: Iterable[str] = (),
        cancel_token: Optional[CancelToken] = None,
    ) -> List[Article]:
        """
        Fetch a page of articles for the given follows.

        Each follow becomes one query; the merged results skip
        ``exclude_ids``, are de-duplicated by id, sorted newest first and
        cut to ``page_size``.

        Args:
            states: Followed states
            topics: Followed topics
            page: 1-based page number
            page_size: Articles per page
            exclude_ids: Ids the caller has already shown
            cancel_token: Aborts the upstream calls

        Returns:
            List of Article objects
        """
        queries = self.build_queries(states, topics)
        number = math.ceil(page_size / len(queries))
        offset = (page - 1) * page_size
        raw = await self.fetcher.search_many(queries, number=number, offset=offset, cancel_token=cancel_token)

        seen: Set[str] = set(exclude_ids)
        articles = []
        for payload in raw:
            article = Article.from_payload(payload)
            if article.id in seen:
                continue
            seen.add(article.id)
            articles.append(article)

        articles.sort(key=_publish_key, reverse=True)
        logger.info(f"Feed page {page}: {len(articles[:page_size])} articles from {len(queries)} queries")
        return articles[:page_size]


class PersonalizedFeedController:
    """
    Accumulates feed pages for the current follow set.

    ``items`` never holds the same article id twice. Changing the follow set
    resets pagination and clears the page cache. Only one page fetch runs
    at a time; a cancelled fetch never touches the controller's state.
    """
    def __init__(
        self,
        source: PersonalizedFeedSource,
        follows: Optional[FollowManager] = None,
        bus: Optional[EventBus] = None,
        deduplicator: Optional[RequestDeduplicator] = None,
        cache: Optional[ResponseCache] = None,
        page_size: int = PAGE_SIZE,
        cache_ttl: float = FEED_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.follow_manager = follows
        self.deduplicator = deduplicator if deduplicator is not None else RequestDeduplicator()
        self.page_size = page_size
        self.cache_ttl = cache_ttl
        self.cache = cache if cache is not None else ResponseCache(default_ttl=cache_ttl, clock=clock, scope="feed")

        self.items: List[Article] = []
        self.seen_ids: Set[str] = set()
        self.page = 1
        self.loading = False
        self.error: Optional[str] = None
        self.last_page: Optional[FeedPage] = None
        self._last_new_count: Optional[int] = None
        self._generation = 0
        self._current_key: Optional[str] = None
        self._states: Tuple[str, ...] = ()
        self._topics: Tuple[str, ...] = ()

        if follows is not None:
            self._set_signature(follows.follows)
        self._unsubscribe = bus.subscribe(FollowsChanged, self._on_follows_changed) if bus is not None else None

    @property
    def has_more(self) -> bool:
        """True until a page yields fewer than ``page_size`` new articles."""
        if self._last_new_count is None:
            return True
        return self._last_new_count == self.page_size

    @property
    def states(self) -> List[str]:
        return list(self._states)

    @property
    def topics(self) -> List[str]:
        return list(self._topics)

    def cache_key(self, page: int) -> str:
        return f"{','.join(self._states)}|{','.join(self._topics)}|{page}"

    def _set_signature(self, follows: Iterable[FollowSubscription]) -> bool:
        follows = list(follows)
        states = tuple(sorted(f.value for f in follows if f.type == "state"))
        topics = tuple(sorted(f.value for f in follows if f.type == "topic"))
        if (states, topics) == (self._states, self._topics):
            return False
        self._states, self._topics = states, topics
        return True

    def set_follows(self, follows: Iterable[FollowSubscription]) -> bool:
        """
        Replace the follow set; resets the feed only when the set changed.

        Returns:
            True if the feed was reset
        """
        if not self._set_signature(follows):
            return False
        logger.info(f"Follows changed, resetting feed ({len(self._states)} states, {len(self._topics)} topics)")
        self.reset()
        return True

    def _on_follows_changed(self, event: FollowsChanged) -> None:
        self.set_follows(event.follows)

    def reset(self) -> None:
        self.cancel()
        self.items = []
        self.seen_ids.clear()
        self.page = 1
        self.error = None
        self.last_page = None
        self._last_new_count = None
        self.cache.clear()

    async def load_more(self) -> Optional[FeedPage]:
        """
        Fetch the next page and append its new articles.

        A call made while a fetch is running, or after the feed is exhausted,
        does nothing and returns None.

        Returns:
            The page that was applied, or None
        """
        if self.loading or not self.has_more:
            return None
        self.loading = True
        self.error = None
        generation = self._generation
        page = self.page

        try:
            articles = await self._fetch(page)
        except RequestCancelled:
            logger.debug(f"Feed page {page} cancelled")
            return None
        except Exception as e:
            if generation == self._generation:
                logger.error(f"Error fetching personalized feed: {e}")
                self.error = str(e) or "Failed to load feed"
            return None
        finally:
            if generation == self._generation:
                self.loading = False
                self._current_key = None

        if generation != self._generation:
            return None
        return self._apply(page, articles)

    async def _fetch(self, page: int) -> List[Article]:
        key = self.cache_key(page)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        exclude = list(self.seen_ids)
        states, topics = list(self._states), list(self._topics)

        async def load(token: CancelToken) -> List[Article]:
            articles = await self.source.fetch_page(
                states, topics, page, self.page_size, exclude_ids=exclude, cancel_token=token
            )
            token.raise_if_cancelled()
            self.cache.set(key, articles, ttl=self.cache_ttl)
            return articles

        self._current_key = key
        return await self.deduplicator.execute(key, load)

    def _apply(self, page: int, articles: List[Article]) -> FeedPage:
        new_items = [a for a in articles if a.id not in self.seen_ids]
        self.seen_ids.update(a.id for a in new_items)
        self.items.extend(new_items)
        self._last_new_count = len(new_items)
        self.page = page + 1
        self.last_page = FeedPage(items=new_items, page=page, has_more=self.has_more)
        return self.last_page

    def cancel(self) -> None:
        """Abort the running fetch; its result will be ignored."""
        if self._current_key is not None:
            self.deduplicator.cancel(self._current_key)
            self._current_key = None
        self._generation += 1
        self.loading = False

    def close(self) -> None:
        self.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def retry(self) -> Optional[FeedPage]:
        self.error = None
        return await self.load_more()

    async def add_follow(self, follow_type: str, value: str) -> FollowResult:
        if self.follow_manager is None:
            raise RuntimeError("No follow manager configured")
        result = await self.follow_manager.follow(follow_type, value)
        if result.ok:
            self.set_follows(self.follow_manager.follows)
        return result

    async def remove_follow(self, follow_id: str) -> FollowResult:
        if self.follow_manager is None:
            raise RuntimeError("No follow manager configured")
        result = await self.follow_manager.unfollow_by_id(follow_id)
        if result.ok:
            self.set_follows(self.follow_manager.follows)
        return result


async def load_pages(controller: PersonalizedFeedController, pages: int) -> List[Article]:
    """Load up to ``pages`` pages, stopping early when the feed runs out."""
    for _ in range(pages):
        if await controller.load_more() is None:
            break
    return controller.items
