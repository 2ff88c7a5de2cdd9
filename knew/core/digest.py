"""
Daily digest generation for KNEW.
"""
import re
import time
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import aiohttp

from knew.core.article import Article, FollowSubscription
from knew.errors import UpstreamError

# Configure logging
logger = logging.getLogger(__name__)

ARTICLES_PER_FOLLOW = 10
FOLLOW_DELAY = 0.2  # seconds between upstream calls

ProgressCallback = Callable[[int, int, str], None]


@dataclass
class Digest:
    """
    One day's digest of articles for a set of follows.
    """
    generated_date: str
    articles: List[Article] = field(default_factory=list)
    progress_messages: List[str] = field(default_factory=list)
    follows: List[FollowSubscription] = field(default_factory=list)


def _state_query(value: str) -> str:
    return re.sub(r'\s+', '-', value.lower())


class DigestBuilder:
    """
    Builds the daily digest by querying each follow in turn.
    """
    def __init__(
        self,
        fetcher,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        delay: float = FOLLOW_DELAY,
    ):
        self.fetcher = fetcher
        self.clock = clock
        self.sleep = sleep
        self.delay = delay
        self._generated: Dict[Optional[str], Digest] = {}

    def today(self) -> str:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).strftime('%Y-%m-%d')

    async def build(
        self,
        follows: Iterable[FollowSubscription],
        per_follow: int = ARTICLES_PER_FOLLOW,
        force: bool = False,
        user_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Digest:
        """
        Build (or reuse) today's digest.

        Args:
            follows: Followed states and topics
            per_follow: Articles requested for each follow
            force: Regenerate even if a digest exists for today
            user_id: Owner of the digest, used for the same-day check
            on_progress: Called with (step, total, message) as work advances

        Returns:
            Digest with unique articles, newest first

        Raises:
            ValueError: If there are no follows
        """
        today = self.today()
        existing = self._generated.get(user_id)
        if existing is not None and existing.generated_date == today and not force:
            logger.info(f"Digest already generated for {today}")
            return existing

        follows = list(follows)
        if not follows:
            raise ValueError("No follows found. Please follow states or topics first.")

        states = [f for f in follows if f.type == 'state']
        topics = [f for f in follows if f.type == 'topic']
        total = len(states) + len(topics) + 2
        digest = Digest(generated_date=today, follows=follows)
        collected: List[Article] = []
        step = 0

        def progress(message: str) -> None:
            digest.progress_messages.append(message)
            logger.info(f"[{step}/{total}] {message}")
            if on_progress is not None:
                on_progress(step, total, message)

        for follow in states + topics:
            step += 1
            if follow.type == 'state':
                progress(f"Gathering intelligence from {follow.value}...")
                query = _state_query(follow.value)
            else:
                progress(f"Discovering stories about {follow.value}...")
                query = follow.value
            collected.extend(await self._fetch(query, per_follow))
            await self.sleep(self.delay)

        step += 1
        progress("Curating for variety and balance...")
        unique: Dict[str, Article] = {}
        for article in collected:
            unique[article.url or article.id] = article
        digest.articles = sorted(unique.values(), key=lambda a: a.publish_date or "", reverse=True)

        step += 1
        progress("Finalizing your Daily Brief...")
        self._generated[user_id] = digest
        logger.info(f"Digest for {today}: {len(digest.articles)} articles from {len(follows)} follows")
        return digest

    async def _fetch(self, query: str, number: int) -> List[Article]:
        try:
            data = await self.fetcher.search(text=query, language='en', number=number)
        except (UpstreamError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Error fetching digest articles for {query}: {e}")
            return []
        return [Article.from_payload(item) for item in data.get('news') or []]
