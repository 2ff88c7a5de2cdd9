"""
Command-line interface for KNEW.
"""
import sys
import argparse
import logging
import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import tqdm
from dotenv import load_dotenv

from knew.config import Config
from knew.core.analysis import AnalysisService, LazyAnalysisController
from knew.core.cache import AnalysisCacheStore, ResponseCache
from knew.core.client import STATUS_SUCCESS
from knew.core.digest import DigestBuilder
from knew.core.events import EventBus, LoggingObserver, Observer, RateLimitObserver
from knew.core.feed import PersonalizedFeedController, PersonalizedFeedSource, load_pages
from knew.core.follows import FollowManager, InMemoryFollowStore
from knew.core.news import NewsService, articles_from
from knew.core.recovery import JsonFileQueue, RecoveryQueue
from knew.fetchers.gateway import AIGateway
from knew.fetchers.worldnews import WorldNewsFetcher
from knew.formatters.html import HtmlConverter
from knew.formatters.markdown import DigestFormatter
from knew.utils.http import RateLimiter

logger = logging.getLogger(__name__)

CLI_USER = "cli"
CLI_IP = "127.0.0.1"


def configure_logging(verbose: bool = False) -> None:
    """Log to a dated file and to the console."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(f"knew_{datetime.now().strftime('%Y%m%d')}.log"),
            logging.StreamHandler()
        ]
    )


@dataclass
class Services:
    """
    Process-wide service objects shared by the commands.
    """
    fetcher: WorldNewsFetcher
    gateway: AIGateway
    news: NewsService
    analysis: AnalysisService
    recovery: RecoveryQueue
    bus: EventBus
    observer: Observer
    config: Config

    async def close(self) -> None:
        await self.recovery.stop()
        await self.fetcher.close_session()
        await self.gateway.close()


def build_services(cfg: Config, observer: Optional[Observer] = None, auto_start: bool = True) -> Services:
    """
    Wire every service from configuration.

    Args:
        cfg: Loaded configuration
        observer: Telemetry observer, defaults to LoggingObserver
        auto_start: Start the recovery worker as soon as a task is queued

    Returns:
        Services bundle
    """
    observer = observer or LoggingObserver()
    bus = EventBus()
    cache_dir = Path(cfg.get('cache.directory', 'cache'))

    fetcher = WorldNewsFetcher(
        base_url=cfg.get('upstream.worldnews_url'),
        timeout=float(cfg.get('upstream.timeout_seconds', 30)),
    )
    gateway = AIGateway(base_url=cfg.get('upstream.gateway_url'), model=cfg.get('upstream.model'))
    recovery = RecoveryQueue(
        store=JsonFileQueue(cfg.get('recovery.queue_file')),
        observer=observer,
        bus=bus,
        base_delay=float(cfg.get('recovery.base_delay_seconds')),
        max_delay=float(cfg.get('recovery.max_delay_seconds')),
        poll_interval=float(cfg.get('recovery.poll_interval_seconds')),
        max_retries=int(cfg.get('recovery.max_retries')),
        auto_start=auto_start,
    )
    news = NewsService(
        fetcher,
        cache=ResponseCache(
            default_ttl=float(cfg.get('cache.news_ttl_seconds')),
            max_entries=int(cfg.get('cache.max_entries')),
            observer=observer,
        ),
        limiter=RateLimiter.from_config(cfg.get('rate_limiting'), observer=observer),
        recovery=recovery,
        gateway=gateway,
        observer=observer,
        cooldown=RateLimitObserver(bus=bus, observer=observer),
    )
    analysis = AnalysisService(
        gateway,
        durable=AnalysisCacheStore(
            db_path=cache_dir / "analysis_cache.db",
            model_version=cfg.get('cache.model_version'),
            ttl=float(cfg.get('cache.analysis_ttl_seconds')),
        ),
        memory=ResponseCache(
            default_ttl=float(cfg.get('cache.analysis_memory_ttl_seconds')),
            max_entries=1000,
            observer=observer,
            scope="analysis",
        ),
        observer=observer,
        recovery=recovery,
        failure_ttl=float(cfg.get('cache.analysis_failure_ttl_seconds')),
        viewport_margin=float(cfg.get('analysis.viewport_margin')),
    )
    return Services(fetcher, gateway, news, analysis, recovery, bus, observer, cfg)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(description="KNEW - News Aggregation Core")
    parser.add_argument("--config", help="Path to a YAML or JSON config file")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    search = sub.add_parser("search", help="Search news")
    search.add_argument("text", nargs="?", default=None)
    search.add_argument("--state", default=None)
    search.add_argument("--category", default="all")
    search.add_argument("--language", default="en")
    search.add_argument("--countries", default=None, help="Comma separated country codes")
    search.add_argument("--number", type=int, default=10)

    ai_search = sub.add_parser("ai-search", help="Natural language news search")
    ai_search.add_argument("query")
    ai_search.add_argument("--language", default="en")

    analyze = sub.add_parser("analyze", help="Analyze an article")
    analyze.add_argument("url")
    analyze.add_argument("--title", required=True)
    analyze.add_argument("--text", default=None, help="Article text; defaults to the title")

    related = sub.add_parser("related", help="Latest news about a topic")
    related.add_argument("topic")
    related.add_argument("--language", default="en")
    related.add_argument("--country", default="us")

    translate = sub.add_parser("translate", help="Translate an article")
    translate.add_argument("--title", required=True)
    translate.add_argument("--text", default=None)
    translate.add_argument("--to", dest="target", required=True, help="Target language code")

    feed = sub.add_parser("feed", help="Personalized feed for states and topics")
    feed.add_argument("--state", action="append", default=[])
    feed.add_argument("--topic", action="append", default=[])
    feed.add_argument("--pages", type=int, default=1)

    digest = sub.add_parser("digest", help="Build today's digest")
    digest.add_argument("--state", action="append", default=[])
    digest.add_argument("--topic", action="append", default=[])
    digest.add_argument("--output", help="Write Markdown here instead of stdout")
    digest.add_argument("--html", help="Also write an HTML page here")
    digest.add_argument("--css", help="CSS file for the HTML page")

    sub.add_parser("recover", help="Retry queued failed requests")
    return parser.parse_args(argv)


def _print_articles(articles) -> None:
    for article in articles:
        print(f"- {article.title}")
        print(f"  {article.url}")


async def run_search(services: Services, args) -> int:
    params = {
        'text': args.text,
        'state': args.state,
        'category': args.category,
        'language': args.language,
        'source_countries': args.countries,
        'number': args.number,
    }
    response = await services.news.search_news(params, CLI_USER, CLI_IP)
    if response.status != STATUS_SUCCESS:
        logger.error(f"Search failed: {response.error.message}")
        return 1
    if response.degraded:
        logger.warning("Upstream unavailable; showing cached results")
    _print_articles(articles_from(response))
    return 0


async def run_ai_search(services: Services, args) -> int:
    response = await services.news.ai_search(args.query, args.language, CLI_USER, CLI_IP)
    if response.status != STATUS_SUCCESS:
        logger.error(f"AI search failed: {response.error.message}")
        return 1
    _print_articles(articles_from(response))
    return 0


async def run_related(services: Services, args) -> int:
    response = await services.news.related_news(args.topic, args.language, args.country, CLI_USER, CLI_IP)
    if response.status != STATUS_SUCCESS:
        logger.error(f"Related news failed: {response.error.message}")
        return 1
    _print_articles(articles_from(response))
    return 0


async def run_analyze(services: Services, args) -> int:
    controller = LazyAnalysisController(services.analysis, args.url, args.title, args.text or args.title)
    result = await controller.trigger()
    if result.is_empty:
        logger.error("Analysis unavailable")
        return 1
    print(f"Bias:      {result.bias}")
    print(f"Sentiment: {result.sentiment}")
    print(f"Ownership: {result.ownership}")
    print(f"Summary:   {result.summary}")
    for claim in result.claims:
        print(f"  [{claim.verification}] {claim.text}")
    return 0


async def run_translate(services: Services, args) -> int:
    fields = {'title': args.title, 'text': args.text}
    translated = await services.news.translate_article(fields, args.target, CLI_USER, CLI_IP)
    print(translated['title'])
    if translated.get('text'):
        print(translated['text'])
    return 0 if translated['translated'] else 1


async def _follows_from(args, bus: EventBus) -> FollowManager:
    manager = FollowManager(InMemoryFollowStore(), CLI_USER, bus=bus, action_interval=0)
    for state in args.state:
        await manager.follow('state', state)
    for topic in args.topic:
        await manager.follow('topic', topic)
    return manager


async def run_feed(services: Services, args) -> int:
    manager = await _follows_from(args, services.bus)
    controller = PersonalizedFeedController(
        PersonalizedFeedSource(services.fetcher),
        follows=manager,
        bus=services.bus,
        page_size=int(services.config.get('feed.page_size')),
        cache_ttl=float(services.config.get('feed.cache_ttl_seconds')),
    )
    try:
        items = await load_pages(controller, args.pages)
    finally:
        controller.close()
    if controller.error:
        logger.error(f"Feed failed: {controller.error}")
        return 1
    _print_articles(items)
    return 0


async def run_digest(services: Services, args) -> int:
    manager = await _follows_from(args, services.bus)
    builder = DigestBuilder(services.fetcher)
    total = len(manager.follows) + 2

    with tqdm.tqdm(total=total, desc="Building digest") as pbar:
        def on_progress(step: int, _total: int, message: str) -> None:
            pbar.set_postfix_str(message)
            pbar.n = step
            pbar.refresh()

        try:
            digest = await builder.build(manager.follows, user_id=CLI_USER, on_progress=on_progress)
        except ValueError as e:
            logger.error(str(e))
            return 1

    markdown = DigestFormatter().format_digest(digest)
    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(markdown)
        logger.info(f"Wrote digest to {args.output}")
    else:
        print(markdown)

    if args.html and not HtmlConverter(args.css).write(markdown, args.html):
        return 1
    return 0


class _ProgressObserver(LoggingObserver):
    def __init__(self, pbar):
        self.pbar = pbar

    def on_task_succeeded(self, task):
        super().on_task_succeeded(task)
        self.pbar.update(1)

    def on_task_exhausted(self, task):
        super().on_task_exhausted(task)
        self.pbar.update(1)


async def run_recover(services: Services, args) -> int:
    pending = len(services.recovery.pending)
    if not pending:
        logger.info("Recovery queue is empty")
        return 0

    with tqdm.tqdm(total=pending, desc="Recovering requests") as pbar:
        services.recovery.observer = _ProgressObserver(pbar)
        await services.recovery.drain()
    return 0


COMMANDS = {
    "search": run_search,
    "ai-search": run_ai_search,
    "related": run_related,
    "analyze": run_analyze,
    "translate": run_translate,
    "feed": run_feed,
    "digest": run_digest,
    "recover": run_recover,
}


async def async_main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the application.
    """
    load_dotenv(override=True)
    args = parse_args(argv)
    configure_logging(args.verbose)

    cfg = Config(args.config)
    services = build_services(cfg, auto_start=args.command != "recover")
    logger.info(f"Running command: {args.command}")
    try:
        return await COMMANDS[args.command](services, args)
    finally:
        await services.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point for the command-line script.
    """
    try:
        return asyncio.run(async_main(argv))
    except KeyboardInterrupt:
        logger.info("Process interrupted by user")
        return 1
    except Exception as e:
        logger.exception(f"An error occurred: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
