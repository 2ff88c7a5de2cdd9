"""CLI argument parsing and service wiring tests."""
import pytest

from conftest import FakeFetcher
from knew.cli import build_services, parse_args, run_recover, run_search
from knew.config import Config
from knew.core.news import NewsService


@pytest.fixture
def cfg(tmp_path):
    config = Config()
    config.config["cache"]["directory"] = str(tmp_path / "cache")
    config.config["recovery"]["queue_file"] = str(tmp_path / "cache" / "queue.json")
    return config


def test_parse_search_arguments():
    args = parse_args(["search", "wildfires", "--state", "California", "--number", "5"])

    assert args.command == "search"
    assert args.text == "wildfires"
    assert args.state == "California"
    assert args.number == 5
    assert args.category == "all"


def test_parse_repeated_follows():
    args = parse_args(["digest", "--state", "Ohio", "--state", "Texas", "--topic", "ai"])

    assert args.state == ["Ohio", "Texas"]
    assert args.topic == ["ai"]
    assert args.html is None


def test_command_is_required():
    with pytest.raises(SystemExit):
        parse_args([])


@pytest.mark.asyncio
async def test_build_services_wires_config(cfg, tmp_path):
    services = build_services(cfg, auto_start=False)
    try:
        assert services.news.limiter.limit_for("fetch-news").subject_limit == 5
        assert services.news.cache.default_ttl == 600
        assert services.recovery.max_retries == 6
        assert "fetch-news" in services.recovery.handlers
        assert "analyze-news" in services.recovery.handlers
        assert (tmp_path / "cache" / "analysis_cache.db").exists()
    finally:
        await services.close()


@pytest.mark.asyncio
async def test_search_command_prints_articles(cfg, capsys):
    services = build_services(cfg, auto_start=False)
    services.news = NewsService(FakeFetcher())
    try:
        code = await run_search(services, parse_args(["search", "storms"]))
    finally:
        await services.close()

    assert code == 0
    out = capsys.readouterr().out
    assert "Article 1" in out
    assert "https://news.example/2" in out


@pytest.mark.asyncio
async def test_recover_with_empty_queue(cfg):
    services = build_services(cfg, auto_start=False)
    try:
        assert await run_recover(services, parse_args(["recover"])) == 0
    finally:
        await services.close()


@pytest.mark.asyncio
async def test_build_services_applies_cache_and_analysis_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("KNEW_CACHE_NEWS_TTL_SECONDS", "5")
    monkeypatch.setenv("KNEW_CACHE_MAX_ENTRIES", "7")
    monkeypatch.setenv("KNEW_CACHE_ANALYSIS_MEMORY_TTL_SECONDS", "9")
    monkeypatch.setenv("KNEW_ANALYSIS_VIEWPORT_MARGIN", "50")
    config = Config()
    config.config["cache"]["directory"] = str(tmp_path / "cache")
    config.config["recovery"]["queue_file"] = str(tmp_path / "cache" / "queue.json")

    services = build_services(config, auto_start=False)
    try:
        assert services.news.cache.default_ttl == 5
        assert services.news.cache.max_entries == 7
        assert services.analysis.memory.default_ttl == 9
        assert services.analysis.viewport_margin == 50
    finally:
        await services.close()


def test_parse_related_arguments():
    args = parse_args(["related", "elections", "--country", "gb"])

    assert args.topic == "elections"
    assert args.country == "gb"
    assert args.language == "en"
