"""Shared fixtures and fakes for the KNEW test suite."""
import asyncio
from typing import Any, Dict, List, Optional

import pytest

from knew.errors import UpstreamError


class FakeClock:
    """Manually advanced clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def make_article(article_id: Any, publish_date: str = "2026-10-18 08:00:00", **extra) -> Dict[str, Any]:
    data = {
        "id": article_id,
        "title": f"Article {article_id}",
        "url": f"https://news.example/{article_id}",
        "text": f"Body of article {article_id}",
        "publish_date": publish_date,
    }
    data.update(extra)
    return data


class FakeFetcher:
    """Stands in for WorldNewsFetcher."""

    def __init__(self, news: Optional[List[Dict[str, Any]]] = None, error: Optional[Exception] = None):
        self.news = news if news is not None else [make_article(1), make_article(2)]
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None

    async def search(self, cancel_token=None, **kwargs) -> Dict[str, Any]:
        self.calls.append(kwargs)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return {"news": list(self.news), "available": len(self.news)}

    async def search_many(self, queries, number, offset=0, language='en', cancel_token=None):
        self.calls.append({"queries": list(queries), "number": number, "offset": offset})
        if self.gate is not None:
            await self.gate.wait()
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if self.error is not None:
            raise self.error
        return list(self.news)


class FakeGateway:
    """Stands in for AIGateway."""

    def __init__(self, analysis: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.analysis = analysis or {
            "bias": "Center",
            "summary": "Two sentences. About the news.",
            "ownership": "Example Media",
            "sentiment": "neutral",
            "claims": [{"text": "A claim", "verification": "verified", "explanation": "Checked"}],
        }
        self.error = error
        self.analyze_calls = 0
        self.translate_calls = 0
        self.gate: Optional[asyncio.Event] = None

    async def analyze(self, title: str, text: str, url: str) -> Dict[str, Any]:
        self.analyze_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return dict(self.analysis)

    async def translate(self, fields: Dict[str, Any], target_language: str) -> Dict[str, Any]:
        self.translate_calls += 1
        if self.error is not None:
            raise self.error
        return {k: f"[{target_language}] {v}" for k, v in fields.items() if k == "title" or k == "text"}

    async def parse_search_query(self, query: str, language: str = 'en') -> Dict[str, Any]:
        if len(query.strip()) < 2:
            raise UpstreamError("Query must be at least 2 characters", status=400)
        return {"searchText": "election results", "locations": ["Ohio"], "categories": ["politics"],
                "language": language, "originalQuery": query}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
