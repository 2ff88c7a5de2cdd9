"""
Data models for KNEW.
"""
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

FOLLOW_TYPES = ("state", "topic")


@dataclass
class Article:
    """
    Represents a news article as returned by the search API.
    """
    id: str
    title: str
    url: str
    text: str = ""
    summary: Optional[str] = None
    image: Optional[str] = None
    source_country: Optional[str] = None
    language: Optional[str] = None
    publish_date: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    category: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Article":
        """
        Build an Article from an upstream ``news`` entry.

        Args:
            payload: One element of the search response's ``news`` list

        Returns:
            Article instance
        """
        article_id = payload.get("id")
        url = payload.get("url") or ""
        return cls(
            id=str(article_id) if article_id is not None else url,
            title=payload.get("title") or "",
            url=url,
            text=payload.get("text") or "",
            summary=payload.get("summary"),
            image=payload.get("image"),
            source_country=payload.get("source_country"),
            language=payload.get("language"),
            publish_date=payload.get("publish_date"),
            authors=list(payload.get("authors") or []),
            category=payload.get("category"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Claim:
    text: str
    verification: str = "unverified"
    explanation: str = ""


@dataclass(frozen=True)
class AnalysisResult:
    """
    Outcome of the AI bias/sentiment/fact-check call for one article.

    An empty result with ``analyzing=False`` is both the "not fetched yet"
    state and the terminal failure state; the UI renders it as Unknown.
    """
    bias: Optional[str] = None
    summary: Optional[str] = None
    ownership: Optional[str] = None
    sentiment: Optional[str] = None
    claims: List[Claim] = field(default_factory=list)
    analyzing: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AnalysisResult":
        claims = []
        for raw in payload.get("claims") or []:
            if isinstance(raw, dict) and raw.get("text"):
                claims.append(Claim(
                    text=raw["text"],
                    verification=raw.get("verification") or "unverified",
                    explanation=raw.get("explanation") or "",
                ))
        return cls(
            bias=payload.get("bias"),
            summary=payload.get("summary"),
            ownership=payload.get("ownership"),
            sentiment=payload.get("sentiment"),
            claims=claims,
        )

    @property
    def is_empty(self) -> bool:
        return not (self.bias or self.summary or self.ownership or self.sentiment or self.claims)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("analyzing")
        return data


@dataclass(frozen=True)
class FollowSubscription:
    """
    A user's subscription to a location (state) or a topic.
    """
    id: str
    type: str
    value: str
    created_at: float
    user_id: Optional[str] = None


@dataclass
class FeedPage:
    items: List[Article]
    page: int
    has_more: bool
