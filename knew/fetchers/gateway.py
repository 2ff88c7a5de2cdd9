"""
AI gateway client for KNEW: article analysis, translation and search-query parsing.
"""
import os
import re
import json
import logging
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup
from openai import AsyncOpenAI, APIConnectionError, APIStatusError

from knew.errors import ConfigError, UpstreamError

# Configure logging
logger = logging.getLogger(__name__)

GATEWAY_URL = "https://ai.gateway.lovable.dev/v1"
DEFAULT_MODEL = "google/gemini-2.5-flash"
ANALYSIS_TEXT_LIMIT = 1000

LANGUAGE_NAMES = {
    'en': 'English',
    'pt': 'Portuguese',
    'es': 'Spanish',
    'fr': 'French',
    'de': 'German',
    'zh': 'Chinese',
    'ja': 'Japanese',
    'ko': 'Korean',
}

TRANSLATABLE_FIELDS = ('title', 'text', 'summary', 'bias', 'ownership')

ANALYSIS_PROMPT = """You are a news analysis expert. Analyze the given news article and provide:
1. Political Bias (Left, Center-Left, Center, Center-Right, Right, or Unknown)
2. A concise 2-sentence summary
3. Media ownership information (if identifiable from the URL/source)
4. Sentiment analysis (positive, negative, or neutral)
5. Extract up to 3 key factual claims and verify them (verified, disputed, or unverified)

Respond in JSON format only:
{
  "bias": "string",
  "summary": "string",
  "ownership": "string",
  "sentiment": "positive" | "negative" | "neutral",
  "claims": [
    {
      "text": "claim text",
      "verification": "verified" | "disputed" | "unverified",
      "explanation": "brief explanation of verification status"
    }
  ]
}"""

SEARCH_PROMPT = """You are a news search query parser. Extract key search terms, locations, topics, and entities from user queries.
Return a JSON object with:
- searchText: main keywords to search (required)
- locations: array of countries/states/cities mentioned
- categories: array of categories (politics, business, technology, sports, entertainment, health, science)
- timeframe: recent/today/this_week if mentioned"""

TRANSLATOR_PROMPT = (
    "You are a professional translator. You translate news articles accurately while "
    "preserving meaning and tone. Always return valid JSON only, no markdown."
)


def clean_article_text(text: Optional[str], limit: int = ANALYSIS_TEXT_LIMIT) -> str:
    """
    Strip markup from article text and truncate it for a prompt.

    Args:
        text: Raw article text, possibly HTML
        limit: Maximum number of characters kept

    Returns:
        Plain text, whitespace normalised
    """
    if not text:
        return ""
    plain = BeautifulSoup(text, 'html.parser').get_text(separator=' ', strip=True)
    plain = re.sub(r'\s+', ' ', plain).strip()
    return plain[:limit]


def parse_json_reply(content: str) -> Dict[str, Any]:
    """
    Decode a model reply that should be a JSON object.

    Markdown code fences around the object are removed first.

    Raises:
        ValueError: If the reply is not a JSON object
    """
    cleaned = re.sub(r'```(?:json)?\s*|\s*```', '', content or '').strip()
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


class AIGateway:
    """
    Chat-completions client for the OpenAI-compatible AI gateway.
    """
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = GATEWAY_URL,
        model: str = DEFAULT_MODEL,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api_key = api_key or os.getenv('AI_GATEWAY_API_KEY')
        self.base_url = base_url
        self.model = model
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise ConfigError("AI_GATEWAY_API_KEY not configured")
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def _complete(self, messages: List[Dict[str, str]], temperature: Optional[float] = None, json_mode: bool = False) -> str:
        kwargs: Dict[str, Any] = {}
        if temperature is not None:
            kwargs['temperature'] = temperature
        if json_mode:
            kwargs['response_format'] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                **kwargs
            )
        except APIStatusError as e:
            logger.error(f"AI gateway error: {e.status_code}")
            raise UpstreamError(f"AI gateway error: {e.status_code}", status=e.status_code) from e
        except APIConnectionError as e:
            logger.error(f"AI gateway unreachable: {e}")
            raise UpstreamError(f"AI gateway unreachable: {e}") from e

        if not response.choices:
            raise UpstreamError("AI gateway returned no choices", status=502)
        return response.choices[0].message.content or ""

    async def analyze(self, title: str, text: str, url: str) -> Dict[str, Any]:
        """
        Ask for bias, summary, ownership, sentiment and checked claims.

        Args:
            title: Article title
            text: Article body (HTML allowed)
            url: Canonical article URL

        Returns:
            Analysis dictionary

        Raises:
            UpstreamError: 402 when credits are exhausted, 429 when rate
                limited, 502 when the reply cannot be decoded
        """
        logger.info(f"Analyzing news article: {title}")
        body = clean_article_text(text) or 'No content available'
        user_prompt = f"Article Title: {title}\nArticle URL: {url}\nArticle Text: {body}"
        content = await self._complete(
            [
                {"role": "system", "content": ANALYSIS_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            json_mode=True,
        )
        try:
            return parse_json_reply(content)
        except ValueError as e:
            logger.error(f"Error parsing analysis for {url}: {e}")
            raise UpstreamError("Failed to parse analysis", status=502) from e

    async def translate(self, fields: Dict[str, Any], target_language: str) -> Dict[str, Any]:
        """
        Translate the text fields of an article.

        Args:
            fields: Article fields; only non-empty title/text/summary/bias/ownership are sent
            target_language: Language code such as ``es``

        Returns:
            Dictionary with the translated fields
        """
        content = {k: fields[k] for k in TRANSLATABLE_FIELDS if fields.get(k)}
        if not content.get('title'):
            raise UpstreamError("Invalid input: title is required", status=400)

        language_name = LANGUAGE_NAMES.get(target_language, target_language)
        prompt = (
            f"Translate the following news article content to {language_name}. \n"
            "Maintain the original meaning and tone. Return ONLY valid JSON with the same structure, "
            "translating the values.\n\n"
            f"Content to translate:\n{json.dumps(content, indent=2, ensure_ascii=False)}"
        )
        logger.info(f"Translating to: {language_name}")
        reply = await self._complete(
            [
                {"role": "system", "content": TRANSLATOR_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.3,
        )
        try:
            translated = parse_json_reply(reply)
        except ValueError as e:
            logger.error(f"Error parsing translation: {e}")
            raise UpstreamError("Failed to parse translation", status=502) from e
        return {k: v for k, v in translated.items() if k in content}

    async def parse_search_query(self, query: str, language: str = 'en') -> Dict[str, Any]:
        """
        Turn a natural language query into search parameters.

        Falls back to using the query verbatim when the model fails or
        answers with something that is not JSON.

        Raises:
            UpstreamError: 400 when the query is shorter than 2 characters
        """
        if not query or len(query.strip()) < 2:
            raise UpstreamError("Query must be at least 2 characters", status=400)

        fallback = {"searchText": query, "locations": [], "categories": []}
        try:
            reply = await self._complete(
                [
                    {"role": "system", "content": SEARCH_PROMPT},
                    {"role": "user", "content": query},
                ],
                temperature=0.3,
            )
            parsed = parse_json_reply(reply)
        except (UpstreamError, ValueError) as e:
            logger.warning(f"Query parsing failed, using query as-is: {e}")
            parsed = fallback

        if not parsed.get("searchText"):
            parsed["searchText"] = query
        logger.debug(f"Parsed query: {parsed}")
        return {**parsed, "language": language, "originalQuery": query}
