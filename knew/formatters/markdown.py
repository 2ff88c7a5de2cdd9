"""
Markdown formatting utilities for KNEW.
"""
import re
from datetime import datetime
from typing import Dict, List, Optional
import logging

from bs4 import BeautifulSoup

from knew.core.article import AnalysisResult, Article
from knew.core.digest import Digest

# Configure logging
logger = logging.getLogger(__name__)

SNIPPET_WORDS = 60


class DigestFormatter:
    """
    Formats a Digest into Markdown content.
    """
    def __init__(self, snippet_words: int = SNIPPET_WORDS):
        self.snippet_words = snippet_words

    def _snippet(self, article: Article) -> str:
        """
        Short plain-text teaser for an article.

        Prefers the upstream summary and falls back to the first words of the
        body with markup removed.
        """
        source = article.summary or article.text or ""
        if re.match(r'^\s*<\w+', source):
            source = BeautifulSoup(source, 'html.parser').get_text(separator=' ')
        words = source.split()
        if len(words) <= self.snippet_words:
            return ' '.join(words)
        return ' '.join(words[:self.snippet_words]) + '...'

    @staticmethod
    def _title_date(generated_date: str) -> str:
        try:
            return datetime.strptime(generated_date, '%Y-%m-%d').strftime('%B %d, %Y')
        except ValueError:
            return generated_date

    def format_article(self, article: Article, analysis: Optional[AnalysisResult] = None) -> str:
        lines = [f"### [{article.title}]({article.url})", ""]

        meta = []
        if article.publish_date:
            meta.append(f"**Published:** {article.publish_date}")
        if article.authors:
            meta.append(f"**By:** {', '.join(article.authors)}")
        if article.source_country:
            meta.append(f"**Country:** {article.source_country.upper()}")
        if meta:
            lines.extend([' | '.join(meta), ""])

        snippet = self._snippet(article)
        if snippet:
            lines.extend([snippet, ""])

        if analysis is not None and not analysis.is_empty:
            if analysis.bias:
                lines.append(f"- **Bias:** {analysis.bias}")
            if analysis.sentiment:
                lines.append(f"- **Sentiment:** {analysis.sentiment}")
            if analysis.summary:
                lines.append(f"- **Summary:** {analysis.summary}")
            for claim in analysis.claims:
                lines.append(f"- *{claim.verification}*: {claim.text}")
            lines.append("")

        return '\n'.join(lines)

    def format_digest(self, digest: Digest, analyses: Optional[Dict[str, AnalysisResult]] = None) -> str:
        """
        Render a digest as Markdown.

        Args:
            digest: The digest to render
            analyses: Optional analyses keyed by article URL

        Returns:
            Markdown document
        """
        analyses = analyses or {}
        title = f"# Your Daily Brief - {self._title_date(digest.generated_date)}"
        parts: List[str] = [title, ""]

        states = [f.value for f in digest.follows if f.type == 'state']
        topics = [f.value for f in digest.follows if f.type == 'topic']
        if states:
            parts.append(f"**States:** {', '.join(states)}  ")
        if topics:
            parts.append(f"**Topics:** {', '.join(topics)}  ")
        parts.append(f"**Articles:** {len(digest.articles)}")
        parts.extend(["", "---", ""])

        if not digest.articles:
            parts.append("*No articles found for your follows today.*")
        for article in digest.articles:
            parts.append(self.format_article(article, analyses.get(article.url)))
            parts.extend(["---", ""])

        logger.debug(f"Formatted digest with {len(digest.articles)} articles")
        return '\n'.join(parts).rstrip() + '\n'
