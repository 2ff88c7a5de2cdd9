"""
KNEW - News Aggregation Core

Request orchestration and caching for a personalised world-news reader: request
de-duplication, TTL caching with degraded fallback, dual-tier rate limiting,
background recovery with exponential backoff, lazy AI analysis and a
de-duplicated personalised feed.
"""

__version__ = "0.1.0"
