"""
Content processing components for the Threat Intelligence Scraper

This package contains components for processing crawled pages including:
- Fragment extraction from listing pages
- Quality filtering and deduplication
- Batched AI threat classification with keyword fallback
- Full text and published date extraction from article pages
"""

from threat_scraper.processors.extractor import ContentExtractor, find_next_page_url
from threat_scraper.processors.content import QualityFilter
from threat_scraper.processors.classifier import (
    BatchClassifier,
    BatchOutcome,
    ThreatAnalysis,
    ThreatKeywordHeuristic,
    parse_classification_response
)
from threat_scraper.processors.ai_gateway import OpenAIClassifierGateway
from threat_scraper.processors.article_text import ArticleText, ArticleTextExtractor, normalize_published_date

__all__ = [
    'ContentExtractor',
    'find_next_page_url',
    'QualityFilter',
    'BatchClassifier',
    'BatchOutcome',
    'ThreatAnalysis',
    'ThreatKeywordHeuristic',
    'parse_classification_response',
    'OpenAIClassifierGateway',
    'ArticleText',
    'ArticleTextExtractor',
    'normalize_published_date'
]
