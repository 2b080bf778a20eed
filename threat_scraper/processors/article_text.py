"""
Article Text Extraction

Pulls the main body text and the publication date out of an article page,
for enriching classified articles with their full text.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Iterator, Optional

from bs4 import BeautifulSoup

from threat_scraper.core.logging import get_logger


# Removed before looking for the article body
BOILERPLATE_SELECTORS = (
    'script', 'style', 'noscript', 'iframe', 'nav', 'header', 'footer', 'aside',
    '.advertisement', '.ads', '.social', '.comments', '.sidebar',
    '[class*="ad-"]', '[id*="ad-"]', '[class*="social"]',
    '.cookie-notice', '.popup', '.modal', '.related-articles',
)

# Body containers in priority order; the longest match wins
CONTENT_SELECTORS = (
    'article', '[role="main"]', '.article-content', '.post-content', '.entry-content',
    '.content', '.story-body', '.article-body', '.post-body', '.main-content', 'main',
    '.article', '.story', '.post', '.blog-post',
)

PUBLISHED_META_SELECTORS = (
    'meta[property="article:published_time"]',
    'meta[name="article:published_time"]',
    'meta[property="article:published"]',
    'meta[name="publishdate"]',
    'meta[name="date"]',
    'meta[property="article:publish_date"]',
    'meta[name="DC.date.issued"]',
    'meta[name="sailthru.date"]',
    'meta[property="og:article:published_time"]',
)

ARTICLE_LD_TYPES = ('Article', 'NewsArticle', 'BlogPosting', 'ReportageNewsArticle')

MIN_BODY_CHARS = 100
MIN_PARAGRAPH_CHARS = 50

_MONTH_NAME_DATE = re.compile(r'\b([A-Za-z]{3,9})\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})\b')
_DAY_MONTH_DATE = re.compile(r'\b(\d{1,2})(?:st|nd|rd|th)?\s+([A-Za-z]{3,9})\.?,?\s+(\d{4})\b')
_NUMERIC_FORMATS = ('%Y-%m-%d', '%Y/%m/%d', '%Y.%m.%d', '%m/%d/%Y', '%m-%d-%Y')


def _month_number(name: str) -> Optional[int]:
    try:
        return datetime.strptime(name[:3].title(), '%b').month
    except ValueError:
        return None


def normalize_published_date(value: Optional[str]) -> Optional[str]:
    """
    Normalise a published date to ``YYYY-MM-DD``

    Accepts ISO 8601 timestamps, numeric dates (``2024/03/20``,
    ``03/20/2024``), month-name dates (``Jul 08, 2025``, ``8 July 2025``)
    and RFC 2822 dates. Returns None when nothing parses.
    """
    if not value:
        return None
    text = str(value).strip()
    if not text or text.upper() == 'NOT_FOUND':
        return None

    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00')).date().isoformat()
    except ValueError:
        pass

    head = text.split('T')[0].split(' ')[0]
    for fmt in _NUMERIC_FORMATS:
        try:
            return datetime.strptime(head, fmt).date().isoformat()
        except ValueError:
            continue

    for pattern, order in ((_MONTH_NAME_DATE, (0, 1, 2)), (_DAY_MONTH_DATE, (1, 0, 2))):
        match = pattern.search(text)
        if not match:
            continue
        groups = match.groups()
        month = _month_number(groups[order[0]])
        if month is None:
            continue
        try:
            return datetime(int(groups[order[2]]), month, int(groups[order[1]])).date().isoformat()
        except ValueError:
            continue

    try:
        return parsedate_to_datetime(text).date().isoformat()
    except (TypeError, ValueError, IndexError):
        return None


@dataclass(frozen=True)
class ArticleText:
    """Body text and normalised publication date of one article page"""
    full_text: str = ""
    published_date: Optional[str] = None


class ArticleTextExtractor:
    """Extracts the readable body and the publication date of an article page"""

    def __init__(self, max_words: int = 1000):
        self.max_words = max_words
        self.logger = get_logger()

    def extract(self, html: str) -> ArticleText:
        if not html:
            return ArticleText()

        soup = BeautifulSoup(html, 'html.parser')
        # Dates live in <script type="application/ld+json"> and <meta>, which
        # the boilerplate pass removes
        published_date = self._published_date(soup)

        for selector in BOILERPLATE_SELECTORS:
            for element in soup.select(selector):
                element.decompose()

        return ArticleText(full_text=self._truncate(self._body_text(soup)), published_date=published_date)

    def _body_text(self, soup: BeautifulSoup) -> str:
        best = ""
        for selector in CONTENT_SELECTORS:
            element = soup.select_one(selector)
            if element is None:
                continue
            text = self._clean(element.get_text(separator=' '))
            if len(text) > len(best) and len(text) > MIN_BODY_CHARS:
                best = text

        if len(best) < 2 * MIN_BODY_CHARS:
            paragraphs = [self._clean(p.get_text(separator=' ')) for p in soup.find_all('p')]
            joined = ' '.join(p for p in paragraphs if len(p) > MIN_PARAGRAPH_CHARS)
            if len(joined) > len(best):
                best = joined

        if len(best) < MIN_BODY_CHARS and soup.body is not None:
            best = self._clean(soup.body.get_text(separator=' '))
        return best

    def _truncate(self, text: str) -> str:
        words = text.split()
        if len(words) > self.max_words:
            return ' '.join(words[:self.max_words]) + '...'
        return text

    @staticmethod
    def _clean(text: str) -> str:
        return re.sub(r'\s+', ' ', text or '').strip()

    def _published_date(self, soup: BeautifulSoup) -> Optional[str]:
        for candidate in self._date_candidates(soup):
            normalized = normalize_published_date(candidate)
            if normalized:
                return normalized
        return None

    def _date_candidates(self, soup: BeautifulSoup) -> Iterator[str]:
        """Raw date strings from structured data, meta tags and <time> elements, best first"""
        for script in soup.find_all('script', attrs={'type': 'application/ld+json'}):
            try:
                data = json.loads(script.string or '')
            except ValueError:
                self.logger.debug("Skipping unparseable JSON-LD block")
                continue
            date = self._ld_published(data)
            if date:
                yield date

        for selector in PUBLISHED_META_SELECTORS:
            element = soup.select_one(selector)
            content = (element.get('content') or '').strip() if element is not None else ''
            if len(content) > 8:
                yield content

        for element in soup.select('time[datetime], time[pubdate]'):
            value = element.get('datetime') or element.get_text(strip=True)
            if value:
                yield value

    def _ld_published(self, data: Any) -> Optional[str]:
        if isinstance(data, list):
            for entry in data:
                found = self._ld_published(entry)
                if found:
                    return found
            return None
        if not isinstance(data, dict):
            return None
        if data.get('datePublished'):
            return str(data['datePublished'])
        graph = data.get('@graph')
        if isinstance(graph, list):
            for entry in graph:
                if isinstance(entry, dict) and entry.get('@type') in ARTICLE_LD_TYPES and entry.get('datePublished'):
                    return str(entry['datePublished'])
        return None
