"""
Content Extraction for the Threat Intelligence Scraper

Turns already-loaded page HTML into candidate RawContentItems and finds the
next page of paginated listings. Pure functions of the DOM; no network access.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

from bs4 import BeautifulSoup, Tag

from threat_scraper.core.base import ContentType, ExtractionError, RawContentItem, utc_now_iso
from threat_scraper.core.logging import get_logger
from threat_scraper.utils.url import absolutize, canonicalize_url, is_http_url


ARTICLE_SELECTORS = (
    'article', '.article', '.post', '.story', '.item', '.entry',
    '.content-item', '.news-item', '.athing', '.titleline',
    '.storylink', '.storyrow', '[class*="story"]', '[class*="article"]',
    '[class*="post"]', '[class*="item"]',
)

ARTICLE_TITLE_SELECTOR = 'h1, h2, h3, h4, .title, .headline, .storylink, a[href]'
ARTICLE_CONTENT_SELECTOR = '.content, .body, .description, .excerpt, p'
HEADLINE_SELECTOR = 'h1, h2, h3, h4, h5'
CLICKABLE_SELECTOR = '[onclick], [role="link"], [data-href]'

MIN_LINK_TEXT = 10
MIN_TITLE_TEXT = 15

NEXT_PAGE_TEXT = re.compile(
    r'^(next( page| posts| entries)?|older( posts| entries)?|[›»]|next\s*[›»]|more)$',
    re.IGNORECASE,
)
NEXT_PAGE_CLASS_SELECTORS = (
    'a.next', '.next > a', 'li.next a', 'a.pagination-next', '.pagination-next a',
    '.nav-next a', '.pagination a[class*="next"]', 'a[class*="next"]',
)


def _text(element: Optional[Tag]) -> str:
    if element is None:
        return ''
    return re.sub(r'\s+', ' ', element.get_text(' ', strip=True)).strip()


class ContentExtractor:
    """
    Rule-based fragment extractor.

    Rules: ``link`` (anchors with descriptive text), ``article`` (article-like
    containers), ``headline`` (h1-h5) and ``clickable`` (script-driven link
    elements). Which rules run is controlled by ``CrawlConfig.extraction_rules``.
    """

    def __init__(self, rules: Sequence[str] = ("link", "article", "headline")):
        self.rules = tuple(rules)
        self.logger = get_logger()

    def extract(self, html: str, page_url: str, seed_url: str, page_number: int = 1,
                crawled_date: Optional[str] = None) -> List[RawContentItem]:
        """
        Extract candidate fragments from one loaded page

        Args:
            html: Page DOM as HTML
            page_url: URL of the page the DOM belongs to
            seed_url: Seed URL the crawl started from
            page_number: 1-based pagination index
            crawled_date: ISO timestamp stamped on every item

        Returns:
            Items in rule order, each with a per-rule index
        """
        if not html:
            return []

        soup = BeautifulSoup(html, 'html.parser')
        crawled_date = crawled_date or utc_now_iso()
        context = {
            'page_url': page_url,
            'seed_url': seed_url,
            'page_number': page_number,
            'crawled_date': crawled_date,
        }

        items: List[RawContentItem] = []
        if 'link' in self.rules:
            items.extend(self._collect(self._link_candidates(soup, page_url), ContentType.LINK, context))
        if 'article' in self.rules:
            items.extend(self._collect(self._article_candidates(soup, page_url), ContentType.ARTICLE, context))
        if 'headline' in self.rules:
            items.extend(self._collect(self._headline_candidates(soup, page_url), ContentType.HEADLINE, context))
        if 'clickable' in self.rules:
            items.extend(self._collect(self._clickable_candidates(soup, page_url), ContentType.CLICKABLE, context))

        self.logger.debug(f"Extracted {len(items)} fragments from {page_url}")
        return items

    def _collect(self, candidates: Iterable[Dict[str, Any]], content_type: ContentType,
                 context: Dict[str, Any]) -> List[RawContentItem]:
        items = []
        for candidate in candidates:
            try:
                items.append(self._make_item(candidate, content_type, len(items), context))
            except ExtractionError as e:
                self.logger.debug(f"Dropped {content_type.value} fragment on {context['page_url']}: {e}")
        return items

    def _make_item(self, candidate: Dict[str, Any], content_type: ContentType, index: int,
                   context: Dict[str, Any]) -> RawContentItem:
        title = candidate.get('title', '').strip()
        if not title:
            raise ExtractionError("fragment has no title text")

        try:
            url = absolutize(context['page_url'], candidate.get('href'))
        except ValueError as e:
            raise ExtractionError(f"unresolvable url {candidate.get('href')!r}: {e}")

        content = candidate.get('content') or title
        return RawContentItem(
            type=content_type,
            title=title,
            url=url,
            content=content,
            index=index,
            source_url=context['seed_url'],
            crawled_date=context['crawled_date'],
            page_number=context['page_number'],
            content_length=len(content),
            source_page=context['page_url'],
            selector=candidate.get('selector'),
            description=candidate.get('description') or None,
        )

    def _link_candidates(self, soup: BeautifulSoup, page_url: str):
        for anchor in soup.select('a[href]'):
            href = anchor.get('href', '').strip()
            text = _text(anchor)
            if not href or href.lower().startswith('javascript:') or len(text) <= MIN_LINK_TEXT:
                continue
            yield {
                'title': text,
                'href': href,
                'content': text,
                'description': anchor.get('title', ''),
                'selector': 'a[href]',
            }

    def _article_candidates(self, soup: BeautifulSoup, page_url: str):
        seen = set()
        for selector in ARTICLE_SELECTORS:
            for element in soup.select(selector):
                if id(element) in seen:
                    continue
                seen.add(id(element))

                title_el = element.select_one(ARTICLE_TITLE_SELECTOR) or element.find('a')
                title = _text(title_el)
                if len(title) <= MIN_TITLE_TEXT:
                    continue

                link_el = element.select_one('a[href]') or title_el
                href = link_el.get('href') if link_el is not None else None
                yield {
                    'title': title,
                    'href': href,
                    'content': _text(element.select_one(ARTICLE_CONTENT_SELECTOR)) or title,
                    'selector': selector,
                }

    def _headline_candidates(self, soup: BeautifulSoup, page_url: str):
        for heading in soup.select(HEADLINE_SELECTOR):
            text = _text(heading)
            if len(text) <= MIN_TITLE_TEXT:
                continue
            link = heading.find('a', href=True) or heading.find_parent('a', href=True)
            yield {
                'title': text,
                'href': link.get('href') if link is not None else None,
                'content': text,
                'selector': heading.name,
            }

    def _clickable_candidates(self, soup: BeautifulSoup, page_url: str):
        for element in soup.select(CLICKABLE_SELECTOR):
            text = _text(element)
            if len(text) <= MIN_TITLE_TEXT:
                continue
            yield {
                'title': text,
                'href': element.get('data-href') or element.get('data-url'),
                'content': text,
                'selector': CLICKABLE_SELECTOR,
            }


def find_next_page_url(html: str, page_url: str) -> Optional[str]:
    """
    Locate the "next page" link of a paginated listing.

    Checks ``rel=next`` first, then pagination classes, then anchor text
    (next, older, ›, »). Returns an absolute http(s) URL different from
    ``page_url``, or None.
    """
    if not html:
        return None

    soup = BeautifulSoup(html, 'html.parser')
    current = canonicalize_url(page_url)

    candidates: List[Optional[str]] = []
    for element in soup.select('link[rel~="next"], a[rel~="next"]'):
        candidates.append(element.get('href'))
    for selector in NEXT_PAGE_CLASS_SELECTORS:
        for element in soup.select(selector):
            candidates.append(element.get('href'))
    for anchor in soup.select('a[href]'):
        label = _text(anchor) or anchor.get('aria-label', '')
        if NEXT_PAGE_TEXT.match(label.strip()):
            candidates.append(anchor.get('href'))

    for href in candidates:
        if not href or href.strip().startswith('#') or href.lower().startswith('javascript:'):
            continue
        try:
            url = absolutize(page_url, href)
            if is_http_url(url) and canonicalize_url(url) != current:
                return url
        except ValueError:
            continue
    return None
