"""
Quality Filtering and Deduplication

Narrows raw fragments to the ones worth classifying: drops short or
boilerplate items, social media links and non-web URLs, then removes
duplicates by a normalized title + canonical URL signature.
"""

import hashlib
import re
from typing import List, Optional, Sequence, TypeVar

from threat_scraper.core.base import FilteredContentItem, RawContentItem
from threat_scraper.core.logging import get_logger
from threat_scraper.utils.url import canonicalize_url, is_http_url, registered_domain


SOCIAL_MEDIA_DOMAINS = (
    'facebook.com', 'twitter.com', 'x.com', 'instagram.com', 'linkedin.com',
    'youtube.com', 'tiktok.com', 'pinterest.com', 'snapchat.com', 'reddit.com',
)

BOILERPLATE_PATTERNS = (
    'subscribe', 'login', 'log in', 'sign in', 'register', 'contact', 'privacy',
    'terms', 'cookie', 'sitemap', 'rss', 'feed', 'search',
)

Item = TypeVar('Item', bound=RawContentItem)


class QualityFilter:
    """
    Quality filter and deduplicator for extracted fragments
    """

    def __init__(self, min_title_length: int = 20, min_content_length: int = 20,
                 social_domains: Sequence[str] = SOCIAL_MEDIA_DOMAINS,
                 boilerplate_patterns: Sequence[str] = BOILERPLATE_PATTERNS):
        self.min_title_length = min_title_length
        self.min_content_length = min_content_length
        self.social_domains = tuple(d.lower() for d in social_domains)
        self._boilerplate = re.compile(
            r'\b(' + '|'.join(re.escape(p) for p in boilerplate_patterns) + r')\b',
            re.IGNORECASE,
        )
        self.logger = get_logger()

    def apply(self, items: Sequence[RawContentItem]) -> List[FilteredContentItem]:
        """
        Filter then deduplicate raw items

        Returns:
            FilteredContentItems in first-seen order with their dedupe
            signature in ``filter_metadata``
        """
        passed = [item for item in items if self.passes(item)]
        unique = self.deduplicate(passed)
        self.logger.info(
            f"Content filtering: {len(items)} raw -> {len(passed)} quality -> {len(unique)} unique"
        )
        return [
            FilteredContentItem.from_raw(item, signature=self.signature(item))
            for item in unique
        ]

    def passes(self, item: RawContentItem) -> bool:
        """Check whether one item meets the quality rules"""
        return self.rejection_reason(item) is None

    def rejection_reason(self, item: RawContentItem) -> Optional[str]:
        title = (item.title or '').strip()
        url = (item.url or '').strip()

        if len(title) < self.min_title_length:
            return 'title too short'
        if len((item.content or '').strip()) < self.min_content_length:
            return 'content too short'
        if not is_http_url(url):
            return 'not a web url'
        if self._is_social(url):
            return 'social media link'
        if self._boilerplate.search(title) or self._boilerplate.search(self._url_tail(url)):
            return 'boilerplate'
        return None

    def deduplicate(self, items: Sequence[Item]) -> List[Item]:
        """Keep the first item of every signature; deterministic and idempotent"""
        seen = set()
        unique = []
        for item in items:
            signature = self.signature(item)
            if signature in seen:
                continue
            seen.add(signature)
            unique.append(item)
        return unique

    def signature(self, item: RawContentItem) -> str:
        """md5 of the normalized title and the canonical URL"""
        normalized = f"{self._normalize_title(item.title)}|{canonicalize_url(item.url or '')}"
        return hashlib.md5(normalized.encode('utf-8')).hexdigest()

    def _normalize_title(self, title: str) -> str:
        return re.sub(r'\s+', ' ', (title or '').lower()).strip()

    def _is_social(self, url: str) -> bool:
        domain = registered_domain(url)
        return domain in self.social_domains

    def _url_tail(self, url: str) -> str:
        """Path and query of a URL with separators turned into spaces"""
        tail = re.sub(r'^[a-z]+://[^/]*', '', url.lower())
        return re.sub(r'[/_\-.?=&]+', ' ', tail)
