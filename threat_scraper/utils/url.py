"""
URL Utilities for the Threat Intelligence Scraper

Validation, canonicalisation and domain helpers shared by the fetcher,
the extractor and the quality filter.
"""

from typing import Optional
from urllib.parse import urlparse, urlunparse, urljoin, parse_qsl, urlencode

import tldextract
import validators


# Offline suffix list; never fetches the public suffix list over the network
_tld_extract = tldextract.TLDExtract(suffix_list_urls=())


def is_valid_url(url: str) -> bool:
    """True for absolute http(s) URLs"""
    if not url or not isinstance(url, str):
        return False
    if urlparse(url.strip()).scheme.lower() not in ('http', 'https'):
        return False
    return validators.url(url.strip()) is True


def is_http_url(url: Optional[str]) -> bool:
    return bool(url) and urlparse(url).scheme.lower() in ('http', 'https')


def absolutize(base_url: str, href: Optional[str]) -> str:
    """Resolve href against the page URL"""
    if not href:
        return base_url
    return urljoin(base_url, href.strip())


def canonicalize_url(url: str) -> str:
    """
    Canonical form used for deduplication: lower-cased scheme and host,
    default ports and fragment removed, ``utm_*`` parameters dropped,
    remaining query parameters sorted, trailing slash removed.
    """
    parsed = urlparse(url.strip())

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()

    # Remove default ports
    if netloc.endswith(':80') and scheme == 'http':
        netloc = netloc[:-3]
    elif netloc.endswith(':443') and scheme == 'https':
        netloc = netloc[:-4]

    path = parsed.path or '/'
    if path != '/' and path.endswith('/'):
        path = path.rstrip('/')

    params = [
        (key, value) for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not key.lower().startswith('utm_')
    ]
    query = urlencode(sorted(params))

    normalized = urlunparse((scheme, netloc, path, '', query, ''))
    if normalized.endswith('/') and not query:
        normalized = normalized[:-1]
    return normalized


def registered_domain(url: str) -> str:
    """Registered domain (``example.co.uk``) of a URL, empty when unknown"""
    try:
        extracted = _tld_extract(url)
    except ValueError:
        return ''
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}".lower()
    return (extracted.domain or '').lower()


def site_name(url: str) -> str:
    """Host of a URL without the ``www.`` prefix"""
    host = (urlparse(url).hostname or '').lower()
    if host.startswith('www.'):
        host = host[4:]
    return host or 'unknown'
