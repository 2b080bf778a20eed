"""
Production Article Store

Posts processed articles and their analyses to a threat intelligence ingest
API over HTTP with bearer authentication and retry on 429/5xx.
"""

import asyncio
import os
import random
from typing import Any, Dict, List, Optional

import aiohttp

from threat_scraper.core.base import (
    DatabaseSaveResult,
    PersistenceError,
    PersistenceGateway,
    ProcessedArticle,
)
from threat_scraper.core.logging import get_logger


class ApiArticleStore(PersistenceGateway):
    """
    HTTP ingest API persistence gateway

    ``POST {api_url}/api/articles`` stores an article and returns its id;
    ``POST {api_url}/api/articles/{id}/analysis`` stores the AI analysis.
    """

    def __init__(self, api_url: str, api_key_env: str = "THREAT_INTEL_API_KEY", max_retries: int = 3,
                 base_retry_delay: float = 1.0, max_retry_delay: float = 60.0, timeout: float = 30):
        self.api_url = api_url.rstrip('/')
        self.api_key_env = api_key_env
        self.max_retries = max_retries
        self.base_retry_delay = base_retry_delay
        self.max_retry_delay = max_retry_delay
        self.timeout = timeout
        self.logger = get_logger()
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is not None and not self.session.closed:
            return self.session

        api_key = os.getenv(self.api_key_env)
        if not api_key:
            raise PersistenceError(f"API key not found in environment variable: {self.api_key_env}")

        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={
                'User-Agent': 'threat-scraper/1.0',
                'Content-Type': 'application/json',
                'Authorization': f'Bearer {api_key}',
            },
        )
        return self.session

    async def save(self, articles: List[ProcessedArticle]) -> DatabaseSaveResult:
        result = DatabaseSaveResult()
        if not articles:
            return result

        session = await self._ensure_session()
        for article in articles:
            try:
                response = await self._post_with_retry(session, f"{self.api_url}/api/articles", article.to_dict())
                result.articles_saved += 1

                article_id = response.get('id') or response.get('article_id')
                if not article.fallback and article_id is not None:
                    await self._post_with_retry(
                        session, f"{self.api_url}/api/articles/{article_id}/analysis", self._analysis(article)
                    )
                    result.analyses_saved += 1
            except PersistenceError as e:
                message = f"Failed to save '{article.title[:60]}': {e}"
                self.logger.error(message)
                result.errors.append(message)

        self.logger.info(f"Ingest API saved {result.articles_saved} articles and {result.analyses_saved} analyses")
        return result

    async def _post_with_retry(self, session: aiohttp.ClientSession, url: str,
                               payload: Dict[str, Any]) -> Dict[str, Any]:
        last_error = None
        for attempt in range(self.max_retries + 1):
            try:
                async with session.post(url, json=payload) as response:
                    if response.status in (200, 201):
                        try:
                            data = await response.json()
                        except (aiohttp.ContentTypeError, ValueError):
                            return {}
                        return data if isinstance(data, dict) else {}

                    error_text = await response.text()
                    last_error = f"{response.status} - {error_text[:200]}"

                    if response.status == 429:
                        delay = self._retry_after(response.headers.get('Retry-After'), attempt)
                    elif response.status >= 500:
                        delay = self._calculate_retry_delay(attempt)
                    else:
                        raise PersistenceError(f"Upload rejected: {last_error}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"Network error: {type(e).__name__}: {e}"
                delay = self._calculate_retry_delay(attempt)

            if attempt < self.max_retries:
                self.logger.warning(f"POST {url} failed ({last_error}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

        raise PersistenceError(f"Failed after {self.max_retries + 1} attempts: {last_error}")

    def _retry_after(self, header: Optional[str], attempt: int) -> float:
        try:
            return min(float(header), self.max_retry_delay)
        except (TypeError, ValueError):
            return self._calculate_retry_delay(attempt)

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter"""
        delay = min(self.base_retry_delay * (2 ** attempt), self.max_retry_delay)
        return delay * random.uniform(0.5, 1.0) if delay > 0 else 0.0

    def _analysis(self, article: ProcessedArticle) -> Dict[str, Any]:
        return {
            'riskScore': article.risk_score,
            'eventType': article.event_type.value,
            'attacker': article.attacker,
            'victim': article.victim,
            'victimCountry': article.victim_country,
            'impact': article.impact,
            'vulnerabilities': list(article.vulnerabilities),
            'keywords': list(article.keywords),
            'cybersecurityTopics': list(article.cybersecurity_topics),
            'confidenceScore': article.confidence_score,
            'relevanceScore': article.relevance_score,
            'summary': article.summary,
        }

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None
