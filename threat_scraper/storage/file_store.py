"""
Development Article Store

Writes processed articles to the local file system as JSON, grouped by
event type, with a separate analysis file per AI-classified article.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

import aiofiles

from threat_scraper.core.base import (
    DatabaseSaveResult,
    PersistenceError,
    PersistenceGateway,
    ProcessedArticle,
    utc_now_iso,
)
from threat_scraper.core.logging import get_logger


class FileArticleStore(PersistenceGateway):
    """
    Local JSON persistence gateway

    Layout::

        <base_path>/<event_type>/<title>_<signature>.json
        <base_path>/<event_type>/<title>_<signature>.analysis.json
    """

    def __init__(self, base_path: str = "./data/articles"):
        self.base_path = Path(base_path)
        self.logger = get_logger()

    async def save(self, articles: List[ProcessedArticle]) -> DatabaseSaveResult:
        result = DatabaseSaveResult()
        if not articles:
            return result

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create storage directory {self.base_path}: {e}")

        for article in articles:
            try:
                path = await self._write_article(article)
                result.articles_saved += 1
                if not article.fallback:
                    await self._write_analysis(article, path)
                    result.analyses_saved += 1
            except OSError as e:
                message = f"Failed to save '{article.title[:60]}': {e}"
                self.logger.error(message)
                result.errors.append(message)

        self.logger.info(
            f"Saved {result.articles_saved} articles and {result.analyses_saved} analyses to {self.base_path}"
        )
        return result

    async def _write_article(self, article: ProcessedArticle) -> Path:
        event_dir = self.base_path / article.event_type.value.lower()
        event_dir.mkdir(parents=True, exist_ok=True)

        signature = str(article.filter_metadata.get('signature', ''))[:8] or f"{article.index:04d}"
        path = event_dir / f"{self._create_safe_filename(article.article_title or article.title)}_{signature}.json"

        data = article.to_dict()
        data['savedAt'] = utc_now_iso()
        async with aiofiles.open(path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(data, indent=2, ensure_ascii=False))
        return path

    async def _write_analysis(self, article: ProcessedArticle, article_path: Path) -> None:
        path = article_path.with_suffix('.analysis.json')
        async with aiofiles.open(path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(self._analysis(article), indent=2, ensure_ascii=False))

    def _analysis(self, article: ProcessedArticle) -> Dict[str, Any]:
        return {
            'articleUrl': article.url,
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
        }

    def _create_safe_filename(self, text: str) -> str:
        """Create safe filename from text"""
        safe = "".join(c if c.isalnum() else "_" for c in text)
        safe = safe[:50]
        if not safe:
            safe = "article"
        return safe
