"""
Storage components for the Threat Intelligence Scraper

This package contains the persistence gateways:
- Local JSON file storage
- Threat intelligence HTTP API ingestion
"""

from .file_store import FileArticleStore
from .api_store import ApiArticleStore

__all__ = ['FileArticleStore', 'ApiArticleStore']
