"""
Component Factory for the Threat Intelligence Scraper

Builds the orchestrator and its gateways from the loaded settings.
"""

from dataclasses import replace
from typing import Any, Dict, Optional

from threat_scraper.core.base import ClassifierGateway, ConfigurationError, PersistenceGateway
from threat_scraper.core.config import CrawlConfig, Settings
from threat_scraper.core.coordinator import CrawlCoordinator
from threat_scraper.core.logging import get_logger
from threat_scraper.core.orchestrator import CrawlOrchestrator
from threat_scraper.processors.ai_gateway import OpenAIClassifierGateway
from threat_scraper.storage.api_store import ApiArticleStore
from threat_scraper.storage.file_store import FileArticleStore


def create_classifier_gateway(settings: Settings) -> Optional[ClassifierGateway]:
    """OpenAI gateway when AI processing is enabled, else None"""
    if not settings.crawl.enable_ai_processing:
        return None
    return OpenAIClassifierGateway(settings.ai)


def create_persistence_gateway(settings: Settings) -> PersistenceGateway:
    storage = settings.storage
    if storage.mode == 'file':
        return FileArticleStore(storage.base_path)
    if storage.mode == 'api':
        return ApiArticleStore(storage.api_url, api_key_env=storage.api_key_env,
                               max_retries=storage.max_retries)
    raise ConfigurationError(f"Invalid storage mode: {storage.mode}")


def apply_overrides(config: CrawlConfig, overrides: Dict[str, Any]) -> CrawlConfig:
    """Copy of config with overrides applied and validated"""
    if not overrides:
        return config
    updated = replace(config, **overrides)
    updated.validate()
    return updated


def create_orchestrator(settings: Settings, crawl_config: Optional[CrawlConfig] = None) -> CrawlOrchestrator:
    """
    Create the orchestrator with its gateways

    Args:
        settings: Loaded settings
        crawl_config: Crawl settings to use instead of settings.crawl
    """
    logger = get_logger()
    crawl_config = crawl_config or settings.crawl
    settings = replace(settings, crawl=crawl_config)

    orchestrator = CrawlOrchestrator(
        classifier_gateway=create_classifier_gateway(settings),
        persistence=create_persistence_gateway(settings),
        default_config=crawl_config,
        screenshot_ttl=settings.screenshots.ttl_seconds,
        screenshot_interval=settings.screenshots.sweep_interval_seconds,
    )
    logger.debug(f"Orchestrator created with storage mode '{settings.storage.mode}'")
    return orchestrator


def create_coordinator(settings: Settings, crawl_config: Optional[CrawlConfig] = None) -> CrawlCoordinator:
    return CrawlCoordinator(create_orchestrator(settings, crawl_config))
