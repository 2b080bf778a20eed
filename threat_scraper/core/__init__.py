"""
Core components for the Threat Intelligence Scraper

This package contains:
- Base types, interfaces and errors
- Configuration management
- Logging system
- Browser crawl engine
- Session state, progress events and screenshot retention
- Orchestrator and session coordinator
"""

from threat_scraper.core.base import (
    CrawlPhase,
    ContentType,
    CyberEventType,
    UpdateType,
    LogLevel,
    RawContentItem,
    FilteredContentItem,
    ProcessedArticle,
    CrawlStats,
    Screenshot,
    CrawlLog,
    CrawlUpdate,
    DatabaseSaveResult,
    PageFetchResult,
    CrawlResult,
    ClassificationOk,
    ClassificationMalformed,
    BaseComponent,
    PageFetcherInterface,
    ClassifierGateway,
    PersistenceGateway,
    ScraperError,
    ConfigurationError,
    InvalidInputError,
    NavigationError,
    ExtractionError,
    ClassificationError,
    PersistenceError,
    FatalSessionError,
    CrawlStateError
)

from threat_scraper.core.config import (
    ConfigManager,
    CrawlConfig,
    AIConfig,
    StorageConfig,
    ScreenshotConfig,
    LoggingConfig,
    Settings
)

from threat_scraper.core.logging import (
    LoggingManager,
    get_logger,
    setup_logging
)

from threat_scraper.core.events import ProgressBroadcaster, Subscription
from threat_scraper.core.screenshots import ScreenshotStore
from threat_scraper.core.session import CrawlSession
from threat_scraper.core.crawl_engine import PageFetcher, SessionPool, StealthProfile, create_page_fetcher
from threat_scraper.core.orchestrator import CrawlOrchestrator
from threat_scraper.core.coordinator import CrawlCoordinator

__all__ = [
    # Base types
    'CrawlPhase',
    'ContentType',
    'CyberEventType',
    'UpdateType',
    'LogLevel',
    'RawContentItem',
    'FilteredContentItem',
    'ProcessedArticle',
    'CrawlStats',
    'Screenshot',
    'CrawlLog',
    'CrawlUpdate',
    'DatabaseSaveResult',
    'PageFetchResult',
    'CrawlResult',
    'ClassificationOk',
    'ClassificationMalformed',
    'BaseComponent',
    'PageFetcherInterface',
    'ClassifierGateway',
    'PersistenceGateway',

    # Errors
    'ScraperError',
    'ConfigurationError',
    'InvalidInputError',
    'NavigationError',
    'ExtractionError',
    'ClassificationError',
    'PersistenceError',
    'FatalSessionError',
    'CrawlStateError',

    # Configuration
    'ConfigManager',
    'CrawlConfig',
    'AIConfig',
    'StorageConfig',
    'ScreenshotConfig',
    'LoggingConfig',
    'Settings',

    # Logging
    'LoggingManager',
    'get_logger',
    'setup_logging',

    # Sessions
    'ProgressBroadcaster',
    'Subscription',
    'ScreenshotStore',
    'CrawlSession',

    # Crawl Engine
    'PageFetcher',
    'SessionPool',
    'StealthProfile',
    'create_page_fetcher',

    # Orchestration
    'CrawlOrchestrator',
    'CrawlCoordinator'
]
