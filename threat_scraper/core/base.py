"""
Base Classes and Interfaces for the Threat Intelligence Scraper

Defines the data model shared by every stage of the crawl pipeline, the
abstract interfaces of the pluggable components and the exception taxonomy.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union
import asyncio


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string"""
    return datetime.now(timezone.utc).isoformat()


class CrawlPhase(Enum):
    """Phases of a crawl session"""
    IDLE = "idle"
    INITIALIZING = "initializing"
    CRAWLING = "crawling"
    PROCESSING = "processing"
    SAVING = "saving"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (CrawlPhase.COMPLETED, CrawlPhase.ERROR, CrawlPhase.CANCELLED)


class ContentType(Enum):
    """Kinds of extracted fragments"""
    LINK = "link"
    ARTICLE = "article"
    HEADLINE = "headline"
    CLICKABLE = "clickable"


class CyberEventType(Enum):
    """Threat event classification"""
    CYBER_ATTACK = "CYBER_ATTACK"
    DATA_BREACH = "DATA_BREACH"
    MALWARE_CAMPAIGN = "MALWARE_CAMPAIGN"
    VULNERABILITY_DISCLOSURE = "VULNERABILITY_DISCLOSURE"
    INCIDENT_RESPONSE = "INCIDENT_RESPONSE"
    UNKNOWN = "UNKNOWN"


class UpdateType(Enum):
    """Event types carried by a CrawlUpdate"""
    LOG = "log"
    STATS = "stats"
    PROGRESS = "progress"
    SCREENSHOT = "screenshot"
    DATA = "data"
    DATABASE_SAVE = "database-save"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (UpdateType.COMPLETE, UpdateType.ERROR)


class LogLevel(Enum):
    """Levels of crawl log entries shown to observers"""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"


@dataclass(frozen=True)
class RawContentItem:
    """One candidate fragment extracted from a page"""
    type: ContentType
    title: str
    url: str
    content: str
    index: int
    source_url: str
    crawled_date: str
    page_number: int
    content_length: int
    source_page: str
    selector: Optional[str] = None
    description: Optional[str] = None

    @property
    def identity(self) -> Tuple[str, Optional[str], int]:
        """Stable identity of the fragment within a session"""
        return (self.source_page, self.selector, self.index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'title': self.title,
            'url': self.url,
            'content': self.content,
            'description': self.description,
            'index': self.index,
            'sourceUrl': self.source_url,
            'crawledDate': self.crawled_date,
            'pageNumber': self.page_number,
            'contentLength': self.content_length,
            'sourcePage': self.source_page,
            'selector': self.selector,
        }


@dataclass(frozen=True)
class FilteredContentItem(RawContentItem):
    """A fragment that survived quality filtering and deduplication"""
    filter_metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_raw(cls, item: RawContentItem, **filter_metadata: Any) -> 'FilteredContentItem':
        values = {f.name: getattr(item, f.name) for f in fields(RawContentItem)}
        return cls(**values, filter_metadata=dict(filter_metadata))


@dataclass(frozen=True)
class ProcessedArticle(FilteredContentItem):
    """A filtered fragment enriched with threat intelligence fields"""
    article_title: str = ""
    summary: str = ""
    risk_score: int = 5
    event_type: CyberEventType = CyberEventType.UNKNOWN
    attacker: str = "Unknown"
    victim: str = "Unknown"
    victim_country: str = "Unknown"
    vulnerabilities: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    cybersecurity_topics: Tuple[str, ...] = ()
    impact: str = "medium"
    site: str = "unknown"
    confidence_score: float = 0.0
    relevance_score: float = 0.0
    fallback: bool = False
    full_text: Optional[str] = None
    published_date: Optional[str] = None

    @classmethod
    def from_item(cls, item: FilteredContentItem, **analysis: Any) -> 'ProcessedArticle':
        values = {f.name: getattr(item, f.name) for f in fields(FilteredContentItem)}
        values.update(analysis)
        values['risk_score'] = min(10, max(0, int(values.get('risk_score', 5))))
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            'articleTitle': self.article_title,
            'summary': self.summary,
            'riskScore': self.risk_score,
            'eventType': self.event_type.value,
            'attacker': self.attacker,
            'victim': self.victim,
            'victimCountry': self.victim_country,
            'vulnerabilities': list(self.vulnerabilities),
            'keywords': list(self.keywords),
            'cybersecurityTopics': list(self.cybersecurity_topics),
            'impact': self.impact,
            'site': self.site,
            'confidenceScore': self.confidence_score,
            'relevanceScore': self.relevance_score,
            'fallback': self.fallback,
            'fullText': self.full_text,
            'publishedDate': self.published_date,
        })
        return data


@dataclass
class CrawlStats:
    """Counters accumulated over one crawl session"""
    total_pages: int = 0
    successful_pages: int = 0
    failed_pages: int = 0
    screenshots_taken: int = 0
    scroll_attempts: int = 0
    raw_items_extracted: int = 0
    filtered_items: int = 0
    cybersecurity_articles: int = 0
    total_time: Optional[float] = None
    final_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'totalPages': self.total_pages,
            'successfulPages': self.successful_pages,
            'failedPages': self.failed_pages,
            'screenshotsTaken': self.screenshots_taken,
            'scrollAttempts': self.scroll_attempts,
            'rawItemsExtracted': self.raw_items_extracted,
            'filteredItems': self.filtered_items,
            'cybersecurityArticles': self.cybersecurity_articles,
        }
        if self.total_time is not None:
            data['totalTime'] = self.total_time
        if self.final_status is not None:
            data['finalStatus'] = self.final_status
        return data


@dataclass(frozen=True)
class Screenshot:
    """A captured page image, base64 encoded"""
    data: str
    timestamp: float
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {'data': self.data, 'timestamp': self.timestamp, 'size': self.size}


@dataclass(frozen=True)
class CrawlLog:
    """Log entry exposed to observers"""
    id: str
    timestamp: str
    level: LogLevel
    message: str
    url: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'timestamp': self.timestamp,
            'level': self.level.value,
            'message': self.message,
        }
        if self.url:
            data['url'] = self.url
        if self.details:
            data['details'] = self.details
        return data


@dataclass(frozen=True)
class CrawlUpdate:
    """Tagged event sent from the orchestrator to observers"""
    type: UpdateType
    payload: Dict[str, Any]
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'payload': self.payload, 'timestamp': self.timestamp}


@dataclass
class DatabaseSaveResult:
    """Outcome of handing processed articles to the persistence gateway"""
    articles_saved: int = 0
    analyses_saved: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {'articlesSaved': self.articles_saved, 'analysesSaved': self.analyses_saved}
        if self.errors:
            data['errors'] = list(self.errors)
        return data


@dataclass
class PageFetchResult:
    """Result of fetching one page of a seed URL"""
    url: str
    seed_url: str
    page_number: int
    success: bool
    html: str = ""
    error_message: Optional[str] = None
    attempts: int = 0
    scroll_attempts: int = 0
    screenshot: Optional[str] = None
    notes: List[Tuple[LogLevel, str]] = field(default_factory=list)


@dataclass
class CrawlResult:
    """Final result of a crawl session"""
    success: bool
    phase: CrawlPhase
    stats: CrawlStats
    raw_data: List[RawContentItem] = field(default_factory=list)
    filtered_data: List[FilteredContentItem] = field(default_factory=list)
    cybersecurity_data: List[ProcessedArticle] = field(default_factory=list)
    logs: List[CrawlLog] = field(default_factory=list)
    screenshots: Dict[str, Screenshot] = field(default_factory=dict)
    database_save_result: Optional[DatabaseSaveResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'phase': self.phase.value,
            'error': self.error,
            'stats': self.stats.to_dict(),
            'rawData': [item.to_dict() for item in self.raw_data],
            'filteredData': [item.to_dict() for item in self.filtered_data],
            'cybersecurityData': [article.to_dict() for article in self.cybersecurity_data],
            'logs': [log.to_dict() for log in self.logs],
            'screenshots': {sid: shot.to_dict() for sid, shot in self.screenshots.items()},
            'databaseSaveResult': (
                self.database_save_result.to_dict() if self.database_save_result else None
            ),
        }


@dataclass(frozen=True)
class ClassificationOk:
    """Classifier response that validated against the schema"""
    articles: List[ProcessedArticle]


@dataclass(frozen=True)
class ClassificationMalformed:
    """Classifier response that could not be mapped to articles"""
    raw_text: str
    reason: str


ClassificationOutcome = Union[ClassificationOk, ClassificationMalformed]


class BaseComponent(ABC):
    """Base class for all scraper components"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self._initialized = False

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the component"""
        pass

    @abstractmethod
    async def cleanup(self) -> None:
        """Clean up resources"""
        pass

    def is_initialized(self) -> bool:
        """Check if component is initialized"""
        return self._initialized


class PageFetcherInterface(BaseComponent):
    """Interface for browser-backed page fetching"""

    @abstractmethod
    def fetch_pages(self, url: str, cancel_event: asyncio.Event) -> AsyncIterator[PageFetchResult]:
        """Yield one result per page of a seed URL, following pagination"""
        pass

    @abstractmethod
    async def fetch_document(self, url: str, cancel_event: asyncio.Event) -> PageFetchResult:
        """Fetch a single page without scrolling, screenshots or pagination"""
        pass


class ClassifierGateway(ABC):
    """External AI capability turning filtered items into articles"""

    @abstractmethod
    async def classify(self, batch: List[FilteredContentItem]) -> ClassificationOutcome:
        """Classify one chunk; raise ClassificationError when unavailable"""
        pass

    async def close(self) -> None:
        """Release client resources"""
        pass


class PersistenceGateway(ABC):
    """External store for processed articles"""

    @abstractmethod
    async def save(self, articles: List[ProcessedArticle]) -> DatabaseSaveResult:
        """Persist articles and report what was saved"""
        pass

    async def close(self) -> None:
        """Release client resources"""
        pass


class ScraperError(Exception):
    """Base exception for scraper errors"""
    pass


class ConfigurationError(ScraperError):
    """Configuration-related errors"""
    pass


class InvalidInputError(ScraperError):
    """Crawl request rejected before start"""
    pass


class NavigationError(ScraperError):
    """Page navigation timed out or failed"""
    pass


class ExtractionError(ScraperError):
    """A fragment could not be turned into a content item"""
    pass


class ClassificationError(ScraperError):
    """AI classification unavailable or failed"""
    pass


class PersistenceError(ScraperError):
    """Saving processed articles failed"""
    pass


class FatalSessionError(ScraperError):
    """Unrecoverable crawl session failure"""
    pass


class CrawlStateError(ScraperError):
    """Illegal crawl phase transition"""
    pass
