"""
Crawl Session

Mutable state of one crawl: phase state machine, statistics, log entries,
collected items, screenshots, event channel and cancellation flag.
"""

import asyncio
import time
import uuid
from typing import Any, Dict, FrozenSet, List, Optional

from threat_scraper.core.base import (
    CrawlLog,
    CrawlPhase,
    CrawlResult,
    CrawlStateError,
    CrawlStats,
    DatabaseSaveResult,
    FilteredContentItem,
    LogLevel,
    ProcessedArticle,
    RawContentItem,
    UpdateType,
    utc_now_iso,
)
from threat_scraper.core.config import CrawlConfig
from threat_scraper.core.events import ProgressBroadcaster
from threat_scraper.core.logging import get_logger, logging_manager
from threat_scraper.core.screenshots import ScreenshotStore


_ABORTABLE = frozenset({CrawlPhase.ERROR, CrawlPhase.CANCELLED})

TRANSITIONS: Dict[CrawlPhase, FrozenSet[CrawlPhase]] = {
    CrawlPhase.IDLE: frozenset({CrawlPhase.INITIALIZING}) | _ABORTABLE,
    CrawlPhase.INITIALIZING: frozenset({CrawlPhase.CRAWLING}) | _ABORTABLE,
    CrawlPhase.CRAWLING: frozenset({CrawlPhase.PROCESSING, CrawlPhase.SAVING}) | _ABORTABLE,
    CrawlPhase.PROCESSING: frozenset({CrawlPhase.SAVING}) | _ABORTABLE,
    CrawlPhase.SAVING: frozenset({CrawlPhase.COMPLETED}) | _ABORTABLE,
    CrawlPhase.COMPLETED: frozenset(),
    CrawlPhase.ERROR: frozenset(),
    CrawlPhase.CANCELLED: frozenset(),
}


class CrawlSession:
    """State of one crawl, owned by the orchestrator run that drives it"""

    def __init__(self, config: CrawlConfig, urls: List[str], client_id: Optional[str] = None,
                 screenshots: Optional[ScreenshotStore] = None):
        self.id = f"crawl_{uuid.uuid4().hex[:12]}"
        self.client_id = client_id
        self.config = config
        self.urls = list(urls)
        self.logger = get_logger()

        self.phase = CrawlPhase.IDLE
        self.stats = CrawlStats()
        self.logs: List[CrawlLog] = []
        self.raw_items: List[RawContentItem] = []
        self.filtered_items: List[FilteredContentItem] = []
        self.processed_items: List[ProcessedArticle] = []
        self.database_save_result: Optional[DatabaseSaveResult] = None
        self.error: Optional[str] = None

        self.screenshots = screenshots or ScreenshotStore()
        self.broadcaster = ProgressBroadcaster(self.id)
        self.cancel_event = asyncio.Event()
        self.requests_used = 0
        self.started_at: Optional[float] = None
        self.task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def active(self) -> bool:
        return not self.phase.is_terminal

    def transition(self, phase: CrawlPhase) -> None:
        """Move to ``phase``; raises CrawlStateError when the table forbids it"""
        if phase not in TRANSITIONS[self.phase]:
            raise CrawlStateError(f"Illegal transition {self.phase.value} -> {phase.value}")
        self.logger.debug(f"Session {self.id}: {self.phase.value} -> {phase.value}")
        self.phase = phase

    def publish(self, update_type: UpdateType, payload: Optional[Dict[str, Any]] = None) -> bool:
        return self.broadcaster.publish(update_type, payload)

    def log(self, level: LogLevel, message: str, url: Optional[str] = None,
            details: Optional[Dict[str, Any]] = None) -> CrawlLog:
        """Record a log entry, publish it and write it to the package logger"""
        entry = CrawlLog(
            id=f"log_{uuid.uuid4().hex[:12]}",
            timestamp=utc_now_iso(),
            level=level,
            message=message,
            url=url,
            details=details,
        )
        self.logs.append(entry)
        logging_manager.log_crawl_entry(self.id, level, message, url)
        self.publish(UpdateType.LOG, entry.to_dict())
        return entry

    def publish_stats(self) -> None:
        self.publish(UpdateType.STATS, self.stats.to_dict())

    def reserve_request(self) -> bool:
        """Take one unit of the per-crawl request budget"""
        if self.requests_used >= self.config.max_requests_per_crawl:
            return False
        self.requests_used += 1
        return True

    def release_request(self) -> None:
        if self.requests_used > 0:
            self.requests_used -= 1

    def abort(self) -> bool:
        """Request cancellation; no-op once the session is terminal"""
        if self.phase.is_terminal or self.cancelled:
            return False
        self.cancel_event.set()
        self.logger.info(f"Cancellation requested for session {self.id}")
        return True

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return round(time.monotonic() - self.started_at, 3)

    def snapshot(self) -> Dict[str, Any]:
        """Current state for late observers"""
        return {
            'id': self.id,
            'clientId': self.client_id,
            'phase': self.phase.value,
            'stats': self.stats.to_dict(),
            'cancelled': self.cancelled,
            'logCount': len(self.logs),
            'screenshots': len(self.screenshots),
            'rawItems': len(self.raw_items),
            'filteredItems': len(self.filtered_items),
            'processedItems': len(self.processed_items),
            'error': self.error,
        }

    def to_result(self) -> CrawlResult:
        return CrawlResult(
            success=self.phase == CrawlPhase.COMPLETED,
            phase=self.phase,
            stats=self.stats,
            raw_data=list(self.raw_items),
            filtered_data=list(self.filtered_items),
            cybersecurity_data=list(self.processed_items),
            logs=list(self.logs),
            screenshots=self.screenshots.snapshot(),
            database_save_result=self.database_save_result,
            error=self.error,
        )

    async def wait(self) -> CrawlResult:
        """Wait for the run task and return the final result"""
        if self.task is not None:
            await asyncio.shield(self.task)
        return self.to_result()

    def destroy(self) -> None:
        """Release session-owned resources"""
        self.screenshots.close()
        self.broadcaster.close()
