"""
Crawl Orchestrator

Drives one crawl session through its phases: browser fetches with
pagination and scrolling, fragment extraction, quality filtering, batched
AI classification with optional full-text enrichment, and persistence, publishing progress to observers and
honouring cancellation at every page, batch and phase boundary.
"""

import asyncio
import dataclasses
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from threat_scraper.core.base import (
    ClassifierGateway,
    CrawlPhase,
    CrawlResult,
    DatabaseSaveResult,
    FatalSessionError,
    InvalidInputError,
    LogLevel,
    PageFetcherInterface,
    PageFetchResult,
    PersistenceGateway,
    ProcessedArticle,
    ScraperError,
    UpdateType,
)
from threat_scraper.core.config import CrawlConfig
from threat_scraper.core.crawl_engine import PageFetcherFactory, create_page_fetcher
from threat_scraper.core.events import Listener
from threat_scraper.core.logging import get_logger
from threat_scraper.core.screenshots import ScreenshotStore
from threat_scraper.core.session import CrawlSession
from threat_scraper.processors.article_text import ArticleTextExtractor
from threat_scraper.processors.classifier import BatchClassifier, BatchOutcome
from threat_scraper.processors.content import QualityFilter
from threat_scraper.processors.extractor import ContentExtractor
from threat_scraper.utils.url import is_valid_url


CANCELLED_MESSAGE = "Cancelled by user"


class CrawlCancelled(Exception):
    """Raised inside a run when the session's cancel flag is observed"""
    pass


class CrawlOrchestrator:
    """
    Runs crawl sessions

    Args:
        classifier_gateway: AI capability used when AI processing is enabled
        persistence: Store receiving the processed articles
        fetcher_factory: Builds the page fetcher for a session's config
        default_config: Crawl settings used when start() gets no config
        screenshot_ttl: Screenshot age limit in seconds
        screenshot_interval: Seconds between screenshot sweeps
        clock: Time source of the screenshot stores
    """

    def __init__(self, classifier_gateway: Optional[ClassifierGateway] = None,
                 persistence: Optional[PersistenceGateway] = None,
                 fetcher_factory: PageFetcherFactory = create_page_fetcher,
                 default_config: Optional[CrawlConfig] = None,
                 screenshot_ttl: float = 300, screenshot_interval: float = 30,
                 clock: Callable[[], float] = time.time):
        self.classifier_gateway = classifier_gateway
        self.persistence = persistence
        self.fetcher_factory = fetcher_factory
        self.default_config = default_config or CrawlConfig()
        self.screenshot_ttl = screenshot_ttl
        self.screenshot_interval = screenshot_interval
        self.clock = clock
        self.logger = get_logger()

    async def start(self, urls: List[str], config: Union[CrawlConfig, Dict[str, Any], None] = None,
                    client_id: Optional[str] = None, observers: Iterable[Listener] = ()) -> CrawlSession:
        """
        Validate the request and launch a session in the background

        Raises:
            InvalidInputError: empty or malformed URLs, or an invalid config
        """
        crawl_config, seeds = self.validate_request(urls, config)

        session = CrawlSession(
            crawl_config, seeds, client_id=client_id,
            screenshots=ScreenshotStore(self.screenshot_ttl, self.screenshot_interval, clock=self.clock),
        )
        for observer in observers:
            session.broadcaster.add_listener(observer)

        session.started_at = time.monotonic()
        session.transition(CrawlPhase.INITIALIZING)
        session.publish(UpdateType.PROGRESS, {'phase': CrawlPhase.INITIALIZING.value})
        session.log(LogLevel.INFO, f"Starting crawl for {len(seeds)} URLs: {', '.join(seeds)}")

        session.screenshots.start()
        session.task = asyncio.create_task(self._run_session(session))
        return session

    async def run(self, urls: List[str], config: Union[CrawlConfig, Dict[str, Any], None] = None,
                  client_id: Optional[str] = None, observers: Iterable[Listener] = ()) -> CrawlResult:
        """Start a session, wait for its result and release it"""
        session = await self.start(urls, config, client_id=client_id, observers=observers)
        try:
            return await session.wait()
        finally:
            session.destroy()

    def validate_request(self, urls: List[str],
                         config: Union[CrawlConfig, Dict[str, Any], None] = None) -> Tuple[CrawlConfig, List[str]]:
        """Resolved config and de-duplicated seed URLs; raises InvalidInputError"""
        return self._resolve_config(config), self._validate_urls(urls)

    def _resolve_config(self, config: Union[CrawlConfig, Dict[str, Any], None]) -> CrawlConfig:
        if config is None:
            return self.default_config
        if isinstance(config, CrawlConfig):
            config.validate()
            return config
        if isinstance(config, dict):
            return CrawlConfig.from_dict(config)
        raise InvalidInputError(f"Unsupported crawl config type: {type(config).__name__}")

    def _validate_urls(self, urls: List[str]) -> List[str]:
        if not urls:
            raise InvalidInputError("At least one URL is required")

        seeds = []
        for url in urls:
            url = url.strip() if isinstance(url, str) else url
            if not is_valid_url(url):
                raise InvalidInputError(f"Invalid URL: {url!r}")
            if url not in seeds:
                seeds.append(url)
        return seeds

    async def _run_session(self, session: CrawlSession) -> None:
        fetcher: Optional[PageFetcherInterface] = None
        try:
            fetcher = self.fetcher_factory(session.config)
            await fetcher.initialize()
            session.log(LogLevel.INFO, "Browser launched")
            self._check_cancelled(session)

            self._enter(session, CrawlPhase.CRAWLING)
            await self._crawl_phase(session, fetcher)
            self._check_cancelled(session)

            if session.stats.successful_pages == 0:
                raise FatalSessionError(
                    f"No pages could be crawled successfully ({session.stats.failed_pages} failed)"
                )

            # The browser stays open for article pages when full text is wanted
            enrich = session.config.enable_ai_processing and session.config.enable_full_text_extraction
            if not enrich:
                await self._release(fetcher)
                fetcher = None

            self._filter_phase(session)
            self._check_cancelled(session)

            if session.config.enable_ai_processing:
                self._enter(session, CrawlPhase.PROCESSING)
                await self._processing_phase(session)
                self._check_cancelled(session)
                if enrich:
                    await self._enrichment_step(session, fetcher)
                    self._check_cancelled(session)
            else:
                session.log(LogLevel.INFO, "AI processing disabled, skipping classification")

            await self._release(fetcher)
            fetcher = None

            self._enter(session, CrawlPhase.SAVING)
            await self._saving_phase(session)
            self._check_cancelled(session)

            self._finish(session, CrawlPhase.COMPLETED)

        except CrawlCancelled:
            await self._release(fetcher)
            fetcher = None
            self._finish(session, CrawlPhase.CANCELLED, CANCELLED_MESSAGE)
        except asyncio.CancelledError:
            await self._release(fetcher)
            fetcher = None
            self._finish(session, CrawlPhase.CANCELLED, CANCELLED_MESSAGE)
            raise
        except ScraperError as e:
            self.logger.error(f"Session {session.id} failed: {e}")
            await self._release(fetcher)
            fetcher = None
            self._finish(session, CrawlPhase.ERROR, str(e))
        except Exception as e:
            self.logger.error(f"Unexpected error in session {session.id}: {e}", exc_info=True)
            await self._release(fetcher)
            fetcher = None
            self._finish(session, CrawlPhase.ERROR, f"Unexpected error: {e}")
        finally:
            await self._release(fetcher)

    def _check_cancelled(self, session: CrawlSession) -> None:
        if session.cancelled:
            raise CrawlCancelled()

    def _enter(self, session: CrawlSession, phase: CrawlPhase) -> None:
        session.transition(phase)
        session.publish(UpdateType.PROGRESS, {'phase': phase.value})

    async def _release(self, fetcher: Optional[PageFetcherInterface]) -> None:
        if fetcher is None:
            return
        try:
            await fetcher.cleanup()
        except Exception as e:
            self.logger.error(f"Error releasing browser resources: {e}")

    def _finish(self, session: CrawlSession, phase: CrawlPhase, error: Optional[str] = None) -> None:
        """Publish the single terminal event of the session"""
        if session.phase.is_terminal:
            return

        session.transition(phase)
        session.error = error
        session.stats.total_time = session.elapsed()
        session.stats.final_status = phase.value
        session.publish_stats()

        if phase == CrawlPhase.COMPLETED:
            session.log(
                LogLevel.SUCCESS,
                f"Crawl completed: {session.stats.successful_pages} pages, "
                f"{session.stats.raw_items_extracted} items, "
                f"{session.stats.cybersecurity_articles} cybersecurity articles",
            )
        elif phase == CrawlPhase.CANCELLED:
            session.log(LogLevel.WARNING, "Crawl cancelled by user")
        else:
            session.log(LogLevel.ERROR, f"Crawl failed: {error}")

        session.publish(UpdateType.PROGRESS, {'phase': phase.value})

        save_result = session.database_save_result
        if phase == CrawlPhase.ERROR:
            session.publish(UpdateType.ERROR, {'error': error})
        else:
            payload = {
                'success': phase == CrawlPhase.COMPLETED,
                'databaseSaveResult': save_result.to_dict() if save_result else None,
                'stats': session.stats.to_dict(),
            }
            if error:
                payload['error'] = error
            session.publish(UpdateType.COMPLETE, payload)

    async def _crawl_phase(self, session: CrawlSession, fetcher: PageFetcherInterface) -> None:
        extractor = ContentExtractor(session.config.extraction_rules)
        queue: asyncio.Queue = asyncio.Queue()
        for url in session.urls:
            queue.put_nowait(url)

        budget_logged = []

        async def worker() -> None:
            while not session.cancelled:
                try:
                    seed = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await self._crawl_seed(session, fetcher, extractor, seed, budget_logged)

        worker_count = min(session.config.max_concurrency, len(session.urls))
        tasks = [asyncio.create_task(worker()) for _ in range(worker_count)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        session.log(
            LogLevel.INFO,
            f"Crawling finished: {session.stats.successful_pages}/{session.stats.total_pages} pages succeeded",
        )

    async def _crawl_seed(self, session: CrawlSession, fetcher: PageFetcherInterface,
                          extractor: ContentExtractor, seed: str, budget_logged: List[bool]) -> None:
        session.log(LogLevel.INFO, f"Crawling {seed}", url=seed)
        pages = fetcher.fetch_pages(seed, session.cancel_event)
        try:
            while not session.cancelled:
                if not session.reserve_request():
                    if not budget_logged:
                        budget_logged.append(True)
                        session.log(
                            LogLevel.WARNING,
                            f"Request budget of {session.config.max_requests_per_crawl} pages exhausted",
                        )
                    return
                try:
                    page = await pages.__anext__()
                except StopAsyncIteration:
                    session.release_request()
                    return
                self._record_page(session, extractor, page)
        finally:
            await pages.aclose()

    def _record_page(self, session: CrawlSession, extractor: ContentExtractor, page: PageFetchResult) -> None:
        if session.cancelled and not page.success:
            return

        stats = session.stats
        stats.total_pages += 1
        for level, message in page.notes:
            session.log(level, message, url=page.url)

        if not page.success:
            stats.failed_pages += 1
            session.log(LogLevel.WARNING, f"Failed to crawl {page.url}: {page.error_message}", url=page.url)
            session.publish_stats()
            return

        stats.successful_pages += 1
        stats.scroll_attempts += page.scroll_attempts

        if page.screenshot:
            screenshot_id = session.screenshots.add(page.screenshot)
            stats.screenshots_taken += 1
            screenshot = session.screenshots.get(screenshot_id)
            session.publish(UpdateType.SCREENSHOT, {'id': screenshot_id, 'url': page.url, **screenshot.to_dict()})

        items = extractor.extract(page.html, page.url, page.seed_url, page.page_number)
        if items:
            session.raw_items.extend(items)
            stats.raw_items_extracted += len(items)
            session.log(
                LogLevel.SUCCESS,
                f"Extracted {len(items)} items from {page.url} (page {page.page_number})",
                url=page.url,
            )
            session.publish(UpdateType.DATA, {
                'kind': 'raw',
                'newItems': [item.to_dict() for item in items],
                'totalItems': len(session.raw_items),
            })
        else:
            session.log(LogLevel.WARNING, f"No content extracted from {page.url}", url=page.url)

        session.publish_stats()

    def _filter_phase(self, session: CrawlSession) -> None:
        quality_filter = QualityFilter(
            min_title_length=session.config.min_title_length,
            min_content_length=session.config.min_content_length,
        )
        session.filtered_items = quality_filter.apply(session.raw_items)
        session.stats.filtered_items = len(session.filtered_items)
        session.log(
            LogLevel.INFO,
            f"Content filtering: {len(session.raw_items)} -> {len(session.filtered_items)} items",
        )
        session.publish_stats()

    async def _processing_phase(self, session: CrawlSession) -> None:
        config = session.config
        if not session.filtered_items:
            session.log(LogLevel.WARNING, "No content remaining after quality filtering")
            return

        classifier = BatchClassifier(
            self.classifier_gateway,
            batch_size=config.ai_batch_size,
            max_batches=config.max_ai_batches,
            batch_timeout=config.ai_batch_timeout_secs,
        )
        total_items = min(len(session.filtered_items), config.max_ai_items)
        if total_items < len(session.filtered_items):
            session.log(
                LogLevel.INFO,
                f"AI processing limited to {total_items} of {len(session.filtered_items)} items",
            )
        progress = {'itemsProcessed': 0}

        def on_outcome(outcome: BatchOutcome) -> None:
            progress['itemsProcessed'] += outcome.items
            label = f"{outcome.batch_number}/{outcome.total_batches}"

            for article in outcome.articles:
                session.processed_items.append(article)
                session.publish(UpdateType.DATA, {'kind': 'processed', 'article': article.to_dict()})
            session.stats.cybersecurity_articles += outcome.ai_relevant

            if outcome.used_fallback:
                session.log(LogLevel.WARNING, f"Batch {label} classified by keyword fallback: {outcome.reason}")
            else:
                session.log(
                    LogLevel.SUCCESS,
                    f"Batch {label} completed: {outcome.items} items, "
                    f"{outcome.ai_relevant} cybersecurity articles found",
                )

            session.publish(UpdateType.PROGRESS, {
                'phase': CrawlPhase.PROCESSING.value,
                'batchNumber': outcome.batch_number,
                'totalBatches': outcome.total_batches,
                'itemsProcessed': progress['itemsProcessed'],
                'totalItems': total_items,
            })
            session.publish_stats()

        await classifier.process(
            session.filtered_items,
            should_stop=lambda: session.cancelled,
            on_outcome=on_outcome,
        )
        self._check_cancelled(session)

    async def _enrichment_step(self, session: CrawlSession, fetcher: PageFetcherInterface) -> None:
        """Replace each processed article with one carrying its page's full text and published date"""
        articles = list(session.processed_items)
        if not articles:
            return

        extractor = ArticleTextExtractor(max_words=session.config.full_text_max_words)
        session.log(LogLevel.INFO, f"Extracting full text for {len(articles)} articles")

        async def enrich(article: ProcessedArticle) -> ProcessedArticle:
            if session.cancelled or not is_valid_url(article.url):
                return article
            try:
                page = await fetcher.fetch_document(article.url, session.cancel_event)
            except ScraperError as e:
                session.log(LogLevel.WARNING, f"Full text extraction failed: {e}", url=article.url)
                return article
            for level, message in page.notes:
                session.log(level, message, url=page.url)
            if not page.success:
                session.log(LogLevel.WARNING, f"Full text extraction failed: {page.error_message}", url=article.url)
                return article

            text = extractor.extract(page.html)
            enriched = dataclasses.replace(
                article,
                full_text=text.full_text or None,
                published_date=text.published_date,
            )
            session.publish(UpdateType.DATA, {'kind': 'enriched', 'article': enriched.to_dict()})
            return enriched

        session.processed_items = list(await asyncio.gather(*(enrich(article) for article in articles)))

        with_text = sum(1 for article in session.processed_items if article.full_text)
        with_date = sum(1 for article in session.processed_items if article.published_date)
        session.log(
            LogLevel.SUCCESS,
            f"Full text extracted for {with_text}/{len(articles)} articles ({with_date} with published dates)",
        )

    async def _saving_phase(self, session: CrawlSession) -> None:
        articles = list(session.processed_items)
        if not articles:
            result = DatabaseSaveResult()
            session.log(LogLevel.INFO, "No processed articles to save")
        elif self.persistence is None:
            result = DatabaseSaveResult()
            session.log(LogLevel.WARNING, "No persistence gateway configured, articles not saved")
        else:
            session.log(LogLevel.INFO, f"Saving {len(articles)} articles")
            try:
                result = await self.persistence.save(articles)
            except Exception as e:
                self.logger.error(f"Persistence failed for session {session.id}: {e}", exc_info=True)
                result = DatabaseSaveResult(errors=[str(e)])

        session.database_save_result = result
        session.publish(UpdateType.DATABASE_SAVE, result.to_dict())

        if result.errors:
            session.log(LogLevel.ERROR, f"Database save finished with {len(result.errors)} errors")
        else:
            session.log(
                LogLevel.SUCCESS,
                f"Saved {result.articles_saved} articles and {result.analyses_saved} analyses",
            )

    async def close(self) -> None:
        """Release the shared gateways"""
        if self.classifier_gateway is not None:
            await self.classifier_gateway.close()
        if self.persistence is not None:
            await self.persistence.close()
