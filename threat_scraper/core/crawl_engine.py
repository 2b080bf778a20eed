"""
Crawl4AI Page Fetcher

Browser-backed page fetching built on crawl4ai: pooled browser sessions,
stealth settings, consent popup dismissal, longer load waits for strict
sites, per-domain rate limiting, navigation timeouts with exponential-backoff
retries, infinite-scroll handling, pagination and screenshots. Pages are
yielded lazily, one PageFetchResult at a time.
"""

import asyncio
import random
import re
import time
import uuid
from html import unescape
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union
from urllib.parse import urlparse

from crawl4ai import AsyncWebCrawler, BrowserConfig, CacheMode, CrawlerRunConfig

from threat_scraper.core.base import (
    LogLevel,
    NavigationError,
    PageFetcherInterface,
    PageFetchResult,
    ScraperError,
)
from threat_scraper.core.config import CrawlConfig
from threat_scraper.core.logging import get_logger
from threat_scraper.processors.extractor import find_next_page_url
from threat_scraper.utils.url import canonicalize_url, registered_domain


USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
]

# Records the document height on <html> so it survives into the returned DOM
SCROLL_HEIGHT_JS = """
document.documentElement.setAttribute('data-scroll-height', String(document.body ? document.body.scrollHeight : 0));
"""

SCROLL_JS = """
window.scrollTo(0, document.body.scrollHeight);
await new Promise(resolve => setTimeout(resolve, 1500));
document.documentElement.setAttribute('data-scroll-height', String(document.body.scrollHeight));
"""

# Clicks the first visible cookie/consent accept control and records which one
CONSENT_JS = """
const consentSelectors = [
    "#onetrust-accept-btn-handler", "button[id*='accept']", "button[class*='accept']",
    "button[id*='consent']", "button[class*='consent']", ".cookie-accept", ".consent-accept"
];
const consentLabels = /^(accept|accept all|accept cookies|i accept|agree|i agree|continue)$/i;
const isVisible = el => !!(el.offsetWidth || el.offsetHeight || el.getClientRects().length);
let consentClicked = null;
for (const selector of consentSelectors) {
    const el = document.querySelector(selector);
    if (el && isVisible(el)) { el.click(); consentClicked = selector; break; }
}
if (!consentClicked) {
    for (const el of document.querySelectorAll('button, [role="button"]')) {
        const label = (el.innerText || '').trim();
        if (isVisible(el) && consentLabels.test(label)) { el.click(); consentClicked = 'button text ' + label; break; }
    }
}
if (consentClicked) {
    document.documentElement.setAttribute('data-consent-clicked', consentClicked);
    await new Promise(resolve => setTimeout(resolve, 1000));
}
"""

# Seconds to let the DOM settle before it is read
DEFAULT_SETTLE_SECS = 1.0
STRICT_SITE_SETTLE_SECS = 6.0
# Navigation timeout floor for strict sites
STRICT_SITE_TIMEOUT_SECS = 60

_SCROLL_HEIGHT_RE = re.compile(r'data-scroll-height="(\d+)"')
_CONSENT_CLICKED_RE = re.compile(r'data-consent-clicked="([^"]*)"')


def read_scroll_height(html: Optional[str]) -> Optional[int]:
    """Scroll height recorded in the DOM by the scroll scripts"""
    match = _SCROLL_HEIGHT_RE.search(html or '')
    return int(match.group(1)) if match else None


def read_consent_click(html: Optional[str]) -> Optional[str]:
    """Consent control clicked by CONSENT_JS, if any"""
    match = _CONSENT_CLICKED_RE.search(html or '')
    return unescape(match.group(1)) if match else None


def strict_site_domain(url: str, domains: Iterable[str]) -> Optional[str]:
    """The entry of domains that url belongs to, or None"""
    host = (urlparse(url).hostname or '').lower()
    domain = registered_domain(url)
    for candidate in domains:
        candidate = candidate.lower()
        if domain == candidate or host == candidate or host.endswith('.' + candidate):
            return candidate
    return None


class StealthProfile:
    """Bot-detection countermeasures derived from a CrawlConfig"""

    def __init__(self, config: CrawlConfig, rng: Optional[random.Random] = None):
        self.config = config
        self.rng = rng or random.Random()

    def user_agent(self) -> str:
        if self.config.rotate_user_agents:
            return self.rng.choice(USER_AGENTS)
        return self.config.user_agent

    def request_delay(self) -> float:
        """Base inter-request delay in seconds, jittered 0.5x-1.5x when enabled"""
        base = self.config.request_delay / 1000
        if self.config.random_delays and base > 0:
            return base * self.rng.uniform(0.5, 1.5)
        return base

    def browser_args(self) -> List[str]:
        args = [
            "--no-sandbox",
            "--disable-dev-shm-usage",
            "--disable-gpu",
        ]
        if self.config.stealth_mode:
            args.extend([
                "--disable-blink-features=AutomationControlled",
                "--disable-infobars",
                "--disable-features=IsolateOrigins,site-per-process",
            ])
        return args

    def run_flags(self) -> Dict[str, bool]:
        return {
            'simulate_user': self.config.human_behavior,
            'override_navigator': self.config.stealth_mode,
            'magic': self.config.bot_detection_bypass,
            'remove_overlay_elements': self.config.bot_detection_bypass,
        }


class SessionPool:
    """
    FIFO pool of crawl4ai session ids.

    A worker holds one session for all pages of a seed URL. Non-persistent
    sessions are killed on release and replaced by a fresh id.
    """

    def __init__(self, size: int, persistent: bool = True,
                 kill_session: Optional[Callable[[str], Awaitable[None]]] = None):
        self.size = max(1, size)
        self.persistent = persistent
        self.kill_session = kill_session
        self.in_use: Set[str] = set()
        self._ids: Set[str] = set()
        self._available: asyncio.Queue = asyncio.Queue()
        for _ in range(self.size):
            self._available.put_nowait(self._new_id())

    @classmethod
    def for_config(cls, config: CrawlConfig,
                   kill_session: Optional[Callable[[str], Awaitable[None]]] = None) -> 'SessionPool':
        if config.use_session_pool:
            size = max(1, min(config.max_concurrency * config.max_sessions_per_crawler,
                              config.session_pool_max_pool_size))
        else:
            size = config.max_concurrency
        persistent = config.use_session_pool and config.persist_cookies_per_session
        return cls(size, persistent=persistent, kill_session=kill_session)

    def _new_id(self) -> str:
        session_id = f"session_{uuid.uuid4().hex[:12]}"
        self._ids.add(session_id)
        return session_id

    @property
    def available(self) -> int:
        return self._available.qsize()

    async def acquire(self) -> str:
        session_id = await self._available.get()
        self.in_use.add(session_id)
        return session_id

    async def release(self, session_id: str) -> None:
        self.in_use.discard(session_id)
        if not self.persistent:
            self._ids.discard(session_id)
            if self.kill_session is not None:
                await self.kill_session(session_id)
            session_id = self._new_id()
        self._available.put_nowait(session_id)

    def session_ids(self) -> List[str]:
        return sorted(self._ids)


class PageFetcher(PageFetcherInterface):
    """
    crawl4ai page fetcher for one crawl session

    Args:
        config: Immutable crawl settings
        crawler_factory: Builds the crawler from a BrowserConfig (defaults to AsyncWebCrawler)
        stealth: Stealth profile, built from config when omitted
    """

    def __init__(self, config: CrawlConfig, crawler_factory: Optional[Callable[..., AsyncWebCrawler]] = None,
                 stealth: Optional[StealthProfile] = None):
        super().__init__(config.to_dict())
        self.crawl_config = config
        self.logger = get_logger()
        self.stealth = stealth or StealthProfile(config)
        self._crawler_factory = crawler_factory

        self.crawler: Optional[AsyncWebCrawler] = None
        self.browser_config: Optional[BrowserConfig] = None
        self.session_pool: Optional[SessionPool] = None
        self.semaphore: Optional[asyncio.Semaphore] = None
        self.session_agents: Dict[str, str] = {}
        self.rate_limits: Dict[str, float] = {}

        # Navigations currently holding the semaphore
        self.active_fetches = 0
        self.peak_active_fetches = 0

    async def initialize(self) -> None:
        """Launch the browser"""
        try:
            self.logger.info("Initializing crawl4ai page fetcher...")
            self.browser_config = BrowserConfig(
                headless=self.crawl_config.headless,
                user_agent=self.stealth.user_agent(),
                viewport_width=self.crawl_config.viewport_width,
                viewport_height=self.crawl_config.viewport_height,
                java_script_enabled=self.crawl_config.enable_javascript,
                text_mode=not self.crawl_config.enable_images,
                extra_args=self.stealth.browser_args(),
            )

            factory = self._crawler_factory or AsyncWebCrawler
            self.crawler = factory(config=self.browser_config)
            await self.crawler.start()

            self.semaphore = asyncio.Semaphore(self.crawl_config.max_concurrency)
            self.session_pool = SessionPool.for_config(self.crawl_config, kill_session=self._kill_session)

            self._initialized = True
            self.logger.info(
                f"Page fetcher initialized with max_concurrency={self.crawl_config.max_concurrency}, "
                f"sessions={self.session_pool.size}"
            )
        except Exception as e:
            self.logger.error(f"Failed to initialize page fetcher: {e}")
            raise ScraperError(f"Browser launch failed: {e}")

    async def cleanup(self) -> None:
        """Kill browser sessions and close the browser"""
        if self.crawler is None:
            return
        try:
            if self.session_pool is not None:
                for session_id in self.session_pool.session_ids():
                    await self._kill_session(session_id)
            await self.crawler.close()
            self.logger.info("Page fetcher cleaned up successfully")
        except Exception as e:
            self.logger.error(f"Error during page fetcher cleanup: {e}")
        finally:
            self.crawler = None
            self._initialized = False

    async def _kill_session(self, session_id: str) -> None:
        self.session_agents.pop(session_id, None)
        strategy = getattr(self.crawler, 'crawler_strategy', None)
        if strategy is None or not hasattr(strategy, 'kill_session'):
            return
        try:
            await strategy.kill_session(session_id)
        except Exception as e:
            self.logger.debug(f"Could not kill browser session {session_id}: {e}")

    async def fetch_pages(self, url: str, cancel_event: asyncio.Event) -> AsyncIterator[PageFetchResult]:
        """
        Fetch a seed URL and its paginated successors

        Yields one PageFetchResult per page. Stops after the pagination
        limit, when no next link is found, on a repeated URL, on a failed
        page or on cancellation.
        """
        if not self._initialized:
            raise ScraperError("Page fetcher not initialized")

        session_id = await self.session_pool.acquire()
        try:
            limit = self.crawl_config.pagination_limit
            visited = set()
            page_url = url
            for page_number in range(1, limit + 1):
                if cancel_event.is_set():
                    return
                visited.add(canonicalize_url(page_url))

                result = await self.fetch_page(page_url, url, page_number, session_id, cancel_event)

                next_url = None
                if result.success and page_number < limit:
                    next_url = find_next_page_url(result.html, page_url)
                    if next_url and canonicalize_url(next_url) in visited:
                        result.notes.append((LogLevel.INFO, f"Pagination stopped at repeated URL {next_url}"))
                        next_url = None
                    elif next_url:
                        result.notes.append((LogLevel.INFO, f"Found next page: {next_url}"))

                yield result

                if not next_url:
                    return
                page_url = next_url
        finally:
            await self.session_pool.release(session_id)

    async def fetch_document(self, url: str, cancel_event: asyncio.Event) -> PageFetchResult:
        """Fetch a single page with retries but without scrolling, screenshots or pagination"""
        if not self._initialized:
            raise ScraperError("Page fetcher not initialized")

        session_id = await self.session_pool.acquire()
        try:
            return await self.fetch_page(url, url, 1, session_id, cancel_event, capture=False)
        finally:
            await self.session_pool.release(session_id)

    async def fetch_page(self, page_url: str, seed_url: str, page_number: int, session_id: str,
                         cancel_event: asyncio.Event, capture: bool = True) -> PageFetchResult:
        """Load one page with retries, then scroll and capture it"""
        result = PageFetchResult(url=page_url, seed_url=seed_url, page_number=page_number, success=False)
        max_attempts = self.crawl_config.max_request_retries + 1
        last_error = None

        strict_domain = strict_site_domain(page_url, self.crawl_config.strict_site_domains)
        if strict_domain:
            result.notes.append((LogLevel.INFO, f"Detected strict site {strict_domain}, using extended load waits"))

        for attempt in range(max_attempts):
            if attempt > 0:
                delay = self.crawl_config.retry_base_delay_secs * 2 ** (attempt - 1)
                result.notes.append((
                    LogLevel.WARNING,
                    f"Retrying {page_url} in {delay:.1f}s (attempt {attempt + 1}/{max_attempts}): {last_error}",
                ))
                if await self._sleep_or_cancel(delay, cancel_event):
                    result.error_message = "Cancelled"
                    return result

            if await self._apply_rate_limit(page_url, cancel_event):
                result.error_message = "Cancelled"
                return result

            result.attempts = attempt + 1
            try:
                result.html = await self._navigate(page_url, session_id, strict=strict_domain is not None)
                break
            except NavigationError as e:
                last_error = str(e)
                self.logger.debug(f"Navigation attempt {attempt + 1} for {page_url} failed: {e}")
        else:
            result.error_message = f"Failed after {max_attempts} attempts: {last_error}"
            result.notes.append((LogLevel.WARNING, f"Giving up on {page_url}: {last_error}"))
            return result

        result.success = True
        consent = read_consent_click(result.html)
        if consent:
            result.notes.append((LogLevel.INFO, f"Clicked consent button: {consent}"))

        if not capture:
            return result
        async with self.semaphore:
            if self.crawl_config.enable_javascript and self.crawl_config.max_scroll_attempts > 0:
                result.html = await self._scroll(page_url, session_id, result, cancel_event)
            if self.crawl_config.enable_screenshots and not cancel_event.is_set():
                await self._capture_screenshot(page_url, session_id, result)
        return result

    async def _navigate(self, page_url: str, session_id: str, strict: bool = False) -> str:
        scripts = [SCROLL_HEIGHT_JS]
        if self.crawl_config.handle_consent_popups:
            scripts.insert(0, CONSENT_JS)
        timeout = self.crawl_config.request_handler_timeout_secs
        if strict:
            timeout = max(timeout, STRICT_SITE_TIMEOUT_SECS)
        settle = STRICT_SITE_SETTLE_SECS if strict else DEFAULT_SETTLE_SECS
        run_config = self._run_config(
            session_id, js_code=scripts, page_timeout_secs=timeout, settle_secs=settle,
        )
        # The browser-side timeout fires first; this bounds the whole call
        timeout += settle

        async with self.semaphore:
            self.active_fetches += 1
            self.peak_active_fetches = max(self.peak_active_fetches, self.active_fetches)
            try:
                crawl = await asyncio.wait_for(self.crawler.arun(url=page_url, config=run_config), timeout)
            except asyncio.TimeoutError:
                raise NavigationError(f"Navigation timed out after {timeout}s")
            except Exception as e:
                raise NavigationError(f"Navigation failed: {e}")
            finally:
                self.active_fetches -= 1

        if not getattr(crawl, 'success', False):
            status = getattr(crawl, 'status_code', None)
            raise NavigationError(getattr(crawl, 'error_message', None) or f"HTTP status {status}")
        return crawl.html or ""

    async def _scroll(self, page_url: str, session_id: str, result: PageFetchResult,
                      cancel_event: asyncio.Event) -> str:
        """Scroll until the height stops growing, attempts run out or the crawl is cancelled"""
        html = result.html
        previous = read_scroll_height(html)
        timeout = self.crawl_config.request_handler_timeout_secs

        for attempt in range(self.crawl_config.max_scroll_attempts):
            if cancel_event.is_set():
                break
            run_config = self._run_config(session_id, js_code=SCROLL_JS, js_only=True)
            try:
                crawl = await asyncio.wait_for(self.crawler.arun(url=page_url, config=run_config), timeout)
            except asyncio.TimeoutError:
                result.notes.append((LogLevel.WARNING, f"Scroll attempt {attempt + 1} timed out on {page_url}"))
                break
            except Exception as e:
                result.notes.append((LogLevel.WARNING, f"Scroll attempt {attempt + 1} failed on {page_url}: {e}"))
                break

            if not getattr(crawl, 'success', False):
                result.notes.append((LogLevel.WARNING, f"Scroll attempt {attempt + 1} failed on {page_url}"))
                break

            result.scroll_attempts += 1
            html = crawl.html or html
            height = read_scroll_height(html)
            if height is not None and height == previous:
                break
            previous = height

        return html

    async def _capture_screenshot(self, page_url: str, session_id: str, result: PageFetchResult) -> None:
        run_config = self._run_config(session_id, js_only=True, screenshot=True)
        timeout = self.crawl_config.screenshot_timeout_secs
        try:
            crawl = await asyncio.wait_for(self.crawler.arun(url=page_url, config=run_config), timeout)
        except asyncio.TimeoutError:
            result.notes.append((LogLevel.WARNING, f"Screenshot timed out after {timeout}s on {page_url}"))
            return
        except Exception as e:
            result.notes.append((LogLevel.WARNING, f"Screenshot failed on {page_url}: {e}"))
            return

        screenshot = getattr(crawl, 'screenshot', None)
        if getattr(crawl, 'success', False) and screenshot:
            result.screenshot = screenshot
        else:
            result.notes.append((LogLevel.WARNING, f"Screenshot failed on {page_url}"))

    def _run_config(self, session_id: str, js_code: Union[str, List[str], None] = None, js_only: bool = False,
                    screenshot: bool = False, page_timeout_secs: Optional[float] = None,
                    settle_secs: Optional[float] = None) -> CrawlerRunConfig:
        """Run configuration for one browser operation in a session"""
        agent = self.session_agents.get(session_id)
        if agent is None:
            agent = self.session_agents[session_id] = self.stealth.user_agent()

        page_timeout = page_timeout_secs or self.crawl_config.request_handler_timeout_secs
        options = {
            'session_id': session_id,
            'cache_mode': CacheMode.BYPASS,
            'page_timeout': int(page_timeout * 1000),
            'user_agent': agent,
            'js_only': js_only,
            'screenshot': screenshot,
            'verbose': False,
        }
        if settle_secs is not None:
            options['wait_until'] = 'domcontentloaded'
            options['delay_before_return_html'] = settle_secs
        if js_code and self.crawl_config.enable_javascript:
            options['js_code'] = js_code
        options.update(self.stealth.run_flags())
        return CrawlerRunConfig(**options)

    async def _apply_rate_limit(self, page_url: str, cancel_event: asyncio.Event) -> bool:
        """
        Wait out the request delay and the per-domain minimum gap.

        Returns:
            True when cancelled while waiting
        """
        domain = urlparse(page_url).netloc.lower()
        now = time.monotonic()
        gap = self.crawl_config.same_domain_delay / 1000
        last = self.rate_limits.get(domain)
        earliest = now if last is None else last + gap
        start = max(now + self.stealth.request_delay(), earliest)
        self.rate_limits[domain] = start
        return await self._sleep_or_cancel(start - now, cancel_event)

    async def _sleep_or_cancel(self, delay: float, cancel_event: asyncio.Event) -> bool:
        """Sleep for delay seconds; returns True as soon as cancellation is requested"""
        if delay <= 0:
            return cancel_event.is_set()
        try:
            await asyncio.wait_for(cancel_event.wait(), delay)
            return True
        except asyncio.TimeoutError:
            return False


PageFetcherFactory = Callable[[CrawlConfig], PageFetcherInterface]


def create_page_fetcher(config: CrawlConfig) -> PageFetcher:
    return PageFetcher(config)
