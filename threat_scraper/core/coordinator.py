"""
Crawl Coordinator

Registry of crawl sessions keyed by client id. Implements the control
operations (start, cancel, clear screenshots, disconnect) and guarantees at
most one active crawl per client.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Union

from threat_scraper.core.base import CrawlResult
from threat_scraper.core.config import CrawlConfig
from threat_scraper.core.events import Listener
from threat_scraper.core.logging import get_logger
from threat_scraper.core.orchestrator import CrawlOrchestrator
from threat_scraper.core.session import CrawlSession


class CrawlCoordinator:
    """
    Owns the client id -> session mapping

    A finished session stays registered until the client starts a new crawl
    or disconnects, so its screenshots remain available and keep expiring.
    """

    def __init__(self, orchestrator: CrawlOrchestrator):
        self.orchestrator = orchestrator
        self.logger = get_logger()
        self._sessions: Dict[str, CrawlSession] = {}
        self._lock = asyncio.Lock()

    async def start_crawl(self, client_id: str, urls: List[str],
                          config: Union[CrawlConfig, Dict[str, Any], None] = None,
                          observers: Iterable[Listener] = ()) -> CrawlSession:
        """
        Start a crawl for a client, replacing its existing session

        The previous session is aborted and awaited before the new one is
        registered. Invalid input raises before anything is replaced.
        """
        crawl_config, seeds = self.orchestrator.validate_request(urls, config)

        async with self._lock:
            previous = self._sessions.get(client_id)
            if previous is not None:
                if previous.active:
                    self.logger.info(f"Client {client_id} started a new crawl; aborting {previous.id}")
                previous.abort()
                await self._await_session(previous)
                previous.destroy()
                del self._sessions[client_id]

            session = await self.orchestrator.start(seeds, crawl_config, client_id=client_id, observers=observers)
            self._sessions[client_id] = session
            self.logger.info(f"Registered session {session.id} for client {client_id}")
            return session

    async def cancel(self, client_id: str) -> bool:
        """Abort the client's active crawl; False when there is none"""
        session = self._sessions.get(client_id)
        if session is None:
            return False
        return session.abort()

    def clear_screenshots(self, client_id: str) -> int:
        """Drop every screenshot of the client's session; returns the count removed"""
        session = self._sessions.get(client_id)
        if session is None:
            return 0
        count = session.screenshots.clear()
        self.logger.info(f"Cleared {count} screenshots for client {client_id}")
        return count

    async def disconnect(self, client_id: str) -> None:
        """Abort and forget the client's session; resources are freed once it finishes"""
        async with self._lock:
            session = self._sessions.pop(client_id, None)
        if session is None:
            return

        session.abort()
        if session.task is None or session.task.done():
            session.destroy()
        else:
            session.task.add_done_callback(lambda _task: session.destroy())
        self.logger.info(f"Client {client_id} disconnected; session {session.id} released")

    def get(self, client_id: str) -> Optional[CrawlSession]:
        return self._sessions.get(client_id)

    def snapshot(self, client_id: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.get(client_id)
        return session.snapshot() if session else None

    def list_active(self) -> List[Dict[str, Any]]:
        return [session.snapshot() for session in self._sessions.values() if session.active]

    async def wait(self, client_id: str) -> Optional[CrawlResult]:
        session = self._sessions.get(client_id)
        if session is None:
            return None
        return await session.wait()

    async def shutdown(self) -> None:
        """Abort every session and wait for all of them to finish"""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        for session in sessions:
            session.abort()
        for session in sessions:
            await self._await_session(session)
            session.destroy()
        self.logger.info(f"Coordinator shut down ({len(sessions)} sessions)")

    async def _await_session(self, session: CrawlSession) -> None:
        if session.task is not None:
            await asyncio.gather(session.task, return_exceptions=True)
