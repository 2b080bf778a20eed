"""
Screenshot Store

Session-owned map of base64 page captures with time-based expiry. The
periodic sweep task lives and dies with the store.
"""

import asyncio
import time
import uuid
from typing import Callable, Dict, Optional

from threat_scraper.core.base import Screenshot
from threat_scraper.core.logging import get_logger


class ScreenshotStore:
    """
    In-memory screenshot store with TTL sweeping

    Args:
        ttl_seconds: Age after which a screenshot is removed by sweep()
        sweep_interval: Seconds between background sweeps once start() is called
        clock: Returns the current time in seconds (injectable for tests)
    """

    def __init__(self, ttl_seconds: float = 300, sweep_interval: float = 30,
                 clock: Callable[[], float] = time.time,
                 on_expired: Optional[Callable[[str], None]] = None):
        self.ttl_seconds = ttl_seconds
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.on_expired = on_expired
        self.logger = get_logger()
        self._screenshots: Dict[str, Screenshot] = {}
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._screenshots)

    def __contains__(self, screenshot_id: str) -> bool:
        return screenshot_id in self._screenshots

    def add(self, data: str, timestamp: Optional[float] = None) -> str:
        """Store a capture and return its id"""
        screenshot_id = f"screenshot_{uuid.uuid4().hex}"
        self._screenshots[screenshot_id] = Screenshot(
            data=data,
            timestamp=self.clock() if timestamp is None else timestamp,
            size=len(data),
        )
        return screenshot_id

    def get(self, screenshot_id: str) -> Optional[Screenshot]:
        return self._screenshots.get(screenshot_id)

    def delete(self, screenshot_id: str) -> bool:
        return self._screenshots.pop(screenshot_id, None) is not None

    def clear(self) -> int:
        """Remove every screenshot; returns how many were removed"""
        count = len(self._screenshots)
        self._screenshots.clear()
        return count

    def snapshot(self) -> Dict[str, Screenshot]:
        return dict(self._screenshots)

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove screenshots older than the TTL; returns how many were removed"""
        now = self.clock() if now is None else now
        expired = [
            sid for sid, shot in self._screenshots.items()
            if now - shot.timestamp > self.ttl_seconds
        ]
        for sid in expired:
            del self._screenshots[sid]
            if self.on_expired:
                self.on_expired(sid)
        if expired:
            self.logger.debug(f"Swept {len(expired)} expired screenshots")
        return len(expired)

    def start(self) -> None:
        """Start the periodic sweep on the running event loop"""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._sweep_loop())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                self.logger.error(f"Screenshot sweep failed: {e}", exc_info=True)

    def close(self) -> None:
        """Stop sweeping and drop every screenshot"""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._screenshots.clear()
