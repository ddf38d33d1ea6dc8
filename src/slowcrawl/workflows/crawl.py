"""The crawl loop: one origin at a time, one exchange at a time, politely paced."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..core.keys import (
    DEFAULT_PRIORITY,
    PRIORITY_PAGE,
    PRIORITY_ROBOTS,
    CrawlPolicy,
    LocationType,
    Status,
)
from ..core.urls import Url, try_url
from .browser import Browser, BrowserError
from .crawl_config import CrawlConfig
from .database import Database, Location, utcnow
from .exchange import Exchange
from .storage import Storage

logger = logging.getLogger(__name__)

Schedule = Callable[[datetime], datetime]


class Crawl:
    """Owns the frontier and drives exchanges against it.

    ``schedule`` maps a location's visit time to its next visit time; by
    default every location is revisited after ``config.revisit_interval_seconds``.
    """

    def __init__(
        self,
        config: Optional[CrawlConfig] = None,
        *,
        db: Optional[Database] = None,
        storage: Optional[Storage] = None,
        browser: Optional[Browser] = None,
        schedule: Optional[Schedule] = None,
    ) -> None:
        self.config = config or CrawlConfig()
        self.db = db or Database(self.config.db_url)
        self.storage = storage or Storage(self.config, self.db)
        self.schedule: Schedule = schedule or self._default_schedule
        self.paused = False
        self._browser = browser
        self._browser_lock = asyncio.Lock()
        self._browser_unavailable = False
        self._stopping = False

    def _default_schedule(self, last_visit: datetime) -> datetime:
        return last_visit + timedelta(seconds=self.config.revisit_interval_seconds)

    def add_seed(self, url: str) -> Url:
        """Make ``url``'s origin crawlable and queue its robots.txt and the page itself."""

        seed = Url(url).without_fragment()
        if not seed.is_http():
            raise ValueError(f"Seed must be an http(s) URL: {url}")
        now = utcnow()
        if not self.db.try_insert_origin(seed, now, CrawlPolicy.CONTINUOUS):
            origin = self.db.get_origin(seed.origin_id)
            if origin is not None and origin.crawl_policy == CrawlPolicy.TRANSCLUSIONS:
                self.db.set_origin_policy(seed.origin_id, CrawlPolicy.CONTINUOUS)
        self.db.try_insert_location(seed.resolve("/robots.txt"), LocationType.ROBOTS, now, PRIORITY_ROBOTS)
        self.db.try_insert_location(seed, LocationType.PAGE, now, PRIORITY_PAGE)
        self.db.wake_origin(seed.origin_id, now)
        logger.info("Seeded %s", seed)
        return seed

    def enqueue(
        self,
        via: Location,
        date: datetime,
        target: "str | Url",
        type_: LocationType,
        priority: Optional[int] = None,
    ) -> Optional[Url]:
        """Record a discovered URL and the link to it. Returns the stored URL or None if ignored."""

        url = target if isinstance(target, Url) else try_url(target, via.url)
        if url is None or not url.is_http():
            return None
        url = url.without_fragment()
        depth = via.depth + 1
        if type_ != LocationType.TRANSCLUSION and depth > self.config.max_depth:
            return None
        self.db.try_insert_origin(url, date, CrawlPolicy.TRANSCLUSIONS)
        if self.db.try_insert_location(
            url,
            type_,
            date,
            priority if priority is not None else DEFAULT_PRIORITY[type_],
            via=via.id,
            depth=depth,
        ):
            self.db.wake_origin(url.origin_id, date)
        self.db.try_insert_link(via.id, url.id)
        return url

    async def get_browser(self) -> Optional[Browser]:
        """The shared browser, launched on first use; None when rendering is unavailable."""

        if not self.config.browser_enabled or self._browser_unavailable:
            return None
        async with self._browser_lock:
            if self._browser is None or self._browser.closed:
                try:
                    self._browser = await Browser.launch(
                        self.config.browser_executable,
                        call_timeout=self.config.browser_call_timeout,
                    )
                except (BrowserError, OSError, asyncio.TimeoutError) as exc:
                    logger.warning("Browser unavailable, pages will not be rendered: %s", exc)
                    self._browser_unavailable = True
                    return None
        return self._browser

    async def step(self) -> bool:
        """Visit the most urgent due location, if any. Returns True when an exchange ran."""

        if self.paused:
            await asyncio.sleep(self.config.idle_sleep)
            return False
        origin = self.db.next_origin()
        if origin is None:
            await asyncio.sleep(self.config.idle_sleep)
            return False
        now = utcnow()
        if origin.next_visit is not None and origin.next_visit > now:
            await asyncio.sleep((origin.next_visit - now).total_seconds())
            now = utcnow()
        location = self.db.next_location(origin.id, now)
        if location is None:
            self.db.update_origin_next_visit(origin.id, self.db.earliest_location_visit(origin.id))
            return False
        with Exchange(self, origin, location) as exchange:
            status = await exchange.run()
        if status == Status.PROCESSING_FAILED:
            logger.warning("Continuing after processing failure at %s", location.url)
        return True

    async def run(self, max_steps: Optional[int] = None) -> int:
        """Step until stopped (or ``max_steps`` exchanges ran). Returns the number of exchanges."""

        self._stopping = False
        exchanges = 0
        while not self._stopping:
            if await self.step():
                exchanges += 1
                if max_steps is not None and exchanges >= max_steps:
                    break
        return exchanges

    def stop(self) -> None:
        self._stopping = True

    async def close(self) -> None:
        """Shut down the browser, the archive and the database connection pool."""

        self.stop()
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        self.storage.close()
        self.db.close()

    async def __aenter__(self) -> "Crawl":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


__all__ = ["Crawl", "Schedule"]
