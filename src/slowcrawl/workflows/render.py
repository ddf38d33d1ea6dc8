"""Browser page pass: render a fetched page while serving every request from the archive.

Subresources already captured are replayed from the store. Anything missing is
captured on demand by a nested :class:`Exchange` (record mode) or refused
(replay-only mode), so the rendered page never touches the live web directly.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from ..core.keys import CrawlPolicy, LocationType, Status
from ..core.urls import Url, try_url
from .browser import BrowserError, BrowserRequest
from .extract import Analysis
from .storage import StorageError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .crawl import Crawl
    from .exchange import Exchange

logger = logging.getLogger(__name__)

_DENIED = (Status.ROBOTS_DISALLOWED, Status.POLICY_FORBIDDEN)


class PageRender:
    """Renders one page visit and handles the requests it issues."""

    def __init__(self, crawl: "Crawl", exchange: "Exchange", analysis: Analysis) -> None:
        self.crawl = crawl
        self.config = crawl.config
        self.location = exchange.location
        self.url = exchange.url
        self.date = exchange.date
        self.analysis = analysis
        self.nested_exchanges = 0

    async def handle_request(self, request: BrowserRequest) -> None:
        url = try_url(request.url)
        if url is None or not url.is_http():
            await request.continue_normally()
            return
        url = url.without_fragment()
        try:
            record_id = await self._lookup_or_capture(url, request)
            if record_id is None:
                return
            response = self.crawl.storage.read_response(record_id)
        except (BrowserError, StorageError, OSError) as exc:
            logger.warning("Could not serve %s to the browser: %s", url, exc)
            if not request.handled:
                await request.fail("Failed")
            return
        await request.fulfill(response.status, response.headers, response.payload, response.reason)

    async def _lookup_or_capture(self, url: Url, request: BrowserRequest) -> Optional[str]:
        """Record id to serve, or None after failing the request."""

        record_id = self.crawl.db.find_archived_response(url.id, request.method, self.date)
        if record_id is not None:
            return record_id
        visit = self.crawl.db.find_closest_visit(url.id, request.method, self.date)
        if visit is not None and visit.status in _DENIED:
            await request.fail("AccessDenied")
            return None
        if not self.config.record_mode:
            await request.fail("InternetDisconnected")
            return None
        return await self._capture(url, request)

    async def _capture(self, url: Url, request: BrowserRequest) -> Optional[str]:
        from .exchange import Exchange

        if self.crawl.enqueue(self.location, self.date, url, LocationType.TRANSCLUSION) is None:
            await request.fail("Failed")
            return None
        origin = self.crawl.db.get_origin(url.origin_id)
        location = self.crawl.db.get_location(url.id)
        if origin is None or location is None:
            await request.fail("Failed")
            return None
        if origin.crawl_policy == CrawlPolicy.FORBIDDEN:
            await request.fail("AccessDenied")
            return None
        self.nested_exchanges += 1
        with Exchange(self.crawl, origin, location, request.method, request.headers, nested=True) as sub:
            await sub.run()
            if sub.response_id is None:
                await request.fail("AccessDenied" if sub.denied else "Failed")
                return None
            return sub.response_id

    async def _wait(self, completion: "asyncio.Future") -> None:
        try:
            await asyncio.wait_for(completion, self.config.page_load_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for %s to settle", self.url)

    async def run(self) -> None:
        browser = await self.crawl.get_browser()
        if browser is None:
            return
        async with await browser.new_tab() as tab:
            await tab.intercept_requests(self.handle_request)
            if self.config.script_determinism:
                await tab.override_date_and_random(self.date)
            await self._wait(await tab.navigate(str(self.url)))
            await tab.scroll_down()
            title = await tab.title()
            if title:
                self.analysis.title = title
            for link in await tab.extract_links():
                if self.crawl.enqueue(self.location, self.date, link, LocationType.PAGE) is not None:
                    if link not in self.analysis.links:
                        self.analysis.links.append(link)
            if self.config.screenshots:
                jpeg = await tab.screenshot()
                self.analysis.screenshot = jpeg
                self.crawl.db.insert_screenshot(self.location.id, self.date, jpeg)
        logger.info(
            "Rendered %s (%d on-demand captures, title %r)",
            self.url,
            self.nested_exchanges,
            self.analysis.title,
        )


async def render_page(crawl: "Crawl", exchange: "Exchange", analysis: Analysis) -> PageRender:
    render = PageRender(crawl, exchange, analysis)
    await render.run()
    return render


__all__ = ["PageRender", "render_page"]
