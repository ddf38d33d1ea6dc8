"""One visit to one location: policy check, fetch, digest, store, bookkeeping, dispatch.

The request is written by hand as HTTP/1.0 with ``Connection: close`` so the
raw response bytes, exactly as the server sent them, can be spooled to a
temporary file and archived without re-encoding.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import TYPE_CHECKING, BinaryIO, List, Mapping, Optional, Tuple

from warcio.statusandheaders import (
    StatusAndHeaders,
    StatusAndHeadersParser,
    StatusAndHeadersParserException,
)

from ..core.keys import (
    IGNORED_EXTRA_HEADERS,
    PRIORITY_PAGE,
    PRIORITY_ROBOTS_SITEMAP,
    PRIORITY_SITEMAP,
    CrawlPolicy,
    LocationType,
    Status,
)
from ..core.urls import Url
from . import extract
from .database import Location, Origin, Visit, utcnow
from .robots import is_allowed, parse_robots, read_bounded
from .sitemap import parse_sitemap
from .storage import PayloadDigester, StorageError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .crawl import Crawl

logger = logging.getLogger(__name__)

_CHUNK = 64 * 1024
_HTML_TYPES = ("text/html", "application/xhtml+xml")


def _parse_http_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    # "-0000" means UTC with no zone information
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


class Exchange:
    """A single visit. Use as a context manager so the spool file is always removed."""

    def __init__(
        self,
        crawl: "Crawl",
        origin: Origin,
        location: Location,
        method: str = "GET",
        extra_headers: Optional[Mapping[str, str]] = None,
        *,
        nested: bool = False,
    ) -> None:
        self.crawl = crawl
        self.config = crawl.config
        self.db = crawl.db
        self.id = str(uuid.uuid4())
        self.origin = origin
        self.location = location
        self.url: Url = location.url
        self.method = method.upper()
        self.extra_headers: List[Tuple[str, str]] = [
            (name, value)
            for name, value in (extra_headers or {}).items()
            if name.lower() not in IGNORED_EXTRA_HEADERS
        ]
        self.nested = nested
        self.date = utcnow()
        self.spool: BinaryIO = tempfile.TemporaryFile(prefix="slowcrawl-", suffix=".http")
        self.ip: Optional[str] = None
        self.status: int = 0
        self.request_headers: Optional[StatusAndHeaders] = None
        self.response_headers: Optional[StatusAndHeaders] = None
        self.body_offset = 0
        self.content_length: Optional[int] = None
        self.payload_digest: Optional[str] = None
        self.request_id: Optional[str] = None
        self.response_id: Optional[str] = None
        self.revisit_of: Optional[str] = None
        self.analysis: Optional[extract.Analysis] = None

    def __enter__(self) -> "Exchange":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.spool.close()

    @property
    def succeeded(self) -> bool:
        return Status.is_success(self.status)

    @property
    def denied(self) -> bool:
        return self.status in (Status.ROBOTS_DISALLOWED, Status.POLICY_FORBIDDEN)

    @property
    def content_type(self) -> Optional[str]:
        if self.response_headers is None:
            return None
        value = self.response_headers.get_header("Content-Type")
        if not value:
            return None
        return value.split(";", 1)[0].strip().lower() or None

    async def run(self) -> int:
        """Run the visit to completion and return its status."""

        denial = self._check_policy()
        if denial is not None:
            self.status = denial
            self._finish()
            return self.status

        try:
            await self._fetch()
            if self.status > 0:
                self.crawl.storage.save(self)
        finally:
            self._finish()

        if self.succeeded and self.revisit_of is None:
            await self._process()
        return self.status

    def _check_policy(self) -> Optional[int]:
        if self.origin.crawl_policy == CrawlPolicy.FORBIDDEN:
            return Status.POLICY_FORBIDDEN
        if self.config.ignore_robots or self.location.type == LocationType.ROBOTS:
            return None
        if not is_allowed(self.origin.robots_txt, self.config.user_agent, str(self.url)):
            return Status.ROBOTS_DISALLOWED
        return None

    def _build_request(self) -> StatusAndHeaders:
        headers: List[Tuple[str, str]] = [
            ("Host", self.url.host_header()),
            ("User-Agent", self.config.user_agent),
            ("Connection", "close"),
        ]
        location = self.location
        if self.config.dedupe_server and location.etag_response_id:
            if location.etag:
                headers.append(("If-None-Match", location.etag))
            if location.last_modified:
                headers.append(("If-Modified-Since", format_datetime(location.last_modified, usegmt=True)))
        if location.via is not None:
            via = self.db.get_location(location.via)
            if via is not None:
                headers.append(("Referer", str(via.url)))
        headers.extend(self.extra_headers)
        return StatusAndHeaders(f"{self.method} {self.url.target} HTTP/1.0", headers, is_http_request=True)

    async def _fetch(self) -> None:
        request = self._build_request()
        ssl_context = ssl.create_default_context() if self.url.scheme == "https" else None
        timeout = self.config.fetch_timeout
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    self.url.host,
                    self.url.port,
                    ssl=ssl_context,
                    server_hostname=self.url.host if ssl_context else None,
                ),
                timeout,
            )
            try:
                peer = writer.get_extra_info("peername")
                self.ip = peer[0] if peer else None
                writer.write(request.to_bytes())
                await writer.drain()
                self.request_headers = request
                await asyncio.wait_for(self._spool_response(reader), timeout)
            finally:
                writer.close()
        except asyncio.TimeoutError:
            logger.warning("Timed out fetching %s", self.url)
            self.status = Status.TIMEOUT
            return
        except (OSError, ValueError) as exc:
            # ValueError covers host names the IDNA codec rejects
            logger.warning("Fetching %s failed: %s", self.url, exc)
            self.status = Status.CONNECT_FAILED
            return
        self._parse_response()

    async def _spool_response(self, reader: asyncio.StreamReader) -> None:
        while True:
            chunk = await reader.read(_CHUNK)
            if not chunk:
                return
            self.spool.write(chunk)

    def _parse_response(self) -> None:
        self.spool.seek(0)
        try:
            headers = StatusAndHeadersParser(["HTTP/1.0", "HTTP/1.1"], verify=False).parse(self.spool)
            status = int(headers.get_statuscode())
        except (EOFError, StatusAndHeadersParserException, TypeError, ValueError):
            logger.warning("Malformed or empty response from %s", self.url)
            self.status = Status.CONNECT_BROKEN
            return
        self.response_headers = headers
        self.status = status
        self.body_offset = self.spool.tell()
        digester = PayloadDigester(self.config.warc_digest_algorithm)
        for chunk in iter(lambda: self.spool.read(_CHUNK), b""):
            digester.update(chunk)
        self.payload_digest = str(digester)
        self.content_length = digester.length

    def politeness_delay_millis(self) -> int:
        if self.denied:
            return 0
        if self.origin.robots_crawl_delay is not None:
            delay = self.origin.robots_crawl_delay * 1000
        else:
            delay = self.config.default_delay_millis
        return max(0, min(delay, self.config.max_delay_millis))

    def _finish(self) -> None:
        validators = None
        if self.succeeded and self.response_headers is not None:
            validators = (
                self.response_headers.get_header("ETag"),
                _parse_http_date(self.response_headers.get_header("Last-Modified")),
                self.revisit_of or self.response_id,
            )
        visit = Visit(
            id=self.id,
            location_id=self.location.id,
            origin_id=self.origin.id,
            method=self.method,
            date=self.date,
            status=int(self.status),
            content_type=self.content_type,
            content_length=self.content_length,
            request_id=self.request_id,
            response_id=self.response_id,
        )
        finished = utcnow()
        self.db.finish_visit(
            visit,
            origin_next_visit=finished + timedelta(milliseconds=self.politeness_delay_millis()),
            location_next_visit=self.crawl.schedule(self.date),
            validators=validators,
        )
        logger.info(
            "%s %5d %10s %s %s %s%s",
            self.date.isoformat(timespec="milliseconds"),
            self.status,
            self.content_length if self.content_length is not None else "-",
            self.location.type.value,
            self.method,
            self.url,
            " (revisit)" if self.revisit_of else "",
        )

    async def _process(self) -> None:
        try:
            if self.location.type == LocationType.ROBOTS:
                self._process_robots()
            elif self.location.type == LocationType.SITEMAP:
                self._process_sitemap()
            elif self.location.type == LocationType.PAGE:
                await self._process_page()
        except (StorageError, OSError):
            raise
        except Exception:
            logger.exception("Processing %s failed", self.url)
            self.status = Status.PROCESSING_FAILED

    def _enqueue(self, target: "str | Url", type_: LocationType, priority: Optional[int] = None) -> Optional[Url]:
        return self.crawl.enqueue(self.location, self.date, target, type_, priority)

    def _process_robots(self) -> None:
        self.spool.seek(self.body_offset)
        body = read_bounded(self.spool, self.config.max_robots_bytes)
        rules = parse_robots(body, self.config.user_agent)
        for sitemap in rules.sitemaps:
            self._enqueue(sitemap, LocationType.SITEMAP, PRIORITY_ROBOTS_SITEMAP)
        self.db.update_origin_robots(self.origin.id, rules.crawl_delay, body)

    def _process_sitemap(self) -> None:
        self.spool.seek(self.body_offset)
        for entry in parse_sitemap(self.spool):
            priority = PRIORITY_SITEMAP if entry.type == LocationType.SITEMAP else PRIORITY_PAGE
            url = self._enqueue(entry.loc, entry.type, priority)
            if url is not None:
                self.db.update_location_sitemap(url.id, entry.changefreq, entry.priority, entry.lastmod)

    async def _process_page(self) -> None:
        if self.response_id is None or self.content_type not in _HTML_TYPES:
            return
        response = self.crawl.storage.read_response(self.response_id)
        analysis = extract.parse(response.payload, self.url, response.header("Content-Type"))
        for resource in analysis.resources:
            self._enqueue(resource.url, LocationType.TRANSCLUSION)
        for link in analysis.links:
            self._enqueue(link, LocationType.PAGE)
        self.analysis = analysis
        if analysis.has_script and not self.nested:
            from .render import render_page

            await render_page(self.crawl, self, analysis)


__all__ = ["Exchange"]
