"""Persistent frontier and archive index on SQLAlchemy Core.

Times are stored as epoch milliseconds (UTC) so ordering and arithmetic stay
portable across database backends; the row dataclasses expose aware
``datetime`` objects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Tuple

from sqlalchemy import (
    BigInteger,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError

from ..core.keys import ChangeFrequency, CrawlPolicy, LocationType, RecordType
from ..core.urls import Url

logger = logging.getLogger(__name__)

metadata = MetaData()

origin_table = Table(
    "origin",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=False),
    Column("name", String, nullable=False),
    Column("discovered", BigInteger, nullable=False),
    Column("last_visit", BigInteger),
    Column("next_visit", BigInteger),
    Column("robots_crawl_delay", Integer),
    Column("robots_txt", LargeBinary),
    Column("crawl_policy", String(16)),
)
Index("origin_next_visit", origin_table.c.next_visit)

location_table = Table(
    "location",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=False),
    Column("origin_id", BigInteger, nullable=False),
    Column("path_id", BigInteger, nullable=False),
    Column("url", String, nullable=False),
    Column("type", String(16), nullable=False),
    Column("depth", Integer, nullable=False, default=0),
    Column("via", BigInteger),
    Column("discovered", BigInteger, nullable=False),
    Column("last_visit", BigInteger),
    Column("next_visit", BigInteger),
    Column("priority", Integer, nullable=False),
    Column("sitemap_changefreq", String(16)),
    Column("sitemap_priority", Float),
    Column("sitemap_lastmod", String),
    Column("etag", String),
    Column("last_modified", BigInteger),
    Column("etag_response_id", String(64)),
    Column("etag_date", BigInteger),
)
Index("location_origin_next_visit", location_table.c.origin_id, location_table.c.next_visit)

visit_table = Table(
    "visit",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("location_id", BigInteger, nullable=False),
    Column("origin_id", BigInteger, nullable=False),
    Column("method", String(16), nullable=False),
    Column("date", BigInteger, nullable=False),
    Column("status", Integer, nullable=False),
    Column("content_type", String),
    Column("content_length", BigInteger),
    Column("request_id", String(64)),
    Column("response_id", String(64)),
    UniqueConstraint("location_id", "date", name="visit_location_date"),
)

warc_table = Table(
    "warc",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("path", String, nullable=False),
    Column("created", BigInteger, nullable=False),
)

record_table = Table(
    "record",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("visit_id", String(64)),
    Column("location_id", BigInteger, nullable=False),
    Column("date", BigInteger, nullable=False),
    Column("type", String(16), nullable=False),
    Column("warc_id", Integer, ForeignKey("warc.id"), nullable=False),
    Column("position", BigInteger, nullable=False),
    Column("length", BigInteger, nullable=False),
    Column("payload_digest", String),
    Column("refers_to", String(64)),
)
Index("record_location_digest", record_table.c.location_id, record_table.c.payload_digest)

link_table = Table(
    "link",
    metadata,
    Column("src", BigInteger, nullable=False),
    Column("dst", BigInteger, nullable=False),
    PrimaryKeyConstraint("src", "dst"),
)

screenshot_table = Table(
    "screenshot",
    metadata,
    Column("location_id", BigInteger, nullable=False),
    Column("date", BigInteger, nullable=False),
    Column("jpeg", LargeBinary, nullable=False),
    PrimaryKeyConstraint("location_id", "date"),
)


def utcnow() -> datetime:
    """Current UTC time truncated to milliseconds (the stored resolution)."""

    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def to_millis(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(round(value.timestamp() * 1000))


def from_millis(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


@dataclass
class Origin:
    id: int
    name: str
    discovered: datetime
    last_visit: Optional[datetime] = None
    next_visit: Optional[datetime] = None
    robots_crawl_delay: Optional[int] = None
    robots_txt: Optional[bytes] = None
    crawl_policy: Optional[CrawlPolicy] = None

    @classmethod
    def from_row(cls, row: Any) -> "Origin":
        return cls(
            id=row.id,
            name=row.name,
            discovered=from_millis(row.discovered),
            last_visit=from_millis(row.last_visit),
            next_visit=from_millis(row.next_visit),
            robots_crawl_delay=row.robots_crawl_delay,
            robots_txt=row.robots_txt,
            crawl_policy=CrawlPolicy(row.crawl_policy) if row.crawl_policy else None,
        )


@dataclass
class Location:
    url: Url
    type: LocationType
    origin_id: int
    depth: int
    discovered: datetime
    priority: int
    via: Optional[int] = None
    last_visit: Optional[datetime] = None
    next_visit: Optional[datetime] = None
    sitemap_changefreq: Optional[ChangeFrequency] = None
    sitemap_priority: Optional[float] = None
    sitemap_lastmod: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    etag_response_id: Optional[str] = None
    etag_date: Optional[datetime] = None

    @property
    def id(self) -> int:
        return self.url.id

    @classmethod
    def from_row(cls, row: Any) -> "Location":
        return cls(
            url=Url(row.url),
            type=LocationType(row.type),
            origin_id=row.origin_id,
            depth=row.depth,
            discovered=from_millis(row.discovered),
            priority=row.priority,
            via=row.via,
            last_visit=from_millis(row.last_visit),
            next_visit=from_millis(row.next_visit),
            sitemap_changefreq=ChangeFrequency.parse(row.sitemap_changefreq),
            sitemap_priority=row.sitemap_priority,
            sitemap_lastmod=row.sitemap_lastmod,
            etag=row.etag,
            last_modified=from_millis(row.last_modified),
            etag_response_id=row.etag_response_id,
            etag_date=from_millis(row.etag_date),
        )


@dataclass
class Visit:
    id: str
    location_id: int
    origin_id: int
    method: str
    date: datetime
    status: int
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    request_id: Optional[str] = None
    response_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "Visit":
        return cls(
            id=row.id,
            location_id=row.location_id,
            origin_id=row.origin_id,
            method=row.method,
            date=from_millis(row.date),
            status=row.status,
            content_type=row.content_type,
            content_length=row.content_length,
            request_id=row.request_id,
            response_id=row.response_id,
        )


@dataclass
class Record:
    id: str
    visit_id: Optional[str]
    location_id: int
    date: datetime
    type: RecordType
    warc_id: int
    position: int
    length: int
    payload_digest: Optional[str] = None
    refers_to: Optional[str] = None
    path: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "Record":
        mapping = row._mapping
        return cls(
            id=row.id,
            visit_id=row.visit_id,
            location_id=row.location_id,
            date=from_millis(row.date),
            type=RecordType(row.type),
            warc_id=row.warc_id,
            position=row.position,
            length=row.length,
            payload_digest=row.payload_digest,
            refers_to=row.refers_to,
            path=mapping.get("path"),
        )


class Database:
    """Thread-safe handle over the frontier/index tables.

    Every public method runs in its own transaction; :meth:`finish_visit`
    groups the per-visit bookkeeping into a single one.
    """

    def __init__(self, url: str = "sqlite://", *, engine: Optional[Engine] = None) -> None:
        if engine is None:
            parsed = make_url(url)
            if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
                Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(url)
        self.engine = engine
        metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def _try_insert(self, table: Table, **values: Any) -> bool:
        try:
            with self.engine.begin() as conn:
                conn.execute(table.insert().values(**values))
            return True
        except IntegrityError:
            return False

    # Origins

    def try_insert_origin(self, url: Url, discovered: datetime, policy: CrawlPolicy) -> bool:
        """Insert the origin of ``url`` if absent. Returns True when created."""

        ms = to_millis(discovered)
        return self._try_insert(
            origin_table,
            id=url.origin_id,
            name=url.origin,
            discovered=ms,
            next_visit=ms,
            crawl_policy=policy.value,
        )

    def get_origin(self, origin_id: int) -> Optional[Origin]:
        with self.engine.connect() as conn:
            row = conn.execute(select(origin_table).where(origin_table.c.id == origin_id)).first()
        return Origin.from_row(row) if row else None

    def next_origin(self) -> Optional[Origin]:
        """Origin with the earliest next visit among crawlable ones."""

        query = (
            select(origin_table)
            .where(
                or_(
                    origin_table.c.crawl_policy.is_(None),
                    origin_table.c.crawl_policy == CrawlPolicy.CONTINUOUS.value,
                )
            )
            .where(origin_table.c.next_visit.is_not(None))
            .order_by(origin_table.c.next_visit)
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        return Origin.from_row(row) if row else None

    def update_origin_next_visit(self, origin_id: int, next_visit: Optional[datetime]) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(origin_table)
                .where(origin_table.c.id == origin_id)
                .values(next_visit=to_millis(next_visit))
            )

    def wake_origin(self, origin_id: int, when: datetime) -> None:
        """Give an origin with no scheduled visit one at ``when``."""

        with self.engine.begin() as conn:
            conn.execute(
                update(origin_table)
                .where(origin_table.c.id == origin_id)
                .where(origin_table.c.next_visit.is_(None))
                .values(next_visit=to_millis(when))
            )

    def update_origin_robots(self, origin_id: int, crawl_delay: Optional[int], robots_txt: bytes) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(origin_table)
                .where(origin_table.c.id == origin_id)
                .values(robots_crawl_delay=crawl_delay, robots_txt=robots_txt)
            )

    def set_origin_policy(self, origin_id: int, policy: CrawlPolicy) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(origin_table).where(origin_table.c.id == origin_id).values(crawl_policy=policy.value)
            )

    # Locations

    def try_insert_location(
        self,
        url: Url,
        type: LocationType,
        discovered: datetime,
        priority: int,
        *,
        via: Optional[int] = None,
        depth: int = 0,
    ) -> bool:
        ms = to_millis(discovered)
        return self._try_insert(
            location_table,
            id=url.id,
            origin_id=url.origin_id,
            path_id=url.path_id,
            url=str(url),
            type=type.value,
            depth=depth,
            via=via,
            discovered=ms,
            next_visit=ms,
            priority=priority,
        )

    def get_location(self, location_id: int) -> Optional[Location]:
        with self.engine.connect() as conn:
            row = conn.execute(select(location_table).where(location_table.c.id == location_id)).first()
        return Location.from_row(row) if row else None

    def next_location(self, origin_id: int, now: datetime) -> Optional[Location]:
        """Most urgent due location of an origin."""

        c = location_table.c
        query = (
            select(location_table)
            .where(c.origin_id == origin_id)
            .where(c.next_visit <= to_millis(now))
            .order_by(c.priority, c.sitemap_priority.desc(), c.depth, c.next_visit)
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        return Location.from_row(row) if row else None

    def earliest_location_visit(self, origin_id: int) -> Optional[datetime]:
        query = select(func.min(location_table.c.next_visit)).where(location_table.c.origin_id == origin_id)
        with self.engine.connect() as conn:
            return from_millis(conn.execute(query).scalar())

    def list_locations(self, origin_id: Optional[int] = None) -> List[Location]:
        query = select(location_table).order_by(location_table.c.discovered, location_table.c.url)
        if origin_id is not None:
            query = query.where(location_table.c.origin_id == origin_id)
        with self.engine.connect() as conn:
            return [Location.from_row(row) for row in conn.execute(query)]

    def update_location_sitemap(
        self,
        location_id: int,
        changefreq: Optional[ChangeFrequency],
        priority: Optional[float],
        lastmod: Optional[str],
    ) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(location_table)
                .where(location_table.c.id == location_id)
                .values(
                    sitemap_changefreq=changefreq.value if changefreq else None,
                    sitemap_priority=priority,
                    sitemap_lastmod=lastmod,
                )
            )

    def try_insert_link(self, src: int, dst: int) -> bool:
        return self._try_insert(link_table, src=src, dst=dst)

    def links_from(self, src: int) -> List[int]:
        with self.engine.connect() as conn:
            return list(conn.execute(select(link_table.c.dst).where(link_table.c.src == src)).scalars())

    # Visits

    def finish_visit(
        self,
        visit: Visit,
        *,
        origin_next_visit: datetime,
        location_next_visit: datetime,
        validators: Optional[Tuple[Optional[str], Optional[datetime], Optional[str]]] = None,
    ) -> None:
        """Record a completed visit and its politeness/revisit bookkeeping atomically.

        ``validators`` is ``(etag, last_modified, response_id)`` and replaces
        the location's cached conditional-request state when given.
        """

        date = to_millis(visit.date)
        with self.engine.begin() as conn:
            conn.execute(
                update(origin_table)
                .where(origin_table.c.id == visit.origin_id)
                .values(last_visit=date, next_visit=to_millis(origin_next_visit))
            )
            values: dict = {"last_visit": date, "next_visit": to_millis(location_next_visit)}
            if validators is not None:
                etag, last_modified, response_id = validators
                values.update(
                    etag=etag,
                    last_modified=to_millis(last_modified),
                    etag_response_id=response_id,
                    etag_date=date,
                )
            conn.execute(update(location_table).where(location_table.c.id == visit.location_id).values(**values))
            conn.execute(
                visit_table.insert().values(
                    id=visit.id,
                    location_id=visit.location_id,
                    origin_id=visit.origin_id,
                    method=visit.method,
                    date=date,
                    status=visit.status,
                    content_type=visit.content_type,
                    content_length=visit.content_length,
                    request_id=visit.request_id,
                    response_id=visit.response_id,
                )
            )

    def find_closest_visit(self, location_id: int, method: str, date: datetime) -> Optional[Visit]:
        """Visit of a location nearest in time to ``date``."""

        c = visit_table.c
        query = (
            select(visit_table)
            .where(c.location_id == location_id)
            .where(c.method == method)
            .order_by(func.abs(c.date - to_millis(date)), c.date.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        return Visit.from_row(row) if row else None

    def list_visits(self, location_id: int) -> List[Visit]:
        query = select(visit_table).where(visit_table.c.location_id == location_id).order_by(visit_table.c.date)
        with self.engine.connect() as conn:
            return [Visit.from_row(row) for row in conn.execute(query)]

    # Archive files and records

    def insert_warc(self, path: str, created: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(warc_table.insert().values(path=path, created=to_millis(created)))
            return int(result.inserted_primary_key[0])

    def insert_record(self, record: Record) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                record_table.insert().values(
                    id=record.id,
                    visit_id=record.visit_id,
                    location_id=record.location_id,
                    date=to_millis(record.date),
                    type=record.type.value,
                    warc_id=record.warc_id,
                    position=record.position,
                    length=record.length,
                    payload_digest=record.payload_digest,
                    refers_to=record.refers_to,
                )
            )

    def _record_query(self):
        return select(record_table, warc_table.c.path).join(warc_table, warc_table.c.id == record_table.c.warc_id)

    def get_record(self, record_id: str) -> Optional[Record]:
        """Record plus the path of the archive file holding it."""

        with self.engine.connect() as conn:
            row = conn.execute(self._record_query().where(record_table.c.id == record_id)).first()
        return Record.from_row(row) if row else None

    def find_response_by_payload_digest(self, location_id: int, digest: str) -> Optional[Record]:
        """Most recent response record at a location with the given payload digest."""

        c = record_table.c
        query = (
            self._record_query()
            .where(c.location_id == location_id)
            .where(c.type == RecordType.RESPONSE.value)
            .where(c.payload_digest == digest)
            .order_by(c.date.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        return Record.from_row(row) if row else None

    def find_archived_response(self, location_id: int, method: str, date: datetime) -> Optional[str]:
        """Id of the response or revisit record to replay for a request made at ``date``.

        The latest record captured at or before ``date`` wins. Failing that, the
        earliest one captured after it, so captures made while a page renders are
        replayed to the rest of that render.
        """

        c = record_table.c
        base = (
            select(c.id)
            .join(visit_table, visit_table.c.id == c.visit_id)
            .where(c.location_id == location_id)
            .where(visit_table.c.method == method)
            .where(c.type.in_((RecordType.RESPONSE.value, RecordType.REVISIT.value)))
        )
        millis = to_millis(date)
        with self.engine.connect() as conn:
            before = conn.execute(base.where(c.date <= millis).order_by(c.date.desc()).limit(1)).scalar()
            if before is not None:
                return before
            return conn.execute(base.where(c.date > millis).order_by(c.date).limit(1)).scalar()

    def list_records(self, location_id: int) -> List[Record]:
        query = self._record_query().where(record_table.c.location_id == location_id).order_by(record_table.c.date)
        with self.engine.connect() as conn:
            return [Record.from_row(row) for row in conn.execute(query)]

    # Screenshots

    def insert_screenshot(self, location_id: int, date: datetime, jpeg: bytes) -> bool:
        return self._try_insert(screenshot_table, location_id=location_id, date=to_millis(date), jpeg=jpeg)

    def get_screenshot(self, location_id: int, date: datetime) -> Optional[bytes]:
        c = screenshot_table.c
        query = select(c.jpeg).where(c.location_id == location_id).where(c.date == to_millis(date))
        with self.engine.connect() as conn:
            return conn.execute(query).scalar()


__all__ = [
    "Database",
    "Location",
    "Origin",
    "Record",
    "Visit",
    "from_millis",
    "to_millis",
    "utcnow",
]
