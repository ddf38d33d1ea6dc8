"""Capture store: append-only WARC files plus a random-access record index.

Records are written with warcio. Each record's file id, byte offset and length
are indexed in the database so any response can be re-read later by seeking
straight to it.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Dict, Iterator, List, Optional, Tuple

from warcio.archiveiterator import ArchiveIterator
from warcio.timeutils import datetime_to_iso_date
from warcio.warcwriter import WARCWriter

from .. import __version__
from ..core.keys import (
    PROFILE_IDENTICAL_PAYLOAD_DIGEST,
    PROFILE_SERVER_NOT_MODIFIED,
    RecordType,
    Status,
)
from .crawl_config import CrawlConfig
from .database import Database, Record, utcnow

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .exchange import Exchange

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when a record cannot be read back as a response."""


def new_record_id() -> str:
    return str(uuid.uuid4())


def warc_record_id(record_id: str) -> str:
    return f"<urn:uuid:{record_id}>"


class PayloadDigester:
    """Streaming payload digest rendered the WARC way (``algo:BASE32``)."""

    def __init__(self, algorithm: str = "sha1") -> None:
        self.algorithm = algorithm.lower()
        self._hash = hashlib.new(self.algorithm)
        self.length = 0

    def update(self, data: bytes) -> None:
        self._hash.update(data)
        self.length += len(data)

    def __str__(self) -> str:
        return f"{self.algorithm}:{base64.b32encode(self._hash.digest()).decode('ascii')}"


@dataclass
class CapturedResponse:
    """An archived HTTP response read back from the store."""

    record_id: str
    url: str
    status: int
    reason: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    payload: bytes = b""
    revisit_of: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None


class Storage:
    """Writes exchanges into rotating WARC files and reads responses back."""

    def __init__(self, config: CrawlConfig, db: Database) -> None:
        self.config = config
        self.db = db
        self._lock = threading.Lock()
        self._file: Optional[BinaryIO] = None
        self._writer: Optional[WARCWriter] = None
        self._warc_id: Optional[int] = None
        self._seqno = 0
        self.path: Optional[Path] = None

    # Writing

    def _next_path(self) -> Path:
        timestamp = utcnow().strftime("%Y%m%d%H%M%S")
        self._seqno += 1
        name = self.config.warc_filename.format(
            prefix=self.config.warc_prefix,
            timestamp=timestamp,
            seqno=f"{self._seqno:05d}",
        )
        return Path(name)

    def _open_new_file(self) -> None:
        self._close_file()
        while True:
            path = self._next_path()
            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                handle = open(path, "xb")
                break
            except FileExistsError:
                continue
        created = utcnow()
        self._file = handle
        self.path = path
        self._writer = WARCWriter(handle, gzip=self.config.warc_compressed, warc_version="1.1")
        self._warc_id = self.db.insert_warc(str(path), created)
        info: Dict[str, str] = {
            "software": f"slowcrawl/{__version__}",
            "format": "WARC File Format 1.1",
            "conformsTo": "http://iipc.github.io/warc-specifications/specifications/warc-format/warc-1.1/",
            "http-header-user-agent": self.config.user_agent,
            "robots": "ignore" if self.config.ignore_robots else "obey",
        }
        record = self._writer.create_warcinfo_record(path.name, info)
        self._writer.write_record(record)
        logger.info("Opened WARC file %s", path)

    def _rotate_if_needed(self) -> None:
        if self._file is None or self._file.tell() > self.config.warc_max_length_bytes:
            self._open_new_file()

    def _write(self, record, record_id: str, record_type: RecordType, exchange: "Exchange", **extra) -> None:
        assert self._file is not None and self._writer is not None and self._warc_id is not None
        position = self._file.tell()
        self._writer.write_record(record)
        self._file.flush()
        length = self._file.tell() - position
        self.db.insert_record(
            Record(
                id=record_id,
                visit_id=exchange.id,
                location_id=exchange.location.id,
                date=exchange.date,
                type=record_type,
                warc_id=self._warc_id,
                position=position,
                length=length,
                **extra,
            )
        )

    def _warc_headers(self, record_id: str, date: datetime, exchange: "Exchange") -> Dict[str, str]:
        headers = {
            "WARC-Record-ID": warc_record_id(record_id),
            "WARC-Date": datetime_to_iso_date(date),
        }
        if exchange.ip:
            headers["WARC-IP-Address"] = exchange.ip
        return headers

    def _find_revisit_target(self, exchange: "Exchange") -> Optional[Tuple[Record, str]]:
        location = exchange.location
        if exchange.status == Status.NOT_MODIFIED and location.etag_response_id:
            previous = self.db.get_record(location.etag_response_id)
            if previous is not None:
                return previous, PROFILE_SERVER_NOT_MODIFIED
        if (
            self.config.dedupe_digest
            and exchange.payload_digest
            and (exchange.content_length or 0) >= self.config.dedupe_min_length
        ):
            previous = self.db.find_response_by_payload_digest(location.id, exchange.payload_digest)
            if previous is not None:
                return previous, PROFILE_IDENTICAL_PAYLOAD_DIGEST
        return None

    def save(self, exchange: "Exchange") -> None:
        """Write the exchange's request and response (or revisit) records."""

        with self._lock:
            self._rotate_if_needed()
            assert self._writer is not None
            url = str(exchange.url)
            if exchange.request_headers is not None:
                request_id = new_record_id()
                record = self._writer.create_warc_record(
                    url,
                    "request",
                    http_headers=exchange.request_headers,
                    warc_headers_dict=self._warc_headers(request_id, exchange.date, exchange),
                )
                self._write(record, request_id, RecordType.REQUEST, exchange)
                exchange.request_id = request_id

            if exchange.response_headers is None:
                return

            response_id = new_record_id()
            warc_headers = self._warc_headers(response_id, exchange.date, exchange)
            target = self._find_revisit_target(exchange)
            if target is not None:
                previous, profile = target
                digest = exchange.payload_digest
                if profile == PROFILE_SERVER_NOT_MODIFIED:
                    digest = previous.payload_digest or digest
                warc_headers.update(
                    {
                        "WARC-Profile": profile,
                        "WARC-Refers-To": warc_record_id(previous.id),
                        "WARC-Refers-To-Target-URI": url,
                        "WARC-Refers-To-Date": datetime_to_iso_date(previous.date),
                    }
                )
                if digest:
                    warc_headers["WARC-Payload-Digest"] = digest
                record = self._writer.create_warc_record(
                    url,
                    "revisit",
                    http_headers=exchange.response_headers,
                    warc_headers_dict=warc_headers,
                )
                self._write(
                    record,
                    response_id,
                    RecordType.REVISIT,
                    exchange,
                    payload_digest=digest,
                    refers_to=previous.id,
                )
                exchange.revisit_of = previous.id
            else:
                warc_headers["WARC-Payload-Digest"] = exchange.payload_digest
                exchange.spool.seek(exchange.body_offset)
                record = self._writer.create_warc_record(
                    url,
                    "response",
                    payload=exchange.spool,
                    length=exchange.content_length,
                    http_headers=exchange.response_headers,
                    warc_headers_dict=warc_headers,
                )
                self._write(
                    record,
                    response_id,
                    RecordType.RESPONSE,
                    exchange,
                    payload_digest=exchange.payload_digest,
                )
            exchange.response_id = response_id

    # Reading

    @contextmanager
    def open_record(self, record_id: str) -> Iterator[Tuple[Record, object]]:
        """Yield ``(index_row, warcio_record)`` for a record while its file is open."""

        indexed = self.db.get_record(record_id)
        if indexed is None or indexed.path is None:
            raise StorageError(f"Unknown record {record_id}")
        with open(indexed.path, "rb") as handle:
            handle.seek(indexed.position)
            for record in ArchiveIterator(handle):
                yield indexed, record
                return
        raise StorageError(f"No record at {indexed.path}:{indexed.position}")

    def read_response(self, record_id: str) -> CapturedResponse:
        """Read the response (or revisit, resolved to its payload) with the given id."""

        with self.open_record(record_id) as (indexed, record):
            if record.rec_type not in ("response", "revisit") or record.http_headers is None:
                raise StorageError(f"Record {record_id} is a {record.rec_type} record, not a response")
            status = int(record.http_headers.get_statuscode() or 0)
            reason = record.http_headers.statusline.partition(" ")[2]
            headers = list(record.http_headers.headers)
            url = record.rec_headers.get_header("WARC-Target-URI") or ""
            profile = record.rec_headers.get_header("WARC-Profile") or ""
            payload = record.raw_stream.read() if record.rec_type == "response" else b""

        if indexed.type != RecordType.REVISIT:
            return CapturedResponse(record_id, url, status, reason, headers, payload)

        if not indexed.refers_to:
            raise StorageError(f"Revisit {record_id} has no back-reference")
        original = self.read_response(indexed.refers_to)
        if profile == PROFILE_SERVER_NOT_MODIFIED:
            status, reason, headers = original.status, original.reason, original.headers
        return CapturedResponse(
            record_id,
            url,
            status,
            reason,
            headers,
            original.payload,
            revisit_of=indexed.refers_to,
        )

    def close(self) -> None:
        with self._lock:
            self._close_file()

    def _close_file(self) -> None:
        if self._file is not None:
            self._file.close()
            logger.info("Closed WARC file %s", self.path)
        self._file = None
        self._writer = None
        self._warc_id = None


__all__ = [
    "CapturedResponse",
    "PayloadDigester",
    "Storage",
    "StorageError",
    "new_record_id",
]
