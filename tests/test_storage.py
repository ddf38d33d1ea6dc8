import io
from dataclasses import replace
from types import SimpleNamespace

import pytest
from warcio.archiveiterator import ArchiveIterator
from warcio.statusandheaders import StatusAndHeaders

from slowcrawl.core import Url
from slowcrawl.core.keys import (
    PROFILE_IDENTICAL_PAYLOAD_DIGEST,
    PROFILE_SERVER_NOT_MODIFIED,
    LocationType,
    RecordType,
)
from slowcrawl.workflows.database import Database, Location, utcnow
from slowcrawl.workflows.storage import PayloadDigester, Storage, StorageError

URL = Url("http://h.example/data.txt")


def _location(**overrides) -> Location:
    values = dict(url=URL, type=LocationType.PAGE, origin_id=URL.origin_id, depth=0, discovered=utcnow(), priority=10)
    values.update(overrides)
    return Location(**values)


def _exchange(body: bytes, *, status: int = 200, location: Location = None, algorithm: str = "sha1"):
    digester = PayloadDigester(algorithm)
    digester.update(body)
    reason = "OK" if status == 200 else "Not Modified"
    return SimpleNamespace(
        id=f"visit-{status}-{len(body)}",
        url=URL,
        date=utcnow(),
        ip="127.0.0.1",
        status=status,
        location=location or _location(),
        request_headers=StatusAndHeaders(
            f"GET {URL.target} HTTP/1.0", [("Host", URL.host_header())], is_http_request=True
        ),
        response_headers=StatusAndHeaders(
            f"{status} {reason}", [("Content-Type", "text/plain"), ("Content-Length", str(len(body)))], protocol="HTTP/1.1"
        ),
        spool=io.BytesIO(body),
        body_offset=0,
        content_length=len(body),
        payload_digest=str(digester),
        request_id=None,
        response_id=None,
        revisit_of=None,
    )


@pytest.fixture
def store(config):
    db = Database(config.db_url)
    storage = Storage(config, db)
    yield storage
    storage.close()
    db.close()


def test_payload_digest_uses_base32():
    digester = PayloadDigester("sha1")
    assert str(digester) == "sha1:3I42H3S6NNFQ2MSVX7XZKYAYSCX5QBYJ"
    digester.update(b"abc")
    assert digester.length == 3
    assert str(digester).startswith("sha1:")


def test_save_then_read_response(store):
    exchange = _exchange(b"hello archive")
    store.save(exchange)
    assert exchange.request_id and exchange.response_id
    assert exchange.revisit_of is None

    response = store.read_response(exchange.response_id)
    assert response.payload == b"hello archive"
    assert response.status == 200
    assert response.reason == "OK"
    assert response.header("content-type") == "text/plain"
    assert response.url == str(URL)

    records = store.db.list_records(URL.id)
    assert [r.type for r in records] == [RecordType.REQUEST, RecordType.RESPONSE]
    assert records[1].payload_digest == exchange.payload_digest


def test_request_records_are_not_responses(store):
    exchange = _exchange(b"x")
    store.save(exchange)
    with pytest.raises(StorageError):
        store.read_response(exchange.request_id)
    with pytest.raises(StorageError):
        store.read_response("no-such-record")


def test_identical_payload_becomes_a_revisit(store):
    first = _exchange(b"same bytes")
    store.save(first)
    second = _exchange(b"same bytes")
    store.save(second)

    assert second.revisit_of == first.response_id
    indexed = store.db.get_record(second.response_id)
    assert indexed.type == RecordType.REVISIT
    assert indexed.refers_to == first.response_id

    with store.open_record(second.response_id) as (_, record):
        assert record.rec_type == "revisit"
        assert record.rec_headers.get_header("WARC-Profile") == PROFILE_IDENTICAL_PAYLOAD_DIGEST
        assert record.rec_headers.get_header("WARC-Refers-To") == f"<urn:uuid:{first.response_id}>"

    resolved = store.read_response(second.response_id)
    assert resolved.payload == b"same bytes"
    assert resolved.revisit_of == first.response_id


def test_digest_dedupe_can_be_disabled(store):
    store.config = replace(store.config, dedupe_digest=False)
    first = _exchange(b"same bytes")
    store.save(first)
    second = _exchange(b"same bytes")
    store.save(second)
    assert second.revisit_of is None
    assert store.db.get_record(second.response_id).type == RecordType.RESPONSE


def test_small_payloads_below_minimum_are_stored_again(store):
    store.config = replace(store.config, dedupe_min_length=100)
    store.save(_exchange(b"tiny"))
    second = _exchange(b"tiny")
    store.save(second)
    assert second.revisit_of is None


def test_not_modified_refers_to_the_validated_response(store):
    first = _exchange(b"<html>v1</html>")
    store.save(first)
    location = _location(etag='"v1"', etag_response_id=first.response_id)
    second = _exchange(b"", status=304, location=location)
    store.save(second)

    assert second.revisit_of == first.response_id
    with store.open_record(second.response_id) as (_, record):
        assert record.rec_headers.get_header("WARC-Profile") == PROFILE_SERVER_NOT_MODIFIED
        assert record.rec_headers.get_header("WARC-Payload-Digest") == first.payload_digest

    resolved = store.read_response(second.response_id)
    assert resolved.status == 200
    assert resolved.payload == b"<html>v1</html>"


def test_files_rotate_past_the_size_limit(store):
    store.config = replace(store.config, warc_max_length_bytes=1, dedupe_digest=False)
    first = _exchange(b"one")
    store.save(first)
    first_path = store.path
    second = _exchange(b"two")
    store.save(second)
    assert store.path != first_path

    assert store.db.get_record(first.response_id).path == str(first_path)
    assert store.read_response(first.response_id).payload == b"one"
    assert store.read_response(second.response_id).payload == b"two"
    for path in (first_path, store.path):
        with open(path, "rb") as handle:
            types = [record.rec_type for record in ArchiveIterator(handle)]
        assert types == ["warcinfo", "request", "response"]
