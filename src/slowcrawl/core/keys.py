"""Shared enumerations and sentinel codes to avoid magic values across slowcrawl modules."""

from __future__ import annotations

from enum import Enum, IntEnum


class Status(IntEnum):
    """Visit outcome codes. Positive values are HTTP statuses."""

    OK = 200
    NOT_MODIFIED = 304
    CONNECT_FAILED = -2
    CONNECT_BROKEN = -3
    TIMEOUT = -4
    PROCESSING_FAILED = -5
    POLICY_FORBIDDEN = -5000
    ROBOTS_DISALLOWED = -9998

    @staticmethod
    def is_success(status: int) -> bool:
        return 200 <= status <= 299


class LocationType(str, Enum):
    ROBOTS = "robots"
    SITEMAP = "sitemap"
    PAGE = "page"
    TRANSCLUSION = "transclusion"


class CrawlPolicy(str, Enum):
    FORBIDDEN = "forbidden"
    TRANSCLUSIONS = "transclusions"
    CONTINUOUS = "continuous"


class ChangeFrequency(str, Enum):
    ALWAYS = "always"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    NEVER = "never"

    @classmethod
    def parse(cls, value: str | None) -> "ChangeFrequency | None":
        token = (value or "").strip().lower()
        try:
            return cls(token)
        except ValueError:
            return None


class RecordType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    REVISIT = "revisit"


# Scheduling priorities (lower = sooner)
PRIORITY_ROBOTS = 1
PRIORITY_ROBOTS_SITEMAP = 2
PRIORITY_SITEMAP = 3
PRIORITY_PAGE = 10
PRIORITY_TRANSCLUSION = 40

DEFAULT_PRIORITY = {
    LocationType.ROBOTS: PRIORITY_ROBOTS,
    LocationType.SITEMAP: PRIORITY_SITEMAP,
    LocationType.PAGE: PRIORITY_PAGE,
    LocationType.TRANSCLUSION: PRIORITY_TRANSCLUSION,
}

# WARC revisit profiles
PROFILE_SERVER_NOT_MODIFIED = "http://netpreserve.org/warc/1.1/revisit/server-not-modified"
PROFILE_IDENTICAL_PAYLOAD_DIGEST = "http://netpreserve.org/warc/1.1/revisit/identical-payload-digest"

# Request headers the exchange controls itself
IGNORED_EXTRA_HEADERS = frozenset(
    {
        "accept-encoding",
        "connection",
        "content-length",
        "host",
        "if-modified-since",
        "if-none-match",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "referer",
        "te",
        "transfer-encoding",
        "upgrade-insecure-requests",
        "user-agent",
    }
)
