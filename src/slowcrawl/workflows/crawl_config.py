"""Crawler defaults and the typed configuration loaded from the environment.

Every knob lives on :class:`CrawlConfig`. ``CrawlConfig.from_env`` maps
``SLOWCRAWL_*`` variables onto fields one by one; malformed values fall back
to the field default rather than failing the crawl at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .. import __version__

DEFAULT_USER_AGENT = f"slowcrawl/{__version__}"
DEFAULT_DB_URL = "sqlite:///data/slowcrawl.sqlite3"
DEFAULT_WARC_FILENAME = "data/{prefix}-{timestamp}-{seqno}.warc.gz"

ENV_PREFIX = "SLOWCRAWL_"

_DATA_DIR = Path(__file__).resolve().parents[1] / "data"
OVERRIDE_DATE_JS = _DATA_DIR / "overrideDateAndRandom.js"
SCROLL_DOWN_JS = _DATA_DIR / "scrollDown.js"


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    return normalized not in {"0", "false", "off", "no"}


def _safe_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        cleaned = value.strip()
        if not cleaned:
            return default
        return int(cleaned)
    except ValueError:
        return default


def _safe_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        cleaned = value.strip()
        if not cleaned:
            return default
        return float(cleaned)
    except ValueError:
        return default


def _non_empty(value: Optional[str], default: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclass
class CrawlConfig:
    """Configuration for a crawl: storage, politeness, dedupe and browser knobs."""

    db_url: str = DEFAULT_DB_URL
    warc_filename: str = DEFAULT_WARC_FILENAME
    warc_prefix: str = "slowcrawl"
    warc_gzip: bool = True
    warc_max_length_bytes: int = 1024 * 1024 * 1024
    warc_digest_algorithm: str = "sha1"
    dedupe_server: bool = True
    dedupe_digest: bool = True
    dedupe_min_length: int = 0
    ignore_robots: bool = False
    max_robots_bytes: int = 512 * 1024
    user_agent: str = DEFAULT_USER_AGENT
    default_delay_millis: int = 5000
    max_delay_millis: int = 30000
    revisit_interval_seconds: int = 24 * 60 * 60
    max_depth: int = 10
    fetch_timeout: float = 20.0
    browser_enabled: bool = True
    browser_executable: Optional[str] = None
    browser_call_timeout: float = 10.0
    page_load_timeout: float = 15.0
    record_mode: bool = True
    script_determinism: bool = True
    screenshots: bool = True
    idle_sleep: float = 1.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CrawlConfig":
        env = os.environ if environ is None else environ
        d = cls()

        def get(name: str) -> Optional[str]:
            return env.get(ENV_PREFIX + name)

        return cls(
            db_url=_non_empty(get("DB_URL"), d.db_url),
            warc_filename=_non_empty(get("WARC_FILENAME"), d.warc_filename),
            warc_prefix=_non_empty(get("WARC_PREFIX"), d.warc_prefix),
            warc_gzip=_as_bool(get("WARC_GZIP"), d.warc_gzip),
            warc_max_length_bytes=_safe_int(get("WARC_MAX_LENGTH_BYTES"), d.warc_max_length_bytes),
            warc_digest_algorithm=(_non_empty(get("WARC_DIGEST_ALGORITHM"), d.warc_digest_algorithm) or d.warc_digest_algorithm).lower(),
            dedupe_server=_as_bool(get("DEDUPE_SERVER"), d.dedupe_server),
            dedupe_digest=_as_bool(get("DEDUPE_DIGEST"), d.dedupe_digest),
            dedupe_min_length=_safe_int(get("DEDUPE_MIN_LENGTH"), d.dedupe_min_length),
            ignore_robots=_as_bool(get("IGNORE_ROBOTS"), d.ignore_robots),
            max_robots_bytes=_safe_int(get("MAX_ROBOTS_BYTES"), d.max_robots_bytes),
            user_agent=_non_empty(get("USER_AGENT"), d.user_agent),
            default_delay_millis=_safe_int(get("DEFAULT_DELAY_MILLIS"), d.default_delay_millis),
            max_delay_millis=_safe_int(get("MAX_DELAY_MILLIS"), d.max_delay_millis),
            revisit_interval_seconds=_safe_int(get("REVISIT_INTERVAL"), d.revisit_interval_seconds),
            max_depth=_safe_int(get("MAX_DEPTH"), d.max_depth),
            fetch_timeout=_safe_float(get("FETCH_TIMEOUT"), d.fetch_timeout),
            browser_enabled=_as_bool(get("BROWSER"), d.browser_enabled),
            browser_executable=_non_empty(get("BROWSER_EXECUTABLE"), d.browser_executable),
            browser_call_timeout=_safe_float(get("BROWSER_CALL_TIMEOUT"), d.browser_call_timeout),
            page_load_timeout=_safe_float(get("PAGE_LOAD_TIMEOUT"), d.page_load_timeout),
            record_mode=_as_bool(get("RECORD_MODE"), d.record_mode),
            script_determinism=_as_bool(get("SCRIPT_DETERMINISM"), d.script_determinism),
            screenshots=_as_bool(get("SCREENSHOTS"), d.screenshots),
            idle_sleep=_safe_float(get("IDLE_SLEEP"), d.idle_sleep),
        )

    @property
    def warc_compressed(self) -> bool:
        return self.warc_gzip or self.warc_filename.endswith(".gz")


__all__ = [
    "CrawlConfig",
    "DEFAULT_USER_AGENT",
    "DEFAULT_DB_URL",
    "DEFAULT_WARC_FILENAME",
    "ENV_PREFIX",
    "OVERRIDE_DATE_JS",
    "SCROLL_DOWN_JS",
]
