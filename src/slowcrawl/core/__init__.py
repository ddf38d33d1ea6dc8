"""Core key model for slowcrawl."""

from .keys import *  # noqa: F401,F403 re-export stable keys
from .urls import Url

__all__ = [
    "Status",
    "LocationType",
    "CrawlPolicy",
    "ChangeFrequency",
    "RecordType",
    "DEFAULT_PRIORITY",
    "IGNORED_EXTRA_HEADERS",
    "Url",
]
__all__ += [name for name in globals() if name.startswith(("PRIORITY_", "PROFILE_"))]
