"""High-level exports for the slowcrawl workflows."""

from .browser import Browser, BrowserError, BrowserRequest, Tab
from .crawl import Crawl
from .crawl_config import CrawlConfig
from .database import Database
from .exchange import Exchange
from .storage import CapturedResponse, Storage, StorageError

__all__ = [
    "Browser",
    "BrowserError",
    "BrowserRequest",
    "CapturedResponse",
    "Crawl",
    "CrawlConfig",
    "Database",
    "Exchange",
    "Storage",
    "StorageError",
    "Tab",
]
