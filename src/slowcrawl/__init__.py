"""slowcrawl: a polite, resumable archiving web crawler."""

__version__ = "0.1.0"
