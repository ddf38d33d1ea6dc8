"""Streaming sitemap parser (urlset and sitemapindex) on lxml."""

from __future__ import annotations

from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional

from lxml import etree

from ..core.keys import ChangeFrequency, LocationType

_ENTRY_TAGS = {"url", "sitemap"}
_FIELD_TAGS = {"loc", "changefreq", "priority", "lastmod"}


@dataclass
class SitemapEntry:
    loc: str
    type: LocationType
    changefreq: Optional[ChangeFrequency] = None
    priority: Optional[float] = None
    lastmod: Optional[str] = None


def _local(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].lower()


def _parse_priority(text: str) -> Optional[float]:
    try:
        return float(text)
    except ValueError:
        return None


def parse_sitemap(stream: BinaryIO) -> Iterator[SitemapEntry]:
    """Yield entries of a sitemap index (as sitemaps) or URL set (as pages).

    Elements are cleared as soon as they are consumed so large sitemaps parse
    in constant memory.
    """

    entry_type: Optional[LocationType] = None
    fields: dict = {}
    context = etree.iterparse(
        stream,
        events=("start", "end"),
        resolve_entities=False,
        no_network=True,
        load_dtd=False,
    )
    for event, element in context:
        name = _local(element.tag)
        if event == "start":
            if entry_type is None:
                entry_type = LocationType.SITEMAP if name == "sitemapindex" else LocationType.PAGE
            elif name in _ENTRY_TAGS:
                fields = {}
            continue
        if name in _FIELD_TAGS:
            fields[name] = (element.text or "").strip()
        elif name in _ENTRY_TAGS:
            loc = fields.get("loc")
            if loc:
                yield SitemapEntry(
                    loc=loc,
                    type=entry_type or LocationType.PAGE,
                    changefreq=ChangeFrequency.parse(fields.get("changefreq")),
                    priority=_parse_priority(fields["priority"]) if fields.get("priority") else None,
                    lastmod=fields.get("lastmod") or None,
                )
            fields = {}
            element.clear()


__all__ = ["SitemapEntry", "parse_sitemap"]
