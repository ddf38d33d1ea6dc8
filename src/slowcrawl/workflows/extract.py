"""Static page analysis: title, script presence, subresources and outbound links."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple

from bs4 import BeautifulSoup

from ..core.urls import Url, try_url

# Resource type hints use the browser's resource-type names
TYPE_DOCUMENT = "Document"
TYPE_STYLESHEET = "Stylesheet"
TYPE_IMAGE = "Image"
TYPE_MEDIA = "Media"
TYPE_FONT = "Font"
TYPE_SCRIPT = "Script"
TYPE_OTHER = "Other"

_CSS_URL_RE = re.compile(r"""url\(\s*(['"]?)([^'")]+)\1\s*\)""", re.IGNORECASE)
_CSS_IMPORT_RE = re.compile(r"""@import\s+(['"])([^'"]+)\1""", re.IGNORECASE)
_REFRESH_RE = re.compile(r"""url\s*=\s*['"]?([^'"\s;]+)""", re.IGNORECASE)
_CHARSET_RE = re.compile(r"charset\s*=\s*['\"]?([\w.:-]+)", re.IGNORECASE)


@dataclass(frozen=True)
class Resource:
    url: str
    type: str = TYPE_OTHER
    method: str = "GET"


@dataclass
class Analysis:
    title: str = ""
    has_script: bool = False
    resources: List[Resource] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    screenshot: Optional[bytes] = None


def charset_from_content_type(content_type: Optional[str]) -> Optional[str]:
    match = _CHARSET_RE.search(content_type or "")
    return match.group(1) if match else None


def _srcset_urls(value: str) -> Iterable[str]:
    for candidate in value.split(","):
        parts = candidate.strip().split()
        if parts:
            yield parts[0]


def css_urls(css: str) -> List[Tuple[str, str]]:
    """``(url, type)`` pairs referenced by a stylesheet or style attribute."""

    found: List[Tuple[str, str]] = []
    for match in _CSS_IMPORT_RE.finditer(css):
        found.append((match.group(2), TYPE_STYLESHEET))
    for match in _CSS_URL_RE.finditer(css):
        target = match.group(2).strip()
        lowered = target.lower().split("?", 1)[0]
        if lowered.endswith((".woff", ".woff2", ".ttf", ".otf", ".eot")):
            found.append((target, TYPE_FONT))
        elif lowered.endswith(".css"):
            found.append((target, TYPE_STYLESHEET))
        else:
            found.append((target, TYPE_IMAGE))
    return found


class _Collector:
    def __init__(self, base: Url) -> None:
        self.base = base
        self.resources: List[Resource] = []
        self.links: List[str] = []
        self._seen_resources: Set[Tuple[str, str]] = set()
        self._seen_links: Set[str] = set()

    def _resolve(self, ref: Optional[str]) -> Optional[str]:
        if not ref or ref.strip().lower().startswith(("javascript:", "data:", "mailto:", "#")):
            return None
        url = try_url(ref, self.base)
        if url is None or not url.is_http():
            return None
        return str(url.without_fragment())

    def resource(self, ref: Optional[str], type_: str) -> None:
        url = self._resolve(ref)
        if url and ("GET", url) not in self._seen_resources:
            self._seen_resources.add(("GET", url))
            self.resources.append(Resource(url=url, type=type_))

    def link(self, ref: Optional[str]) -> None:
        url = self._resolve(ref)
        if url and url not in self._seen_links:
            self._seen_links.add(url)
            self.links.append(url)


def parse(payload: bytes, base_url: "Url | str", content_type: Optional[str] = None) -> Analysis:
    """Extract what a page references without executing it."""

    base = base_url if isinstance(base_url, Url) else Url(base_url)
    soup = BeautifulSoup(payload, "lxml", from_encoding=charset_from_content_type(content_type))
    base_tag = soup.find("base", href=True)
    if base_tag is not None:
        base = try_url(base_tag["href"], base) or base

    out = _Collector(base)
    analysis = Analysis()
    if soup.title is not None and soup.title.string:
        analysis.title = soup.title.string.strip()

    for tag in soup.find_all(True):
        name = tag.name
        if name in ("a", "area"):
            out.link(tag.get("href"))
        elif name in ("img", "source"):
            kind = TYPE_MEDIA if name == "source" and tag.parent is not None and tag.parent.name in ("audio", "video") else TYPE_IMAGE
            for attr in ("src", "data-src"):
                out.resource(tag.get(attr), kind)
            for attr in ("srcset", "data-srcset"):
                for ref in _srcset_urls(tag.get(attr) or ""):
                    out.resource(ref, kind)
        elif name == "link":
            rel = {token.lower() for token in (tag.get("rel") or [])}
            if "stylesheet" in rel:
                out.resource(tag.get("href"), TYPE_STYLESHEET)
            elif rel & {"icon", "apple-touch-icon", "shortcut"}:
                out.resource(tag.get("href"), TYPE_IMAGE)
        elif name == "script":
            analysis.has_script = True
            out.resource(tag.get("src"), TYPE_SCRIPT)
        elif name in ("audio", "video", "track", "embed"):
            out.resource(tag.get("src"), TYPE_MEDIA)
            if name == "video":
                out.resource(tag.get("poster"), TYPE_IMAGE)
        elif name in ("frame", "iframe"):
            out.resource(tag.get("src"), TYPE_DOCUMENT)
        elif name == "input" and (tag.get("type") or "").lower() == "image":
            out.resource(tag.get("src"), TYPE_IMAGE)
        elif name == "meta" and (tag.get("http-equiv") or "").lower() == "refresh":
            match = _REFRESH_RE.search(tag.get("content") or "")
            if match:
                out.link(match.group(1))
        elif name == "style":
            for ref, kind in css_urls(tag.get_text()):
                out.resource(ref, kind)
        if tag.get("style"):
            for ref, kind in css_urls(tag["style"]):
                out.resource(ref, kind)

    analysis.resources = out.resources
    analysis.links = out.links
    return analysis


__all__ = [
    "Analysis",
    "Resource",
    "charset_from_content_type",
    "css_urls",
    "parse",
    "TYPE_DOCUMENT",
    "TYPE_FONT",
    "TYPE_IMAGE",
    "TYPE_MEDIA",
    "TYPE_OTHER",
    "TYPE_SCRIPT",
    "TYPE_STYLESHEET",
]
