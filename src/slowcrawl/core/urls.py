"""URL canonicalization and stable 64-bit ids for locations and origins."""

from __future__ import annotations

import hashlib
from typing import Optional
from urllib.parse import quote, urljoin, urlsplit, urlunsplit

DEFAULT_PORTS = {"http": 80, "https": 443}

_PATH_SAFE = "/%:@!$&'()*+,;=-._~"
_QUERY_SAFE = _PATH_SAFE + "?"


def hash64(text: str) -> int:
    """Return a signed 64-bit id for ``text`` (fits an SQL BIGINT)."""

    digest = hashlib.blake2b(text.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def idna_normalize(host: str) -> str:
    """Return a lowercase, IDNA-normalized host name."""

    h = (host or "").strip().rstrip(".").lower()
    if not h:
        return ""
    try:
        h = h.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return h


def canonicalize(url: str) -> str:
    """Canonicalize a URL so equivalent spellings share one text form.

    - Lower-case scheme and host, IDNA-encode the host
    - Remove default ports
    - Empty http(s) paths become ``/``
    - Percent-encode characters that are not allowed unescaped
    """

    raw = "".join(ch for ch in (url or "").strip() if ch not in "\t\r\n")
    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    if not parts.netloc:
        return urlunsplit(parts._replace(scheme=scheme))
    host = idna_normalize(parts.hostname or "")
    if ":" in host:
        host = f"[{host}]"
    netloc = host
    port = parts.port
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo += f":{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    path = quote(parts.path, safe=_PATH_SAFE)
    if not path and scheme in DEFAULT_PORTS:
        path = "/"
    query = quote(parts.query, safe=_QUERY_SAFE)
    return urlunsplit((scheme, netloc, path, query, parts.fragment))


class Url:
    """An immutable canonical URL. Equality and hashing follow the canonical text."""

    __slots__ = ("_text", "_parts")

    def __init__(self, url: str) -> None:
        self._text = canonicalize(url)
        self._parts = urlsplit(self._text)

    def __str__(self) -> str:
        return self._text

    def __repr__(self) -> str:
        return f"Url({self._text!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Url) and other._text == self._text

    def __hash__(self) -> int:
        return hash(self._text)

    @property
    def scheme(self) -> str:
        return self._parts.scheme

    @property
    def host(self) -> str:
        return self._parts.hostname or ""

    @property
    def port(self) -> int:
        return self._parts.port or DEFAULT_PORTS.get(self.scheme, 0)

    @property
    def fragment(self) -> str:
        return self._parts.fragment

    @property
    def origin(self) -> str:
        """``scheme://host[:port]`` with default ports omitted."""

        netloc = self._parts.netloc.rpartition("@")[2]
        return f"{self.scheme}://{netloc}"

    @property
    def target(self) -> str:
        """The request target: path plus query."""

        path = self._parts.path or "/"
        return f"{path}?{self._parts.query}" if self._parts.query else path

    @property
    def id(self) -> int:
        return hash64(self._text)

    @property
    def origin_id(self) -> int:
        return hash64(self.origin)

    @property
    def path_id(self) -> int:
        return hash64(self.target)

    def is_http(self) -> bool:
        return self.scheme in DEFAULT_PORTS and bool(self.host)

    def without_fragment(self) -> "Url":
        if not self._parts.fragment:
            return self
        return Url(urlunsplit(self._parts._replace(fragment="")))

    def resolve(self, ref: str) -> "Url":
        return Url(urljoin(self._text, (ref or "").strip()))

    def host_header(self) -> str:
        """Value for the ``Host`` request header."""

        return self._parts.netloc.rpartition("@")[2]


def try_url(text: Optional[str], base: Optional[Url] = None) -> Optional[Url]:
    """Parse (and resolve against ``base``) or return None for garbage."""

    if not text or not text.strip():
        return None
    try:
        return base.resolve(text) if base is not None else Url(text)
    except ValueError:
        return None


__all__ = ["Url", "canonicalize", "hash64", "idna_normalize", "try_url", "DEFAULT_PORTS"]
