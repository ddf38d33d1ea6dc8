"""robots.txt handling: bounded reads, path checks, crawl-delay and sitemap discovery."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional
from urllib.robotparser import RobotFileParser

_RULE_KEYS = {"allow", "disallow", "crawl-delay", "request-rate"}


@dataclass
class RobotsRules:
    parser: RobotFileParser
    crawl_delay: Optional[int] = None
    sitemaps: List[str] = field(default_factory=list)

    def allows(self, user_agent: str, url: str) -> bool:
        return self.parser.can_fetch(user_agent, url)


def read_bounded(stream: BinaryIO, max_bytes: int) -> bytes:
    """Read at most ``max_bytes`` from a stream."""

    return stream.read(max_bytes) if max_bytes > 0 else b""


def _group_orphan_rules(lines: List[str]) -> List[str]:
    # Rules before the first User-agent line apply to every agent.
    for line in lines:
        key = line.split("#", 1)[0].split(":", 1)[0].strip().lower()
        if key == "user-agent":
            return lines
        if key in _RULE_KEYS:
            return ["User-agent: *", *lines]
    return lines


def parse_robots(body: bytes, user_agent: str = "*") -> RobotsRules:
    """Parse robots.txt bytes into allow rules, our crawl-delay and sitemap URLs."""

    parser = RobotFileParser()
    parser.parse(_group_orphan_rules(body.decode("utf-8", errors="replace").splitlines()))
    delay = parser.crawl_delay(user_agent)
    return RobotsRules(
        parser=parser,
        crawl_delay=int(delay) if delay is not None else None,
        sitemaps=list(parser.site_maps() or []),
    )


def is_allowed(robots_txt: Optional[bytes], user_agent: str, url: str) -> bool:
    """True when no robots.txt is cached or it permits ``url``."""

    if not robots_txt:
        return True
    return parse_robots(robots_txt, user_agent).allows(user_agent, url)


__all__ = ["RobotsRules", "is_allowed", "parse_robots", "read_bounded"]
