"""Environment diagnostics for ``slowcrawl doctor``."""

from __future__ import annotations

import asyncio
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from .crawl_config import CrawlConfig


@dataclass
class Check:
    name: str
    passed: bool
    detail: Optional[str] = None
    remedy: Optional[str] = None
    # "warn" checks make the report fail; "info" checks never do
    level: str = "warn"

    def as_dict(self) -> Dict[str, Any]:
        entry = asdict(self)
        entry["status"] = "ok" if entry.pop("passed") else "missing"
        if not self.remedy:
            entry.pop("remedy")
        return entry


def _playwright_installed() -> bool:
    from . import browser

    return browser.async_playwright is not None


def _nearest_existing_writable(path: Path) -> bool:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return os.access(candidate, os.W_OK)
    return False


def _database_error(url: str) -> Optional[str]:
    engine = create_engine(url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return str(exc).splitlines()[0]
    finally:
        engine.dispose()
    return None


def _browser_checks(config: CrawlConfig) -> List[Check]:
    from .browser import find_executable

    if not config.browser_enabled:
        return [Check("browser", True, "rendering disabled (SLOWCRAWL_BROWSER=0)", level="info")]
    executable = asyncio.run(find_executable(config.browser_executable))
    return [
        Check(
            "browser",
            executable is not None and Path(executable).exists(),
            executable or "no Chromium found",
            "Install chromium, set SLOWCRAWL_BROWSER_EXECUTABLE, or run `playwright install chromium`.",
        ),
        Check("playwright", _playwright_installed(), "used only to locate a bundled Chromium", level="info"),
    ]


def build_doctor_report(config: Optional[CrawlConfig] = None) -> Dict[str, Any]:
    config = config or CrawlConfig.from_env()
    checks = _browser_checks(config)

    archive_dir = Path(config.warc_filename.format(prefix=config.warc_prefix, timestamp="0", seqno="0")).parent
    checks.append(
        Check(
            "SLOWCRAWL_WARC_FILENAME",
            _nearest_existing_writable(archive_dir),
            str(archive_dir),
            "Create the archive directory or point SLOWCRAWL_WARC_FILENAME somewhere writable.",
        )
    )

    db_error = _database_error(config.db_url)
    checks.append(
        Check(
            "SLOWCRAWL_DB_URL",
            db_error is None,
            db_error or config.db_url,
            "Check SLOWCRAWL_DB_URL and that its directory exists.",
        )
    )

    return {
        "generated_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "ok": all(check.passed for check in checks if check.level == "warn"),
        "checks": [check.as_dict() for check in checks],
    }


def format_doctor_report(report: Dict[str, Any]) -> str:
    out = [f"slowcrawl doctor ({report.get('generated_at')})", ""]
    for check in report.get("checks", []):
        mark = "ok" if check.get("status") == "ok" else "!!"
        out.append(f"[{mark}] {check.get('name')} ({check.get('level')})")
        for key in ("detail", "remedy"):
            if check.get(key):
                out.append(f"     {key}: {check[key]}")
    out.append("")
    out.append("all required checks passed" if report.get("ok") else "some required checks failed")
    return "\n".join(out) + "\n"
