from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

import pytest
from aiohttp import WSMsgType, web

from slowcrawl.workflows.crawl_config import CrawlConfig

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def static(body: bytes | str, content_type: str = "text/html", status: int = 200, headers: Optional[Dict[str, str]] = None) -> Handler:
    payload = body.encode("utf-8") if isinstance(body, str) else body

    async def handler(request: web.Request) -> web.StreamResponse:
        return web.Response(body=payload, status=status, content_type=content_type, headers=headers)

    return handler


class Site:
    """In-process HTTP server that records every request it receives."""

    def __init__(self, routes: Dict[str, Handler]) -> None:
        self.routes = routes
        self.requests: List[web.Request] = []
        self.base = ""

    @property
    def paths(self) -> List[str]:
        return [request.path for request in self.requests]

    def url(self, path: str) -> str:
        return self.base + path

    async def _dispatch(self, request: web.Request) -> web.StreamResponse:
        self.requests.append(request)
        handler = self.routes.get(request.path)
        if handler is None:
            return web.Response(status=404, text="not found")
        return await handler(request)


@asynccontextmanager
async def serve(routes: Dict[str, Handler]) -> AsyncIterator[Site]:
    site = Site(routes)
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", site._dispatch)
    runner = web.AppRunner(app)
    await runner.setup()
    tcp = web.TCPSite(runner, "127.0.0.1", 0)
    await tcp.start()
    host, port = runner.addresses[0][:2]
    site.base = f"http://{host}:{port}"
    try:
        yield site
    finally:
        await runner.cleanup()


class FakeDevTools:
    """Answers DevTools calls the way Chromium does, with scriptable delays."""

    def __init__(self) -> None:
        self.received: List[Dict[str, Any]] = []
        self.hold: Set[str] = set()
        self.held: List[Dict[str, Any]] = []
        self.errors: Dict[str, str] = {}
        self.results: Dict[str, Dict[str, Any]] = {
            "Target.createTarget": {"targetId": "T1"},
            "Target.attachToTarget": {"sessionId": "S1"},
            "Page.navigate": {"frameId": "T1", "loaderId": "L1"},
        }
        self.ws: Optional[web.WebSocketResponse] = None
        self.url = ""

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.ws = ws
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            message = json.loads(msg.data)
            self.received.append(message)
            if message["method"] in self.hold:
                self.held.append(message)
                continue
            await self.reply(message)
        return ws

    async def reply(self, message: Dict[str, Any], result: Optional[Dict[str, Any]] = None) -> None:
        assert self.ws is not None
        method = message["method"]
        if method in self.errors:
            payload: Dict[str, Any] = {"id": message["id"], "error": {"code": -32000, "message": self.errors[method]}}
        else:
            payload = {"id": message["id"], "result": result if result is not None else self.results.get(method, {})}
        if "sessionId" in message:
            payload["sessionId"] = message["sessionId"]
        await self.ws.send_str(json.dumps(payload))

    async def send(self, payload: Dict[str, Any]) -> None:
        assert self.ws is not None
        await self.ws.send_str(json.dumps(payload))

    async def emit(self, method: str, params: Dict[str, Any], session_id: str = "S1") -> None:
        await self.send({"sessionId": session_id, "method": method, "params": params})

    async def wait_for(self, method: str, count: int = 1, timeout: float = 2.0) -> Dict[str, Any]:
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            matches = [m for m in self.received if m["method"] == method]
            if len(matches) >= count:
                return matches[count - 1]
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"{method} was never called")
            await asyncio.sleep(0.01)

    def methods(self) -> List[str]:
        return [m["method"] for m in self.received]


@asynccontextmanager
async def devtools() -> AsyncIterator[FakeDevTools]:
    fake = FakeDevTools()
    app = web.Application()
    app.router.add_get("/devtools/browser/fake", fake.handle)
    runner = web.AppRunner(app)
    await runner.setup()
    tcp = web.TCPSite(runner, "127.0.0.1", 0)
    await tcp.start()
    host, port = runner.addresses[0][:2]
    fake.url = f"ws://{host}:{port}/devtools/browser/fake"
    try:
        yield fake
    finally:
        await runner.cleanup()


@pytest.fixture
def config(tmp_path: Path) -> CrawlConfig:
    return CrawlConfig(
        db_url=f"sqlite:///{tmp_path / 'crawl.sqlite3'}",
        warc_filename=str(tmp_path / "warcs") + "/{prefix}-{timestamp}-{seqno}.warc.gz",
        browser_enabled=False,
        default_delay_millis=0,
        max_delay_millis=0,
        idle_sleep=0.01,
        fetch_timeout=5.0,
    )
