"""Headless Chromium remote control over the DevTools protocol.

One websocket carries every message. Calls are correlated by a monotonically
increasing id into futures; events are routed by session id to the owning
:class:`Tab`, each on its own task so a slow handler (for example one running a
nested capture) never stalls the receive loop or other tabs.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import json
import logging
import shutil
import tempfile
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import aiohttp

from .crawl_config import OVERRIDE_DATE_JS, SCROLL_DOWN_JS

try:  # Optional: used only to locate Playwright's bundled Chromium
    from playwright.async_api import async_playwright  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    async_playwright = None  # type: ignore

logger = logging.getLogger(__name__)

BROWSER_CANDIDATES = ("chromium-browser", "chromium", "google-chrome", "google-chrome-stable")
DEVTOOLS_PREFIX = "DevTools listening on "
DEFAULT_CALL_TIMEOUT = 10.0

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]
RequestHandler = Callable[["BrowserRequest"], Awaitable[None]]


class BrowserError(RuntimeError):
    """A DevTools call failed, timed out, or targeted a closed tab or connection."""


class NavigationAbandoned(BrowserError):
    """A pending navigation was superseded by a newer one or by closing the tab."""


class RequestAlreadyHandled(RuntimeError):
    """A paused request was resolved more than once."""


def _retrieve_exception(future: "asyncio.Future[Any]") -> None:
    if not future.cancelled():
        future.exception()


async def find_executable(preferred: Optional[str] = None) -> Optional[str]:
    """Locate a Chromium binary: explicit path, then PATH, then Playwright's bundle."""

    if preferred:
        return shutil.which(preferred) or preferred
    for name in BROWSER_CANDIDATES:
        found = shutil.which(name)
        if found:
            return found
    if async_playwright is not None:
        try:
            async with async_playwright() as p:
                return p.chromium.executable_path
        except Exception as exc:
            logger.debug("Playwright chromium lookup failed: %s", exc)
    return None


async def _read_devtools_url(stream: asyncio.StreamReader) -> str:
    while True:
        line = await stream.readline()
        if not line:
            raise BrowserError("Browser exited before announcing its DevTools URL")
        text = line.decode("utf-8", errors="replace").strip()
        logger.debug("browser: %s", text)
        if text.startswith(DEVTOOLS_PREFIX):
            return text[len(DEVTOOLS_PREFIX):]


async def _drain(stream: asyncio.StreamReader) -> None:
    while True:
        line = await stream.readline()
        if not line:
            return
        logger.debug("browser: %s", line.decode("utf-8", errors="replace").rstrip())


class Browser:
    """A DevTools connection, optionally owning the browser process behind it."""

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        session: aiohttp.ClientSession,
        *,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        process: Optional[asyncio.subprocess.Process] = None,
        profile_dir: Optional[str] = None,
    ) -> None:
        self._ws = ws
        self._session = session
        self.call_timeout = call_timeout
        self._process = process
        self._profile_dir = profile_dir
        self._ids = itertools.count(1)
        self._pending: Dict[int, Tuple[str, "asyncio.Future[Dict[str, Any]]"]] = {}
        self._sessions: Dict[str, EventHandler] = {}
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._closed = False
        self._stderr_task: Optional["asyncio.Task[None]"] = None
        self._receiver = asyncio.create_task(self._receive_loop())

    @classmethod
    async def connect(
        cls,
        ws_url: str,
        *,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        process: Optional[asyncio.subprocess.Process] = None,
        profile_dir: Optional[str] = None,
    ) -> "Browser":
        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(ws_url, max_msg_size=0)
        except BaseException:
            await session.close()
            raise
        return cls(ws, session, call_timeout=call_timeout, process=process, profile_dir=profile_dir)

    @classmethod
    async def launch(
        cls,
        executable: Optional[str] = None,
        *,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        startup_timeout: float = 10.0,
        extra_args: Iterable[str] = (),
    ) -> "Browser":
        """Spawn headless Chromium and connect to it."""

        path = await find_executable(executable)
        if path is None:
            raise BrowserError("No Chromium executable found; set SLOWCRAWL_BROWSER_EXECUTABLE")
        profile_dir = tempfile.mkdtemp(prefix="slowcrawl-browser-")
        args = [
            path,
            "--headless",
            "--remote-debugging-port=0",
            f"--user-data-dir={profile_dir}",
            "--no-first-run",
            "--no-default-browser-check",
            "--mute-audio",
            *extra_args,
        ]
        logger.info("Starting browser %s", path)
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        assert process.stderr is not None
        try:
            ws_url = await asyncio.wait_for(_read_devtools_url(process.stderr), startup_timeout)
            browser = await cls.connect(ws_url, call_timeout=call_timeout, process=process, profile_dir=profile_dir)
        except BaseException:
            process.kill()
            await process.wait()
            shutil.rmtree(profile_dir, ignore_errors=True)
            raise
        browser._stderr_task = asyncio.create_task(_drain(process.stderr))
        return browser

    @property
    def closed(self) -> bool:
        return self._closed

    async def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Issue one DevTools call and wait for its result."""

        if self._closed:
            raise BrowserError(f"Browser connection closed; cannot call {method}")
        call_id = next(self._ids)
        message: Dict[str, Any] = {"id": call_id, "method": method, "params": params or {}}
        if session_id:
            message["sessionId"] = session_id
        future: "asyncio.Future[Dict[str, Any]]" = asyncio.get_running_loop().create_future()
        self._pending[call_id] = (method, future)
        try:
            logger.debug("> %s %s", call_id, method)
            await self._ws.send_str(json.dumps(message))
            return await asyncio.wait_for(future, timeout or self.call_timeout)
        except asyncio.TimeoutError as exc:
            raise BrowserError(f"Call timed out: {method}") from exc
        except (aiohttp.ClientError, ConnectionError) as exc:
            raise BrowserError(f"{method}: {exc}") from exc
        finally:
            self._pending.pop(call_id, None)

    async def _receive_loop(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        message = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("Discarding malformed DevTools message")
                        continue
                    self._on_message(message)
                elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    break
        finally:
            self._fail_pending(BrowserError("Browser connection closed"))

    def _on_message(self, message: Dict[str, Any]) -> None:
        if "id" in message:
            entry = self._pending.get(message["id"])
            if entry is None:
                logger.warning("Discarding response to unknown call id %s", message["id"])
                return
            method, future = entry
            if future.done():
                return
            error = message.get("error")
            if error is not None:
                future.set_exception(BrowserError(f"{method}: {error.get('message', error)}"))
            else:
                future.set_result(message.get("result") or {})
            return

        session_id = message.get("sessionId")
        handler = self._sessions.get(session_id) if session_id else None
        if handler is None:
            logger.debug("< event %s (no handler)", message.get("method"))
            return
        task = asyncio.create_task(self._dispatch(handler, message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, handler: EventHandler, message: Dict[str, Any]) -> None:
        try:
            await handler(message)
        except Exception:
            logger.exception("Error handling browser event %s", message.get("method"))

    def _fail_pending(self, error: BrowserError) -> None:
        for _method, future in list(self._pending.values()):
            if not future.done():
                future.set_exception(error)

    def register_session(self, session_id: str, handler: EventHandler) -> None:
        self._sessions[session_id] = handler

    def unregister_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def new_tab(self, width: int = 1366, height: int = 768) -> "Tab":
        return await Tab.create(self, width=width, height=height)

    async def close(self) -> None:
        """Close the connection, stop the browser process and remove its profile."""

        if self._closed:
            return
        self._closed = True
        await self._ws.close()
        await self._session.close()
        self._receiver.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._fail_pending(BrowserError("Browser closed"))
        if self._process is not None and self._process.returncode is None:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), 5.0)
            except asyncio.TimeoutError:
                self._process.kill()
                await self._process.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
        if self._profile_dir:
            shutil.rmtree(self._profile_dir, ignore_errors=True)

    async def __aenter__(self) -> "Browser":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class BrowserRequest:
    """A request paused by the browser, awaiting exactly one resolution."""

    def __init__(self, tab: "Tab", params: Dict[str, Any]) -> None:
        self._tab = tab
        request = params.get("request") or {}
        self.id: str = params["requestId"]
        self.method: str = request.get("method", "GET")
        self.url: str = request.get("url", "")
        self.headers: Dict[str, str] = dict(request.get("headers") or {})
        self.resource_type: Optional[str] = params.get("resourceType")
        self.handled = False

    def __repr__(self) -> str:
        return f"BrowserRequest({self.method} {self.url})"

    def _claim(self) -> None:
        if self.handled:
            raise RequestAlreadyHandled(f"Request already handled: {self.method} {self.url}")
        self.handled = True

    async def _resolve(self, method: str, params: Dict[str, Any]) -> None:
        try:
            await self._tab.call(method, params)
        except BrowserError as exc:
            if "Invalid InterceptionId" in str(exc):
                logger.debug("Request cancelled before %s: %s", method, self.url)
                return
            raise

    async def fulfill(
        self,
        status: int,
        headers: Iterable[Tuple[str, str]],
        body: bytes,
        reason: Optional[str] = None,
    ) -> None:
        self._claim()
        params: Dict[str, Any] = {
            "requestId": self.id,
            "responseCode": status,
            "responseHeaders": [{"name": name, "value": value} for name, value in headers],
            "body": base64.b64encode(body).decode("ascii"),
        }
        if reason and reason.strip():
            params["responsePhrase"] = reason.strip()
        await self._resolve("Fetch.fulfillRequest", params)

    async def fail(self, reason: str = "Failed") -> None:
        self._claim()
        await self._resolve("Fetch.failRequest", {"requestId": self.id, "errorReason": reason})

    async def continue_normally(self) -> None:
        self._claim()
        await self._resolve("Fetch.continueRequest", {"requestId": self.id})


class Tab:
    """One browser target attached over a flattened session."""

    def __init__(self, browser: Browser, target_id: str, session_id: str) -> None:
        self.browser = browser
        self.target_id = target_id
        self.session_id = session_id
        self._closed = False
        self._load_future: Optional["asyncio.Future[None]"] = None
        self._idle_future: Optional["asyncio.Future[None]"] = None
        self._request_handler: Optional[RequestHandler] = None

    @classmethod
    async def create(cls, browser: Browser, *, width: int = 1366, height: int = 768) -> "Tab":
        created = await browser.call("Target.createTarget", {"url": "about:blank", "width": width, "height": height})
        target_id = created["targetId"]
        attached = await browser.call("Target.attachToTarget", {"targetId": target_id, "flatten": True})
        tab = cls(browser, target_id, attached["sessionId"])
        browser.register_session(tab.session_id, tab._handle_event)
        try:
            await tab.call("Page.enable")
            await tab.call("Page.setLifecycleEventsEnabled", {"enabled": True})
        except BrowserError:
            await tab.close()
            raise
        return tab

    @property
    def closed(self) -> bool:
        return self._closed

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Dict[str, Any]:
        if self._closed:
            raise BrowserError(f"Tab closed; cannot call {method}")
        return await self.browser.call(method, params, session_id=self.session_id, timeout=timeout)

    async def _handle_event(self, message: Dict[str, Any]) -> None:
        method = message.get("method")
        params = message.get("params") or {}
        if method == "Fetch.requestPaused":
            await self._on_request_paused(params)
        elif method == "Page.loadEventFired":
            if self._load_future is not None and not self._load_future.done():
                self._load_future.set_result(None)
        elif method == "Page.lifecycleEvent":
            if params.get("name") == "networkIdle" and params.get("frameId") == self.target_id:
                if self._idle_future is not None and not self._idle_future.done():
                    self._idle_future.set_result(None)

    async def _on_request_paused(self, params: Dict[str, Any]) -> None:
        request = BrowserRequest(self, params)
        handler = self._request_handler
        if handler is None:
            await request.continue_normally()
            return
        try:
            await handler(request)
        except Exception:
            if not request.handled:
                await request.fail("Failed")
            raise
        if not request.handled:
            await request.continue_normally()

    async def intercept_requests(self, handler: RequestHandler) -> None:
        """Pause every request the page issues and hand it to ``handler``."""

        self._request_handler = handler
        await self.call("Fetch.enable")

    def _abandon_navigation(self, reason: str) -> None:
        for future in (self._load_future, self._idle_future):
            if future is not None and not future.done():
                future.set_exception(NavigationAbandoned(reason))

    async def navigate(self, url: str) -> "asyncio.Future[Any]":
        """Start loading ``url``; the returned future resolves after load and network idle."""

        self._abandon_navigation("navigated away")
        loop = asyncio.get_running_loop()
        self._load_future = loop.create_future()
        self._idle_future = loop.create_future()
        completion = asyncio.gather(self._load_future, self._idle_future)
        completion.add_done_callback(_retrieve_exception)
        result = await self.call("Page.navigate", {"url": url})
        error_text = result.get("errorText")
        if error_text:
            self._abandon_navigation(f"navigation failed: {error_text}")
            raise BrowserError(f"Navigation to {url} failed: {error_text}")
        return completion

    async def evaluate(self, expression: str, *, await_promise: bool = False) -> Any:
        result = await self.call(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": await_promise},
        )
        details = result.get("exceptionDetails")
        if details:
            text = (details.get("exception") or {}).get("description") or details.get("text")
            raise BrowserError(f"Script failed: {text}")
        return (result.get("result") or {}).get("value")

    async def screenshot(self, quality: int = 80) -> bytes:
        """JPEG of the whole page, not just the viewport."""

        metrics = await self.call("Page.getLayoutMetrics")
        size = metrics.get("cssContentSize") or metrics.get("contentSize") or {}
        params: Dict[str, Any] = {"format": "jpeg", "quality": quality, "captureBeyondViewport": True}
        if size.get("width") and size.get("height"):
            params["clip"] = {"x": 0, "y": 0, "width": size["width"], "height": size["height"], "scale": 1}
        result = await self.call("Page.captureScreenshot", params)
        return base64.b64decode(result["data"])

    async def scroll_down(self) -> None:
        await self.evaluate(SCROLL_DOWN_JS.read_text(encoding="utf-8"), await_promise=True)

    async def extract_links(self) -> List[str]:
        links = await self.evaluate("Array.from(document.querySelectorAll('a[href]'), a => a.href)")
        return [link for link in links or [] if isinstance(link, str)]

    async def title(self) -> str:
        return await self.evaluate("document.title") or ""

    async def override_date_and_random(self, date: datetime) -> None:
        """Pin Date and Math.random in every new document to ``date``."""

        millis = int(date.timestamp() * 1000)
        source = OVERRIDE_DATE_JS.read_text(encoding="utf-8").replace("DATE", str(millis))
        await self.call("Page.addScriptToEvaluateOnNewDocument", {"source": source})

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.browser.unregister_session(self.session_id)
        self._abandon_navigation("tab closed")
        if self.browser.closed:
            return
        try:
            await self.browser.call("Target.closeTarget", {"targetId": self.target_id})
        except BrowserError as exc:
            logger.debug("Closing target %s failed: %s", self.target_id, exc)

    async def __aenter__(self) -> "Tab":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


__all__ = [
    "Browser",
    "BrowserError",
    "BrowserRequest",
    "NavigationAbandoned",
    "RequestAlreadyHandled",
    "Tab",
    "find_executable",
]
