import asyncio
import base64
import logging
import os

import pytest

from conftest import devtools
from slowcrawl.workflows.browser import (
    Browser,
    BrowserError,
    BrowserRequest,
    NavigationAbandoned,
    RequestAlreadyHandled,
)

PAUSED = {
    "requestId": "R1",
    "request": {"url": "http://h/a.jpg", "method": "GET", "headers": {"Accept": "image/*"}},
    "resourceType": "Image",
}


def test_calls_are_matched_to_replies_out_of_order():
    async def scenario():
        async with devtools() as fake:
            fake.hold.add("Test.slow")
            fake.results["Test.slow"] = {"which": "slow"}
            fake.results["Test.fast"] = {"which": "fast"}
            async with await Browser.connect(fake.url) as browser:
                slow = asyncio.create_task(browser.call("Test.slow"))
                await fake.wait_for("Test.slow")
                assert await browser.call("Test.fast") == {"which": "fast"}
                assert not slow.done()
                await fake.reply(fake.held[0])
                assert await slow == {"which": "slow"}
                ids = [m["id"] for m in fake.received]
                assert len(set(ids)) == len(ids)

    asyncio.run(scenario())


def test_remote_error_is_raised_to_the_caller():
    async def scenario():
        async with devtools() as fake:
            fake.errors["Test.broken"] = "boom"
            async with await Browser.connect(fake.url) as browser:
                with pytest.raises(BrowserError, match="boom"):
                    await browser.call("Test.broken")
                assert await browser.call("Test.fine") == {}

    asyncio.run(scenario())


def test_call_timeout_raises_and_forgets_the_call():
    async def scenario():
        async with devtools() as fake:
            fake.hold.add("Test.never")
            async with await Browser.connect(fake.url) as browser:
                with pytest.raises(BrowserError, match="timed out"):
                    await browser.call("Test.never", timeout=0.05)
                assert browser._pending == {}
                await fake.reply(fake.held[0])
                assert await browser.call("Test.after") == {}

    asyncio.run(scenario())


def test_reply_with_unknown_id_is_discarded(caplog):
    async def scenario():
        async with devtools() as fake:
            async with await Browser.connect(fake.url) as browser:
                await browser.call("Test.first")
                await fake.send({"id": 999, "result": {"stray": True}})
                assert await browser.call("Test.second") == {}

    with caplog.at_level(logging.WARNING, logger="slowcrawl.workflows.browser"):
        asyncio.run(scenario())
    assert "unknown call id 999" in caplog.text


def test_closed_browser_refuses_calls():
    async def scenario():
        async with devtools() as fake:
            browser = await Browser.connect(fake.url)
            await browser.close()
            assert browser.closed
            with pytest.raises(BrowserError):
                await browser.call("Test.late")

    asyncio.run(scenario())


def test_new_tab_attaches_a_flat_session():
    async def scenario():
        async with devtools() as fake:
            async with await Browser.connect(fake.url) as browser:
                tab = await browser.new_tab()
                assert (tab.target_id, tab.session_id) == ("T1", "S1")
                assert fake.methods() == [
                    "Target.createTarget",
                    "Target.attachToTarget",
                    "Page.enable",
                    "Page.setLifecycleEventsEnabled",
                ]
                assert fake.received[0]["params"]["url"] == "about:blank"
                assert fake.received[1]["params"] == {"targetId": "T1", "flatten": True}
                assert "sessionId" not in fake.received[1]
                assert fake.received[2]["sessionId"] == "S1"

                await tab.close()
                assert fake.methods()[-1] == "Target.closeTarget"
                with pytest.raises(BrowserError, match="Tab closed"):
                    await tab.call("Page.reload")

    asyncio.run(scenario())


def test_navigation_waits_for_load_and_network_idle():
    async def scenario():
        async with devtools() as fake:
            async with await Browser.connect(fake.url) as browser:
                tab = await browser.new_tab()
                completion = await tab.navigate("http://h/")
                assert fake.received[-1]["params"] == {"url": "http://h/"}

                await fake.emit("Page.loadEventFired", {"timestamp": 1.0})
                await fake.emit("Page.lifecycleEvent", {"frameId": "child", "name": "networkIdle"})
                await asyncio.sleep(0.05)
                assert not completion.done()

                await fake.emit("Page.lifecycleEvent", {"frameId": "T1", "name": "networkIdle"})
                await asyncio.wait_for(completion, 1)

    asyncio.run(scenario())


def test_new_navigation_abandons_the_previous_one():
    async def scenario():
        async with devtools() as fake:
            async with await Browser.connect(fake.url) as browser:
                tab = await browser.new_tab()
                first = await tab.navigate("http://h/one")
                second = await tab.navigate("http://h/two")
                with pytest.raises(NavigationAbandoned):
                    await first
                await tab.close()
                with pytest.raises(NavigationAbandoned):
                    await second

    asyncio.run(scenario())


def test_failed_navigation_raises():
    async def scenario():
        async with devtools() as fake:
            fake.results["Page.navigate"] = {"frameId": "T1", "errorText": "net::ERR_NAME_NOT_RESOLVED"}
            async with await Browser.connect(fake.url) as browser:
                tab = await browser.new_tab()
                with pytest.raises(BrowserError, match="ERR_NAME_NOT_RESOLVED"):
                    await tab.navigate("http://nowhere.invalid/")

    asyncio.run(scenario())


def test_intercepted_request_fulfilled_with_body():
    async def scenario():
        async with devtools() as fake:
            async with await Browser.connect(fake.url) as browser:
                tab = await browser.new_tab()
                seen = []

                async def handler(request: BrowserRequest) -> None:
                    seen.append(request)
                    await request.fulfill(200, [("Content-Type", "image/jpeg")], b"\xff\xd8jpeg", "OK")

                await tab.intercept_requests(handler)
                assert fake.methods()[-1] == "Fetch.enable"
                await fake.emit("Fetch.requestPaused", PAUSED)
                message = await fake.wait_for("Fetch.fulfillRequest")

                assert seen[0].url == "http://h/a.jpg"
                assert seen[0].resource_type == "Image"
                assert seen[0].headers == {"Accept": "image/*"}
                params = message["params"]
                assert params["requestId"] == "R1"
                assert params["responseCode"] == 200
                assert params["responsePhrase"] == "OK"
                assert params["responseHeaders"] == [{"name": "Content-Type", "value": "image/jpeg"}]
                assert base64.b64decode(params["body"]) == b"\xff\xd8jpeg"
                assert message["sessionId"] == "S1"

    asyncio.run(scenario())


def test_handler_errors_fail_the_request():
    async def scenario():
        async with devtools() as fake:
            async with await Browser.connect(fake.url) as browser:
                tab = await browser.new_tab()

                async def handler(request: BrowserRequest) -> None:
                    raise ValueError("cannot serve")

                await tab.intercept_requests(handler)
                await fake.emit("Fetch.requestPaused", PAUSED)
                message = await fake.wait_for("Fetch.failRequest")
                assert message["params"] == {"requestId": "R1", "errorReason": "Failed"}

                await fake.emit("Fetch.requestPaused", dict(PAUSED, requestId="R2"))
                await fake.wait_for("Fetch.failRequest", count=2)
                assert "Fetch.continueRequest" not in fake.methods()

    asyncio.run(scenario())


def test_unresolved_request_continues():
    async def scenario():
        async with devtools() as fake:
            async with await Browser.connect(fake.url) as browser:
                tab = await browser.new_tab()

                async def handler(request: BrowserRequest) -> None:
                    return None

                await tab.intercept_requests(handler)
                await fake.emit("Fetch.requestPaused", PAUSED)
                message = await fake.wait_for("Fetch.continueRequest")
                assert message["params"] == {"requestId": "R1"}

    asyncio.run(scenario())


def test_request_can_only_be_resolved_once():
    async def scenario():
        async with devtools() as fake:
            async with await Browser.connect(fake.url) as browser:
                tab = await browser.new_tab()
                request = BrowserRequest(tab, PAUSED)
                await request.fail("AccessDenied")
                with pytest.raises(RequestAlreadyHandled):
                    await request.fulfill(200, [], b"")
                with pytest.raises(RequestAlreadyHandled):
                    await request.continue_normally()
                assert fake.methods().count("Fetch.failRequest") == 1
                assert "Fetch.fulfillRequest" not in fake.methods()

    asyncio.run(scenario())


def test_cancelled_request_is_not_an_error():
    async def scenario():
        async with devtools() as fake:
            fake.errors["Fetch.continueRequest"] = "Invalid InterceptionId."
            async with await Browser.connect(fake.url) as browser:
                tab = await browser.new_tab()
                request = BrowserRequest(tab, PAUSED)
                await request.continue_normally()
                assert request.handled

    asyncio.run(scenario())


@pytest.mark.skipif(os.getenv("SLOWCRAWL_BROWSER_TESTS") != "1", reason="needs a local Chromium")
def test_real_browser_evaluates_in_a_tab():
    async def scenario():
        async with await Browser.launch() as browser:
            async with await browser.new_tab() as tab:
                assert await tab.evaluate("1 + 1") == 2

    asyncio.run(scenario())
