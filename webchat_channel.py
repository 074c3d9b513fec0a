"""DevTools control channel into one Chrome page.

Attaches through Playwright's ``connect_over_cdp`` and talks raw protocol
through a CDP session, so every step the driver takes maps onto one
protocol call: Network.*, Page.*, Runtime.evaluate, Input.*.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Callable, Optional

from webchat_errors import AttachmentFailed, NavigationFailed, NoActiveTab, PageScriptError
from webchat_logging import BrowserLogger

logger = logging.getLogger(__name__)

_KEY_DEFINITIONS = {
    "Enter": {"key": "Enter", "code": "Enter", "windowsVirtualKeyCode": 13, "text": "\r"},
    "Escape": {"key": "Escape", "code": "Escape", "windowsVirtualKeyCode": 27},
    "Tab": {"key": "Tab", "code": "Tab", "windowsVirtualKeyCode": 9},
}


class ControlSession:
    """A live CDP session on one page.

    Owned by a single run; ``close`` disconnects but never kills Chrome.
    """

    def __init__(self, cdp, *, page=None, browser=None, playwright=None) -> None:
        self.cdp = cdp
        self.page = page
        self._browser = browser
        self._playwright = playwright
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def enable_domains(self) -> None:
        """Enable Network, Page and Runtime event delivery together."""
        await asyncio.gather(
            self.cdp.send("Network.enable"),
            self.cdp.send("Page.enable"),
            self.cdp.send("Runtime.enable"),
        )

    # --- network ---

    async def clear_cookies(self) -> None:
        await self.cdp.send("Network.clearBrowserCookies")

    async def set_cookies(self, cookies: list[dict]) -> None:
        if cookies:
            await self.cdp.send("Network.setCookies", {"cookies": cookies})

    async def get_cookies(self, urls: Optional[list[str]] = None) -> list[dict]:
        result = await self.cdp.send("Network.getCookies", {"urls": urls} if urls else {})
        return list((result or {}).get("cookies", []))

    # --- page ---

    async def navigate(self, url: str, timeout_ms: int) -> None:
        """Navigate and return once DOMContentLoaded fires."""
        loaded = asyncio.get_running_loop().create_future()

        def _on_dom_content(_params: Any = None) -> None:
            if not loaded.done():
                loaded.set_result(True)

        self.cdp.on("Page.domContentEventFired", _on_dom_content)
        try:
            try:
                result = await self.cdp.send("Page.navigate", {"url": url})
            except Exception as e:
                raise NavigationFailed(f"Navigation to {url} failed: {e}") from e
            error_text = (result or {}).get("errorText")
            if error_text:
                raise NavigationFailed(f"Navigation to {url} failed: {error_text}")
            try:
                await asyncio.wait_for(loaded, timeout_ms / 1000)
            except asyncio.TimeoutError as e:
                raise NavigationFailed(
                    f"{url} did not reach DOMContentLoaded within {timeout_ms}ms",
                    elapsed_ms=timeout_ms,
                ) from e
        finally:
            self.cdp.remove_listener("Page.domContentEventFired", _on_dom_content)

    async def capture_screenshot(self, quality: int = 60) -> bytes:
        result = await self.cdp.send("Page.captureScreenshot", {"format": "jpeg", "quality": quality})
        return base64.b64decode(result["data"])

    # --- runtime ---

    async def evaluate(self, expression: str, await_promise: bool = True) -> Any:
        """Evaluate in the page's main context and return the value.

        A page-side throw surfaces as PageScriptError with the page stack.
        """
        try:
            result = await self.cdp.send(
                "Runtime.evaluate",
                {
                    "expression": expression,
                    "returnByValue": True,
                    "awaitPromise": await_promise,
                    "userGesture": True,
                },
            )
        except Exception as e:
            raise PageScriptError(f"Runtime.evaluate failed: {e}") from e

        details = (result or {}).get("exceptionDetails")
        if details:
            exception = details.get("exception") or {}
            description = exception.get("description") or details.get("text") or "page script error"
            first_line = description.splitlines()[0] if description else "page script error"
            raise PageScriptError(f"Page script threw: {first_line}", page_stack=description)
        return ((result or {}).get("result") or {}).get("value")

    # --- input ---

    async def insert_text(self, text: str) -> None:
        await self.cdp.send("Input.insertText", {"text": text})

    async def press_key(self, key: str = "Enter") -> None:
        definition = _KEY_DEFINITIONS[key]
        await self.cdp.send("Input.dispatchKeyEvent", {"type": "keyDown", **definition})
        up = {k: v for k, v in definition.items() if k != "text"}
        await self.cdp.send("Input.dispatchKeyEvent", {"type": "keyUp", **up})

    async def click_at(self, x: float, y: float) -> None:
        for event_type in ("mousePressed", "mouseReleased"):
            await self.cdp.send(
                "Input.dispatchMouseEvent",
                {"type": event_type, "x": x, "y": y, "button": "left", "clickCount": 1},
            )

    async def set_file_input_files(self, selector: str, files: list[str]) -> None:
        document = await self.cdp.send("DOM.getDocument", {"depth": 0})
        found = await self.cdp.send(
            "DOM.querySelector",
            {"nodeId": document["root"]["nodeId"], "selector": selector},
        )
        node_id = (found or {}).get("nodeId")
        if not node_id:
            raise AttachmentFailed(f"No file input matched {selector!r}")
        await self.cdp.send("DOM.setFileInputFiles", {"nodeId": node_id, "files": files})

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._browser is not None:
                # For a connect_over_cdp browser this only disconnects.
                await self._browser.close()
        finally:
            if self._playwright is not None:
                await self._playwright.stop()


async def connect_to_chrome(
    port: int,
    log: BrowserLogger,
    *,
    playwright_factory: Optional[Callable[[], Any]] = None,
) -> ControlSession:
    """Attach to the most recently opened page of the Chrome on ``port``."""
    if playwright_factory is None:
        from playwright.async_api import async_playwright

        playwright_factory = async_playwright

    pw = await playwright_factory().start()
    browser = None
    try:
        browser = await pw.chromium.connect_over_cdp(f"http://localhost:{port}")
        pages = [page for context in browser.contexts for page in context.pages]
        if not pages:
            raise NoActiveTab(f"Chrome on port {port} exposes no pages to attach to")
        page = pages[-1]
        cdp = await page.context.new_cdp_session(page)
        session = ControlSession(cdp, page=page, browser=browser, playwright=pw)
        await session.enable_domains()
    except BaseException:
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.debug("Ignoring disconnect error during failed connect: %s", e)
        await pw.stop()
        raise

    log(f"Connected to Chrome DevTools on port {port} ({page.url or 'about:blank'})")
    return session
