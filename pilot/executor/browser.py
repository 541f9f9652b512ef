"""Browser automation sessions.

The engine only talks to ``BrowserSession``. ``PlaywrightSession`` is the
production backend; tests pass in fakes. Sessions are acquired per task with
``open_session`` and are always closed, whatever path the task takes out.

Setup: playwright install chromium
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Protocol
from urllib.parse import quote_plus, urlparse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000


class MethodUnavailable(Exception):
    """The requested method variant cannot run on this backend."""


class BrowserSession(Protocol):
    async def start(self) -> None: ...
    async def close(self) -> None: ...
    async def goto(self, url: str, method: str = "url") -> None: ...
    async def click(self, selector: str, method: str = "css") -> None: ...
    async def fill(self, selector: str, value: str, method: str = "standard") -> None: ...
    async def select(self, selector: str, value: str, method: str = "standard") -> None: ...
    async def submit(self, selector: str = "", method: str = "standard") -> None: ...
    async def upload(self, selector: str, path: str) -> None: ...
    async def extract(self, selector: str = "") -> str: ...
    async def screenshot(self) -> str: ...
    async def scroll(self, pixels: int = 800) -> None: ...
    async def wait(self, seconds: float = 1.0, selector: str = "") -> None: ...
    async def current_url(self) -> str: ...
    async def save_state(self) -> Optional[str]: ...


SessionFactory = Callable[[Optional[str]], BrowserSession]


def domain_of(url: str) -> str:
    if not url or url.startswith(("about:", "data:", "chrome:")):
        return ""
    host = urlparse(url if "://" in url else f"https://{url}").hostname or ""
    return host.removeprefix("www.")


class PlaywrightSession:
    """BrowserSession on Playwright's async API.

    If *storage_state* points at an existing file, cookies and logins from an
    earlier run are restored (the "cached session").
    """

    def __init__(self, storage_state: str | None = None, headless: bool = True,
                 screenshot_dir: str = "data/screenshots", timeout_ms: int = DEFAULT_TIMEOUT_MS):
        self.storage_state = storage_state
        self.headless = headless
        self.screenshot_dir = Path(screenshot_dir)
        self.timeout_ms = timeout_ms
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._shots = 0

    async def start(self) -> None:
        from playwright.async_api import async_playwright

        state = self.storage_state if self.storage_state and Path(self.storage_state).exists() else None
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.headless)
            self._context = await self._browser.new_context(storage_state=state)
            self._context.set_default_timeout(self.timeout_ms)
            self._page = await self._context.new_page()
        except Exception:
            # release whatever was launched before the failure
            await self.close()
            raise
        logger.info(f"Playwright session started (cached_state={bool(state)}, headless={self.headless})")

    async def close(self) -> None:
        for closer in (self._context, self._browser):
            if closer is not None:
                try:
                    await closer.close()
                except Exception as e:
                    logger.debug(f"Browser close failed (non-fatal): {e}")
        if self._playwright is not None:
            await self._playwright.stop()
        self._page = self._context = self._browser = self._playwright = None

    @property
    def page(self):
        if self._page is None:
            raise RuntimeError("Browser session not started")
        return self._page

    # ─── Navigation ───────────────────────────────────────────────────

    async def goto(self, url: str, method: str = "url") -> None:
        if method == "url":
            target = url if "://" in url else f"https://{url}"
            await self.page.goto(target, wait_until="domcontentloaded")
        elif method in ("search", "search_engine"):
            await self.page.goto(f"https://duckduckgo.com/?q={quote_plus(url)}", wait_until="domcontentloaded")
        elif method == "back_forward":
            await self.page.go_back()
            await self.page.go_forward()
        elif method == "cached":
            await self.page.goto(f"https://web.archive.org/web/{url}", wait_until="domcontentloaded")
        else:
            raise MethodUnavailable(f"navigate method '{method}' not supported")

    # ─── Interaction ──────────────────────────────────────────────────

    async def click(self, selector: str, method: str = "css") -> None:
        page = self.page
        if method == "css":
            await page.click(selector)
        elif method == "text":
            await page.get_by_text(selector).first.click()
        elif method == "role":
            await page.get_by_role("button", name=selector).first.click()
        elif method == "label":
            await page.get_by_label(selector).first.click()
        elif method == "xpath":
            await page.locator(f"xpath={selector}").first.click()
        elif method == "placeholder":
            await page.get_by_placeholder(selector).first.click()
        elif method == "force_js":
            await page.eval_on_selector(selector, "el => el.click()")
        elif method == "coordinates":
            box = await page.locator(selector).first.bounding_box()
            if not box:
                raise MethodUnavailable(f"No bounding box for {selector}")
            await page.mouse.click(box["x"] + box["width"] / 2, box["y"] + box["height"] / 2)
        elif method == "double_click":
            await page.dblclick(selector)
        elif method == "hover_click":
            await page.hover(selector)
            await page.click(selector)
        elif method == "scroll_click":
            locator = page.locator(selector).first
            await locator.scroll_into_view_if_needed()
            await locator.click()
        else:
            raise MethodUnavailable(f"click method '{method}' not supported")

    async def fill(self, selector: str, value: str, method: str = "standard") -> None:
        page = self.page
        if method == "standard":
            await page.fill(selector, value)
        elif method == "label":
            await page.get_by_label(selector).first.fill(value)
        elif method == "placeholder":
            await page.get_by_placeholder(selector).first.fill(value)
        elif method == "name":
            await page.fill(f"[name='{selector}']", value)
        elif method == "id":
            await page.fill(f"#{selector.lstrip('#')}", value)
        elif method == "xpath":
            await page.locator(f"xpath={selector}").first.fill(value)
        elif method in ("js_value", "react_hack"):
            await page.eval_on_selector(
                selector,
                """(el, value) => {
                    const setter = Object.getOwnPropertyDescriptor(Object.getPrototypeOf(el), 'value').set;
                    setter.call(el, value);
                    el.dispatchEvent(new Event('input', { bubbles: true }));
                    el.dispatchEvent(new Event('change', { bubbles: true }));
                }""",
                value,
            )
        elif method == "focus_type":
            await page.click(selector)
            await page.keyboard.type(value, delay=20)
        elif method == "clipboard":
            await page.focus(selector)
            await page.keyboard.insert_text(value)
        else:
            raise MethodUnavailable(f"fill method '{method}' not supported")

    async def select(self, selector: str, value: str, method: str = "standard") -> None:
        if method == "standard":
            await self.page.select_option(selector, value)
        elif method == "label":
            await self.page.select_option(selector, label=value)
        elif method == "js_value":
            await self.page.eval_on_selector(
                selector,
                "(el, v) => { el.value = v; el.dispatchEvent(new Event('change', { bubbles: true })); }",
                value,
            )
        else:
            raise MethodUnavailable(f"select method '{method}' not supported")

    async def submit(self, selector: str = "", method: str = "standard") -> None:
        page = self.page
        if method == "standard":
            await page.click(selector or "button[type=submit], input[type=submit]")
        elif method == "enter_key":
            await page.keyboard.press("Enter")
        elif method == "js_submit":
            await page.eval_on_selector(selector or "form", "f => (f.form || f).requestSubmit()")
        else:
            raise MethodUnavailable(f"submit method '{method}' not supported")

    async def upload(self, selector: str, path: str) -> None:
        if not Path(path).exists():
            raise FileNotFoundError(path)
        await self.page.set_input_files(selector, path)

    # ─── Observation ──────────────────────────────────────────────────

    async def extract(self, selector: str = "") -> str:
        if selector:
            return await self.page.inner_text(selector)
        return await self.page.inner_text("body")

    async def screenshot(self) -> str:
        self.screenshot_dir.mkdir(parents=True, exist_ok=True)
        self._shots += 1
        path = self.screenshot_dir / f"shot-{id(self):x}-{self._shots}.png"
        await self.page.screenshot(path=str(path), full_page=True)
        return str(path)

    async def scroll(self, pixels: int = 800) -> None:
        await self.page.mouse.wheel(0, pixels)

    async def wait(self, seconds: float = 1.0, selector: str = "") -> None:
        if selector:
            await self.page.wait_for_selector(selector)
        else:
            await self.page.wait_for_timeout(int(seconds * 1000))

    async def current_url(self) -> str:
        return self.page.url

    async def save_state(self) -> Optional[str]:
        if not self.storage_state or self._context is None:
            return None
        Path(self.storage_state).parent.mkdir(parents=True, exist_ok=True)
        await self._context.storage_state(path=self.storage_state)
        return self.storage_state


def playwright_factory(state_dir: str = "data/sessions") -> SessionFactory:
    def factory(state_key: Optional[str]) -> BrowserSession:
        state = str(Path(state_dir) / f"{state_key}.json") if state_key else None
        return PlaywrightSession(storage_state=state)
    return factory


@asynccontextmanager
async def open_session(factory: SessionFactory, state_key: Optional[str] = None) -> AsyncIterator[BrowserSession]:
    """Start a session and guarantee it is closed on every exit path.

    A keyed session writes its state back after a clean exit so the next
    task on that site starts from the cached login.
    """
    session = factory(state_key)
    try:
        await session.start()
        yield session
        if state_key:
            try:
                await session.save_state()
            except Exception as e:
                logger.warning(f"Session state save failed (non-fatal): {e}")
    finally:
        try:
            await session.close()
        except Exception as e:
            logger.warning(f"Session close failed: {e}")
