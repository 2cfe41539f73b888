from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from sniper.schemas.session import Identity

logger = logging.getLogger(__name__)

STEALTH_INIT_SCRIPT = "Object.defineProperty(navigator, 'webdriver', { get: () => false });"
LAUNCH_ARGS = ["--disable-blink-features=AutomationControlled"]
NAVIGATION_TIMEOUT_MS = 30_000


@dataclass(slots=True)
class Navigation:
    url: str
    status: int | None


class AutomationContext(Protocol):
    identity: Identity

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None: ...

    async def cookies(self) -> list[dict[str, Any]]: ...

    async def goto(self, url: str) -> Navigation: ...

    async def read_local_storage(self, key: str) -> str | None: ...

    async def close(self) -> None: ...


class ContextLauncher(Protocol):
    async def launch(self, identity: Identity) -> AutomationContext: ...


class PlaywrightContext:
    """One browser and one context, torn down together.

    ``page`` belongs to the session flow. Claims open their own pages with
    ``new_page`` so concurrent claims never share navigation state.
    """

    def __init__(
        self,
        *,
        playwright: Playwright,
        browser: Browser,
        context: BrowserContext,
        page: Page,
        identity: Identity,
    ) -> None:
        self.identity = identity
        self.page = page
        self._playwright = playwright
        self._browser = browser
        self._context = context
        self._closed = False

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        if cookies:
            await self._context.add_cookies(cookies)

    async def cookies(self) -> list[dict[str, Any]]:
        return [dict(cookie) for cookie in await self._context.cookies()]

    async def goto(self, url: str) -> Navigation:
        response = await self.page.goto(url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)
        if response is None:
            return Navigation(url=self.page.url, status=None)
        return Navigation(url=response.url, status=response.status)

    async def new_page(self) -> Page:
        return await self._context.new_page()

    async def read_local_storage(self, key: str) -> str | None:
        return await self.page.evaluate("(key) => window.localStorage.getItem(key)", key)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for label, closer in (
            ("page", self.page.close),
            ("context", self._context.close),
            ("browser", self._browser.close),
            ("playwright", self._playwright.stop),
        ):
            try:
                await closer()
            except Exception as exc:  # noqa: BLE001
                logger.warning("failed to close automation %s: %s", label, exc)


class PlaywrightLauncher:
    def __init__(self, *, headless: bool = True, proxy_url: str | None = None) -> None:
        self.headless = headless
        self.proxy_url = proxy_url

    async def launch(self, identity: Identity) -> PlaywrightContext:
        playwright = await async_playwright().start()
        try:
            launch_options: dict[str, Any] = {"headless": self.headless, "args": LAUNCH_ARGS}
            if self.proxy_url:
                launch_options["proxy"] = {"server": self.proxy_url}
            browser = await playwright.chromium.launch(**launch_options)
            context = await browser.new_context(
                user_agent=identity.user_agent,
                viewport={"width": identity.viewport.width, "height": identity.viewport.height},
                locale=identity.locale,
                timezone_id=identity.timezone,
            )
            await context.add_init_script(STEALTH_INIT_SCRIPT)
            page = await context.new_page()
        except Exception:
            await playwright.stop()
            raise

        logger.info("launched automation context identity=%s headless=%s", identity.id, self.headless)
        return PlaywrightContext(
            playwright=playwright,
            browser=browser,
            context=context,
            page=page,
            identity=identity,
        )
