from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qs, urlparse

from sniper.core import metrics
from sniper.core.errors import PermanentError, SessionError
from sniper.schemas.tasks import ClaimTask
from sniper.services.browser import AutomationContext, PlaywrightContext
from sniper.services.collaborators import LoginCapabilities

logger = logging.getLogger(__name__)

CHALLENGE_FRAME_SELECTOR = 'iframe[src*="captcha"]'
APPLY_BUTTON_SELECTOR = 'button[data-test="apply-button"], a[data-test="apply-button"]'
FORM_OR_CONFIRMATION_SELECTOR = '[data-test="application-form"], [data-test="application-confirmation"]'
SUBMIT_SELECTOR = 'button[type="submit"][data-test="submit-application"], button[data-test="confirm-application"]'
CONFIRMATION_SELECTOR = ", ".join(
    [
        '[data-test="application-complete"]',
        '[data-test="application-success"]',
        "text=Application submitted",
        "text=Thank you for applying",
        "text=Application received",
    ]
)


def _playwright_context(context: AutomationContext) -> PlaywrightContext:
    if not isinstance(context, PlaywrightContext):
        raise PermanentError("portal automation requires a Playwright context")
    return context


def _page_of(context: AutomationContext) -> Any:
    return _playwright_context(context).page


class PortalLoginFlow:
    def __init__(self, *, base_url: str, login_path: str, account_path: str, email: str | None, pin: str | None) -> None:
        self.login_url = f"{base_url.rstrip('/')}{login_path}"
        self.account_url = f"{base_url.rstrip('/')}{account_path}"
        self.email = email
        self.pin = pin

    async def run(self, context: AutomationContext, capabilities: LoginCapabilities) -> None:
        if not self.email or not self.pin:
            raise SessionError("SNIPER_ACCOUNT_EMAIL and SNIPER_ACCOUNT_PIN are required for full login")

        page = _page_of(context)
        await page.goto(self.login_url, wait_until="networkidle", timeout=60_000)
        await page.fill('input[name="email"]', self.email)
        await page.click('button[type="submit"]')
        await page.wait_for_selector('input[name="pin"]', timeout=30_000)
        await page.fill('input[name="pin"]', self.pin)
        await page.click('button[type="submit"]')

        await self._handle_challenge(page, capabilities)
        await self._handle_one_time_code(page, capabilities)

        await page.wait_for_url(self.account_url, timeout=60_000)
        logger.info("portal login reached account page")

    async def _handle_challenge(self, page: Any, capabilities: LoginCapabilities) -> None:
        frame = await page.query_selector(CHALLENGE_FRAME_SELECTOR)
        if frame is None:
            logger.debug("no challenge detected")
            return

        metrics.challenges_encountered.add(1)
        source = await frame.get_attribute("src") or ""
        sitekey = parse_qs(urlparse(source).query).get("k", [None])[0]
        if not sitekey:
            raise SessionError("challenge frame has no site key")

        token = await capabilities.solve_challenge({"sitekey": sitekey, "page_url": page.url})
        await page.evaluate("(token) => window.grecaptcha?.callback?.(token)", token)
        await page.wait_for_timeout(2_000)
        logger.info("challenge solved")

    async def _handle_one_time_code(self, page: Any, capabilities: LoginCapabilities) -> None:
        try:
            field = await page.wait_for_selector('input[name="otp"]', timeout=10_000)
        except Exception:  # noqa: BLE001
            field = None
        if field is None:
            logger.debug("no one-time code required")
            return

        code = await capabilities.retrieve_one_time_code(capabilities.one_time_code_window_seconds)
        if not code:
            raise SessionError("one-time code required but none was retrieved")
        await page.fill('input[name="otp"]', code)
        await page.click('button[type="submit"]')
        logger.info("one-time code submitted")


class PortalClaimAction:
    async def perform_claim(self, task: ClaimTask, context: AutomationContext) -> dict[str, Any] | None:
        url = task.payload.get("applicationUrl")
        if not url:
            raise PermanentError(f"item {task.item_id} has no application url")

        page = await _playwright_context(context).new_page()
        try:
            return await self._apply(page, task, url)
        finally:
            try:
                await page.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("failed to close claim page item_id=%s: %s", task.item_id, exc)

    async def _apply(self, page: Any, task: ClaimTask, url: str) -> dict[str, Any]:
        try:
            await page.goto(url, wait_until="networkidle", timeout=30_000)
            await page.wait_for_selector(APPLY_BUTTON_SELECTOR, timeout=10_000)
            await page.click(APPLY_BUTTON_SELECTOR)
            await page.wait_for_selector(FORM_OR_CONFIRMATION_SELECTOR, timeout=15_000)
            if await page.query_selector('[data-test="application-form"]') is not None:
                await self._accept_required_fields(page)
            submit = await page.wait_for_selector(SUBMIT_SELECTOR, timeout=10_000)
            await submit.click()
            await page.wait_for_selector(CONFIRMATION_SELECTOR, timeout=30_000)
        except Exception:
            await self._log_failure_screenshot(page, task)
            raise

        return {"confirmed_url": page.url, "confirmed_at": datetime.now(timezone.utc).isoformat()}

    async def _accept_required_fields(self, page: Any) -> None:
        for checkbox in await page.query_selector_all('input[type="checkbox"][required]'):
            if not await checkbox.is_checked():
                await checkbox.check()
        authorization = await page.query_selector('input[type="radio"][name="workAuthorization"][value="yes"]')
        if authorization is not None:
            await authorization.check()

    async def _log_failure_screenshot(self, page: Any, task: ClaimTask) -> None:
        try:
            screenshot = await page.screenshot(full_page=True)
        except Exception as exc:  # noqa: BLE001
            logger.error("failed to capture screenshot item_id=%s error=%s", task.item_id, exc)
            return
        logger.error("claim failed, screenshot captured item_id=%s screenshot_bytes=%s", task.item_id, len(screenshot))
