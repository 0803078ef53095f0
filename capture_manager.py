#!/usr/bin/env python3

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from config import AppConfig, CONTENT_TYPES, MAX_CAPTURES_BEFORE_RESTART, running_as_add_on
from dithering import build_operations
from models import CaptureRequest, NavigationResult
from navigation import CannotOpenPageError, NavigationSession, wait_until_ready
from raster import RasterBackend

logger = logging.getLogger(__name__)

BLANK_IMAGE_THRESHOLD_BYTES = 1000

BROWSER_ARGS = [
    "--autoplay-policy=user-gesture-required",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-breakpad",
    "--disable-component-update",
    "--disable-default-apps",
    "--disable-dev-shm-usage",
    "--disable-extensions",
    "--disable-gpu",
    "--disable-hang-monitor",
    "--disable-notifications",
    "--disable-renderer-backgrounding",
    "--disable-sync",
    "--hide-scrollbars",
    "--mute-audio",
    "--no-default-browser-check",
    "--no-first-run",
    "--no-sandbox",
]

CRASH_MARKERS = ("target closed", "target page, context or browser has been closed",
                 "session closed", "browser has been closed", "protocol error")


class BrowserCrashError(RuntimeError):
    pass


class CaptureTimeoutError(TimeoutError):
    pass


@dataclass
class CaptureResult:
    image: bytes
    content_type: str
    navigation_ms: int
    capture_ms: int


def _is_crash(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in CRASH_MARKERS)


class CaptureManager:
    """
    Owns one browser tab and its navigation session.

    Captures are serialized with an asyncio lock: navigating, waiting and
    taking the screenshot happen as one unit, and a timeout releases the
    lock before the failure is returned.
    """

    def __init__(self, config: AppConfig, raster: Optional[RasterBackend] = None):
        self.config = config
        self.raster = raster or RasterBackend()
        self.lock = asyncio.Lock()
        self.session: Optional[NavigationSession] = None
        self.capture_count = 0
        self.last_used = 0.0

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._page: Optional[Page] = None
        self._idle_task: Optional[asyncio.Task] = None

    @property
    def is_busy(self) -> bool:
        return self.lock.locked()

    @property
    def is_connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def _launch_browser(self) -> Browser:
        logger.info("Starting browser")
        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=True,
            executable_path=self.config.chromium_executable,
            args=BROWSER_ARGS,
        )

    async def _open_page(self) -> Page:
        if self._browser is None or not self._browser.is_connected():
            try:
                self._browser = await self._launch_browser()
            except PlaywrightError as e:
                raise BrowserCrashError(f"Failed to launch browser: {e}")
        try:
            context = await self._browser.new_context(ignore_https_errors=True)
            return await context.new_page()
        except PlaywrightError as e:
            raise BrowserCrashError(f"Failed to open page: {e}")

    async def _get_page(self) -> Page:
        if self._page is not None and not self._page.is_closed():
            return self._page

        page = await self._open_page()
        page.on("pageerror", lambda error: logger.warning(f"Page error: {error}"))
        page.on("requestfailed", lambda request: logger.debug(f"Request failed: {request.url}"))
        self._page = page

        if self.session is None:
            self.session = NavigationSession(
                page,
                self.config.home_assistant_url,
                access_token=self.config.access_token,
                navigation_timeout_ms=self.config.navigation_timeout_ms,
                cold_start=running_as_add_on(),
            )
        else:
            self.session.reset(page)
        return page

    async def cleanup(self):
        """Close page and browser; the next capture starts from an uninitialized session."""
        page, browser, playwright = self._page, self._browser, self._playwright
        self._page = self._browser = self._playwright = None
        self.capture_count = 0
        if self.session is not None:
            self.session.reset()

        if page is None and browser is None:
            return

        try:
            if page is not None:
                await page.context.close()
        except PlaywrightError as e:
            logger.error(f"Error closing page during cleanup: {e}")
        try:
            if browser is not None:
                await browser.close()
        except PlaywrightError as e:
            logger.error(f"Error closing browser during cleanup: {e}")
        if playwright is not None:
            await playwright.stop()
        logger.info("Browser closed")

    async def shutdown(self):
        if self._idle_task is not None:
            self._idle_task.cancel()
        async with self.lock:
            await self.cleanup()

    def _schedule_idle_cleanup(self):
        if self.config.keep_browser_open:
            return
        if self._idle_task is not None:
            self._idle_task.cancel()
        self._idle_task = asyncio.get_running_loop().create_task(self._cleanup_when_idle())

    async def _cleanup_when_idle(self):
        timeout_s = self.config.browser_timeout_ms / 1000
        await asyncio.sleep(timeout_s)
        async with self.lock:
            if time.monotonic() - self.last_used >= timeout_s:
                logger.debug("Browser idle, closing")
                await self.cleanup()

    async def _navigate(self, request: CaptureRequest) -> NavigationResult:
        page = await self._get_page()
        await page.set_viewport_size({"width": request.viewport.width, "height": request.viewport.height})
        return await self.session.navigate(request)

    async def _capture_locked(self, request: CaptureRequest) -> CaptureResult:
        start = time.monotonic()
        navigation = await self._navigate(request)

        if request.extra_wait:
            logger.debug(f"Explicit wait: {request.extra_wait}ms")
            await asyncio.sleep(request.extra_wait / 1000)
        else:
            if navigation.wait_ms > 0:
                logger.debug(f"Waiting {navigation.wait_ms}ms for the page to settle")
                await asyncio.sleep(navigation.wait_ms / 1000)
            await wait_until_ready(self._page, navigation)
        navigation_ms = int((time.monotonic() - start) * 1000)

        screenshot_args = {"type": "png"}
        if request.crop is not None:
            crop = request.crop
            screenshot_args["clip"] = {"x": crop.x, "y": crop.y, "width": crop.width, "height": crop.height}
        png = await self._page.screenshot(**screenshot_args)

        operations = build_operations(request.format.value, request.rotate, request.invert, request.dithering)
        process_start = time.monotonic()
        loop = asyncio.get_running_loop()
        image = await loop.run_in_executor(None, self.raster.apply, png, operations)
        logger.debug(f"Image processing took {int((time.monotonic() - process_start) * 1000)}ms")

        if len(image) < BLANK_IMAGE_THRESHOLD_BYTES:
            logger.warning(f"Captured image is only {len(image)} bytes, the page may be blank")

        return CaptureResult(
            image=image,
            content_type=CONTENT_TYPES[request.format.value],
            navigation_ms=navigation_ms,
            capture_ms=int((time.monotonic() - start) * 1000),
        )

    async def _run_locked(self, coro_factory, timeout_ms: int):
        async with self.lock:
            try:
                return await asyncio.wait_for(coro_factory(), timeout_ms / 1000)
            except asyncio.TimeoutError:
                raise CaptureTimeoutError(f"Capture did not finish within {timeout_ms}ms")
            except (CannotOpenPageError, BrowserCrashError):
                raise
            except PlaywrightError as e:
                if _is_crash(e):
                    logger.error(f"Browser crashed: {e}")
                    await self.cleanup()
                    raise BrowserCrashError(str(e))
                raise
            finally:
                self.last_used = time.monotonic()

    async def capture(self, request: CaptureRequest) -> CaptureResult:
        """Navigate to the requested page, screenshot it and quantize the image."""
        result = await self._run_locked(lambda: self._capture_locked(request), self.config.capture_timeout_ms)

        self.capture_count += 1
        if self.capture_count >= MAX_CAPTURES_BEFORE_RESTART:
            logger.info(f"Restarting browser after {self.capture_count} captures")
            async with self.lock:
                await self.cleanup()
        else:
            self._schedule_idle_cleanup()

        logger.info(f"Captured {request.target_url or request.page_path} in {result.capture_ms}ms "
                    f"({len(result.image)} bytes)")
        return result

    async def prewarm(self, request: CaptureRequest) -> NavigationResult:
        """Navigate ahead of an expected request so the next capture finds the page ready."""
        result = await self._run_locked(lambda: self._navigate(request), self.config.navigation_timeout_ms)
        self._schedule_idle_cleanup()
        return result
