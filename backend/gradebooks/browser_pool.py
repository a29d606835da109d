"""Process-wide headless Chromium shared by browser-backed exports.

Playwright's async API runs on a dedicated event-loop thread; Django request
and worker threads submit coroutines to it with ``run_coroutine_threadsafe``.
Each render gets its own browser context and page, always closed afterwards.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Awaitable, Callable

from django.conf import settings

from .exceptions import BrowserLaunchError

try:
    from playwright.async_api import async_playwright
except Exception:  # pragma: no cover - handled at runtime
    async_playwright = None

logger = logging.getLogger(__name__)

PageHandler = Callable[[Any], Awaitable[Any]]


class BrowserPool:
    def __init__(self, *, max_pages: int | None = None, launch_args: list[str] | None = None):
        self.max_pages = max(1, int(max_pages or settings.GRADEBOOK_BROWSER_MAX_PAGES))
        self.launch_args = list(
            launch_args if launch_args is not None else settings.GRADEBOOK_BROWSER_LAUNCH_ARGS
        )
        self._thread_lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._playwright = None
        self._browser = None
        self._launch_lock: asyncio.Lock | None = None
        self._semaphore: asyncio.Semaphore | None = None
        self.launch_count = 0

    @staticmethod
    def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        loop.run_forever()

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._thread_lock:
            if self._loop is None or self._thread is None or not self._thread.is_alive():
                loop = asyncio.new_event_loop()
                thread = threading.Thread(
                    target=self._run_loop,
                    args=(loop,),
                    name="gradebook-browser-loop",
                    daemon=True,
                )
                thread.start()
                self._loop = loop
                self._thread = thread
                self._launch_lock = None
                self._semaphore = None
            return self._loop

    def _submit(self, coroutine_factory: Callable[[], Awaitable[Any]], *, timeout: float | None = None) -> Any:
        loop = self._ensure_loop()
        future = asyncio.run_coroutine_threadsafe(coroutine_factory(), loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    async def _get_browser(self):
        if self._launch_lock is None:
            self._launch_lock = asyncio.Lock()
        async with self._launch_lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._browser is not None:
                logger.warning("Headless browser disconnected; relaunching.")
                try:
                    await self._browser.close()
                except Exception as exc:  # pragma: no cover - best effort on a dead browser
                    logger.debug("Closing disconnected browser failed: %s", exc)
                self._browser = None
            if async_playwright is None:
                raise BrowserLaunchError("Playwright is not installed.")
            try:
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=True, args=self.launch_args)
            except Exception as exc:
                logger.error("Headless browser launch failed: %s", exc)
                raise BrowserLaunchError(f"Headless browser could not be launched: {exc}") from exc
            self.launch_count += 1
            logger.info("Headless browser launched (launch #%s).", self.launch_count)
            return self._browser

    def ensure_browser(self) -> None:
        """Launch (or health-check) the browser; raises BrowserLaunchError."""
        self._submit(self._get_browser)

    async def _run_with_page(
        self,
        handler: PageHandler,
        *,
        viewport: dict[str, int],
        device_scale_factor: float,
    ) -> Any:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_pages)
        async with self._semaphore:
            browser = await self._get_browser()
            context = await browser.new_context(viewport=viewport, device_scale_factor=device_scale_factor)
            try:
                page = await context.new_page()
                page.set_default_navigation_timeout(settings.GRADEBOOK_PDF_NAVIGATION_TIMEOUT_MS)
                return await handler(page)
            finally:
                await context.close()

    def with_page(
        self,
        handler: PageHandler,
        *,
        viewport: dict[str, int],
        device_scale_factor: float = 1.0,
        timeout: float | None = None,
    ) -> Any:
        return self._submit(
            lambda: self._run_with_page(
                handler,
                viewport=viewport,
                device_scale_factor=device_scale_factor,
            ),
            timeout=timeout,
        )

    async def _shutdown(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            finally:
                self._browser = None
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            finally:
                self._playwright = None

    def close(self) -> None:
        with self._thread_lock:
            loop = self._loop
            thread = self._thread
        if loop is None or thread is None or not thread.is_alive():
            return
        try:
            asyncio.run_coroutine_threadsafe(self._shutdown(), loop).result(timeout=10)
        finally:
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout=5)
            with self._thread_lock:
                self._loop = None
                self._thread = None


_pool: BrowserPool | None = None
_pool_lock = threading.Lock()


def get_browser_pool() -> BrowserPool:
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = BrowserPool()
        return _pool
