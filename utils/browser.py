"""Headless page execution for queued jobs.

Each job gets its own Chromium instance launched through Playwright. The
page is loaded until the network has been idle, given a grace period for
late scripts, and torn down again. Pages are allowed to close themselves
(``window.close()``); pages that stay open get one more fallback wait and
then have their viewport stretched to the rendered content.

Install the browser binary once with::

    playwright install chromium
"""

import asyncio
import os
import time
import traceback
from contextlib import asynccontextmanager
from functools import partial
from typing import AsyncIterator, Callable, Dict, List, Optional

from loguru import logger
from playwright.async_api import async_playwright

from config import settings
from models import ExecutionResult

MEASURE_CONTENT_JS = """() => {
    const doc = document.documentElement;
    const body = document.body;
    return {
        width: Math.max(doc.scrollWidth, doc.offsetWidth, body ? body.scrollWidth : 0),
        height: Math.max(doc.scrollHeight, doc.offsetHeight, body ? body.scrollHeight : 0),
    };
}"""


class PlaywrightSession:
    """A single page inside a fresh browser, owned by one job"""

    def __init__(self, page, download_dir: str):
        self.page = page
        self.download_dir = download_dir
        self._downloads: List[asyncio.Future] = []

    def attach_handlers(self):
        self.page.on("dialog", self._accept_dialog)
        self.page.on("download", self._on_download)

    async def _accept_dialog(self, dialog):
        logger.info(f"Accepting {dialog.type} dialog: {dialog.message!r}")
        try:
            await dialog.accept()
        except Exception as e:
            logger.warning(f"Could not accept dialog: {e}")

    def _on_download(self, download):
        self._downloads.append(asyncio.ensure_future(self._save_download(download)))

    async def _save_download(self, download):
        os.makedirs(self.download_dir, exist_ok=True)
        path = os.path.join(self.download_dir, download.suggested_filename)
        await download.save_as(path)
        logger.info(f"Saved download to {path}")

    async def navigate(self, url: str, timeout: float):
        await self.page.goto(url, wait_until="networkidle", timeout=timeout * 1000)

    def is_closed(self) -> bool:
        return self.page.is_closed()

    async def measure_content(self) -> Dict[str, int]:
        return await self.page.evaluate(MEASURE_CONTENT_JS)

    async def resize(self, width: int, height: int):
        await self.page.set_viewport_size({"width": width, "height": height})

    async def finish_downloads(self, timeout: float):
        """Wait up to ``timeout`` seconds for downloads; cancel the rest"""
        if not self._downloads:
            return
        done, pending = await asyncio.wait(self._downloads, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} download(s) still running after {timeout}s")
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning(f"Download failed: {task.exception()}")


@asynccontextmanager
async def open_playwright_session(
    executable_path: Optional[str],
    args: List[str],
    download_dir: str,
    viewport: Dict[str, int],
    download_timeout: float,
) -> AsyncIterator[PlaywrightSession]:
    """Launch a browser for one job and always close it afterwards"""
    async with async_playwright() as p:
        browser = await p.chromium.launch(
            headless=True,
            executable_path=executable_path,
            args=args,
        )
        session = None
        try:
            context = await browser.new_context(accept_downloads=True, viewport=viewport)
            page = await context.new_page()
            session = PlaywrightSession(page, download_dir)
            session.attach_handlers()
            yield session
        finally:
            try:
                if session is not None:
                    await session.finish_downloads(download_timeout)
            finally:
                try:
                    await browser.close()
                except Exception as e:
                    logger.error(f"Error closing browser: {e}")


def format_diagnostics(exc: BaseException) -> str:
    """Failure message followed by the traceback"""
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return f"{type(exc).__name__}: {exc}\n\n{trace}"


class PageExecutor:
    def __init__(
        self,
        open_session: Optional[Callable] = None,
        navigation_timeout: float = settings.navigation_timeout,
        grace_period: float = settings.grace_period,
        fallback_period: float = settings.fallback_period,
        max_width: int = settings.max_viewport_width,
        max_height: int = settings.max_viewport_height,
    ):
        self.open_session = open_session or partial(
            open_playwright_session,
            executable_path=settings.browser_executable_path,
            args=list(settings.browser_args),
            download_dir=settings.download_dir,
            download_timeout=settings.download_timeout,
            viewport={"width": settings.viewport_width, "height": settings.viewport_height},
        )
        self.navigation_timeout = navigation_timeout
        self.grace_period = grace_period
        self.fallback_period = fallback_period
        self.max_width = max_width
        self.max_height = max_height

    async def execute(self, url: str) -> ExecutionResult:
        """Render ``url`` to completion; never raises for page failures"""
        start = time.monotonic()
        try:
            async with self.open_session() as session:
                await self._run(session, url)
        except Exception as e:
            logger.error(f"Page execution failed for {url} after {time.monotonic() - start:.2f}s: {e}")
            return ExecutionResult.failed(format_diagnostics(e))

        logger.info(f"Page execution for {url} completed in {time.monotonic() - start:.2f}s")
        return ExecutionResult.ok()

    async def _run(self, session, url: str):
        logger.info(f"Navigating to {url} (timeout {self.navigation_timeout:.0f}s)")
        nav_start = time.monotonic()
        await session.navigate(url, self.navigation_timeout)
        logger.info(f"Network idle after {time.monotonic() - nav_start:.2f}s, "
                    f"waiting {self.grace_period}s for async operations")

        await asyncio.sleep(self.grace_period)
        if session.is_closed():
            logger.info("Page closed itself during grace period")
            return

        logger.info(f"Page still open, waiting fallback {self.fallback_period}s")
        await asyncio.sleep(self.fallback_period)
        if session.is_closed():
            logger.info("Page closed itself during fallback period")
            return

        await self._fit_viewport(session)

    async def _fit_viewport(self, session):
        try:
            size = await session.measure_content()
            width = max(1, min(int(size["width"]), self.max_width))
            height = max(1, min(int(size["height"]), self.max_height))
            await session.resize(width, height)
            logger.info(f"Viewport resized to {width}x{height}")
        except Exception as e:
            logger.warning(f"Could not fit viewport to content, keeping previous size: {e}")
