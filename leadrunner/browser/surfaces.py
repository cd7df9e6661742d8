#!/usr/bin/env python3
"""
Rendering surface control over Playwright.

A surface is a page and a container is the browser context that owns it. Both
are addressed by their CDP ids (target id / browser context id) instead of
Python object identity, so ids persisted by the executor stay meaningful for a
browser attached over CDP after the orchestrator restarts.

Example:
    surfaces = PlaywrightSurfaceController(config)
    await surfaces.start()

    container_id, surface_id = await surfaces.open_container("https://example.com")
    await surfaces.navigate(surface_id, "https://example.com/other")
    await surfaces.close_container(container_id)
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from leadrunner.api.config import AppConfig
from leadrunner.api.logging_config import log_surface_event
from leadrunner.core.error_handler import AgentError, SurfaceError, SurfaceLost

logger = logging.getLogger(__name__)

ClosedCallback = Callable[[str], Union[None, Awaitable[None]]]


class PlaywrightSurfaceController:
    def __init__(self, config: AppConfig):
        self.config = config
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self._pages: Dict[str, Page] = {}
        self._contexts: Dict[str, BrowserContext] = {}
        self._closing: Set[str] = set()
        self._callbacks: List[ClosedCallback] = []
        self._tasks: Set[asyncio.Task] = set()
        self._start_lock = asyncio.Lock()

    @property
    def attached(self) -> bool:
        return bool(self.config.BROWSER_CDP_URL)

    async def start(self):
        """Launch Chromium, or attach to a running one when a CDP endpoint is configured."""
        async with self._start_lock:
            if self.browser is not None and self.browser.is_connected():
                return
            if self.playwright is None:
                self.playwright = await async_playwright().start()
            if self.attached:
                self.browser = await self.playwright.chromium.connect_over_cdp(self.config.BROWSER_CDP_URL)
                logger.info(f"Attached to browser at {self.config.BROWSER_CDP_URL}")
                await self._discover()
            else:
                self.browser = await self.playwright.chromium.launch(headless=self.config.BROWSER_HEADLESS)
                logger.info(f"Launched Chromium (headless={self.config.BROWSER_HEADLESS})")

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        if self.browser is not None:
            try:
                await self.browser.close()
            except PlaywrightError as e:
                logger.debug(f"Browser close failed: {e}")
        if self.playwright is not None:
            await self.playwright.stop()
        self.browser = None
        self.playwright = None
        self._pages.clear()
        self._contexts.clear()
        logger.info("Browser closed")

    # ============== Id bookkeeping ==============

    async def _target_info(self, page: Page) -> Dict[str, Any]:
        cdp = await page.context.new_cdp_session(page)
        try:
            info = await cdp.send("Target.getTargetInfo")
        finally:
            await cdp.detach()
        return info["targetInfo"]

    async def _register(self, page: Page) -> Tuple[str, Optional[str]]:
        info = await self._target_info(page)
        surface_id = info["targetId"]
        container_id = info.get("browserContextId")

        self._pages[surface_id] = page
        if container_id and container_id not in self._contexts:
            self._contexts[container_id] = page.context
        page.on("close", lambda _page: self._handle_closed(surface_id))
        log_surface_event(surface_id, "registered", f"container={container_id}")
        return surface_id, container_id

    async def _discover(self):
        """Register pages of an attached browser that this process has not seen yet."""
        if self.browser is None:
            return
        known = set(self._pages.values())
        for context in self.browser.contexts:
            for page in context.pages:
                if page in known or page.is_closed():
                    continue
                try:
                    await self._register(page)
                except PlaywrightError as e:
                    logger.debug(f"Could not register existing page: {e}")

    def _handle_closed(self, surface_id: str):
        self._pages.pop(surface_id, None)
        if surface_id in self._closing:
            self._closing.discard(surface_id)
            return
        log_surface_event(surface_id, "closed externally")
        for callback in list(self._callbacks):
            try:
                result = callback(surface_id)
            except Exception as e:
                logger.error(f"Surface-closed callback failed: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    def on_closed(self, callback: ClosedCallback):
        """Call ``callback(surface_id)`` when a surface is closed by anyone but us."""
        self._callbacks.append(callback)

    # ============== Surfaces ==============

    async def _new_context(self) -> BrowserContext:
        await self.start()
        kwargs: Dict[str, Any] = {
            "viewport": {"width": self.config.WINDOW_WIDTH, "height": self.config.WINDOW_HEIGHT},
        }
        if self.config.BROWSER_STORAGE_STATE:
            kwargs["storage_state"] = self.config.BROWSER_STORAGE_STATE
        context = await self.browser.new_context(**kwargs)
        context.set_default_timeout(self.config.BROWSER_TIMEOUT_MS)
        return context

    async def _default_context(self) -> BrowserContext:
        await self.start()
        if self.browser.contexts:
            return self.browser.contexts[0]
        return await self._new_context()

    async def open_container(self, url: str) -> Tuple[str, str]:
        """Open a new container with one surface at ``url``; returns (container_id, surface_id)."""
        try:
            context = await self._new_context()
            page = await context.new_page()
            surface_id, container_id = await self._register(page)
        except PlaywrightError as e:
            raise SurfaceError(f"Could not open container: {e}") from e
        try:
            await self.navigate(surface_id, url)
        except SurfaceError:
            await self.close_container(container_id)
            raise
        return container_id, surface_id

    async def open_surface(self, url: str, container_id: Optional[str] = None, active: bool = True) -> str:
        try:
            if container_id:
                context = self._contexts.get(container_id)
                if context is None:
                    raise SurfaceLost(f"Container {container_id} no longer exists")
            else:
                context = await self._default_context()
            page = await context.new_page()
            surface_id, _ = await self._register(page)
            if active:
                await page.bring_to_front()
        except PlaywrightError as e:
            raise SurfaceError(f"Could not open surface: {e}") from e
        await self.navigate(surface_id, url)
        return surface_id

    async def page_for(self, surface_id: str) -> Page:
        page = self._pages.get(surface_id)
        if page is None and self.attached:
            await self._discover()
            page = self._pages.get(surface_id)
        if page is None or page.is_closed():
            raise SurfaceLost(f"Surface {surface_id} no longer exists")
        return page

    async def surface_exists(self, surface_id: Optional[str]) -> bool:
        if not surface_id:
            return False
        try:
            await self.page_for(surface_id)
        except SurfaceLost:
            return False
        return True

    async def navigate(self, surface_id: str, url: str, active: bool = False):
        """Load ``url`` and wait for the load event."""
        page = await self.page_for(surface_id)
        log_surface_event(surface_id, "navigate", url)
        try:
            if active:
                await page.bring_to_front()
            await page.goto(url, wait_until="load", timeout=self.config.BROWSER_TIMEOUT_MS)
        except PlaywrightError as e:
            if page.is_closed():
                raise SurfaceLost(f"Surface {surface_id} closed while loading {url}") from e
            raise SurfaceError(f"Navigation to {url} failed: {e}") from e

    async def close_surface(self, surface_id: Optional[str]):
        if not surface_id:
            return
        page = self._pages.pop(surface_id, None)
        if page is None or page.is_closed():
            return
        self._closing.add(surface_id)
        try:
            await page.close()
        except PlaywrightError as e:
            logger.debug(f"Could not close surface {surface_id} (might already be closed): {e}")
        log_surface_event(surface_id, "closed")

    async def close_container(self, container_id: Optional[str]):
        if not container_id:
            return
        context = self._contexts.pop(container_id, None)
        if context is None:
            return
        for surface_id, page in list(self._pages.items()):
            if page.context is context:
                self._closing.add(surface_id)
        try:
            await context.close()
        except PlaywrightError as e:
            logger.debug(f"Could not close container {container_id} (might already be closed): {e}")
        logger.info(f"Container closed: {container_id}")

    async def inject_agent(self, surface_id: str) -> bool:
        """Make sure the page agent is present on the surface; returns True when it was injected."""
        page = await self.page_for(surface_id)
        try:
            present = await page.evaluate("name => Boolean(window[name])", self.config.AGENT_GLOBAL)
            if present:
                return False
            if not self.config.AGENT_SCRIPT_PATH:
                raise AgentError("Page agent is not loaded and AGENT_SCRIPT_PATH is not set")
            await page.add_script_tag(path=self.config.AGENT_SCRIPT_PATH)
        except PlaywrightError as e:
            raise AgentError(f"Could not inject page agent: {e}") from e
        log_surface_event(surface_id, "agent injected")
        return True
