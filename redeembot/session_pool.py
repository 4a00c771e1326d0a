"""Bounded pool of isolated browser contexts.

One browser is launched per run; every attempt gets its own fresh context
(cookie jar) which is torn down when it is released.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Protocol, Set

logger = logging.getLogger("redeembot.pool")


class PoolInitError(RuntimeError):
    """The browser engine could not be started."""


class PoolClosedError(RuntimeError):
    pass


class BrowserEngine(Protocol):
    async def start(self) -> None: ...

    async def new_context(self) -> Any: ...

    async def close(self) -> None: ...


class PlaywrightEngine:
    """Chromium via Playwright's async API."""

    def __init__(self, headless: bool = True, navigation_timeout_ms: int = 30_000):
        self.headless = headless
        self.navigation_timeout_ms = navigation_timeout_ms
        self._pw = None
        self._browser = None

    async def start(self) -> None:
        from playwright.async_api import async_playwright

        self._pw = await async_playwright().start()
        try:
            self._browser = await self._pw.chromium.launch(
                headless=self.headless,
                args=["--disable-blink-features=AutomationControlled"],
            )
        except Exception:
            await self._pw.stop()
            self._pw = None
            raise

    async def new_context(self) -> Any:
        if self._browser is None:
            raise PoolClosedError("browser not started")
        ctx = await self._browser.new_context()
        ctx.set_default_timeout(self.navigation_timeout_ms)
        return ctx

    async def close(self) -> None:
        browser, pw = self._browser, self._pw
        self._browser = None
        self._pw = None
        try:
            if browser is not None:
                await browser.close()
        finally:
            if pw is not None:
                await pw.stop()


class ExecutionContext:
    """A lent browser context. Valid until released."""

    _ids = itertools.count(1)

    def __init__(self, raw: Any):
        self.id = next(self._ids)
        self.raw = raw

    async def new_page(self) -> Any:
        return await self.raw.new_page()

    def __repr__(self) -> str:
        return f"<ExecutionContext #{self.id}>"


class SessionPool:
    def __init__(self, engine: BrowserEngine, capacity: int = 5):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.engine = engine
        self.capacity = capacity
        # asyncio.Semaphore wakes waiters in FIFO order.
        self._slots = asyncio.Semaphore(capacity)
        self._lent: Set[ExecutionContext] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._started = False
        self._closed = False

        self.peak_in_use = 0
        self.acquired_total = 0
        self.released_total = 0

    @property
    def in_use(self) -> int:
        return len(self._lent)

    async def start(self) -> None:
        """Launch the engine. Must be called once before acquire()."""
        if self._started:
            return
        try:
            await self.engine.start()
        except Exception as e:
            logger.exception("Browser engine failed to start")
            self._closed = True
            raise PoolInitError(str(e) or e.__class__.__name__) from e
        self._started = True
        logger.info("Session pool started (capacity=%d)", self.capacity)

    async def acquire(self) -> ExecutionContext:
        if self._closed:
            raise PoolClosedError("pool is closed")
        if not self._started:
            raise PoolClosedError("pool not started")

        await self._slots.acquire()
        try:
            if self._closed:
                raise PoolClosedError("pool is closed")
            raw = await self.engine.new_context()
        except BaseException:
            self._slots.release()
            raise

        ctx = ExecutionContext(raw)
        self._lent.add(ctx)
        self._idle.clear()
        self.acquired_total += 1
        self.peak_in_use = max(self.peak_in_use, len(self._lent))
        logger.debug("acquired %r (in_use=%d)", ctx, len(self._lent))
        return ctx

    async def release(self, ctx: ExecutionContext) -> None:
        """Tear down ctx and free its slot. Releasing twice is a no-op."""
        if ctx not in self._lent:
            return
        self._lent.discard(ctx)
        try:
            await ctx.raw.close()
        except Exception:
            logger.warning("Failed to close %r", ctx, exc_info=True)
        finally:
            self.released_total += 1
            self._slots.release()
            if not self._lent:
                self._idle.set()
            logger.debug("released %r (in_use=%d)", ctx, len(self._lent))

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[ExecutionContext]:
        ctx = await self.acquire()
        try:
            yield ctx
        finally:
            await self.release(ctx)

    async def drain(self) -> None:
        """Wait for every lent context, then close the engine (once)."""
        await self._idle.wait()
        if not self._started:
            self._closed = True
            return
        self._started = False
        self._closed = True
        try:
            await self.engine.close()
        except Exception:
            logger.exception("Failed to close browser engine")
        logger.info(
            "Session pool drained (acquired=%d released=%d peak=%d)",
            self.acquired_total, self.released_total, self.peak_in_use,
        )

    async def __aenter__(self) -> "SessionPool":
        await self.start()
        return self

    async def __aexit__(self, *exc: Optional[BaseException]) -> None:
        await self.drain()
