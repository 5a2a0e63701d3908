from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional

from playwright.async_api import BrowserContext, Page, Response, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .errors import NavigationTimeoutError


logger = logging.getLogger(__name__)


def parse_storage_state(blob: Optional[str]) -> Optional[dict]:
    """
    Return the Playwright storage_state dict stored in `blob`, or None when it is empty or not a storage state.
    """
    if not blob:
        return None
    try:
        data = json.loads(blob)
    except (TypeError, ValueError):
        return None
    if isinstance(data, dict) and ("cookies" in data or "origins" in data):
        return data
    return None


@dataclass(frozen=True)
class CapturedResponse:
    url: str
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    read_body: Optional[Callable[[], Awaitable[bytes]]] = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> Optional[str]:
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                return v
        return None

    async def body(self) -> bytes:
        if self.read_body is None:
            return b""
        return await self.read_body()


class ResponseWaiter:
    """
    Captures the first network response whose URL satisfies `predicate`.

    The listener is registered in the constructor, so creating the waiter *before* triggering navigation
    guarantees the response cannot slip past unobserved.
    """

    def __init__(self, page: Page, predicate: Callable[[str], bool]) -> None:
        self._page = page
        self._predicate = predicate
        self._future: asyncio.Future[Response] = asyncio.get_running_loop().create_future()
        self._page.on("response", self._on_response)

    def _on_response(self, response: Response) -> None:
        if self._future.done():
            return
        try:
            matched = self._predicate(response.url)
        except Exception:
            logger.debug("Response predicate failed (url=%s)", response.url, exc_info=True)
            return
        if matched:
            self._future.set_result(response)
            self.cancel()

    async def wait(self, *, timeout: float) -> CapturedResponse:
        try:
            response = await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout)
        except asyncio.TimeoutError:
            raise NavigationTimeoutError(f"No matching network response within {timeout:g}s.") from None
        finally:
            self.cancel()
        return CapturedResponse(
            url=response.url,
            status=response.status,
            headers=dict(response.headers),
            read_body=response.body,
        )

    def cancel(self) -> None:
        try:
            self._page.remove_listener("response", self._on_response)
        except Exception:
            logger.debug("Failed to detach response listener.", exc_info=True)


class PlaywrightSession:
    """
    One browser context + page. Every wait takes an explicit timeout in seconds; Playwright timeouts surface as
    NavigationTimeoutError.
    """

    def __init__(self, page: Page, context: BrowserContext) -> None:
        self._page = page
        self._context = context

    @property
    def url(self) -> str:
        return self._page.url or ""

    async def goto(self, url: str, *, timeout: float, wait_until: str = "domcontentloaded") -> None:
        try:
            await self._page.goto(url, wait_until=wait_until, timeout=timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(f"Navigation to {url} timed out after {timeout:g}s.") from e

    async def wait_for_url_containing(self, marker: str, *, timeout: float) -> None:
        try:
            await self._page.wait_for_url(lambda u: marker in u, timeout=timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(f"URL did not reach {marker!r} within {timeout:g}s.") from e

    async def wait_for_selector(self, selector: str, *, timeout: float) -> None:
        try:
            await self._page.wait_for_selector(selector, state="visible", timeout=timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(f"{selector!r} did not become visible within {timeout:g}s.") from e

    async def fill(self, selector: str, value: str) -> None:
        await self._page.fill(selector, value)

    async def fill_each(self, selector: str, values: str) -> int:
        """
        Fill one character per matching input (split OTP boxes). A single matching input gets the whole value.
        Returns the number of inputs found.
        """
        inputs = await self._page.query_selector_all(selector)
        if len(inputs) == 1:
            await inputs[0].fill(values)
        else:
            for el, ch in zip(inputs, values):
                await el.fill(ch)
        return len(inputs)

    async def click(self, selector: str) -> None:
        await self._page.click(selector)

    def expect_response(self, predicate: Callable[[str], bool]) -> ResponseWaiter:
        return ResponseWaiter(self._page, predicate)

    async def storage_state(self) -> str:
        return json.dumps(await self._context.storage_state())

    async def screenshot(self, path: str) -> None:
        await self._page.screenshot(path=path, full_page=True)


class PlaywrightDriver:
    """
    Opens isolated Chromium sessions. Each `session()` owns its own browser and always closes it.
    """

    def __init__(self, *, headless: bool = True, slow_mo_ms: int = 0) -> None:
        self.headless = headless
        self.slow_mo_ms = int(slow_mo_ms or 0)

    async def _launch(self, p):
        # Prefer Playwright's bundled Chromium, but fall back to a system-installed browser if the
        # cache doesn't have Playwright browsers available.
        try:
            return await p.chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms, args=["--no-sandbox"])
        except Exception as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise
            logger.warning(
                "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
                msg,
            )
        try:
            return await p.chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms, channel="chrome")
        except Exception:
            return await p.chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms, channel="msedge")

    @asynccontextmanager
    async def session(self, *, storage_state: Optional[str] = None) -> AsyncIterator[PlaywrightSession]:
        ctx_kwargs: dict = {"color_scheme": "light"}
        if storage_state is not None:
            state = parse_storage_state(storage_state)
            if state is None:
                raise ValueError("Stored session state is not a valid Playwright storage_state document.")
            ctx_kwargs["storage_state"] = state

        async with async_playwright() as p:
            browser = await self._launch(p)
            try:
                context = await browser.new_context(**ctx_kwargs)
                page = await context.new_page()
                yield PlaywrightSession(page, context)
            finally:
                try:
                    await browser.close()
                except Exception:
                    logger.debug("Browser close failed.", exc_info=True)


async def race_first(waits: dict[str, Awaitable[object]], *, timeout: float) -> str:
    """
    Run all `waits` concurrently and return the name of the first one to settle.

    If that first settlement is an error, the error is raised. The others are cancelled and abandoned;
    their outcome is never awaited or reported. Nothing settling within `timeout` raises NavigationTimeoutError.
    """
    tasks = {asyncio.ensure_future(aw): name for name, aw in waits.items()}
    try:
        done, _ = await asyncio.wait(tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for t in tasks:
            if not t.done():
                t.cancel()
            t.add_done_callback(_discard_outcome)

    if not done:
        raise NavigationTimeoutError(f"None of {sorted(waits)} happened within {timeout:g}s.")

    # Several waits may settle in the same loop tick; a success beats a failure then.
    ordered = sorted(done, key=lambda t: t.cancelled() or t.exception() is not None)
    first = ordered[0]
    if first.cancelled():
        raise asyncio.CancelledError()
    err = first.exception()
    if err is not None:
        raise err
    return tasks[first]


def _discard_outcome(task: "asyncio.Future[object]") -> None:
    if not task.cancelled():
        task.exception()
