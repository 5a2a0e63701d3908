from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .challenge import ChallengeRelay
from .config import SiteConfig, TimeoutsConfig
from .diagnostics import DiagnosticsRecorder
from .driver import race_first
from .errors import ConfigIncompleteError, InvalidStateError, NavigationTimeoutError, RelayError
from .models import FlowRecord, FlowState
from .registry import SessionRegistry
from .selectors import SiteSelectors
from .store import ConfigStore


logger = logging.getLogger(__name__)


class LoginOrchestrator:
    """
    Drives one tenant's interactive login in the background and reports progress only through the registry.

    `start()` returns right away; callers poll `SessionRegistry.get()` for the outcome.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        relay: ChallengeRelay,
        store: ConfigStore,
        driver,
        site: SiteConfig,
        timeouts: TimeoutsConfig,
        selectors: Optional[SiteSelectors] = None,
        diagnostics: Optional[DiagnosticsRecorder] = None,
    ) -> None:
        self.registry = registry
        self.relay = relay
        self.store = store
        self.driver = driver
        self.site = site
        self.timeouts = timeouts
        self.selectors = selectors or SiteSelectors()
        self.diagnostics = diagnostics
        self._tasks: set[asyncio.Task] = set()
        # Latest login task per tenant; a new run waits for the previous one to release its browser.
        self._runs: dict[str, asyncio.Task] = {}

    def pending_tasks(self) -> list[asyncio.Task]:
        return [t for t in self._tasks if not t.done()]

    def cancel(self, tenant_id: str) -> bool:
        """Cancel the tenant's login task, if one is still running. Returns True when a task was cancelled."""
        task = self._runs.get(tenant_id)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("Cancelling login task (tenant=%s)", tenant_id)
        return True

    def start(self, tenant_id: str, credential_secret: str, callback_url: str) -> FlowRecord:
        """
        Open a login run and schedule it on the running event loop.

        Raises ConfigIncompleteError or AlreadyRunningError without touching anything.
        """
        tenant_id = (tenant_id or "").strip()
        if not tenant_id or not credential_secret or not (callback_url or "").strip():
            raise ConfigIncompleteError("Email, password and target webhook URL are all required.")

        run = self.registry.begin(tenant_id)
        try:
            # Persist first so a failed login still leaves a usable configuration behind.
            self.store.save_config(tenant_id, credential_secret=credential_secret, callback_url=callback_url.strip())
        except Exception as e:
            logger.exception("Failed to save configuration (tenant=%s)", tenant_id)
            self.registry.set_state(tenant_id, FlowState.FAILED, f"Could not save configuration: {e}", run=run)
            raise

        previous = self._runs.get(tenant_id)
        if previous is not None and previous.done():
            previous = None
        if previous is not None:
            # begin() succeeded, so the old run was reset or already finished; it must not keep its browser.
            previous.cancel()

        task = asyncio.get_running_loop().create_task(
            self.run(tenant_id, credential_secret, run=run, previous=previous),
            name=f"login:{tenant_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._runs[tenant_id] = task
        task.add_done_callback(lambda t, tenant=tenant_id: self._forget(tenant, t))
        logger.info("Starting interactive login process (tenant=%s)", tenant_id)
        return self.registry.get(tenant_id)

    def _forget(self, tenant_id: str, task: asyncio.Task) -> None:
        if self._runs.get(tenant_id) is task:
            del self._runs[tenant_id]

    async def run(
        self,
        tenant_id: str,
        credential_secret: str,
        *,
        run: int,
        previous: Optional[asyncio.Task] = None,
    ) -> None:
        """The whole login sequence. Never raises; the outcome lands in the registry."""
        try:
            if previous is not None:
                logger.info("Waiting for the previous login run to close its browser (tenant=%s)", tenant_id)
                await asyncio.wait({previous})
            async with self.driver.session() as session:
                try:
                    await self._login(session, tenant_id, credential_secret, run=run)
                except Exception as e:
                    self._fail(tenant_id, e, run=run)
                    if self.diagnostics is not None:
                        await self.diagnostics.capture(session, tenant_id=tenant_id, prefix="login_error")
                finally:
                    logger.info("Closing browser (tenant=%s)", tenant_id)
        except asyncio.CancelledError:
            self._record_failure(tenant_id, "Login was cancelled.", run=run)
            raise
        except Exception as e:
            # Launch/close failures of the automation session itself.
            self._fail(tenant_id, e, run=run)

    def _fail(self, tenant_id: str, error: BaseException, *, run: int) -> None:
        msg = str(error) or error.__class__.__name__
        if isinstance(error, RelayError):
            logger.error("Error during login process (tenant=%s): %s", tenant_id, msg)
        else:
            logger.exception("Error during login process (tenant=%s): %s", tenant_id, msg, exc_info=error)
        self._record_failure(tenant_id, msg, run=run)

    def _record_failure(self, tenant_id: str, msg: str, *, run: int) -> None:
        try:
            self.registry.set_state(tenant_id, FlowState.FAILED, msg, run=run)
        except InvalidStateError:
            # Already Complete (e.g. the browser failed to close after the session was saved).
            logger.warning("Not marking finished login as failed (tenant=%s): %s", tenant_id, msg)

    async def _login(self, session, tenant_id: str, credential_secret: str, *, run: int) -> None:
        marker = self.site.authenticated_marker
        nav_timeout = self.timeouts.navigation

        logger.info("Navigating to login page %s (tenant=%s)", self.site.login_url, tenant_id)
        await session.goto(self.site.login_url, timeout=nav_timeout)

        if await self._already_authenticated(session):
            logger.info("Already logged in; skipping credential submission (tenant=%s)", tenant_id)
        else:
            logger.info("Filling email and password (tenant=%s)", tenant_id)
            await session.fill(self.selectors.email_input, tenant_id)
            await session.fill(self.selectors.password_input, credential_secret)
            await session.click(self.selectors.submit_button)

            outcome = await race_first(
                {
                    "dashboard": session.wait_for_url_containing(marker, timeout=nav_timeout),
                    "challenge": session.wait_for_selector(self.selectors.challenge_input, timeout=nav_timeout),
                },
                timeout=nav_timeout,
            )
            if outcome == "challenge":
                await self._complete_challenge(session, tenant_id, run=run)
            else:
                logger.info("Login successful without 2FA (tenant=%s)", tenant_id)

        if self.timeouts.settle_delay > 0:
            logger.info("Waiting %.1fs for the session to stabilize (tenant=%s)", self.timeouts.settle_delay, tenant_id)
            await asyncio.sleep(self.timeouts.settle_delay)

        state = await session.storage_state()
        if not self.registry.is_current(tenant_id, run):
            logger.warning("Login flow was reset before the session could be saved; discarding it (tenant=%s)", tenant_id)
            return
        self.store.save_session(tenant_id, state)
        logger.info("Session state saved (tenant=%s)", tenant_id)
        self.registry.set_state(tenant_id, FlowState.COMPLETE, run=run)

    async def _already_authenticated(self, session) -> bool:
        try:
            await session.wait_for_url_containing(
                self.site.authenticated_marker,
                timeout=self.timeouts.already_authenticated_probe,
            )
        except NavigationTimeoutError:
            return False
        return True

    async def _complete_challenge(self, session, tenant_id: str, *, run: int) -> None:
        logger.info("2FA is required; waiting for the code from the user (tenant=%s)", tenant_id)
        if not self.registry.set_state(tenant_id, FlowState.AWAITING_CHALLENGE, run=run):
            raise RuntimeError("Login flow was reset while starting the 2FA step.")

        code = await self.relay.await_code(tenant_id)

        logger.info("Code received; submitting (tenant=%s)", tenant_id)
        filled = await session.fill_each(self.selectors.challenge_input, code)
        if filled == 0:
            raise RuntimeError("OTP input fields not found on the page.")

        await session.wait_for_url_containing(self.site.authenticated_marker, timeout=self.timeouts.navigation)
        logger.info("Logged in with 2FA code (tenant=%s)", tenant_id)
