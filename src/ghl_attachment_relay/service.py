from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from .attachments import AttachmentInterceptor, CallbackForwarder
from .challenge import ChallengeRelay
from .config import AppConfig
from .diagnostics import DiagnosticsRecorder
from .driver import PlaywrightDriver
from .errors import ConfigIncompleteError
from .logging_config import RecentLogBuffer
from .login import LoginOrchestrator
from .models import AttachmentJob, SessionStatus
from .registry import SessionRegistry
from .store import ConfigStore


logger = logging.getLogger(__name__)


class AutomationService:
    """
    The operations offered to the HTTP layer. Build one per process with `build_service()`.

    Login and attachment work runs as background tasks on the event loop that calls `start_login()` /
    `enqueue_attachment_job()`; their outcome is observable through `get_flow_status()` and the logs.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        store: ConfigStore,
        registry: SessionRegistry,
        relay: ChallengeRelay,
        login: LoginOrchestrator,
        interceptor: AttachmentInterceptor,
        driver,
        diagnostics: DiagnosticsRecorder,
        log_buffer: Optional[RecentLogBuffer] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.registry = registry
        self.relay = relay
        self.login = login
        self.interceptor = interceptor
        self.driver = driver
        self.diagnostics = diagnostics
        self.log_buffer = log_buffer

    def start_login(self, tenant_id: str, credential_secret: str, callback_url: str) -> dict:
        return self.login.start(tenant_id, credential_secret, callback_url).as_status()

    def submit_challenge_code(self, tenant_id: str, code: str) -> bool:
        return self.relay.submit_code(tenant_id, code)

    def get_flow_status(self, tenant_id: str) -> dict:
        return self.registry.get(tenant_id).as_status()

    def reset_flow(self, tenant_id: str) -> dict:
        """Back to Idle, pending challenge rejected, login browser closed, saved session deleted."""
        self.registry.reset(tenant_id)
        self.login.cancel(tenant_id)
        self.store.delete_session(tenant_id)
        logger.info("Session deleted (tenant=%s)", tenant_id)
        return self.get_flow_status(tenant_id)

    def enqueue_attachment_job(self, job: AttachmentJob) -> None:
        self.interceptor.enqueue(job)

    def save_tenant_config(self, tenant_id: str, credential_secret: str, callback_url: str) -> None:
        """Store credentials and callback URL without logging in; a saved session is kept."""
        tenant_id = (tenant_id or "").strip()
        if not tenant_id:
            raise ConfigIncompleteError("Email is required.")
        self.store.save_config(tenant_id, credential_secret=credential_secret, callback_url=callback_url.strip())
        logger.info("Configuration saved (tenant=%s)", tenant_id)

    async def get_session_status(self, tenant_id: str) -> SessionStatus:
        cfg = self.store.get(tenant_id)
        if cfg is None or not cfg.has_session:
            logger.info("Session not found (tenant=%s)", tenant_id)
            return SessionStatus.NOT_FOUND

        site = self.config.site
        try:
            async with self.driver.session(storage_state=cfg.session_state) as session:
                logger.info("Navigating to %s to check session status (tenant=%s)", site.dashboard_url, tenant_id)
                await session.goto(site.dashboard_url, timeout=self.config.timeouts.session_probe, wait_until="load")
                landed = session.url
        except Exception as e:
            # Navigation errors, timeouts and unreadable session blobs all mean the session is not usable.
            logger.info("Error checking session status (tenant=%s): %s", tenant_id, e)
            return SessionStatus.EXPIRED

        logger.info("Landed on %s (tenant=%s)", landed, tenant_id)
        if site.authenticated_marker in landed:
            return SessionStatus.ACTIVE
        return SessionStatus.EXPIRED

    def get_tenant_config(self, tenant_id: str) -> Optional[dict]:
        cfg = self.store.get(tenant_id)
        if cfg is None:
            return None
        return cfg.masked()

    def recent_logs(self) -> list[str]:
        if self.log_buffer is None:
            return []
        return self.log_buffer.lines()

    def clear_logs(self) -> None:
        if self.log_buffer is not None:
            self.log_buffer.clear()

    def screenshot_path(self, name: str) -> Optional[Path]:
        return self.diagnostics.path_for(name)

    def last_screenshot(self, tenant_id: str) -> Optional[str]:
        return self.diagnostics.last_for(tenant_id)

    async def aclose(self) -> None:
        pending = self.login.pending_tasks() + self.interceptor.pending_tasks()
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.store.close()


def build_service(
    cfg: AppConfig,
    *,
    driver=None,
    forwarder: Optional[CallbackForwarder] = None,
    log_buffer: Optional[RecentLogBuffer] = None,
) -> AutomationService:
    driver = driver or PlaywrightDriver(headless=cfg.browser.headless, slow_mo_ms=cfg.browser.slow_mo_ms)
    store = ConfigStore(cfg.store.db_path)
    registry = SessionRegistry()
    relay = ChallengeRelay(registry, timeout_seconds=cfg.timeouts.challenge)
    diagnostics = DiagnosticsRecorder(cfg.diagnostics.screenshot_dir)
    login = LoginOrchestrator(
        registry=registry,
        relay=relay,
        store=store,
        driver=driver,
        site=cfg.site,
        timeouts=cfg.timeouts,
        diagnostics=diagnostics,
    )
    interceptor = AttachmentInterceptor(
        store=store,
        driver=driver,
        site=cfg.site,
        timeouts=cfg.timeouts,
        forwarder=forwarder,
        diagnostics=diagnostics,
    )
    return AutomationService(
        config=cfg,
        store=store,
        registry=registry,
        relay=relay,
        login=login,
        interceptor=interceptor,
        driver=driver,
        diagnostics=diagnostics,
        log_buffer=log_buffer,
    )
