from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from .config import SiteConfig, TimeoutsConfig
from .diagnostics import DiagnosticsRecorder
from .errors import (
    AttachmentTimeoutError,
    ConfigIncompleteError,
    ForwardError,
    NavigationTimeoutError,
    RemoteFetchError,
    SessionNotFoundError,
)
from .models import AttachmentJob, ForwardPayload, TenantConfig
from .store import ConfigStore


logger = logging.getLogger(__name__)


class CallbackForwarder:
    """
    Single POST of a ForwardPayload to a tenant's callback URL. No retries; webhook redelivery upstream owns that.
    """

    def __init__(self, *, timeout_seconds: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def forward(self, callback_url: str, payload: ForwardPayload) -> None:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            resp = await client.post(callback_url, json=payload.to_wire())
        if resp.is_success:
            return
        raise ForwardError(resp.status_code, resp.text)


class AttachmentInterceptor:
    """
    Reuses a tenant's saved session to capture one attachment download and relay it to the tenant callback.
    """

    def __init__(
        self,
        *,
        store: ConfigStore,
        driver,
        site: SiteConfig,
        timeouts: TimeoutsConfig,
        forwarder: Optional[CallbackForwarder] = None,
        diagnostics: Optional[DiagnosticsRecorder] = None,
    ) -> None:
        self.store = store
        self.driver = driver
        self.site = site
        self.timeouts = timeouts
        self.forwarder = forwarder or CallbackForwarder(timeout_seconds=timeouts.forward)
        self.diagnostics = diagnostics
        self._tasks: set[asyncio.Task] = set()

    def pending_tasks(self) -> list[asyncio.Task]:
        return [t for t in self._tasks if not t.done()]

    def _load_tenant(self, tenant_id: str) -> TenantConfig:
        cfg = self.store.get(tenant_id)
        if cfg is None or not cfg.has_session:
            raise SessionNotFoundError(tenant_id)
        if not (cfg.callback_url or "").strip():
            raise ConfigIncompleteError(f"Target webhook URL is not configured for {tenant_id}.")
        return cfg

    def enqueue(self, job: AttachmentJob) -> asyncio.Task:
        """
        Check preconditions now, then process the job in the background. Failures after this point are only logged.
        """
        self._load_tenant(job.tenant_id)
        task = asyncio.get_running_loop().create_task(self._process_logged(job), name=f"attachment:{job.message_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Webhook received for messageId=%s; queued (tenant=%s)", job.message_id, job.tenant_id)
        return task

    async def _process_logged(self, job: AttachmentJob) -> None:
        try:
            await self.process(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Error during attachment processing (tenant=%s messageId=%s): %s",
                job.tenant_id,
                job.message_id,
                e,
            )

    def _matches(self, job: AttachmentJob):
        needle = f"{job.message_id}{self.site.attachment_suffix}"

        def _predicate(url: str) -> bool:
            return needle in url

        return _predicate

    async def process(self, job: AttachmentJob) -> ForwardPayload:
        cfg = self._load_tenant(job.tenant_id)
        conversation_url = self.site.conversation_url(
            location_id=job.location_id,
            conversation_id=job.conversation_id,
        )
        logger.info("Processing attachment for messageId=%s (tenant=%s)", job.message_id, job.tenant_id)

        async with self.driver.session(storage_state=cfg.session_state) as session:
            # Arm the matcher before navigating; the attachment request may fire during page load.
            waiter = session.expect_response(self._matches(job))
            try:
                logger.info("Navigating to %s (tenant=%s)", conversation_url, job.tenant_id)
                await session.goto(conversation_url, timeout=self.timeouts.navigation)

                try:
                    captured = await waiter.wait(timeout=self.timeouts.response_wait)
                except NavigationTimeoutError:
                    raise AttachmentTimeoutError(job.message_id, self.timeouts.response_wait) from None
                logger.info("Intercepted attachment response from %s (status=%s)", captured.url, captured.status)

                if not captured.ok:
                    raise RemoteFetchError(captured.status, captured.url)

                body = await captured.body()
                payload = ForwardPayload.from_body(
                    message_id=job.message_id,
                    body=body,
                    mime_type=captured.content_type,
                )
                logger.info("Attachment size: %d bytes. Mime-type: %s.", len(body), payload.mime_type)

                await self.forwarder.forward(cfg.callback_url, payload)
                logger.info(
                    "Successfully forwarded attachment for messageId=%s (tenant=%s)",
                    job.message_id,
                    job.tenant_id,
                )
                return payload
            except Exception:
                if self.diagnostics is not None:
                    await self.diagnostics.capture(
                        session,
                        tenant_id=job.tenant_id,
                        prefix=f"attachment_error_{job.message_id}",
                    )
                raise
            finally:
                waiter.cancel()
