from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from ghl_attachment_relay.errors import ConfigIncompleteError, SessionNotFoundError
from ghl_attachment_relay.models import AttachmentJob, SessionStatus
from ghl_attachment_relay.service import build_service

from fakes import (
    BASE_URL,
    CallbackRecorder,
    FakeDriver,
    FakeSession,
    app_config,
    eventually,
    goes_to_dashboard,
)


TENANT = "agent@example.com"
JOB = AttachmentJob(tenantId=TENANT, locationId="loc1", conversationId="conv1", messageId="msg1")


def test_session_lifecycle_from_not_found_to_reset(tmp_path: Path) -> None:
    driver = FakeDriver(lambda: FakeSession(on_submit=goes_to_dashboard))
    service = build_service(app_config(tmp_path), driver=driver, forwarder=CallbackRecorder().forwarder())

    async def _run() -> None:
        assert await service.get_session_status(TENANT) == SessionStatus.NOT_FOUND

        service.start_login(TENANT, "s3cret", "https://hooks.example.test/in")
        await eventually(lambda: service.get_flow_status(TENANT)["state"] == "Complete")

        assert await service.get_session_status(TENANT) == SessionStatus.ACTIVE
        assert service.get_tenant_config(TENANT)["hasSession"] is True

        assert service.reset_flow(TENANT) == {"state": "Idle", "error": None}
        assert await service.get_session_status(TENANT) == SessionStatus.NOT_FOUND
        with pytest.raises(SessionNotFoundError):
            service.enqueue_attachment_job(JOB)

        await service.aclose()

    asyncio.run(_run())


def test_redirect_to_login_means_expired(tmp_path: Path) -> None:
    dashboard = f"{BASE_URL}/v2/dashboard"
    driver = FakeDriver(lambda: FakeSession(redirects={dashboard: f"{BASE_URL}/login"}))
    service = build_service(app_config(tmp_path), driver=driver)
    service.store.save_session(TENANT, '{"cookies": [], "origins": []}')

    async def _run() -> None:
        assert await service.get_session_status(TENANT) == SessionStatus.EXPIRED
        await service.aclose()

    asyncio.run(_run())
    assert driver.opened == driver.closed == 1
    # the dashboard check waits for the full load event, not just DOMContentLoaded
    assert driver.sessions[0].wait_untils == ["load"]


def test_navigation_error_means_expired(tmp_path: Path) -> None:
    driver = FakeDriver(lambda: FakeSession(goto_error=RuntimeError("net::ERR_NAME_NOT_RESOLVED")))
    service = build_service(app_config(tmp_path), driver=driver)
    service.store.save_session(TENANT, '{"cookies": [], "origins": []}')

    async def _run() -> None:
        assert await service.get_session_status(TENANT) == SessionStatus.EXPIRED
        await service.aclose()

    asyncio.run(_run())


def test_aclose_cancels_running_login(tmp_path: Path) -> None:
    # form submit leads nowhere, so the login keeps waiting
    driver = FakeDriver(FakeSession)
    service = build_service(app_config(tmp_path, navigation=5.0), driver=driver)

    async def _run() -> None:
        service.start_login(TENANT, "s3cret", "https://hooks.example.test/in")
        await eventually(lambda: driver.opened == 1)
        await service.aclose()

    asyncio.run(_run())
    assert service.get_flow_status(TENANT) == {"state": "Failed", "error": "Login was cancelled."}
    assert driver.closed == 1


def test_config_and_logs_without_buffer(tmp_path: Path) -> None:
    service = build_service(app_config(tmp_path), driver=FakeDriver())
    try:
        assert service.get_tenant_config(TENANT) is None
        assert service.recent_logs() == []
        service.clear_logs()
        assert service.screenshot_path("nope.png") is None
    finally:
        asyncio.run(service.aclose())


def test_reset_closes_the_running_login_browser(tmp_path: Path) -> None:
    driver = FakeDriver(FakeSession)
    service = build_service(app_config(tmp_path, navigation=5.0), driver=driver)

    async def _run() -> None:
        service.start_login(TENANT, "s3cret", "https://hooks.example.test/in")
        await eventually(lambda: driver.opened == 1)

        assert service.reset_flow(TENANT) == {"state": "Idle", "error": None}
        await eventually(lambda: not service.login.pending_tasks())
        assert driver.closed == 1
        # the cancelled run must not overwrite the reset
        assert service.get_flow_status(TENANT) == {"state": "Idle", "error": None}

        service.start_login(TENANT, "s3cret", "https://hooks.example.test/in")
        await eventually(lambda: driver.opened == 2)
        await service.aclose()

    asyncio.run(_run())
    assert driver.max_live == 1


def test_save_tenant_config_keeps_the_session(tmp_path: Path) -> None:
    service = build_service(app_config(tmp_path), driver=FakeDriver())
    service.store.save_session(TENANT, '{"cookies": [], "origins": []}')

    service.save_tenant_config(f" {TENANT} ", "s3cret", " https://hooks.example.test/new ")
    cfg = service.get_tenant_config(TENANT)
    assert cfg["callbackUrl"] == "https://hooks.example.test/new"
    assert cfg["hasCredentials"] is True
    assert cfg["hasSession"] is True

    with pytest.raises(ConfigIncompleteError):
        service.save_tenant_config("  ", "s3cret", "https://hooks.example.test/new")

    asyncio.run(service.aclose())
