from __future__ import annotations

import asyncio

import pytest

from ghl_attachment_relay.challenge import ChallengeRelay
from ghl_attachment_relay.errors import ChallengeTimeoutError, StateChangedError
from ghl_attachment_relay.models import FlowState
from ghl_attachment_relay.registry import SessionRegistry

from fakes import eventually


def _awaiting(reg: SessionRegistry, tenant: str) -> int:
    run = reg.begin(tenant)
    reg.set_state(tenant, FlowState.AWAITING_CHALLENGE, run=run)
    return run


def test_submitted_code_reaches_the_waiter() -> None:
    async def _run() -> None:
        reg = SessionRegistry()
        relay = ChallengeRelay(reg, timeout_seconds=1.0)
        _awaiting(reg, "a@example.com")

        waiter = asyncio.create_task(relay.await_code("a@example.com"))
        await eventually(lambda: reg.get("a@example.com").has_pending_challenge)

        assert relay.submit_code("a@example.com", " 123456 ") is True
        assert await waiter == "123456"
        assert reg.get("a@example.com").state == FlowState.SUBMITTING_CHALLENGE

    asyncio.run(_run())


def test_timeout_fails_the_flow() -> None:
    async def _run() -> None:
        reg = SessionRegistry()
        relay = ChallengeRelay(reg, timeout_seconds=0.05)
        _awaiting(reg, "a@example.com")

        with pytest.raises(ChallengeTimeoutError):
            await relay.await_code("a@example.com")

        rec = reg.get("a@example.com")
        assert rec.state == FlowState.FAILED
        assert "not submitted within" in (rec.last_error or "")
        assert not rec.has_pending_challenge

        # Late submission finds nothing to resolve.
        assert relay.submit_code("a@example.com", "123456") is False

    asyncio.run(_run())


def test_reset_while_waiting_raises_state_changed() -> None:
    async def _run() -> None:
        reg = SessionRegistry()
        relay = ChallengeRelay(reg, timeout_seconds=1.0)
        _awaiting(reg, "a@example.com")

        waiter = asyncio.create_task(relay.await_code("a@example.com"))
        await eventually(lambda: reg.get("a@example.com").has_pending_challenge)
        reg.reset("a@example.com")

        with pytest.raises(StateChangedError):
            await waiter
        assert reg.get("a@example.com").state == FlowState.IDLE
        assert relay.submit_code("a@example.com", "123456") is False

    asyncio.run(_run())


def test_cancelling_the_waiter_fails_the_flow() -> None:
    async def _run() -> None:
        reg = SessionRegistry()
        relay = ChallengeRelay(reg, timeout_seconds=1.0)
        _awaiting(reg, "a@example.com")

        waiter = asyncio.create_task(relay.await_code("a@example.com"))
        await eventually(lambda: reg.get("a@example.com").has_pending_challenge)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert reg.get("a@example.com").state == FlowState.FAILED
        assert relay.submit_code("a@example.com", "1") is False

    asyncio.run(_run())


def test_submit_without_pending_challenge_is_refused() -> None:
    reg = SessionRegistry()
    relay = ChallengeRelay(reg, timeout_seconds=1.0)
    assert relay.submit_code("nobody@example.com", "123456") is False

    reg.begin("a@example.com")
    assert relay.submit_code("a@example.com", "123456") is False
    assert relay.submit_code("a@example.com", "   ") is False
    assert reg.get("a@example.com").state == FlowState.IN_PROGRESS


def test_code_goes_only_to_its_own_tenant() -> None:
    async def _run() -> None:
        reg = SessionRegistry()
        relay = ChallengeRelay(reg, timeout_seconds=1.0)
        _awaiting(reg, "a@example.com")
        _awaiting(reg, "b@example.com")

        wa = asyncio.create_task(relay.await_code("a@example.com"))
        wb = asyncio.create_task(relay.await_code("b@example.com"))
        await eventually(
            lambda: reg.get("a@example.com").has_pending_challenge
            and reg.get("b@example.com").has_pending_challenge
        )

        assert relay.submit_code("b@example.com", "222") is True
        assert await wb == "222"
        assert not wa.done()
        assert reg.get("a@example.com").state == FlowState.AWAITING_CHALLENGE

        assert relay.submit_code("a@example.com", "111") is True
        assert await wa == "111"

    asyncio.run(_run())
