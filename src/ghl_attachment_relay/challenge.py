from __future__ import annotations

import asyncio
import logging

from .errors import ChallengeTimeoutError, StateChangedError
from .registry import SessionRegistry


logger = logging.getLogger(__name__)

DEFAULT_CHALLENGE_TIMEOUT_SECONDS = 180.0


class ChallengeRelay:
    """
    Hands a one-time code typed by a human (through a separate request) to the login run waiting for it.

    `await_code()` ends in exactly one of three ways: the code, ChallengeTimeoutError (the flow is failed),
    or StateChangedError when the flow left AwaitingChallenge for any other reason.
    """

    def __init__(self, registry: SessionRegistry, *, timeout_seconds: float = DEFAULT_CHALLENGE_TIMEOUT_SECONDS) -> None:
        self._registry = registry
        self.timeout_seconds = float(timeout_seconds)

    async def await_code(self, tenant_id: str) -> str:
        handle = self._registry.attach_challenge(tenant_id)
        logger.info(
            "Waiting up to %.0fs for a challenge code (tenant=%s)",
            self.timeout_seconds,
            tenant_id,
        )
        try:
            # shield: on timeout we still need the future to learn whether a code raced the deadline.
            return await asyncio.wait_for(asyncio.shield(handle.future), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            err = ChallengeTimeoutError(tenant_id, self.timeout_seconds)
            if self._registry.expire_challenge(tenant_id, handle, err):
                raise err from None
        except asyncio.CancelledError:
            self._registry.expire_challenge(tenant_id, handle, StateChangedError("Login run was cancelled."))
            raise

        # A code (or a reset) won the race against the deadline; the handle is already settled.
        return await handle.future

    def submit_code(self, tenant_id: str, code: str) -> bool:
        """False means nothing is waiting for a code for this tenant; do not retry."""
        code = (code or "").strip()
        if not code:
            return False
        accepted = self._registry.resolve_challenge(tenant_id, code)
        if not accepted:
            logger.info("Challenge code ignored; no pending challenge (tenant=%s)", tenant_id)
        return accepted
