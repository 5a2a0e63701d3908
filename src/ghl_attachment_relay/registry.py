from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from .errors import AlreadyRunningError, InvalidStateError, StateChangedError
from .models import FlowRecord, FlowState


logger = logging.getLogger(__name__)


# Forward-only ordering of a single run. COMPLETE and FAILED are both terminal.
_STATE_RANK = {
    FlowState.IDLE: 0,
    FlowState.IN_PROGRESS: 1,
    FlowState.AWAITING_CHALLENGE: 2,
    FlowState.SUBMITTING_CHALLENGE: 3,
    FlowState.COMPLETE: 4,
    FlowState.FAILED: 4,
}


class ChallengeHandle:
    """
    Single-use, single-resolution hand-off for one challenge code.

    The handle wraps an asyncio future owned by the event loop that created it. `resolve()` / `reject()` may be
    called from any thread; only the first call settles the handle, later calls return False.
    """

    def __init__(self, tenant_id: str, *, run: int, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.tenant_id = tenant_id
        self.run = run
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future[str] = self._loop.create_future()
        self._lock = threading.Lock()
        self._settled = False

    @property
    def settled(self) -> bool:
        return self._settled

    @property
    def future(self) -> "asyncio.Future[str]":
        return self._future

    def resolve(self, code: str) -> bool:
        with self._lock:
            if self._settled:
                return False
            self._settled = True
        self._call_in_loop(self._set_result, code)
        return True

    def reject(self, error: BaseException) -> bool:
        with self._lock:
            if self._settled:
                return False
            self._settled = True
        self._call_in_loop(self._set_exception, error)
        return True

    def _call_in_loop(self, fn, arg) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            fn(arg)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(fn, arg)

    def _set_result(self, code: str) -> None:
        if not self._future.done():
            self._future.set_result(code)

    def _set_exception(self, error: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(error)
            # Nobody may be waiting any more (e.g. reset after the waiter gave up); avoid
            # "exception was never retrieved" noise.
            self._future.add_done_callback(_consume_exception)


def _consume_exception(fut: "asyncio.Future[str]") -> None:
    if not fut.cancelled():
        fut.exception()


@dataclass
class _TenantEntry:
    tenant_id: str
    lock: threading.Lock = field(default_factory=threading.Lock)
    state: FlowState = FlowState.IDLE
    last_error: Optional[str] = None
    pending: Optional[ChallengeHandle] = None
    # Incremented by begin() and reset(); writes tagged with an older value are stale.
    generation: int = 0

    def snapshot(self) -> FlowRecord:
        return FlowRecord(
            tenant_id=self.tenant_id,
            state=self.state,
            last_error=self.last_error,
            has_pending_challenge=self.pending is not None,
        )

    def drop_pending(self, reason: str) -> None:
        if self.pending is not None:
            self.pending.reject(StateChangedError(reason))
            self.pending = None


class SessionRegistry:
    """
    Process-wide, per-tenant login flow state.

    Every operation takes only the lock of the tenant it touches, so a slow or stuck tenant never blocks
    another one. The registry-level lock only guards creation of tenant entries.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _TenantEntry] = {}
        self._entries_lock = threading.Lock()

    def _entry(self, tenant_id: str) -> _TenantEntry:
        entry = self._entries.get(tenant_id)
        if entry is not None:
            return entry
        with self._entries_lock:
            entry = self._entries.get(tenant_id)
            if entry is None:
                entry = _TenantEntry(tenant_id=tenant_id)
                self._entries[tenant_id] = entry
            return entry

    def get(self, tenant_id: str) -> FlowRecord:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return FlowRecord(tenant_id=tenant_id)
        with entry.lock:
            return entry.snapshot()

    def tenants(self) -> list[str]:
        with self._entries_lock:
            return sorted(self._entries)

    def begin(self, tenant_id: str) -> int:
        """
        Open a new login run for the tenant and return its generation.

        Raises AlreadyRunningError (and changes nothing) while a previous run is still active.
        """
        entry = self._entry(tenant_id)
        with entry.lock:
            if entry.state.is_running:
                raise AlreadyRunningError(tenant_id)
            entry.generation += 1
            entry.state = FlowState.IN_PROGRESS
            entry.last_error = None
            entry.drop_pending("Login state changed.")
            logger.info("Login run opened (tenant=%s run=%d)", tenant_id, entry.generation)
            return entry.generation

    def set_state(
        self,
        tenant_id: str,
        new_state: FlowState,
        error: Optional[str] = None,
        *,
        run: Optional[int] = None,
    ) -> bool:
        """
        Swap the tenant's state. Leaving AwaitingChallenge rejects the pending challenge in the same update.

        Returns False (and changes nothing) when `run` names an older run than the current one.
        """
        entry = self._entry(tenant_id)
        with entry.lock:
            if run is not None and run != entry.generation:
                logger.debug(
                    "Ignoring stale state write (tenant=%s run=%s current=%s state=%s)",
                    tenant_id,
                    run,
                    entry.generation,
                    new_state.value,
                )
                return False
            old = entry.state
            if new_state != old and _STATE_RANK[new_state] <= _STATE_RANK[old]:
                raise InvalidStateError(f"Cannot move login flow for {tenant_id} from {old.value} to {new_state.value}.")
            entry.state = new_state
            entry.last_error = error
            if new_state != FlowState.AWAITING_CHALLENGE:
                entry.drop_pending("Login state changed.")
        if new_state != old:
            logger.info("Login state %s -> %s (tenant=%s)", old.value, new_state.value, tenant_id)
        return True

    def reset(self, tenant_id: str) -> None:
        entry = self._entry(tenant_id)
        with entry.lock:
            entry.generation += 1
            entry.state = FlowState.IDLE
            entry.last_error = None
            entry.drop_pending("Login flow was reset.")
        logger.info("Login flow reset (tenant=%s)", tenant_id)

    def attach_challenge(self, tenant_id: str) -> ChallengeHandle:
        """Must be called from inside the event loop that will await the handle."""
        entry = self._entry(tenant_id)
        with entry.lock:
            if entry.state != FlowState.AWAITING_CHALLENGE:
                raise InvalidStateError(
                    f"Cannot wait for a challenge code for {tenant_id} in state {entry.state.value}."
                )
            if entry.pending is not None:
                raise InvalidStateError(f"A challenge is already pending for {tenant_id}.")
            entry.pending = ChallengeHandle(tenant_id, run=entry.generation)
            return entry.pending

    def resolve_challenge(self, tenant_id: str, code: str) -> bool:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return False
        with entry.lock:
            handle = entry.pending
            if entry.state != FlowState.AWAITING_CHALLENGE or handle is None:
                return False
            if not handle.resolve(code):
                return False
            entry.pending = None
            entry.state = FlowState.SUBMITTING_CHALLENGE
        logger.info("Challenge code received (tenant=%s)", tenant_id)
        return True

    def expire_challenge(self, tenant_id: str, handle: ChallengeHandle, error: BaseException) -> bool:
        """
        Reject `handle` with `error` and fail the flow, but only if the handle is still the pending one.

        Returns False when the handle was already settled (code delivered, reset, ...).
        """
        entry = self._entry(tenant_id)
        with entry.lock:
            if entry.pending is not handle or not handle.reject(error):
                return False
            entry.pending = None
            entry.state = FlowState.FAILED
            entry.last_error = str(error)
        logger.warning("Challenge wait expired (tenant=%s): %s", tenant_id, error)
        return True

    def is_current(self, tenant_id: str, run: int) -> bool:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return False
        with entry.lock:
            return entry.generation == run
