from __future__ import annotations

from typing import Optional


class RelayError(RuntimeError):
    """
    Base class for every error raised by the login and attachment pipelines.

    The message is what ends up in a tenant's `last_error` and in API responses, so keep it readable.
    """


class InvalidStateError(RelayError):
    """
    Raised when the session registry is asked to do something the tenant's current flow state does not allow
    (e.g. attaching a challenge outside `AwaitingChallenge`, or moving a flow backwards).
    """


class AlreadyRunningError(RelayError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"A login flow is already running for {tenant_id}.")
        self.tenant_id = tenant_id


class ConfigIncompleteError(RelayError):
    """Missing credentials or callback URL."""


class NavigationTimeoutError(RelayError):
    """A navigation, selector or URL wait did not finish in time."""


class ChallengeTimeoutError(RelayError):
    def __init__(self, tenant_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Challenge code was not submitted within {timeout_seconds:g}s.")
        self.tenant_id = tenant_id
        self.timeout_seconds = timeout_seconds


class StateChangedError(RelayError):
    """The flow left `AwaitingChallenge` (reset, failure, new state) while a challenge wait was pending."""


class SessionNotFoundError(RelayError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"No saved session for {tenant_id}. Please perform the initial login first.")
        self.tenant_id = tenant_id


class AttachmentTimeoutError(RelayError):
    def __init__(self, message_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Attachment response for message {message_id} was not observed within {timeout_seconds:g}s."
        )
        self.message_id = message_id
        self.timeout_seconds = timeout_seconds


class RemoteFetchError(RelayError):
    def __init__(self, status: int, url: Optional[str] = None) -> None:
        super().__init__(f"Failed to fetch attachment from the remote site. Status: {status}")
        self.status = status
        self.url = url


class ForwardError(RelayError):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(
            f"Failed to forward attachment. Target server responded with status: {status}. Body: {body}"
        )
        self.status = status
        self.body = body
