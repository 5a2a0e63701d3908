from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


DEFAULT_MIME_TYPE = "application/octet-stream"


class FlowState(str, Enum):
    IDLE = "Idle"
    IN_PROGRESS = "InProgress"
    AWAITING_CHALLENGE = "AwaitingChallenge"
    SUBMITTING_CHALLENGE = "SubmittingChallenge"
    COMPLETE = "Complete"
    FAILED = "Failed"

    @property
    def is_running(self) -> bool:
        return self in _RUNNING_STATES


_RUNNING_STATES = frozenset(
    {FlowState.IN_PROGRESS, FlowState.AWAITING_CHALLENGE, FlowState.SUBMITTING_CHALLENGE}
)


class SessionStatus(str, Enum):
    ACTIVE = "Active"
    EXPIRED = "Expired"
    NOT_FOUND = "NotFound"


@dataclass(frozen=True)
class FlowRecord:
    """
    Point-in-time copy of one tenant's login flow. Handed out by the registry; mutating the registry later
    never changes an existing record.
    """

    tenant_id: str
    state: FlowState = FlowState.IDLE
    last_error: Optional[str] = None
    # The handle itself stays inside the registry; codes go through resolve_challenge().
    has_pending_challenge: bool = False

    def as_status(self) -> dict:
        return {"state": self.state.value, "error": self.last_error}


@dataclass(frozen=True)
class TenantConfig:
    tenant_id: str
    credential_secret: Optional[str] = None
    callback_url: Optional[str] = None
    # Opaque Playwright storage_state JSON; stored and restored verbatim.
    session_state: Optional[str] = None

    @property
    def has_session(self) -> bool:
        return bool((self.session_state or "").strip())

    def masked(self) -> dict:
        return {
            "tenantId": self.tenant_id,
            "hasCredentials": bool(self.credential_secret),
            "callbackUrl": self.callback_url or "",
            "hasSession": self.has_session,
        }


class AttachmentJob(BaseModel):
    """
    One webhook delivery: find the attachment of `message_id` inside the conversation and forward it.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tenant_id: str = Field(min_length=1, validation_alias=AliasChoices("tenant_id", "tenantId", "ghlEmail"))
    location_id: str = Field(min_length=1, validation_alias=AliasChoices("location_id", "locationId"))
    conversation_id: str = Field(min_length=1, validation_alias=AliasChoices("conversation_id", "conversationId"))
    message_id: str = Field(min_length=1, validation_alias=AliasChoices("message_id", "messageId"))


class ForwardPayload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message_id: str = Field(alias="messageId")
    mime_type: str = Field(default=DEFAULT_MIME_TYPE, alias="mimeType")
    # base64 of the captured body
    data: str

    @classmethod
    def from_body(cls, *, message_id: str, body: bytes, mime_type: Optional[str] = None) -> "ForwardPayload":
        return cls(
            message_id=message_id,
            mime_type=(mime_type or "").strip() or DEFAULT_MIME_TYPE,
            data=base64.b64encode(body).decode("ascii"),
        )

    def decoded(self) -> bytes:
        return base64.b64decode(self.data)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)
