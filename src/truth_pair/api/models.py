"""Pydantic models for HTTP and bridge webhook payloads."""

from pydantic import BaseModel, ConfigDict, Field


class GenerateSessionRequest(BaseModel):
    """Body of a session generation request."""

    model_config = ConfigDict(populate_by_name=True)

    method: str | None = None
    phone_number: str | None = Field(default=None, alias="phoneNumber")


class TerminateSessionRequest(BaseModel):
    """Body of a session termination request."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)


class BridgeEvent(BaseModel):
    """Callback forwarded by the WhatsApp-Web bridge."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    event: str
    data: dict[str, object] = Field(default_factory=dict)


class SubscribeMessage(BaseModel):
    """Real-time client request to follow a session."""

    model_config = ConfigDict(populate_by_name=True)

    type: str
    session_id: str = Field(alias="sessionId", min_length=1)
