"""
Message and request schemas for the voice signaling server.

Client messages arrive over WebSocket frames or SSE POST bodies and are
discriminated by their "type" field. Field names accept both the current
camelCase names and the older room/socket names used by existing clients.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator


def _stringify(value: Any) -> Any:
    """Accept numbers for text fields (e.g. a numeric passphrase)."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class JoinRoomMessage(BaseModel):
    """Request to join a channel."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["join-room"]
    channel_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("channelId", "roomId", "channel_id"),
    )
    display_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("displayName", "userName", "display_name"),
    )
    password: Optional[str] = None

    @field_validator("channel_id", "display_name", "password", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> Any:
        return _stringify(v)


class SignalMessage(BaseModel):
    """
    WebRTC negotiation message for another connection.

    Every field is optional: incomplete relays are accepted and then dropped
    by the relay instead of being reported as errors.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["signal"]
    channel_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("channelId", "roomId", "channel_id"),
    )
    target_connection_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("targetConnectionId", "targetSocketId", "target_connection_id"),
    )
    payload: Any = Field(default=None, validation_alias=AliasChoices("payload", "data"))


class LeaveRoomMessage(BaseModel):
    """Explicit leave of the current channel."""

    type: Literal["leave-room"]


ClientMessage = Annotated[
    Union[JoinRoomMessage, SignalMessage, LeaveRoomMessage],
    Field(discriminator="type"),
]

client_message_adapter = TypeAdapter(ClientMessage)


class CreateChannelParams(BaseModel):
    """Body of POST /api/channels."""

    model_config = ConfigDict(populate_by_name=True)

    # Emptiness is checked by the store so it can report NAME_REQUIRED
    name: Optional[str] = Field(default=None, max_length=100)
    max_users: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("maxUsers", "capacity", "max_users"),
        description="Maximum participants; missing or non-positive means the server default",
    )
    password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("name", "password", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> Any:
        return _stringify(v)


class UpdateChannelParams(BaseModel):
    """
    Body of PATCH /api/channels/{channel_id}.

    Only fields present in the body are applied. An explicit
    "password": null or "" removes the passphrase.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, max_length=100)
    max_users: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("maxUsers", "capacity", "max_users"),
    )
    password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("name", "password", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> Any:
        return _stringify(v)

    def to_patch(self) -> dict:
        """Store patch containing only the fields the client sent."""
        patch = {}
        if "name" in self.model_fields_set:
            patch["name"] = self.name
        if "max_users" in self.model_fields_set:
            patch["capacity"] = self.max_users
        if "password" in self.model_fields_set:
            patch["password"] = self.password
        return patch
