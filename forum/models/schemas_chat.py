# forum/models/schemas_chat.py

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# inbound frames (client -> server)

class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PingFrame(_Inbound):
    type: Literal["ping"]


class AuthFrame(_Inbound):
    type: Literal["auth"]
    token: str = ""
    last_message_timestamp: Optional[int] = Field(None, alias="lastMessageTimestamp")


class MessageFrame(_Inbound):
    type: Literal["message"]
    content: str = ""
    last_message_timestamp: Optional[int] = Field(None, alias="lastMessageTimestamp")


InboundFrame = Annotated[
    Union[PingFrame, AuthFrame, MessageFrame],
    Field(discriminator="type"),
]
inbound_adapter = TypeAdapter(InboundFrame)


# outbound frames (server -> client)

class _Outbound(BaseModel):
    def wire(self) -> dict:
        return self.model_dump(exclude_none=True)


class PongFrame(_Outbound):
    type: Literal["pong"] = "pong"


class AuthSuccessData(BaseModel):
    username: str


class AuthSuccessFrame(_Outbound):
    type: Literal["auth_success"] = "auth_success"
    data: AuthSuccessData


class ChatMessageFrame(_Outbound):
    type: Literal["message"] = "message"
    content: str
    author: str
    id: str
    timestamp: int


class MessageSentFrame(_Outbound):
    type: Literal["message_sent"] = "message_sent"
    id: str
    timestamp: int


class ErrorFrame(_Outbound):
    type: Literal["error"] = "error"
    content: str


# REST

class ChatMessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    content: str
    author_id: int
    author_username: str
    created_at: datetime
    expires_at: datetime
