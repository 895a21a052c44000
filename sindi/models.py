from __future__ import annotations
"""
Sindi — Pydantic Request Models
"""
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]
Status = Literal["active", "archived", "deleted"]
Topic = Literal["rent", "repairs", "lease", "rights", "general"]


class ChatMessageIn(BaseModel):
    role: Role
    content: str = Field(default="", max_length=200_000)
    attachments: list[dict] | None = None


class ChatStreamRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessageIn] = Field(..., min_length=1)
    conversation_id: str | None = Field(default=None, alias="conversationId", max_length=100)


class ConversationCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str | None = Field(default=None, max_length=200)
    initial_message: str | None = Field(default=None, alias="initialMessage", max_length=10000)
    messages: list[ChatMessageIn] | None = None
    topic: Topic = "general"


class ConversationUpdateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=200)
    status: Status | None = None
    topic: Topic | None = None
    messages: list[ChatMessageIn] | None = None
    version: int | None = Field(default=None, ge=1)


class AppendMessageRequest(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1, max_length=200_000)
    attachments: list[dict] | None = None


class DevSessionRequest(BaseModel):
    email: str = Field(..., min_length=5, max_length=255)
