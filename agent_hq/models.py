"""Pydantic models for sessions, agents and transcript messages."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

SessionStatus = Literal["active", "idle", "completed", "error"]
AgentStatus = Literal["working", "idle", "completed"]
AgentType = Literal["main", "explore", "plan", "bash", "general-purpose", "unknown"]
MessageRole = Literal["user", "assistant"]
SendMode = Literal["interrupt", "queue"]

MAIN_AGENT_ID = "main"


# ── Content blocks ──────────────────────────────────────────────────

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str = ""
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = ""
    content: Union[str, list[Any]] = ""
    is_error: bool = False

    @field_validator("content", mode="before")
    @classmethod
    def _none_content(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("is_error", mode="before")
    @classmethod
    def _none_is_error(cls, value: Any) -> Any:
        return bool(value)


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


# ── Messages ────────────────────────────────────────────────────────

class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class Message(BaseModel):
    uuid: str
    parentUuid: Optional[str] = None
    sessionId: str = ""
    agentId: Optional[str] = None
    role: MessageRole
    content: list[ContentBlock] = Field(default_factory=list)
    timestamp: datetime
    isSidechain: bool = False
    model: Optional[str] = None
    usage: Optional[TokenUsage] = None

    model_config = {"frozen": True}

    def text(self) -> str:
        return " ".join(block.text for block in self.content if isinstance(block, TextBlock))


# ── Sessions and agents ─────────────────────────────────────────────

class Agent(BaseModel):
    id: str
    sessionId: str
    name: str
    type: AgentType = "unknown"
    status: AgentStatus = "idle"
    messageCount: int = 0
    lastActivity: datetime
    filePath: Optional[str] = None


class Session(BaseModel):
    id: str
    workspaceId: str
    workspaceName: str
    filePath: str
    status: SessionStatus = "idle"
    agents: list[Agent] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    createdAt: datetime
    lastMessageAt: datetime
    isControlled: bool = False
    workingDirectory: Optional[str] = None
    summary: Optional[str] = None
    model: Optional[str] = None
    messageCount: int = 0
    tokensIn: int = 0
    tokensOut: int = 0
