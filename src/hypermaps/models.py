"""Data models for conversation graphs."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Role = Literal["user", "assistant"]
NodeType = Literal["user", "assistant", "comment"]


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Entity(BaseModel):
    """Fields shared by everything placed on the canvas."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=new_id)
    content: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    conversation_id: str
    position: int = 0
    x: float | None = None
    y: float | None = None

    @property
    def has_position(self) -> bool:
        return self.x is not None and self.y is not None


class Message(Entity):
    role: Role
    parent_message_id: str = ""  # Empty string for root messages


class Comment(Entity):
    pass


class CommentPayload(BaseModel):
    """Payload accepted by comment ingestion; every field is required."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    content: str
    created_at: datetime
    conversation_id: str
    position: int
    x: float
    y: float

    def to_comment(self) -> Comment:
        return Comment(**self.model_dump())


class SearchHit(BaseModel):
    message: Message
    score: float
    snippet: str


class ChatTurn(BaseModel):
    role: Role
    content: str


class CompletionRequest(BaseModel):
    messages: list[ChatTurn]
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, serialization_alias="maxTokens")
    system: str | None = None


class StreamEvent(BaseModel):
    kind: Literal["chunk", "error", "end", "data"]
    text: str = ""
    payload: Any = None


class StreamingSnapshot(BaseModel):
    """What the projection needs to know about an in-flight generation."""

    message_id: str
    user_message_id: str
    conversation_id: str
    content: str = ""
    state: str


class GraphNode(BaseModel):
    id: str
    type: NodeType
    x: float
    y: float
    content: str
    created_at: datetime | None = None
    streaming: bool = False


class GraphEdge(BaseModel):
    id: str
    source: str
    target: str
    animated: bool = True


class Graph(BaseModel):
    nodes: list[GraphNode] = []
    edges: list[GraphEdge] = []

    def node(self, node_id: str) -> GraphNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None
