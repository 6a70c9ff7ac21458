"""Conversation data shared between the workflow, checkpoints and providers.

These are pydantic models because they cross a serialization boundary: they
are stored as JSON in the checkpoint store and exchanged with the external
workflow engine. Internal results elsewhere in the package are dataclasses.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]


class Message(BaseModel):
    """One chat message in OpenAI wire format."""

    model_config = ConfigDict(extra="allow")

    role: Role
    content: str = ""
    name: str | None = None
    tool_call_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        """Return the dict sent to providers (None fields omitted)."""
        return self.model_dump(exclude_none=True)


class Resource(BaseModel):
    """An already-fetched document supplied as context for a turn."""

    url: str = ""
    title: str = ""
    content: str = ""


class ConversationState(BaseModel):
    """Snapshot of a conversation as the workflow engine sees it.

    Unknown workflow fields are preserved so a recovered state round-trips
    whatever the caller stored.
    """

    model_config = ConfigDict(extra="allow")

    thread_id: str | None = None
    messages: list[Message] = Field(default_factory=list)
    model: str | None = None
    research_question: str = ""
    report: str = ""
    resources: list[Resource] = Field(default_factory=list)
    logs: list[dict[str, Any]] = Field(default_factory=list)


class ToolInvocation(BaseModel):
    """A structured tool call the workflow engine interprets.

    ``arguments`` is opaque to this layer beyond JSON decoding.
    """

    id: str | None = None
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
