import time
from typing import Any, Dict, List, Literal, Optional

import pydantic
from pydantic import AliasChoices, ConfigDict, Field


class Event(pydantic.BaseModel):
    id: Optional[str] = None
    created_at: float = Field(default_factory=time.time)


class Descriptor(pydantic.BaseModel):
    """Base for capability descriptors reported by a provider.

    Field names follow the wire format (camelCase aliases), unknown keys are
    dropped. ``server_id`` is filled in when the registry projects descriptors
    into a flat list.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    server_id: Optional[str] = Field(default=None, alias="serverId")


class ToolDescriptor(Descriptor):
    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")


class ResourceDescriptor(Descriptor):
    uri: str
    name: Optional[str] = None
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class PromptDescriptor(Descriptor):
    name: str
    description: Optional[str] = None
    arguments: List[Dict[str, Any]] = Field(default_factory=list)


class ToolOutput(pydantic.BaseModel):
    kind: Literal["tool_output"] = "tool_output"
    content: List[Dict[str, Any]] = Field(default_factory=list)
    structured_content: Optional[Dict[str, Any]] = None
    is_error: bool = False

    @property
    def text(self) -> str:
        chunks = [c.get("text", "") for c in self.content if c.get("type") == "text"]
        return "\n".join(chunk for chunk in chunks if chunk)


class ResourceContents(pydantic.BaseModel):
    kind: Literal["resource_contents"] = "resource_contents"
    uri: str
    contents: List[Dict[str, Any]] = Field(default_factory=list)


class PromptMessages(pydantic.BaseModel):
    kind: Literal["prompt_messages"] = "prompt_messages"
    name: str
    description: Optional[str] = None
    messages: List[Dict[str, Any]] = Field(default_factory=list)


class ToolCallRequest(Event):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    arguments: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("arguments", "args")
    )
    server_id: Optional[str] = None

    @property
    def correlation_id(self) -> Optional[str]:
        return self.id


class ToolCallResult(Event):
    name: str
    server_id: Optional[str] = None
    payload: Any = None
    success: bool
    error_message: Optional[str] = None
    elapsed_ms: float = 0.0

    @property
    def correlation_id(self) -> Optional[str]:
        return self.id


class BatchSummary(pydantic.BaseModel):
    total: int
    succeeded: int
    failed: int
    elapsed_ms: float


class ToolCall(Event):
    """A function call emitted by an OpenAI-style chat completion."""

    id: str
    name: str
    arguments: str | Dict[str, Any]


class ServerStatus(pydantic.BaseModel):
    id: str
    connected: bool
    state: str
    tool_count: int = Field(serialization_alias="toolCount")
    resource_count: int = Field(serialization_alias="resourceCount")
    prompt_count: int = Field(serialization_alias="promptCount")
    tools: List[Dict[str, Optional[str]]] = Field(default_factory=list)
    has_process: bool = Field(serialization_alias="hasProcess")


class DetailedStatus(pydantic.BaseModel):
    total_servers: int = Field(serialization_alias="totalServers")
    connected_servers: int = Field(serialization_alias="connectedServers")
    servers: List[ServerStatus] = Field(default_factory=list)
