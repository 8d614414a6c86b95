from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from unillm.errors import ErrorKind, LLMError, error_for_kind

Role = Literal["system", "user", "assistant", "tool"]


# Canonical request
class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    media_type: str = "image/png"
    data: Optional[str] = None  # base64 payload
    url: Optional[str] = None

    @model_validator(mode="after")
    def _one_source(self) -> "ImagePart":
        if (self.data is None) == (self.url is None):
            raise ValueError("image part needs exactly one of 'data' or 'url'")
        return self


class ToolCallPart(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    tool_name: Optional[str] = None
    content: str
    is_error: bool = False


ContentPart = Annotated[
    Union[TextPart, ImagePart, ToolCallPart, ToolResultPart],
    Field(discriminator="type"),
]


class Message(BaseModel):
    role: Role
    content: List[ContentPart]

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [{"type": "text", "text": value}]
        return value

    def text(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


class ToolSpec(BaseModel):
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class CanonicalRequest(BaseModel):
    messages: List[Message]
    tools: List[ToolSpec] = Field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stop: List[str] = Field(default_factory=list)

    def has_images(self) -> bool:
        return any(isinstance(p, ImagePart) for m in self.messages for p in m.content)

    def has_system(self) -> bool:
        return any(m.role == "system" for m in self.messages)


# Canonical events
class TextDelta(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    text: str


class ToolCallStart(BaseModel):
    type: Literal["tool_call_start"] = "tool_call_start"
    id: str
    name: str


class ToolCallArgumentDelta(BaseModel):
    type: Literal["tool_call_argument_delta"] = "tool_call_argument_delta"
    id: str
    delta: str


class ToolCallEnd(BaseModel):
    type: Literal["tool_call_end"] = "tool_call_end"
    id: str


class UsageUpdate(BaseModel):
    type: Literal["usage_update"] = "usage_update"
    prompt_tokens: int
    completion_tokens: int
    estimated: bool = False


class StreamEnd(BaseModel):
    type: Literal["stream_end"] = "stream_end"
    stop_reason: Optional[str] = None


class StreamError(BaseModel):
    type: Literal["stream_error"] = "stream_error"
    kind: ErrorKind
    message: str
    retry_after: Optional[float] = None
    status_code: Optional[int] = None

    @classmethod
    def from_error(cls, err: LLMError) -> "StreamError":
        return cls(
            kind=err.kind,
            message=err.message,
            retry_after=err.retry_after,
            status_code=err.status_code,
        )

    def to_error(self) -> LLMError:
        return error_for_kind(
            self.kind,
            self.message,
            status_code=self.status_code,
            retry_after=self.retry_after,
        )


CanonicalEvent = Annotated[
    Union[
        TextDelta,
        ToolCallStart,
        ToolCallArgumentDelta,
        ToolCallEnd,
        UsageUpdate,
        StreamEnd,
        StreamError,
    ],
    Field(discriminator="type"),
]


# Aggregated view of a finished stream
class CompletionResult(BaseModel):
    text: str = ""
    tool_calls: List[ToolCallPart] = Field(default_factory=list)
    usage: Optional[UsageUpdate] = None
    stop_reason: Optional[str] = None
    error: Optional[StreamError] = None


# HTTP gateway
class MessagesRequest(CanonicalRequest):
    provider: Optional[str] = None
    model: str
    stream: bool = True

    def to_canonical(self) -> CanonicalRequest:
        return CanonicalRequest(**self.model_dump(exclude={"provider", "model", "stream"}))


class ProviderSummary(BaseModel):
    id: str
    display_name: str
    requires_credential: bool
    dynamic_catalog: bool
    models: List[str]

    @classmethod
    def from_descriptor(cls, descriptor: Any) -> "ProviderSummary":
        return cls(
            id=descriptor.id,
            display_name=descriptor.display_name,
            requires_credential=descriptor.requires_credential,
            dynamic_catalog=descriptor.dynamic_catalog,
            models=[m.id for m in descriptor.models],
        )
