"""
Data models for chat streaming and rendering
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from askdocs.utils.errors import MessageFinalizedError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageState(str, Enum):
    STREAMING = "streaming"
    FINALIZED = "finalized"


class EventKind(str, Enum):
    TEXT_DELTA = "textDelta"
    FINAL_METADATA = "finalMetadata"
    ERROR_SIGNAL = "errorSignal"


class SourceReference(BaseModel):
    """Structured pointer to a backing document"""
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("fileName", "filename", "file_name"),
        serialization_alias="fileName"
    )
    line_number: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("lineNumber", "line_number", "line"),
        serialization_alias="lineNumber"
    )
    relevance_score: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("score", "relevanceScore", "relevance_score"),
        serialization_alias="score"
    )
    excerpt_text: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("text", "excerptText", "excerpt_text"),
        serialization_alias="text"
    )

    @field_validator("file_name", mode="before")
    @classmethod
    def strip_file_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class StreamEvent(BaseModel):
    """
    One interpreted frame. Transient: produced and consumed per frame.

    ``text`` is exactly what the frame contributed to the accumulated answer.
    """
    kind: EventKind
    payload: Any = None
    text: str = ""


class ChatMessage(BaseModel):
    """Chat message, mutable only while its stream is active"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    role: MessageRole
    content: str = ""
    created_at: datetime = Field(default_factory=_utcnow, serialization_alias="createdAt")
    state: MessageState = MessageState.STREAMING
    sources: List[SourceReference] = Field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def from_user(cls, text: str) -> "ChatMessage":
        """User messages are complete as soon as they exist"""
        return cls(role=MessageRole.USER, content=text, state=MessageState.FINALIZED)

    @property
    def is_finalized(self) -> bool:
        return self.state == MessageState.FINALIZED

    def append(self, delta: str) -> None:
        if self.is_finalized:
            raise MessageFinalizedError(f"Message {self.id} is finalized")
        self.content += delta

    def add_sources(self, sources: List[SourceReference]) -> None:
        if self.is_finalized:
            raise MessageFinalizedError(f"Message {self.id} is finalized")
        self.sources.extend(sources)

    def finalize(self) -> None:
        self.state = MessageState.FINALIZED


class TextSpan(BaseModel):
    type: Literal["text"] = "text"
    value: str


class StrongSpan(BaseModel):
    type: Literal["strong"] = "strong"
    value: str


class CitationSpan(BaseModel):
    """Region of rendered text bound to a source document"""
    type: Literal["citation"] = "citation"
    display_text: str = Field(..., serialization_alias="displayText")
    file_name: str = Field(..., min_length=1, serialization_alias="fileName")
    line_number: Optional[int] = Field(default=None, serialization_alias="lineNumber")
    pattern: str = ""

    def to_source(self) -> SourceReference:
        return SourceReference(file_name=self.file_name, line_number=self.line_number)


class TableHeaderSpan(BaseModel):
    type: Literal["tableHeader"] = "tableHeader"
    cells: List[str]
    citations: List[CitationSpan] = Field(default_factory=list)


class TableRowSpan(BaseModel):
    type: Literal["tableRow"] = "tableRow"
    cells: List[str]
    citations: List[CitationSpan] = Field(default_factory=list)


Span = Annotated[
    Union[TextSpan, StrongSpan, CitationSpan, TableHeaderSpan, TableRowSpan],
    Field(discriminator="type")
]


class RenderedMessage(BaseModel):
    """Render-ready form of a message, independent of any UI framework"""
    text: str
    spans: List[Span] = Field(default_factory=list)
    citations: List[CitationSpan] = Field(default_factory=list)
    sources: List[SourceReference] = Field(default_factory=list)


class ChatUpdate(BaseModel):
    """Snapshot handed to the caller after each rendered frame"""
    message: ChatMessage
    rendered: RenderedMessage
    final: bool = False
    room_id: Optional[str] = Field(default=None, serialization_alias="roomId")


class AIAnswer(BaseModel):
    content: str
    sources: List[SourceReference] = Field(default_factory=list)


class Room(BaseModel):
    """Conversation history persisted after each finalized turn"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str
    user_answers: List[str] = Field(default_factory=list, serialization_alias="userAnswers")
    ai_answers: List[AIAnswer] = Field(default_factory=list, serialization_alias="aiAnswers")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


class ChatRequest(BaseModel):
    """Chat request model"""
    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(..., min_length=1, max_length=4000, description="User's question")
    top_k: Optional[int] = Field(default=None, ge=1, le=50, alias="topK")
    room_id: Optional[str] = Field(default=None, alias="roomId")


class RenderRequest(BaseModel):
    """Render raw answer text without contacting the backend"""
    model_config = ConfigDict(populate_by_name=True)

    text: str
    strip_provenance: Optional[bool] = Field(default=None, alias="stripProvenance")
