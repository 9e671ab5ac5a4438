"""Session data model for streamed work.

A session is one tracked unit of streaming work: either a background
ingestion task or a chat exchange. Its ``state`` payload depends on ``kind``.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


class SessionKind(str, Enum):
    """Which state shape and reducer rules apply to a session."""

    TASK = "task"
    EXCHANGE = "exchange"


class SessionStatus(str, Enum):
    """Lifecycle status of a session."""

    PENDING = "pending"
    CONNECTING = "connecting"
    ACTIVE = "active"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further event may change the session."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETE, SessionStatus.ERROR, SessionStatus.CANCELLED}
)


class ProcessingStep(str, Enum):
    """Named steps of the document ingestion pipeline."""

    QUEUED = "queued"
    READING = "reading"
    CLASSIFYING = "classifying"
    EXTRACTING = "extracting"
    RESOLVING_ENTITY = "resolving_entity"
    EMBEDDING = "embedding"
    CREATING_NODE = "creating_node"
    CREATING_RELATIONSHIPS = "creating_relationships"
    COMPLETED = "completed"
    FAILED = "failed"


STEP_LABELS: dict[str, str] = {
    ProcessingStep.QUEUED.value: "Queued",
    ProcessingStep.READING.value: "Reading document...",
    ProcessingStep.CLASSIFYING.value: "Classifying document type...",
    ProcessingStep.EXTRACTING.value: "Extracting metadata...",
    ProcessingStep.RESOLVING_ENTITY.value: "Resolving organization...",
    ProcessingStep.EMBEDDING.value: "Creating embeddings...",
    ProcessingStep.CREATING_NODE.value: "Creating graph node...",
    ProcessingStep.CREATING_RELATIONSHIPS.value: "Creating relationships...",
    ProcessingStep.COMPLETED.value: "Complete!",
    ProcessingStep.FAILED.value: "Failed",
}

DEFAULT_STEP_MESSAGE = "Processing..."


def step_label(step: str | None) -> str:
    """Return the display label for a pipeline step name."""
    if step is None:
        return DEFAULT_STEP_MESSAGE
    return STEP_LABELS.get(step, DEFAULT_STEP_MESSAGE)


class Source(BaseModel):
    """A retrieved citation attached to an exchange.

    Servers attach arbitrary extra fields (page numbers, urls), which are kept.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    id: str | None = None
    type: str | None = None
    name: str | None = None
    content: str | None = None
    score: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ToolCallStatus(str, Enum):
    """Execution status of a tool call."""

    RUNNING = "running"
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


class ToolCall(BaseModel):
    """A tool invocation reported by the server while answering."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    status: ToolCallStatus = ToolCallStatus.RUNNING


class ExecutionStep(BaseModel):
    """One entry of an exchange's ordered trace."""

    model_config = ConfigDict(frozen=True)

    type: str
    content: str
    timestamp: datetime | None = None


class TaskState(BaseModel):
    """Accumulated state of a background ingestion task.

    Attributes:
        progress: Completion percentage, 0-100.
        current_step: Pipeline step name (usually a ProcessingStep value).
        step_message: Human-readable description of the current step.
        result_id: Identifier of the produced artifact once complete.
        error: Failure reason once failed.
        file_name: Name of the ingested file, supplied by the caller.
    """

    model_config = ConfigDict(frozen=True)

    progress: int = Field(default=0, ge=0, le=100)
    current_step: str = ProcessingStep.QUEUED.value
    step_message: str = STEP_LABELS[ProcessingStep.QUEUED.value]
    result_id: str | None = None
    error: str | None = None
    file_name: str | None = None


class ExchangeState(BaseModel):
    """Accumulated state of a chat exchange.

    Attributes:
        text: Answer text, append-only while streaming.
        sources: Citations, replaced as a whole batch.
        steps: Ordered trace of reasoning steps and tool activity.
        tool_calls: Ordered tool invocations.
        error: Failure reason once failed.
        prompt: The user message that started the exchange.
    """

    model_config = ConfigDict(frozen=True)

    text: str = ""
    sources: list[Source] = Field(default_factory=list)
    steps: list[ExecutionStep] = Field(default_factory=list)
    tool_calls: list[ToolCall] = Field(default_factory=list)
    error: str | None = None
    prompt: str | None = None


STATE_MODELS: dict[SessionKind, type[TaskState] | type[ExchangeState]] = {
    SessionKind.TASK: TaskState,
    SessionKind.EXCHANGE: ExchangeState,
}


def initial_state(
    kind: SessionKind, seed: dict[str, Any] | None = None
) -> TaskState | ExchangeState:
    """Build the empty state for a session kind, overlaid with seed fields.

    Args:
        kind: Session kind selecting the state model.
        seed: Optional initial field values (e.g. ``file_name``, ``prompt``).

    Returns:
        A validated state model.
    """
    return STATE_MODELS[kind].model_validate(seed or {})


class Session(BaseModel):
    """One tracked unit of streaming work.

    Attributes:
        id: Opaque session identifier.
        kind: Task or exchange; selects the state shape.
        stream_ref: Server-issued identifier used to open or resume the stream.
        status: Lifecycle status.
        state: Kind-specific accumulated payload.
        created_at: Creation time.
        updated_at: Time of the last mutation.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    kind: SessionKind
    stream_ref: str = Field(..., min_length=1)
    status: SessionStatus = SessionStatus.PENDING
    state: TaskState | ExchangeState
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("stream_ref", mode="before")
    @classmethod
    def strip_stream_ref(cls, v: Any) -> Any:
        """Strip whitespace so a blank reference fails min_length."""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("state", mode="before")
    @classmethod
    def state_matches_kind(cls, v: Any, info: ValidationInfo) -> Any:
        """Validate the state payload against the model for the session kind."""
        kind = info.data.get("kind")
        if kind is None:
            raise ValueError("state cannot be validated without a valid kind")
        model = STATE_MODELS[SessionKind(kind)]
        if isinstance(v, model):
            return v
        if isinstance(v, BaseModel):
            raise ValueError(f"state of type {type(v).__name__} does not match kind {kind}")
        return model.model_validate(v)

    @property
    def is_terminal(self) -> bool:
        """Whether the session has reached a final status."""
        return self.status.is_terminal
