"""Pydantic models for sessions and stream events.

Provides type safety and validation for everything that crosses the wire
or the persistence boundary.

Models:
    - Session: One tracked unit of streamed work (task or exchange)
    - TaskState / ExchangeState: Kind-specific accumulated state
    - Source, ToolCall, ExecutionStep: Exchange trace entries
    - StreamEvent: Discriminated union of normalized stream events
"""

from src.models.events import (
    CompleteEvent,
    ContentDeltaEvent,
    ErrorEvent,
    EventType,
    FrameParseError,
    RawFrame,
    ReasoningStepEvent,
    SourcesEvent,
    SourcesRefEvent,
    StatusEvent,
    StreamEvent,
    ToolCallCompletedEvent,
    ToolCallStartedEvent,
    parse_frame,
)
from src.models.session import (
    STEP_LABELS,
    ExchangeState,
    ExecutionStep,
    ProcessingStep,
    Session,
    SessionKind,
    SessionStatus,
    Source,
    TaskState,
    ToolCall,
    ToolCallStatus,
)

__all__ = [
    "STEP_LABELS",
    "CompleteEvent",
    "ContentDeltaEvent",
    "ErrorEvent",
    "EventType",
    "ExchangeState",
    "ExecutionStep",
    "FrameParseError",
    "ProcessingStep",
    "RawFrame",
    "ReasoningStepEvent",
    "Session",
    "SessionKind",
    "SessionStatus",
    "Source",
    "SourcesEvent",
    "SourcesRefEvent",
    "StatusEvent",
    "StreamEvent",
    "TaskState",
    "ToolCall",
    "ToolCallCompletedEvent",
    "ToolCallStartedEvent",
    "parse_frame",
]
