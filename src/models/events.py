"""Event model for server-pushed session streams.

Every inbound SSE frame is normalized into one variant of a closed,
discriminated union keyed on ``type``. Normalization is where wire-level
variety is absorbed: tags may arrive in the SSE ``event:`` field or in the
JSON payload's ``type`` key, and older servers use different tag and key
names for the same thing.

Frame handling contract:
    - syntactically invalid JSON, or a known tag whose payload does not
      validate, raises FrameParseError scoped to the session
    - unknown tags are logged and ignored (``parse_frame`` returns None)
    - keep-alive comments and ``[DONE]`` sentinels never reach this module
"""

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from src.models.session import Source, ToolCallStatus, utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Closed set of event tags a stream may emit."""

    STATUS = "status"
    CONTENT_DELTA = "content_delta"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_COMPLETED = "tool_call_completed"
    REASONING_STEP = "reasoning_step"
    SOURCES = "sources"
    SOURCES_REF = "sources_ref"
    COMPLETE = "complete"
    ERROR = "error"


_EVENT_TAGS = frozenset(item.value for item in EventType)


class _BaseEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    received_at: datetime = Field(default_factory=utc_now)


class StatusEvent(_BaseEvent):
    """Task progress update."""

    type: Literal["status"] = "status"
    progress: int
    current_step: str
    step_message: str | None = None
    restart: bool = False

    @field_validator("progress", mode="before")
    @classmethod
    def truncate_progress(cls, v: Any) -> Any:
        """Truncate fractional progress; reject infinities and NaN."""
        if isinstance(v, float):
            if not math.isfinite(v):
                raise ValueError("progress must be a finite number")
            return int(v)
        return v

    @field_validator("progress")
    @classmethod
    def clamp_progress(cls, v: int) -> int:
        """Clamp progress into 0-100 (the pipeline reports -1 for failures)."""
        return max(0, min(100, v))


class ContentDeltaEvent(_BaseEvent):
    """Text chunk to append to an exchange answer."""

    type: Literal["content_delta"] = "content_delta"
    delta: str


class ToolCallStartedEvent(_BaseEvent):
    """A tool call began."""

    type: Literal["tool_call_started"] = "tool_call_started"
    call_id: str | None = None
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolCallCompletedEvent(_BaseEvent):
    """A tool call finished."""

    type: Literal["tool_call_completed"] = "tool_call_completed"
    call_id: str | None = None
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    status: ToolCallStatus = ToolCallStatus.COMPLETE


class ReasoningStepEvent(_BaseEvent):
    """A reasoning or status trace entry for an exchange."""

    type: Literal["reasoning_step"] = "reasoning_step"
    step_type: str = "status"
    content: str


class SourcesEvent(_BaseEvent):
    """Inline citation batch."""

    type: Literal["sources"] = "sources"
    sources: list[Source]


class SourcesRefEvent(_BaseEvent):
    """Citation batch delivered out-of-band; ``ref`` is fetched separately."""

    type: Literal["sources_ref"] = "sources_ref"
    ref: str = Field(..., min_length=1)


class CompleteEvent(_BaseEvent):
    """Terminal success."""

    type: Literal["complete"] = "complete"
    result_id: str | None = None


class ErrorEvent(_BaseEvent):
    """Terminal failure."""

    type: Literal["error"] = "error"
    message: str = "Processing failed"


StreamEvent = Annotated[
    StatusEvent
    | ContentDeltaEvent
    | ToolCallStartedEvent
    | ToolCallCompletedEvent
    | ReasoningStepEvent
    | SourcesEvent
    | SourcesRefEvent
    | CompleteEvent
    | ErrorEvent,
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


@dataclass(frozen=True)
class RawFrame:
    """One SSE frame as read off the wire.

    Attributes:
        event: Value of the ``event:`` field, if any.
        data: Joined ``data:`` lines.
        id: Value of the ``id:`` field, if any.
    """

    data: str
    event: str | None = None
    id: str | None = None


class FrameParseError(Exception):
    """Raised when a frame cannot be turned into an event.

    Scoped to one session; callers drop the frame and keep the stream open.
    """

    def __init__(self, session_id: str, reason: str, tag: str | None = None) -> None:
        self.session_id = session_id
        self.reason = reason
        self.tag = tag
        super().__init__(f"Bad frame for session {session_id} (tag={tag}): {reason}")


# Tags used by older servers, mapped to the canonical set.
_TAG_ALIASES: dict[str, str] = {
    "text": EventType.CONTENT_DELTA.value,
    "token": EventType.CONTENT_DELTA.value,
    "delta": EventType.CONTENT_DELTA.value,
    "step": EventType.REASONING_STEP.value,
    "done": EventType.COMPLETE.value,
    "retrieval": EventType.SOURCES.value,
}


def _first(payload: dict[str, Any], *keys: str) -> Any:
    """Return the first present, non-None value among keys."""
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _resolve_tag(frame: RawFrame, payload: dict[str, Any]) -> str | None:
    tag = frame.event
    if not tag or tag == "message":
        tag = payload.get("type")
    if not isinstance(tag, str):
        return None
    if tag == "tool_call":
        finished = payload.get("result") is not None or payload.get("status") in (
            ToolCallStatus.COMPLETE.value,
            ToolCallStatus.INCOMPLETE.value,
        )
        return (
            EventType.TOOL_CALL_COMPLETED.value
            if finished
            else EventType.TOOL_CALL_STARTED.value
        )
    return _TAG_ALIASES.get(tag, tag)


def _sources_payload(payload: dict[str, Any]) -> Any:
    value = _first(payload, "sources", "documents", "content")
    if value is None and isinstance(payload.get("data"), dict):
        value = _first(payload["data"], "sources", "documents")
    return value


def _normalize_payload(tag: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Map the wire payload for a canonical tag onto event model fields."""
    if tag == EventType.STATUS.value:
        return {
            "progress": payload.get("progress"),
            "current_step": _first(payload, "current_step", "step"),
            "step_message": _first(payload, "step_message", "message"),
            "restart": payload.get("restart", False),
        }
    if tag == EventType.CONTENT_DELTA.value:
        return {"delta": _first(payload, "delta", "content", "token", "text")}
    if tag in (EventType.TOOL_CALL_STARTED.value, EventType.TOOL_CALL_COMPLETED.value):
        normalized = {
            "call_id": _first(payload, "call_id", "id"),
            "name": payload.get("name"),
            "args": payload.get("args") or {},
        }
        if tag == EventType.TOOL_CALL_COMPLETED.value:
            normalized["result"] = payload.get("result")
            if payload.get("status") in (
                ToolCallStatus.COMPLETE.value,
                ToolCallStatus.INCOMPLETE.value,
            ):
                normalized["status"] = payload["status"]
        return normalized
    if tag == EventType.REASONING_STEP.value:
        return {
            "step_type": _first(payload, "step_type", "kind") or "status",
            "content": _first(payload, "content", "message", "text"),
        }
    if tag == EventType.SOURCES.value:
        return {"sources": _sources_payload(payload)}
    if tag == EventType.SOURCES_REF.value:
        return {"ref": _first(payload, "ref", "sources_ref", "url", "id")}
    if tag == EventType.COMPLETE.value:
        return {"result_id": _first(payload, "result_id", "doc_id", "resultId")}
    if tag == EventType.ERROR.value:
        message = _first(payload, "error", "message", "content")
        return {"message": str(message)} if message is not None else {}
    return dict(payload)


def parse_frame(frame: RawFrame, session_id: str) -> StreamEvent | None:
    """Normalize one raw SSE frame into a typed event.

    Args:
        frame: The frame as read from the stream.
        session_id: Session the frame belongs to.

    Returns:
        The normalized event, or None for an unknown tag.

    Raises:
        FrameParseError: If the data is not JSON or the payload is invalid
            for its tag.
    """
    try:
        payload = json.loads(frame.data) if frame.data.strip() else {}
    except json.JSONDecodeError as e:
        raise FrameParseError(session_id, f"invalid JSON: {e}", frame.event) from e

    if not isinstance(payload, dict):
        # A bare list is how some servers send a citation batch.
        if isinstance(payload, list) and frame.event in ("sources", "retrieval"):
            payload = {"sources": payload}
        else:
            raise FrameParseError(session_id, "payload is not a JSON object", frame.event)

    tag = _resolve_tag(frame, payload)
    if tag is None or tag not in _EVENT_TAGS:
        logger.info(f"Ignoring unknown event tag {tag!r} for session {session_id}")
        return None

    fields = _normalize_payload(tag, payload)
    try:
        return _event_adapter.validate_python(
            {"type": tag, "session_id": session_id, **fields}
        )
    except ValidationError as e:
        raise FrameParseError(session_id, str(e), tag) from e


def transport_error(session_id: str, message: str) -> ErrorEvent:
    """Build the error event used to surface a transport failure."""
    return ErrorEvent(session_id=session_id, message=message)
