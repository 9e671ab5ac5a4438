"""Request and response models for the reference stream server.

These cover the plain request/response calls that hand out stream
references; the streams themselves carry StreamEvent frames.
"""

from pydantic import BaseModel, Field, field_validator


class TaskCreateRequest(BaseModel):
    """Request to start a document ingestion task.

    Attributes:
        file_name: Name of the document being ingested.
    """

    file_name: str = Field(..., min_length=1)

    @field_validator("file_name", mode="before")
    @classmethod
    def strip_file_name(cls, v: str) -> str:
        """Strip whitespace from file name before validation."""
        if isinstance(v, str):
            return v.strip()
        return v


class TaskCreateResponse(BaseModel):
    """Response after an ingestion task was queued.

    Attributes:
        task_id: Stream reference for the task's progress stream.
        status: Initial task status.
        message: Human-readable confirmation.
        file_name: Name of the queued document.
    """

    task_id: str
    status: str = "queued"
    message: str
    file_name: str


class ChatRequest(BaseModel):
    """Request payload for a chat answer stream.

    Attributes:
        message: User's question or prompt.
        thread_id: Optional conversation thread.
    """

    message: str = Field(..., min_length=1)
    thread_id: str | None = None

    @field_validator("message", mode="before")
    @classmethod
    def strip_message(cls, v: str) -> str:
        """Strip whitespace from message before validation."""
        if isinstance(v, str):
            return v.strip()
        return v


class ChatCreateResponse(BaseModel):
    """Response carrying the stream reference for a chat answer.

    Attributes:
        stream_ref: Reference for ``GET /chat/{stream_ref}/stream``.
        thread_id: Conversation thread the answer belongs to.
    """

    stream_ref: str
    thread_id: str
