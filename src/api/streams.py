"""Reference stream endpoints.

Hands out stream references and serves them as Server-Sent Events in the
wire format the session engine consumes. The ingestion pipeline and the
chat answers are scripted, which makes the server useful for local runs of
the UI and for end-to-end tests of the engine.

Endpoints:
    - POST /tasks: Queue an ingestion task, returns its task id
    - GET /tasks/{task_id}/stream: Task progress stream
    - POST /chat: Queue a chat answer, returns its stream reference
    - GET /chat/{stream_ref}/stream: Chat answer stream
    - GET /sources/{ref}: Citation batch announced by a ``sources_ref`` frame
"""

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from src.models.schemas import ChatCreateResponse, ChatRequest, TaskCreateRequest, TaskCreateResponse
from src.models.session import STEP_LABELS, ProcessingStep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["streams"])

# Progress reported when each pipeline step starts
STEP_PROGRESS: dict[ProcessingStep, int] = {
    ProcessingStep.QUEUED: 0,
    ProcessingStep.READING: 10,
    ProcessingStep.CLASSIFYING: 25,
    ProcessingStep.EXTRACTING: 45,
    ProcessingStep.RESOLVING_ENTITY: 60,
    ProcessingStep.EMBEDDING: 75,
    ProcessingStep.CREATING_NODE: 85,
    ProcessingStep.CREATING_RELATIONSHIPS: 95,
}

# Citation batches larger than this are sent by reference
INLINE_SOURCES_LIMIT = 3

# Words per content_delta frame
CHUNK_WORDS = 3


@dataclass
class StreamBackend:
    """In-memory bookkeeping for the reference server."""

    step_delay: float = 0.5
    tasks: dict[str, str] = field(default_factory=dict)
    chats: dict[str, ChatRequest] = field(default_factory=dict)
    sources: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    documents: list[dict[str, str]] = field(default_factory=list)


def get_backend(request: Request) -> StreamBackend:
    """Return the backend attached to the running application."""
    return request.app.state.stream_backend


def format_sse(event: str, data: dict[str, Any] | list[Any], event_id: int) -> str:
    """Format one SSE frame."""
    body = json.dumps(data, ensure_ascii=False)
    return f"id: {event_id}\nevent: {event}\ndata: {body}\n\n"


def _sse_response(frames: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/tasks", response_model=TaskCreateResponse)
async def create_task(
    payload: TaskCreateRequest, backend: StreamBackend = Depends(get_backend)
) -> TaskCreateResponse:
    """Queue a document ingestion task.

    Args:
        payload: The document to ingest.

    Returns:
        TaskCreateResponse with the task id used to open the progress stream.
    """
    task_id = uuid.uuid4().hex
    backend.tasks[task_id] = payload.file_name
    logger.info(f"Queued ingestion task {task_id} for {payload.file_name}")
    return TaskCreateResponse(
        task_id=task_id,
        message="Document queued for processing",
        file_name=payload.file_name,
    )


async def _task_frames(backend: StreamBackend, task_id: str) -> AsyncIterator[str]:
    file_name = backend.tasks[task_id]
    event_id = 0
    # A file name containing "corrupt" fails during extraction.
    fails = "corrupt" in file_name.lower()

    for step, progress in STEP_PROGRESS.items():
        event_id += 1
        yield format_sse(
            "status",
            {
                "task_id": task_id,
                "status": "processing",
                "progress": progress,
                "current_step": step.value,
                "step_message": STEP_LABELS[step.value],
                "file_name": file_name,
            },
            event_id,
        )
        await asyncio.sleep(backend.step_delay)
        if fails and step == ProcessingStep.EXTRACTING:
            yield format_sse(
                "error",
                {"task_id": task_id, "error": f"Could not extract text from {file_name}"},
                event_id + 1,
            )
            return

    doc_id = f"doc_{task_id[:8]}"
    backend.documents.append({"id": doc_id, "name": file_name})
    yield format_sse(
        "complete",
        {"task_id": task_id, "status": "completed", "progress": 100, "doc_id": doc_id},
        event_id + 1,
    )


@router.get("/tasks/{task_id}/stream")
async def stream_task(
    task_id: str, backend: StreamBackend = Depends(get_backend)
) -> StreamingResponse:
    """Stream ingestion progress for a task.

    Raises:
        404: Unknown task id.
    """
    if task_id not in backend.tasks:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return _sse_response(_task_frames(backend, task_id))


@router.post("/chat", response_model=ChatCreateResponse)
async def create_chat(
    payload: ChatRequest, backend: StreamBackend = Depends(get_backend)
) -> ChatCreateResponse:
    """Queue a chat answer and return its stream reference."""
    stream_ref = uuid.uuid4().hex
    backend.chats[stream_ref] = payload
    return ChatCreateResponse(
        stream_ref=stream_ref,
        thread_id=payload.thread_id or uuid.uuid4().hex,
    )


def _citations(backend: StreamBackend, question: str) -> list[dict[str, Any]]:
    documents = backend.documents or [{"id": "kb_default", "name": "Knowledge base"}]
    return [
        {
            "id": doc["id"],
            "type": "text",
            "name": doc["name"],
            "content": f"Passage from {doc['name']} relevant to: {question}",
            "score": round(1.0 - index * 0.1, 2),
            "metadata": {"rank": index + 1},
        }
        for index, doc in enumerate(documents)
    ]


async def _chat_frames(backend: StreamBackend, stream_ref: str) -> AsyncIterator[str]:
    request = backend.chats[stream_ref]
    event_id = 1
    yield format_sse("reasoning_step", {"content": "Searching documents..."}, event_id)

    call_id = f"call_{stream_ref[:8]}"
    args = {"query": request.message}
    event_id += 1
    yield format_sse(
        "tool_call_started", {"call_id": call_id, "name": "search", "args": args}, event_id
    )
    await asyncio.sleep(backend.step_delay)

    citations = _citations(backend, request.message)
    event_id += 1
    yield format_sse(
        "tool_call_completed",
        {"call_id": call_id, "name": "search", "args": args, "result": {"hits": len(citations)}},
        event_id,
    )

    event_id += 1
    if len(citations) > INLINE_SOURCES_LIMIT:
        ref = uuid.uuid4().hex
        backend.sources[ref] = citations
        yield format_sse("sources_ref", {"ref": ref}, event_id)
    else:
        yield format_sse("sources", {"sources": citations}, event_id)

    words = f"Based on {len(citations)} source(s), here is what I found about: {request.message}".split(" ")
    for start in range(0, len(words), CHUNK_WORDS):
        chunk = " ".join(words[start : start + CHUNK_WORDS])
        if start + CHUNK_WORDS < len(words):
            chunk += " "
        event_id += 1
        yield format_sse("content_delta", {"delta": chunk}, event_id)
        await asyncio.sleep(backend.step_delay / 5)

    event_id += 1
    yield format_sse("complete", {}, event_id)


@router.get("/chat/{stream_ref}/stream")
async def stream_chat(
    stream_ref: str, backend: StreamBackend = Depends(get_backend)
) -> StreamingResponse:
    """Stream a chat answer.

    Raises:
        404: Unknown stream reference.
    """
    if stream_ref not in backend.chats:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Stream not found")
    return _sse_response(_chat_frames(backend, stream_ref))


@router.get("/sources/{ref}")
async def get_sources(
    ref: str, backend: StreamBackend = Depends(get_backend)
) -> dict[str, list[dict[str, Any]]]:
    """Return a citation batch announced by a ``sources_ref`` frame.

    Raises:
        404: Unknown reference.
    """
    if ref not in backend.sources:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sources not found")
    return {"sources": backend.sources[ref]}
