"""Pure state transitions for sessions.

``reduce`` folds one normalized event into a session and returns a new
session; ``transition`` applies the lifecycle changes the engine makes on
its own (subscribing, cancelling). Nothing here performs I/O or mutates
its inputs, so every session the engine publishes is a fresh snapshot.

``reduce`` expects a pre-terminal session. Terminal sessions are filtered
out by the engine before an event gets here.
"""

from datetime import datetime

from src.models.events import (
    CompleteEvent,
    ContentDeltaEvent,
    ErrorEvent,
    ReasoningStepEvent,
    SourcesEvent,
    StatusEvent,
    StreamEvent,
    ToolCallCompletedEvent,
    ToolCallStartedEvent,
)
from src.models.session import (
    ExchangeState,
    ExecutionStep,
    Session,
    SessionKind,
    SessionStatus,
    TaskState,
    ToolCall,
    ToolCallStatus,
    step_label,
)

_WAITING = (SessionStatus.PENDING, SessionStatus.CONNECTING)


def _task_status(state: TaskState, event: StatusEvent) -> TaskState:
    progress = event.progress if event.restart else max(state.progress, event.progress)
    return state.model_copy(
        update={
            "progress": progress,
            "current_step": event.current_step,
            "step_message": event.step_message or step_label(event.current_step),
        }
    )


def _tool_started(state: ExchangeState, event: ToolCallStartedEvent) -> ExchangeState:
    call = ToolCall(id=event.call_id, name=event.name, args=event.args)
    step = ExecutionStep(
        type="tool_call", content=f"Calling {event.name}", timestamp=event.received_at
    )
    return state.model_copy(
        update={
            "tool_calls": [*state.tool_calls, call],
            "steps": [*state.steps, step],
        }
    )


def _matches(call: ToolCall, event: ToolCallCompletedEvent) -> bool:
    if call.status != ToolCallStatus.RUNNING:
        return False
    if event.call_id is not None and call.id is not None:
        return call.id == event.call_id
    return call.name == event.name


def _tool_completed(state: ExchangeState, event: ToolCallCompletedEvent) -> ExchangeState:
    tool_calls = list(state.tool_calls)
    # Finalize the oldest running call this completion refers to.
    for index, call in enumerate(tool_calls):
        if _matches(call, event):
            tool_calls[index] = call.model_copy(
                update={
                    "result": event.result,
                    "status": event.status,
                    "args": event.args or call.args,
                }
            )
            break
    else:
        tool_calls.append(
            ToolCall(
                id=event.call_id,
                name=event.name,
                args=event.args,
                result=event.result,
                status=event.status,
            )
        )
    step = ExecutionStep(
        type="tool_result", content=f"{event.name} finished", timestamp=event.received_at
    )
    return state.model_copy(update={"tool_calls": tool_calls, "steps": [*state.steps, step]})


def _reduce_task(session: Session, event: StreamEvent) -> tuple[TaskState, SessionStatus]:
    state = session.state
    status = session.status

    if isinstance(event, StatusEvent):
        state = _task_status(state, event)
    elif isinstance(event, CompleteEvent):
        state = state.model_copy(update={"result_id": event.result_id})
        status = SessionStatus.COMPLETE
    elif isinstance(event, ErrorEvent):
        state = state.model_copy(update={"error": event.message})
        status = SessionStatus.ERROR
    else:
        return state, status

    if status in _WAITING:
        status = SessionStatus.ACTIVE
    return state, status


def _reduce_exchange(
    session: Session, event: StreamEvent
) -> tuple[ExchangeState, SessionStatus]:
    state = session.state
    status = session.status

    if isinstance(event, ContentDeltaEvent):
        state = state.model_copy(update={"text": state.text + event.delta})
    elif isinstance(event, SourcesEvent):
        state = state.model_copy(update={"sources": list(event.sources)})
    elif isinstance(event, ToolCallStartedEvent):
        state = _tool_started(state, event)
    elif isinstance(event, ToolCallCompletedEvent):
        state = _tool_completed(state, event)
    elif isinstance(event, ReasoningStepEvent):
        step = ExecutionStep(
            type=event.step_type, content=event.content, timestamp=event.received_at
        )
        state = state.model_copy(update={"steps": [*state.steps, step]})
    elif isinstance(event, CompleteEvent):
        status = SessionStatus.COMPLETE
    elif isinstance(event, ErrorEvent):
        state = state.model_copy(update={"error": event.message})
        status = SessionStatus.ERROR
    else:
        return state, status

    if status in _WAITING:
        status = SessionStatus.ACTIVE
    return state, status


def reduce(session: Session, event: StreamEvent) -> Session:
    """Fold one event into a session.

    Events that do not apply to the session's kind (e.g. a text delta on a
    task) leave the session unchanged and return it as is.

    Args:
        session: The current, non-terminal session.
        event: A normalized event. ``sources_ref`` must already be resolved
            into a ``sources`` event.

    Returns:
        The updated session, or the same object when nothing changed.
    """
    if session.kind == SessionKind.TASK:
        state, status = _reduce_task(session, event)
    else:
        state, status = _reduce_exchange(session, event)

    if state is session.state and status == session.status:
        return session
    return session.model_copy(
        update={"state": state, "status": status, "updated_at": event.received_at}
    )


def transition(session: Session, status: SessionStatus, at: datetime) -> Session:
    """Apply an engine-driven lifecycle change (subscribe, cancel, restore).

    Args:
        session: The session to update.
        status: The new status.
        at: Timestamp of the change.

    Returns:
        The updated session.
    """
    return session.model_copy(update={"status": status, "updated_at": at})
