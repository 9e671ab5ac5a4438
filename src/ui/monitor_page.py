"""NiceGUI session monitor with upload notifications and chat.

The page never touches stream state directly: it asks the reference server
for stream references, hands them to a SessionEngine and re-renders from the
sessions the engine publishes. In-flight sessions are persisted in the
browser tab's storage, so a reload resumes their streams.
"""

import html
import logging
import re

import httpx
from nicegui import Client, app, ui

from src.engine.config import EngineConfig, get_engine_config
from src.engine.engine import SessionEngine, SessionListener
from src.engine.persistence import SessionStore
from src.models.session import Session, SessionKind, SessionStatus

logger = logging.getLogger(__name__)

STATUS_COLORS = {
    SessionStatus.PENDING: "grey",
    SessionStatus.CONNECTING: "grey",
    SessionStatus.ACTIVE: "primary",
    SessionStatus.COMPLETE: "positive",
    SessionStatus.ERROR: "negative",
    SessionStatus.CANCELLED: "warning",
}


def markdown_to_html(text: str) -> str:
    """Convert the markdown subset used in answers to HTML.

    Supports: bold, italic, inline code, code blocks, links.
    """
    text = html.escape(text, quote=False)

    text = re.sub(
        r"```(\w*)\n?([\s\S]*?)```",
        r'<pre class="bg-gray-800 text-gray-100 rounded p-3 my-2 text-xs"><code>\2</code></pre>',
        text,
    )
    text = re.sub(r"`([^`]+)`", r'<code class="bg-gray-200 px-1 rounded text-xs">\1</code>', text)
    text = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", text)
    text = re.sub(r"\*([^*]+)\*", r"<em>\1</em>", text)
    text = re.sub(
        r"\[([^\]]+)\]\(([^)]+)\)",
        r'<a href="\2" class="text-blue-600 underline" target="_blank">\1</a>',
        text,
    )
    return text.replace("\n", "<br>")


async def request_stream_ref(config: EngineConfig, path: str, payload: dict) -> dict:
    """POST to the server and return the JSON body carrying a stream reference.

    Raises:
        httpx.HTTPError: If the request fails.
    """
    headers = {}
    if config.api_token:
        headers["Authorization"] = f"Bearer {config.api_token}"
    async with httpx.AsyncClient(timeout=config.connect_timeout) as client:
        response = await client.post(f"{config.api_base_url}{path}", json=payload, headers=headers)
        response.raise_for_status()
        return response.json()


def bind_to_client(client: Client, engine: SessionEngine, listener: SessionListener) -> None:
    """Subscribe a page listener for the lifetime of its client.

    Teardown waits for client deletion, not disconnection: NiceGUI also
    reports brief websocket drops as disconnects and the page survives them.
    """
    unsubscribe = engine.on_change(listener)

    async def teardown() -> None:
        unsubscribe()
        await engine.aclose()

    client.on_delete(teardown)


def render_task(engine: SessionEngine, session: Session) -> None:
    state = session.state
    with ui.card().classes("w-full"):
        with ui.row().classes("w-full items-center justify-between"):
            ui.label(state.file_name or session.id).classes("font-medium")
            ui.badge(session.status.value, color=STATUS_COLORS[session.status])
        ui.linear_progress(value=state.progress / 100, show_value=False)
        if session.status == SessionStatus.ERROR:
            ui.label(state.error or "Processing failed").classes("text-sm text-red-600")
        elif session.status == SessionStatus.COMPLETE:
            ui.label(f"Document id: {state.result_id}").classes("text-sm text-gray-500")
        else:
            ui.label(state.step_message).classes("text-sm text-gray-500")
        with ui.row().classes("gap-2"):
            if not session.is_terminal:
                ui.button("Cancel", on_click=lambda: engine.cancel(session.id)).props("flat dense")
            ui.button("Dismiss", on_click=lambda: engine.remove(session.id)).props("flat dense")


def render_exchange(engine: SessionEngine, session: Session) -> None:
    state = session.state
    with ui.column().classes("w-full gap-2"):
        if state.prompt:
            ui.label(state.prompt).classes("self-end bg-indigo-500 text-white rounded-lg px-3 py-2")
        with ui.element("div").classes("bg-gray-100 rounded-lg px-3 py-2 w-full"):
            if state.text:
                ui.html(markdown_to_html(state.text), sanitize=False).classes("text-sm")
            elif state.steps:
                ui.label(state.steps[-1].content).classes("text-sm italic text-gray-500")
            else:
                ui.label("Thinking...").classes("text-sm italic text-gray-500")
            if session.status == SessionStatus.ERROR:
                ui.label(f"Error: {state.error}").classes("text-sm text-red-600")
        if state.sources:
            with ui.expansion(f"Sources ({len(state.sources)})").classes("w-full text-sm"):
                for source in state.sources:
                    ui.label(f"{source.name or source.id}: {source.content or ''}").classes(
                        "text-xs text-gray-600"
                    )
        if not session.is_terminal:
            ui.button("Stop", on_click=lambda: engine.cancel(session.id)).props("flat dense")


@ui.page("/")
async def monitor_page() -> None:
    """Main page: upload notifications and chat driven by one engine per tab."""
    await ui.context.client.connected()

    config = get_engine_config()
    store = SessionStore(app.storage.tab, namespace=config.store_namespace)
    engine = SessionEngine(config, store=store)

    @ui.refreshable
    def task_list() -> None:
        tasks = [s for s in engine.sessions() if s.kind == SessionKind.TASK]
        if not tasks:
            ui.label("No uploads yet").classes("text-gray-400")
        for session in tasks:
            render_task(engine, session)

    @ui.refreshable
    def exchange_list() -> None:
        for session in engine.sessions():
            if session.kind == SessionKind.EXCHANGE:
                render_exchange(engine, session)

    client = ui.context.client

    def on_session_change(session: Session) -> None:
        # Engine callbacks run in stream tasks, outside the page context.
        with client:
            if session.kind == SessionKind.TASK:
                task_list.refresh()
                if session.status == SessionStatus.COMPLETE:
                    ui.notify(f"{session.state.file_name} processed", type="positive")
                elif session.status == SessionStatus.ERROR:
                    ui.notify(session.state.error or "Processing failed", type="negative")
            else:
                exchange_list.refresh()

    bind_to_client(client, engine, on_session_change)

    async def start_upload() -> None:
        file_name = file_input.value.strip()
        if not file_name:
            return
        file_input.value = ""
        try:
            body = await request_stream_ref(config, "/tasks", {"file_name": file_name})
        except httpx.HTTPError as e:
            ui.notify(f"Upload failed: {e}", type="negative")
            return
        # Re-running the same file supersedes its previous session.
        engine.start(
            SessionKind.TASK,
            body["task_id"],
            seed={"file_name": file_name},
            session_id=f"upload-{file_name}",
        )

    async def send_message() -> None:
        text = message_input.value.strip()
        if not text:
            return
        message_input.value = ""
        try:
            body = await request_stream_ref(config, "/chat", {"message": text})
        except httpx.HTTPError as e:
            ui.notify(f"Chat request failed: {e}", type="negative")
            return
        engine.start(SessionKind.EXCHANGE, body["stream_ref"], seed={"prompt": text})

    with ui.row().classes("w-full max-w-5xl mx-auto p-4 gap-6 items-start no-wrap"):
        with ui.column().classes("w-1/3 gap-3"):
            ui.label("Uploads").classes("text-lg font-semibold")
            with ui.row().classes("w-full items-center no-wrap"):
                file_input = ui.input(placeholder="report.pdf").classes("flex-grow")
                ui.button(icon="upload", on_click=start_upload).props("round unelevated")
            task_list()
            ui.button("Clear completed", on_click=engine.clear_completed).props("flat dense")

        with ui.column().classes("flex-grow gap-3"):
            ui.label("Chat").classes("text-lg font-semibold")
            with ui.scroll_area().classes("w-full h-96 bg-gray-50 rounded"):
                exchange_list()
            with ui.row().classes("w-full items-end no-wrap"):
                message_input = (
                    ui.textarea(placeholder="Ask about your documents...")
                    .props("autogrow dense rows=1")
                    .classes("flex-grow")
                    .on("keydown.enter.prevent", send_message)
                )
                ui.button(icon="send", on_click=send_message).props("round unelevated")

    restored = engine.restore()
    if restored:
        logger.info(f"Resumed {len(restored)} session(s) for this tab")


def main() -> None:
    ui.run(title="Stream Session Monitor", port=8080, reload=False)


if __name__ == "__main__":
    main()
