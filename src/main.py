"""Main application entry point.

Run modes (``RUN_MODE``):
    - integrated: reference stream server on port 8000 with the NiceGUI
      session monitor mounted on it (default)
    - separate: server on port 8000, monitor on port 8080, as two processes
    - resume: no server; restore the in-flight sessions persisted in
      ``SESSION_STORE_PATH`` and follow them until they finish

Environment variables are loaded from .env.
"""

import logging
import os
import sys

from dotenv import load_dotenv

# Load environment variables before any other imports that might need them
load_dotenv()

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure root logging from ``LOG_LEVEL``."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def run_integrated() -> None:
    """Serve the stream routes and the monitor page from one uvicorn process."""
    import uvicorn
    from nicegui import ui

    from src.api.app import create_app
    from src.ui.monitor_page import monitor_page  # noqa: F401 - Registers the page

    app = create_app()
    ui.run_with(
        app,
        title="Stream Session Monitor",
        storage_secret=os.getenv("NICEGUI_STORAGE_SECRET", "stream-session-secret"),
    )

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"Stream server and monitor on http://localhost:{port} (docs at /docs)")
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


def run_separate() -> None:
    """Run the stream server and the monitor as two child processes.

    Stops both as soon as either exits.
    """
    import subprocess
    import time

    host = os.getenv("HOST", "0.0.0.0")
    commands = {
        "stream server": [
            sys.executable, "-m", "uvicorn", "src.api.app:app",
            "--host", host, "--port", "8000", "--reload",
        ],
        "session monitor": [
            sys.executable, "-c", "from src.ui.monitor_page import main; main()",
        ],
    }

    processes = {}
    for name, command in commands.items():
        logger.info(f"Starting {name}")
        processes[name] = subprocess.Popen(command)

    try:
        while all(proc.poll() is None for proc in processes.values()):
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        for proc in processes.values():
            proc.terminate()
        for proc in processes.values():
            proc.wait()


def run_resume() -> None:
    """Resume persisted in-flight sessions and log them until they finish."""
    import asyncio

    from src.engine.config import get_engine_config
    from src.engine.engine import SessionEngine
    from src.models.session import Session, SessionKind

    config = get_engine_config()
    if config.store_path is None:
        logger.error("SESSION_STORE_PATH is not set; nothing to resume")
        return

    def log_change(session: Session) -> None:
        if session.kind == SessionKind.TASK:
            detail = f"{session.state.progress}% {session.state.step_message}"
        else:
            detail = f"{len(session.state.text)} chars, {len(session.state.sources)} sources"
        logger.info(f"[{session.id}] {session.status.value}: {detail}")

    async def follow() -> None:
        engine = SessionEngine(config)
        engine.on_change(log_change)
        session_ids = engine.restore()
        if not session_ids:
            logger.info(f"No in-flight sessions in {config.store_path}")
        try:
            for session_id in session_ids:
                await engine.wait(session_id)
        finally:
            await engine.aclose()

    asyncio.run(follow())


RUN_MODES = {
    "integrated": run_integrated,
    "separate": run_separate,
    "resume": run_resume,
}


def main() -> None:
    """Application entry point.

    Selects the run mode from ``RUN_MODE`` (integrated, separate or resume).
    """
    configure_logging()
    mode = os.getenv("RUN_MODE", "integrated").lower()
    runner = RUN_MODES.get(mode)
    if runner is None:
        logger.error(f"Unknown RUN_MODE {mode!r}; expected one of {', '.join(RUN_MODES)}")
        sys.exit(2)

    logger.info(f"Starting stream session engine in {mode} mode")
    runner()


if __name__ == "__main__":
    main()
