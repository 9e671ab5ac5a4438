"""Reference stream server.

HTTP and streaming routes that hand out stream references and serve them
as Server-Sent Events in the format the session engine consumes.

Endpoints:
    - GET /health: Service health status
    - POST /tasks, GET /tasks/{id}/stream: Ingestion task progress
    - POST /chat, GET /chat/{ref}/stream: Chat answer streaming
    - GET /sources/{ref}: Citation batches delivered by reference
"""

from src.api.app import app, create_app

__all__ = ["app", "create_app"]
