"""Integration tests for components working together as a system.

No mocks for core functionality - the engine talks to the real FastAPI
reference server through httpx's ASGITransport.

Coverage:
    - Task, chat and sources endpoints with real SSE output
    - Full sessions from stream reference to terminal state
"""
