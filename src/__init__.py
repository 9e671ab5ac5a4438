"""Stream Session Engine - durable client state from server-pushed event streams.

Combines httpx for SSE consumption, Pydantic for event and session
validation, FastAPI for the reference stream server, and NiceGUI for
visualization.

Components:
    - engine: Stream handles, reducer, registry, persistence and orchestration
    - models: Session state and stream event schemas
    - api: Reference server emitting task and chat streams
    - ui: Web interface rendering engine state
"""

__version__ = "0.1.0"
