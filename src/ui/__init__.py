"""NiceGUI interface - thin visualization layer for streamed sessions.

Responsibilities:
    - Upload notifications with live ingestion progress
    - Chat answers with citations and tool activity as they stream
    - Per-tab persistence so a reload resumes in-flight streams

Contains no stream logic. Renders the sessions published by the engine.
"""
