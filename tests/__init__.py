"""Test package for the streaming session engine.

Structure:
    - unit/: Models, reducer, registry, persistence and stream handles
    - integration/: Reference server endpoints and the engine over HTTP

Shared fakes (a scripted stream source and an in-memory citation resolver)
live in conftest.py. Leverages pytest with pytest-check for soft assertions.
"""
