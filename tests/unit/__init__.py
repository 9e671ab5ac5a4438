"""Unit tests for individual components in isolation.

Coverage:
    - models/: Frame normalization and event validation
    - engine/: Reducer, registry, persistence, stream handles, engine pipeline
    - config: Environment loading and validation

Streams are driven by a scripted source, HTTP by httpx.MockTransport.
Leverages pytest-check for multiple assertions per test.
"""
