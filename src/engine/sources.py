"""Follow-up fetch for citation batches delivered by reference.

When a citation batch is too large to inline, the stream sends a
``sources_ref`` event and the batch is fetched over plain HTTP before the
event is reduced.
"""

import logging
from collections.abc import Awaitable, Callable

import httpx
from pydantic import TypeAdapter, ValidationError

from src.engine.config import EngineConfig
from src.models.session import Source

logger = logging.getLogger(__name__)

SourcesResolver = Callable[[str], Awaitable[list[Source]]]

_sources_adapter: TypeAdapter[list[Source]] = TypeAdapter(list[Source])


class SourcesResolutionError(Exception):
    """Raised when a referenced citation batch cannot be fetched or read."""

    pass


class HttpSourcesResolver:
    """Fetches citation batches with httpx.

    The endpoint may answer with a JSON list of sources or with an object
    holding them under ``sources``.
    """

    def __init__(self, config: EngineConfig, client: httpx.AsyncClient) -> None:
        self._config = config
        self._client = client

    def url_for(self, ref: str) -> str:
        """Return the fetch URL for a citation reference."""
        if ref.startswith(("http://", "https://")):
            return ref
        return f"{self._config.api_base_url}{self._config.sources_path.format(ref=ref)}"

    async def __call__(self, ref: str) -> list[Source]:
        """Fetch and validate the citation batch for a reference.

        Args:
            ref: Reference carried by the ``sources_ref`` event.

        Returns:
            The citation batch, in server order.

        Raises:
            SourcesResolutionError: If the request fails or the body is invalid.
        """
        headers = {"Accept": "application/json"}
        if self._config.api_token:
            headers["Authorization"] = f"Bearer {self._config.api_token}"

        try:
            response = await self._client.get(self.url_for(ref), headers=headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise SourcesResolutionError(
                f"HTTP {e.response.status_code} fetching sources {ref}"
            ) from e
        except httpx.HTTPError as e:
            raise SourcesResolutionError(f"Failed to fetch sources {ref}: {e}") from e
        except ValueError as e:
            raise SourcesResolutionError(f"Sources {ref} is not valid JSON") from e

        if isinstance(body, dict):
            body = body.get("sources")
        try:
            sources = _sources_adapter.validate_python(body)
        except ValidationError as e:
            raise SourcesResolutionError(f"Sources {ref} has an invalid shape: {e}") from e

        logger.debug(f"Resolved {len(sources)} sources for {ref}")
        return sources
