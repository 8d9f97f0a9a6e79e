"""Client for the service's text generation endpoint.

Request body::

    {"prompt": "<full prompt>", "timestamp": "2026-10-19T08:00:00+00:00"}

The generated text is looked up in this order: ``data.llmResponse``,
``data.response``, ``data`` itself (when it is a string), then a bare string
response body.  Anything else is a :class:`~routinebot.core.exceptions.GenerationError`.

Rate limits surface as :class:`~routinebot.core.exceptions.ServiceRateLimitError`
from the HTTP layer; retrying them is the caller's job.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from routinebot.core.exceptions import GenerationError
from routinebot.service.http_client import ServiceHttpClient

__all__ = ["GenerationClient", "extract_content"]

logger = logging.getLogger(__name__)


def extract_content(payload: Any) -> str | None:
    """Return the generated text in *payload*, or ``None`` if there is none."""
    if isinstance(payload, str):
        return payload or None
    if not isinstance(payload, dict) or not payload.get("success", True):
        return None
    data = payload.get("data")
    if isinstance(data, dict):
        for key in ("llmResponse", "response"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
        return None
    if isinstance(data, str) and data:
        return data
    return None


class GenerationClient:
    """Send prompts to the generation endpoint and return the generated text.

    Args:
        client: Open :class:`ServiceHttpClient`.
        endpoint: Endpoint path, e.g. ``/api/llm/generate``.
        timeout: Per-request timeout in seconds.
        clock: Source of the request timestamp.
    """

    def __init__(
        self,
        client: ServiceHttpClient,
        endpoint: str,
        *,
        timeout: float | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._client = client
        self._endpoint = endpoint
        self._timeout = timeout
        self._clock = clock

    async def generate(self, prompt: str) -> str:
        """Return the text generated for *prompt*.

        Raises:
            GenerationError: If the response carries no usable text.
            ServiceError: On HTTP-level failures (see :mod:`.http_client`).
        """
        payload = await self._client.post_json(
            self._endpoint,
            {"prompt": prompt, "timestamp": self._clock().isoformat()},
            timeout=self._timeout,
        )
        content = extract_content(payload)
        if content is None:
            raise GenerationError("No response received from the generation endpoint")
        logger.debug("Generated %d characters.", len(content))
        return content
