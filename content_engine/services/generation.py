import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from content_engine.domain.errors import ConfigurationError, GenerationError
from content_engine.domain.models import JobContext
from content_engine.domain.payloads import HydrationPayload, encode_payload
from content_engine.settings import settings

logger = logging.getLogger(__name__)

# Anything that turns a decoded payload into generated content.
Generator = Callable[[HydrationPayload, JobContext], Awaitable[dict[str, Any]]]


class HttpContentGenerator:
    """
    Calls the AI content service over HTTP.

    The request carries the job type, the target and the normalised payload;
    the response body must be a JSON object, which becomes the job result.
    """

    def __init__(
        self,
        endpoint_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint_url = endpoint_url or settings.AI_ENDPOINT_URL
        if not self.endpoint_url:
            raise ConfigurationError("AI_ENDPOINT_URL is not configured")
        self.api_key = api_key if api_key is not None else settings.AI_API_KEY
        self.client = client or httpx.AsyncClient(timeout=timeout or settings.AI_CALL_TIMEOUT_SECONDS)

    def _build_headers(self, context: JobContext) -> dict[str, str]:
        headers = {"X-Job-ID": str(context.job_id), "X-Run-ID": str(context.run_id)}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def __call__(self, payload: HydrationPayload, context: JobContext) -> dict[str, Any]:
        body = {
            "job_type": str(context.job_type),
            "entity_id": context.entity_id,
            "attempt": context.attempt,
            "payload": encode_payload(payload),
        }
        try:
            resp = await self.client.post(self.endpoint_url, json=body, headers=self._build_headers(context))
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise GenerationError(
                f"AI service rejected {context.job_type} for {context.entity_id}: HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise GenerationError(f"AI service call failed: {e}") from e

        if not isinstance(data, dict):
            raise GenerationError("AI service returned a non-object body")
        logger.debug("Generated %s content for %s", context.job_type, context.entity_id)
        return data

    async def close(self):
        await self.client.aclose()
