"""Module reasoning_client: HTTP client for the external reasoning service."""
#
# PURPOSE:
# The agent bridge treats the AI as an opaque question → answer service.
# One round-trip is a POST of {"question": prompt} to a prediction endpoint
# (Flowise-compatible); the reply is JSON with a "text" field holding the
# model's free-text answer.
#

from __future__ import annotations

import json
import logging
from typing import Dict, Optional

import httpx

from pentrelay.base.config import AIConfig, get_config
from pentrelay.errors import AIRequestFailed, AIResponseMalformed, ErrorCode

logger = logging.getLogger(__name__)


def resolve_endpoint(
    endpoint: Optional[str] = None,
    flowise_endpoint: Optional[str] = None,
    chatflow_id: Optional[str] = None,
    default: Optional[str] = None,
) -> str:
    """
    Pick the prediction URL.

    An explicit endpoint wins; otherwise a Flowise base URL plus chatflow id
    becomes {base}/api/v1/prediction/{id}; otherwise the configured default.
    """
    if endpoint and endpoint.strip():
        return endpoint.strip()
    if flowise_endpoint and chatflow_id:
        return f"{flowise_endpoint.rstrip('/')}/api/v1/prediction/{chatflow_id.strip()}"
    return default or get_config().ai.endpoint


class ReasoningClient:
    """
    Async client for one prediction endpoint.

    Args:
        endpoint: Full prediction URL
        api_key: Optional bearer token
        timeout: Seconds allowed per round-trip
        http_client: Injected httpx.AsyncClient (tests pass one with a MockTransport)
    """

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else get_config().ai.request_timeout
        self._client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_settings(
        cls,
        endpoint: Optional[str] = None,
        flowise_endpoint: Optional[str] = None,
        chatflow_id: Optional[str] = None,
        api_key: Optional[str] = None,
        config: Optional[AIConfig] = None,
    ) -> "ReasoningClient":
        cfg = config or get_config().ai
        url = resolve_endpoint(endpoint, flowise_endpoint, chatflow_id, default=cfg.endpoint)
        return cls(url, api_key=api_key or None, timeout=cfg.request_timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def ask(self, question: str) -> str:
        """
        Send one question and return the reply's `text`.

        Raises:
            AIRequestFailed: network error, timeout or non-2xx status
            AIResponseMalformed: body is not JSON or has no text field
        """
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)

        logger.info(f"[Reasoning] POST {self.endpoint} ({len(question)} chars)")
        try:
            resp = await self._client.post(
                self.endpoint,
                json={"question": question},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise AIRequestFailed(
                f"Reasoning service timed out after {self.timeout:g}s",
                code=ErrorCode.AI_TIMEOUT,
                details={"endpoint": self.endpoint, "error": str(e)},
            )
        except httpx.HTTPError as e:
            raise AIRequestFailed(
                f"Reasoning service request failed: {e}",
                details={"endpoint": self.endpoint},
            )

        if resp.status_code >= 400:
            raise AIRequestFailed(
                f"Reasoning service returned HTTP {resp.status_code}",
                details={"endpoint": self.endpoint, "status": resp.status_code, "body": resp.text[:500]},
            )

        try:
            body = resp.json()
        except (json.JSONDecodeError, ValueError):
            raise AIResponseMalformed(
                "Reasoning service returned a non-JSON body",
                details={"endpoint": self.endpoint, "body": resp.text[:500]},
            )

        text = body.get("text") if isinstance(body, dict) else None
        if not isinstance(text, str):
            raise AIResponseMalformed(
                "Reasoning service response has no 'text' field",
                details={"endpoint": self.endpoint},
            )
        return text

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
