from __future__ import annotations

import asyncio
import logging
from typing import Sequence

import httpx

from .errors import ErrorKind, RelayError
from .key_pool import mask_key
from .schemas import ChatMessage

logger = logging.getLogger(__name__)

COMPLETIONS_PATH = "/v1/chat/completions"


class UpstreamClient:
    """Opens streaming chat completions against the configured provider."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout_ms: int) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._timeout_ms = timeout_ms

    @property
    def completions_url(self) -> str:
        return f"{self._base_url}{COMPLETIONS_PATH}"

    async def complete(
        self,
        api_key: str,
        model: str,
        messages: Sequence[ChatMessage],
        temperature: float,
    ) -> httpx.Response:
        """Send the completion request and return the response once headers arrive.

        The response is left open in streaming mode; the caller owns closing it.
        Non-success statuses are returned as-is so they can be relayed.
        """
        timeout_value = self._timeout_ms / 1000
        # The body may stream for a long time, only the initial response is bounded.
        request_timeout = httpx.Timeout(
            connect=timeout_value,
            read=None,
            write=timeout_value,
            pool=timeout_value,
        )
        request = self._client.build_request(
            "POST",
            self.completions_url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            json={
                "model": model,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "temperature": temperature,
                "stream": True,
            },
            timeout=request_timeout,
        )
        logger.info("POST %s model=%s key=%s", COMPLETIONS_PATH, model, mask_key(api_key))
        try:
            return await asyncio.wait_for(
                self._client.send(request, stream=True),
                timeout=timeout_value,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("Upstream completion timed out after %sms", self._timeout_ms)
            raise RelayError(
                ErrorKind.TIMEOUT,
                f"Request to upstream timed out after {self._timeout_ms}ms",
            ) from exc
        except httpx.RequestError as exc:
            reason = f"{type(exc).__name__}: {exc}"
            logger.warning("Upstream completion failed with %s", reason)
            raise RelayError(ErrorKind.UPSTREAM_UNAVAILABLE, reason) from exc


__all__ = ["UpstreamClient", "COMPLETIONS_PATH"]
