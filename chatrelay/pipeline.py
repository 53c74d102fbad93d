from __future__ import annotations

import asyncio
import hmac
import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Union

import httpx
from pydantic import ValidationError
from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from .billing import BillingAggregator
from .budget import TokenBudgeter, TokenCounter, count_tokens
from .config import RelayConfig
from .errors import ErrorKind, RelayError, StreamDecodeError, build_error_payload
from .http_client import create_async_client
from .key_pool import pick_random, split_keys
from .schemas import ChatRequest
from .transcoder import EventTranscoder
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

BALANCE_COMMAND = "Check the balance"
PASTED_KEY_PREFIX = "sk-"

STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
}


@dataclass(frozen=True)
class Completion:
    pass


@dataclass(frozen=True)
class BalanceQueryByStoredKey:
    keys: List[str]


@dataclass(frozen=True)
class BalanceQueryByPastedKey:
    keys: List[str]


Command = Union[Completion, BalanceQueryByStoredKey, BalanceQueryByPastedKey]


def classify(content: str, key: str, builtin_key: str) -> Command:
    """Decide what the last message asks for without touching the network."""
    content = content.strip()
    if content.startswith(BALANCE_COMMAND):
        if key == builtin_key:
            raise RelayError(
                ErrorKind.BALANCE_QUERY_DENIED,
                "Fill in your own OpenAI API key to check its balance; "
                "the built-in key will not be queried.",
            )
        keys = split_keys(key)
        if not keys:
            raise RelayError(
                ErrorKind.NO_CREDENTIAL,
                "The OpenAI API key is not filled in, or the key is incorrect.",
            )
        return BalanceQueryByStoredKey(keys)
    if content.startswith(PASTED_KEY_PREFIX):
        return BalanceQueryByPastedKey(split_keys(content))
    return Completion()


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(build_error_payload(message), status_code=status_code)


def _apply_response_headers(target: MutableHeaders, source: Headers) -> None:
    for key, value in source.items():
        if key.lower() in HOP_BY_HOP_HEADERS:
            continue
        target[key] = value


class RequestPipeline:
    def __init__(
        self,
        config: RelayConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
        counter: TokenCounter = count_tokens,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config
        self._client = client
        self._client_lock = asyncio.Lock()
        self._budgeter = TokenBudgeter(config.max_input_tokens, counter)
        self._rng = rng

    @property
    def config(self) -> RelayConfig:
        return self._config

    async def ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = create_async_client(self._config)
            return self._client

    async def close(self) -> None:
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None

    async def handle(self, payload: object) -> Response:
        try:
            return await self._handle(payload)
        except RelayError as exc:
            logger.info("Rejected request (%s): %s", exc.kind.value, exc.message)
            return error_response(exc.status_code, exc.message)

    async def _handle(self, payload: object) -> Response:
        try:
            request = ChatRequest.model_validate(payload)
        except ValidationError as exc:
            raise RelayError(ErrorKind.INVALID_REQUEST, f"Invalid request body: {exc}") from exc

        password = self._config.password
        supplied = (request.password or "").encode("utf-8")
        if password and not hmac.compare_digest(password.encode("utf-8"), supplied):
            raise RelayError(
                ErrorKind.UNAUTHORIZED,
                "The password is incorrect, please contact the webmaster.",
            )

        if not request.messages:
            raise RelayError(ErrorKind.EMPTY_INPUT, "No text was entered.")

        used_builtin_key = not request.key
        key = request.key or self._config.api_key
        command = classify(request.messages[-1].content, key, self._config.api_key)
        if not isinstance(command, Completion):
            return await self._balance(command.keys)

        model = request.model or self._config.default_model
        self._budgeter.enforce(request.messages, model, used_builtin_key)

        api_key = pick_random(split_keys(key), self._rng)
        if api_key is None:
            raise RelayError(
                ErrorKind.NO_CREDENTIAL,
                "The OpenAI API key is not filled in, or the key is incorrect.",
            )

        client = await self.ensure_client()
        upstream = UpstreamClient(client, self._config.normalized_base_url(), self._config.timeout_ms)
        response = await upstream.complete(api_key, model, request.messages, request.temperature)
        if response.is_success:
            return self._build_streaming_response(response)
        try:
            return await self._relay_upstream_error(response)
        finally:
            await response.aclose()

    async def _balance(self, keys: List[str]) -> Response:
        client = await self.ensure_client()
        aggregator = BillingAggregator(client, self._config.normalized_base_url())
        table = await aggregator.aggregate(keys)
        return PlainTextResponse(table)

    @staticmethod
    async def _relay_upstream_error(origin: httpx.Response) -> Response:
        payload = await origin.aread()
        logger.warning(
            "%s: upstream returned %s %s; body preview: %s",
            ErrorKind.UPSTREAM_ERROR.value,
            origin.status_code,
            origin.reason_phrase,
            payload.decode("utf-8", "ignore")[:400],
        )
        response = Response(content=payload, status_code=origin.status_code)
        _apply_response_headers(response.headers, Headers(origin.headers))
        return response

    @staticmethod
    def _build_streaming_response(origin: httpx.Response) -> StreamingResponse:
        async def iterator():
            # closing here also covers a client disconnect mid-stream
            try:
                async for piece in EventTranscoder(origin.aiter_bytes()):
                    yield piece
            except StreamDecodeError as exc:
                logger.error("Aborting completion stream: %s", exc.message)
                raise
            finally:
                await origin.aclose()

        return StreamingResponse(iterator(), media_type=STREAM_MEDIA_TYPE)


__all__ = [
    "BalanceQueryByPastedKey",
    "BalanceQueryByStoredKey",
    "Completion",
    "RequestPipeline",
    "classify",
]
