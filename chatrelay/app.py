from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI, Request, Response

from .budget import TokenCounter, count_tokens
from .config import ConfigError, RelayConfig, load_config
from .errors import ErrorKind
from .pipeline import RequestPipeline, error_response

# Ensure our logs are visible even when the host application (for example uvicorn
# started via CLI) did not configure the root logger for INFO-level output.
logger = logging.getLogger(__name__)
if logging.getLogger().getEffectiveLevel() > logging.INFO and not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
logger.setLevel(logging.INFO)


def create_app(
    config_path: str | Path | None = None,
    *,
    config: Optional[RelayConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
    counter: TokenCounter = count_tokens,
) -> FastAPI:
    if config is None:
        try:
            config = load_config(config_path)
        except ConfigError as exc:
            logger.error("Failed to load configuration: %s", exc)
            raise

    pipeline = RequestPipeline(config, client=client, counter=counter)

    app = FastAPI(title="chatrelay", version="0.1.0")
    app.state.pipeline = pipeline

    @app.on_event("startup")
    async def _startup() -> None:
        await pipeline.ensure_client()
        logger.info(
            "chatrelay ready: upstream %s, %s, password %s",
            config.normalized_base_url(),
            "built-in key configured" if config.api_key else "no built-in key",
            "required" if config.password else "not required",
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await pipeline.close()

    @app.post("/api")
    async def generate(request: Request) -> Response:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return error_response(400, "Request body must be valid JSON")
        if not isinstance(payload, dict):
            logger.info("Rejected request (%s): body is not an object", ErrorKind.INVALID_REQUEST.value)
            return error_response(400, "Request body must be a JSON object")
        return await pipeline.handle(payload)

    return app


__all__ = ["create_app"]
