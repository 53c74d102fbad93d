from __future__ import annotations

from typing import Optional

import httpx

from .config import RelayConfig


def create_async_client(
    config: RelayConfig,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the shared upstream client for completions and billing lookups."""
    kwargs = {
        "timeout": httpx.Timeout(config.timeout_seconds),
        "follow_redirects": True,
    }
    if transport is not None:
        return httpx.AsyncClient(transport=transport, **kwargs)
    if not config.proxy:
        return httpx.AsyncClient(**kwargs)

    try:
        return httpx.AsyncClient(proxy=config.proxy, **kwargs)
    except TypeError:
        # httpx < 0.26 only knows the plural spelling
        return httpx.AsyncClient(proxies=config.proxy, **kwargs)


__all__ = ["create_async_client"]
