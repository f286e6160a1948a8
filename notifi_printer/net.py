"""Shared outbound HTTP client."""

from __future__ import annotations

import httpx

USER_AGENT = "Notifi-printer (https://github.com/angeloanan/notifi-printer)"


def build_http_client(*, timeout_seconds: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": USER_AGENT},
        timeout=max(5.0, float(timeout_seconds)),
        follow_redirects=True,
        transport=transport,
    )
