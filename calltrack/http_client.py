"""Shared HTTP client — connection pooling for all outbound requests.

One module-level httpx.AsyncClient used by the speech-to-text, LLM and
recording-media connectors. Per-request timeout overrides via
http.get(url, timeout=25).

Usage:
    from calltrack.http_client import http
    resp = await http.post(url, json=payload, timeout=30)
"""

import httpx

_LIMITS = httpx.Limits(
    max_connections=50,
    max_keepalive_connections=20,
    keepalive_expiry=30,
)

http = httpx.AsyncClient(
    timeout=30,
    limits=_LIMITS,
    follow_redirects=True,
)


async def close_clients():
    """Shut down the shared client. Call from app lifespan shutdown."""
    try:
        await http.aclose()
    except RuntimeError:
        pass
