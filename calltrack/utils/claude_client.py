"""Claude API client — schema-constrained output via a forced tool call.

Usage:
    from calltrack.utils.claude_client import claude_structured
    result = await claude_structured(
        prompt="speaker0: Thanks for calling ...",
        schema=ROLES_SCHEMA,
        system="You assign roles in a two-party dealership phone call.",
    )
"""

import asyncio
import logging
from typing import Any

from ..config import settings
from ..http_client import http

log = logging.getLogger("calltrack.claude")

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"

MODELS = {
    "fast": "claude-haiku-4-5-20251001",
    "smart": "claude-sonnet-4-5-20250929",
}

RETRYABLE_STATUSES = {429, 500, 502, 503, 504, 529}
MAX_RETRIES = 3
BASE_DELAY = 1.0  # seconds


def _headers() -> dict:
    return {
        "x-api-key": settings.anthropic_api_key,
        "anthropic-version": API_VERSION,
        "content-type": "application/json",
    }


async def claude_structured(
    prompt: str,
    schema: dict,
    *,
    system: str = "",
    model_tier: str = "fast",
    max_tokens: int = 512,
    temperature: float = 0,
    timeout: int = 30,
) -> dict | None:
    """Call Claude and return the forced tool input, or None on any failure.

    Args:
        prompt: User message content
        schema: JSON Schema the tool input must conform to
        system: System prompt
        model_tier: "fast" (Haiku) or "smart" (Sonnet)
        max_tokens: Max output tokens
        temperature: Sampling temperature (0 for classification)
        timeout: Request timeout seconds

    Returns:
        Parsed dict conforming to schema, or None on failure
    """
    if not settings.anthropic_api_key:
        return None

    body: dict[str, Any] = {
        "model": MODELS.get(model_tier, MODELS["fast"]),
        "max_tokens": max_tokens,
        "temperature": temperature,
        "messages": [{"role": "user", "content": prompt}],
        "tools": [
            {
                "name": "structured_output",
                "description": "Return structured data matching the required schema.",
                "input_schema": schema,
            }
        ],
        "tool_choice": {"type": "tool", "name": "structured_output"},
    }
    if system:
        body["system"] = system

    for attempt in range(MAX_RETRIES):
        try:
            resp = await http.post(API_URL, headers=_headers(), json=body, timeout=timeout)

            if resp.status_code in RETRYABLE_STATUSES and attempt < MAX_RETRIES - 1:
                delay = BASE_DELAY * (2 ** attempt)
                log.warning(f"Claude API {resp.status_code} (attempt {attempt + 1}), retry in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            if resp.status_code != 200:
                log.warning(f"Claude API {resp.status_code}: {resp.text[:200]}")
                return None

            for block in resp.json().get("content", []):
                if block.get("type") == "tool_use" and block.get("name") == "structured_output":
                    return block.get("input")

            log.warning("Claude structured output: no tool_use block in response")
            return None

        except Exception as e:
            if attempt < MAX_RETRIES - 1:
                delay = BASE_DELAY * (2 ** attempt)
                log.warning(f"Claude call failed (attempt {attempt + 1}), retry in {delay:.1f}s: {e}")
                await asyncio.sleep(delay)
                continue
            log.warning(f"Claude structured call failed: {e}")
            return None

    return None
