"""
test_claude_client.py — Tests for calltrack/utils/claude_client.py

Covers: forced tool-call request shape, tool input extraction, and the
None-on-failure contract (no key, non-200, missing tool block, retries).

Called by: pytest
Depends on: calltrack/utils/claude_client.py
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from calltrack.config import settings
from calltrack.utils.claude_client import claude_structured

SCHEMA = {"type": "object", "properties": {"intent": {"type": "string"}}}


def _tool_response(payload):
    return httpx.Response(
        200,
        json={"content": [{"type": "tool_use", "name": "structured_output", "input": payload}]},
    )


@pytest.fixture()
def api_key():
    with (
        patch.object(settings, "anthropic_api_key", "sk-test"),
        patch("calltrack.utils.claude_client.BASE_DELAY", 0),
    ):
        yield


async def test_no_key_returns_none():
    with patch.object(settings, "anthropic_api_key", ""), patch("calltrack.utils.claude_client.http") as http:
        assert await claude_structured("hi", SCHEMA) is None
        http.post.assert_not_called()


async def test_returns_tool_input(api_key):
    with patch("calltrack.utils.claude_client.http") as http:
        http.post = AsyncMock(return_value=_tool_response({"intent": "Appointment"}))

        result = await claude_structured("call text", SCHEMA, system="classify")

    assert result == {"intent": "Appointment"}
    body = http.post.call_args.kwargs["json"]
    assert body["tool_choice"] == {"type": "tool", "name": "structured_output"}
    assert body["tools"][0]["input_schema"] == SCHEMA
    assert body["system"] == "classify"
    assert http.post.call_args.kwargs["headers"]["x-api-key"] == "sk-test"


async def test_no_tool_block(api_key):
    with patch("calltrack.utils.claude_client.http") as http:
        http.post = AsyncMock(return_value=httpx.Response(200, json={"content": [{"type": "text", "text": "hi"}]}))
        assert await claude_structured("call text", SCHEMA) is None


async def test_client_error_not_retried(api_key):
    with patch("calltrack.utils.claude_client.http") as http:
        http.post = AsyncMock(return_value=httpx.Response(400, text="bad request"))
        assert await claude_structured("call text", SCHEMA) is None
        assert http.post.await_count == 1


async def test_overloaded_retried(api_key):
    with patch("calltrack.utils.claude_client.http") as http:
        http.post = AsyncMock(side_effect=[httpx.Response(529), _tool_response({"intent": "Finance"})])
        assert await claude_structured("call text", SCHEMA) == {"intent": "Finance"}
        assert http.post.await_count == 2


async def test_network_errors_exhaust_to_none(api_key):
    with patch("calltrack.utils.claude_client.http") as http:
        http.post = AsyncMock(side_effect=httpx.ConnectError("down"))
        assert await claude_structured("call text", SCHEMA) is None
        assert http.post.await_count == 3
