"""Mock aiohttp responses and other test doubles."""

import json
from unittest.mock import AsyncMock


class FakeClock:
    """Stand-in for time.monotonic that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_mock_response(status, data=None, text=None):
    """Create a mock aiohttp response usable with `async with`."""
    resp = AsyncMock()
    resp.status = status
    resp.headers = {}

    async def json_func(content_type=None):
        return data
    resp.json = json_func

    async def text_func():
        if text is not None:
            return text
        return json.dumps(data) if data is not None else ""
    resp.text = text_func

    # Support async context manager
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


def envelope(result=None, error=None):
    """JSON-RPC response body as Deribit sends it."""
    body = {"jsonrpc": "2.0", "id": 1, "usIn": 1, "usOut": 2, "usDiff": 1, "testnet": True}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    return body
