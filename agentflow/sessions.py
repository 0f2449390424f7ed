import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import aiohttp


@asynccontextmanager
async def session_scope(
    session: Optional[aiohttp.ClientSession], timeout: Optional[float]
) -> AsyncIterator[aiohttp.ClientSession]:
    """Yield the injected session, or a short-lived one that is closed afterwards."""
    if session is not None:
        yield session
        return
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as own:
        yield own


async def read_body(resp: aiohttp.ClientResponse) -> Any:
    """Decoded response body: parsed JSON when the server says JSON, text otherwise."""
    text = await resp.text(errors="replace")
    if resp.content_type and "json" in resp.content_type and text:
        try:
            return json.loads(text)
        except ValueError:
            return text
    return text
