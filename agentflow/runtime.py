import asyncio
import codecs
import logging
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp

from .config import Settings
from .errors import TransportError
from .sessions import read_body, session_scope

logger = logging.getLogger("runtime")


async def _next_chunk(content: aiohttp.StreamReader, abort: Optional[asyncio.Event]) -> Optional[bytes]:
    """Next body chunk, b"" at end of stream, or None once *abort* is set.

    The read is raced against the event so an idle stream still stops promptly.
    """
    if abort is None:
        return await content.readany()
    if abort.is_set():
        return None
    read = asyncio.ensure_future(content.readany())
    stop = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (read, stop):
            if not task.done():
                task.cancel()
    if stop in done:
        return None
    return read.result()


class WorkflowRuntimeClient:
    """Thin HTTP facade over the external workflow engine."""

    def __init__(self, settings: Settings, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = settings.kestra_api_url.rstrip("/")
        self.api_key = settings.kestra_api_key
        self.timeout = settings.http_timeout
        self._session = session

    def _headers(self, content_type: str = "application/json") -> Dict[str, str]:
        headers = {"Content-Type": content_type}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, action: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        kwargs.setdefault("headers", self._headers())
        try:
            async with session_scope(self._session, self.timeout) as session:
                async with session.request(method, url, **kwargs) as resp:
                    body = await read_body(resp)
                    if not 200 <= resp.status < 300:
                        logger.error("Failed to %s: HTTP %s %s", action, resp.status, body)
                        raise TransportError(
                            f"Failed to {action}: HTTP {resp.status}", status=resp.status, payload=body
                        )
                    return body
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error("Failed to %s: %s", action, e)
            raise TransportError(f"Failed to {action}: {e}") from e

    async def put_flow(self, namespace: str, flow_id: str, definition: str) -> Any:
        """Create or replace the flow; the engine treats PUT as an upsert."""
        return await self._request(
            "PUT",
            f"/flows/{namespace}/{flow_id}",
            "save workflow",
            data=definition.encode("utf-8"),
            headers=self._headers("text/plain"),
        )

    async def execute(self, namespace: str, flow_id: str, inputs: Optional[Dict[str, Any]] = None) -> str:
        body = await self._request(
            "POST", f"/executions/{namespace}/{flow_id}", "execute workflow", json=inputs or {}
        )
        if not isinstance(body, dict) or "id" not in body:
            raise TransportError("Failed to execute workflow: response has no execution id", payload=body)
        return body["id"]

    async def get_execution(self, execution_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/executions/{execution_id}", "get execution")

    async def kill_execution(self, execution_id: str) -> None:
        await self._request("POST", f"/executions/{execution_id}/kill", "cancel execution")

    async def delete_flow(self, namespace: str, flow_id: str) -> None:
        await self._request("DELETE", f"/flows/{namespace}/{flow_id}", "delete workflow")

    async def test_connection(self) -> bool:
        try:
            await self._request("GET", "/flows", "list workflows")
        except TransportError:
            return False
        return True

    async def stream_logs(
        self, execution_id: str, abort: Optional[asyncio.Event] = None
    ) -> AsyncIterator[str]:
        """Yield decoded log text as it arrives.

        Reading stops as soon as *abort* is set; the response is released on
        exit either way.
        """
        url = f"{self.base_url}/executions/{execution_id}/logs"
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            async with session_scope(self._session, None) as session:
                async with session.get(url, headers=self._headers()) as resp:
                    if not 200 <= resp.status < 300:
                        body = await read_body(resp)
                        logger.error("Failed to stream logs: HTTP %s %s", resp.status, body)
                        raise TransportError(
                            f"Failed to stream logs: HTTP {resp.status}", status=resp.status, payload=body
                        )
                    while True:
                        chunk = await _next_chunk(resp.content, abort)
                        if chunk is None:
                            logger.debug("log stream for %s aborted", execution_id)
                            return
                        if not chunk:
                            break
                        text = decoder.decode(chunk)
                        if text:
                            yield text
                        if abort is not None and abort.is_set():
                            logger.debug("log stream for %s aborted", execution_id)
                            return
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        yield tail
        except aiohttp.ClientError as e:
            logger.error("Failed to stream logs: %s", e)
            raise TransportError(f"Failed to stream logs: {e}") from e
