"""
Shared fixtures for agentflow tests.
"""

from typing import Any, Callable, Dict, List

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from agentflow.config import Settings
from agentflow.models import Agent, ToolConfig, Trigger


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        openrouter_api_key="test-openrouter-key",
        sambanova_api_key="",
        kestra_api_key="",
        max_planning_iterations=5,
        http_timeout=10,
    )


@pytest.fixture
def make_agent() -> Callable[..., Agent]:
    def _make(**overrides: Any) -> Agent:
        data: Dict[str, Any] = {
            "id": "a1",
            "name": "Repo Watcher",
            "description": "Watches a repository",
            "instructions": "You review pull requests and report problems.",
            "model": "meta-llama/llama-3.1-405b-instruct",
            "triggers": [],
            "tools": [],
        }
        data.update(overrides)
        return Agent.model_validate(data)

    return _make


@pytest.fixture
def webhook_trigger():
    return Trigger(id="t1", type="WEBHOOK", enabled=True)


@pytest.fixture
def two_tools():
    return [ToolConfig(tool_id="github-api"), ToolConfig(tool_id="linter", parameters={"path": "."})]


class RecordingServer:
    """aiohttp test server that records requests and answers from a route table."""

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.routes: Dict[tuple, Callable] = {}
        self.server: TestServer = None

    def route(self, method: str, path: str):
        def _register(fn):
            self.routes[(method, path)] = fn
            return fn

        return _register

    async def _dispatch(self, request: web.Request) -> web.StreamResponse:
        body = await request.read()
        self.requests.append({
            "method": request.method,
            "path": request.path,
            "raw_path": request.raw_path,
            "query": dict(request.query),
            "headers": dict(request.headers),
            "body": body,
        })
        handler = self.routes.get((request.method, request.path))
        if handler is None:
            return web.json_response({"message": "not found"}, status=404)
        return await handler(request)

    def url(self, path: str = "") -> str:
        return str(self.server.make_url("/")).rstrip("/") + path

    @property
    def last(self) -> Dict[str, Any]:
        return self.requests[-1]


@pytest_asyncio.fixture
async def http_server():
    recorder = RecordingServer()
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", recorder._dispatch)
    async with TestServer(app) as server:
        recorder.server = server
        yield recorder
