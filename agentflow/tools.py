import asyncio
import json
import logging
import os
import time
from typing import Any, Dict, Optional, Union

import aiohttp
import psutil

from .errors import ToolExecutionError
from .models import ToolExecutionConfig, ToolExecutionResult, ToolType
from .sessions import read_body, session_scope
from .templating import render_template

logger = logging.getLogger("tools")

# Rough display-only estimate, per second of wall time
COST_PER_SECOND: Dict[ToolType, float] = {
    ToolType.API: 0.0001,
    ToolType.CLI: 0.00001,
    ToolType.FUNCTION: 0.000001,
    ToolType.DATABASE: 0.0001,
}


def calculate_tool_cost(tool_type: Union[ToolType, str], duration_ms: float) -> float:
    return (duration_ms / 1000) * COST_PER_SECOND[ToolType(tool_type)]


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _kill_tree(proc: asyncio.subprocess.Process) -> None:
    # the shell may have forked the real command; take its children down too
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    try:
        proc.kill()
    except ProcessLookupError:
        pass


class ToolExecutor:
    """Runs one tool invocation and always answers with a ToolExecutionResult."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, timeout: float = 60.0):
        self._session = session
        self.timeout = timeout
        self._handlers = {
            ToolType.API: self._execute_api,
            ToolType.CLI: self._execute_cli,
            ToolType.FUNCTION: self._execute_function,
            ToolType.DATABASE: self._execute_database,
        }

    async def execute(
        self,
        tool_type: Union[ToolType, str],
        config: Union[ToolExecutionConfig, Dict[str, Any]],
        parameters: Optional[Dict[str, Any]] = None,
    ) -> ToolExecutionResult:
        parameters = parameters or {}
        start = time.monotonic()
        kind: Optional[ToolType] = None
        try:
            try:
                kind = ToolType(tool_type)
            except ValueError:
                raise ToolExecutionError(f"Unsupported tool type: {tool_type}") from None
            if not isinstance(config, ToolExecutionConfig):
                config = ToolExecutionConfig.model_validate(config)
            output = await self._handlers[kind](config, parameters)
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            message = str(e) or e.__class__.__name__
            logger.warning("%s tool failed after %d ms: %s", tool_type, duration_ms, message)
            return ToolExecutionResult(
                success=False,
                error=message,
                duration_ms=duration_ms,
                cost=calculate_tool_cost(kind, duration_ms) if kind else 0.0,
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        return ToolExecutionResult(
            success=True,
            output=output,
            duration_ms=duration_ms,
            cost=calculate_tool_cost(kind, duration_ms),
        )

    def build_api_request(self, config: ToolExecutionConfig, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve method, URL, headers and payload for an API tool call."""
        if not config.url:
            raise ToolExecutionError("API tool requires a URL")

        method = (config.method or "GET").upper()
        headers = dict(config.headers or {})

        auth = config.authentication
        if auth is not None:
            creds = auth.credentials
            if auth.type == "bearer":
                headers["Authorization"] = f"Bearer {creds.get('token', '')}"
            elif auth.type == "apiKey":
                headers[creds.get("header") or "X-API-Key"] = creds.get("key", "")
            elif auth.type == "basic":
                headers["Authorization"] = aiohttp.BasicAuth(
                    creds.get("username", ""), creds.get("password", "")
                ).encode()
            else:
                logger.warning("authentication type %r is not supported, sending request without it", auth.type)

        request: Dict[str, Any] = {
            "method": method,
            "url": render_template(config.url, parameters, escape=True),
            "headers": headers,
        }
        if method == "GET":
            request["params"] = {k: _query_value(v) for k, v in parameters.items() if v is not None}
        else:
            request["json"] = parameters
        return request

    async def _execute_api(self, config: ToolExecutionConfig, parameters: Dict[str, Any]) -> Any:
        request = self.build_api_request(config, parameters)
        method, url = request.pop("method"), request.pop("url")
        logger.debug("API tool %s %s", method, url)
        async with session_scope(self._session, self.timeout) as session:
            async with session.request(method, url, **request) as resp:
                body = await read_body(resp)
                if not 200 <= resp.status < 300:
                    raise ToolExecutionError(f"HTTP {resp.status} from {method} {url}: {body}")
                return body

    async def _execute_cli(self, config: ToolExecutionConfig, parameters: Dict[str, Any]) -> Dict[str, str]:
        if not config.command:
            raise ToolExecutionError("CLI tool requires a command")

        # values are not escaped; callers must pass shell-safe input
        command = render_template(config.command, parameters)
        env = {**os.environ, **(config.env or {})}
        logger.debug("CLI tool: %s", command)

        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=config.working_directory or os.getcwd(),
            env=env,
        )
        seconds = config.timeout / 1000 if config.timeout else None
        try:
            async with asyncio.timeout(seconds):
                stdout_b, stderr_b = await proc.communicate()
        except TimeoutError:
            _kill_tree(proc)
            await proc.wait()
            raise ToolExecutionError(f"Command timed out after {config.timeout} ms: {command}")

        stdout = stdout_b.decode("utf-8", errors="replace").strip()
        stderr = stderr_b.decode("utf-8", errors="replace").strip()

        if proc.returncode != 0:
            detail = stderr or stdout
            raise ToolExecutionError(
                f"Command failed with exit code {proc.returncode}" + (f": {detail}" if detail else "")
            )
        if stderr and not stdout:
            raise ToolExecutionError(stderr)

        return {"stdout": stdout, "stderr": stderr}

    async def _execute_function(self, config: ToolExecutionConfig, parameters: Dict[str, Any]) -> Any:
        if not config.function_name:
            raise ToolExecutionError("Function tool requires a function name")
        raise ToolExecutionError(
            "Function tools not yet implemented. Please define functions in predefined tools."
        )

    async def _execute_database(self, config: ToolExecutionConfig, parameters: Dict[str, Any]) -> Any:
        if not config.connection_string or not config.query:
            raise ToolExecutionError("Database tool requires connectionString and query")
        raise ToolExecutionError("Database tools not yet implemented.")
