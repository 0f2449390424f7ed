import asyncio
import logging
import uuid
from contextlib import aclosing, asynccontextmanager
from functools import lru_cache
from typing import Dict

import aiohttp
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .compiler import AgentWorkflowCompiler
from .config import Settings
from .errors import ConfigurationError, TransportError
from .llm import LLMClient
from .models import Agent, CompiledWorkflow, ExecutionStatus, RunRequest, RunResponse
from .planner import PlanningLoop
from .runtime import WorkflowRuntimeClient
from .tools import ToolExecutor

logger = logging.getLogger("api")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    app.state.runs = {}
    app.state.http = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=None, sock_connect=settings.http_timeout, sock_read=settings.http_timeout)
    )
    try:
        yield
    finally:
        await app.state.http.close()


app = FastAPI(title="Agentflow API", version="0.1.0", lifespan=lifespan)


@app.exception_handler(TransportError)
async def transport_error_handler(request: Request, exc: TransportError):
    return JSONResponse(status_code=502, content={"detail": str(exc), "remote": exc.payload})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def get_session(request: Request) -> aiohttp.ClientSession:
    return request.app.state.http


def get_runs(request: Request) -> Dict[str, RunResponse]:
    return request.app.state.runs


def get_runtime(
    settings: Settings = Depends(get_settings),
    session: aiohttp.ClientSession = Depends(get_session),
) -> WorkflowRuntimeClient:
    return WorkflowRuntimeClient(settings, session=session)


def get_compiler(
    settings: Settings = Depends(get_settings),
    runtime: WorkflowRuntimeClient = Depends(get_runtime),
) -> AgentWorkflowCompiler:
    return AgentWorkflowCompiler(settings, runtime=runtime)


def get_planner(
    settings: Settings = Depends(get_settings),
    session: aiohttp.ClientSession = Depends(get_session),
) -> PlanningLoop:
    return PlanningLoop(
        LLMClient(settings, session=session),
        ToolExecutor(session=session, timeout=settings.http_timeout),
        max_iterations=settings.max_planning_iterations,
    )


@app.post("/agents/compile", response_model=CompiledWorkflow)
async def compile_agent(agent: Agent, compiler: AgentWorkflowCompiler = Depends(get_compiler)):
    return compiler.compile(agent)


@app.put("/agents/workflow", response_model=CompiledWorkflow)
async def register_agent(agent: Agent, compiler: AgentWorkflowCompiler = Depends(get_compiler)):
    return await compiler.register(agent)


@app.post("/agents/run", response_model=RunResponse)
async def run_agent(
    req: RunRequest,
    planner: PlanningLoop = Depends(get_planner),
    runs: Dict[str, RunResponse] = Depends(get_runs),
):
    run_id = str(uuid.uuid4())
    runs[run_id] = RunResponse(run_id=run_id, status=ExecutionStatus.RUNNING)

    try:
        result = await planner.run(req.agent, req.tools, req.input, req.context)
        runs[run_id] = RunResponse(run_id=run_id, status=result.status, result=result)
    except Exception as e:
        # a hard failure ends the run; keep the record
        logger.exception("run %s for agent %s failed", run_id, req.agent.id)
        runs[run_id] = RunResponse(run_id=run_id, status=ExecutionStatus.FAILED, error=str(e))
    return runs[run_id]


@app.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, runs: Dict[str, RunResponse] = Depends(get_runs)):
    if run_id not in runs:
        raise HTTPException(404, "run not found")
    return runs[run_id]


@app.get("/executions/{execution_id}/logs")
async def execution_logs(
    execution_id: str,
    request: Request,
    runtime: WorkflowRuntimeClient = Depends(get_runtime),
):
    abort = asyncio.Event()

    async def body():
        async with aclosing(runtime.stream_logs(execution_id, abort)) as stream:
            async for text in stream:
                if await request.is_disconnected():
                    abort.set()
                    break
                yield text

    return StreamingResponse(body(), media_type="text/plain")


@app.get("/health")
async def health():
    return JSONResponse({"ok": True})
