import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .models import (
    Agent,
    ChatMessage,
    CompletedStep,
    Decision,
    ExecutionPlan,
    ExecutionState,
    ExecutionStatus,
    ExecutionStep,
    IntentAnalysis,
    LLMConfig,
    LLMResponse,
    NextAction,
    RemainingStep,
    RunResult,
    StepType,
    StopReason,
    Synthesis,
    Tool,
    ToolExecutionResult,
    ToolRunSummary,
)
from .parsing import Fallback, ParseResult, parse_or
from .tools import ToolExecutor

logger = logging.getLogger("planner")

DEFAULT_MAX_ITERATIONS = 10
OUTPUT_PREVIEW_CHARS = 500

PARSE_PROMPT = """You are an AI agent analyzer. Your job is to understand what the user wants and suggest appropriate actions.

Agent Instructions: {instructions}

Parse the user's input and respond with JSON:
{{
  "intent": "brief description of what user wants",
  "reasoning": "your analysis of the request",
  "suggestedActions": ["action1", "action2", ...]
}}"""

PLAN_PROMPT = """You are an AI agent planner. Create a step-by-step execution plan using the available tools.

Available Tools:
{tools}

{context}

Respond with JSON:
{{
  "steps": [
    {{
      "toolId": "tool_id",
      "toolName": "Tool Name",
      "reason": "why this tool is needed",
      "parameters": {{ "param1": "value1" }}
    }}
  ],
  "estimatedDuration": 30
}}"""

DECIDE_PROMPT = """You are an AI agent decision maker. Based on the current execution state, decide if we should continue and what to do next.

Available Tools:
{tools}

Respond with JSON:
{{
  "shouldContinue": true/false,
  "nextAction": {{
    "toolId": "tool_id",
    "parameters": {{ "param": "value" }}
  }},
  "reasoning": "explanation of decision"
}}"""

SYNTHESIZE_PROMPT = """You are an AI agent synthesizer. Analyze the results from multiple tool executions and create a comprehensive response.

Original Intent: {intent}

Tool Results:
{results}

Respond with JSON:
{{
  "summary": "brief summary for the user",
  "detailedAnalysis": "detailed analysis of what was accomplished",
  "recommendations": ["recommendation1", "recommendation2"]
}}"""


class ChatClient(Protocol):
    async def chat(self, messages: Sequence[ChatMessage], config: Optional[LLMConfig] = None) -> LLMResponse:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _describe_tools(tools: Sequence[Tool]) -> str:
    return "\n".join(f"- {t.name} ({t.id}): {t.description}" for t in tools)


def _preview(output: Any) -> str:
    try:
        text = json.dumps(output, default=str)
    except (TypeError, ValueError):
        text = str(output)
    return text[:OUTPUT_PREVIEW_CHARS]


@dataclass
class RunContext:
    """Model and cost accumulator for one run; never shared between runs."""

    model: Optional[str] = None
    llm_cost: float = 0.0


class PlanningLoop:
    """Model-driven parse -> plan -> (execute -> decide)* -> synthesize protocol.

    Every model call is stateless; the relevant context is resent each time.
    Unparsable model output degrades to a fixed fallback, transport errors
    from the model client propagate.
    """

    def __init__(
        self,
        llm: ChatClient,
        executor: ToolExecutor,
        model: Optional[str] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.llm = llm
        self.executor = executor
        self.model = model
        self.max_iterations = max_iterations

    async def _ask(
        self, ctx: Optional[RunContext], messages: List[ChatMessage], temperature: float, max_tokens: int
    ) -> str:
        ctx = ctx or RunContext(model=self.model)
        response = await self.llm.chat(
            messages, LLMConfig(model=ctx.model, temperature=temperature, max_tokens=max_tokens)
        )
        ctx.llm_cost += response.cost
        return response.content

    # ------------------------------------------------------------------
    # The four model calls
    # ------------------------------------------------------------------

    async def parse_user_input(
        self, user_input: str, instructions: str, ctx: Optional[RunContext] = None
    ) -> IntentAnalysis:
        raw = await self._ask(
            ctx,
            [
                ChatMessage(role="system", content=PARSE_PROMPT.format(instructions=instructions)),
                ChatMessage(role="user", content=user_input),
            ],
            temperature=0.3,
            max_tokens=1000,
        )
        result = parse_or(raw, IntentAnalysis(intent=user_input, reasoning=raw, suggested_actions=[]), IntentAnalysis)
        return result.value

    async def create_execution_plan(
        self,
        intent: str,
        tools: Sequence[Tool],
        context: Optional[str] = None,
        ctx: Optional[RunContext] = None,
    ) -> ExecutionPlan:
        system = PLAN_PROMPT.format(
            tools=_describe_tools(tools), context=f"Context: {context}" if context else ""
        )
        raw = await self._ask(
            ctx,
            [
                ChatMessage(role="system", content=system),
                ChatMessage(role="user", content=f"Create an execution plan for: {intent}"),
            ],
            temperature=0.2,
            max_tokens=2000,
        )
        return parse_or(raw, ExecutionPlan(), ExecutionPlan).value

    async def decide_next_step(
        self, state: ExecutionState, tools: Sequence[Tool], ctx: Optional[RunContext] = None
    ) -> Decision:
        result = await self._decide(state, tools, ctx)
        return result.value

    async def _decide(
        self, state: ExecutionState, tools: Sequence[Tool], ctx: Optional[RunContext] = None
    ) -> ParseResult:
        raw = await self._ask(
            ctx,
            [
                ChatMessage(role="system", content=DECIDE_PROMPT.format(tools=_describe_tools(tools))),
                ChatMessage(
                    role="user",
                    content=json.dumps(state.model_dump(by_alias=True), indent=2, default=str),
                ),
            ],
            temperature=0.3,
            max_tokens=1000,
        )
        # halt rather than guess
        return parse_or(raw, Decision(should_continue=False, reasoning="Failed to parse decision"), Decision)

    async def synthesize_results(
        self, intent: str, tool_results: Sequence[ToolRunSummary], ctx: Optional[RunContext] = None
    ) -> Synthesis:
        results = "\n\n".join(
            f"{i}. {r.tool_name}: {'SUCCESS' if r.success else 'FAILED'}\n   Output: {_preview(r.output)}"
            for i, r in enumerate(tool_results, start=1)
        )
        raw = await self._ask(
            ctx,
            [
                ChatMessage(role="system", content=SYNTHESIZE_PROMPT.format(intent=intent, results=results)),
                ChatMessage(role="user", content="Please synthesize these results into a clear response."),
            ],
            temperature=0.4,
            max_tokens=2000,
        )
        return parse_or(raw, Synthesis(summary=raw, detailed_analysis=raw), Synthesis).value

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _available_tools(self, agent: Agent, catalog: Sequence[Tool]) -> Dict[str, Tool]:
        by_id = {t.id: t for t in catalog}
        available: Dict[str, Tool] = {}
        for cfg in agent.enabled_tools():
            tool = by_id.get(cfg.tool_id)
            if tool is None:
                logger.warning("agent %s references unknown tool %s", agent.id, cfg.tool_id)
                continue
            available[tool.id] = tool
        return available

    async def _run_tool(
        self,
        agent: Agent,
        tools: Dict[str, Tool],
        action: NextAction,
    ) -> ExecutionStep:
        started = _now()
        tool = tools.get(action.tool_id)
        defaults = next((c.parameters for c in agent.enabled_tools() if c.tool_id == action.tool_id), {})
        parameters = {**defaults, **action.parameters}

        if tool is None:
            result = ToolExecutionResult(
                success=False, error=f"Tool {action.tool_id} is not available to this agent"
            )
        else:
            result = await self.executor.execute(tool.type, tool.config, parameters)

        logger.info(
            "tool %s %s in %d ms", action.tool_id, "succeeded" if result.success else "failed", result.duration_ms
        )
        return ExecutionStep(
            id=str(uuid.uuid4()),
            name=tool.name if tool else action.tool_id,
            type=StepType.TOOL,
            status=ExecutionStatus.SUCCESS if result.success else ExecutionStatus.FAILED,
            started_at=started,
            completed_at=_now(),
            duration_ms=result.duration_ms,
            input=parameters,
            output=result.model_dump(by_alias=True),
            error=result.error,
            tool_id=action.tool_id,
        )

    def _llm_step(self, name: str, step_type: StepType, started: datetime, t0: float, output: Any) -> ExecutionStep:
        return ExecutionStep(
            id=str(uuid.uuid4()),
            name=name,
            type=step_type,
            status=ExecutionStatus.SUCCESS,
            started_at=started,
            completed_at=_now(),
            duration_ms=int((time.monotonic() - t0) * 1000),
            output=output,
        )

    async def run(
        self,
        agent: Agent,
        catalog: Sequence[Tool],
        user_input: str,
        context: Optional[str] = None,
    ) -> RunResult:
        """Drive one agent run to a synthesized answer.

        Tools run one at a time in the order the model asks for them. The loop
        ends when the model stops, gives no next action, or max_iterations tool
        executions have happened.
        """
        ctx = RunContext(model=self.model or agent.model)
        tools = self._available_tools(agent, catalog)
        tool_list = list(tools.values())
        run = RunResult()

        started, t0 = _now(), time.monotonic()
        run.intent = await self.parse_user_input(user_input, agent.instructions, ctx)
        run.steps.append(self._llm_step("parse-input", StepType.LLM, started, t0, run.intent.model_dump(by_alias=True)))

        started, t0 = _now(), time.monotonic()
        run.plan = await self.create_execution_plan(run.intent.intent, tool_list, context, ctx)
        run.steps.append(self._llm_step("create-plan", StepType.LLM, started, t0, run.plan.model_dump(by_alias=True)))

        remaining = list(run.plan.steps)
        state = ExecutionState(intent=run.intent.intent)
        summaries: List[ToolRunSummary] = []
        tool_cost = 0.0

        action: Optional[NextAction] = None
        if remaining:
            action = NextAction(tool_id=remaining[0].tool_id, parameters=remaining[0].parameters)
        else:
            run.stop_reason = StopReason.NO_PLAN

        while action is not None:
            if run.iterations >= self.max_iterations:
                logger.warning("agent %s hit the iteration cap of %d", agent.id, self.max_iterations)
                run.stop_reason = StopReason.ITERATION_LIMIT
                break

            step = await self._run_tool(agent, tools, action)
            run.iterations += 1
            run.steps.append(step)
            envelope = step.output
            tool_cost += envelope.get("cost", 0.0)

            for i, planned in enumerate(remaining):
                if planned.tool_id == action.tool_id:
                    del remaining[i]
                    break

            output = envelope.get("output") if step.status == ExecutionStatus.SUCCESS else {"error": step.error}
            state.completed_steps.append(CompletedStep(tool_name=step.name, output=output))
            state.remaining_steps = [
                RemainingStep(tool_name=p.tool_name or p.tool_id, parameters=p.parameters) for p in remaining
            ]
            summaries.append(
                ToolRunSummary(tool_name=step.name, output=output, success=step.status == ExecutionStatus.SUCCESS)
            )

            started, t0 = _now(), time.monotonic()
            decision = await self._decide(state, tool_list, ctx)
            run.steps.append(
                self._llm_step("decide-next-step", StepType.DECISION, started, t0, decision.value.model_dump(by_alias=True))
            )
            if isinstance(decision, Fallback):
                logger.debug("decision for agent %s degraded to stop", agent.id)

            if not decision.value.should_continue or decision.value.next_action is None:
                run.stop_reason = StopReason.COMPLETED
                break
            action = decision.value.next_action

        started, t0 = _now(), time.monotonic()
        run.synthesis = await self.synthesize_results(run.intent.intent, summaries, ctx)
        run.steps.append(self._llm_step("synthesize-results", StepType.LLM, started, t0, run.synthesis.model_dump(by_alias=True)))

        run.llm_cost = ctx.llm_cost
        run.tool_cost = tool_cost
        run.status = ExecutionStatus.SUCCESS
        logger.info(
            "agent %s finished: %d tool runs, stop=%s, cost=%.6f",
            agent.id, run.iterations, run.stop_reason.value if run.stop_reason else None, run.total_cost,
        )
        return run
