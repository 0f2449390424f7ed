from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire; either spelling is accepted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

class AgentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    DELETED = "DELETED"


class TriggerType(str, Enum):
    CHAT = "CHAT"
    WEBHOOK = "WEBHOOK"
    SCHEDULE = "SCHEDULE"
    EMAIL = "EMAIL"
    A2A = "A2A"


class TriggerConfig(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    channels: Optional[List[str]] = None
    webhook_url: Optional[str] = None
    method: Optional[Literal["GET", "POST", "PUT", "DELETE"]] = None
    headers: Optional[Dict[str, str]] = None
    cron: Optional[str] = None
    timezone: Optional[str] = None
    email_address: Optional[str] = None
    subject: Optional[str] = None
    source_agent_id: Optional[str] = None
    condition: Optional[str] = None


class Trigger(CamelModel):
    id: str
    type: TriggerType
    enabled: bool = True
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class ToolConfig(CamelModel):
    tool_id: str
    enabled: bool = True
    parameters: Dict[str, Any] = Field(default_factory=dict)


class Agent(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    instructions: str = ""
    model: str
    triggers: List[Trigger] = Field(default_factory=list)
    tools: List[ToolConfig] = Field(default_factory=list)
    status: AgentStatus = AgentStatus.ACTIVE

    def enabled_tools(self) -> List[ToolConfig]:
        return [t for t in self.tools if t.enabled]


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolType(str, Enum):
    API = "API"
    CLI = "CLI"
    FUNCTION = "FUNCTION"
    DATABASE = "DATABASE"


class Authentication(CamelModel):
    type: Literal["bearer", "basic", "apiKey", "oauth2"]
    credentials: Dict[str, str] = Field(default_factory=dict)


class ToolExecutionConfig(CamelModel):
    # API
    url: Optional[str] = None
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    authentication: Optional[Authentication] = None
    # CLI; timeout is in milliseconds
    command: Optional[str] = None
    working_directory: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[int] = None
    # FUNCTION
    function_name: Optional[str] = None
    module: Optional[str] = None
    # DATABASE
    connection_string: Optional[str] = None
    query: Optional[str] = None
    database: Optional[str] = None


class Tool(CamelModel):
    id: str
    name: str
    description: str = ""
    type: ToolType
    config: ToolExecutionConfig = Field(default_factory=ToolExecutionConfig)


class ToolExecutionResult(CamelModel):
    success: bool
    output: Any = None
    error: Optional[str] = None
    duration_ms: int = 0
    cost: float = 0.0
    metadata: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Language model
# ---------------------------------------------------------------------------

class ChatMessage(CamelModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str
    name: Optional[str] = None


class LLMConfig(CamelModel):
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4096
    top_p: float = 1
    frequency_penalty: float = 0
    presence_penalty: float = 0
    stop: Optional[List[str]] = None


class Usage(CamelModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMResponse(CamelModel):
    content: str
    tool_calls: Optional[List[Dict[str, Any]]] = None
    finish_reason: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)
    model: str = ""
    cost: float = 0.0


# ---------------------------------------------------------------------------
# Planning loop
# ---------------------------------------------------------------------------

class IntentAnalysis(CamelModel):
    intent: str
    reasoning: str = ""
    suggested_actions: List[str] = Field(default_factory=list)


class PlanStep(CamelModel):
    tool_id: str
    tool_name: str = ""
    reason: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ExecutionPlan(CamelModel):
    steps: List[PlanStep] = Field(default_factory=list)
    estimated_duration: float = 0


class NextAction(CamelModel):
    tool_id: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class Decision(CamelModel):
    should_continue: bool
    next_action: Optional[NextAction] = None
    reasoning: str = ""


class Synthesis(CamelModel):
    summary: str
    detailed_analysis: str = ""
    recommendations: Optional[List[str]] = None


class CompletedStep(CamelModel):
    tool_name: str
    output: Any = None


class RemainingStep(CamelModel):
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ExecutionState(CamelModel):
    intent: str
    completed_steps: List[CompletedStep] = Field(default_factory=list)
    remaining_steps: List[RemainingStep] = Field(default_factory=list)


class ToolRunSummary(CamelModel):
    tool_name: str
    output: Any = None
    success: bool


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------

class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class StepType(str, Enum):
    TOOL = "TOOL"
    LLM = "LLM"
    DECISION = "DECISION"
    WORKFLOW = "WORKFLOW"


class ExecutionStep(CamelModel):
    id: str
    name: str
    type: StepType
    status: ExecutionStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    tool_id: Optional[str] = None


class StopReason(str, Enum):
    COMPLETED = "completed"
    NO_PLAN = "no_plan"
    ITERATION_LIMIT = "iteration_limit"


class RunResult(CamelModel):
    status: ExecutionStatus = ExecutionStatus.RUNNING
    intent: Optional[IntentAnalysis] = None
    plan: Optional[ExecutionPlan] = None
    steps: List[ExecutionStep] = Field(default_factory=list)
    synthesis: Optional[Synthesis] = None
    iterations: int = 0
    stop_reason: Optional[StopReason] = None
    llm_cost: float = 0.0
    tool_cost: float = 0.0

    @computed_field
    @property
    def total_cost(self) -> float:
        return self.llm_cost + self.tool_cost


# ---------------------------------------------------------------------------
# Workflow definitions and HTTP API payloads
# ---------------------------------------------------------------------------

class WorkflowInput(BaseModel):
    id: str
    type: Literal["STRING", "INTEGER", "BOOLEAN", "JSON", "FILE"]
    required: bool = False
    defaults: Any = None


class WorkflowDefinition(BaseModel):
    id: str
    namespace: str
    description: str
    inputs: List[WorkflowInput]
    triggers: List[Dict[str, Any]] = Field(default_factory=list)
    tasks: List[Dict[str, Any]]


class CompiledWorkflow(CamelModel):
    namespace: str
    flow_id: str
    definition: str

    @computed_field
    @property
    def workflow_id(self) -> str:
        return f"{self.namespace}.{self.flow_id}"


class RunRequest(CamelModel):
    agent: Agent
    tools: List[Tool] = Field(default_factory=list)
    input: str = ""
    context: Optional[str] = None


class RunResponse(CamelModel):
    run_id: str
    status: ExecutionStatus
    result: Optional[RunResult] = None
    error: Optional[str] = None
