"""Compiles an Agent into a workflow definition for the external engine."""

import json
import logging
import re
import shlex
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from .config import Settings
from .errors import ConfigurationError
from .models import Agent, CompiledWorkflow, Trigger, TriggerType, WorkflowDefinition, WorkflowInput
from .runtime import WorkflowRuntimeClient

logger = logging.getLogger("compiler")

NAMESPACE = "agents"
DEFAULT_CRON = "0 0 * * *"
SYNTHESIS_INSTRUCTION = "Synthesize the following tool execution results into a clear, actionable response."

SHELL_TASK = "io.kestra.plugin.scripts.shell.Commands"
SEQUENTIAL_TASK = "io.kestra.plugin.core.flow.Sequential"
WEBHOOK_TRIGGER = "io.kestra.plugin.core.trigger.Webhook"
SCHEDULE_TRIGGER = "io.kestra.plugin.core.trigger.Schedule"

TASK_ID_RE = re.compile(r"[^a-zA-Z0-9_-]")


class _FlowDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, data: str):
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_FlowDumper.add_representer(str, _represent_str)


def _webhook(agent: Agent, trigger: Trigger) -> Dict[str, Any]:
    return {"type": WEBHOOK_TRIGGER, "key": agent.id}


def _chat(agent: Agent, trigger: Trigger) -> Dict[str, Any]:
    return {"type": WEBHOOK_TRIGGER, "key": f"{agent.id}-chat"}


def _schedule(agent: Agent, trigger: Trigger) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"type": SCHEDULE_TRIGGER, "cron": trigger.config.cron or DEFAULT_CRON}
    if trigger.config.timezone:
        spec["timezone"] = trigger.config.timezone
    return spec


# EMAIL and A2A have no engine-side primitive yet
TRIGGER_BUILDERS: Dict[TriggerType, Tuple[str, Callable[[Agent, Trigger], Dict[str, Any]]]] = {
    TriggerType.WEBHOOK: ("webhook-trigger", _webhook),
    TriggerType.SCHEDULE: ("schedule-trigger", _schedule),
    TriggerType.CHAT: ("chat-trigger", _chat),
}


def flow_identity(agent: Agent) -> Tuple[str, str]:
    return NAMESPACE, f"agent-{agent.id}"


class AgentWorkflowCompiler:
    def __init__(self, settings: Settings, runtime: Optional[WorkflowRuntimeClient] = None):
        self.llm_url = settings.provider_base_url(settings.llm_provider).rstrip("/") + "/chat/completions"
        self.secret_name = settings.llm_secret_name
        self.runtime = runtime

    # ------------------------------------------------------------------
    # Definition building
    # ------------------------------------------------------------------

    def build_triggers(self, agent: Agent) -> List[Dict[str, Any]]:
        triggers: List[Dict[str, Any]] = []
        seen: Dict[str, int] = {}
        for trigger in agent.triggers:
            if not trigger.enabled:
                continue
            entry = TRIGGER_BUILDERS.get(trigger.type)
            if entry is None:
                logger.warning(
                    "agent %s: %s trigger %s has no workflow equivalent and is skipped",
                    agent.id, trigger.type.value, trigger.id,
                )
                continue
            base_id, build = entry
            seen[base_id] = seen.get(base_id, 0) + 1
            trigger_id = base_id if seen[base_id] == 1 else f"{base_id}-{seen[base_id]}"
            triggers.append({"id": trigger_id, **build(agent, trigger)})
        return triggers

    def _model_call_task(
        self,
        task_id: str,
        description: str,
        request_file: str,
        response_file: str,
        payload: Dict[str, Any],
        output: str,
    ) -> Dict[str, Any]:
        # the request body travels as an input file, never through the shell
        auth = "{{ secret('%s') }}" % self.secret_name
        return {
            "id": task_id,
            "type": SHELL_TASK,
            "description": description,
            "inputFiles": {request_file: json.dumps(payload, indent=2, ensure_ascii=False)},
            "commands": [
                (
                    f"curl -sS -X POST {self.llm_url} \\\n"
                    f'  -H "Authorization: Bearer {auth}" \\\n'
                    '  -H "Content-Type: application/json" \\\n'
                    f"  -d @{request_file} \\\n"
                    f"  > {response_file}\n"
                ),
                f"cat {response_file}",
            ],
            "outputs": {output: "{{ read('%s') }}" % response_file},
        }

    def build_tool_tasks(self, agent: Agent) -> List[Dict[str, Any]]:
        # every configured tool gets a stub; enabled only gates the planning loop
        if not agent.tools:
            return [{"id": "no-tools", "type": SHELL_TASK, "commands": ['echo "No tools configured"']}]

        tasks = []
        for index, tool in enumerate(agent.tools, start=1):
            tool_id = tool.tool_id or "unknown"
            tasks.append({
                "id": f"tool-{index}-{TASK_ID_RE.sub('-', tool_id)}",
                "type": SHELL_TASK,
                "description": f"Execute {tool_id}",
                "env": {"TOOL_PARAMETERS": "{{ toJson(inputs) }}"},
                "commands": [
                    f"echo {shlex.quote(f'Executing tool: {tool_id}')}",
                    'echo "Parameters: $TOOL_PARAMETERS"',
                ],
            })
        return tasks

    def build_tasks(self, agent: Agent) -> List[Dict[str, Any]]:
        parse_payload = {
            "model": agent.model,
            "messages": [
                {"role": "system", "content": agent.instructions},
                {"role": "user", "content": "{{ inputs.user_input }}"},
            ],
            "temperature": 0.3,
        }
        synthesis_payload = {
            "model": agent.model,
            "messages": [
                {"role": "system", "content": SYNTHESIS_INSTRUCTION},
                {"role": "user", "content": "Results: {{ outputs['execute-tools'] }}"},
            ],
        }
        return [
            self._model_call_task(
                "parse-input",
                "Analyze user input and create execution plan",
                "request.json",
                "llm_response.json",
                parse_payload,
                "llm_response",
            ),
            {
                "id": "execute-tools",
                "type": SEQUENTIAL_TASK,
                "description": "Execute required tools in sequence",
                "tasks": self.build_tool_tasks(agent),
            },
            self._model_call_task(
                "synthesize-results",
                "Combine tool results into final response",
                "synthesis_request.json",
                "final_response.json",
                synthesis_payload,
                "final_response",
            ),
        ]

    def build_definition(self, agent: Agent) -> WorkflowDefinition:
        namespace, flow_id = flow_identity(agent)
        return WorkflowDefinition(
            id=flow_id,
            namespace=namespace,
            description=agent.description or agent.name,
            inputs=[
                WorkflowInput(id="user_input", type="STRING", required=False, defaults=""),
                WorkflowInput(id="context", type="JSON", required=False),
            ],
            triggers=self.build_triggers(agent),
            tasks=self.build_tasks(agent),
        )

    @staticmethod
    def render(definition: WorkflowDefinition) -> str:
        data = definition.model_dump(exclude_none=True)
        if not data["triggers"]:
            del data["triggers"]
        return yaml.dump(
            data,
            Dumper=_FlowDumper,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
            width=4096,
        )

    def compile(self, agent: Agent) -> CompiledWorkflow:
        namespace, flow_id = flow_identity(agent)
        return CompiledWorkflow(
            namespace=namespace,
            flow_id=flow_id,
            definition=self.render(self.build_definition(agent)),
        )

    # ------------------------------------------------------------------
    # Engine registration
    # ------------------------------------------------------------------

    def _require_runtime(self) -> WorkflowRuntimeClient:
        if self.runtime is None:
            raise ConfigurationError("No workflow runtime client configured")
        return self.runtime

    async def register(self, agent: Agent) -> CompiledWorkflow:
        """Upsert the agent's flow. Creating and updating are the same call."""
        runtime = self._require_runtime()
        compiled = self.compile(agent)
        await runtime.put_flow(compiled.namespace, compiled.flow_id, compiled.definition)
        logger.info("registered workflow %s", compiled.workflow_id)
        return compiled

    async def unregister(self, agent: Agent) -> None:
        namespace, flow_id = flow_identity(agent)
        await self._require_runtime().delete_flow(namespace, flow_id)
        logger.info("deleted workflow %s.%s", namespace, flow_id)

    async def execute(self, agent: Agent, user_input: str = "", context: Optional[Dict[str, Any]] = None) -> str:
        namespace, flow_id = flow_identity(agent)
        inputs: Dict[str, Any] = {"user_input": user_input}
        if context is not None:
            inputs["context"] = context
        return await self._require_runtime().execute(namespace, flow_id, inputs)
