"""Tests for compiling agents into workflow definitions."""

import json
import logging
from unittest.mock import AsyncMock

import pytest
import yaml

from agentflow.compiler import AgentWorkflowCompiler, flow_identity
from agentflow.config import Settings
from agentflow.errors import ConfigurationError, TransportError
from agentflow.models import ToolConfig, Trigger


def _load(compiler, agent):
    return yaml.safe_load(compiler.compile(agent).definition)


def _request_body(task: dict, name: str) -> dict:
    return json.loads(task["inputFiles"][name])


@pytest.fixture
def compiler(settings):
    return AgentWorkflowCompiler(settings)


class TestIdentity:
    def test_flow_identity(self, make_agent):
        assert flow_identity(make_agent(id="42")) == ("agents", "agent-42")

    def test_compiled_identity(self, compiler, make_agent):
        compiled = compiler.compile(make_agent(id="42"))
        assert compiled.namespace == "agents"
        assert compiled.flow_id == "agent-42"
        assert compiled.workflow_id == "agents.agent-42"


class TestDefinition:
    def test_compiling_twice_is_byte_identical(self, compiler, make_agent, webhook_trigger, two_tools):
        agent = make_agent(triggers=[webhook_trigger], tools=two_tools)
        assert compiler.compile(agent).definition == compiler.compile(agent).definition

    def test_fresh_compiler_gives_same_text(self, settings, make_agent, two_tools):
        agent = make_agent(tools=two_tools)
        first = AgentWorkflowCompiler(settings).compile(agent).definition
        second = AgentWorkflowCompiler(settings).compile(agent).definition
        assert first == second

    def test_header_and_inputs(self, compiler, make_agent):
        flow = _load(compiler, make_agent())
        assert flow["id"] == "agent-a1"
        assert flow["namespace"] == "agents"
        assert flow["description"] == "Watches a repository"
        assert flow["inputs"] == [
            {"id": "user_input", "type": "STRING", "required": False, "defaults": ""},
            {"id": "context", "type": "JSON", "required": False},
        ]

    def test_description_falls_back_to_name(self, compiler, make_agent):
        flow = _load(compiler, make_agent(description=None))
        assert flow["description"] == "Repo Watcher"

    def test_three_stages_in_order(self, compiler, make_agent, two_tools):
        flow = _load(compiler, make_agent(tools=two_tools))
        assert [t["id"] for t in flow["tasks"]] == ["parse-input", "execute-tools", "synthesize-results"]

    def test_parse_stage_calls_model_with_instructions(self, compiler, make_agent):
        agent = make_agent(instructions='Say "hello"\nthen stop.')
        parse = _load(compiler, agent)["tasks"][0]
        request = _request_body(parse, "request.json")
        assert request["model"] == agent.model
        assert request["temperature"] == 0.3
        assert request["messages"][0] == {"role": "system", "content": 'Say "hello"\nthen stop.'}
        assert request["messages"][1] == {"role": "user", "content": "{{ inputs.user_input }}"}
        assert parse["outputs"] == {"llm_response": "{{ read('llm_response.json') }}"}

    def test_instructions_never_reach_the_shell(self, compiler, make_agent):
        instructions = "Be careful.\nEOF\nrm -rf / 'x'\n"
        parse = _load(compiler, make_agent(instructions=instructions))["tasks"][0]
        assert _request_body(parse, "request.json")["messages"][0]["content"] == instructions
        assert all("rm -rf" not in c and "EOF" not in c for c in parse["commands"])

    def test_synthesis_stage(self, compiler, make_agent):
        synth = _load(compiler, make_agent())["tasks"][2]
        request = _request_body(synth, "synthesis_request.json")
        assert request["messages"][0]["content"] == (
            "Synthesize the following tool execution results into a clear, actionable response."
        )
        assert "outputs['execute-tools']" in request["messages"][1]["content"]
        assert synth["outputs"] == {"final_response": "{{ read('final_response.json') }}"}

    def test_model_endpoint_comes_from_settings(self, make_agent):
        settings = Settings(_env_file=None, openrouter_base_url="https://llm.internal/v1/")
        parse = _load(AgentWorkflowCompiler(settings), make_agent())["tasks"][0]
        assert "https://llm.internal/v1/chat/completions" in parse["commands"][0]

    def test_credentials_are_secret_references(self, make_agent):
        settings = Settings(_env_file=None, openrouter_api_key="sk-very-secret")
        text = AgentWorkflowCompiler(settings).compile(make_agent()).definition
        assert "sk-very-secret" not in text
        assert "{{ secret('OPENROUTER_API_KEY') }}" in text

    def test_credential_rotation_needs_no_recompile(self, make_agent):
        agent = make_agent()
        before = AgentWorkflowCompiler(Settings(_env_file=None, openrouter_api_key="old")).compile(agent)
        after = AgentWorkflowCompiler(Settings(_env_file=None, openrouter_api_key="new")).compile(agent)
        assert before.definition == after.definition


class TestToolStage:
    def test_empty_tool_list_emits_no_tools(self, compiler, make_agent):
        stage = _load(compiler, make_agent(tools=[]))["tasks"][1]
        assert stage["type"] == "io.kestra.plugin.core.flow.Sequential"
        assert len(stage["tasks"]) == 1
        assert stage["tasks"][0]["id"] == "no-tools"

    def test_one_task_per_tool_in_order(self, compiler, make_agent, two_tools):
        stage = _load(compiler, make_agent(tools=two_tools))["tasks"][1]
        assert [t["id"] for t in stage["tasks"]] == ["tool-1-github-api", "tool-2-linter"]
        assert stage["tasks"][0]["commands"] == [
            "echo 'Executing tool: github-api'",
            'echo "Parameters: $TOOL_PARAMETERS"',
        ]
        assert stage["tasks"][0]["env"] == {"TOOL_PARAMETERS": "{{ toJson(inputs) }}"}

    def test_disabled_tools_still_get_a_task(self, compiler, make_agent):
        tools = [ToolConfig(tool_id="a"), ToolConfig(tool_id="b", enabled=False), ToolConfig(tool_id="c")]
        stage = _load(compiler, make_agent(tools=tools))["tasks"][1]
        assert [t["id"] for t in stage["tasks"]] == ["tool-1-a", "tool-2-b", "tool-3-c"]

    def test_only_disabled_tools_still_compiles_them(self, compiler, make_agent):
        stage = _load(compiler, make_agent(tools=[ToolConfig(tool_id="a", enabled=False)]))["tasks"][1]
        assert [t["id"] for t in stage["tasks"]] == ["tool-1-a"]

    def test_tool_commands_do_not_embed_inputs(self, compiler, make_agent):
        stage = _load(compiler, make_agent(tools=[ToolConfig(tool_id="it's")]))["tasks"][1]
        commands = stage["tasks"][0]["commands"]
        assert commands[0] == "echo 'Executing tool: it'\"'\"'s'"
        assert all("inputs" not in c for c in commands)

    def test_tool_ids_are_sanitized(self, compiler, make_agent):
        stage = _load(compiler, make_agent(tools=[ToolConfig(tool_id="web fetch/v2")]))["tasks"][1]
        assert stage["tasks"][0]["id"] == "tool-1-web-fetch-v2"
        assert stage["tasks"][0]["description"] == "Execute web fetch/v2"


class TestTriggers:
    @pytest.mark.parametrize("kind", ["WEBHOOK", "SCHEDULE", "CHAT"])
    def test_supported_trigger_emits_exactly_one(self, compiler, make_agent, kind):
        flow = _load(compiler, make_agent(triggers=[Trigger(id="t", type=kind, enabled=True)]))
        assert len(flow["triggers"]) == 1

    @pytest.mark.parametrize("kind", ["EMAIL", "A2A"])
    def test_unsupported_trigger_emits_nothing(self, compiler, make_agent, kind):
        flow = _load(compiler, make_agent(triggers=[Trigger(id="t", type=kind, enabled=True)]))
        assert "triggers" not in flow

    @pytest.mark.parametrize("kind", ["WEBHOOK", "SCHEDULE", "CHAT", "EMAIL", "A2A"])
    def test_disabled_trigger_emits_nothing(self, compiler, make_agent, kind):
        flow = _load(compiler, make_agent(triggers=[Trigger(id="t", type=kind, enabled=False)]))
        assert "triggers" not in flow

    def test_webhook_keyed_by_agent_id(self, compiler, make_agent):
        flow = _load(compiler, make_agent(id="xyz", triggers=[Trigger(id="t", type="WEBHOOK")]))
        assert flow["triggers"] == [
            {"id": "webhook-trigger", "type": "io.kestra.plugin.core.trigger.Webhook", "key": "xyz"}
        ]

    def test_chat_key_has_suffix(self, compiler, make_agent):
        flow = _load(compiler, make_agent(id="xyz", triggers=[Trigger(id="t", type="CHAT")]))
        assert flow["triggers"][0]["key"] == "xyz-chat"
        assert flow["triggers"][0]["id"] == "chat-trigger"

    def test_schedule_default_cron(self, compiler, make_agent):
        flow = _load(compiler, make_agent(triggers=[Trigger(id="t", type="SCHEDULE")]))
        assert flow["triggers"][0] == {
            "id": "schedule-trigger",
            "type": "io.kestra.plugin.core.trigger.Schedule",
            "cron": "0 0 * * *",
        }

    def test_schedule_cron_and_timezone(self, compiler, make_agent):
        trigger = Trigger(id="t", type="SCHEDULE", config={"cron": "0 9 * * MON", "timezone": "Europe/Paris"})
        flow = _load(compiler, make_agent(triggers=[trigger]))
        assert flow["triggers"][0]["cron"] == "0 9 * * MON"
        assert flow["triggers"][0]["timezone"] == "Europe/Paris"

    def test_repeated_kinds_get_distinct_ids(self, compiler, make_agent):
        triggers = [
            Trigger(id="t1", type="SCHEDULE", config={"cron": "0 1 * * *"}),
            Trigger(id="t2", type="SCHEDULE", config={"cron": "0 2 * * *"}),
        ]
        flow = _load(compiler, make_agent(triggers=triggers))
        assert [t["id"] for t in flow["triggers"]] == ["schedule-trigger", "schedule-trigger-2"]

    def test_dropped_trigger_is_logged(self, compiler, make_agent, caplog):
        with caplog.at_level(logging.WARNING, logger="compiler"):
            compiler.compile(make_agent(triggers=[Trigger(id="mail", type="EMAIL")]))
        assert "EMAIL trigger mail" in caplog.text


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_is_an_upsert(self, settings, make_agent):
        runtime = AsyncMock()
        compiler = AgentWorkflowCompiler(settings, runtime=runtime)
        agent = make_agent()

        first = await compiler.register(agent)
        second = await compiler.register(agent.model_copy(update={"instructions": "changed"}))

        assert runtime.put_flow.await_count == 2
        calls = runtime.put_flow.await_args_list
        assert calls[0].args[:2] == calls[1].args[:2] == ("agents", "agent-a1")
        assert calls[0].args[2] == first.definition
        assert calls[1].args[2] == second.definition
        assert first.definition != second.definition

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, settings, make_agent):
        runtime = AsyncMock()
        runtime.put_flow.side_effect = TransportError("Failed to save workflow: HTTP 422", status=422, payload={"message": "bad"})
        compiler = AgentWorkflowCompiler(settings, runtime=runtime)

        with pytest.raises(TransportError) as exc_info:
            await compiler.register(make_agent())
        assert exc_info.value.payload == {"message": "bad"}

    @pytest.mark.asyncio
    async def test_register_without_runtime(self, compiler, make_agent):
        with pytest.raises(ConfigurationError):
            await compiler.register(make_agent())

    @pytest.mark.asyncio
    async def test_execute_and_unregister(self, settings, make_agent):
        runtime = AsyncMock()
        runtime.execute.return_value = "exec-1"
        compiler = AgentWorkflowCompiler(settings, runtime=runtime)
        agent = make_agent()

        assert await compiler.execute(agent, "hi", {"repo": "x"}) == "exec-1"
        runtime.execute.assert_awaited_once_with(
            "agents", "agent-a1", {"user_input": "hi", "context": {"repo": "x"}}
        )

        await compiler.unregister(agent)
        runtime.delete_flow.assert_awaited_once_with("agents", "agent-a1")
