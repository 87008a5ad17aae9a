"""Tests for the LangGraph turn loop."""
import asyncio

import pytest
from langchain_core.messages import ToolMessage

from fakes import FailingClient, FakeGateway, ScriptedClient, collect, make_orchestrator, text_step, tool_step
from sia_qualifier.agents.gateway import ModelConfigurationError
from sia_qualifier.agents.orchestrator import TurnOrchestrator
from sia_qualifier.agents.tools import (
    REQUEST_LOCATION,
    SUBMIT_QUALIFICATION,
    VALIDATE_LOCATION,
    ToolDefinition,
    ToolRegistry,
)
from sia_qualifier.models.messages import (
    Finish,
    Message,
    Role,
    StepFinish,
    TextDelta,
    ToolCallInput,
    ToolCallStart,
    ToolInvocationPart,
    ToolResult,
    ToolState,
    TurnError,
    TurnStart,
    UsageReport,
)
from sia_qualifier.models.schemas import RequestLocationInput, TokenUsage, TurnSettings

TURN_SETTINGS = TurnSettings(model="fake-model")


def _history(text="Oi, tenho um terreno no Campeche"):
    return [Message.user(text)]


def _types(events):
    return [event.type for event in events]


class TestTurnLoop:
    """Tests for the generate/tools cycle."""

    @pytest.mark.asyncio
    async def test_text_only_turn(self, registry):
        client = ScriptedClient([text_step("Olá! Sou a Sia.")])
        orchestrator = make_orchestrator(client, registry)

        events = await collect(orchestrator.run_turn(_history(), TURN_SETTINGS, message_id="a1"))

        assert events[0] == TurnStart(message_id="a1")
        assert _types(events) == ["start", "text-delta", "text-delta", "step-finish", "finish"]
        assert "".join(e.text for e in events if isinstance(e, TextDelta)) == "Olá! Sou a Sia."
        assert events[-1] == Finish(usage=TokenUsage(prompt=10, completion=3, total=13), steps=1)

    @pytest.mark.asyncio
    async def test_usage_events_are_not_forwarded(self, registry):
        client = ScriptedClient([text_step("Oi")])
        events = await collect(make_orchestrator(client, registry).run_turn(_history(), TURN_SETTINGS))
        assert not any(isinstance(e, UsageReport) for e in events)

    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self, registry):
        client = ScriptedClient([
            tool_step("c1", VALIDATE_LOCATION, {"bairro": "Campeche", "cidade": "Florianópolis"}),
            text_step("Localização aprovada! Qual o tamanho do terreno?"),
        ])
        orchestrator = make_orchestrator(client, registry)

        events = await collect(orchestrator.run_turn(_history(), TURN_SETTINGS))

        assert _types(events)[:5] == ["start", "tool-call-start", "tool-call-input", "step-finish", "tool-result"]
        result = next(e for e in events if isinstance(e, ToolResult))
        assert result.is_error is False
        assert result.output["allowed"] is True
        assert result.output["bairro"] == "campeche"

        finish = events[-1]
        assert finish.steps == 2
        assert finish.finish_reason == "stop"
        assert finish.usage == TokenUsage(prompt=20, completion=6, total=26)

        # The second model call sees the tool result
        second_call = client.calls[1]["messages"]
        tool_messages = [m for m in second_call if isinstance(m, ToolMessage)]
        assert tool_messages[0].tool_call_id == "c1"
        assert '"allowed": true' in tool_messages[0].content

    @pytest.mark.asyncio
    async def test_step_ceiling(self, registry):
        client = ScriptedClient([
            tool_step(f"c{i}", REQUEST_LOCATION, {"message": "Busque o endereço"}) for i in range(1, 8)
        ])
        orchestrator = make_orchestrator(client, registry)

        events = await collect(orchestrator.run_turn(_history(), TURN_SETTINGS))

        assert len(client.calls) == 5
        assert len([e for e in events if isinstance(e, StepFinish)]) == 5
        # Tools requested in the last step still run
        results = [e for e in events if isinstance(e, ToolResult)]
        assert [r.call_id for r in results] == ["c1", "c2", "c3", "c4", "c5"]
        assert not any(isinstance(e, TurnError) for e in events)
        assert events[-1].finish_reason == "step-limit"
        assert events[-1].steps == 5

    @pytest.mark.asyncio
    async def test_results_follow_request_order(self, registry):
        step = [
            ToolCallStart(call_id="c1", tool_name=REQUEST_LOCATION),
            ToolCallStart(call_id="c2", tool_name=VALIDATE_LOCATION),
            ToolCallInput(call_id="c1", tool_name=REQUEST_LOCATION, input={"message": "Busque"}),
            ToolCallInput(call_id="c2", tool_name=VALIDATE_LOCATION, input={"bairro": "Centro", "cidade": "Floripa"}),
            UsageReport(usage=TokenUsage(prompt=10, completion=3, total=13)),
        ]
        client = ScriptedClient([step, text_step("Pronto")])

        events = await collect(make_orchestrator(client, registry).run_turn(_history(), TURN_SETTINGS))

        results = [e for e in events if isinstance(e, ToolResult)]
        assert [r.call_id for r in results] == ["c1", "c2"]
        assert next(e for e in events if isinstance(e, StepFinish)).tool_calls == 2

    @pytest.mark.asyncio
    async def test_enabled_tools_and_prompt_override(self, registry):
        client = ScriptedClient([text_step("Oi")])
        turn_settings = TurnSettings(
            model="fake-model",
            enable_submit_qualification_tool=False,
            system_prompt="Prompt de teste",
        )

        await collect(make_orchestrator(client, registry).run_turn(_history(), turn_settings))

        names = [t["function"]["name"] for t in client.calls[0]["tools"]]
        assert names == [REQUEST_LOCATION, VALIDATE_LOCATION]
        assert client.calls[0]["messages"][0].content == "Prompt de teste"


class TestToolErrors:
    """Tool failures are results for the model, not turn failures."""

    @pytest.mark.asyncio
    async def test_schema_error_is_surfaced(self, registry):
        client = ScriptedClient([
            tool_step("c1", SUBMIT_QUALIFICATION, {"bairro": "Campeche"}),
            text_step("Preciso de mais alguns dados."),
        ])

        events = await collect(make_orchestrator(client, registry).run_turn(_history(), TURN_SETTINGS))

        result = next(e for e in events if isinstance(e, ToolResult))
        assert result.is_error is True
        assert result.output["error"] == "InputSchemaError"
        assert result.output["details"]
        assert events[-1].finish_reason == "stop"

        tool_message = next(m for m in client.calls[1]["messages"] if isinstance(m, ToolMessage))
        assert tool_message.status == "error"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry):
        client = ScriptedClient([tool_step("c1", "sendEmail", {}), text_step("Ok")])

        events = await collect(make_orchestrator(client, registry).run_turn(_history(), TURN_SETTINGS))

        result = next(e for e in events if isinstance(e, ToolResult))
        assert result.is_error is True
        assert result.output["error"] == "UnknownToolError"

    @pytest.mark.asyncio
    async def test_unparseable_arguments(self, registry):
        client = ScriptedClient([
            tool_step("c1", VALIDATE_LOCATION, {}, input_error="Expecting value"),
            text_step("Ok"),
        ])

        events = await collect(make_orchestrator(client, registry).run_turn(_history(), TURN_SETTINGS))

        result = next(e for e in events if isinstance(e, ToolResult))
        assert result.is_error is True
        assert result.output["message"] == "Expecting value"

    @pytest.mark.asyncio
    async def test_crashing_tool(self):
        def explode(data):
            raise RuntimeError("boom")

        registry = ToolRegistry([ToolDefinition(REQUEST_LOCATION, "x", RequestLocationInput, explode)])
        client = ScriptedClient([tool_step("c1", REQUEST_LOCATION, {"message": "x"}), text_step("Ok")])

        events = await collect(make_orchestrator(client, registry).run_turn(_history(), TURN_SETTINGS))

        result = next(e for e in events if isinstance(e, ToolResult))
        assert result.is_error is True
        assert result.output == {"error": "ToolExecutionError", "message": "boom", "details": []}


class TestFailuresAndCancellation:
    """Transport errors and cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_unconfigured_model_yields_only_error(self, registry):
        class UnconfiguredGateway(FakeGateway):
            def resolve_model(self, turn_settings):
                raise ModelConfigurationError("GROQ_API_KEY not found in environment variables.")

        orchestrator = TurnOrchestrator(UnconfiguredGateway(None), registry, system_prompt="x")

        events = await collect(orchestrator.run_turn(_history(), TURN_SETTINGS))

        assert events == [TurnError(message="GROQ_API_KEY not found in environment variables.")]

    @pytest.mark.asyncio
    async def test_transport_error(self, registry):
        client = FailingClient()

        events = await collect(make_orchestrator(client, registry).run_turn(_history(), TURN_SETTINGS))

        assert events[0].type == "start"
        assert events[-1].type == "error"
        assert "ConnectionError" in events[-1].message
        assert not any(isinstance(e, Finish) for e in events)
        assert client.calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_first_call(self, registry):
        client = ScriptedClient([text_step("Oi")])
        cancel = asyncio.Event()
        cancel.set()

        events = await collect(make_orchestrator(client, registry).run_turn(_history(), TURN_SETTINGS, cancel_event=cancel))

        assert client.calls == []
        assert events[-1].finish_reason == "aborted"
        assert events[-1].steps == 0

    @pytest.mark.asyncio
    async def test_cancel_stops_consuming_stream(self, registry):
        cancel = asyncio.Event()

        class StoppingClient:
            model_id = "fake-model"

            async def stream(self, messages, tools):
                yield TextDelta(text="Olá")
                cancel.set()
                yield TextDelta(text=" mundo")
                yield UsageReport(usage=TokenUsage(prompt=1, completion=1, total=2))

        events = await collect(
            make_orchestrator(StoppingClient(), registry).run_turn(_history(), TURN_SETTINGS, cancel_event=cancel)
        )

        assert [e.text for e in events if isinstance(e, TextDelta)] == ["Olá"]
        assert events[-1].finish_reason == "aborted"

    @pytest.mark.asyncio
    async def test_started_tools_finish_but_results_are_discarded(self):
        cancel = asyncio.Event()
        executed = []

        def slow_tool(data):
            executed.append(data.message)
            cancel.set()
            return {"ok": True}

        registry = ToolRegistry([ToolDefinition(REQUEST_LOCATION, "x", RequestLocationInput, slow_tool)])
        client = ScriptedClient([tool_step("c1", REQUEST_LOCATION, {"message": "x"}), text_step("nunca")])

        events = await collect(make_orchestrator(client, registry).run_turn(_history(), TURN_SETTINGS, cancel_event=cancel))

        assert executed == ["x"]
        assert not any(isinstance(e, ToolResult) for e in events)
        assert len(client.calls) == 1
        assert events[-1].finish_reason == "aborted"


class TestCallIds:
    @pytest.mark.asyncio
    async def test_id_already_in_history_is_replaced(self, registry):
        history = [
            Message.user("Oi"),
            Message(id="a1", role=Role.ASSISTANT, parts=[
                ToolInvocationPart(tool_name=REQUEST_LOCATION, call_id="call_0", state=ToolState.DONE, output={}),
            ]),
            Message.user("Campeche"),
        ]
        client = ScriptedClient([
            tool_step("call_0", VALIDATE_LOCATION, {"bairro": "Campeche", "cidade": "Florianópolis"}),
            text_step("Aprovado"),
        ])

        events = await collect(make_orchestrator(client, registry).run_turn(history, TURN_SETTINGS))

        start = next(e for e in events if isinstance(e, ToolCallStart))
        call_input = next(e for e in events if isinstance(e, ToolCallInput))
        result = next(e for e in events if isinstance(e, ToolResult))
        assert start.call_id != "call_0"
        assert start.call_id == call_input.call_id == result.call_id

        tool_message = [m for m in client.calls[1]["messages"] if isinstance(m, ToolMessage)][-1]
        assert tool_message.tool_call_id == start.call_id

    @pytest.mark.asyncio
    async def test_fresh_ids_are_kept(self, registry):
        client = ScriptedClient([
            tool_step("call_a", REQUEST_LOCATION, {"message": "Busque"}),
            tool_step("call_b", REQUEST_LOCATION, {"message": "Busque de novo"}),
            text_step("Ok"),
        ])

        events = await collect(make_orchestrator(client, registry).run_turn(_history(), TURN_SETTINGS))

        assert [e.call_id for e in events if isinstance(e, ToolResult)] == ["call_a", "call_b"]
