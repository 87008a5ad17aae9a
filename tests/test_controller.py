"""Tests for the session controller."""
import pytest
from langchain_core.messages import AIMessage, ToolMessage

from fakes import FakeGateway, ScriptedClient, collect, make_orchestrator, text_step, tool_step
from sia_qualifier.agents.controller import MessageNotFoundError, SessionBusyError, SessionController
from sia_qualifier.agents.gateway import ModelConfigurationError
from sia_qualifier.agents.orchestrator import TurnOrchestrator
from sia_qualifier.agents.scenarios import SCENARIOS
from sia_qualifier.agents.tools import REQUEST_LOCATION, SUBMIT_QUALIFICATION, VALIDATE_LOCATION
from sia_qualifier.models.messages import Finish, Message, Role, TextPart, ToolInvocationPart, ToolState
from sia_qualifier.models.schemas import LocationSelection, TokenUsage, TurnSettings

TURN_SETTINGS = TurnSettings(model="fake-model")


def _session(steps, registry) -> SessionController:
    client = ScriptedClient(steps)
    return SessionController(make_orchestrator(client, registry))


class TestAppend:
    """Tests for user turns."""

    @pytest.mark.asyncio
    async def test_turn_is_written_to_history(self, registry):
        session = _session([text_step("Olá! Sou a Sia.")], registry)

        events = await collect(session.append("Oi", TURN_SETTINGS))

        assert [m.role for m in session.history] == [Role.USER, Role.ASSISTANT]
        assert session.history[1].id == events[0].message_id
        assert session.history[1].text == "Olá! Sou a Sia."
        assert session.history[1].usage == TokenUsage(prompt=10, completion=3, total=13)
        assert session.is_streaming is False

    @pytest.mark.asyncio
    async def test_one_turn_at_a_time(self, registry):
        session = _session([text_step("Olá")], registry)

        events = session.append("Oi", TURN_SETTINGS)
        assert session.is_streaming is True
        with pytest.raises(SessionBusyError):
            session.append("Oi de novo", TURN_SETTINGS)
        with pytest.raises(SessionBusyError):
            session.reset()

        await collect(events)
        assert session.is_streaming is False
        assert len(session.history) == 2

    @pytest.mark.asyncio
    async def test_closing_unstarted_turn_releases_session(self, registry):
        """A client that leaves before the first event must not lock the session."""
        session = _session([text_step("Olá")], registry)

        events = session.append("Oi", TURN_SETTINGS)
        await events.aclose()

        assert session.is_streaming is False
        session.reset()
        assert session.history == []

    @pytest.mark.asyncio
    async def test_stale_stream_does_not_release_newer_turn(self, registry):
        session = _session([text_step("Olá")], registry)

        first = session.append("Oi", TURN_SETTINGS)
        await first.aclose()
        second = session.append("Oi de novo", TURN_SETTINGS)
        await first.aclose()

        assert session.is_streaming is True
        await collect(second)
        assert session.is_streaming is False
        assert session.history[-1].text == "Olá"

    @pytest.mark.asyncio
    async def test_closing_mid_turn_keeps_partial_reply(self, registry):
        session = _session([text_step("Olá! Sou a Sia.")], registry)

        events = session.append("Oi", TURN_SETTINGS)
        await events.__anext__()
        await events.__anext__()
        await events.aclose()

        assert session.is_streaming is False
        assert session.history[1].text == "Olá! So"

    @pytest.mark.asyncio
    async def test_unconfigured_model_leaves_no_assistant_message(self, registry):
        class UnconfiguredGateway(FakeGateway):
            def resolve_model(self, turn_settings):
                raise ModelConfigurationError("GROQ_API_KEY not found in environment variables.")

        session = SessionController(TurnOrchestrator(UnconfiguredGateway(None), registry, system_prompt="x"))

        events = await collect(session.append("Oi", TURN_SETTINGS))

        assert [e.type for e in events] == ["error"]
        assert [m.role for m in session.history] == [Role.USER]
        assert session.is_streaming is False

    @pytest.mark.asyncio
    async def test_send_location_uses_selection_template(self, registry):
        session = _session([text_step("Recebido")], registry)
        selection = LocationSelection(
            formatted_address="R. Carlos Sales - Campeche, Florianópolis - SC, Brasil",
            neighborhood="Campeche",
            city="Florianópolis",
            state="SC",
        )

        await collect(session.send_location(selection, TURN_SETTINGS))

        assert session.history[0].text.startswith("📍 Localização selecionada: **R. Carlos Sales")
        assert "- Bairro: Campeche" in session.history[0].text


class TestEditing:
    """Tests for delete, edit and regenerate."""

    @pytest.mark.asyncio
    async def test_delete_rolls_back_usage(self, registry):
        session = _session([text_step("Um"), text_step("Dois")], registry)
        await collect(session.append("primeira", TURN_SETTINGS))
        await collect(session.append("segunda", TURN_SETTINGS))
        assert session.snapshot().usage.total == 26

        session.delete(session.history[1].id)

        assert session.snapshot().usage.total == 13
        with pytest.raises(MessageNotFoundError):
            session.delete("msg_missing")

    @pytest.mark.asyncio
    async def test_edit_user_message_truncates_and_regenerates(self, registry):
        session = _session([text_step("Um"), text_step("Dois"), text_step("Novo")], registry)
        await collect(session.append("primeira", TURN_SETTINGS))
        await collect(session.append("segunda", TURN_SETTINGS))
        before = [m.model_copy(deep=True) for m in session.history]

        events = session.edit_and_regenerate(before[2].id, "segunda editada", TURN_SETTINGS)
        await collect(events)

        assert session.history[:2] == before[:2]
        assert session.history[2].id == before[2].id
        assert session.history[2].text == "segunda editada"
        assert session.history[3].text == "Novo"
        assert len(session.history) == 4

    @pytest.mark.asyncio
    async def test_edit_assistant_message_keeps_tool_parts(self, registry):
        client = ScriptedClient([])
        session = SessionController(make_orchestrator(client, registry), history=[
            Message.user("oi"),
            Message(id="a1", role=Role.ASSISTANT, parts=[
                ToolInvocationPart(tool_name=REQUEST_LOCATION, call_id="c1", state=ToolState.DONE, output={}),
                TextPart(text="Busque o endereço"),
            ]),
        ])

        result = session.edit_and_regenerate("a1", "Busque o endereço no campo abaixo")

        assert result is None
        assert client.calls == []
        parts = session.history[1].parts
        assert [p.type for p in parts] == ["tool-invocation", "text"]
        assert parts[1].text == "Busque o endereço no campo abaixo"

    @pytest.mark.asyncio
    async def test_regenerate_replaces_last_answer(self, registry):
        session = _session([text_step("Primeira resposta"), text_step("Segunda resposta")], registry)
        await collect(session.append("oi", TURN_SETTINGS))
        old_answer = session.history[1].id

        await collect(session.regenerate(TURN_SETTINGS))

        assert len(session.history) == 2
        assert session.history[1].id != old_answer
        assert session.history[1].text == "Segunda resposta"
        assert session.snapshot().usage.total == 13

    def test_regenerate_without_user_message(self, registry):
        session = _session([], registry)
        with pytest.raises(MessageNotFoundError):
            session.regenerate(TURN_SETTINGS)


class TestStopResetLoad:
    @pytest.mark.asyncio
    async def test_stop_aborts_turn_and_keeps_partial_message(self, registry):
        client = ScriptedClient([text_step("nunca")])
        session = SessionController(make_orchestrator(client, registry))
        assert session.stop() is False

        events = session.append("oi", TURN_SETTINGS)
        received = []
        async for event in events:
            received.append(event)
            if event.type == "start":
                assert session.stop() is True

        assert isinstance(received[-1], Finish)
        assert received[-1].finish_reason == "aborted"
        assert client.calls == []
        assert [m.role for m in session.history] == [Role.USER, Role.ASSISTANT]
        assert session.is_streaming is False

    def test_reset_and_load(self, registry):
        session = _session([], registry)
        scenario = SCENARIOS["rejection-rio-tavares"]

        session.load(scenario.build_messages(registry))
        assert session.snapshot().location["allowed"] is False

        session.reset()
        assert session.history == []
        assert session.snapshot().location is None


class TestCampecheQualification:
    """A full qualification run driven by a scripted model."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, registry):
        qualification = {
            "lead_qualified": True,
            "owner_type": "corretor",
            "bairro": "Campeche",
            "cidade": "Florianópolis",
            "land_size_m2": 450,
            "asking_price": 1200000,
            "legal_status": "Escritura pública",
            "has_sea_view": True,
            "is_beachfront": False,
            "next_step": "agendar_reuniao",
        }
        session = _session([
            tool_step("c1", REQUEST_LOCATION, {"message": "Busque o endereço exato do terreno:"}),
            text_step("Busque o endereço do terreno no campo abaixo."),
            tool_step("c2", VALIDATE_LOCATION, {"bairro": "Campeche", "cidade": "Florianópolis"}),
            text_step("Localização aprovada! Qual o tamanho do terreno em m²?"),
            text_step("Qual o valor pedido?"),
            text_step("O terreno possui escritura pública?"),
            text_step("É frente mar ou tem vista para o mar?"),
            tool_step("c3", SUBMIT_QUALIFICATION, qualification),
            text_step("Perfeito! Vamos agendar uma reunião?"),
        ], registry)

        await collect(session.append("Oi, sou corretor e tenho um terreno no Campeche.", TURN_SETTINGS))
        assert session.pending_location_request().call_id == "c1"

        await collect(session.send_location(LocationSelection(
            formatted_address="R. Carlos Sales - Campeche, Florianópolis - SC, Brasil",
            neighborhood="Campeche",
            city="Florianópolis",
            state="SC",
        ), TURN_SETTINGS))
        assert session.pending_location_request() is None
        assert session.snapshot().location["focus"] == "Rentabilidade de curto prazo / Airbnb"

        for answer in ("450m²", "R$ 1.200.000", "sim!", "sim, tem vista pro mar"):
            await collect(session.append(answer, TURN_SETTINGS))

        snapshot = session.snapshot()
        assert snapshot.qualification["lead_qualified"] is True
        assert snapshot.qualification["next_step"] == "agendar_reuniao"
        assert snapshot.qualification["neighborhood_focus"] == "Rentabilidade de curto prazo / Airbnb"
        assert snapshot.usage.total == 13 * 9
        assert len(session.history) == 12


class TestScenarios:
    """Canned scenarios load into a consistent state."""

    def test_success_campeche(self, registry):
        snapshot = SessionController(None, history=SCENARIOS["success-campeche"].build_messages(registry)).snapshot()
        assert snapshot.location["bairro"] == "campeche"
        assert snapshot.qualification["next_step"] == "agendar_reuniao"

    def test_jurere_luxury(self, registry):
        messages = SCENARIOS["success-jurere"].build_messages(registry)
        snapshot = SessionController(None, history=messages).snapshot()
        assert snapshot.location["focus"] == "Luxo e alto padrão"
        assert snapshot.qualification["next_step"] == "enviar_estudo"
        assert snapshot.qualification["neighborhood_focus"] == "Luxo e alto padrão"

    def test_rejection_has_no_qualification(self, registry):
        messages = SCENARIOS["rejection-rio-tavares"].build_messages(registry)
        snapshot = SessionController(None, history=messages).snapshot()
        assert snapshot.location["allowed"] is False
        assert snapshot.qualification is None

    def test_call_ids_are_unique(self, registry):
        call_ids = [
            part.call_id
            for scenario in SCENARIOS.values()
            for message in scenario.build_messages(registry)
            for part in message.tool_invocations
        ]
        assert len(call_ids) == len(set(call_ids))


class TestToolCallIds:
    """Tool call ids stay unique across the conversation."""

    @pytest.mark.asyncio
    async def test_reused_provider_ids_are_remapped(self, registry):
        client = ScriptedClient([
            tool_step("call_0", REQUEST_LOCATION, {"message": "Busque o endereço"}),
            tool_step("call_0", VALIDATE_LOCATION, {"bairro": "Campeche", "cidade": "Florianópolis"}),
            text_step("Localização aprovada!"),
            tool_step("call_0", REQUEST_LOCATION, {"message": "Busque o outro endereço"}),
            text_step("Pronto"),
        ])
        session = SessionController(make_orchestrator(client, registry))

        events = await collect(session.append("Terreno no Campeche", TURN_SETTINGS))

        assert events[-1].type == "finish"
        first, second = session.history[1].tool_invocations
        assert first.call_id == "call_0"
        assert first.input == {"message": "Busque o endereço"}
        assert first.tool_name == REQUEST_LOCATION
        assert second.call_id != "call_0"
        assert second.input == {"bairro": "Campeche", "cidade": "Florianópolis"}
        assert first.state == second.state == ToolState.DONE
        assert session.snapshot().location["allowed"] is True

        # The model sees matching ids on tool calls and tool results
        transcript = client.calls[2]["messages"]
        requested = [c["id"] for m in transcript if isinstance(m, AIMessage) for c in m.tool_calls]
        answered = [m.tool_call_id for m in transcript if isinstance(m, ToolMessage)]
        assert requested == answered == ["call_0", second.call_id]

        await collect(session.append("E outro terreno?", TURN_SETTINGS))

        call_ids = [p.call_id for m in session.history for p in m.tool_invocations]
        assert len(call_ids) == 3
        assert len(set(call_ids)) == 3
