"""
LangGraph orchestration loop.

One graph run is one user turn:

    generate ──(tool calls)──> tools ──(step < max)──> generate
        │                        │
        └──(no tool calls)──> END <──(step limit / aborted)

Every event the turn produces goes out through the LangGraph custom stream
writer, in order. The graph never touches conversation history; the
session controller applies the streamed events to the assistant message.
"""

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Tuple

from langchain_core.messages import AIMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from langgraph.types import StreamWriter

from sia_qualifier.agents.gateway import ModelConfigurationError, ModelGateway
from sia_qualifier.agents.state import PendingCall, TurnState
from sia_qualifier.agents.tools import InputSchemaError, ToolRegistry, UnknownToolError, build_tool_registry
from sia_qualifier.agents.transcript import find_invocation, tool_message_content, to_langchain_messages
from sia_qualifier.config import (
    CITY_VARIANTS,
    FALLBACK_MAP_URL,
    NEIGHBORHOODS,
    TARGET_CITY,
    Settings,
)
from sia_qualifier.guardrails.geographic_validator import GeographicValidator
from sia_qualifier.guardrails.neighborhood_matcher import NeighborhoodMatcher, load_neighborhoods
from sia_qualifier.models.messages import (
    Finish,
    Message,
    StepFinish,
    TextDelta,
    ToolCallInput,
    ToolCallStart,
    ToolResult,
    TurnError,
    TurnEvent,
    TurnStart,
    UsageReport,
    new_id,
)
from sia_qualifier.models.schemas import TokenUsage, TurnSettings
from sia_qualifier.prompts.system_prompt import get_system_prompt

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 5


def _cancel_event(config: RunnableConfig) -> asyncio.Event:
    return config["configurable"]["cancel_event"]


class CallIdAllocator:
    """
    Keeps tool call ids unique across the conversation.

    Some providers number calls per response (call_0, call_1, ...), so an id
    can come back in a later step or turn. A repeated id is swapped for a
    fresh one, consistently for every event of that call in the step.
    """

    def __init__(self, history: List[Message], messages: List[Any]):
        self.history = history
        self.taken = {
            call["id"] for message in messages if isinstance(message, AIMessage) for call in message.tool_calls
        }
        self.assigned: Dict[str, str] = {}

    def __call__(self, call_id: str) -> str:
        if call_id not in self.assigned:
            fresh = call_id
            if call_id in self.taken or find_invocation(self.history, call_id) is not None:
                fresh = new_id("call")
                logger.warning(f"[LOOP] Id de chamada repetido {call_id!r}; usando {fresh!r}")
            self.assigned[call_id] = fresh
            self.taken.add(fresh)
        return self.assigned[call_id]


class TurnOrchestrator:
    """Runs the bounded generate/tools loop for a single turn."""

    def __init__(
        self,
        gateway: ModelGateway,
        registry: ToolRegistry,
        system_prompt: Optional[str] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
    ):
        self.gateway = gateway
        self.registry = registry
        self.system_prompt = system_prompt or get_system_prompt()
        self.max_steps = max_steps
        self.graph = self._build_graph()

    # -----------------------------
    # GRAPH
    # -----------------------------
    def _build_graph(self):
        """
        Build the turn graph.

        generate streams one model call; tools runs whatever that call asked
        for. The loop closes back on generate until the model stops asking
        for tools, the step ceiling is hit or the turn is cancelled.
        """
        workflow = StateGraph(TurnState)

        workflow.add_node("generate", self._generate_node)
        workflow.add_node("tools", self._tools_node)

        workflow.set_entry_point("generate")

        workflow.add_conditional_edges(
            "generate",
            self._route_after_generation,
            {"tools": "tools", "end": END},
        )
        workflow.add_conditional_edges(
            "tools",
            self._route_after_tools,
            {"generate": "generate", "end": END},
        )

        return workflow.compile()

    # -----------------------------
    # NODES
    # -----------------------------
    async def _generate_node(self, state: TurnState, config: RunnableConfig, writer: StreamWriter) -> Dict[str, Any]:
        cancel_event = _cancel_event(config)
        if cancel_event.is_set():
            return {"finish_reason": "aborted"}

        client = config["configurable"]["model_client"]
        tools = config["configurable"]["tools"]
        step = state["step"] + 1
        logger.info(f"[LOOP] Passo {step}/{state['max_steps']} com {client.model_id}")

        text_chunks: List[str] = []
        calls: List[PendingCall] = []
        step_usage = TokenUsage()
        call_ids = CallIdAllocator(config["configurable"]["history"], state["messages"])

        async with aclosing(client.stream(state["messages"], tools)) as events:
            async for event in events:
                if cancel_event.is_set():
                    logger.info("[LOOP] Turno cancelado durante o streaming")
                    break
                if isinstance(event, UsageReport):
                    step_usage = step_usage + event.usage
                    continue
                if isinstance(event, (ToolCallStart, ToolCallInput)):
                    event = event.model_copy(update={"call_id": call_ids(event.call_id)})

                writer(event)
                if isinstance(event, TextDelta):
                    text_chunks.append(event.text)
                elif isinstance(event, ToolCallInput):
                    calls.append(PendingCall(
                        call_id=event.call_id,
                        tool_name=event.tool_name,
                        input=event.input,
                        input_error=event.input_error,
                    ))

        writer(StepFinish(step=step, usage=step_usage, tool_calls=len(calls)))

        ai_message = AIMessage(
            content="".join(text_chunks),
            tool_calls=[
                {"name": c["tool_name"], "args": c["input"], "id": c["call_id"], "type": "tool_call"}
                for c in calls
            ],
        )
        return {
            "messages": state["messages"] + [ai_message],
            "pending_calls": calls,
            "step": step,
            "usage": state["usage"] + step_usage,
            "finish_reason": "aborted" if cancel_event.is_set() else state["finish_reason"],
        }

    async def _tools_node(self, state: TurnState, config: RunnableConfig, writer: StreamWriter) -> Dict[str, Any]:
        cancel_event = _cancel_event(config)
        calls = state["pending_calls"]
        logger.info(f"[TOOLS] Executando {len(calls)} chamada(s): {[c['tool_name'] for c in calls]}")

        outcomes = await asyncio.gather(*(self._execute_call(call) for call in calls))

        if cancel_event.is_set():
            logger.info("[LOOP] Turno cancelado; resultados das tools descartados")
            return {"pending_calls": [], "finish_reason": "aborted"}

        tool_messages = []
        for call, (output, is_error) in zip(calls, outcomes):
            writer(ToolResult(
                call_id=call["call_id"],
                tool_name=call["tool_name"],
                output=output,
                is_error=is_error,
            ))
            tool_messages.append(ToolMessage(
                content=tool_message_content(output),
                tool_call_id=call["call_id"],
                name=call["tool_name"],
                status="error" if is_error else "success",
            ))

        finish_reason = "step-limit" if state["step"] >= state["max_steps"] else state["finish_reason"]
        return {
            "messages": state["messages"] + tool_messages,
            "pending_calls": [],
            "finish_reason": finish_reason,
        }

    async def _execute_call(self, call: PendingCall) -> Tuple[Any, bool]:
        """Run one tool call; failures become an error payload for the model."""
        name = call["tool_name"]
        if call["input_error"]:
            logger.warning(f"[TOOLS] Argumentos ilegíveis para {name}: {call['input_error']}")
            return {"error": "InputSchemaError", "message": call["input_error"], "details": []}, True

        try:
            output = await asyncio.to_thread(self.registry.execute, name, call["input"])
            return output, False
        except InputSchemaError as e:
            logger.warning(f"[TOOLS] Entrada inválida para {name}: {e.details}")
            return {"error": "InputSchemaError", "message": e.message, "details": e.details}, True
        except UnknownToolError as e:
            logger.warning(f"[TOOLS] {e}")
            return {"error": "UnknownToolError", "message": str(e), "details": []}, True
        except Exception as e:
            logger.error(f"[TOOLS] Falha ao executar {name}: {e}", exc_info=True)
            return {"error": "ToolExecutionError", "message": str(e), "details": []}, True

    # -----------------------------
    # ROUTING LOGIC
    # -----------------------------
    def _route_after_generation(self, state: TurnState) -> Literal["tools", "end"]:
        if state["finish_reason"] == "aborted":
            return "end"
        if not state["pending_calls"]:
            return "end"
        return "tools"

    def _route_after_tools(self, state: TurnState) -> Literal["generate", "end"]:
        """
        Continue with another model call unless the turn is over.

        Tools requested in the last allowed step have already run at this
        point; the ceiling only prevents the next model call.
        """
        if state["finish_reason"] in ("aborted", "step-limit"):
            logger.info(f"[LOOP] Encerrando turno: {state['finish_reason']}")
            return "end"
        return "generate"

    # -----------------------------
    # PUBLIC API
    # -----------------------------
    async def run_turn(
        self,
        history: List[Message],
        turn_settings: TurnSettings,
        message_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[TurnEvent]:
        """
        Run one turn over the given history and stream its events.

        Args:
            history: Conversation so far (ends with the user message to answer)
            turn_settings: Model, sampling, tool switches and prompt override
            message_id: Id of the assistant message receiving the events
            cancel_event: Set it to stop the turn cooperatively

        Yields:
            TurnStart, the streamed model/tool events, then Finish. A model
            that cannot be configured yields only a TurnError; a transport
            failure ends the turn with a TurnError after TurnStart
        """
        cancel_event = cancel_event or asyncio.Event()
        message_id = message_id or new_id()

        # No assistant message exists until the model is resolved
        try:
            client = self.gateway.resolve_model(turn_settings)
        except ModelConfigurationError as e:
            logger.error(f"[LOOP] Modelo não configurado: {e}")
            yield TurnError(message=str(e))
            return

        yield TurnStart(message_id=message_id)

        tools = [tool.to_openai_tool() for tool in self.registry.enabled_tools(turn_settings)]
        state = TurnState(
            messages=to_langchain_messages(history, turn_settings.system_prompt or self.system_prompt),
            pending_calls=[],
            step=0,
            max_steps=self.max_steps,
            usage=TokenUsage(),
            finish_reason="stop",
        )
        config: RunnableConfig = {
            "configurable": {
                "cancel_event": cancel_event,
                "model_client": client,
                "tools": tools,
                "history": history,
            },
            "recursion_limit": 2 * self.max_steps + 2,
        }

        final = state
        try:
            async for mode, payload in self.graph.astream(state, config=config, stream_mode=["custom", "values"]):
                if mode == "custom":
                    yield payload
                else:
                    final = payload
        except Exception as e:
            logger.error(f"[LOOP] Falha na comunicação com o modelo: {e}", exc_info=True)
            yield TurnError(message=f"Falha na comunicação com o modelo ({type(e).__name__}). Tente novamente.")
            return

        logger.info(
            f"[LOOP] Turno concluído: {final['step']} passo(s), "
            f"{final['usage'].total} tokens, motivo={final['finish_reason']}"
        )
        yield Finish(usage=final["usage"], steps=final["step"], finish_reason=final["finish_reason"])


def build_orchestrator(settings: Settings) -> TurnOrchestrator:
    """Wire matcher, validator, tools and gateway from the static tables."""
    matcher = NeighborhoodMatcher(load_neighborhoods(NEIGHBORHOODS))
    validator = GeographicValidator(
        matcher=matcher,
        city_variants=CITY_VARIANTS,
        target_city=TARGET_CITY,
        fallback_link=FALLBACK_MAP_URL,
    )
    return TurnOrchestrator(
        gateway=ModelGateway(settings),
        registry=build_tool_registry(validator),
        max_steps=settings.max_steps,
    )
