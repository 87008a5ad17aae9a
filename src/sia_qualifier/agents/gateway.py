"""
Model gateway.

Resolves a LangChain chat model from a model id, applies per-provider
request shaping and turns the provider's chunk stream into the tagged
model events the orchestration loop consumes.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.runnables import Runnable, RunnableLambda

from sia_qualifier.config import LLMProvider, Settings
from sia_qualifier.models.messages import (
    ModelEvent,
    TextDelta,
    ToolCallInput,
    ToolCallStart,
    UsageReport,
    new_id,
)
from sia_qualifier.models.schemas import TokenUsage, TurnSettings

logger = logging.getLogger(__name__)

# Sent instead of an empty assistant turn to providers that reject empty content
EMPTY_TURN_PLACEHOLDER = "."

GROQ_PREFIXES = ("llama", "mixtral", "gemma", "qwen")


class ModelConfigurationError(ValueError):
    """The selected provider is missing credentials or settings."""


def provider_for(model_id: str) -> LLMProvider:
    """
    Pick the provider for a model id.

    gemini-* goes to Google, Groq-hosted open models go to Groq, and
    everything else (gpt-*, o-series, unknown ids) goes to OpenAI.
    """
    model_id = model_id.lower()
    if model_id.startswith("gemini-"):
        return LLMProvider.GEMINI
    if model_id.startswith(GROQ_PREFIXES):
        return LLMProvider.GROQ
    return LLMProvider.OPENAI


def content_text(content: Any) -> str:
    """Text carried by a message content (plain string or list of blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks = []
        for block in content:
            if isinstance(block, str):
                chunks.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                chunks.append(block.get("text") or "")
        return "".join(chunks)
    return ""


def fill_empty_assistant_turns(messages: Sequence[BaseMessage]) -> List[BaseMessage]:
    """Replace empty assistant content with a placeholder text segment."""
    shaped: List[BaseMessage] = []
    for message in messages:
        if isinstance(message, AIMessage) and not content_text(message.content).strip():
            message = message.model_copy(update={"content": EMPTY_TURN_PLACEHOLDER})
        shaped.append(message)
    return shaped


def usage_from_metadata(metadata: Optional[Dict[str, Any]]) -> TokenUsage:
    if not metadata:
        return TokenUsage()
    details = metadata.get("output_token_details") or {}
    prompt = metadata.get("input_tokens") or 0
    completion = metadata.get("output_tokens") or 0
    return TokenUsage(
        prompt=prompt,
        completion=completion,
        total=metadata.get("total_tokens") or prompt + completion,
        reasoning=details.get("reasoning") or 0,
    )


async def normalize_stream(chunks: AsyncIterator[AIMessageChunk]) -> AsyncIterator[ModelEvent]:
    """
    Normalize LangChain chunks into model events.

    Emits TextDelta as text arrives, ToolCallStart the first time a call id
    shows up, then one ToolCallInput per call once the stream is complete
    (arguments are only reliable after all chunks are merged), and a final
    UsageReport.
    """
    gathered: Optional[AIMessageChunk] = None
    started: Set[str] = set()
    usage = TokenUsage()

    async for chunk in chunks:
        gathered = chunk if gathered is None else gathered + chunk

        text = content_text(chunk.content)
        if text:
            yield TextDelta(text=text)

        for tool_chunk in chunk.tool_call_chunks or []:
            call_id = tool_chunk.get("id")
            if call_id and call_id not in started and tool_chunk.get("name"):
                started.add(call_id)
                yield ToolCallStart(call_id=call_id, tool_name=tool_chunk["name"])

        if chunk.usage_metadata:
            usage = usage + usage_from_metadata(chunk.usage_metadata)

    if gathered is not None:
        for tool_call in gathered.tool_calls:
            call_id = tool_call.get("id") or new_id("call")
            if call_id not in started:
                started.add(call_id)
                yield ToolCallStart(call_id=call_id, tool_name=tool_call["name"])
            yield ToolCallInput(call_id=call_id, tool_name=tool_call["name"], input=tool_call.get("args") or {})

        for invalid in gathered.invalid_tool_calls:
            call_id = invalid.get("id") or new_id("call")
            name = invalid.get("name") or "unknown"
            if call_id not in started:
                started.add(call_id)
                yield ToolCallStart(call_id=call_id, tool_name=name)
            yield ToolCallInput(
                call_id=call_id,
                tool_name=name,
                input={},
                input_error=invalid.get("error") or f"Argumentos não são JSON válido: {invalid.get('args')!r}",
            )

    yield UsageReport(usage=usage)


@dataclass
class ModelClient:
    """A resolved chat model plus the request shaping its provider needs."""

    model_id: str
    provider: LLMProvider
    llm: BaseChatModel
    request_shapers: List[Runnable] = field(default_factory=list)

    def _pipeline(self, tools: List[Dict[str, Any]]) -> Runnable:
        model: Runnable = self.llm.bind_tools(tools) if tools else self.llm
        for shaper in reversed(self.request_shapers):
            model = shaper | model
        return model

    async def stream(self, messages: List[BaseMessage], tools: List[Dict[str, Any]]) -> AsyncIterator[ModelEvent]:
        """Run one generation step and yield normalized events."""
        pipeline = self._pipeline(tools)
        async for event in normalize_stream(pipeline.astream(messages)):
            yield event


class ModelGateway:
    """Resolves model ids into ModelClients using application settings."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def check_credentials(self, model_id: str) -> LLMProvider:
        """
        Fail fast when the provider for a model id has no API key.

        Raises:
            ModelConfigurationError: If the key is missing
        """
        provider = provider_for(model_id)
        if provider == LLMProvider.OPENAI and not self.settings.openai_api_key:
            raise ModelConfigurationError(
                "OPENAI_API_KEY not found in environment variables. "
                "Get your key at: https://platform.openai.com/api-keys"
            )
        if provider == LLMProvider.GEMINI and not self.settings.google_api_key:
            raise ModelConfigurationError(
                "GOOGLE_API_KEY not found in environment variables. "
                "Get your free key at: https://aistudio.google.com/app/apikey"
            )
        if provider == LLMProvider.GROQ and not self.settings.groq_api_key:
            raise ModelConfigurationError(
                "GROQ_API_KEY not found in environment variables. "
                "Get your free key at: https://console.groq.com/"
            )
        return provider

    def resolve_model(self, turn_settings: TurnSettings) -> ModelClient:
        """
        Build the chat model for a turn.

        Args:
            turn_settings: Model id and sampling parameters

        Returns:
            ModelClient ready to stream

        Raises:
            ModelConfigurationError: If the provider is not configured
        """
        model_id = turn_settings.model
        provider = self.check_credentials(model_id)
        logger.info(f"[GATEWAY] Modelo {model_id} via {provider.value}")

        if provider == LLMProvider.GEMINI:
            from langchain_google_genai import ChatGoogleGenerativeAI

            llm = ChatGoogleGenerativeAI(
                model=model_id,
                temperature=turn_settings.temperature,
                top_p=turn_settings.top_p,
                max_tokens=turn_settings.max_tokens,
                google_api_key=self.settings.google_api_key,
            )
            # Gemini rejects assistant turns with empty content, which tool-only
            # steps produce; every request of the turn goes through this shaper.
            return ModelClient(
                model_id, provider, llm, [RunnableLambda(fill_empty_assistant_turns)]
            )

        if provider == LLMProvider.GROQ:
            from langchain_groq import ChatGroq

            # top_p stays at the Groq default
            llm = ChatGroq(
                model=model_id,
                temperature=turn_settings.temperature,
                max_tokens=turn_settings.max_tokens,
                groq_api_key=self.settings.groq_api_key,
            )
            return ModelClient(model_id, provider, llm)

        from langchain_openai import ChatOpenAI

        llm = ChatOpenAI(
            model=model_id,
            temperature=turn_settings.temperature,
            top_p=turn_settings.top_p,
            max_tokens=turn_settings.max_tokens,
            api_key=self.settings.openai_api_key,
            stream_usage=True,
        )
        return ModelClient(model_id, provider, llm)
