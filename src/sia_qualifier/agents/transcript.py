"""
Transcript helpers.

- apply_event: folds one streamed turn event into the assistant message,
  in arrival order. This is the only place history is written during a turn.
- to_langchain_messages: converts history into provider-native turns for
  the model (system, human, AI with tool calls, tool results).
"""

import json
import logging
from typing import List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from sia_qualifier.models.messages import (
    Finish,
    Message,
    Role,
    StepFinish,
    TextDelta,
    TextPart,
    ToolCallInput,
    ToolCallStart,
    ToolInvocationPart,
    ToolResult,
    ToolState,
    TurnEvent,
)

logger = logging.getLogger(__name__)


def find_invocation(history: List[Message], call_id: str) -> Optional[ToolInvocationPart]:
    for message in history:
        for part in message.tool_invocations:
            if part.call_id == call_id:
                return part
    return None


def apply_event(message: Message, event: TurnEvent) -> None:
    """
    Apply a turn event to the in-flight assistant message.

    Text deltas extend the trailing text part (or open a new one after a
    tool part); tool events create and advance ToolInvocation parts.
    Start, error and unknown events leave the message untouched.
    """
    if isinstance(event, TextDelta):
        if message.parts and isinstance(message.parts[-1], TextPart):
            message.parts[-1].text += event.text
        else:
            message.parts.append(TextPart(text=event.text))

    elif isinstance(event, ToolCallStart):
        message.parts.append(ToolInvocationPart(tool_name=event.tool_name, call_id=event.call_id))

    elif isinstance(event, ToolCallInput):
        part = _invocation(message, event.call_id)
        if part is None:
            part = ToolInvocationPart(tool_name=event.tool_name, call_id=event.call_id)
            message.parts.append(part)
        part.input = event.input
        part.advance(ToolState.AWAITING_RESULT)

    elif isinstance(event, ToolResult):
        part = _invocation(message, event.call_id)
        if part is None:
            logger.warning(f"[TRANSCRIPT] Resultado para chamada desconhecida {event.call_id}")
            return
        part.output = event.output
        part.is_error = event.is_error
        part.advance(ToolState.DONE)

    elif isinstance(event, StepFinish):
        message.usage = (message.usage + event.usage) if message.usage else event.usage

    elif isinstance(event, Finish):
        message.usage = event.usage


def _invocation(message: Message, call_id: str) -> Optional[ToolInvocationPart]:
    for part in message.tool_invocations:
        if part.call_id == call_id:
            return part
    return None


def tool_message_content(output) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False)


def _assistant_to_langchain(message: Message) -> List[BaseMessage]:
    """
    Split an assistant message into model steps.

    A step is the text emitted before and the tool calls emitted in one
    generation; a text part that follows tool parts starts a new step.
    Invocations that never produced a result are left out, since providers
    reject tool calls without a matching tool message.
    """
    converted: List[BaseMessage] = []
    text = ""
    calls: List[ToolInvocationPart] = []

    def flush():
        if not text and not calls:
            return
        converted.append(AIMessage(
            content=text,
            tool_calls=[
                {"name": c.tool_name, "args": c.input, "id": c.call_id, "type": "tool_call"}
                for c in calls
            ],
        ))
        for c in calls:
            converted.append(ToolMessage(
                content=tool_message_content(c.output),
                tool_call_id=c.call_id,
                name=c.tool_name,
                status="error" if c.is_error else "success",
            ))

    for part in message.parts:
        if isinstance(part, TextPart):
            if calls:
                flush()
                text, calls = "", []
            text += part.text
        elif part.state == ToolState.DONE:
            calls.append(part)
    flush()
    return converted


def to_langchain_messages(history: List[Message], system_prompt: Optional[str] = None) -> List[BaseMessage]:
    """Convert history into the message list sent to the model."""
    messages: List[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))

    for message in history:
        if message.role == Role.USER:
            messages.append(HumanMessage(content=message.text))
        elif message.role == Role.SYSTEM:
            messages.append(SystemMessage(content=message.text))
        else:
            messages.extend(_assistant_to_langchain(message))
    return messages
