"""
Conversation history and streaming event shapes.

History is an ordered list of ``Message`` objects made of tagged parts.
Every provider stream is normalized into the ``*Event`` models below at
the gateway boundary, so the loop, the controller and the API all speak
one shape.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field
from typing_extensions import Annotated

from sia_qualifier.models.schemas import TokenUsage


def new_id(prefix: str = "msg") -> str:
    return f"{prefix}_{uuid4().hex[:16]}"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ToolState(str, Enum):
    PENDING = "pending"
    AWAITING_RESULT = "awaiting-result"
    DONE = "done"


TOOL_STATE_ORDER = {ToolState.PENDING: 0, ToolState.AWAITING_RESULT: 1, ToolState.DONE: 2}


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ToolInvocationPart(BaseModel):
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_name: str
    call_id: str
    input: Dict[str, Any] = {}
    state: ToolState = ToolState.PENDING
    output: Optional[Any] = None
    is_error: bool = False

    def advance(self, state: ToolState) -> None:
        """Move forward in the pending -> awaiting-result -> done lifecycle."""
        if TOOL_STATE_ORDER[state] < TOOL_STATE_ORDER[self.state]:
            raise ValueError(
                f"Tool invocation {self.call_id} cannot go from {self.state.value} to {state.value}"
            )
        self.state = state


Part = Annotated[Union[TextPart, ToolInvocationPart], Field(discriminator="type")]


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    role: Role
    parts: List[Part] = []
    usage: Optional[TokenUsage] = None

    @classmethod
    def user(cls, text: str, id: Optional[str] = None) -> "Message":
        return cls(id=id or new_id(), role=Role.USER, parts=[TextPart(text=text)])

    @classmethod
    def assistant(cls, text: str = "", id: Optional[str] = None) -> "Message":
        parts = [TextPart(text=text)] if text else []
        return cls(id=id or new_id(), role=Role.ASSISTANT, parts=parts)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_invocations(self) -> List[ToolInvocationPart]:
        return [p for p in self.parts if isinstance(p, ToolInvocationPart)]


# -----------------------------
# Model events (gateway -> loop)
# -----------------------------
class TextDelta(BaseModel):
    type: Literal["text-delta"] = "text-delta"
    text: str


class ToolCallStart(BaseModel):
    type: Literal["tool-call-start"] = "tool-call-start"
    call_id: str
    tool_name: str


class ToolCallInput(BaseModel):
    """Arguments of a tool call are complete (or could not be parsed)."""
    type: Literal["tool-call-input"] = "tool-call-input"
    call_id: str
    tool_name: str
    input: Dict[str, Any] = {}
    input_error: Optional[str] = None


class UsageReport(BaseModel):
    type: Literal["usage"] = "usage"
    usage: TokenUsage


ModelEvent = Union[TextDelta, ToolCallStart, ToolCallInput, UsageReport]


# -----------------------------
# Turn events (loop -> controller / API)
# -----------------------------
class TurnStart(BaseModel):
    type: Literal["start"] = "start"
    message_id: str


class ToolResult(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    call_id: str
    tool_name: str
    output: Any = None
    is_error: bool = False


class StepFinish(BaseModel):
    type: Literal["step-finish"] = "step-finish"
    step: int
    usage: TokenUsage = Field(default_factory=TokenUsage)
    tool_calls: int = 0


class Finish(BaseModel):
    """Final synthetic event: usage totals for the whole turn."""
    type: Literal["finish"] = "finish"
    usage: TokenUsage
    steps: int
    finish_reason: Literal["stop", "step-limit", "aborted"] = "stop"


class TurnError(BaseModel):
    type: Literal["error"] = "error"
    message: str


TurnEvent = Union[
    TurnStart, TextDelta, ToolCallStart, ToolCallInput, ToolResult, StepFinish, Finish, TurnError
]
