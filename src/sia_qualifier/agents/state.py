"""
State definition for the LangGraph orchestration loop.

One TurnState flows through the graph for a single user turn: the
model-facing transcript grows by one AI message per step plus one tool
message per executed call.
"""

from typing import Any, Dict, List, Optional

from langchain_core.messages import BaseMessage
from typing_extensions import TypedDict

from sia_qualifier.models.schemas import TokenUsage


class PendingCall(TypedDict):
    call_id: str
    tool_name: str
    input: Dict[str, Any]
    input_error: Optional[str]


class TurnState(TypedDict):
    """
    State object that flows through the turn graph.

    No reducers: every node returns the full new value of what it changes.
    """

    # Provider-native transcript (system + history + this turn's steps)
    messages: List[BaseMessage]

    # Tool calls requested by the last generation step
    pending_calls: List[PendingCall]

    # Step bookkeeping
    step: int
    max_steps: int
    usage: TokenUsage

    # "stop" | "step-limit" | "aborted"
    finish_reason: str
