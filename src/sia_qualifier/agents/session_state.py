"""
Session state reducer.

Everything the UI shows besides the messages themselves (token usage,
validated location, qualification record, pending address picker) is
derived from history on every read. Nothing here is cached, so deleting or
truncating messages rolls the aggregates back automatically.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from sia_qualifier.agents.location_selection import is_location_selection
from sia_qualifier.agents.tools import REQUEST_LOCATION, SUBMIT_QUALIFICATION, VALIDATE_LOCATION
from sia_qualifier.models.messages import Message, Role, ToolInvocationPart, ToolState
from sia_qualifier.models.schemas import CostEstimate, TokenUsage

TOKENS_PER_PRICE_UNIT = 1_000_000


class SessionSnapshot(BaseModel):
    usage: TokenUsage = TokenUsage()
    location: Optional[Dict[str, Any]] = None
    qualification: Optional[Dict[str, Any]] = None


def _completed(part: ToolInvocationPart) -> bool:
    return part.state == ToolState.DONE and not part.is_error


def derive_session_state(history: List[Message]) -> SessionSnapshot:
    """
    Fold history into the session aggregates.

    Location and qualification come from the newest completed, non-error
    validateLocation / submitQualification results; the scan walks from the
    newest message back and stops once both are found. Usage is the sum of
    the usage recorded on every message.
    """
    location = None
    qualification = None

    for message in reversed(history):
        for part in reversed(message.tool_invocations):
            if not _completed(part):
                continue
            if location is None and part.tool_name == VALIDATE_LOCATION:
                location = part.output
            elif qualification is None and part.tool_name == SUBMIT_QUALIFICATION:
                qualification = part.output
        if location is not None and qualification is not None:
            break

    usage = TokenUsage()
    for message in history:
        if message.usage:
            usage = usage + message.usage

    return SessionSnapshot(usage=usage, location=location, qualification=qualification)


def pending_location_request(history: List[Message]) -> Optional[ToolInvocationPart]:
    """
    Latest requestLocation call still waiting for the user's pick.

    A request is answered once any later user message carries a location
    selection.
    """
    for message in reversed(history):
        if message.role == Role.USER and is_location_selection(message.text):
            return None
        for part in reversed(message.tool_invocations):
            if part.tool_name == REQUEST_LOCATION and _completed(part):
                return part
    return None


def estimate_cost(usage: TokenUsage, pricing: Optional[Dict[str, Optional[float]]]) -> CostEstimate:
    """
    Estimate the USD cost of a usage total.

    Args:
        usage: Token counters
        pricing: {"input", "output"} prices per million tokens, or None for
            models without a price

    Returns:
        CostEstimate (all zero when the model has no pricing entry)
    """
    if not pricing:
        return CostEstimate()
    input_cost = usage.prompt / TOKENS_PER_PRICE_UNIT * (pricing.get("input") or 0.0)
    output_cost = usage.completion / TOKENS_PER_PRICE_UNIT * (pricing.get("output") or 0.0)
    return CostEstimate(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
    )
