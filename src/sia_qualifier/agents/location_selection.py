"""
Encoding of an address picked in the assisted search.

The selection reaches the model as an ordinary user message. The marker
"📍 Localização selecionada:" and the Bairro/Cidade/Estado lines are a
contract with the system prompt, so both formatting and parsing live here.
"""

import re
from typing import Optional

from sia_qualifier.models.schemas import LocationSelection

SELECTION_MARKER = "📍 Localização selecionada:"
MISSING = "N/A"

_SELECTION_RE = re.compile(
    r"📍\s*Localização selecionada:\s*(?:\*\*)?(?P<address>.+?)(?:\*\*)?\s*$\s*"
    r"^-?\s*Bairro:\s*(?P<neighborhood>.*?)\s*$\s*"
    r"^-?\s*Cidade:\s*(?P<city>.*?)\s*$\s*"
    r"^-?\s*Estado:\s*(?P<state>.*?)\s*$",
    re.MULTILINE,
)


def format_location_selection(selection: LocationSelection) -> str:
    return (
        f"{SELECTION_MARKER} **{selection.formatted_address}**\n"
        f"- Bairro: {selection.neighborhood or MISSING}\n"
        f"- Cidade: {selection.city or MISSING}\n"
        f"- Estado: {selection.state or MISSING}"
    )


def _field(value: str) -> str:
    value = value.strip()
    return "" if value == MISSING else value


def parse_location_selection(text: Optional[str]) -> Optional[LocationSelection]:
    """
    Parse a location-selection message back into its fields.

    Accepts the bold/dashed template produced by format_location_selection
    and the plain variant without bold and dashes.

    Returns:
        LocationSelection, or None if the text is not a selection message
    """
    if not text or SELECTION_MARKER not in text:
        return None
    match = _SELECTION_RE.search(text)
    if not match:
        return None
    return LocationSelection(
        formatted_address=match.group("address").strip(),
        neighborhood=_field(match.group("neighborhood")),
        city=_field(match.group("city")),
        state=_field(match.group("state")),
    )


def is_location_selection(text: Optional[str]) -> bool:
    return parse_location_selection(text) is not None
