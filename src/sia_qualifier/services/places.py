"""
Google Places proxy for the address picker.

Uses the legacy Autocomplete and Place Details endpoints (they only need
the "Places API", not "Places API (New)"). The API key never leaves the
server.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from sia_qualifier.models.schemas import Coordinates, PlaceDetails, PlaceSuggestion

logger = logging.getLogger(__name__)

PLACES_API = "https://maps.googleapis.com/maps/api/place"
LANGUAGE = "pt-BR"

# Bias results toward Florianópolis
BIAS_LOCATION = "-27.5954,-48.548"
BIAS_RADIUS_M = 50000

MIN_QUERY_LENGTH = 2
DETAILS_FIELDS = "name,formatted_address,address_components,geometry"


class PlacesError(Exception):
    """The Places provider failed or answered with a non-OK status."""


class PlacesConfigurationError(PlacesError):
    """GOOGLE_PLACES_API_KEY is not set."""


def parse_address_components(components: List[Dict[str, Any]]) -> Dict[str, str]:
    """Pull neighborhood, city and state (short name) out of address components."""
    neighborhood = city = state = ""
    for component in components or []:
        types = component.get("types") or []
        if {"sublocality_level_1", "sublocality", "neighborhood"} & set(types):
            neighborhood = component.get("long_name") or component.get("short_name") or ""
        if {"administrative_area_level_2", "locality"} & set(types):
            city = component.get("long_name") or component.get("short_name") or ""
        if "administrative_area_level_1" in types:
            state = component.get("short_name") or ""
    return {"neighborhood": neighborhood, "city": city, "state": state}


class PlacesClient:
    """Async client for address suggestions and place details."""

    def __init__(
        self,
        api_key: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _require_key(self) -> str:
        if not self.api_key:
            raise PlacesConfigurationError("GOOGLE_PLACES_API_KEY não configurada")
        return self.api_key

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def suggest(self, query: str) -> List[PlaceSuggestion]:
        """
        Autocomplete an address typed in the picker.

        Provider failures are logged and yield an empty list; only a missing
        API key raises.

        Args:
            query: Partial address typed by the user

        Returns:
            Suggestions, empty for queries shorter than two characters
        """
        key = self._require_key()
        query = (query or "").strip()
        if len(query) < MIN_QUERY_LENGTH:
            return []

        params = {
            "input": query,
            "key": key,
            "language": LANGUAGE,
            "components": "country:br",
            "types": "geocode",
            "location": BIAS_LOCATION,
            "radius": str(BIAS_RADIUS_M),
        }
        try:
            async with self._client() as client:
                resp = await client.get(f"{PLACES_API}/autocomplete/json", params=params)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[PLACES] Falha no autocomplete para {query!r}: {e}")
            return []

        status = data.get("status")
        if status not in ("OK", "ZERO_RESULTS"):
            logger.error(f"[PLACES] Autocomplete status {status}: {data.get('error_message')}")
            return []

        suggestions = []
        for prediction in data.get("predictions") or []:
            formatting = prediction.get("structured_formatting") or {}
            suggestions.append(PlaceSuggestion(
                place_id=prediction.get("place_id", ""),
                main_text=formatting.get("main_text") or prediction.get("description") or "",
                secondary_text=formatting.get("secondary_text") or "",
                full_text=prediction.get("description") or "",
            ))
        logger.info(f"[PLACES] {len(suggestions)} sugestão(ões) para {query!r}")
        return suggestions

    async def details(self, place_id: str) -> PlaceDetails:
        """
        Fetch a place's structured address.

        Raises:
            PlacesConfigurationError: If the API key is missing
            PlacesError: On HTTP/network failure or a non-OK status
        """
        key = self._require_key()
        params = {
            "place_id": place_id,
            "key": key,
            "language": LANGUAGE,
            "fields": DETAILS_FIELDS,
        }
        try:
            async with self._client() as client:
                resp = await client.get(f"{PLACES_API}/details/json", params=params)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[PLACES] Falha ao buscar detalhes de {place_id}: {e}")
            raise PlacesError("Erro ao buscar detalhes do local") from e

        if data.get("status") != "OK":
            message = data.get("error_message") or f"Details error: {data.get('status')}"
            logger.error(f"[PLACES] Detalhes status {data.get('status')}: {message}")
            raise PlacesError(message)

        result = data.get("result") or {}
        address = parse_address_components(result.get("address_components"))
        location = (result.get("geometry") or {}).get("location")
        return PlaceDetails(
            display_name=result.get("name") or "",
            formatted_address=result.get("formatted_address") or "",
            location=Coordinates(**location) if location else None,
            **address,
        )
