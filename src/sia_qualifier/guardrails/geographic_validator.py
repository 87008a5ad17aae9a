"""
Geographic validation guardrail.

This module decides whether a location (bairro + cidade) is inside the
operational area. It is the only authority for that decision: the model
is told to call it and never to judge eligibility by itself.
"""

import logging
from typing import Any, Dict, FrozenSet, Optional

from sia_qualifier.guardrails.neighborhood_matcher import NeighborhoodMatcher, normalize

logger = logging.getLogger(__name__)


class GeographicValidator:
    """
    Validates geographic locations against allowed areas.

    City names are compared against a fixed set of normalized variants;
    neighborhoods go through the NeighborhoodMatcher.
    """

    def __init__(
        self,
        matcher: NeighborhoodMatcher,
        city_variants: FrozenSet[str],
        target_city: str,
        fallback_link: str,
    ):
        """
        Initialize the geographic validator.

        Args:
            matcher: Neighborhood matcher built from the allow-list
            city_variants: Normalized spellings accepted as the target city
            target_city: Display name of the target city
            fallback_link: Map link offered when a location is rejected
        """
        self.matcher = matcher
        self.city_variants = frozenset(normalize(c) for c in city_variants)
        self.target_city = target_city
        self.fallback_link = fallback_link

    def validate_cidade(self, cidade: Optional[str]) -> bool:
        """
        Validate if cidade is the target city.

        Args:
            cidade: The city name to validate

        Returns:
            True if the normalized city is one of the accepted variants
        """
        return normalize(cidade) in self.city_variants

    def allowed_neighborhoods(self) -> list:
        return [{"bairro": r.canonical_key, "foco": r.focus} for r in self.matcher.records]

    def _rejection(self, bairro: str, cidade: str, reason: str) -> Dict[str, Any]:
        return {
            "allowed": False,
            "bairro": bairro,
            "cidade": cidade,
            "reason": reason,
            "allowed_neighborhoods": self.allowed_neighborhoods(),
            "fallback_link": self.fallback_link,
            "message": (
                "Decline educadamente e informe as regiões onde a Seazone atua. "
                "Forneça o link de fallback. NÃO continue a qualificação."
            ),
        }

    def validate_location(self, bairro: str, cidade: str) -> Dict[str, Any]:
        """
        Validate complete location (bairro + cidade).

        Args:
            bairro: Neighborhood name
            cidade: City name

        Returns:
            Approval payload (allowed=True, canonical bairro, focus, description)
            or rejection payload (allowed=False, reason, allowed neighborhoods,
            fallback link)
        """
        if not self.validate_cidade(cidade):
            logger.info(f"[VALIDATION] Cidade fora da área: {cidade!r}")
            return self._rejection(
                bairro,
                cidade,
                f'A cidade "{cidade}" não faz parte da área de atuação da Seazone. '
                f"Atuamos apenas em {self.target_city}.",
            )

        matched = self.matcher.match(bairro)
        if matched is None:
            logger.info(f"[VALIDATION] Bairro fora da área: {bairro!r}")
            return self._rejection(
                bairro,
                cidade,
                f'O bairro "{bairro}" não está na lista de áreas de interesse da Seazone '
                f"em {self.target_city}.",
            )

        canonical_key, record = matched
        logger.info(f"[VALIDATION] Bairro aprovado: {bairro!r} -> {canonical_key!r}")
        return {
            "allowed": True,
            "bairro": canonical_key,
            "bairro_original": bairro,
            "cidade": cidade,
            "focus": record.focus,
            "description": record.description,
            "message": (
                f'Bairro "{canonical_key}" aprovado! Foco: {record.focus}. '
                "Continue a qualificação."
            ),
        }
