"""Shared fixtures for the Sia qualifier tests."""
import os

# Settings are read at import time; keep tests offline and deterministic.
os.environ["MLFLOW_ENABLED"] = "false"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from sia_qualifier.agents.tools import build_tool_registry
from sia_qualifier.config import CITY_VARIANTS, FALLBACK_MAP_URL, NEIGHBORHOODS, TARGET_CITY
from sia_qualifier.guardrails.geographic_validator import GeographicValidator
from sia_qualifier.guardrails.neighborhood_matcher import NeighborhoodMatcher, load_neighborhoods


@pytest.fixture
def matcher() -> NeighborhoodMatcher:
    return NeighborhoodMatcher(load_neighborhoods(NEIGHBORHOODS))


@pytest.fixture
def validator(matcher) -> GeographicValidator:
    return GeographicValidator(
        matcher=matcher,
        city_variants=CITY_VARIANTS,
        target_city=TARGET_CITY,
        fallback_link=FALLBACK_MAP_URL,
    )


@pytest.fixture
def registry(validator):
    return build_tool_registry(validator)
