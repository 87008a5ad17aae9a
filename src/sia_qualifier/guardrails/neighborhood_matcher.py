"""
Neighborhood matching against the allow-list.

Normalizes free text (case, accents, whitespace) and resolves it to a
canonical neighborhood key using a fixed precedence:
exact key, exact alias, substring of/on key, substring of/on alias.
"""

import unicodedata
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from sia_qualifier.models.schemas import NeighborhoodRecord


def normalize(text: Optional[str]) -> str:
    """
    Normalize text for comparison.

    Lowercases, decomposes (NFD), drops combining marks and collapses
    whitespace.

    Examples:
        >>> normalize("  Jurerê   Internacional ")
        'jurere internacional'
    """
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.split())


def load_neighborhoods(table: Mapping[str, Mapping]) -> List[NeighborhoodRecord]:
    """Build records from the ``NEIGHBORHOODS`` config table."""
    return [
        NeighborhoodRecord(
            canonical_key=key,
            focus=entry["focus"],
            description=entry.get("description", ""),
            aliases=frozenset(entry.get("aliases", [])),
        )
        for key, entry in table.items()
    ]


class NeighborhoodMatcher:
    """
    Resolves free-text neighborhoods to allow-listed records.

    Raises ValueError at construction if two records share a canonical
    key or an alias after normalization.
    """

    def __init__(self, records: Iterable[NeighborhoodRecord]):
        self.records: List[NeighborhoodRecord] = list(records)
        self._by_key: Dict[str, NeighborhoodRecord] = {}
        self._by_alias: Dict[str, NeighborhoodRecord] = {}

        for record in self.records:
            key = normalize(record.canonical_key)
            if key in self._by_key:
                raise ValueError(f"Duplicate neighborhood key: {record.canonical_key!r}")
            self._by_key[key] = record

        for record in self.records:
            for alias in record.aliases:
                norm = normalize(alias)
                owner = self._by_alias.get(norm) or self._by_key.get(norm)
                if owner is not None and owner is not record:
                    raise ValueError(
                        f"Alias {alias!r} of {record.canonical_key!r} clashes with {owner.canonical_key!r}"
                    )
                self._by_alias[norm] = record

    def lookup_exact(self, text: Optional[str]) -> Optional[NeighborhoodRecord]:
        """Exact lookup on canonical keys, then aliases. No substring fallback."""
        norm = normalize(text)
        if not norm:
            return None
        return self._by_key.get(norm) or self._by_alias.get(norm)

    def match(self, text: Optional[str]) -> Optional[Tuple[str, NeighborhoodRecord]]:
        """
        Match a free-text neighborhood.

        Args:
            text: Neighborhood as typed or returned by the address picker

        Returns:
            Tuple of (canonical_key, record), or None when nothing matches

        Examples:
            >>> matcher.match("Jurere")[0]
            'jurerê internacional'
            >>> matcher.match("Rio Tavares") is None
            True
        """
        norm = normalize(text)
        if not norm:
            return None

        record = self.lookup_exact(norm)
        if record is not None:
            return record.canonical_key, record

        # Substring fallback for truncated or embellished input
        for key, record in self._by_key.items():
            if norm in key or key in norm:
                return record.canonical_key, record

        for alias, record in self._by_alias.items():
            if norm in alias or alias in norm:
                return record.canonical_key, record

        return None
