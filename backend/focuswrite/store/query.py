"""Queries and snapshots delivered by the document store."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping


@dataclass(frozen=True)
class Document:
    id: str
    data: Dict[str, Any]


def _text_equal(stored: Any, wanted: str) -> bool:
    """Compare a stored value with a filter that arrived as text, e.g. ``strikeCount=2``."""
    if isinstance(stored, str):
        return stored == wanted
    try:
        return json.dumps(stored) == wanted
    except (TypeError, ValueError):
        return False


@dataclass
class Query:
    """Equality-filtered view of one collection.

    With ``text_filters`` every filter value is a string (as taken from a URL)
    and matches a stored value whose JSON form is that string, so ``"2"``
    matches ``2`` and ``"true"`` matches ``True``.
    """
    collection: str
    where: Dict[str, Any] = field(default_factory=dict)
    text_filters: bool = False

    def matches(self, data: Mapping[str, Any]) -> bool:
        if self.text_filters:
            return all(_text_equal(data.get(key), str(value)) for key, value in self.where.items())
        return all(data.get(key) == value for key, value in self.where.items())


@dataclass(frozen=True)
class Change:
    type: str  # "added" | "modified" | "removed"
    document: Document


@dataclass(frozen=True)
class Snapshot:
    documents: List[Document]
    changes: List[Change]
