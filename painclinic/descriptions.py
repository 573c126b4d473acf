"""ICD-10 description cache.

Descriptions fetched from the LLM accumulate across refreshes. The cache is an
immutable value: ``extend`` returns a new cache and the orchestrator keeps the
latest one.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Iterator, Mapping
from typing import Final

from painclinic.aggregation import UNKNOWN_CODE
from painclinic.records import PatientRecord

DESCRIPTION_FETCH_LIMIT: Final = 15


class DescriptionCache(Mapping[str, str]):
    """Read-only code -> description mapping."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[str, str] | None = None) -> None:
        self._entries: dict[str, str] = {}
        for code, text in (entries or {}).items():
            if isinstance(text, str) and text.strip():
                self._entries[str(code)] = text.strip()

    def __getitem__(self, code: str) -> str:
        return self._entries[code]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"DescriptionCache({self._entries!r})"

    def extend(self, fetched: Mapping[str, str] | None) -> "DescriptionCache":
        """Merge freshly fetched descriptions; later values win per code."""
        merged = dict(self._entries)
        merged.update(DescriptionCache(fetched)._entries)
        return DescriptionCache(merged)

    def to_dict(self) -> dict[str, str]:
        return dict(self._entries)


def codes_needing_descriptions(
    records: Iterable[PatientRecord],
    cache: Mapping[str, str],
    limit: int = DESCRIPTION_FETCH_LIMIT,
) -> list[str]:
    """Most frequent ICD-10 codes (up to ``limit``) that the cache lacks."""
    counts = Counter(
        code for code in (r.icd10_code for r in records) if code and code != UNKNOWN_CODE
    )
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [code for code, _count in ranked[:limit] if code not in cache]
