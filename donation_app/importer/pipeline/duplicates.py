"""
Same-invoice duplicate detection.

The guard is built once over the whole file before any row is written:
grouping key -> child key -> row numbers. Two rows in one grouping key that
fund the same child are both flagged for review and point at each other.
Rows in different invoices never collide; several concurrent sponsorships of
one child are legitimate.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable


def duplicate_reason(other_rows: Iterable[int]) -> str:
    rows = sorted(set(other_rows))
    if len(rows) == 1:
        return f"duplicate child reference in same invoice, see row {rows[0]}"
    return "duplicate child reference in same invoice, see rows " + ", ".join(str(number) for number in rows)


class DuplicateGuard:
    def __init__(self) -> None:
        self._index: dict[str, dict[str, list[int]]] = defaultdict(lambda: defaultdict(list))

    def register(self, grouping_key: str | None, row_number: int, child_keys: Iterable[str]) -> None:
        if not grouping_key:
            return
        for child_key in dict.fromkeys(child_keys):
            self._index[grouping_key][child_key].append(row_number)

    def reason_for(self, grouping_key: str | None, row_number: int, child_key: str) -> str | None:
        """Return the review reason when ``child_key`` also appears in another row of the group."""

        if not grouping_key or grouping_key not in self._index:
            return None
        rows = self._index[grouping_key].get(child_key, ())
        others = [number for number in rows if number != row_number]
        if not others:
            return None
        return duplicate_reason(others)

    def collisions(self) -> dict[str, dict[str, list[int]]]:
        """Grouping keys with at least one child referenced by more than one row."""

        result: dict[str, dict[str, list[int]]] = {}
        for grouping_key, children in self._index.items():
            colliding = {child: list(rows) for child, rows in children.items() if len(rows) > 1}
            if colliding:
                result[grouping_key] = colliding
        return result
