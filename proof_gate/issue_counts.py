"""Recurring issue counters.

A durable map of issue code -> occurrence count. The orchestrator loads it at
the start of a run, increments it for every finding, and saves it at the end.
Counts only go up; `reset()` is the explicit operator action that clears them.
"""

from __future__ import annotations

from typing import Dict, Iterable, List

from .state import KEY_ISSUE_COUNTS, StateStore

RECURRING_THRESHOLD = 2


class RecurringIssueCounts:
    """In-run view of the persisted counters."""

    def __init__(self, store: StateStore, key: str = KEY_ISSUE_COUNTS):
        self._store = store
        self._key = key
        self._counts: Dict[str, int] = {}

    def load(self) -> Dict[str, int]:
        raw = self._store.get(self._key, {}) or {}
        counts: Dict[str, int] = {}
        if isinstance(raw, dict):
            for k, v in raw.items():
                try:
                    n = int(v)
                except (TypeError, ValueError):
                    continue
                if n > 0:
                    counts[str(k)] = n
        self._counts = counts
        return dict(self._counts)

    def increment(self, issue_code: str, by: int = 1) -> int:
        if by < 1:
            raise ValueError("increment must be positive")
        code = str(issue_code)
        self._counts[code] = self._counts.get(code, 0) + by
        return self._counts[code]

    def increment_all(self, issue_codes: Iterable[str]) -> None:
        for code in issue_codes:
            self.increment(code)

    def save(self) -> None:
        self._store.set(self._key, dict(self._counts))

    def reset(self) -> None:
        self._counts = {}
        self._store.delete(self._key)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counts)

    def recurring(self, threshold: int = RECURRING_THRESHOLD) -> List[str]:
        return sorted(code for code, n in self._counts.items() if n >= threshold)
