"""Learned desirability scores for (date, slot, doctor load) states.

Each state's score is an exponential moving average of the rewards observed
for it: ``new = old + α · (reward − old)``. There is no lookahead or discount
term, so a single update always moves the score toward the reward without
overshooting it.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from typing import NamedTuple, Protocol

logger = logging.getLogger(__name__)


class StateKey(NamedTuple):
    date: dt.date
    time: str
    load: int


class ScoreStore(Protocol):
    """Storage for the score table. Implementations must make ``apply`` atomic per key."""

    def get(self, key: StateKey) -> float | None: ...

    def apply(self, key: StateKey, fn) -> float: ...

    def items(self) -> list[tuple[StateKey, float]]: ...

    def discard(self, key: StateKey) -> None: ...

    def __len__(self) -> int: ...


class InMemoryScoreStore:
    """Process-local score table guarded by a single lock."""

    def __init__(self) -> None:
        self._scores: dict[StateKey, float] = {}
        # threading.Lock so updates stay atomic from worker threads as well as the event loop
        self._lock = threading.Lock()

    def get(self, key: StateKey) -> float | None:
        with self._lock:
            return self._scores.get(key)

    def apply(self, key: StateKey, fn) -> float:
        """Replace the value at ``key`` with ``fn(old_or_None)`` and return it."""
        with self._lock:
            value = fn(self._scores.get(key))
            self._scores[key] = value
            return value

    def items(self) -> list[tuple[StateKey, float]]:
        with self._lock:
            return list(self._scores.items())

    def discard(self, key: StateKey) -> None:
        with self._lock:
            self._scores.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._scores)


class SlotScorer:
    """Owns the score table and the update rule."""

    def __init__(self, store: ScoreStore | None = None, learning_rate: float = 0.1) -> None:
        if not 0 < learning_rate <= 1:
            raise ValueError(f"learning_rate must lie in (0, 1], got {learning_rate}")
        self.store = store if store is not None else InMemoryScoreStore()
        self.learning_rate = learning_rate

    @staticmethod
    def state_key(date: dt.date, time: str, load: int) -> StateKey:
        if load < 0:
            raise ValueError(f"doctor load must not be negative, got {load}")
        return StateKey(date, time, int(load))

    def score(self, state: StateKey) -> float:
        value = self.store.get(state)
        return 0.0 if value is None else value

    def update(self, state: StateKey, reward: float) -> float:
        """Move the score for ``state`` toward ``reward`` and return the new score."""
        alpha = self.learning_rate

        def step(old: float | None) -> float:
            current = 0.0 if old is None else old
            return current + alpha * (reward - current)

        new_score = self.store.apply(state, step)
        logger.debug(f"Score update {state}: reward={reward} -> {new_score:.4f}")
        return new_score

    # ------------------------------------------------------------------ #
    #  Snapshot / retention
    # ------------------------------------------------------------------ #
    def snapshot(self) -> list[dict]:
        """Return the table as JSON-friendly rows, ordered by key."""
        return [
            {"date": key.date.isoformat(), "time": key.time, "load": key.load, "score": value}
            for key, value in sorted(self.store.items())
        ]

    def restore(self, rows) -> int:
        """Load rows produced by ``snapshot``; malformed rows are skipped. Returns rows loaded."""
        loaded = 0
        for row in rows:
            try:
                key = self.state_key(dt.date.fromisoformat(row["date"]), str(row["time"]), int(row["load"]))
                value = float(row["score"])
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed score row: {row!r}")
                continue
            self.store.apply(key, lambda _old, v=value: v)
            loaded += 1
        return loaded

    def evict_before(self, cutoff: dt.date) -> int:
        """Drop every state dated before ``cutoff``. Returns the number removed."""
        stale = [key for key, _ in self.store.items() if key.date < cutoff]
        for key in stale:
            self.store.discard(key)
        if stale:
            logger.info(f"Evicted {len(stale)} score states older than {cutoff.isoformat()}")
        return len(stale)

    def __len__(self) -> int:
        return len(self.store)
