"""Named-objective fitness container."""

from __future__ import annotations

import functools
from typing import Mapping


@functools.total_ordering
class Weighted:
    """
    Raw scores keyed by objective name, paired with an external weight table.

    Scores are stored exactly as inserted; nothing is normalised. `scalar()` is
    the weighted sum over objectives that have a weight, and is what orders two
    Weighted values (lower is fitter).
    """

    def __init__(self, weights: Mapping[str, float] | None = None):
        self.weights = dict(weights or {})
        self.scores: dict[str, float] = {}

    def insert(self, name: str, score: float) -> None:
        self.scores[name] = float(score)

    def get(self, name: str, default: float | None = None) -> float | None:
        return self.scores.get(name, default)

    def __getitem__(self, name: str) -> float:
        return self.scores[name]

    def __contains__(self, name: str) -> bool:
        return name in self.scores

    def scalar(self) -> float:
        return sum(score * self.weights.get(name, 0.0) for name, score in self.scores.items())

    def __float__(self) -> float:
        return self.scalar()

    def __eq__(self, other):
        if not isinstance(other, Weighted):
            return NotImplemented
        return self.scalar() == other.scalar()

    def __lt__(self, other):
        if not isinstance(other, Weighted):
            return NotImplemented
        return self.scalar() < other.scalar()

    def __hash__(self):
        return hash(self.scalar())

    def __repr__(self) -> str:
        scores = ", ".join(f"{name}={score:.4g}" for name, score in sorted(self.scores.items()))
        return f"Weighted({self.scalar():.4g}: {scores})"

    def to_dict(self) -> dict[str, float]:
        return dict(self.scores)
