"""
Count-min sketch over code addresses.

The sketch persists for the whole search and answers "how often has this
address been visited?" approximately. Estimates never undercount: every row is
incremented on insert and the query takes the minimum over rows, so collisions
can only inflate it. Consumers must treat a query result as an upper bound.
"""

from __future__ import annotations

from typing import Iterable

# Byte-wise multiplicative hash, seeded differently for every row.
SKETCH_SEED = 20221211
HASH_MULTIPLIER = 1000003
WORD_BYTES = 8
MASK_64 = 0xFFFFFFFFFFFFFFFF


class CountMinSketch:
    """Approximate multiset counter over integer addresses."""

    def __init__(self, width: int = 2048, depth: int = 4, seed: int = SKETCH_SEED):
        if width < 1 or depth < 1:
            raise ValueError("CountMinSketch width and depth must be at least 1")
        self.width = width
        self.depth = depth
        self.seed = seed
        self.rows = [[0] * width for _ in range(depth)]

    def _index(self, row: int, address: int) -> int:
        uhash = (self.seed + row * 0x9E3779B97F4A7C15) & MASK_64
        addr = address
        for _ in range(WORD_BYTES):
            uhash ^= addr & 255
            uhash = (uhash * HASH_MULTIPLIER) & MASK_64
            addr >>= 8
        uhash ^= uhash >> 29
        return uhash % self.width

    def insert(self, address: int) -> None:
        for row in range(self.depth):
            self.rows[row][self._index(row, address)] += 1

    def insert_all(self, addresses: Iterable[int]) -> None:
        for address in addresses:
            self.insert(address)

    def query(self, address: int) -> int:
        return min(self.rows[row][self._index(row, address)] for row in range(self.depth))

    def mean_frequency(self, addresses: Iterable[int]) -> float:
        """
        Mean estimated visit count over a set of addresses.

        An empty set scores 1.0, the same as an address seen exactly once, so a run
        that visits nothing is not mistaken for perfectly novel coverage.
        """
        estimates = [self.query(address) for address in addresses]
        if not estimates:
            return 1.0
        return sum(estimates) / len(estimates)
