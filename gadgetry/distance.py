"""Distance primitives used as interchangeable fitness terms."""

from typing import Sequence


def levenshtein(a: Sequence, b: Sequence) -> int:
    """Return the edit distance between two sequences (insert, delete, substitute)."""
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, x in enumerate(a, start=1):
        current = [i]
        for j, y in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,  # deletion
                    current[j - 1] + 1,  # insertion
                    previous[j - 1] + (x != y),  # substitution
                )
            )
        previous = current
    return previous[-1]


def hamming_bits(a: int, b: int) -> int:
    """Number of differing bits between two non-negative words."""
    return bin(a ^ b).count("1")


def hamming(a: Sequence, b: Sequence) -> int:
    """Positional mismatches, with any length difference counted as mismatches."""
    mismatches = sum(1 for x, y in zip(a, b) if x != y)
    return mismatches + abs(len(a) - len(b))
