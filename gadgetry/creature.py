"""
Candidate genomes for gadget-chain search.

A Creature is a chain of machine words (mostly gadget addresses drawn from a
pool) that packs into the byte payload written onto the emulated stack. It
caches its execution profile and fitness; a creature with a profile is never
executed again, and crossover always produces children with empty caches.
"""

from __future__ import annotations

import dataclasses
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence

from gadgetry.fitness import Weighted
from gadgetry.profiler import AggregateProfile
from gadgetry.registers import ARCHITECTURES, Architecture

logger = logging.getLogger(__name__)


class Genotype(Protocol):
    """What the generation controller needs from any candidate payload."""

    fitness: Any

    def crossover(self, mate: Any, rng: random.Random | None = None) -> list[Any]:
        ...

    def mutate(self, rng: random.Random | None = None) -> None:
        ...

    def mate(self, other: Any, mut_rate: float, rng: random.Random | None = None) -> list[Any]:
        ...

    def score(self, params: Any) -> Any:
        """Fitness under `params`, computed on the first call and cached after."""
        ...


def split_crossover(mother: Sequence, father: Sequence, rng: random.Random) -> tuple:
    """
    One-point crossover with an independent split point in each parent.

    Returns (mother head + father tail, mother tail + father head); together the
    children hold exactly the parents' elements.
    """
    split_m = rng.randrange(len(mother))
    split_f = rng.randrange(len(father))
    return (
        mother[:split_m] + father[split_f:],
        mother[split_m:] + father[:split_f],
    )


def _new_tag() -> int:
    return random.getrandbits(64)


@dataclass
class Creature:
    chromosome: list[int]
    arch: Architecture = ARCHITECTURES["x86_64"]
    gene_pool: tuple[int, ...] = field(default=(), repr=False, compare=False)
    fitness: Weighted | None = field(default=None, compare=False)
    profile: AggregateProfile | None = field(default=None, repr=False, compare=False)
    tag: int = field(default_factory=_new_tag, compare=False)

    @classmethod
    def random(
        cls,
        length: int,
        gene_pool: Sequence[int] = (),
        arch: Architecture = ARCHITECTURES["x86_64"],
        rng: random.Random | None = None,
    ) -> Creature:
        """Draw a chain of `length` words, from the gene pool when there is one."""
        rng = rng or random.Random()
        pool = tuple(gene_pool)
        if pool:
            chromosome = [rng.choice(pool) for _ in range(length)]
        else:
            chromosome = [rng.getrandbits(arch.word_bits) for _ in range(length)]
        return cls(chromosome=chromosome, arch=arch, gene_pool=pool)

    def __len__(self) -> int:
        return len(self.chromosome)

    def pack(self) -> bytes:
        """The payload as laid out in memory, word by word."""
        return b"".join(self.arch.pack_word(word) for word in self.chromosome)

    def _child(self, chromosome: list[int]) -> Creature:
        return Creature(chromosome=chromosome, arch=self.arch, gene_pool=self.gene_pool)

    def with_profile(self, profile: AggregateProfile) -> Creature:
        return dataclasses.replace(self, profile=profile)

    def with_fitness(self, fitness: Weighted) -> Creature:
        return dataclasses.replace(self, fitness=fitness)

    def crossover(self, mate: Creature, rng: random.Random | None = None) -> list[Creature]:
        rng = rng or random.Random()
        first, second = split_crossover(self.chromosome, mate.chromosome, rng)
        return [self._child(first), self._child(second)]

    def _valid_replacement(self, old: int, word: int) -> bool:
        return word != old and word != 0

    def mutate(self, rng: random.Random | None = None) -> None:
        """Replace one word with a different valid one, re-drawing until it is."""
        rng = rng or random.Random()
        i = rng.randrange(len(self.chromosome))
        old = self.chromosome[i]
        if any(self._valid_replacement(old, g) for g in self.gene_pool):
            word = rng.choice(self.gene_pool)
            while not self._valid_replacement(old, word):
                word = rng.choice(self.gene_pool)
        else:
            word = rng.getrandbits(self.arch.word_bits)
            while not self._valid_replacement(old, word):
                word = rng.getrandbits(self.arch.word_bits)
        self.chromosome[i] = word
        self.fitness = None
        self.profile = None

    def mate(self, other: Creature, mut_rate: float, rng: random.Random | None = None) -> list[Creature]:
        rng = rng or random.Random()
        offspring = self.crossover(other, rng)
        for child in offspring:
            if rng.random() < mut_rate:
                child.mutate(rng)
        logger.debug(f"Mated {self.tag:x} and {other.tag:x}: {len(offspring)} offspring")
        return offspring

    def score(self, scorer: Callable[[AggregateProfile], Weighted]) -> Weighted:
        """Score the cached profile once; later calls return the cached fitness."""
        if self.fitness is None:
            if self.profile is None:
                raise RuntimeError(f"Creature {self.tag:x} has no profile to score")
            self.fitness = scorer(self.profile)
        return self.fitness

    def fitter_than(self, other: Creature) -> bool:
        if self.fitness is None or other.fitness is None:
            return False
        return self.fitness < other.fitness

    def __str__(self) -> str:
        words = " ".join(f"0x{w:0{self.arch.word_size * 2}x}" for w in self.chromosome)
        return f"[{self.tag:016x}] {words}"
