#!/usr/bin/env python3
"""
Evolve a string towards a target, as a small end-to-end exercise of the
generation controller.

The evaluator here is a separate actor: a thread that receives genomes over a
request channel, scores them by edit distance to the target and sends them back
over a response channel. The Observer is the same one a gadget search uses.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import queue
import random
import string
import sys
import threading
from dataclasses import dataclass, field

from gadgetry.config import ObserverConfig, validate_tournament
from gadgetry.creature import split_crossover
from gadgetry.distance import levenshtein
from gadgetry.epoch import Epoch, run as run_epochs
from gadgetry.execution import POLL_INTERVAL, PipelineError
from gadgetry.observer import Observer

logger = logging.getLogger(__name__)

ALPHANUMERIC = string.ascii_letters + string.digits
PRINTABLE_MIN = 0x20
PRINTABLE_MAX = 0x7E

_STOP = object()


@dataclass
class HelloConfig:
    mut_rate: float = 0.1
    init_len: int = 5
    pop_size: int = 20
    tournament_size: int = 5
    num_offspring: int = 2
    target: str = "HELLO"
    max_generations: int | None = None
    observer: ObserverConfig = field(default_factory=lambda: ObserverConfig(window_size=100))

    def validate(self) -> None:
        validate_tournament(self)


@dataclass
class TextGenome:
    genes: str
    fitness: int | None = None

    @classmethod
    def random(cls, length: int, rng: random.Random | None = None) -> TextGenome:
        rng = rng or random.Random()
        return cls("".join(rng.choice(ALPHANUMERIC) for _ in range(length)))

    def __len__(self) -> int:
        return len(self.genes)

    def crossover(self, mate: TextGenome, rng: random.Random | None = None) -> list[TextGenome]:
        rng = rng or random.Random()
        first, second = split_crossover(self.genes, mate.genes, rng)
        return [TextGenome(first), TextGenome(second)]

    def mutate(self, rng: random.Random | None = None) -> None:
        """Replace one character with a random printable one."""
        rng = rng or random.Random()
        i = rng.randrange(len(self.genes))
        c = 0
        while c < PRINTABLE_MIN or PRINTABLE_MAX < c:
            c = rng.randrange(256)
        self.genes = self.genes[:i] + chr(c) + self.genes[i + 1 :]
        self.fitness = None

    def mate(self, other: TextGenome, mut_rate: float, rng: random.Random | None = None) -> list[TextGenome]:
        rng = rng or random.Random()
        offspring = self.crossover(other, rng)
        for child in offspring:
            if rng.random() < mut_rate:
                child.mutate(rng)
        logger.debug(f"Mating {self} and {other}: {offspring}")
        return offspring

    def score(self, target: str) -> int:
        """Edit distance to the target, computed once and then cached."""
        if self.fitness is None:
            self.fitness = levenshtein(self.genes, target)
        return self.fitness

    def __str__(self) -> str:
        return repr(self.genes)


class HelloEvaluator:
    """Scoring actor connected by a request channel and a response channel."""

    def __init__(self, target: str):
        self.target = target
        self._requests: queue.Queue = queue.Queue()
        self._responses: queue.Queue = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="hello-evaluator", daemon=True)
        self._thread.start()

    def __enter__(self) -> HelloEvaluator:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _run(self) -> None:
        while True:
            genome = self._requests.get()
            if genome is _STOP:
                return
            if genome.fitness is None:
                genome = dataclasses.replace(genome)
                genome.score(self.target)
            self._responses.put(genome)

    def evaluate(self, genome: TextGenome) -> TextGenome:
        if not self._thread.is_alive():
            raise PipelineError("Evaluator is not running")
        self._requests.put(genome)
        while True:
            try:
                return self._responses.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if not self._thread.is_alive():
                    raise PipelineError("Evaluator stopped before replying") from None

    def evaluate_batch(self, genomes: list[TextGenome]) -> list[TextGenome]:
        return [self.evaluate(genome) for genome in genomes]

    def close(self) -> None:
        if self._thread.is_alive():
            self._requests.put(_STOP)
            self._thread.join()


def run(config: HelloConfig, rng: random.Random | None = None) -> TextGenome | None:
    """Evolve until some genome matches the target exactly; return it."""
    rng = rng or random.Random()
    world = Epoch.new(config, lambda r: TextGenome.random(config.init_len, r), rng)
    with HelloEvaluator(config.target) as evaluator, Observer.spawn(config) as observer:
        world = run_epochs(
            world,
            observer,
            evaluator,
            stop=lambda e: e.reached(0),
            max_generations=config.max_generations,
            rng=rng,
        )
    if world.reached(0):
        logger.info(f"[+] Success after {world.iteration} generations: {world.best}")
        return world.best
    return None


def main() -> None:
    """Parse command-line arguments and evolve a string."""
    parser = argparse.ArgumentParser(description="Evolve a string towards a target.")
    parser.add_argument("--target", type=str, default="HELLO", help="The string to evolve.")
    parser.add_argument("--pop-size", type=int, default=20)
    parser.add_argument("--init-len", type=int, default=5)
    parser.add_argument("--tournament-size", type=int, default=5)
    parser.add_argument("--num-offspring", type=int, default=2)
    parser.add_argument("--mut-rate", type=float, default=0.1)
    parser.add_argument("--window-size", type=int, default=100)
    parser.add_argument("--max-generations", type=int, default=None)
    parser.add_argument("--seed", type=int, default=None, help="Random seed for a repeatable run.")
    parser.add_argument("--verbose", action="store_true", help="Log every mating.")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )

    config = HelloConfig(
        mut_rate=args.mut_rate,
        init_len=args.init_len,
        pop_size=args.pop_size,
        tournament_size=args.tournament_size,
        num_offspring=args.num_offspring,
        target=args.target,
        max_generations=args.max_generations,
        observer=ObserverConfig(window_size=args.window_size),
    )
    try:
        config.validate()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    champ = run(config, random.Random(args.seed))
    if champ is None:
        print("[!] No exact match found.", file=sys.stderr)
        sys.exit(1)
    print("\n***** Success! *****")
    print(champ.genes)


if __name__ == "__main__":
    main()
