"""Tests for the generation controller."""

import dataclasses
import random
import unittest
from collections import Counter
from dataclasses import dataclass
from unittest.mock import MagicMock

from gadgetry.epoch import Epoch, breed, draw_combatants, evolve, run
from gadgetry.hello_world import HelloConfig


@dataclass
class Toy:
    """A genome whose fitness is its own value."""

    value: int
    fitness: float | None = None

    def mate(self, other, mut_rate, rng=None):
        return [Toy(1000 + self.value), Toy(2000 + other.value)]


class FakeEvaluator:
    def __init__(self):
        self.batches = []

    def evaluate_batch(self, candidates):
        self.batches.append([c.value for c in candidates])
        return [
            c if c.fitness is not None else dataclasses.replace(c, fitness=float(c.value))
            for c in candidates
        ]


class FakeObserver:
    def __init__(self):
        self.seen = []

    def observe(self, candidate):
        self.seen.append(candidate)


def toy_epoch(values, tournament_size=5, num_offspring=2, best=None):
    config = HelloConfig(
        pop_size=len(values), tournament_size=tournament_size, num_offspring=num_offspring
    )
    return Epoch(population=tuple(Toy(v) for v in values), config=config, best=best)


class TestTournament(unittest.TestCase):
    def setUp(self):
        self.evaluator = FakeEvaluator()
        self.observer = FakeObserver()
        self.rng = random.Random(42)

    def test_five_two_requeues_bystander_parents_and_offspring(self):
        """With 5/2, one bystander, two parents and two children re-enter; two are culled."""
        epoch = toy_epoch([0, 1, 2, 3, 4])
        after = evolve(epoch, self.observer, self.evaluator, self.rng)

        values = Counter(c.value for c in after.population)
        self.assertEqual(values, Counter({0: 1, 1: 1, 2: 1, 1000: 1, 2001: 1}))
        bystanders = [c for c in after.population if c.value == 2]
        self.assertEqual(bystanders, [Toy(2, 2.0)])
        children = [c for c in after.population if c.value >= 1000]
        self.assertEqual(len(children), 2)
        for child in children:
            self.assertIsNone(child.fitness)

    def test_every_combatant_is_observed(self):
        evolve(toy_epoch([0, 1, 2, 3, 4]), self.observer, self.evaluator, self.rng)
        self.assertEqual(sorted(c.value for c in self.observer.seen), [0, 1, 2, 3, 4])

    def test_population_size_is_conserved(self):
        def founders(counter):
            return Counter({v: n for v, n in counter.items() if v < 1000})

        epoch = toy_epoch(list(range(20)), tournament_size=6, num_offspring=2)
        for _ in range(50):
            before = Counter(c.value for c in epoch.population)
            epoch = evolve(epoch, self.observer, self.evaluator, self.rng)
            self.assertEqual(len(epoch.population), 20)

            drawn = sorted(self.evaluator.batches[-1])
            self.assertEqual(len(drawn), 6)
            after = Counter(c.value for c in epoch.population)
            # Everyone not drawn is untouched; the two worst drawn are gone.
            survivors = before - Counter(drawn) + Counter(drawn[:4])
            self.assertEqual(founders(after), founders(survivors))

    def test_previous_epoch_is_not_modified(self):
        epoch = toy_epoch([4, 3, 2, 1, 0])
        snapshot = list(epoch.population)
        after = evolve(epoch, self.observer, self.evaluator, self.rng)
        self.assertEqual(list(epoch.population), snapshot)
        self.assertTrue(all(c.fitness is None for c in epoch.population))
        self.assertIsNone(epoch.best)
        self.assertEqual(epoch.iteration, 0)
        self.assertEqual(after.iteration, 1)

    def test_champion_only_replaced_when_strictly_better(self):
        incumbent = Toy(-5, -5.0)
        after = evolve(toy_epoch([0, 1, 2, 3, 4], best=incumbent), self.observer, self.evaluator, self.rng)
        self.assertIs(after.best, incumbent)

        tied = Toy(0, 0.0)
        after = evolve(toy_epoch([0, 1, 2, 3, 4], best=tied), self.observer, self.evaluator, self.rng)
        self.assertIs(after.best, tied)

        after = evolve(toy_epoch([0, 1, 2, 3, 4]), self.observer, self.evaluator, self.rng)
        self.assertEqual(after.best.value, 0)

    def test_small_population_is_degraded_not_fatal(self):
        health_monitor = MagicMock()
        epoch = toy_epoch([0, 1, 2, 3], tournament_size=6)
        with self.assertLogs("gadgetry.epoch", level="WARNING"):
            after = evolve(epoch, self.observer, self.evaluator, self.rng, health_monitor)
        self.assertEqual(len(after.population), 4)
        health_monitor.record_degraded_tournament.assert_called_once_with(0, 6, 4)

    def test_too_few_combatants_for_two_parents(self):
        with self.assertRaises(RuntimeError):
            evolve(toy_epoch([0, 1, 2], tournament_size=6), self.observer, self.evaluator, self.rng)


class TestHelpers(unittest.TestCase):
    def test_draw_combatants_pops_from_the_end(self):
        population = [1, 2, 3, 4]
        self.assertEqual(draw_combatants(population, 3), [4, 3, 2])
        self.assertEqual(population, [1])
        self.assertEqual(draw_combatants(population, 3), [1])

    def test_breed_odd_offspring_discards_surplus(self):
        children = breed(Toy(1), Toy(2), 3, 0.0, random.Random(0))
        self.assertEqual([c.value for c in children], [1001, 2002, 1001])

    def test_new_validates_and_spawns(self):
        epoch = Epoch.new(HelloConfig(pop_size=7), lambda rng: Toy(rng.randrange(10)), random.Random(1))
        self.assertEqual(len(epoch.population), 7)
        with self.assertRaises(ValueError):
            Epoch.new(HelloConfig(tournament_size=3, num_offspring=2), lambda rng: Toy(0))

    def test_reached(self):
        epoch = toy_epoch([0, 1, 2, 3, 4])
        self.assertFalse(epoch.reached(0))
        self.assertTrue(dataclasses.replace(epoch, best=Toy(0, 0.0)).reached(0))
        self.assertFalse(dataclasses.replace(epoch, best=Toy(1, 1.0)).reached(0))


class TestRun(unittest.TestCase):
    def test_stops_at_max_generations(self):
        epoch = run(
            toy_epoch([5, 6, 7, 8, 9]),
            FakeObserver(),
            FakeEvaluator(),
            stop=lambda e: False,
            max_generations=7,
            rng=random.Random(3),
        )
        self.assertEqual(epoch.iteration, 7)

    def test_stops_when_predicate_holds(self):
        epoch = run(
            toy_epoch([5, 6, 7, 8, 9]),
            FakeObserver(),
            FakeEvaluator(),
            stop=lambda e: e.best is not None,
            rng=random.Random(3),
        )
        self.assertEqual(epoch.iteration, 1)
        self.assertEqual(epoch.best.value, 5)


if __name__ == "__main__":
    unittest.main()
