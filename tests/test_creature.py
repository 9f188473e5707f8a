"""Tests for Creature genomes and crossover."""

import random
import unittest
from collections import Counter
from unittest.mock import MagicMock

from gadgetry.creature import Creature, split_crossover
from gadgetry.fitness import Weighted
from gadgetry.profiler import AggregateProfile
from gadgetry.registers import get_architecture

X86_64 = get_architecture("x86_64")
POOL = (0x401000, 0x401010, 0x401020, 0x401030)


class TestSplitCrossover(unittest.TestCase):
    def test_length_is_conserved(self):
        """len(child1) + len(child2) == len(mother) + len(father), for any split."""
        rng = random.Random(5)
        for _ in range(200):
            mother = [rng.getrandbits(16) for _ in range(rng.randint(1, 12))]
            father = [rng.getrandbits(16) for _ in range(rng.randint(1, 12))]
            first, second = split_crossover(mother, father, rng)
            self.assertEqual(len(first) + len(second), len(mother) + len(father))
            self.assertEqual(Counter(first + second), Counter(mother + father))

    def test_children_take_head_and_tail(self):
        class FixedRandom(random.Random):
            def randrange(self, n):
                return 1

        first, second = split_crossover("abc", "XYZ", FixedRandom())
        self.assertEqual((first, second), ("aYZ", "bcX"))


class TestCreature(unittest.TestCase):
    def setUp(self):
        self.rng = random.Random(1234)

    def test_random_draws_from_pool(self):
        creature = Creature.random(10, POOL, X86_64, self.rng)
        self.assertEqual(len(creature), 10)
        self.assertTrue(set(creature.chromosome) <= set(POOL))
        self.assertIsNone(creature.fitness)
        self.assertIsNone(creature.profile)

    def test_random_without_pool_uses_words(self):
        creature = Creature.random(6, (), get_architecture("x86"), self.rng)
        for word in creature.chromosome:
            self.assertLess(word, 1 << 32)

    def test_pack(self):
        creature = Creature(chromosome=[0x401000, 0x1], arch=X86_64)
        self.assertEqual(
            creature.pack(),
            b"\x00\x10\x40\x00\x00\x00\x00\x00" b"\x01\x00\x00\x00\x00\x00\x00\x00",
        )

    def test_crossover_children_have_empty_caches(self):
        mother = Creature.random(5, POOL, X86_64, self.rng).with_profile(AggregateProfile())
        mother = mother.with_fitness(Weighted({"x": 1.0}))
        father = Creature.random(7, POOL, X86_64, self.rng).with_profile(AggregateProfile())
        children = mother.crossover(father, self.rng)
        self.assertEqual(len(children), 2)
        self.assertEqual(sum(len(c) for c in children), 12)
        for child in children:
            self.assertIsNone(child.fitness)
            self.assertIsNone(child.profile)
            self.assertEqual(child.gene_pool, POOL)
            self.assertNotEqual(child.tag, mother.tag)

    def test_mutate_changes_one_word_and_clears_caches(self):
        creature = Creature.random(8, POOL, X86_64, self.rng)
        creature.fitness = Weighted()
        creature.profile = AggregateProfile()
        before = list(creature.chromosome)
        creature.mutate(self.rng)
        changed = [i for i, (a, b) in enumerate(zip(before, creature.chromosome)) if a != b]
        self.assertEqual(len(changed), 1)
        self.assertIn(creature.chromosome[changed[0]], POOL)
        self.assertIsNone(creature.fitness)
        self.assertIsNone(creature.profile)

    def test_mutate_never_writes_zero(self):
        creature = Creature(chromosome=[0x401000], arch=X86_64, gene_pool=(0, 0x401000, 0x401010))
        for _ in range(50):
            creature.mutate(self.rng)
            self.assertNotEqual(creature.chromosome[0], 0)

    def test_mate_respects_mut_rate(self):
        mother = Creature(chromosome=[1, 2, 3], arch=X86_64, gene_pool=POOL)
        father = Creature(chromosome=[4, 5, 6], arch=X86_64, gene_pool=POOL)
        for child in mother.mate(father, 0.0, self.rng):
            self.assertTrue(set(child.chromosome) <= {1, 2, 3, 4, 5, 6})

    def test_with_profile_copies(self):
        creature = Creature.random(3, POOL, X86_64, self.rng)
        profiled = creature.with_profile(AggregateProfile())
        self.assertIsNone(creature.profile)
        self.assertIsNotNone(profiled.profile)
        self.assertEqual(profiled.tag, creature.tag)

    def test_score_is_memoized(self):
        """A second score() returns the cached fitness without calling the strategy."""
        profile = AggregateProfile()
        fitness = Weighted({"x": 1.0})
        scorer = MagicMock(return_value=fitness)
        creature = Creature.random(3, POOL, X86_64, self.rng).with_profile(profile)

        self.assertIs(creature.score(scorer), fitness)
        self.assertIs(creature.score(scorer), fitness)
        scorer.assert_called_once_with(profile)
        self.assertIs(creature.fitness, fitness)

    def test_score_needs_a_profile(self):
        creature = Creature.random(3, POOL, X86_64, self.rng)
        with self.assertRaises(RuntimeError):
            creature.score(MagicMock())

    def test_mutation_invalidates_the_cached_score(self):
        scorer = MagicMock(side_effect=lambda profile: Weighted())
        creature = Creature.random(3, POOL, X86_64, self.rng).with_profile(AggregateProfile())
        creature.score(scorer)
        creature.mutate(self.rng)
        creature.profile = AggregateProfile()
        creature.score(scorer)
        self.assertEqual(scorer.call_count, 2)

    def test_fitter_than(self):
        a = Creature([1]).with_fitness(Weighted({"x": 1.0}))
        a.fitness.insert("x", 1)
        b = Creature([2]).with_fitness(Weighted({"x": 1.0}))
        b.fitness.insert("x", 2)
        self.assertTrue(a.fitter_than(b))
        self.assertFalse(b.fitter_than(a))
        self.assertFalse(Creature([3]).fitter_than(a))


if __name__ == "__main__":
    unittest.main()
