"""
Scoring executed creatures.

This module provides the fitness strategies and the Evaluator which handles:
- Sending unprofiled creatures to the Hatchery as one batch
- Scoring every creature with the single strategy chosen from configuration
- Updating the frequency sketch only after the whole batch has been scored

Every strategy returns a Weighted holding raw per-objective scores; lower is
better for all of them. Turning the objectives into one rank is left to the
weights in the configuration.
"""

from __future__ import annotations

import dataclasses
import logging
import random
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from gadgetry.config import Config
from gadgetry.creature import Creature
from gadgetry.execution import Emulator, Hatchery, MemoryLayout
from gadgetry.fitness import Weighted
from gadgetry.health import HealthMonitor
from gadgetry.profiler import AggregateProfile
from gadgetry.registers import (
    Architecture,
    Register,
    get_architecture,
    parse_register_pattern,
    parse_registers,
    pattern_distance,
    random_register_state,
)
from gadgetry.sketch import CountMinSketch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FitnessContext:
    """Everything a strategy reads besides the profile and the sketch."""

    weights: Mapping[str, float]
    layout: MemoryLayout
    arch: Architecture
    register_pattern: Mapping[Register, int] | None = None


FitnessFn = Callable[[AggregateProfile, CountMinSketch, FitnessContext], Weighted]


def code_coverage_ff(
    profile: AggregateProfile, sketch: CountMinSketch, context: FitnessContext
) -> Weighted:
    """Reward visiting much of the executable image, and visiting rarely seen code."""
    visited = profile.visited_addresses()
    fitness = Weighted(context.weights)
    fitness.insert("code_coverage", 1.0 - len(visited) / context.layout.executable_bytes)
    fitness.insert("code_frequency", sketch.mean_frequency(visited))
    fitness.insert("gadgets_executed", len(profile.gadgets_union()))
    fitness.insert(
        "mem_ratio_written", 1.0 - profile.mem_write_ratio(context.layout.writable_bytes)
    )
    return fitness


def register_pattern_ff(
    profile: AggregateProfile, sketch: CountMinSketch, context: FitnessContext
) -> Weighted:
    """Distance between the first run's final registers and the target pattern."""
    if context.register_pattern is None:
        raise ValueError("register_pattern_ff requires a register pattern")
    if not len(profile):
        raise RuntimeError("Cannot score a profile with no runs")
    fitness = Weighted(context.weights)
    fitness.insert("register_error", pattern_distance(context.register_pattern, profile.registers[0]))
    fitness.insert("crash_count", profile.crash_count())
    fitness.insert("gadgets_executed", len(profile.gadgets_union()))
    fitness.insert(
        "mem_ratio_written", 1.0 - profile.mem_write_ratio(context.layout.writable_bytes)
    )
    return fitness


def register_conjunction_ff(
    profile: AggregateProfile, sketch: CountMinSketch, context: FitnessContext
) -> Weighted:
    """Count the zero bits left after AND-ing every final register value together."""
    if not len(profile):
        raise RuntimeError("Cannot score a profile with no runs")
    conjunction = context.arch.word_mask
    for value in profile.registers[-1].values():
        conjunction &= value
    fitness = Weighted(context.weights)
    fitness.insert("zeroes", context.arch.word_bits - bin(conjunction).count("1"))
    fitness.insert("gadgets_executed", len(profile.gadgets_union()))
    fitness.insert("mem_ratio_written", profile.mem_write_ratio(context.layout.writable_bytes))
    return fitness


FITNESS_FUNCTIONS: dict[str, FitnessFn] = {
    "code_coverage": code_coverage_ff,
    "register_pattern": register_pattern_ff,
    "register_conjunction": register_conjunction_ff,
}


class Evaluator:
    """
    Execute and score creatures.

    The strategy is looked up once, here, from `config.fitness.function`. The
    frequency sketch and this object belong to the generation loop alone.
    """

    def __init__(
        self,
        config: Config,
        hatchery: Hatchery,
        layout: MemoryLayout,
        sketch: CountMinSketch | None = None,
        health_monitor: HealthMonitor | None = None,
    ):
        if layout.executable_bytes <= 0 or layout.writable_bytes <= 0:
            raise ValueError(f"Memory layout sizes must be positive: {layout}")
        self.config = config
        self.hatchery = hatchery
        self.fitness_fn: FitnessFn = FITNESS_FUNCTIONS[config.fitness.function]
        arch = get_architecture(config.roper.arch)
        pattern = None
        if config.roper.register_pattern:
            pattern = parse_register_pattern(config.roper.register_pattern, arch)
        self.context = FitnessContext(
            weights=dict(config.fitness.weights),
            layout=layout,
            arch=arch,
            register_pattern=pattern,
        )
        self.sketch = sketch or CountMinSketch(
            width=config.sketch.width, depth=config.sketch.depth, seed=config.sketch.seed
        )
        self.health_monitor = health_monitor

    @classmethod
    def spawn(
        cls,
        config: Config,
        emulator_factory: Callable[[], Emulator],
        layout: MemoryLayout,
        rng: random.Random | None = None,
        health_monitor: HealthMonitor | None = None,
    ) -> Evaluator:
        """Build the Hatchery described by the configuration and wrap it."""
        arch = get_architecture(config.roper.arch)
        output_registers = parse_registers(config.roper.output_registers, arch)
        if config.roper.register_pattern:
            for reg in parse_register_pattern(config.roper.register_pattern, arch):
                if reg not in output_registers:
                    output_registers.append(reg)
        input_registers = parse_registers(config.roper.input_registers, arch) or output_registers
        inputs = [random_register_state(input_registers, rng)]
        hatchery = Hatchery(
            emulator_factory,
            inputs=inputs,
            output_registers=output_registers,
            num_workers=config.roper.num_workers,
        )
        return cls(config, hatchery, layout, health_monitor=health_monitor)

    def __enter__(self) -> Evaluator:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.hatchery.close()

    def _apply_strategy(self, profile: AggregateProfile) -> Weighted:
        return self.fitness_fn(profile, self.sketch, self.context)

    def _score(self, creature: Creature) -> Creature:
        if creature.fitness is not None:
            return creature
        scored = dataclasses.replace(creature)
        scored.score(self._apply_strategy)
        return scored

    def _record_frequency(self, creature: Creature) -> None:
        self.sketch.insert_all(creature.profile.visited_addresses())

    def evaluate(self, creature: Creature) -> Creature:
        """Execute (unless already profiled) and score a single creature."""
        return self.evaluate_batch([creature])[0]

    def evaluate_batch(self, creatures: Iterable[Creature]) -> list[Creature]:
        """
        Execute the unprofiled creatures as one batch, then score all of them.

        Scores are computed against the sketch as it stood before the batch; only
        then is every creature's coverage added to it. Output order matches input.
        """
        batch = list(creatures)
        fresh = [i for i, creature in enumerate(batch) if creature.profile is None]
        results = list(batch)

        if fresh:
            executed = self.hatchery.execute_batch(batch[i] for i in fresh)
            crashes = 0
            for i, (creature, profile) in zip(fresh, executed):
                if creature is not batch[i]:
                    raise RuntimeError("Hatchery returned profiles out of request order")
                results[i] = creature.with_profile(profile)
                crashes += profile.crash_count()
            if crashes:
                logger.debug(f"  [~] {crashes} CPU fault(s) in a batch of {len(fresh)}")
                if self.health_monitor is not None:
                    self.health_monitor.record_cpu_faults(crashes, len(fresh))

        results = [self._score(creature) for creature in results]

        for creature in results:
            self._record_frequency(creature)
        return results
