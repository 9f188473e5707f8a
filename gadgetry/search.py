"""
Top-level gadget-chain search.

Wires the pieces together for one run: an Evaluator over a Hatchery of
emulators, an Observer, a HealthMonitor and a random initial population of
Creatures, then evolves until the champion reaches the configured fitness
target or the generation limit runs out.
"""

from __future__ import annotations

import logging
import random
from typing import Callable

from gadgetry.config import Config
from gadgetry.creature import Creature
from gadgetry.epoch import Epoch, run
from gadgetry.evaluation import Evaluator
from gadgetry.execution import Emulator, MemoryLayout, PipelineError
from gadgetry.health import HealthMonitor
from gadgetry.observer import Observer
from gadgetry.registers import get_architecture

logger = logging.getLogger(__name__)


def search(
    config: Config,
    emulator_factory: Callable[[], Emulator],
    layout: MemoryLayout,
    rng: random.Random | None = None,
) -> Epoch:
    """Run a full search and return the final generation."""
    config.validate()
    rng = rng or random.Random(config.random_seed)
    arch = get_architecture(config.roper.arch)
    gene_pool = tuple(config.roper.gadget_pool)
    health_monitor = HealthMonitor(config.health_log)

    def spawn(r: random.Random) -> Creature:
        return Creature.random(config.init_len, gene_pool, arch, r)

    epoch = Epoch.new(config, spawn, rng)
    logger.info(
        f"[+] Starting search: {config.pop_size} creatures, "
        f"fitness function {config.fitness.function!r}"
    )

    evaluator = Evaluator.spawn(config, emulator_factory, layout, rng, health_monitor)
    observer = Observer.spawn(config)
    try:
        epoch = run(
            epoch,
            observer,
            evaluator,
            stop=lambda e: e.reached(config.fitness.target),
            max_generations=config.max_generations,
            rng=rng,
            health_monitor=health_monitor,
        )
    except PipelineError as e:
        health_monitor.record_pipeline_failure(str(e))
        raise
    finally:
        observer.stop()
        evaluator.close()

    if epoch.best is not None:
        logger.info(
            f"[+] Search finished after {epoch.iteration} generations; "
            f"champion fitness {epoch.best.fitness}"
        )
    return epoch
