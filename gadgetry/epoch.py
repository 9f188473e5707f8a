"""
This module contains the generation controller.

An Epoch is one generation: the population, the configuration, the best
candidate seen so far and the generation index. `evolve()` runs one round of
tournament selection and returns the next Epoch; the Epoch it was given is
never modified, so earlier generations can be kept and inspected while later
ones are computed.

Tournament selection, per generation:
1. Shuffle the population and pop `tournament_size` combatants off the end.
2. Evaluate them (cached results are reused) and show each to the Observer.
3. Rank them, lower fitness first, and update the running champion.
4. Cull the `num_offspring` worst.
5. Return everyone but the two best to the population unchanged.
6. Breed the two best into `num_offspring` children.
7. Return parents and children to the population.

Every generation returns exactly as many candidates as it drew, so the
population size never drifts.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Callable

from gadgetry.creature import Genotype
from gadgetry.health import HealthMonitor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Epoch:
    population: tuple[Genotype, ...]
    config: Any
    best: Genotype | None = None
    iteration: int = 0

    @classmethod
    def new(
        cls,
        config: Any,
        spawn: Callable[[random.Random], Genotype],
        rng: random.Random | None = None,
    ) -> Epoch:
        """Validate the configuration and sample a fresh population."""
        config.validate()
        rng = rng or random.Random()
        population = tuple(spawn(rng) for _ in range(config.pop_size))
        return cls(population=population, config=config)

    def evolve(
        self,
        observer: Any,
        evaluator: Any,
        rng: random.Random | None = None,
        health_monitor: HealthMonitor | None = None,
    ) -> Epoch:
        return evolve(self, observer, evaluator, rng, health_monitor)

    def reached(self, target: float) -> bool:
        """True once the champion's fitness is at or below `target`."""
        return self.best is not None and float(self.best.fitness) <= target


def _is_new_champion(champ: Genotype, best: Genotype | None) -> bool:
    return best is None or champ.fitness < best.fitness


def breed(
    mother: Genotype, father: Genotype, num_offspring: int, mut_rate: float, rng: random.Random
) -> list[Genotype]:
    """Mate two parents until exactly `num_offspring` children exist."""
    offspring: list[Genotype] = []
    while len(offspring) < num_offspring:
        offspring.extend(mother.mate(father, mut_rate, rng))
    return offspring[:num_offspring]


def draw_combatants(population: list, tournament_size: int) -> list:
    """Pop up to `tournament_size` candidates off the end of a shuffled population."""
    combatants = []
    for _ in range(tournament_size):
        if not population:
            break
        combatants.append(population.pop())
    return combatants


def evolve(
    epoch: Epoch,
    observer: Any,
    evaluator: Any,
    rng: random.Random | None = None,
    health_monitor: HealthMonitor | None = None,
) -> Epoch:
    """Run one generation of tournament selection and return the next Epoch."""
    rng = rng or random.Random()
    config = epoch.config
    population = list(epoch.population)
    rng.shuffle(population)

    combatants = draw_combatants(population, config.tournament_size)
    if len(combatants) < config.tournament_size:
        logger.warning(
            f"[!] [gen {epoch.iteration}] Population too small: drew {len(combatants)} "
            f"of {config.tournament_size} combatants"
        )
        if health_monitor is not None:
            health_monitor.record_degraded_tournament(
                epoch.iteration, config.tournament_size, len(combatants)
            )
    if len(combatants) < config.num_offspring + 2:
        raise RuntimeError(
            f"Only {len(combatants)} combatants drawn; culling {config.num_offspring} "
            "would leave fewer than two parents"
        )

    combatants = evaluator.evaluate_batch(combatants)
    for combatant in combatants:
        observer.observe(combatant)

    combatants.sort(key=lambda c: c.fitness)
    best = epoch.best
    if _is_new_champion(combatants[0], best):
        best = combatants[0]
        logger.info(f"[+] [gen {epoch.iteration}] new champ {best} (fitness {best.fitness})")

    # Kill one off for every offspring to be produced.
    del combatants[len(combatants) - config.num_offspring :]

    mother, father, *bystanders = combatants
    offspring = breed(mother, father, config.num_offspring, config.mut_rate, rng)

    population.extend(bystanders)
    population.append(mother)
    population.append(father)
    population.extend(offspring)

    return Epoch(
        population=tuple(population),
        config=config,
        best=best,
        iteration=epoch.iteration + 1,
    )


def run(
    epoch: Epoch,
    observer: Any,
    evaluator: Any,
    stop: Callable[[Epoch], bool],
    max_generations: int | None = None,
    rng: random.Random | None = None,
    health_monitor: HealthMonitor | None = None,
) -> Epoch:
    """Evolve until `stop(epoch)` holds or `max_generations` have run."""
    rng = rng or random.Random()
    while not stop(epoch):
        if max_generations is not None and epoch.iteration >= max_generations:
            logger.info(f"[~] Stopping after {epoch.iteration} generations")
            break
        epoch = evolve(epoch, observer, evaluator, rng, health_monitor)
    return epoch
