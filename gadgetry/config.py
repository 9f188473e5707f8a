"""
Run configuration for gadgetry.

Configuration is a tree of plain dataclasses, loaded from a JSON file and
validated once, before any worker is started. Every rule that can be checked up
front is checked here, so a bad configuration fails at startup rather than
generations into a run.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from gadgetry.registers import get_architecture, parse_register_pattern, parse_registers

FITNESS_FUNCTION_NAMES = ("code_coverage", "register_pattern", "register_conjunction")

DEFAULT_WEIGHTS = {
    "code_coverage": 1.0,
    "code_frequency": 1.0,
    "register_error": 1.0,
    "crash_count": 1.0,
    "zeroes": 1.0,
    "gadgets_executed": 0.0,
    "mem_ratio_written": 0.0,
}


def validate_tournament(config: Any) -> None:
    """Check the population and tournament parameters shared by every search."""
    if config.num_offspring < 1:
        raise ValueError(f"num_offspring must be at least 1, got {config.num_offspring}")
    if config.tournament_size < config.num_offspring + 2:
        raise ValueError(
            f"tournament_size ({config.tournament_size}) must be at least "
            f"num_offspring + 2 ({config.num_offspring + 2})"
        )
    if config.pop_size < 1:
        raise ValueError(f"pop_size must be at least 1, got {config.pop_size}")
    if not 0.0 <= config.mut_rate <= 1.0:
        raise ValueError(f"mut_rate must lie in [0, 1], got {config.mut_rate}")
    if config.init_len < 1:
        raise ValueError(f"init_len must be at least 1, got {config.init_len}")
    if config.observer.window_size < 1:
        raise ValueError("observer.window_size must be at least 1")


@dataclass
class FitnessConfig:
    function: str = "code_coverage"
    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    # A run stops once the best scalar fitness reaches this value.
    target: float = 0.0


@dataclass
class ObserverConfig:
    window_size: int = 64
    telemetry_log: Path | None = None


@dataclass
class SketchConfig:
    width: int = 2048
    depth: int = 4
    seed: int = 20221211


@dataclass
class RoperConfig:
    arch: str = "x86_64"
    num_workers: int = 4
    output_registers: list[str] = field(default_factory=list)
    input_registers: list[str] = field(default_factory=list)
    register_pattern: dict[str, int] | None = None
    gadget_pool: list[int] = field(default_factory=list)


@dataclass
class Config:
    pop_size: int = 200
    tournament_size: int = 6
    num_offspring: int = 2
    mut_rate: float = 0.1
    init_len: int = 8
    max_generations: int | None = None
    random_seed: int | None = None
    health_log: Path | None = None
    fitness: FitnessConfig = field(default_factory=FitnessConfig)
    observer: ObserverConfig = field(default_factory=ObserverConfig)
    sketch: SketchConfig = field(default_factory=SketchConfig)
    roper: RoperConfig = field(default_factory=RoperConfig)

    def validate(self) -> None:
        """Raise ValueError describing the first violated rule."""
        validate_tournament(self)
        if self.max_generations is not None and self.max_generations < 0:
            raise ValueError("max_generations must not be negative")
        if self.sketch.width < 1 or self.sketch.depth < 1:
            raise ValueError("sketch.width and sketch.depth must be at least 1")
        if self.roper.num_workers < 1:
            raise ValueError("roper.num_workers must be at least 1")
        if self.fitness.function not in FITNESS_FUNCTION_NAMES:
            raise ValueError(
                f"Unknown fitness function {self.fitness.function!r}; "
                f"expected one of {FITNESS_FUNCTION_NAMES}"
            )
        if self.fitness.function == "register_pattern" and not self.roper.register_pattern:
            raise ValueError("The register_pattern fitness function needs roper.register_pattern")
        # These raise ValueError for unknown architectures or register names.
        arch = get_architecture(self.roper.arch)
        parse_registers(self.roper.output_registers, arch)
        parse_registers(self.roper.input_registers, arch)
        if self.roper.register_pattern:
            parse_register_pattern(self.roper.register_pattern, arch)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Build and validate a Config; unknown keys are rejected."""
        sections = {
            "fitness": FitnessConfig,
            "observer": ObserverConfig,
            "sketch": SketchConfig,
            "roper": RoperConfig,
        }
        kwargs = _checked_kwargs(cls, data)
        for name, section_cls in sections.items():
            if name in kwargs:
                kwargs[name] = section_cls(**_checked_kwargs(section_cls, kwargs[name]))
        config = cls(**kwargs)
        if config.health_log is not None:
            config.health_log = Path(config.health_log)
        if config.observer.telemetry_log is not None:
            config.observer.telemetry_log = Path(config.observer.telemetry_log)
        config.validate()
        return config

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["health_log"] = str(self.health_log) if self.health_log else None
        telemetry_log = self.observer.telemetry_log
        data["observer"]["telemetry_log"] = str(telemetry_log) if telemetry_log else None
        return data


def _checked_kwargs(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping for {cls.__name__}, got {type(data).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return dict(data)


def load_config(path: Path) -> Config:
    """Read a JSON configuration file and validate it."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return Config.from_dict(data)
