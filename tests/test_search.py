"""End-to-end tests for the gadget-chain search driver."""

import json
import random
import tempfile
import unittest
from pathlib import Path

from gadgetry.config import Config, FitnessConfig, ObserverConfig, RoperConfig
from gadgetry.creature import Creature
from gadgetry.execution import MemoryLayout, PipelineError
from gadgetry.search import search
from gadgetry.types import Block, CpuFault, MemoryWriteEvent

POOL = [0x401000 + 0x10 * i for i in range(32)]
LAYOUT = MemoryLayout(executable_bytes=0x400, writable_bytes=0x100)


class ChainEmulator:
    """Executes each pooled address as a 16-byte block; anything else faults."""

    def run(self, candidate, log):
        acc = 0
        for word in candidate.chromosome:
            if word not in POOL:
                raise CpuFault("FETCH_UNMAPPED", word)
            log.record_block(Block(word, 16))
            log.record_gadget(word)
            acc = (acc + word) & 0xFFFFFFFFFFFFFFFF
        log.record_write(MemoryWriteEvent(candidate.chromosome[0], 0x7000, 8, acc))
        log.read_registers(lambda reg: acc ^ log.inputs.get(reg, 0))


def small_config(tmp, **overrides):
    config = Config(
        pop_size=12,
        tournament_size=4,
        num_offspring=2,
        init_len=4,
        max_generations=10,
        random_seed=7,
        health_log=Path(tmp) / "health.jsonl",
        observer=ObserverConfig(window_size=8, telemetry_log=Path(tmp) / "telemetry.jsonl"),
        roper=RoperConfig(output_registers=["rax"], gadget_pool=POOL, num_workers=2),
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


class TestSearch(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_runs_to_generation_limit(self):
        config = small_config(self.temp_dir.name)
        epoch = search(config, ChainEmulator, LAYOUT)
        self.assertEqual(epoch.iteration, 10)
        self.assertEqual(len(epoch.population), 12)
        self.assertIsInstance(epoch.best, Creature)
        self.assertIsNotNone(epoch.best.profile)
        self.assertTrue(set(epoch.best.chromosome) <= set(POOL))
        # 10 generations of 4 observations fill the window of 8 five times.
        lines = (Path(self.temp_dir.name) / "telemetry.jsonl").read_text().splitlines()
        self.assertEqual(len(lines), 5)

    def test_stops_once_target_reached(self):
        config = small_config(
            self.temp_dir.name, fitness=FitnessConfig(function="code_coverage", target=100.0)
        )
        epoch = search(config, ChainEmulator, LAYOUT)
        self.assertEqual(epoch.iteration, 1)
        self.assertTrue(epoch.reached(100.0))

    def test_register_pattern_search(self):
        config = small_config(
            self.temp_dir.name,
            fitness=FitnessConfig(function="register_pattern", weights={"register_error": 1.0}),
            roper=RoperConfig(register_pattern={"rbx": 0}, gadget_pool=POOL, num_workers=2),
        )
        epoch = search(config, ChainEmulator, LAYOUT, random.Random(1))
        self.assertIn("register_error", epoch.best.fitness)

    def test_same_seed_same_champion(self):
        first = search(small_config(self.temp_dir.name), ChainEmulator, LAYOUT)
        second = search(small_config(self.temp_dir.name), ChainEmulator, LAYOUT)
        self.assertEqual(first.best.chromosome, second.best.chromosome)

    def test_invalid_config_fails_before_running(self):
        config = small_config(self.temp_dir.name, tournament_size=3)
        with self.assertRaises(ValueError):
            search(config, ChainEmulator, LAYOUT)

    def test_pipeline_failure_is_logged_and_raised(self):
        def no_emulator():
            raise OSError("cannot map image")

        config = small_config(self.temp_dir.name)
        with self.assertRaises(PipelineError):
            search(config, no_emulator, LAYOUT)
        events = [
            json.loads(line)["event"]
            for line in config.health_log.read_text().splitlines()
        ]
        self.assertIn("pipeline_failure", events)


if __name__ == "__main__":
    unittest.main()
