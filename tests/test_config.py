import logging
from pathlib import Path

import numpy as np
import pytest

from kinematic_control import (
    ControllerConfig, CycleTimer, SolverConfig, build_configs, load_control_config,
)
from kinematic_control.config import get_logger

PROJECT_CONFIG = Path(__file__).parent.parent / "configuration_files" / "control_config.yaml"


class TestSolverConfig:
    def test_defaults(self):
        cfg = SolverConfig()
        assert cfg.max_iterations == 50
        assert cfg.tolerance == 1e-5
        assert cfg.violation_floor == 1e-2
        assert cfg.barrier_decay == 0.5

    @pytest.mark.parametrize("kwargs", [
        {"max_iterations": 0},
        {"tolerance": -1.0},
        {"barrier_decay": 1.0},
        {"barrier_growth": 1.0},
        {"step_shrink": 0.0},
    ])
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            SolverConfig(**kwargs)


class TestControllerConfig:
    def test_dt_is_reciprocal_of_frequency(self):
        assert ControllerConfig(control_frequency=200.0).dt == pytest.approx(0.005)

    def test_negative_gain_is_made_positive(self, caplog):
        with caplog.at_level(logging.WARNING):
            cfg = ControllerConfig(proportional_gain=-3.0)
        assert cfg.proportional_gain == 3.0
        assert "cannot be negative" in caplog.text

    def test_zero_gain_is_rejected(self):
        with pytest.raises(ValueError):
            ControllerConfig(proportional_gain=0.0)


class TestConfigFile:
    def test_missing_file_gives_empty_dict(self, tmp_path):
        assert load_control_config(str(tmp_path / "nope.yaml")) == {}

    def test_invalid_yaml_gives_empty_dict(self, tmp_path, caplog):
        path = tmp_path / "broken.yaml"
        path.write_text("solver: [unclosed\n", encoding="utf-8")
        with caplog.at_level(logging.WARNING):
            assert load_control_config(str(path)) == {}
        assert "Could not read control config" in caplog.text

    def test_sections_map_onto_dataclasses(self, tmp_path):
        path = tmp_path / "control.yaml"
        path.write_text("solver:\n  max_iterations: 20\ncontroller:\n  control_frequency: 250\n",
                        encoding="utf-8")
        solver_cfg, controller_cfg = build_configs(load_control_config(str(path)))
        assert solver_cfg.max_iterations == 20
        assert controller_cfg.dt == pytest.approx(0.004)

    def test_unknown_keys_are_rejected(self):
        with pytest.raises(ValueError, match="Unknown keys"):
            build_configs({"controller": {"gain": 1.0}})

    def test_empty_config_gives_defaults(self):
        solver_cfg, controller_cfg = build_configs({})
        assert solver_cfg == SolverConfig()
        assert controller_cfg.control_frequency == 100.0

    def test_project_config_is_valid(self):
        solver_cfg, controller_cfg = build_configs(load_control_config(str(PROJECT_CONFIG)))
        assert solver_cfg.max_iterations == 50
        assert controller_cfg.track_cycle_time


class TestLogger:
    def test_handler_added_once(self):
        first = get_logger("kinematic_control.tests.once")
        second = get_logger("kinematic_control.tests.once")
        assert first is second
        assert len(second.handlers) == 1

    def test_quiet_mode_forces_warning(self):
        logger = get_logger("kinematic_control.tests.quiet", log_level="DEBUG", verbose=False)
        assert logger.level == logging.WARNING


class TestCycleTimer:
    def test_disabled_records_nothing(self):
        timer = CycleTimer(0.01)
        timer.record(0.005)
        assert timer.get_stats() == {}

    def test_statistics(self):
        timer = CycleTimer(0.01, enabled=True)
        for sample in (0.002, 0.004, 0.012):
            timer.record(sample)
        stats = timer.get_stats()

        assert stats['samples'] == 3
        assert stats['compute_avg_ms'] == pytest.approx(6.0)
        assert stats['compute_std_ms'] == pytest.approx(np.std([2.0, 4.0, 12.0], ddof=1))
        assert stats['compute_max_ms'] == pytest.approx(12.0)
        assert stats['headroom_min_ms'] == pytest.approx(-2.0)
        assert stats['overrun_count'] == 1

    def test_context_manager_and_reset(self):
        timer = CycleTimer(1.0, enabled=True)
        with timer:
            pass
        assert timer.get_stats()['samples'] == 1
        timer.reset()
        assert timer.get_stats()['samples'] == 0

    def test_rejects_non_positive_period(self):
        with pytest.raises(ValueError):
            CycleTimer(0.0)
