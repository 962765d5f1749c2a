"""
Configuration for the QP solver and the kinematic controller.

Defaults live in the dataclasses below. A YAML file
(configuration_files/control_config.yaml) can override any of them:

    solver:
      max_iterations: 50
      tolerance: 1.0e-5
    controller:
      control_frequency: 100.0
      proportional_gain: 2.0
"""

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

_log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "configuration_files/control_config.yaml"


def get_logger(name: str, log_level: str = "INFO", verbose: bool = True) -> logging.Logger:
    """Logger with the project's console format.

    Args:
        name: Logger name, normally f"{__name__}.ClassName"
        log_level: "DEBUG", "INFO", "WARNING" or "ERROR"
        verbose: Quiet mode when False, forces WARNING
    """
    logger = logging.getLogger(name)
    if not verbose:
        logger.setLevel(logging.WARNING)
    else:
        logger.setLevel(getattr(logging, str(log_level).upper(), logging.INFO))

    # Add console handler if no handlers exist
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    return logger


@dataclass(frozen=True)
class SolverConfig:
    """Parameters of the log-barrier interior point method. Fixed per solver."""

    max_iterations: int = 50
    """Hard cap on Newton iterations per solve (bounds the cycle time)."""

    tolerance: float = 1e-5
    """Stop once the norm of the full Newton step falls below this."""

    barrier_weight: float = 1.0
    """Initial barrier weight u0."""

    barrier_decay: float = 0.5
    """Initial rate beta0 at which u shrinks after an accepted step (u *= beta)."""

    decay_slowdown: float = 0.5
    """On a violation beta moves this fraction of the way toward 1."""

    barrier_growth: float = 2.0
    """Multiplier on u for every violated constraint."""

    step_size: float = 1.0
    """Initial Newton step scalar alpha0."""

    step_shrink: float = 0.5
    """Backtracking multiplier on alpha while a step would leave the feasible set."""

    violation_floor: float = 1e-2
    """Distance substituted for a violated constraint."""

    def __post_init__(self):
        if int(self.max_iterations) <= 0:
            raise ValueError(f"max_iterations must be positive, got {self.max_iterations}")
        if self.tolerance <= 0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")
        if self.barrier_weight <= 0:
            raise ValueError(f"barrier_weight must be positive, got {self.barrier_weight}")
        if not 0.0 < self.barrier_decay < 1.0:
            raise ValueError(f"barrier_decay must be in (0, 1), got {self.barrier_decay}")
        if not 0.0 < self.decay_slowdown < 1.0:
            raise ValueError(f"decay_slowdown must be in (0, 1), got {self.decay_slowdown}")
        if self.barrier_growth <= 1.0:
            raise ValueError(f"barrier_growth must be greater than 1, got {self.barrier_growth}")
        if self.step_size <= 0:
            raise ValueError(f"step_size must be positive, got {self.step_size}")
        if not 0.0 < self.step_shrink < 1.0:
            raise ValueError(f"step_shrink must be in (0, 1), got {self.step_shrink}")
        if self.violation_floor <= 0:
            raise ValueError(f"violation_floor must be positive, got {self.violation_floor}")


@dataclass
class ControllerConfig:
    """Configuration for the serial kinematic controller."""

    control_frequency: float = 100.0
    """Control loop rate (Hz). The control period dt is its reciprocal."""

    proportional_gain: float = 1.0
    """Feedback gain on position/pose error."""

    manipulability_gain: float = 0.5
    """Scalar on the manipulability gradient used as the default null-space task."""

    fallback_damping: float = 0.9
    """Fraction of the last command re-issued when an input is malformed."""

    max_task_dof: int = 6
    """Task-space dimension. More joints than this makes the arm redundant."""

    track_cycle_time: bool = False
    """Record per-cycle compute time against the control period."""

    def __post_init__(self):
        if self.control_frequency <= 0:
            raise ValueError(f"control_frequency must be positive, got {self.control_frequency}")
        if self.proportional_gain == 0:
            raise ValueError("proportional_gain cannot be zero")
        if self.proportional_gain < 0:
            _log.warning("proportional_gain of %s cannot be negative, it has been made positive",
                         self.proportional_gain)
            self.proportional_gain = -self.proportional_gain
        if self.manipulability_gain <= 0:
            raise ValueError(f"manipulability_gain must be positive, got {self.manipulability_gain}")
        if not 0.0 <= self.fallback_damping <= 1.0:
            raise ValueError(f"fallback_damping must be in [0, 1], got {self.fallback_damping}")
        if int(self.max_task_dof) <= 0:
            raise ValueError(f"max_task_dof must be positive, got {self.max_task_dof}")

    @property
    def dt(self) -> float:
        return 1.0 / self.control_frequency


def load_control_config(path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load the control configuration YAML file.

    Looks at `path` first, then relative to the project root. Returns an
    empty dict when no file is found or it cannot be parsed.
    """
    p = Path(path)
    if not p.exists():
        # Try relative to this package's parent directory
        p = Path(__file__).parent.parent / path
    if not p.exists():
        return {}
    try:
        with p.open('r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        _log.warning("Could not read control config %s: %s", p, e)
        return {}
    return data if isinstance(data, dict) else {}


def _from_section(cls, section: Dict[str, Any], name: str):
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        raise ValueError(f"Unknown keys in '{name}' section: {sorted(unknown)}")
    return cls(**section)


def build_configs(data: Dict[str, Any]) -> Tuple[SolverConfig, ControllerConfig]:
    """Map the 'solver' and 'controller' sections of a config dict onto dataclasses."""
    solver_section = data.get('solver') or {}
    controller_section = data.get('controller') or {}
    if not isinstance(solver_section, dict) or not isinstance(controller_section, dict):
        raise ValueError("'solver' and 'controller' sections must be mappings")
    return (_from_section(SolverConfig, solver_section, 'solver'),
            _from_section(ControllerConfig, controller_section, 'controller'))
