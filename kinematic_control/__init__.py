"""Differential kinematics control of serial manipulators with a log-barrier QP solver."""

from .config import SolverConfig, ControllerConfig, load_control_config, build_configs
from .cycle_timer import CycleTimer
from .kinematic_model import (
    Joint, Link, KinematicState, SerialLinkModel,
    create_planar_arm, create_seven_dof_arm,
)
from .pose import Pose
from .qp_solver import QPSolver
from .serial_kinematic_control import SerialKinematicControl, warmup_numba_functions
from .trajectory import CubicSpline, CartesianSpline

__version__ = "0.1.0"
