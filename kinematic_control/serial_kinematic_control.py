"""
Resolved-rate kinematic controller for serial manipulators.

Every control cycle the controller:
1. takes one KinematicState snapshot from the model,
2. computes the instantaneous joint velocity bounds (position, speed and
   braking-distance limits),
3. builds the least squares problem that fits the arm:
   - n <= 6 joints: min 0.5*||twist - J*qdot||^2 within the bounds
   - n > 6 joints: J*qdot = twist exactly, while staying as close as possible
     (in an inertia + joint-limit-penalty metric) to a null-space task,
4. solves it with QPSolver and clips the result to the bounds.

The only memory carried between cycles is the last command (re-issued at 90%
when an input is malformed) and an optional one-shot null-space task.

IMPORTANT: No public method raises at runtime. Malformed inputs are logged at
ERROR and answered with the damped previous command, clipped to the bounds.
"""

import numpy as np
import numba
from typing import Optional, Tuple, Union

from .config import ControllerConfig, get_logger
from .cycle_timer import CycleTimer
from .kinematic_model import (
    KinematicState, jacobian_partial_derivative, manipulability,
    jacobian_core, jacobian_derivative_core,
)
from .pose import Pose
from .qp_solver import QPSolver
from .quaternion_math import (
    quat_multiply, quat_conjugate, quat_rotate_vector, quat_from_axis_angle,
    quat_to_rotation_matrix, quat_slerp, orientation_error, so3_left_jacobian,
    quat_from_rotation_vector, rotation_vector_from_quat, compute_manipulability,
)

PoseLike = Union[Pose, np.ndarray]


@numba.njit(fastmath=False)
def speed_limits_core(q, position_lower, position_upper, speed_limits, acceleration_limits, dt):
    """
    Instantaneous joint velocity bounds, the tightest of:
    - reaching the position limit within one control period,
    - the rated joint speed,
    - still being able to brake to rest before the limit, v <= sqrt(2*a*d).

    Flacco, F., De Luca, A., & Khatib, O. (2012). Motion control of redundant
    robots under joint constraints: Saturation in the null space. ICRA.
    """
    n = q.shape[0]
    lower = np.empty(n, dtype=np.float64)
    upper = np.empty(n, dtype=np.float64)
    for i in range(n):
        to_lower = q[i] - position_lower[i]
        to_upper = position_upper[i] - q[i]

        lo = max(-to_lower / dt,
                 max(-speed_limits[i], -np.sqrt(2.0 * acceleration_limits[i] * max(to_lower, 0.0))))
        hi = min(to_upper / dt,
                 min(speed_limits[i], np.sqrt(2.0 * acceleration_limits[i] * max(to_upper, 0.0))))

        # Only crosses when the joint is already past a limit: head back
        if lo > hi:
            hi = lo
        lower[i] = lo
        upper[i] = hi
    return lower, upper


@numba.njit(fastmath=False)
def joint_penalty_core(q, qdot, position_lower, position_upper, eps=1e-6):
    """
    Joint-limit penalty weights (minimum 1).

    Chan, T. F., & Dubey, R. V. (1995). A weighted least-norm solution based
    scheme for avoiding joint limits for redundant joint manipulators.
    IEEE Transactions on Robotics and Automation, 11(2), 286-292.
    """
    n = q.shape[0]
    penalty = np.ones(n, dtype=np.float64)
    for i in range(n):
        to_lower = max(q[i] - position_lower[i], eps)
        to_upper = max(position_upper[i] - q[i], eps)
        span = position_upper[i] - position_lower[i]
        dpdq = (span * span * (2.0 * q[i] - position_upper[i] - position_lower[i])) \
            / (4.0 * to_upper * to_upper * to_lower * to_lower)
        if dpdq * qdot[i] > 0.0:  # Moving toward a limit
            penalty[i] = span * span / (4.0 * to_upper * to_lower)
    return penalty


class SerialKinematicControl:
    """Joint velocity control of a serial manipulator's end-effector or joints."""

    def __init__(
        self,
        model,
        config: Optional[ControllerConfig] = None,
        solver: Optional[QPSolver] = None,
        verbose: bool = True,
        log_level: str = "INFO",
    ):
        """Initialize the controller.

        Args:
            model: Anything with a snapshot() method returning a KinematicState
            config: Controller configuration
            solver: QP solver; a default-configured one is created if omitted
            verbose: Quiet mode when False, only warnings and errors are logged
            log_level: Logging level - "DEBUG", "INFO", "WARNING", "ERROR"
        """
        self.model = model
        self.cfg = config if config is not None else ControllerConfig()
        self.solver = solver if solver is not None else QPSolver(verbose=verbose, log_level=log_level)
        self.logger = get_logger(f"{__name__}.SerialKinematicControl", log_level, verbose)

        self.n = model.snapshot().n
        self.dt = self.cfg.dt
        self.k = float(self.cfg.proportional_gain)

        self._last_command = np.zeros(self.n)
        self._redundant_task: Optional[np.ndarray] = None
        self.timer = CycleTimer(self.dt, enabled=self.cfg.track_cycle_time)

    @property
    def is_redundant(self) -> bool:
        return self.n > self.cfg.max_task_dof

    @property
    def last_command(self) -> np.ndarray:
        return self._last_command.copy()

    def reset(self) -> None:
        """Forget the last command and any pending null-space task."""
        self._last_command = np.zeros(self.n)
        self._redundant_task = None
        self.timer.reset()

    def set_log_level(self, level: str) -> None:
        self.logger.setLevel(level.upper())

    def cycle_stats(self):
        return self.timer.get_stats()

    def set_proportional_gain(self, gain: float) -> bool:
        """Set the feedback gain. Zero is rejected, negative values are made positive."""
        if gain == 0:
            self.logger.error("set_proportional_gain(): Value cannot be zero. Gain not set.")
            return False
        if gain < 0:
            self.logger.warning(
                f"set_proportional_gain(): Gain of {gain} cannot be negative. "
                f"It has been automatically made positive."
            )
            self.k = -float(gain)
            return True
        self.k = float(gain)
        return True

    def set_redundant_task(self, task) -> bool:
        """Null-space velocity used by the next Cartesian command that has no explicit redundancy."""
        task = np.asarray(task, dtype=np.float64).reshape(-1)
        if task.size != self.n:
            self.logger.error(
                f"set_redundant_task(): Expected a {self.n}x1 vector for the redundant task, "
                f"but it was {task.size}x1."
            )
            return False
        self._redundant_task = task.copy()
        return True

    # ------------------------------------------------------------------
    # Public control operations
    # ------------------------------------------------------------------

    def move_at_speed(self, twist, redundancy=None) -> np.ndarray:
        """Joint velocities realising an end-effector twist [vx, vy, vz, wx, wy, wz]."""
        with self.timer:
            state = self.model.snapshot()
            return self._move_at_speed(state, twist, redundancy, "move_at_speed")

    def move_to_position(self, joint_positions) -> np.ndarray:
        """Proportional joint-space feedback toward `joint_positions`."""
        with self.timer:
            state = self.model.snapshot()
            lower, upper = self.get_speed_limits(state)

            pos = np.asarray(joint_positions, dtype=np.float64).reshape(-1)
            if pos.size != self.n:
                self.logger.error(
                    f"move_to_position(): Expected a {self.n}x1 vector for the input, "
                    f"but it was {pos.size}x1."
                )
                return self._fallback(lower, upper)

            return self._issue(self.k * (pos - state.joint_positions), lower, upper)

    def move_to_pose(self, pose: PoseLike, redundancy=None) -> np.ndarray:
        """Proportional Cartesian feedback toward an end-effector pose."""
        with self.timer:
            state = self.model.snapshot()
            desired = self._as_pose(pose, "move_to_pose")
            if desired is None:
                return self._fallback(*self.get_speed_limits(state))

            twist = self.k * self.get_pose_error(desired, state.endpoint_pose)
            return self._move_at_speed(state, twist, redundancy, "move_to_pose")

    def track_cartesian_trajectory(self, pose: PoseLike, velocity, acceleration=None,
                                   redundancy=None) -> np.ndarray:
        """Feed-forward twist (+ acceleration) plus pose feedback."""
        with self.timer:
            state = self.model.snapshot()
            desired = self._as_pose(pose, "track_cartesian_trajectory")
            vel = np.asarray(velocity, dtype=np.float64).reshape(-1)
            acc = np.zeros(6) if acceleration is None else np.asarray(acceleration, dtype=np.float64).reshape(-1)

            if desired is None or vel.size != 6 or acc.size != 6:
                if desired is not None:
                    self.logger.error(
                        f"track_cartesian_trajectory(): Expected 6x1 velocity and acceleration vectors, "
                        f"but they were {vel.size}x1 and {acc.size}x1."
                    )
                return self._fallback(*self.get_speed_limits(state))

            feedforward = vel + self.dt * acc
            twist = feedforward + self.k * self.get_pose_error(desired, state.endpoint_pose)
            return self._move_at_speed(state, twist, redundancy, "track_cartesian_trajectory")

    def track_joint_trajectory(self, position, velocity, acceleration=None) -> np.ndarray:
        """Feed-forward joint velocity (+ acceleration) plus position feedback."""
        with self.timer:
            state = self.model.snapshot()
            lower, upper = self.get_speed_limits(state)

            pos = np.asarray(position, dtype=np.float64).reshape(-1)
            vel = np.asarray(velocity, dtype=np.float64).reshape(-1)
            acc = np.zeros(self.n) if acceleration is None else np.asarray(acceleration, dtype=np.float64).reshape(-1)

            if pos.size != self.n or vel.size != self.n or acc.size != self.n:
                self.logger.error(
                    f"track_joint_trajectory(): This robot has {self.n} joints, but "
                    f"the position argument had {pos.size} elements, "
                    f"the velocity argument had {vel.size} elements, "
                    f"and the acceleration argument had {acc.size} elements."
                )
                return self._fallback(lower, upper)

            feedforward = vel + self.dt * acc
            return self._issue(feedforward + self.k * (pos - state.joint_positions), lower, upper)

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    @staticmethod
    def get_pose_error(desired: Pose, actual: Pose) -> np.ndarray:
        """
        Pose feedback error: translation difference plus the vector part of
        q_desired * q_actual^-1, taking the short way round.

        Yuan, J. S. (1988). Closed-loop manipulator control using quaternion
        feedback. IEEE Journal on Robotics and Automation, 4(4), 434-440.
        """
        return actual.error(desired)

    def get_speed_limits(self, state: Optional[KinematicState] = None) -> Tuple[np.ndarray, np.ndarray]:
        """Per-joint (lower, upper) velocity bounds for this cycle."""
        if state is None:
            state = self.model.snapshot()
        return speed_limits_core(
            np.array(state.joint_positions), np.array(state.position_lower), np.array(state.position_upper),
            np.array(state.speed_limits), np.array(state.acceleration_limits), float(self.dt),
        )

    def get_joint_penalty(self, state: Optional[KinematicState] = None) -> np.ndarray:
        """Per-joint weight >= 1 that grows when a joint moves toward a limit."""
        if state is None:
            state = self.model.snapshot()
        return joint_penalty_core(
            np.array(state.joint_positions), np.array(state.joint_velocities),
            np.array(state.position_lower), np.array(state.position_upper),
        )

    def singularity_avoidance(self, scalar: float, state: Optional[KinematicState] = None) -> np.ndarray:
        """
        Joint velocities along the gradient of manipulability,
        d(mu)/dq_i = mu * trace(dJ/dq_i * J^+).

        Yoshikawa, T. (1985). Manipulability of robotic mechanisms.
        The International Journal of Robotics Research, 4(2), 3-9.
        """
        if scalar <= 0:
            self.logger.error(
                f"singularity_avoidance(): Input argument was {scalar} but it must be positive!"
            )
            return np.zeros(self.n)

        if state is None:
            state = self.model.snapshot()

        J = np.array(state.jacobian)
        J_pinv = np.linalg.pinv(J)
        mu = manipulability(J)

        grad = np.zeros(self.n)  # First joint does not affect manipulability
        for i in range(1, self.n):
            dJ = jacobian_partial_derivative(state, i)
            grad[i] = scalar * mu * np.trace(dJ @ J_pinv)
        return grad

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _move_at_speed(self, state: KinematicState, twist, redundancy, caller: str) -> np.ndarray:
        # Whitney, D. E. (1969). Resolved motion rate control of manipulators
        # and human prostheses. IEEE Transactions on Man-Machine Systems, 10(2), 47-53.
        lower, upper = self.get_speed_limits(state)
        J = np.array(state.jacobian)
        m = J.shape[0]

        twist = np.asarray(twist, dtype=np.float64).reshape(-1)
        if twist.size != m:
            self.logger.error(f"{caller}(): Expected a {m}x1 vector for the end-effector velocity, "
                              f"but it was {twist.size}x1.")
            return self._fallback(lower, upper)

        if redundancy is not None:
            redundancy = np.asarray(redundancy, dtype=np.float64).reshape(-1)
            if redundancy.size != self.n:
                self.logger.error(f"{caller}(): Expected a {self.n}x1 vector for the redundant task, "
                                  f"but it was {redundancy.size}x1.")
                return self._fallback(lower, upper)

        if not self.is_redundant:
            # Every joint is needed for the task
            qdot = self.solver.least_squares(twist, J, np.eye(m), 0.5 * (lower + upper),
                                             x_min=lower, x_max=upper)
            return self._issue(qdot, lower, upper)

        if redundancy is None:
            redundancy = self._take_redundant_task()
        if redundancy is None:
            redundancy = self.singularity_avoidance(self.cfg.manipulability_gain, state)

        W = np.array(state.inertia)                              # Weight by inertia for minimum energy
        W[np.diag_indices(self.n)] += self.get_joint_penalty(state) - 1.0  # Penalise motion toward limits

        qdot = self.solver.constrained_least_squares(redundancy, W, twist, J, self._warm_start(lower, upper),
                                                     x_min=lower, x_max=upper)
        return self._issue(qdot, lower, upper)

    def _take_redundant_task(self) -> Optional[np.ndarray]:
        task, self._redundant_task = self._redundant_task, None
        return task

    def _warm_start(self, lower: np.ndarray, upper: np.ndarray) -> np.ndarray:
        # Previous command pulled toward the middle so it is strictly inside the new box
        mid = 0.5 * (lower + upper)
        return mid + 0.9 * (np.clip(self._last_command, lower, upper) - mid)

    def _issue(self, qdot: np.ndarray, lower: np.ndarray, upper: np.ndarray) -> np.ndarray:
        if not np.all(np.isfinite(qdot)):
            self.logger.error("Computed joint velocities were not finite.")
            return self._fallback(lower, upper)
        command = np.clip(qdot, lower, upper)
        self._last_command = command.copy()
        return command

    def _fallback(self, lower: np.ndarray, upper: np.ndarray) -> np.ndarray:
        command = np.clip(self.cfg.fallback_damping * self._last_command, lower, upper)
        self._last_command = command.copy()
        return command

    def _as_pose(self, pose: PoseLike, caller: str) -> Optional[Pose]:
        if isinstance(pose, Pose):
            return pose
        try:
            arr = np.asarray(pose, dtype=np.float64).reshape(-1)
        except (TypeError, ValueError):
            arr = np.empty(0)
        if arr.size == 7:
            if not np.all(np.isfinite(arr)) or np.linalg.norm(arr[3:7]) < 1e-9:
                self.logger.error(f"{caller}(): Pose vector must be finite with a non-zero quaternion, "
                                  f"but it was {arr}.")
                return None
            return Pose(arr[0:3], arr[3:7])  # (x, y, z, qw, qx, qy, qz)
        self.logger.error(f"{caller}(): Expected a Pose or a 7x1 [x, y, z, qw, qx, qy, qz] vector, "
                          f"but it was {arr.size}x1.")
        return None


def warmup_numba_functions():
    """
    Warmup Numba JIT compilation by calling every kernel with dummy data.
    This prevents compilation delays during the first control cycles.
    """
    q = np.zeros(3)
    lo = -np.ones(3)
    hi = np.ones(3)
    axes = np.array([[0.0, 0.0, 1.0], [0.0, 1.0, 0.0], [0.0, 1.0, 0.0]])
    origins = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 0.3], [0.0, 0.0, 0.6]])
    revolute = np.array([True, True, True])
    quat = np.array([1.0, 0.0, 0.0, 0.0])
    vec = np.array([0.1, 0.2, 0.3])

    speed_limits_core(q, lo, hi, hi, hi, 0.01)
    joint_penalty_core(q, q, lo, hi)
    J = jacobian_core(axes, origins, revolute, np.array([0.2, 0.0, 0.9]), 3)
    jacobian_derivative_core(J, axes, revolute, 1)
    compute_manipulability(J)

    quat_multiply(quat, quat)
    quat_conjugate(quat)
    quat_rotate_vector(quat, vec)
    quat_from_axis_angle(vec, 0.5)
    quat_to_rotation_matrix(quat)
    quat_slerp(quat, quat_from_rotation_vector(vec), 0.5)
    rotation_vector_from_quat(quat)
    orientation_error(quat, quat)
    so3_left_jacobian(vec)
