"""
Serial-link kinematic model: joint and link definitions, forward kinematics,
geometric Jacobian and joint-space inertia.

The controller never reads the model directly. It takes one KinematicState
snapshot per control cycle via SerialLinkModel.snapshot(), so an estimator
thread can keep calling update_state() without tearing a cycle.

Notes:
- Quaternions are [w, x, y, z], float64 throughout.
- Jacobian rows are [vx, vy, vz, wx, wy, wz] in the base frame.
- Link i is the child of joint i and moves with it.
"""

import threading
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numba
import numpy as np

from .config import get_logger
from .pose import Pose
from .quaternion_math import (
    quat_from_axis_angle, compute_manipulability,
)

JOINT_TYPES = ("revolute", "continuous", "prismatic")


@dataclass
class Joint:
    """An actuated joint between two links. Invalid definitions raise ValueError."""

    name: str
    joint_type: str = "revolute"
    """'revolute', 'continuous' or 'prismatic'."""

    axis: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 1.0]))
    """Axis of actuation in the joint's local frame (normalized on construction)."""

    offset: Pose = field(default_factory=Pose)
    """Pose of this joint relative to the previous joint's frame."""

    position_limits: Tuple[float, float] = (-np.pi, np.pi)
    speed_limit: float = 100 * 2 * np.pi / 60
    acceleration_limit: float = 5.0
    effort_limit: float = 10.0
    damping: float = 1.0
    friction: float = 0.0

    def __post_init__(self):
        if self.joint_type not in JOINT_TYPES:
            raise ValueError(f"Joint type was '{self.joint_type}' for joint {self.name}, "
                             f"but expected one of {JOINT_TYPES}.")

        axis = np.asarray(self.axis, dtype=np.float64).reshape(-1)
        if axis.size != 3 or np.linalg.norm(axis) < 1e-9:
            raise ValueError(f"Axis for joint {self.name} must be a non-zero 3D vector.")
        self.axis = axis / np.linalg.norm(axis)

        lower, upper = (float(v) for v in self.position_limits)
        if lower >= upper:
            raise ValueError(f"Lower position limit {lower} is greater than "
                             f"upper position limit {upper} for joint {self.name}.")
        self.position_limits = (lower, upper)

        if self.speed_limit <= 0:
            raise ValueError(f"Speed limit for {self.name} joint was {self.speed_limit} but it must be positive.")
        if self.acceleration_limit <= 0:
            raise ValueError(f"Acceleration limit for {self.name} joint was {self.acceleration_limit} "
                             f"but it must be positive.")
        if self.effort_limit <= 0:
            raise ValueError(f"Force/torque limit for {self.name} joint was {self.effort_limit} "
                             f"but it must be positive.")
        if self.damping < 0:
            raise ValueError(f"Damping for {self.name} joint was {self.damping} but it cannot be negative.")
        if self.friction < 0:
            raise ValueError(f"Friction for {self.name} joint was {self.friction} but it cannot be negative.")

    @property
    def is_revolute(self) -> bool:
        return self.joint_type != "prismatic"

    def motion(self, position: float) -> Pose:
        """Transform produced by moving this joint to `position`."""
        if self.is_revolute:
            return Pose(np.zeros(3), quat_from_axis_angle(self.axis, float(position)))
        return Pose(float(position) * self.axis)


@dataclass
class Link:
    """Rigid body carried by a joint. Inertia is about the centre of mass, in the link frame."""

    mass: float = 0.0
    center_of_mass: np.ndarray = field(default_factory=lambda: np.zeros(3))
    inertia: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))

    def __post_init__(self):
        if self.mass < 0:
            raise ValueError(f"Link mass was {self.mass} but it cannot be negative.")
        com = np.asarray(self.center_of_mass, dtype=np.float64).reshape(-1)
        if com.size != 3:
            raise ValueError(f"Centre of mass must be a 3D vector, got {com.size} elements.")
        inertia = np.asarray(self.inertia, dtype=np.float64)
        if inertia.shape != (3, 3):
            raise ValueError(f"Inertia must be a 3x3 matrix, got {inertia.shape}.")
        if not np.allclose(inertia, inertia.T, atol=1e-9):
            raise ValueError("Inertia matrix must be symmetric.")
        self.center_of_mass = com
        self.inertia = inertia


@dataclass(frozen=True)
class KinematicState:
    """Read-only snapshot of the chain, taken once per control cycle."""

    joint_positions: np.ndarray
    joint_velocities: np.ndarray
    position_lower: np.ndarray
    position_upper: np.ndarray
    speed_limits: np.ndarray
    acceleration_limits: np.ndarray
    jacobian: np.ndarray
    inertia: np.ndarray
    endpoint_pose: Pose
    joint_axes: np.ndarray
    """World-frame joint axes [n x 3]."""
    joint_origins: np.ndarray
    """World-frame joint origins [n x 3]."""
    is_revolute: np.ndarray

    def __post_init__(self):
        for name in ('joint_positions', 'joint_velocities', 'position_lower', 'position_upper',
                     'speed_limits', 'acceleration_limits', 'jacobian', 'inertia',
                     'joint_axes', 'joint_origins', 'is_revolute'):
            arr = np.array(getattr(self, name), copy=True)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    @property
    def n(self) -> int:
        return int(self.joint_positions.size)


@numba.njit(fastmath=False)
def jacobian_core(axes, origins, is_revolute, point, num_columns):
    """Geometric Jacobian of `point` using the first `num_columns` joints."""
    n = axes.shape[0]
    J = np.zeros((6, n), dtype=np.float64)
    for i in range(num_columns):
        a = axes[i].copy()
        if is_revolute[i]:
            J[0:3, i] = np.cross(a, point - origins[i])
            J[3:6, i] = a
        else:
            J[0:3, i] = a
    return J


@numba.njit(fastmath=False)
def jacobian_derivative_core(J, axes, is_revolute, i):
    """
    Partial derivative of the Jacobian with respect to joint i.

    Marani, G., & Yuh, J. (2014). Introduction to autonomous manipulation.
    Springer Tracts in Advanced Robotics, vol 102.
    """
    n = J.shape[1]
    dJ = np.zeros((6, n), dtype=np.float64)
    a_i = axes[i].copy()
    for j in range(n):
        if j < i:
            # Joint i is further down the chain: only moves the end point
            if is_revolute[j]:
                dJ[0:3, j] = np.cross(axes[j].copy(), J[0:3, i].copy())
        elif is_revolute[i]:
            # Joint i rotates everything from joint j onward
            dJ[0:3, j] = np.cross(a_i, J[0:3, j].copy())
            dJ[3:6, j] = np.cross(a_i, J[3:6, j].copy())
    return dJ


def jacobian_partial_derivative(state: KinematicState, joint: int) -> np.ndarray:
    """∂J/∂q_joint for the snapshot's configuration."""
    return jacobian_derivative_core(np.array(state.jacobian),
                                    np.array(state.joint_axes),
                                    np.array(state.is_revolute),
                                    int(joint))


def manipulability(jacobian: np.ndarray) -> float:
    """Yoshikawa's measure sqrt(det(J*J^T)); zero at a singularity."""
    return float(compute_manipulability(np.array(jacobian, dtype=np.float64)))


class SerialLinkModel:
    """Kinematic chain with thread-safe state updates and per-cycle snapshots."""

    def __init__(
        self,
        joints: Sequence[Joint],
        links: Optional[Sequence[Link]] = None,
        base: Optional[Pose] = None,
        endpoint_offset: Optional[Pose] = None,
        armature: float = 0.01,
        verbose: bool = True,
        log_level: str = "INFO",
    ):
        """
        Args:
            joints: Actuated joints from base to tip
            links: One rigid body per joint (massless if omitted)
            base: Pose of the base in the world frame
            endpoint_offset: Tool frame relative to the last joint frame
            armature: Reflected rotor inertia added to the inertia diagonal;
                keeps it positive definite for massless or singular chains
            verbose: Quiet mode when False, only warnings and errors are logged
            log_level: Logging level - "DEBUG", "INFO", "WARNING", "ERROR"
        """
        if not joints:
            raise ValueError("A serial link model needs at least one joint")
        self.joints: List[Joint] = list(joints)
        self.n = len(self.joints)

        self.links: List[Link] = list(links) if links is not None else [Link() for _ in range(self.n)]
        if len(self.links) != self.n:
            raise ValueError(f"Expected {self.n} links, got {len(self.links)}")
        if armature < 0:
            raise ValueError(f"armature must be non-negative, got {armature}")

        self.base = base if base is not None else Pose()
        self.endpoint_offset = endpoint_offset if endpoint_offset is not None else Pose()
        self.armature = float(armature)

        self.logger = get_logger(f"{__name__}.SerialLinkModel", log_level, verbose)
        self._lock = threading.Lock()

        self.position_lower = np.array([j.position_limits[0] for j in self.joints])
        self.position_upper = np.array([j.position_limits[1] for j in self.joints])
        self.speed_limits = np.array([j.speed_limit for j in self.joints])
        self.acceleration_limits = np.array([j.acceleration_limit for j in self.joints])
        self.is_revolute = np.array([j.is_revolute for j in self.joints], dtype=np.bool_)

        # Start in the middle of the range, at rest
        self._compute_state(0.5 * (self.position_lower + self.position_upper), np.zeros(self.n))

    def update_state(self, joint_positions, joint_velocities) -> bool:
        """Set the joint state and recompute kinematics.

        Returns False (state unchanged) on a length mismatch or when a
        position is outside its joint limits.
        """
        q = np.asarray(joint_positions, dtype=np.float64).reshape(-1)
        qdot = np.asarray(joint_velocities, dtype=np.float64).reshape(-1)

        if q.size != self.n or qdot.size != self.n:
            self.logger.error(
                f"update_state(): This model has {self.n} joints, but the position vector had "
                f"{q.size} elements and the velocity vector had {qdot.size} elements."
            )
            return False

        for i, joint in enumerate(self.joints):
            if q[i] < self.position_lower[i] or q[i] > self.position_upper[i]:
                self.logger.error(
                    f"update_state(): Position for the {joint.name} joint is outside its limits "
                    f"({q[i]} not in [{self.position_lower[i]}, {self.position_upper[i]}])."
                )
                return False

        self._compute_state(q, qdot)
        return True

    def _compute_state(self, q: np.ndarray, qdot: np.ndarray) -> None:
        axes = np.zeros((self.n, 3))
        origins = np.zeros((self.n, 3))
        frames = []

        pose = self.base
        for i, joint in enumerate(self.joints):
            pose = pose * joint.offset  # Origin relative to previous frame
            axes[i] = pose.rotation_matrix() @ joint.axis
            origins[i] = pose.position
            pose = pose * joint.motion(q[i])
            frames.append(pose)

        endpoint = pose * self.endpoint_offset
        jacobian = jacobian_core(axes, origins, self.is_revolute, endpoint.position, self.n)
        inertia = self._joint_space_inertia(axes, origins, frames)

        with self._lock:
            self._q = q.copy()
            self._qdot = qdot.copy()
            self._axes = axes
            self._origins = origins
            self._frames = frames
            self._endpoint = endpoint
            self._jacobian = jacobian
            self._inertia = inertia

    def _joint_space_inertia(self, axes, origins, frames) -> np.ndarray:
        # M = sum_i m_i*Jv_i'*Jv_i + Jw_i'*(R_i*I_i*R_i')*Jw_i, Jacobians taken at each centre of mass
        M = self.armature * np.eye(self.n)
        for i, (link, frame) in enumerate(zip(self.links, frames)):
            if link.mass == 0.0 and not np.any(link.inertia):
                continue
            com = frame * link.center_of_mass
            J = jacobian_core(axes, origins, self.is_revolute, com, i + 1)
            Jv, Jw = J[0:3], J[3:6]
            R = frame.rotation_matrix()
            M += link.mass * (Jv.T @ Jv) + Jw.T @ (R @ link.inertia @ R.T) @ Jw
        return 0.5 * (M + M.T)

    def snapshot(self) -> KinematicState:
        """Consistent copy of the current state for one control cycle."""
        with self._lock:
            return KinematicState(
                joint_positions=self._q,
                joint_velocities=self._qdot,
                position_lower=self.position_lower,
                position_upper=self.position_upper,
                speed_limits=self.speed_limits,
                acceleration_limits=self.acceleration_limits,
                jacobian=self._jacobian,
                inertia=self._inertia,
                endpoint_pose=self._endpoint,
                joint_axes=self._axes,
                joint_origins=self._origins,
                is_revolute=self.is_revolute,
            )

    # Convenience accessors (each takes the lock separately)

    @property
    def joint_positions(self) -> np.ndarray:
        with self._lock:
            return self._q.copy()

    @property
    def joint_velocities(self) -> np.ndarray:
        with self._lock:
            return self._qdot.copy()

    def get_jacobian(self) -> np.ndarray:
        with self._lock:
            return self._jacobian.copy()

    def get_inertia(self) -> np.ndarray:
        with self._lock:
            return self._inertia.copy()

    def get_endpoint_pose(self) -> Pose:
        with self._lock:
            return self._endpoint

    def get_link_pose(self, i: int) -> Pose:
        with self._lock:
            return self._frames[i]


def create_planar_arm(link_lengths: Sequence[float], link_mass: float = 1.0,
                      speed_limit: float = 2.0, acceleration_limit: float = 5.0,
                      position_limit: float = 0.9 * np.pi) -> SerialLinkModel:
    """Planar chain of revolute z-joints with links along local x."""
    joints = []
    links = []
    previous_length = 0.0
    for i, length in enumerate(link_lengths):
        joints.append(Joint(
            name=f"joint_{i}",
            axis=np.array([0.0, 0.0, 1.0]),
            offset=Pose(np.array([previous_length, 0.0, 0.0])),
            position_limits=(-position_limit, position_limit),
            speed_limit=speed_limit,
            acceleration_limit=acceleration_limit,
        ))
        # Slender rod about its centre
        rod = link_mass * length ** 2 / 12.0
        links.append(Link(mass=link_mass,
                          center_of_mass=np.array([0.5 * length, 0.0, 0.0]),
                          inertia=np.diag([1e-4, rod, rod])))
        previous_length = float(length)
    return SerialLinkModel(joints, links, endpoint_offset=Pose(np.array([previous_length, 0.0, 0.0])))


def create_seven_dof_arm() -> SerialLinkModel:
    """Redundant 7-joint arm with KUKA iiwa-like geometry and limits."""
    deg = np.pi / 180.0
    axes = [np.array([0.0, 0.0, 1.0]), np.array([0.0, 1.0, 0.0])] * 3 + [np.array([0.0, 0.0, 1.0])]
    offsets = [0.1575, 0.2025, 0.2045, 0.2155, 0.1845, 0.2155, 0.081]
    limits = [170, 120, 170, 120, 170, 120, 175]
    speeds = [85, 85, 100, 75, 130, 135, 135]
    masses = [4.0, 4.0, 3.0, 2.7, 1.7, 1.8, 0.3]

    joints = []
    links = []
    for i in range(7):
        joints.append(Joint(
            name=f"joint_{i + 1}",
            axis=axes[i],
            offset=Pose(np.array([0.0, 0.0, offsets[i]])),
            position_limits=(-limits[i] * deg, limits[i] * deg),
            speed_limit=speeds[i] * deg,
            acceleration_limit=5.0,
            effort_limit=100.0,
        ))
        links.append(Link(mass=masses[i],
                          center_of_mass=np.array([0.0, 0.0, 0.5 * offsets[min(i + 1, 6)]]),
                          inertia=np.diag([0.02, 0.02, 0.01]) * masses[i]))
    return SerialLinkModel(joints, links, endpoint_offset=Pose(np.array([0.0, 0.0, 0.045])))
