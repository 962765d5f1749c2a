"""
Smooth reference trajectories for the controller's tracking modes.

CubicSpline passes through every waypoint with continuous velocity and
acceleration, starting and finishing at rest. CartesianSpline does the same
for end-effector poses.
"""

from typing import List, Sequence, Tuple

import numpy as np

from .pose import Pose
from .quaternion_math import (
    quat_multiply, quat_conjugate, quat_dot, quat_rotate_vector,
    quat_from_rotation_vector, rotation_vector_from_quat, so3_left_jacobian,
)


class CubicSpline:
    """Minimum-acceleration piecewise cubic through a sequence of waypoints."""

    def __init__(self, waypoints: Sequence, times: Sequence[float]):
        """
        Args:
            waypoints: k points of equal dimension, shape [k, d]
            times: k strictly increasing times (seconds)
        """
        points = np.asarray(waypoints, dtype=np.float64)
        if points.ndim == 1:
            points = points[:, None]  # Scalar waypoints
        t = np.asarray(times, dtype=np.float64).reshape(-1)

        if points.ndim != 2:
            raise ValueError(f"Waypoints must be a list of equal-length vectors, got shape {points.shape}")
        if points.shape[0] != t.size:
            raise ValueError(f"Inputs are not of equal length! There were {points.shape[0]} waypoints "
                             f"and {t.size} times.")
        if t.size < 2:
            raise ValueError("A spline needs at least 2 waypoints")
        bad = np.flatnonzero(np.diff(t) <= 0.0)
        if bad.size:
            i = int(bad[0])
            raise ValueError(f"Times are not in ascending order! Time {i + 1} was {t[i]} seconds "
                             f"and time {i + 2} was {t[i + 1]} seconds.")

        self.points = points
        self.times = t
        self.dim = points.shape[1]
        self.velocities = self._waypoint_velocities(points, t)

    @staticmethod
    def _waypoint_velocities(points: np.ndarray, t: np.ndarray) -> np.ndarray:
        # A*v = B*p: rest at both ends, acceleration continuous at every interior waypoint
        k = t.size
        A = np.eye(k)
        B = np.zeros((k, k))
        for i in range(1, k - 1):
            dt1 = t[i] - t[i - 1]
            dt2 = t[i + 1] - t[i]
            A[i, i - 1] = 1.0 / dt1
            A[i, i] = 2.0 / dt1 + 2.0 / dt2
            A[i, i + 1] = 1.0 / dt2
            B[i, i - 1] = -3.0 / dt1**2
            B[i, i] = 3.0 / dt1**2 - 3.0 / dt2**2
            B[i, i + 1] = 3.0 / dt2**2
        return np.linalg.solve(A, B @ points)

    @property
    def start_time(self) -> float:
        return float(self.times[0])

    @property
    def end_time(self) -> float:
        return float(self.times[-1])

    def get_state(self, time: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Position, velocity and acceleration at `time`, held at rest outside the time range."""
        if time <= self.times[0]:
            return self.points[0].copy(), np.zeros(self.dim), np.zeros(self.dim)
        if time >= self.times[-1]:
            return self.points[-1].copy(), np.zeros(self.dim), np.zeros(self.dim)

        i = int(np.searchsorted(self.times, time, side="right")) - 1
        T = self.times[i + 1] - self.times[i]
        s = time - self.times[i]

        p0, p1 = self.points[i], self.points[i + 1]
        v0, v1 = self.velocities[i], self.velocities[i + 1]

        # p(s) = a0 + a1*s + a2*s^2 + a3*s^3
        a2 = (3.0 * (p1 - p0) / T - 2.0 * v0 - v1) / T
        a3 = (2.0 * (p0 - p1) / T + v0 + v1) / T**2

        pos = p0 + v0 * s + a2 * s**2 + a3 * s**3
        vel = v0 + 2.0 * a2 * s + 3.0 * a3 * s**2
        acc = 2.0 * a2 + 6.0 * a3 * s
        return pos, vel, acc


class CartesianSpline:
    """
    End-effector pose trajectory.

    Translation is a CubicSpline. Orientation is written as
    q(t) = q_0 * exp(phi(t)) and the rotation vector phi is splined, so the
    angular velocity is continuous across waypoints.
    """

    def __init__(self, poses: Sequence[Pose], times: Sequence[float]):
        poses = list(poses)
        if not poses or not all(isinstance(p, Pose) for p in poses):
            raise ValueError("CartesianSpline needs a non-empty list of Pose objects")

        quats: List[np.ndarray] = [poses[0].quaternion]
        for p in poses[1:]:
            q = p.quaternion
            if quat_dot(quats[-1], q) < 0.0:
                q = -q  # Same rotation, keep it in the previous hemisphere
            quats.append(q)

        self.origin = quats[0]
        q0_inv = quat_conjugate(self.origin)
        rotations = [rotation_vector_from_quat(quat_multiply(q0_inv, q)) for q in quats]

        self.translation = CubicSpline([p.position for p in poses], times)
        self.rotation = CubicSpline(rotations, times)

    @property
    def start_time(self) -> float:
        return self.translation.start_time

    @property
    def end_time(self) -> float:
        return self.translation.end_time

    def get_state(self, time: float) -> Tuple[Pose, np.ndarray, np.ndarray]:
        """Desired pose, twist [v, w] and acceleration at `time`, all in the base frame."""
        pos, vel, acc = self.translation.get_state(time)
        phi, phi_dot, phi_ddot = self.rotation.get_state(time)

        quat = quat_multiply(self.origin, quat_from_rotation_vector(phi))

        # w = R0 * Jl(phi) * phi_dot; the Jl_dot * phi_dot term is dropped from the acceleration
        Jl = so3_left_jacobian(phi)
        twist = np.concatenate((vel, quat_rotate_vector(self.origin, Jl @ phi_dot)))
        accel = np.concatenate((acc, quat_rotate_vector(self.origin, Jl @ phi_ddot)))
        return Pose(pos, quat), twist, accel
