"""
Rigid transform (position + unit quaternion) used by the kinematic model,
the trajectory generator and the controller's pose feedback.
"""

from typing import Optional, Union

import numpy as np

from .quaternion_math import (
    quat_normalize, quat_multiply, quat_conjugate, quat_rotate_vector,
    quat_to_rotation_matrix, quat_from_rotation_matrix, orientation_error,
)


class Pose:
    """Position [x, y, z] and orientation [w, x, y, z] of a frame."""

    __slots__ = ('_pos', '_quat')

    def __init__(self, position: Optional[np.ndarray] = None, quaternion: Optional[np.ndarray] = None):
        pos = np.zeros(3) if position is None else np.asarray(position, dtype=np.float64).reshape(-1)
        quat = np.array([1.0, 0.0, 0.0, 0.0]) if quaternion is None else np.asarray(quaternion, dtype=np.float64).reshape(-1)
        if pos.size != 3:
            raise ValueError(f"Pose position must have 3 elements, got {pos.size}")
        if quat.size != 4:
            raise ValueError(f"Pose quaternion must have 4 elements [w, x, y, z], got {quat.size}")
        self._pos = pos.copy()
        self._quat = quat_normalize(quat)  # Ensure unit norm for good measure

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> "Pose":
        """Build from a 4x4 homogeneous transform."""
        T = np.asarray(T, dtype=np.float64)
        if T.shape != (4, 4):
            raise ValueError(f"Expected a 4x4 matrix, got {T.shape}")
        return cls(T[0:3, 3], quat_from_rotation_matrix(np.ascontiguousarray(T[0:3, 0:3])))

    @property
    def position(self) -> np.ndarray:
        return self._pos.copy()

    @property
    def quaternion(self) -> np.ndarray:
        return self._quat.copy()

    def rotation_matrix(self) -> np.ndarray:
        return quat_to_rotation_matrix(self._quat)

    def as_matrix(self) -> np.ndarray:
        """Pose as a 4x4 homogeneous transformation matrix."""
        T = np.eye(4)
        T[0:3, 0:3] = quat_to_rotation_matrix(self._quat)
        T[0:3, 3] = self._pos
        return T

    def inverse(self) -> "Pose":
        """The pose that undoes this one: self * self.inverse() == identity."""
        q_inv = quat_conjugate(self._quat)
        return Pose(-quat_rotate_vector(q_inv, self._pos), q_inv)

    def __mul__(self, other: Union["Pose", np.ndarray]):
        # Pose * Pose -> composed Pose, Pose * vector -> transformed point
        if isinstance(other, Pose):
            return Pose(self._pos + quat_rotate_vector(self._quat, other._pos),
                        quat_multiply(self._quat, other._quat))
        vec = np.asarray(other, dtype=np.float64).reshape(-1)
        if vec.size != 3:
            raise ValueError(f"Can only transform 3D points, got {vec.size} elements")
        return self._pos + quat_rotate_vector(self._quat, vec)

    def error(self, desired: "Pose") -> np.ndarray:
        """
        6D feedback error [dx, dy, dz, ex, ey, ez] that takes this pose toward
        `desired`: translation difference plus the vector part of the
        quaternion error along the short rotational path.
        """
        err = np.empty(6)
        err[0:3] = desired._pos - self._pos
        err[3:6] = orientation_error(desired._quat, self._quat)
        return err

    def __repr__(self) -> str:
        p = np.array2string(self._pos, precision=4)
        q = np.array2string(self._quat, precision=4)
        return f"Pose(position={p}, quaternion={q})"
