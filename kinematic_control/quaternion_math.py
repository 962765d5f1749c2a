"""
Quaternion and rotation kernels compiled with numba.

All quaternions use [w, x, y, z] format, where w is the scalar part
and [x, y, z] is the vector part. Everything is float64 so that the
Jacobian and inertia products built on top of these stay well conditioned.
"""

import numpy as np
import numba


@numba.njit(fastmath=False)
def normalize_vector(x, eps=1e-12):
    """Normalize a vector to unit length (returned unchanged if ~zero)."""
    x = np.asarray(x, dtype=np.float64)
    norm = np.linalg.norm(x)
    if norm < eps:
        return x.copy()
    return x / norm


@numba.njit(fastmath=False)
def skew(v):
    """3x3 skew-symmetric matrix such that skew(a) @ b == cross(a, b)."""
    v = np.asarray(v, dtype=np.float64)
    S = np.zeros((3, 3), dtype=np.float64)
    S[0, 1] = -v[2]
    S[0, 2] = v[1]
    S[1, 0] = v[2]
    S[1, 2] = -v[0]
    S[2, 0] = -v[1]
    S[2, 1] = v[0]
    return S


@numba.njit(fastmath=False)
def quat_normalize(q, eps=1e-12):
    """
    Normalize a quaternion to unit magnitude.

    A degenerate (zero) quaternion maps to the identity rotation.
    """
    q = np.asarray(q, dtype=np.float64)
    norm = np.sqrt(q[0]*q[0] + q[1]*q[1] + q[2]*q[2] + q[3]*q[3])
    if norm < eps:
        return np.array([1.0, 0.0, 0.0, 0.0])
    return q / norm


@numba.njit(fastmath=False)
def quat_multiply(q1, q2):
    """Hamilton product q1*q2."""
    q1 = np.asarray(q1, dtype=np.float64)
    q2 = np.asarray(q2, dtype=np.float64)

    w1, x1, y1, z1 = q1[0], q1[1], q1[2], q1[3]
    w2, x2, y2, z2 = q2[0], q2[1], q2[2], q2[3]

    return np.array([
        w1*w2 - x1*x2 - y1*y2 - z1*z2,
        w1*x2 + x1*w2 + y1*z2 - z1*y2,
        w1*y2 - x1*z2 + y1*w2 + z1*x2,
        w1*z2 + x1*y2 - y1*x2 + z1*w2,
    ])


@numba.njit(fastmath=False)
def quat_conjugate(q):
    """Conjugate [w, -x, -y, -z]; the inverse for unit quaternions."""
    q = np.asarray(q, dtype=np.float64)
    return np.array([q[0], -q[1], -q[2], -q[3]])


@numba.njit(fastmath=False)
def quat_dot(q1, q2):
    """4D inner product, cos(half the angle between the rotations)."""
    q1 = np.asarray(q1, dtype=np.float64)
    q2 = np.asarray(q2, dtype=np.float64)
    return q1[0]*q2[0] + q1[1]*q2[1] + q1[2]*q2[2] + q1[3]*q2[3]


@numba.njit(fastmath=False)
def quat_unique(q):
    """Ensure quaternion has non-negative real part."""
    q = np.asarray(q, dtype=np.float64)
    if q[0] < 0.0:
        return -q
    return q.copy()


@numba.njit(fastmath=False)
def quat_rotate_vector(q, v):
    """
    Rotate a 3D vector using a quaternion.

    v' = v + 2*qw*(q_vec x v) + 2*q_vec x (q_vec x v)
    """
    q = np.asarray(q, dtype=np.float64)
    v = np.asarray(v, dtype=np.float64)
    u = q[1:4].copy()
    t = 2.0 * np.cross(u, v)
    return v + q[0] * t + np.cross(u, t)


@numba.njit(fastmath=False)
def quat_from_axis_angle(axis, angle):
    """Convert axis-angle to quaternion."""
    axis_norm = normalize_vector(axis)
    half = 0.5 * angle
    s = np.sin(half)
    return np.array([np.cos(half), axis_norm[0]*s, axis_norm[1]*s, axis_norm[2]*s])


@numba.njit(fastmath=False)
def quat_from_rotation_vector(v, eps=1e-12):
    """Exponential map: rotation vector (axis * angle) to unit quaternion."""
    v = np.asarray(v, dtype=np.float64)
    angle = np.linalg.norm(v)
    if angle < eps:
        return quat_normalize(np.array([1.0, 0.5*v[0], 0.5*v[1], 0.5*v[2]]))
    return quat_from_axis_angle(v / angle, angle)


@numba.njit(fastmath=False)
def rotation_vector_from_quat(q, eps=1e-12):
    """
    Logarithmic map: unit quaternion to rotation vector.

    Takes the short way round, so the returned angle is in [0, pi].
    """
    q = quat_unique(quat_normalize(q))
    vec = q[1:4].copy()
    mag = np.linalg.norm(vec)
    if mag < eps:
        return 2.0 * vec
    angle = 2.0 * np.arctan2(mag, q[0])
    return vec * (angle / mag)


@numba.njit(fastmath=False)
def quat_to_rotation_matrix(q):
    """Unit quaternion to 3x3 rotation matrix."""
    q = quat_normalize(q)
    w, x, y, z = q[0], q[1], q[2], q[3]
    R = np.empty((3, 3), dtype=np.float64)
    R[0, 0] = 1.0 - 2.0*(y*y + z*z)
    R[0, 1] = 2.0*(x*y - w*z)
    R[0, 2] = 2.0*(x*z + w*y)
    R[1, 0] = 2.0*(x*y + w*z)
    R[1, 1] = 1.0 - 2.0*(x*x + z*z)
    R[1, 2] = 2.0*(y*z - w*x)
    R[2, 0] = 2.0*(x*z - w*y)
    R[2, 1] = 2.0*(y*z + w*x)
    R[2, 2] = 1.0 - 2.0*(x*x + y*y)
    return R


@numba.njit(fastmath=False)
def quat_from_rotation_matrix(R):
    """3x3 rotation matrix to unit quaternion (Shepperd's method)."""
    R = np.asarray(R, dtype=np.float64)
    trace = R[0, 0] + R[1, 1] + R[2, 2]
    q = np.empty(4, dtype=np.float64)
    if trace > 0.0:
        s = 2.0 * np.sqrt(trace + 1.0)
        q[0] = 0.25 * s
        q[1] = (R[2, 1] - R[1, 2]) / s
        q[2] = (R[0, 2] - R[2, 0]) / s
        q[3] = (R[1, 0] - R[0, 1]) / s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        q[0] = (R[2, 1] - R[1, 2]) / s
        q[1] = 0.25 * s
        q[2] = (R[0, 1] + R[1, 0]) / s
        q[3] = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        q[0] = (R[0, 2] - R[2, 0]) / s
        q[1] = (R[0, 1] + R[1, 0]) / s
        q[2] = 0.25 * s
        q[3] = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        q[0] = (R[1, 0] - R[0, 1]) / s
        q[1] = (R[0, 2] + R[2, 0]) / s
        q[2] = (R[1, 2] + R[2, 1]) / s
        q[3] = 0.25 * s
    return quat_normalize(q)


@numba.njit(fastmath=False)
def quat_slerp(q1, q2, t):
    """Spherical linear interpolation along the shorter arc, t in [0, 1]."""
    q1 = quat_normalize(q1)
    q2 = quat_normalize(q2)
    d = quat_dot(q1, q2)
    if d < 0.0:
        q2 = -q2
        d = -d
    if d > 0.9995:
        # Nearly parallel, lerp is accurate and avoids dividing by sin(~0)
        return quat_normalize(q1 + t * (q2 - q1))
    theta = np.arccos(d)
    s = np.sin(theta)
    return (np.sin((1.0 - t) * theta) / s) * q1 + (np.sin(t * theta) / s) * q2


@numba.njit(fastmath=False)
def orientation_error(q_desired, q_actual):
    """
    Orientation feedback error (Yuan, 1988).

    Vector part of q_desired * q_actual^-1, negated when the two quaternions
    lie in opposite hemispheres so the correction takes the short path.
    """
    qd = quat_normalize(q_desired)
    qa = quat_normalize(q_actual)
    qe = quat_multiply(qd, quat_conjugate(qa))
    if quat_dot(qd, qa) < 0.0:
        return -qe[1:4]
    return qe[1:4].copy()


@numba.njit(fastmath=False)
def so3_left_jacobian(phi, eps=1e-9):
    """
    Left Jacobian of SO(3): maps the rate of a rotation vector to the
    spatial angular velocity of Exp(phi).
    """
    phi = np.asarray(phi, dtype=np.float64)
    angle = np.linalg.norm(phi)
    K = skew(phi)
    if angle < eps:
        return np.eye(3) + 0.5 * K
    a2 = angle * angle
    return (np.eye(3)
            + ((1.0 - np.cos(angle)) / a2) * K
            + ((angle - np.sin(angle)) / (a2 * angle)) * np.dot(K, K))


@numba.njit(fastmath=False)
def compute_manipulability(jacobian):
    """Yoshikawa manipulability sqrt(det(J*J^T))."""
    jacobian = np.asarray(jacobian, dtype=np.float64)
    jjt = np.dot(jacobian, jacobian.T)
    return np.sqrt(np.abs(np.linalg.det(jjt)))
