import numpy as np
import pytest
from numpy.testing import assert_allclose

from kinematic_control import Pose
from kinematic_control.quaternion_math import (
    orientation_error, quat_from_axis_angle, quat_from_rotation_matrix, quat_multiply,
    quat_slerp, quat_to_rotation_matrix, rotation_vector_from_quat, quat_from_rotation_vector,
)


def random_pose(seed):
    rng = np.random.default_rng(seed)
    axis = rng.standard_normal(3)
    return Pose(rng.standard_normal(3), quat_from_axis_angle(axis, rng.uniform(-np.pi, np.pi)))


class TestPose:
    def test_defaults_to_identity(self):
        pose = Pose()
        assert_allclose(pose.as_matrix(), np.eye(4))

    def test_rejects_bad_sizes(self):
        with pytest.raises(ValueError):
            Pose(np.zeros(2))
        with pytest.raises(ValueError):
            Pose(np.zeros(3), np.zeros(3))

    def test_quaternion_is_normalized(self):
        pose = Pose(quaternion=np.array([2.0, 0.0, 0.0, 0.0]))
        assert_allclose(pose.quaternion, [1.0, 0.0, 0.0, 0.0])

    def test_inverse_composes_to_identity(self):
        pose = random_pose(0)
        identity = pose * pose.inverse()
        assert_allclose(identity.position, np.zeros(3), atol=1e-12)
        assert_allclose(np.abs(identity.quaternion[0]), 1.0, atol=1e-12)

    def test_composition_matches_matrix_product(self):
        a, b = random_pose(1), random_pose(2)
        assert_allclose((a * b).as_matrix(), a.as_matrix() @ b.as_matrix(), atol=1e-12)

    def test_transforms_points(self):
        pose = Pose(np.array([1.0, 0.0, 0.0]), quat_from_axis_angle(np.array([0.0, 0.0, 1.0]), np.pi / 2))
        assert_allclose(pose * np.array([1.0, 0.0, 0.0]), [1.0, 1.0, 0.0], atol=1e-12)

    def test_from_matrix(self):
        pose = random_pose(3)
        rebuilt = Pose.from_matrix(pose.as_matrix())
        assert_allclose(rebuilt.as_matrix(), pose.as_matrix(), atol=1e-12)

    def test_position_is_a_copy(self):
        pose = Pose(np.array([1.0, 2.0, 3.0]))
        pose.position[0] = 10.0
        assert pose.position[0] == 1.0


class TestPoseError:
    def test_zero_for_same_pose(self):
        pose = random_pose(4)
        assert_allclose(pose.error(pose), np.zeros(6), atol=1e-12)

    def test_sign_of_quaternion_does_not_matter(self):
        q = quat_from_axis_angle(np.array([1.0, 2.0, 3.0]), 0.7)
        assert_allclose(orientation_error(q, -q), np.zeros(3), atol=1e-12)

        desired = quat_from_axis_angle(np.array([0.0, 0.0, 1.0]), 0.3)
        assert_allclose(orientation_error(desired, q), orientation_error(-desired, q), atol=1e-12)

    def test_points_toward_desired_rotation(self):
        actual = Pose()
        desired = Pose(np.array([0.1, -0.2, 0.0]),
                       quat_from_axis_angle(np.array([0.0, 0.0, 1.0]), 0.2))
        error = actual.error(desired)
        assert_allclose(error[0:3], [0.1, -0.2, 0.0])
        assert error[5] == pytest.approx(np.sin(0.1))
        assert_allclose(error[3:5], np.zeros(2), atol=1e-12)


class TestQuaternionMath:
    def test_rotation_matrix_round_trip(self):
        q = quat_from_axis_angle(np.array([0.3, -1.0, 0.5]), 2.9)
        R = quat_to_rotation_matrix(q)
        assert_allclose(R @ R.T, np.eye(3), atol=1e-12)
        q_back = quat_from_rotation_matrix(R)
        assert abs(np.dot(q, q_back)) == pytest.approx(1.0)

    def test_rotation_vector_is_short_path(self):
        q = quat_from_axis_angle(np.array([0.0, 0.0, 1.0]), 1.5 * np.pi)
        phi = rotation_vector_from_quat(q)
        assert_allclose(phi, [0.0, 0.0, -0.5 * np.pi], atol=1e-12)

    def test_exp_log_consistent(self):
        phi = np.array([0.2, -0.4, 0.1])
        assert_allclose(rotation_vector_from_quat(quat_from_rotation_vector(phi)), phi, atol=1e-12)

    def test_hamilton_product(self):
        qx = quat_from_axis_angle(np.array([1.0, 0.0, 0.0]), np.pi / 2)
        qy = quat_from_axis_angle(np.array([0.0, 1.0, 0.0]), np.pi / 2)
        R = quat_to_rotation_matrix(quat_multiply(qx, qy))
        assert_allclose(R, quat_to_rotation_matrix(qx) @ quat_to_rotation_matrix(qy), atol=1e-12)

    def test_slerp_midpoint(self):
        q0 = np.array([1.0, 0.0, 0.0, 0.0])
        q1 = quat_from_axis_angle(np.array([0.0, 0.0, 1.0]), 1.0)
        mid = quat_slerp(q0, q1, 0.5)
        assert_allclose(rotation_vector_from_quat(mid), [0.0, 0.0, 0.5], atol=1e-12)
