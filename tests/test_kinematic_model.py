import logging

import numpy as np
import pytest
from numpy.testing import assert_allclose

from kinematic_control import Joint, Link, Pose, SerialLinkModel, create_planar_arm, create_seven_dof_arm
from kinematic_control.kinematic_model import jacobian_partial_derivative, manipulability
from kinematic_control.quaternion_math import quat_conjugate, quat_multiply, rotation_vector_from_quat

from conftest import BENT_CONFIGURATION


def endpoint_at(model, q):
    assert model.update_state(q, np.zeros(model.n))
    return model.get_endpoint_pose()


class TestJoint:
    def test_rejects_unknown_type(self):
        with pytest.raises(ValueError):
            Joint(name="j", joint_type="fixed")

    def test_rejects_inverted_limits(self):
        with pytest.raises(ValueError):
            Joint(name="j", position_limits=(1.0, -1.0))

    @pytest.mark.parametrize("field", ["speed_limit", "acceleration_limit", "effort_limit"])
    def test_rejects_non_positive_limits(self, field):
        with pytest.raises(ValueError):
            Joint(name="j", **{field: 0.0})

    def test_rejects_zero_axis(self):
        with pytest.raises(ValueError):
            Joint(name="j", axis=np.zeros(3))

    def test_axis_is_normalized(self):
        joint = Joint(name="j", axis=np.array([0.0, 3.0, 4.0]))
        assert_allclose(joint.axis, [0.0, 0.6, 0.8])

    def test_prismatic_motion_translates(self):
        joint = Joint(name="slide", joint_type="prismatic", axis=np.array([1.0, 0.0, 0.0]),
                      position_limits=(0.0, 0.5))
        pose = joint.motion(0.2)
        assert_allclose(pose.position, [0.2, 0.0, 0.0])
        assert not joint.is_revolute


class TestLink:
    def test_rejects_negative_mass(self):
        with pytest.raises(ValueError):
            Link(mass=-1.0)

    def test_rejects_asymmetric_inertia(self):
        with pytest.raises(ValueError):
            Link(mass=1.0, inertia=np.array([[1.0, 0.1, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]))


class TestForwardKinematics:
    def test_planar_arm_straight(self):
        model = create_planar_arm([0.5, 0.4, 0.3])
        pose = endpoint_at(model, np.zeros(3))
        assert_allclose(pose.position, [1.2, 0.0, 0.0], atol=1e-12)

    def test_planar_arm_elbow(self):
        model = create_planar_arm([1.0, 1.0])
        pose = endpoint_at(model, np.array([np.pi / 2, -np.pi / 2]))
        assert_allclose(pose.position, [1.0, 1.0, 0.0], atol=1e-12)

    def test_starts_mid_range_at_rest(self):
        model = create_planar_arm([0.5, 0.5])
        assert_allclose(model.joint_positions, np.zeros(2))
        assert_allclose(model.joint_velocities, np.zeros(2))

    def test_rejects_positions_outside_limits(self, caplog):
        model = create_planar_arm([0.5, 0.5])
        with caplog.at_level(logging.ERROR):
            assert not model.update_state(np.array([4.0, 0.0]), np.zeros(2))
        assert_allclose(model.joint_positions, np.zeros(2))
        assert "outside its limits" in caplog.text

    def test_rejects_wrong_length(self):
        model = create_planar_arm([0.5, 0.5])
        assert not model.update_state(np.zeros(3), np.zeros(3))


class TestJacobian:
    def test_linear_part_matches_finite_difference(self, seven_dof_arm):
        J = seven_dof_arm.get_jacobian()
        h = 1e-6
        for i in range(7):
            dq = np.zeros(7)
            dq[i] = h
            p_plus = endpoint_at(seven_dof_arm, BENT_CONFIGURATION + dq).position
            p_minus = endpoint_at(seven_dof_arm, BENT_CONFIGURATION - dq).position
            assert_allclose(J[0:3, i], (p_plus - p_minus) / (2 * h), atol=1e-6)

    def test_angular_part_matches_finite_difference(self, seven_dof_arm):
        J = seven_dof_arm.get_jacobian()
        q_ref = seven_dof_arm.get_endpoint_pose().quaternion
        h = 1e-6
        for i in range(7):
            dq = np.zeros(7)
            dq[i] = h
            q_new = endpoint_at(seven_dof_arm, BENT_CONFIGURATION + dq).quaternion
            omega = rotation_vector_from_quat(quat_multiply(q_new, quat_conjugate(q_ref))) / h
            assert_allclose(J[3:6, i], omega, atol=1e-5)

    def test_partial_derivative_matches_finite_difference(self, seven_dof_arm):
        h = 1e-6
        for i in range(7):
            endpoint_at(seven_dof_arm, BENT_CONFIGURATION)
            dJ = jacobian_partial_derivative(seven_dof_arm.snapshot(), i)

            dq = np.zeros(7)
            dq[i] = h
            endpoint_at(seven_dof_arm, BENT_CONFIGURATION + dq)
            J_plus = seven_dof_arm.get_jacobian()
            endpoint_at(seven_dof_arm, BENT_CONFIGURATION - dq)
            J_minus = seven_dof_arm.get_jacobian()

            assert_allclose(dJ, (J_plus - J_minus) / (2 * h), atol=1e-5)

    def test_manipulability_vanishes_when_stretched_out(self):
        model = create_seven_dof_arm()
        endpoint_at(model, np.zeros(7))
        assert manipulability(model.get_jacobian()) < 1e-6

    def test_manipulability_positive_when_bent(self, seven_dof_arm):
        assert manipulability(seven_dof_arm.get_jacobian()) > 1e-4


class TestInertia:
    def test_symmetric_positive_definite(self, seven_dof_arm):
        M = seven_dof_arm.get_inertia()
        assert_allclose(M, M.T)
        assert np.all(np.linalg.eigvalsh(M) > 0.0)

    def test_massless_chain_is_armature_only(self):
        joints = [Joint(name=f"j{i}", offset=Pose(np.array([0.3, 0.0, 0.0]))) for i in range(3)]
        model = SerialLinkModel(joints, armature=0.05)
        assert_allclose(model.get_inertia(), 0.05 * np.eye(3))

    def test_point_mass_on_planar_link(self):
        model = create_planar_arm([1.0], link_mass=2.0)
        # Rod about its end: m*l^2/3, plus armature
        assert model.get_inertia()[0, 0] == pytest.approx(2.0 / 3.0 + 0.01)


class TestSnapshot:
    def test_snapshot_is_read_only_copy(self, seven_dof_arm):
        state = seven_dof_arm.snapshot()
        with pytest.raises(ValueError):
            state.jacobian[0, 0] = 1.0

        seven_dof_arm.update_state(np.zeros(7), np.zeros(7))
        assert_allclose(state.joint_positions, BENT_CONFIGURATION)
        assert state.n == 7
