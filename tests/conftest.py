import numpy as np
import pytest

from kinematic_control import KinematicState, Pose, create_seven_dof_arm

BENT_CONFIGURATION = np.array([0.1, 0.6, -0.2, -1.2, 0.3, 0.8, 0.0])


class StubModel:
    """Serves a fixed, hand-built state to the controller."""

    def __init__(self, state: KinematicState):
        self.state = state

    def snapshot(self) -> KinematicState:
        return self.state


def build_state(jacobian, q=None, qdot=None, lower=-np.pi, upper=np.pi,
                speed=10.0, acceleration=100.0, inertia=None, pose=None) -> KinematicState:
    J = np.asarray(jacobian, dtype=np.float64)
    n = J.shape[1]
    return KinematicState(
        joint_positions=np.zeros(n) if q is None else np.asarray(q, dtype=np.float64),
        joint_velocities=np.zeros(n) if qdot is None else np.asarray(qdot, dtype=np.float64),
        position_lower=np.full(n, lower, dtype=np.float64),
        position_upper=np.full(n, upper, dtype=np.float64),
        speed_limits=np.full(n, speed, dtype=np.float64),
        acceleration_limits=np.full(n, acceleration, dtype=np.float64),
        jacobian=J,
        inertia=np.eye(n) if inertia is None else inertia,
        endpoint_pose=Pose() if pose is None else pose,
        joint_axes=np.tile([0.0, 0.0, 1.0], (n, 1)),
        joint_origins=np.zeros((n, 3)),
        is_revolute=np.ones(n, dtype=np.bool_),
    )


@pytest.fixture
def make_state():
    return build_state


@pytest.fixture
def stub_model():
    return StubModel


@pytest.fixture
def seven_dof_arm():
    model = create_seven_dof_arm()
    assert model.update_state(BENT_CONFIGURATION, np.zeros(7))
    return model
