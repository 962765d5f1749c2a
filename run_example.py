#!/usr/bin/env python3
"""
Simulated 7-DOF arm tracking a Cartesian spline.

The arm starts in a bent configuration, the trajectory sweeps the end-effector
through a few waypoints around its start pose and returns. Each control cycle
the controller's joint velocities are integrated into the model at the
control rate.

Prints position and orientation tracking error as it goes, followed by
cycle timing statistics.
"""

import argparse
import logging

import numpy as np

from kinematic_control import (
    CartesianSpline, Pose, QPSolver, SerialKinematicControl,
    build_configs, create_seven_dof_arm, load_control_config, warmup_numba_functions,
)
from kinematic_control.quaternion_math import quat_from_axis_angle, quat_multiply

START_CONFIGURATION = np.array([0.1, 0.6, -0.2, -1.2, 0.3, 0.8, 0.0])


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Track a Cartesian spline with a simulated 7-DOF arm"
    )
    parser.add_argument("--config", type=str, default="configuration_files/control_config.yaml",
                        help="Control configuration YAML file")
    parser.add_argument("--duration", "-t", type=float, default=6.0,
                        help="Trajectory duration in seconds")
    parser.add_argument("--radius", "-r", type=float, default=0.08,
                        help="Size of the waypoint offsets in meters")
    parser.add_argument("--twist-deg", type=float, default=20.0,
                        help="Rotation about the tool z-axis at the middle waypoint (degrees)")
    parser.add_argument("--print-every", type=int, default=50,
                        help="Print every N control cycles")
    parser.add_argument("--log-level", type=str, default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args()


def build_trajectory(start: Pose, radius: float, twist_deg: float, duration: float) -> CartesianSpline:
    p0 = start.position
    q0 = start.quaternion
    turn = quat_multiply(q0, quat_from_axis_angle(np.array([0.0, 0.0, 1.0]), np.deg2rad(twist_deg)))

    poses = [
        start,
        Pose(p0 + np.array([radius, 0.0, 0.0]), q0),
        Pose(p0 + np.array([radius, radius, -0.5 * radius]), turn),
        Pose(p0 + np.array([0.0, radius, 0.0]), q0),
        start,
    ]
    times = np.linspace(0.0, duration, len(poses))
    return CartesianSpline(poses, times)


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level))

    solver_cfg, controller_cfg = build_configs(load_control_config(args.config))

    print("Compiling numba kernels...")
    warmup_numba_functions()

    model = create_seven_dof_arm()
    model.update_state(START_CONFIGURATION, np.zeros(model.n))

    solver = QPSolver(solver_cfg, log_level=args.log_level)
    controller = SerialKinematicControl(model, controller_cfg, solver, log_level=args.log_level)
    controller.timer.set_enabled(True)

    trajectory = build_trajectory(model.get_endpoint_pose(), args.radius, args.twist_deg, args.duration)
    dt = controller_cfg.dt
    steps = int(np.ceil(args.duration / dt)) + 1

    print(f"\nTracking for {args.duration:.1f} s at {controller_cfg.control_frequency:.0f} Hz "
          f"({steps} cycles)\n")

    max_pos_err = 0.0
    max_rot_err = 0.0
    q = model.joint_positions
    for k in range(steps):
        t = k * dt
        pose, twist, accel = trajectory.get_state(t)
        qdot = controller.track_cartesian_trajectory(pose, twist, accel)

        # Integrate, staying inside the joint limits
        q = np.clip(q + dt * qdot, model.position_lower, model.position_upper)
        model.update_state(q, qdot)

        error = controller.get_pose_error(pose, model.get_endpoint_pose())
        pos_err_mm = float(np.linalg.norm(error[0:3])) * 1000.0
        rot_err_deg = float(np.rad2deg(2.0 * np.arcsin(min(1.0, np.linalg.norm(error[3:6])))))
        max_pos_err = max(max_pos_err, pos_err_mm)
        max_rot_err = max(max_rot_err, rot_err_deg)

        if k % args.print_every == 0:
            print(f"t={t:5.2f}s | pos err {pos_err_mm:6.2f} mm | rot err {rot_err_deg:5.2f} deg | "
                  f"|qdot| {np.linalg.norm(qdot):5.3f} rad/s")

    print(f"\nMax position error: {max_pos_err:.2f} mm")
    print(f"Max orientation error: {max_rot_err:.2f} deg")

    stats = controller.cycle_stats()
    if stats:
        print(f"Cycle time: avg {stats['compute_avg_ms']:.3f} ms, max {stats['compute_max_ms']:.3f} ms, "
              f"{stats['overrun_count']} overruns of the {stats['period_ms']:.1f} ms period")


if __name__ == "__main__":
    main()
