import mujoco as mj
import numpy as np
import pytest

from robot_grammar import config
from robot_grammar.builder import Prop, PropShape, build_robot
from robot_grammar.optim import DefaultInputSampler, MPPIOptimizer
from robot_grammar.simulation import MujocoSimulation, SimulationDivergedError, find_ground_offset
from robot_grammar.value import NullValueEstimator


def run(sim, robot_idx, targets, steps):
    for _ in range(steps):
        sim.set_joint_target_positions(robot_idx, targets)
        sim.step()


def test_robot_is_registered(mujoco_sim, walker_robot):
    robot_idx = mujoco_sim.find_robot_index(walker_robot)
    assert robot_idx == 0
    assert mujoco_sim.get_robot_dof_count(robot_idx) == walker_robot.dof_count
    assert mujoco_sim.get_time_step() == pytest.approx(1.0 / 240)


def test_unknown_robot(mujoco_sim, walker_graph):
    with pytest.raises(ValueError):
        mujoco_sim.find_robot_index(build_robot(walker_graph))


def test_save_restore_round_trip(mujoco_sim):
    sim = mujoco_sim
    dof_count = sim.get_robot_dof_count(0)
    run(sim, 0, np.full(dof_count, 0.3), 20)

    sim.save_state()
    lower, upper = sim.get_robot_world_aabb(0)
    positions = sim.get_joint_positions(0)
    velocities = sim.get_joint_velocities(0)

    run(sim, 0, np.full(dof_count, -0.5), 50)
    assert not np.allclose(sim.get_joint_positions(0), positions)

    sim.restore_state()
    new_lower, new_upper = sim.get_robot_world_aabb(0)
    np.testing.assert_allclose(new_lower, lower)
    np.testing.assert_allclose(new_upper, upper)
    np.testing.assert_allclose(sim.get_joint_positions(0), positions)
    np.testing.assert_allclose(sim.get_joint_velocities(0), velocities)
    assert sim.get_robot_dof_count(0) == dof_count


def test_restore_is_deterministic(mujoco_sim):
    sim = mujoco_sim
    targets = np.full(sim.get_robot_dof_count(0), 0.4)
    sim.save_state()
    run(sim, 0, targets, 30)
    first = sim.get_state()
    sim.restore_state()
    run(sim, 0, targets, 30)
    np.testing.assert_array_equal(sim.get_state(), first)


def test_restore_without_save(mujoco_sim):
    with pytest.raises(RuntimeError):
        mujoco_sim.restore_state()


def test_set_state_checks_size(mujoco_sim):
    with pytest.raises(ValueError):
        mujoco_sim.set_state(np.zeros(3))


def test_target_count_is_checked(mujoco_sim):
    with pytest.raises(ValueError):
        mujoco_sim.set_joint_target_positions(0, np.zeros(mujoco_sim.get_robot_dof_count(0) + 1))


def test_fork_is_independent(mujoco_sim):
    sim = mujoco_sim
    dof_count = sim.get_robot_dof_count(0)
    fork = sim.fork()
    np.testing.assert_array_equal(fork.get_state(), sim.get_state())

    run(fork, 0, np.full(dof_count, 0.5), 20)
    assert not np.allclose(fork.get_state(), sim.get_state())
    # The fork shares the compiled model, so states are interchangeable
    sim.set_state(fork.get_state())
    np.testing.assert_array_equal(sim.get_joint_positions(0), fork.get_joint_positions(0))


def test_fork_cannot_add_bodies(mujoco_sim, walker_robot):
    with pytest.raises(RuntimeError):
        mujoco_sim.fork().add_robot(walker_robot, [0.0, 0.0, 1.0], [1.0, 0.0, 0.0, 0.0])


def test_servos_track_targets(walker_robot):
    sim = MujocoSimulation()
    sim.add_robot(walker_robot, [0.0, 0.0, 1.0], [1.0, 0.0, 0.0, 0.0])
    sim.model.opt.gravity[:] = 0.0
    dof_count = sim.get_robot_dof_count(0)
    run(sim, 0, np.full(dof_count, 0.3), 480)
    np.testing.assert_allclose(sim.get_joint_positions(0), 0.3, atol=0.05)
    assert sim.get_joint_torques(0).shape == (dof_count,)


def test_robot_falls_onto_floor(mujoco_sim):
    sim = mujoco_sim
    run(sim, 0, np.zeros(sim.get_robot_dof_count(0)), 240)
    lower, _ = sim.get_robot_world_aabb(0)
    assert lower[2] == pytest.approx(0.0, abs=0.02)
    position, quat = sim.get_robot_base_pose(0)
    assert np.linalg.norm(quat) == pytest.approx(1.0)
    assert sim.get_robot_base_velocity(0).shape == (6,)


def test_find_ground_offset(walker_robot):
    orientation = [0.0, 0.0, 0.0, 1.0]
    offset = find_ground_offset(walker_robot, orientation)
    sim = MujocoSimulation()
    sim.add_robot(walker_robot, [0.0, 0.0, offset], orientation)
    lower, _ = sim.get_robot_world_aabb(0)
    assert lower[2] == pytest.approx(0.0, abs=1e-9)


def test_dynamic_prop():
    sim = MujocoSimulation()
    sim.add_prop(Prop(PropShape.BOX, 0.0, 0.9, (1.0, 1.0, 0.5)), [0.0, 0.0, -0.5], [1.0, 0.0, 0.0, 0.0])
    sim.add_prop(Prop(PropShape.BOX, 100.0, 0.9, (0.1, 0.1, 0.1)), [0.0, 0.0, 0.5], [1.0, 0.0, 0.0, 0.0])
    for _ in range(480):
        sim.step()
    # The crate has settled on the floor
    assert sim.data.qpos[2] == pytest.approx(0.1, abs=0.01)


def test_save_restore_keeps_derived_quantities(mujoco_sim):
    sim = mujoco_sim
    run(sim, 0, np.full(sim.get_robot_dof_count(0), 0.3), 20)
    lower, upper = sim.get_robot_world_aabb(0)
    position, quat = sim.get_robot_base_pose(0)
    torques = sim.get_joint_torques(0)

    sim.save_state()
    sim.restore_state()
    new_lower, new_upper = sim.get_robot_world_aabb(0)
    np.testing.assert_array_equal(new_lower, lower)
    np.testing.assert_array_equal(new_upper, upper)
    new_position, new_quat = sim.get_robot_base_pose(0)
    np.testing.assert_array_equal(new_position, position)
    np.testing.assert_array_equal(new_quat, quat)
    np.testing.assert_array_equal(sim.get_joint_torques(0), torques)


def test_nan_velocity_raises(mujoco_sim):
    sim = mujoco_sim
    run(sim, 0, np.zeros(sim.get_robot_dof_count(0)), 20)
    sim.data.qvel[0] = np.nan
    with pytest.raises(SimulationDivergedError):
        sim.step()


def test_divergence_after_restore_raises_again(mujoco_sim):
    sim = mujoco_sim
    sim.save_state()
    for _ in range(2):
        sim.data.qvel[0] = np.nan
        with pytest.raises(SimulationDivergedError):
            sim.step()
        sim.restore_state()
    # Back on a good state, stepping works again
    sim.step()
    assert np.all(np.isfinite(sim.data.qpos))


def test_joint_damping_is_applied(mujoco_sim):
    joint = mj.mj_name2id(mujoco_sim.model, mj.mjtObj.mjOBJ_JOINT, "robot0_joint1")
    dof = mujoco_sim.model.jnt_dofadr[joint]
    assert np.ravel(mujoco_sim.model.dof_damping[dof])[0] == pytest.approx(config.JOINT_DAMPING)


def test_factory_forks_a_snapshot(mujoco_sim):
    sim = mujoco_sim
    make_sim = sim.make_factory()
    start = sim.get_state()
    run(sim, 0, np.full(sim.get_robot_dof_count(0), 0.5), 20)

    first, second = make_sim(), make_sim()
    assert first is not second
    np.testing.assert_array_equal(first.get_state(), start)
    run(first, 0, np.full(first.get_robot_dof_count(0), 0.5), 5)
    np.testing.assert_array_equal(second.get_state(), start)


def test_diverging_rollouts_cost_infinity(mujoco_sim):
    def poison(sim):
        sim.data.qvel[0] = np.nan
        return 0.0

    optimizer = MPPIOptimizer(
        kappa=1.0,
        discount_factor=0.9,
        dof_count=mujoco_sim.get_robot_dof_count(0),
        interval=2,
        horizon=2,
        sample_count=4,
        thread_count=2,
        seed=0,
        make_sim_fn=mujoco_sim.make_factory(),
        objective_fn=poison,
        value_estimator=NullValueEstimator(),
        input_sampler=DefaultInputSampler(0.1),
    )
    optimizer.update()
    assert np.all(np.isposinf(optimizer.sample_costs))
    assert optimizer.failed_samples == 4
    np.testing.assert_allclose(optimizer.sample_weights, 0.25)
