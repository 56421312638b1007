import numpy as np
import pytest
import torch

from robot_grammar.value import FCValueEstimator, NullValueEstimator

from conftest import PointMassSimulation


def test_null_estimator():
    estimator = NullValueEstimator()
    assert estimator.get_observation_size() == 0
    assert estimator.get_observation(PointMassSimulation()).shape == (0,)
    assert estimator.estimate_value(np.zeros(0)) == 0.0
    estimator.train(np.zeros((0, 5)), np.arange(5.0))


def test_fc_observation(point_mass_sim):
    estimator = FCValueEstimator(point_mass_sim, hidden_size=8)
    assert estimator.get_observation_size() == 14

    point_mass_sim.set_joint_target_positions(0, [1.0, -1.0])
    point_mass_sim.step()
    obs = estimator.get_observation(point_mass_sim)
    np.testing.assert_array_equal(obs[:4], [1.0, 0.0, 0.0, 0.0])
    np.testing.assert_array_equal(obs[10:12], point_mass_sim.get_joint_positions(0))
    np.testing.assert_array_equal(obs[12:], point_mass_sim.get_joint_velocities(0))

    out = np.zeros((14, 2))
    estimator.get_observation(point_mass_sim, out[:, 1])
    np.testing.assert_array_equal(out[:, 1], obs)


def test_fc_untrained_estimates_zero(point_mass_sim):
    estimator = FCValueEstimator(point_mass_sim)
    assert estimator.estimate_value(np.ones(14)) == 0.0


def test_fc_fits_constant_returns(point_mass_sim):
    estimator = FCValueEstimator(point_mass_sim, hidden_size=16, batch_size=32, epoch_count=300, learning_rate=1e-2)
    rng = np.random.default_rng(0)
    observations = rng.normal(size=(14, 64))
    estimator.train(observations, np.full(64, 2.0))
    assert estimator.estimate_value(observations[:, 0]) == pytest.approx(2.0, abs=0.3)


def test_fc_train_checks_sizes(point_mass_sim):
    estimator = FCValueEstimator(point_mass_sim)
    with pytest.raises(ValueError):
        estimator.train(np.zeros((14, 3)), np.zeros(4))
    estimator.train(np.zeros((14, 0)), np.zeros(0))
    assert estimator.estimate_value(np.zeros(14)) == 0.0


def test_fc_leaves_global_torch_rng_alone(point_mass_sim):
    state = torch.random.get_rng_state()
    FCValueEstimator(point_mass_sim, hidden_size=8, seed=11)
    assert torch.equal(torch.random.get_rng_state(), state)


def test_fc_initial_weights_follow_seed(point_mass_sim):
    a = FCValueEstimator(point_mass_sim, hidden_size=8, seed=5)
    b = FCValueEstimator(point_mass_sim, hidden_size=8, seed=5)
    c = FCValueEstimator(point_mass_sim, hidden_size=8, seed=6)
    for pa, pb in zip(a.network.parameters(), b.network.parameters()):
        assert torch.equal(pa, pb)
    assert not all(torch.equal(pa, pc) for pa, pc in zip(a.network.parameters(), c.network.parameters()))
