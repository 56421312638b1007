"""
Episode loop: optimise a trajectory in lockstep with the main simulation,
bootstrap returns, grow the replay buffer and retrain the value estimator.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import numpy.typing as npt

from robot_grammar import config, console
from robot_grammar.objectives import ObjectiveFn
from robot_grammar.optim import InputSampler, MakeSimFn, MPPIOptimizer
from robot_grammar.simulation import Simulation
from robot_grammar.value import ValueEstimator


def compute_returns(
    rewards: npt.ArrayLike, terminal_value: float, discount_factor: float
) -> npt.NDArray[np.float64]:
    """
    Discounted returns for every step, plus the bootstrapped terminal value.

    returns[T] = terminal_value, returns[t] = rewards[t] + discount_factor * returns[t + 1]
    """
    rewards = np.asarray(rewards, dtype=np.float64)
    returns = np.empty(len(rewards) + 1)
    returns[-1] = terminal_value
    for t in range(len(rewards) - 1, -1, -1):
        returns[t] = rewards[t] + discount_factor * returns[t + 1]
    return returns


class ReplayBuffer:
    """Observation/return pairs from every episode so far. Only ever grows."""

    def __init__(self, obs_size: int) -> None:
        self.observations = np.zeros((obs_size, 0))
        self.returns = np.zeros(0)

    def __len__(self) -> int:
        return len(self.returns)

    def append(self, observations: npt.ArrayLike, returns: npt.ArrayLike) -> None:
        observations = np.asarray(observations, dtype=np.float64)
        returns = np.asarray(returns, dtype=np.float64)
        if observations.shape != (self.observations.shape[0], len(returns)):
            raise ValueError(
                f"Expected observations of shape {(self.observations.shape[0], len(returns))}, "
                f"got {observations.shape}"
            )
        self.observations = np.concatenate([self.observations, observations], axis=1)
        self.returns = np.concatenate([self.returns, returns])


@dataclass
class EpisodeResult:
    input_sequence: npt.NDArray[np.float64]  # dof x episode_len
    observations: npt.NDArray[np.float64]  # obs_size x (episode_len + 1)
    rewards: npt.NDArray[np.float64]
    returns: npt.NDArray[np.float64]  # episode_len + 1, last entry bootstrapped

    @property
    def total_reward(self) -> float:
        return float(self.rewards.sum())


class EpisodeRunner:
    def __init__(
        self,
        main_sim: Simulation,
        make_sim_fn: MakeSimFn,
        objective_fn: ObjectiveFn,
        value_estimator: ValueEstimator,
        input_sampler: InputSampler,
        seed: int,
        thread_count: int,
        robot_idx: int = 0,
        episode_len: int = config.EPISODE_LEN,
        interval: int = config.INTERVAL,
        horizon: int = config.HORIZON,
        sample_count: int = config.SAMPLE_COUNT,
        kappa: float = config.KAPPA,
        discount_factor: float = config.DISCOUNT_FACTOR,
        warmup_updates: int = config.WARMUP_UPDATES,
    ) -> None:
        if episode_len < 1:
            raise ValueError(f"episode_len must be at least 1, got {episode_len}")
        self.main_sim = main_sim
        self.make_sim_fn = make_sim_fn
        self.objective_fn = objective_fn
        self.value_estimator = value_estimator
        self.input_sampler = input_sampler
        self.thread_count = thread_count
        self.robot_idx = robot_idx
        self.episode_len = episode_len
        self.interval = interval
        self.horizon = horizon
        self.sample_count = sample_count
        self.kappa = kappa
        self.discount_factor = discount_factor
        self.warmup_updates = warmup_updates

        self.dof_count = main_sim.get_robot_dof_count(robot_idx)
        self.rng = np.random.default_rng(seed)
        self.replay_buffer = ReplayBuffer(value_estimator.get_observation_size())

    def make_optimizer(self, seed: int) -> MPPIOptimizer:
        return MPPIOptimizer(
            kappa=self.kappa,
            discount_factor=self.discount_factor,
            dof_count=self.dof_count,
            interval=self.interval,
            horizon=self.horizon,
            sample_count=self.sample_count,
            thread_count=self.thread_count,
            seed=seed,
            make_sim_fn=self.make_sim_fn,
            objective_fn=self.objective_fn,
            value_estimator=self.value_estimator,
            input_sampler=self.input_sampler,
            robot_idx=self.robot_idx,
        )

    def run_episode(self) -> EpisodeResult:
        optimizer = self.make_optimizer(int(self.rng.integers(2**32)))
        for _ in range(self.warmup_updates):
            optimizer.update()

        obs_size = self.value_estimator.get_observation_size()
        input_sequence = np.zeros((self.dof_count, self.episode_len))
        obs = np.zeros((obs_size, self.episode_len + 1))
        rewards = np.zeros(self.episode_len)

        # Run the main simulation in lockstep with the optimizer's simulations
        self.main_sim.save_state()
        for j in range(self.episode_len):
            optimizer.update()
            input_sequence[:, j] = optimizer.input_sequence[:, 0]
            optimizer.advance(1)

            self.value_estimator.get_observation(self.main_sim, obs[:, j])
            for _ in range(self.interval):
                self.main_sim.set_joint_target_positions(self.robot_idx, input_sequence[:, j])
                self.main_sim.step()
                rewards[j] += self.objective_fn(self.main_sim)
        self.value_estimator.get_observation(self.main_sim, obs[:, self.episode_len])

        terminal_value = self.value_estimator.estimate_value(obs[:, self.episode_len])
        self.main_sim.restore_state()

        returns = compute_returns(rewards, terminal_value, self.discount_factor)
        self.replay_buffer.append(obs[:, : self.episode_len], returns[: self.episode_len])
        self.value_estimator.train(self.replay_buffer.observations, self.replay_buffer.returns)
        return EpisodeResult(input_sequence, obs, rewards, returns)

    def run(self, episode_count: int, csv_path: str | Path | None = None) -> list[EpisodeResult]:
        """Run ``episode_count`` episodes, optionally logging total rewards to CSV as they finish."""
        results = []
        csvfile = None
        if csv_path is not None:
            Path(csv_path).parent.mkdir(parents=True, exist_ok=True)
            csvfile = open(csv_path, "w", newline="")
            csv_writer = csv.writer(csvfile)
            csv_writer.writerow(["episode", "total_reward"])
        try:
            for episode_idx in range(episode_count):
                console.log(f"Episode {episode_idx}")
                result = self.run_episode()
                console.log(f"Total reward: {result.total_reward:.4f}")
                results.append(result)
                if csvfile is not None:
                    csv_writer.writerow([episode_idx, result.total_reward])
                    csvfile.flush()
        finally:
            if csvfile is not None:
                csvfile.close()
        return results
