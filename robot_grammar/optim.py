"""
Model predictive path integral (MPPI) trajectory optimization.

Every :meth:`MPPIOptimizer.update` perturbs the current plan with noise, rolls
each perturbed plan out in its own simulation instance, and replaces the plan
with the average of the perturbed plans weighted by ``exp(-cost / kappa)``.
:meth:`MPPIOptimizer.advance` then slides the planning window forward as the
first inputs of the plan are committed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import numpy as np
import numpy.typing as npt

from robot_grammar import config, console
from robot_grammar.objectives import ObjectiveFn
from robot_grammar.simulation import Simulation, SimulationError
from robot_grammar.value import ValueEstimator

MakeSimFn = Callable[[], Simulation]


class InputSampler(ABC):
    @abstractmethod
    def sample(self, rng: np.random.Generator, dof_count: int, horizon: int) -> npt.NDArray[np.float64]:
        """Additive noise for a (dof_count x horizon) input sequence."""


class DefaultInputSampler(InputSampler):
    """Independent Gaussian noise for every joint at every control step."""

    def __init__(self, noise_std: float = config.NOISE_STD) -> None:
        self.noise_std = noise_std

    def sample(self, rng, dof_count, horizon):
        return rng.normal(0.0, self.noise_std, size=(dof_count, horizon))


class ConstantInputSampler(InputSampler):
    """One Gaussian offset per joint, held over the whole horizon."""

    def __init__(self, noise_std: float = config.NOISE_STD) -> None:
        self.noise_std = noise_std

    def sample(self, rng, dof_count, horizon):
        offset = rng.normal(0.0, self.noise_std, size=(dof_count, 1))
        return np.repeat(offset, horizon, axis=1)


def importance_weights(costs: npt.ArrayLike, kappa: float) -> npt.NDArray[np.float64]:
    """
    Normalised ``exp(-cost / kappa)`` weights.

    Costs are shifted by their minimum so the best sample has weight 1 before
    normalisation. Infinite costs get weight 0; if nothing finite is left the
    weights are uniform.
    """
    costs = np.asarray(costs, dtype=np.float64)
    finite = np.isfinite(costs)
    if not finite.any():
        return np.full(len(costs), 1.0 / len(costs))
    shifted = np.where(finite, costs - costs[finite].min(), np.inf)
    weights = np.exp(-shifted / kappa)
    total = weights.sum()
    if not np.isfinite(total) or total <= 0.0:
        return np.full(len(costs), 1.0 / len(costs))
    return weights / total


class MPPIOptimizer:
    def __init__(
        self,
        kappa: float,
        discount_factor: float,
        dof_count: int,
        interval: int,
        horizon: int,
        sample_count: int,
        thread_count: int,
        seed: int,
        make_sim_fn: MakeSimFn,
        objective_fn: ObjectiveFn,
        value_estimator: ValueEstimator,
        input_sampler: InputSampler,
        robot_idx: int = 0,
    ) -> None:
        if sample_count < 1:
            raise ValueError(f"sample_count must be at least 1, got {sample_count}")
        if horizon < 1:
            raise ValueError(f"horizon must be at least 1, got {horizon}")
        if interval < 1:
            raise ValueError(f"interval must be at least 1, got {interval}")
        if thread_count < 1:
            raise ValueError(f"thread_count must be at least 1, got {thread_count}")
        if kappa <= 0.0:
            raise ValueError(f"kappa must be positive, got {kappa}")

        self.kappa = kappa
        self.discount_factor = discount_factor
        self.dof_count = dof_count
        self.interval = interval
        self.horizon = horizon
        self.sample_count = sample_count
        self.thread_count = thread_count
        self.make_sim_fn = make_sim_fn
        self.objective_fn = objective_fn
        self.value_estimator = value_estimator
        self.input_sampler = input_sampler
        self.robot_idx = robot_idx

        self.input_sequence = np.zeros((dof_count, horizon))
        self.sample_costs = np.zeros(sample_count)
        self.sample_weights = np.full(sample_count, 1.0 / sample_count)
        self.failed_samples = 0

        self._seed_sequence = np.random.SeedSequence(seed)
        # Tracks the state the next rollouts start from; committed inputs are
        # replayed on it lazily by update()
        self._anchor_sim = make_sim_fn()
        self._pending_inputs = np.zeros((dof_count, 0))

    def _catch_up(self) -> npt.NDArray[np.float64]:
        for j in range(self._pending_inputs.shape[1]):
            for _ in range(self.interval):
                self._anchor_sim.set_joint_target_positions(self.robot_idx, self._pending_inputs[:, j])
                self._anchor_sim.step()
        self._pending_inputs = np.zeros((self.dof_count, 0))
        return self._anchor_sim.get_state()

    def _rollout(
        self, seed: np.random.SeedSequence, start_state: npt.NDArray[np.float64]
    ) -> tuple[npt.NDArray[np.float64], float]:
        rng = np.random.default_rng(seed)
        inputs = self.input_sequence + self.input_sampler.sample(rng, self.dof_count, self.horizon)

        sim = self.make_sim_fn()
        sim.set_state(start_state)
        cost = 0.0
        discount = 1.0
        try:
            for j in range(self.horizon):
                for _ in range(self.interval):
                    sim.set_joint_target_positions(self.robot_idx, inputs[:, j])
                    sim.step()
                    cost -= discount * self.objective_fn(sim)
                discount *= self.discount_factor
        except SimulationError as e:
            console.log(f"Rollout failed, ignoring sample: {e}")
            return inputs, np.inf

        obs = self.value_estimator.get_observation(sim)
        cost -= discount * self.value_estimator.estimate_value(obs)
        return inputs, cost

    def update(self) -> None:
        """Run ``sample_count`` rollouts and re-plan from their weighted average."""
        start_state = self._catch_up()
        # One fixed seed per sample, so results do not depend on thread timing
        seeds = self._seed_sequence.spawn(self.sample_count)

        with ThreadPoolExecutor(max_workers=self.thread_count) as executor:
            results = list(executor.map(lambda s: self._rollout(s, start_state), seeds))

        samples = np.stack([inputs for inputs, _ in results])
        self.sample_costs = np.array([cost for _, cost in results])
        self.failed_samples = int(np.sum(~np.isfinite(self.sample_costs)))
        self.sample_weights = importance_weights(self.sample_costs, self.kappa)
        self.input_sequence = np.tensordot(self.sample_weights, samples, axes=1)

    def advance(self, step_count: int) -> None:
        """
        Commit the first ``step_count`` inputs and slide the window forward.

        Freed columns at the end of the plan repeat the plan's last column.
        Nothing is simulated here.
        """
        if step_count < 0:
            raise ValueError(f"step_count must be non-negative, got {step_count}")
        last = self.input_sequence[:, -1:]
        extended = np.concatenate([self.input_sequence, np.repeat(last, step_count, axis=1)], axis=1)
        self._pending_inputs = np.concatenate([self._pending_inputs, extended[:, :step_count]], axis=1)
        self.input_sequence = extended[:, step_count : step_count + self.horizon].copy()
