"""Value estimators used to bootstrap returns beyond the planning horizon."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod

import numpy as np
import numpy.typing as npt
import torch
import torch.nn as nn

from robot_grammar import config
from robot_grammar.simulation import Simulation


class ValueEstimator(ABC):
    @abstractmethod
    def get_observation_size(self) -> int: ...

    @abstractmethod
    def get_observation(
        self, sim: Simulation, out: npt.NDArray[np.float64] | None = None
    ) -> npt.NDArray[np.float64]:
        """Observation of ``sim``, written into ``out`` when given."""

    @abstractmethod
    def estimate_value(self, observation: npt.ArrayLike) -> float:
        """Must be safe to call from several threads at once, and before training."""

    @abstractmethod
    def train(self, observations: npt.ArrayLike, returns: npt.ArrayLike) -> None:
        """Fit to ``observations`` (obs_size x n) and ``returns`` (n)."""


class NullValueEstimator(ValueEstimator):
    """No bootstrapping: every state is worth zero."""

    def get_observation_size(self) -> int:
        return 0

    def get_observation(self, sim, out=None):
        return np.zeros(0) if out is None else out

    def estimate_value(self, observation) -> float:
        return 0.0

    def train(self, observations, returns) -> None:
        pass


class ValueNetwork(nn.Module):
    def __init__(self, input_size: int, hidden_size: int = config.VALUE_HIDDEN_SIZE) -> None:
        super().__init__()
        self.net = nn.Sequential(
            nn.Linear(input_size, hidden_size),
            nn.Tanh(),
            nn.Linear(hidden_size, hidden_size),
            nn.Tanh(),
            nn.Linear(hidden_size, 1),
        )

    def forward(self, x):
        if x.dim() == 1:
            x = x.unsqueeze(0)
        return self.net(x).squeeze(-1)


class FCValueEstimator(ValueEstimator):
    """
    Fully connected value network over the robot's proprioceptive state.

    Observation: base orientation (4), base velocity (6), joint positions and
    joint velocities. Returns 0 until the first call to :meth:`train`.
    """

    def __init__(
        self,
        sim: Simulation,
        robot_idx: int = 0,
        hidden_size: int = config.VALUE_HIDDEN_SIZE,
        batch_size: int = config.VALUE_BATCH_SIZE,
        epoch_count: int = config.VALUE_EPOCHS,
        learning_rate: float = config.VALUE_LEARNING_RATE,
        seed: int = 0,
        device: str = "cpu",
    ) -> None:
        self.robot_idx = robot_idx
        self.dof_count = sim.get_robot_dof_count(robot_idx)
        self.batch_size = batch_size
        self.epoch_count = epoch_count
        self.device = torch.device(device)

        self._generator = torch.Generator().manual_seed(seed)
        # Seeded initial weights without touching the process-wide generator
        with torch.random.fork_rng(devices=[]):
            torch.manual_seed(seed)
            self.network = ValueNetwork(self.get_observation_size(), hidden_size).to(self.device)
        self.optimizer = torch.optim.Adam(self.network.parameters(), lr=learning_rate)
        self.trained = False
        self._lock = threading.Lock()

    def get_observation_size(self) -> int:
        return 10 + 2 * self.dof_count

    def get_observation(self, sim, out=None):
        if out is None:
            out = np.empty(self.get_observation_size())
        _, quat = sim.get_robot_base_pose(self.robot_idx)
        out[:4] = quat
        out[4:10] = sim.get_robot_base_velocity(self.robot_idx)
        out[10 : 10 + self.dof_count] = sim.get_joint_positions(self.robot_idx)
        out[10 + self.dof_count :] = sim.get_joint_velocities(self.robot_idx)
        return out

    def estimate_value(self, observation) -> float:
        if not self.trained:
            return 0.0
        obs = torch.as_tensor(np.asarray(observation), dtype=torch.float32, device=self.device)
        with self._lock, torch.no_grad():
            return float(self.network(obs).item())

    def train(self, observations, returns) -> None:
        obs = torch.as_tensor(np.asarray(observations).T, dtype=torch.float32, device=self.device)
        targets = torch.as_tensor(np.asarray(returns), dtype=torch.float32, device=self.device)
        if obs.shape[0] != targets.shape[0]:
            raise ValueError(f"{obs.shape[0]} observations but {targets.shape[0]} returns")
        if obs.shape[0] == 0:
            return

        loss_fn = nn.MSELoss()
        with self._lock:
            self.network.train()
            for _ in range(self.epoch_count):
                order = torch.randperm(obs.shape[0], generator=self._generator).to(self.device)
                for start in range(0, obs.shape[0], self.batch_size):
                    batch = order[start : start + self.batch_size]
                    self.optimizer.zero_grad()
                    loss = loss_fn(self.network(obs[batch]), targets[batch])
                    loss.backward()
                    self.optimizer.step()
            self.network.eval()
            self.trained = True
