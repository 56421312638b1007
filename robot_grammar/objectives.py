from typing import Callable, Sequence

import numpy as np

from robot_grammar import config
from robot_grammar.simulation import Simulation

# Per-step reward; the optimizer minimises its negation
ObjectiveFn = Callable[[Simulation], float]


class SumOfSquaresObjective:
    """
    Rewards tracking a reference base velocity while penalising motor power.

    reward = -(v - v_ref)^T W (v - v_ref) - power_weight * sum((tau * qdot)^2)

    where v is the base velocity (angular then linear, world axes).
    """

    def __init__(
        self,
        base_vel_ref: Sequence[float] = config.BASE_VEL_REF,
        base_vel_weight: Sequence[float] = config.BASE_VEL_WEIGHT,
        power_weight: float = config.POWER_WEIGHT,
        robot_idx: int = 0,
    ) -> None:
        self.base_vel_ref = np.asarray(base_vel_ref, dtype=np.float64)
        self.base_vel_weight = np.asarray(base_vel_weight, dtype=np.float64)
        if self.base_vel_ref.shape != (6,) or self.base_vel_weight.shape != (6,):
            raise ValueError("Base velocity reference and weight must have 6 components")
        self.power_weight = power_weight
        self.robot_idx = robot_idx

    def __call__(self, sim: Simulation) -> float:
        vel_error = sim.get_robot_base_velocity(self.robot_idx) - self.base_vel_ref
        cost = float(vel_error @ (self.base_vel_weight * vel_error))
        power = sim.get_joint_torques(self.robot_idx) * sim.get_joint_velocities(self.robot_idx)
        cost += self.power_weight * float(np.sum(power**2))
        return -cost
