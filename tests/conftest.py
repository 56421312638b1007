"""
Pytest configuration and shared fixtures for the robot_grammar tests.
"""
import copy
from pathlib import Path

import numpy as np
import pytest

from robot_grammar.builder import Prop, PropShape, build_robot
from robot_grammar.graph import Edge, Graph, Node, Subgraph
from robot_grammar.rules import apply_rule_sequence, create_rule_from_graph, make_seed_graph
from robot_grammar.simulation import MujocoSimulation, Simulation, SimulationDivergedError

EXAMPLE_RULES = Path(__file__).parent.parent / "examples" / "rules" / "walker.dot"


def make_rule_graph(name, lhs_nodes, rhs_nodes, edges=(), lhs_edges=(), rhs_edges=()):
    """
    Rule graph from plain lists.

    ``lhs_nodes``/``rhs_nodes`` are lists of (name, attrs); a name that appears
    in both is a common node and its attributes are merged. ``edges`` are
    (tail, head, attrs, sides) tuples where ``sides`` is "L", "R" or "LR".
    """
    names = []
    attrs = {}
    for node_name, node_attrs in list(lhs_nodes) + list(rhs_nodes):
        if node_name not in attrs:
            names.append(node_name)
            attrs[node_name] = {}
        attrs[node_name].update(node_attrs)
    index = {n: i for i, n in enumerate(names)}

    graph_edges = []
    lhs_edge_ids, rhs_edge_ids = [], []
    for tail, head, edge_attrs, sides in edges:
        graph_edges.append(Edge(index[tail], index[head], edge_attrs))
        if "L" in sides:
            lhs_edge_ids.append(len(graph_edges) - 1)
        if "R" in sides:
            rhs_edge_ids.append(len(graph_edges) - 1)

    return Graph(
        name,
        [Node(n, attrs[n]) for n in names],
        graph_edges,
        [
            Subgraph("L", [index[n] for n, _ in lhs_nodes], lhs_edge_ids),
            Subgraph("R", [index[n] for n, _ in rhs_nodes], rhs_edge_ids),
        ],
    )


@pytest.fixture
def make_robot_rule_graph():
    """robot -> head, tail"""
    return make_rule_graph(
        "make_robot",
        [("robot", {"require_label": "robot"})],
        [("head", {"label": "head"}), ("tail", {"label": "tail"})],
        edges=[("head", "tail", {"type": "hinge"}, "R")],
    )


@pytest.fixture
def append_body_rule_graph():
    """tail -> body, tail"""
    return make_rule_graph(
        "append_body",
        [("tail", {"require_label": "tail"})],
        [("tail", {"label": "body"}), ("new_tail", {"label": "tail"})],
        edges=[("tail", "new_tail", {"type": "hinge"}, "R")],
    )


@pytest.fixture
def add_legs_rule_graph():
    """body -> body with two legs"""
    return make_rule_graph(
        "add_legs",
        [("body", {"require_label": "body"})],
        [("body", {"label": "body_with_legs"}), ("left", {"label": "leg"}), ("right", {"label": "leg"})],
        edges=[
            ("body", "left", {"type": "hinge", "offset": "0.5", "angle": "90"}, "R"),
            ("body", "right", {"type": "hinge", "offset": "0.5", "angle": "-90"}, "R"),
        ],
    )


@pytest.fixture
def walker_rules(make_robot_rule_graph, append_body_rule_graph, add_legs_rule_graph):
    return [
        create_rule_from_graph(g)
        for g in (make_robot_rule_graph, append_body_rule_graph, add_legs_rule_graph)
    ]


@pytest.fixture
def walker_graph(walker_rules):
    # head -> body(legs) -> tail
    return apply_rule_sequence(make_seed_graph(), walker_rules, [0, 1, 2])


@pytest.fixture
def walker_robot(walker_graph):
    return build_robot(walker_graph)


@pytest.fixture
def mujoco_sim(walker_robot):
    """Floor plus the walker resting just above it."""
    sim = MujocoSimulation()
    sim.add_prop(Prop(PropShape.BOX, 0.0, 0.9, (2.0, 2.0, 0.5)), [0.0, 0.0, -0.5], [1.0, 0.0, 0.0, 0.0])
    sim.add_robot(walker_robot, [0.0, 0.0, 0.1], [1.0, 0.0, 0.0, 0.0])
    return sim


class PointMassSimulation(Simulation):
    """
    Deterministic stand-in for a physics engine: every joint is a unit point
    mass pulled towards its target by a PD servo.

    ``fail_above`` makes :meth:`step` raise once any target exceeds it.
    """

    def __init__(self, dof_count=2, time_step=0.01, kp=20.0, kv=2.0, fail_above=None):
        self.dof_count = dof_count
        self.time_step = time_step
        self.kp = kp
        self.kv = kv
        self.fail_above = fail_above
        self.robots = []
        self.pos = np.zeros(dof_count)
        self.vel = np.zeros(dof_count)
        self.acc = np.zeros(dof_count)
        self.target = np.zeros(dof_count)
        self.time = 0.0
        self.step_count = 0
        self._saved_state = None

    def add_robot(self, robot, position, orientation):
        self.robots.append(robot)

    def add_prop(self, prop, position, orientation):
        pass

    def find_robot_index(self, robot):
        for i, r in enumerate(self.robots):
            if r is robot:
                return i
        raise ValueError("Robot is not part of this simulation")

    def get_robot_dof_count(self, robot_idx):
        return self.dof_count

    def set_joint_target_positions(self, robot_idx, targets):
        targets = np.asarray(targets, dtype=np.float64)
        if targets.shape != (self.dof_count,):
            raise ValueError(f"Expected {self.dof_count} joint targets, got shape {targets.shape}")
        self.target = targets.copy()

    def step(self):
        if self.fail_above is not None and np.any(np.abs(self.target) > self.fail_above):
            raise SimulationDivergedError(f"Target out of range at t={self.time:.4f}s")
        self.acc = self.kp * (self.target - self.pos) - self.kv * self.vel
        self.vel = self.vel + self.acc * self.time_step
        self.pos = self.pos + self.vel * self.time_step
        self.time += self.time_step
        self.step_count += 1

    def save_state(self):
        self._saved_state = self.get_state()

    def restore_state(self):
        if self._saved_state is None:
            raise RuntimeError("restore_state() called before save_state()")
        self.set_state(self._saved_state)

    def get_state(self):
        return np.concatenate([self.pos, self.vel, self.target, [self.time]])

    def set_state(self, state):
        state = np.asarray(state, dtype=np.float64)
        n = self.dof_count
        if state.shape != (3 * n + 1,):
            raise ValueError(f"Expected a state vector of size {3 * n + 1}, got shape {state.shape}")
        self.pos, self.vel, self.target = state[:n].copy(), state[n : 2 * n].copy(), state[2 * n : 3 * n].copy()
        self.time = float(state[-1])

    def fork(self):
        other = copy.copy(self)
        other.robots = list(self.robots)
        other._saved_state = None
        other.set_state(self.get_state())
        return other

    def get_time_step(self):
        return self.time_step

    def get_robot_world_aabb(self, robot_idx):
        return np.array([self.pos.min(), -0.5, 0.0]), np.array([self.pos.max() + 1.0, 0.5, 0.5])

    def get_robot_base_pose(self, robot_idx):
        return np.array([self.pos.mean(), 0.0, 0.0]), np.array([1.0, 0.0, 0.0, 0.0])

    def get_robot_base_velocity(self, robot_idx):
        return np.array([0.0, 0.0, 0.0, self.vel.mean(), 0.0, 0.0])

    def get_joint_positions(self, robot_idx):
        return self.pos.copy()

    def get_joint_velocities(self, robot_idx):
        return self.vel.copy()

    def get_joint_torques(self, robot_idx):
        return self.acc.copy()


@pytest.fixture
def point_mass_sim():
    return PointMassSimulation()


def forward_speed(sim):
    """Reward moving the point masses forward."""
    return float(sim.get_robot_base_velocity(0)[3])
