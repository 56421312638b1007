"""
Simulation port and its MuJoCo implementation.

The optimizer and the episode loop only talk to :class:`Simulation`. Bodies
have to be added before the simulation is stepped: adding one recompiles the
MuJoCo model and resets the state.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Sequence

import mujoco as mj
import numpy as np
import numpy.typing as npt

from robot_grammar import config
from robot_grammar.builder import (
    JointType,
    LinkShape,
    Prop,
    PropShape,
    Quaternion,
    Robot,
    axis_angle_quaternion,
)

# qpos, qvel, act, warmstart, ctrl, applied forces, time
_STATE_SPEC = int(mj.mjtState.mjSTATE_INTEGRATION)

_DIVERGENCE_WARNINGS = [
    int(mj.mjtWarning.mjWARN_BADQPOS),
    int(mj.mjtWarning.mjWARN_BADQVEL),
    int(mj.mjtWarning.mjWARN_BADQACC),
]

# Robot geoms touch the world and props but not each other
_ROBOT_CONTYPE, _ROBOT_CONAFFINITY = 2, 1
_PROP_CONTYPE, _PROP_CONAFFINITY = 1, 3

# Capsules in MuJoCo run along z; links run along x
_Z_TO_X = axis_angle_quaternion([0.0, 1.0, 0.0], 90.0)


class SimulationError(RuntimeError):
    """The physics engine could not continue."""


class SimulationDivergedError(SimulationError):
    pass


class Simulation(ABC):
    """Operations the optimizer and the episode loop need from a physics engine."""

    @abstractmethod
    def add_robot(self, robot: Robot, position: Sequence[float], orientation: Quaternion) -> None: ...

    @abstractmethod
    def add_prop(self, prop: Prop, position: Sequence[float], orientation: Quaternion) -> None: ...

    @abstractmethod
    def find_robot_index(self, robot: Robot) -> int: ...

    @abstractmethod
    def get_robot_dof_count(self, robot_idx: int) -> int: ...

    @abstractmethod
    def set_joint_target_positions(self, robot_idx: int, targets: npt.ArrayLike) -> None: ...

    @abstractmethod
    def step(self) -> None:
        """Advance by exactly one time step."""

    @abstractmethod
    def save_state(self) -> None: ...

    @abstractmethod
    def restore_state(self) -> None:
        """Return to the state captured by the last :meth:`save_state`."""

    @abstractmethod
    def get_state(self) -> npt.NDArray[np.float64]: ...

    @abstractmethod
    def set_state(self, state: npt.ArrayLike) -> None: ...

    @abstractmethod
    def fork(self) -> Simulation:
        """Independent instance with the same bodies and the current state."""

    def make_factory(self) -> Callable[[], Simulation]:
        """
        Zero-argument callable producing forks of this simulation as it is now.

        Later changes to this instance do not reach the forks.
        """
        return self.fork().fork

    @abstractmethod
    def get_time_step(self) -> float: ...

    @abstractmethod
    def get_robot_world_aabb(self, robot_idx: int) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]: ...

    @abstractmethod
    def get_robot_base_pose(self, robot_idx: int) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        """Base link position and (w, x, y, z) orientation."""

    @abstractmethod
    def get_robot_base_velocity(self, robot_idx: int) -> npt.NDArray[np.float64]:
        """Base link velocity in world axes, angular then linear."""

    @abstractmethod
    def get_joint_positions(self, robot_idx: int) -> npt.NDArray[np.float64]: ...

    @abstractmethod
    def get_joint_velocities(self, robot_idx: int) -> npt.NDArray[np.float64]: ...

    @abstractmethod
    def get_joint_torques(self, robot_idx: int) -> npt.NDArray[np.float64]: ...


@dataclass(frozen=True)
class _RobotIds:
    base_body: int
    geoms: npt.NDArray[np.int64]
    qpos_adr: npt.NDArray[np.int64]
    dof_adr: npt.NDArray[np.int64]
    actuators: npt.NDArray[np.int64]


def _set(element: Any, **attrs: Any) -> Any:
    for key, value in attrs.items():
        setattr(element, key, value)
    return element


def _set_leading(element: Any, name: str, value: float) -> None:
    """Set a scalar attribute that newer MuJoCo releases store as a vector."""
    current = getattr(element, name)
    if np.ndim(current) == 0:
        setattr(element, name, value)
    else:
        vector = np.zeros_like(current)
        vector[0] = value
        setattr(element, name, vector)


class MujocoSimulation(Simulation):
    def __init__(self, time_step: float = config.TIME_STEP) -> None:
        self.spec = mj.MjSpec()
        self.spec.compiler.degree = False  # joint ranges are in radians
        self.spec.option.timestep = time_step
        self.spec.option.gravity = list(config.GRAVITY)
        # A bad state has to surface in step(), not be reset behind our back
        self.spec.option.disableflags |= int(mj.mjtDisableBit.mjDSBL_AUTORESET)
        _set(self.spec.worldbody.add_light(), name="top", pos=[0.0, 0.0, 4.0])

        self.robots: list[Robot] = []
        self._robot_ids: list[_RobotIds] = []
        self._prop_count = 0
        self._saved_data: mj.MjData | None = None
        self._forked = False
        self._compile()

    def _compile(self) -> None:
        self.model = self.spec.compile()
        self.data = mj.MjData(self.model)
        mj.mj_forward(self.model, self.data)
        self._saved_data = None
        self._robot_ids = [self._lookup_ids(i, robot) for i, robot in enumerate(self.robots)]

    def _lookup_ids(self, robot_idx: int, robot: Robot) -> _RobotIds:
        prefix = f"robot{robot_idx}_"
        hinges = [i for i, link in enumerate(robot.links) if link.joint_type == JointType.HINGE]
        joints = [mj.mj_name2id(self.model, mj.mjtObj.mjOBJ_JOINT, f"{prefix}joint{i}") for i in hinges]
        return _RobotIds(
            base_body=mj.mj_name2id(self.model, mj.mjtObj.mjOBJ_BODY, f"{prefix}link0"),
            geoms=np.array(
                [mj.mj_name2id(self.model, mj.mjtObj.mjOBJ_GEOM, f"{prefix}geom{i}") for i in range(len(robot.links))],
                dtype=np.int64,
            ),
            qpos_adr=np.array(self.model.jnt_qposadr[joints], dtype=np.int64),
            dof_adr=np.array(self.model.jnt_dofadr[joints], dtype=np.int64),
            actuators=np.array(
                [mj.mj_name2id(self.model, mj.mjtObj.mjOBJ_ACTUATOR, f"{prefix}servo{i}") for i in hinges],
                dtype=np.int64,
            ),
        )

    def _check_editable(self) -> None:
        if self._forked:
            raise RuntimeError("Bodies cannot be added to a forked simulation")

    @staticmethod
    def _add_link_geom(body: Any, name: str, link: Any) -> None:
        geom = body.add_geom()
        if link.shape == LinkShape.CAPSULE:
            _set(geom, type=mj.mjtGeom.mjGEOM_CAPSULE, size=[link.radius, link.length / 2, 0.0], quat=list(_Z_TO_X))
        else:
            _set(geom, type=mj.mjtGeom.mjGEOM_BOX, size=[link.length / 2, link.radius, link.radius])
        _set(
            geom,
            name=name,
            pos=[link.length / 2, 0.0, 0.0],
            density=link.density,
            friction=[link.friction, 0.005, 0.0001],
            rgba=list(link.color),
            contype=_ROBOT_CONTYPE,
            conaffinity=_ROBOT_CONAFFINITY,
        )

    def add_robot(self, robot: Robot, position: Sequence[float], orientation: Quaternion) -> None:
        self._check_editable()
        prefix = f"robot{len(self.robots)}_"
        bodies = []
        for i, link in enumerate(robot.links):
            if link.parent < 0:
                body = _set(self.spec.worldbody.add_body(), name=f"{prefix}link{i}", pos=list(position), quat=list(orientation))
                _set(body.add_joint(), name=f"{prefix}root", type=mj.mjtJoint.mjJNT_FREE)
            else:
                parent = robot.links[link.parent]
                body = _set(
                    bodies[link.parent].add_body(),
                    name=f"{prefix}link{i}",
                    pos=[parent.length * link.joint_pos, 0.0, 0.0],
                    quat=list(link.joint_rot),
                )
                if link.joint_type == JointType.HINGE:
                    self._add_servo(body, prefix, i, link)
            self._add_link_geom(body, f"{prefix}geom{i}", link)
            bodies.append(body)

        self.robots.append(robot)
        self._compile()

    def _add_servo(self, body: Any, prefix: str, i: int, link: Any) -> None:
        joint = _set(
            body.add_joint(),
            name=f"{prefix}joint{i}",
            type=mj.mjtJoint.mjJNT_HINGE,
            axis=list(link.joint_axis),
            range=list(link.joint_limits),
            limited=mj.mjtLimited.mjLIMITED_TRUE,
            armature=config.JOINT_ARMATURE,
        )
        _set_leading(joint, "damping", config.JOINT_DAMPING)
        kp, kv = link.joint_kp, link.joint_kv
        _set(
            self.spec.add_actuator(),
            name=f"{prefix}servo{i}",
            target=f"{prefix}joint{i}",
            trntype=mj.mjtTrn.mjTRN_JOINT,
            gaintype=mj.mjtGain.mjGAIN_FIXED,
            gainprm=[kp] + [0.0] * 9,
            biastype=mj.mjtBias.mjBIAS_AFFINE,
            biasprm=[0.0, -kp, -kv] + [0.0] * 7,
            ctrlrange=list(link.joint_limits),
            ctrllimited=mj.mjtLimited.mjLIMITED_TRUE,
        )

    def add_prop(self, prop: Prop, position: Sequence[float], orientation: Quaternion) -> None:
        self._check_editable()
        if prop.shape != PropShape.BOX:
            raise ValueError(f"Unsupported prop shape {prop.shape}")
        name = f"prop{self._prop_count}"
        if prop.density == 0.0:
            parent, pos, quat = self.spec.worldbody, list(position), list(orientation)
        else:
            parent = _set(self.spec.worldbody.add_body(), name=name, pos=list(position), quat=list(orientation))
            parent.add_joint().type = mj.mjtJoint.mjJNT_FREE
            pos, quat = [0.0, 0.0, 0.0], [1.0, 0.0, 0.0, 0.0]
        _set(
            parent.add_geom(),
            name=f"{name}_geom",
            type=mj.mjtGeom.mjGEOM_BOX,
            size=list(prop.half_extents),
            pos=pos,
            quat=quat,
            density=max(prop.density, 0.0),
            friction=[prop.friction, 0.005, 0.0001],
            rgba=[0.6, 0.6, 0.6, 1.0],
            contype=_PROP_CONTYPE,
            conaffinity=_PROP_CONAFFINITY,
        )
        self._prop_count += 1
        self._compile()

    def find_robot_index(self, robot: Robot) -> int:
        for i, r in enumerate(self.robots):
            if r is robot:
                return i
        raise ValueError("Robot is not part of this simulation")

    def _ids(self, robot_idx: int) -> _RobotIds:
        if not 0 <= robot_idx < len(self._robot_ids):
            raise IndexError(f"No robot with index {robot_idx}")
        return self._robot_ids[robot_idx]

    def get_robot_dof_count(self, robot_idx: int) -> int:
        return len(self._ids(robot_idx).actuators)

    def set_joint_target_positions(self, robot_idx: int, targets: npt.ArrayLike) -> None:
        ids = self._ids(robot_idx)
        targets = np.asarray(targets, dtype=np.float64)
        if targets.shape != (len(ids.actuators),):
            raise ValueError(f"Expected {len(ids.actuators)} joint targets, got shape {targets.shape}")
        self.data.ctrl[ids.actuators] = targets

    def _divergence_counts(self) -> list[int]:
        return [self.data.warning[w].number for w in _DIVERGENCE_WARNINGS]

    def step(self) -> None:
        before = self._divergence_counts()
        mj.mj_step(self.model, self.data)
        after = self._divergence_counts()
        if any(a > b for a, b in zip(after, before)) or not (
            np.all(np.isfinite(self.data.qpos)) and np.all(np.isfinite(self.data.qvel))
        ):
            raise SimulationDivergedError(f"Simulation diverged at t={self.data.time:.4f}s")

    def save_state(self) -> None:
        # The whole MjData, so poses and forces come back along with qpos
        if self._saved_data is None:
            self._saved_data = mj.MjData(self.model)
        mj.mj_copyData(self._saved_data, self.model, self.data)

    def restore_state(self) -> None:
        if self._saved_data is None:
            raise RuntimeError("restore_state() called before save_state()")
        mj.mj_copyData(self.data, self.model, self._saved_data)

    def get_state(self) -> npt.NDArray[np.float64]:
        state = np.empty(mj.mj_stateSize(self.model, _STATE_SPEC))
        mj.mj_getState(self.model, self.data, state, _STATE_SPEC)
        return state

    def set_state(self, state: npt.ArrayLike) -> None:
        state = np.asarray(state, dtype=np.float64)
        size = mj.mj_stateSize(self.model, _STATE_SPEC)
        if state.shape != (size,):
            raise ValueError(f"Expected a state vector of size {size}, got shape {state.shape}")
        mj.mj_setState(self.model, self.data, state, _STATE_SPEC)
        mj.mj_forward(self.model, self.data)

    def fork(self) -> MujocoSimulation:
        # The compiled model is shared read-only, each fork steps its own data
        other = copy.copy(self)
        other.robots = list(self.robots)
        other.data = mj.MjData(self.model)
        mj.mj_copyData(other.data, self.model, self.data)
        other._saved_data = None
        other._forked = True
        return other

    def get_time_step(self) -> float:
        return float(self.model.opt.timestep)

    def get_robot_world_aabb(self, robot_idx: int) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        geoms = self._ids(robot_idx).geoms
        rot = self.data.geom_xmat[geoms].reshape(-1, 3, 3)
        local_center = self.model.geom_aabb[geoms, :3]
        half = self.model.geom_aabb[geoms, 3:]
        center = self.data.geom_xpos[geoms] + np.einsum("gij,gj->gi", rot, local_center)
        extent = np.einsum("gij,gj->gi", np.abs(rot), half)
        return (center - extent).min(axis=0), (center + extent).max(axis=0)

    def get_robot_base_pose(self, robot_idx: int) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        body = self._ids(robot_idx).base_body
        return self.data.xpos[body].copy(), self.data.xquat[body].copy()

    def get_robot_base_velocity(self, robot_idx: int) -> npt.NDArray[np.float64]:
        vel = np.zeros(6)
        mj.mj_objectVelocity(self.model, self.data, mj.mjtObj.mjOBJ_BODY, self._ids(robot_idx).base_body, vel, 0)
        return vel

    def get_joint_positions(self, robot_idx: int) -> npt.NDArray[np.float64]:
        return self.data.qpos[self._ids(robot_idx).qpos_adr].copy()

    def get_joint_velocities(self, robot_idx: int) -> npt.NDArray[np.float64]:
        return self.data.qvel[self._ids(robot_idx).dof_adr].copy()

    def get_joint_torques(self, robot_idx: int) -> npt.NDArray[np.float64]:
        return self.data.actuator_force[self._ids(robot_idx).actuators].copy()


def find_ground_offset(robot: Robot, orientation: Quaternion, time_step: float = config.TIME_STEP) -> float:
    """Height at which ``robot`` rests exactly on the z = 0 plane."""
    temp_sim = MujocoSimulation(time_step)
    temp_sim.add_robot(robot, [0.0, 0.0, 0.0], orientation)
    lower, _ = temp_sim.get_robot_world_aabb(temp_sim.find_robot_index(robot))
    return float(-lower[2])
