"""
Turn a finished design graph into a simulatable robot description.

Nodes become links and edges become the joints attaching a child link to
its parent. Everything is read from string attributes:

  node: ``shape`` (capsule|box), ``length``, ``radius``, ``density``,
        ``friction``, ``color`` ("r g b [a]")
  edge: ``type`` (hinge|fixed), ``offset`` (fraction of the parent's length
        where the child is attached), ``angle`` (degrees, about the parent's
        z axis), ``axis`` ("x y z"), ``limit`` (degrees), ``kp``, ``kv``

Links extend along their local +x axis from the joint.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Sequence

import numpy as np
import numpy.typing as npt

from robot_grammar import config, console
from robot_grammar.graph import Graph

Quaternion = tuple[float, float, float, float]  # w, x, y, z
Vector3 = tuple[float, float, float]


class JointType(str, Enum):
    FREE = "free"
    HINGE = "hinge"
    FIXED = "fixed"


class LinkShape(str, Enum):
    CAPSULE = "capsule"
    BOX = "box"


class PropShape(str, Enum):
    BOX = "box"


@dataclass(frozen=True)
class Link:
    parent: int  # -1 for the base link
    joint_type: JointType
    joint_pos: float
    joint_rot: Quaternion
    joint_axis: Vector3
    joint_limits: tuple[float, float]  # radians
    joint_kp: float
    joint_kv: float
    shape: LinkShape
    length: float
    radius: float
    density: float
    friction: float
    color: tuple[float, float, float, float]
    label: str = ""


@dataclass(frozen=True, eq=False)
class Robot:
    """Links in parent-before-child order. Compared by identity."""

    links: tuple[Link, ...]

    @property
    def dof_count(self) -> int:
        return sum(1 for link in self.links if link.joint_type == JointType.HINGE)


@dataclass(frozen=True, eq=False)
class Prop:
    shape: PropShape
    density: float  # 0 makes the prop static
    friction: float
    half_extents: Vector3


def axis_angle_quaternion(axis: Sequence[float], degrees: float) -> Quaternion:
    axis = np.asarray(axis, dtype=np.float64)
    norm = np.linalg.norm(axis)
    if norm == 0.0:
        raise ValueError("Rotation axis must be non-zero")
    half = np.radians(degrees) / 2
    x, y, z = axis / norm * np.sin(half)
    return (float(np.cos(half)), float(x), float(y), float(z))


def _float(attrs: Mapping[str, str], key: str, default: float) -> float:
    if key not in attrs:
        return default
    try:
        return float(attrs[key])
    except ValueError as e:
        raise ValueError(f"Attribute {key}={attrs[key]!r} is not a number") from e


def _vector(attrs: Mapping[str, str], key: str, default: Sequence[float]) -> npt.NDArray[np.float64]:
    if key not in attrs:
        return np.asarray(default, dtype=np.float64)
    try:
        return np.array([float(v) for v in attrs[key].replace(",", " ").split()])
    except ValueError as e:
        raise ValueError(f"Attribute {key}={attrs[key]!r} is not a vector") from e


def _make_link(node_attrs: Mapping[str, str], edge_attrs: Mapping[str, str] | None, parent: int) -> Link:
    if edge_attrs is None:
        joint_type = JointType.FREE
        edge_attrs = {}
    else:
        joint_type = JointType(edge_attrs.get("type", JointType.HINGE.value))
        if joint_type == JointType.FREE:
            raise ValueError("Only the base link can have a free joint")

    axis = _vector(edge_attrs, "axis", [0.0, 1.0, 0.0])
    if axis.shape != (3,) or not np.any(axis):
        raise ValueError(f"Joint axis must be a non-zero 3-vector, got {edge_attrs.get('axis')!r}")
    limit = np.radians(_float(edge_attrs, "limit", config.JOINT_LIMIT))

    color = _vector(node_attrs, "color", [0.45, 0.6, 0.85, 1.0])
    if color.shape == (3,):
        color = np.append(color, 1.0)
    if color.shape != (4,):
        raise ValueError(f"Color must have 3 or 4 components, got {node_attrs.get('color')!r}")

    return Link(
        parent=parent,
        joint_type=joint_type,
        joint_pos=_float(edge_attrs, "offset", 1.0),
        joint_rot=axis_angle_quaternion([0.0, 0.0, 1.0], _float(edge_attrs, "angle", 0.0)),
        joint_axis=tuple(float(a) for a in axis / np.linalg.norm(axis)),
        joint_limits=(-float(limit), float(limit)),
        joint_kp=_float(edge_attrs, "kp", config.JOINT_KP),
        joint_kv=_float(edge_attrs, "kv", config.JOINT_KV),
        shape=LinkShape(node_attrs.get("shape", LinkShape.CAPSULE.value)),
        length=_float(node_attrs, "length", config.LINK_LENGTH),
        radius=_float(node_attrs, "radius", config.LINK_RADIUS),
        density=_float(node_attrs, "density", config.LINK_DENSITY),
        friction=_float(node_attrs, "friction", config.LINK_FRICTION),
        color=tuple(float(c) for c in color),
        label=node_attrs.get("label", ""),
    )


def build_robot(graph: Graph) -> Robot:
    """
    Walk the design graph breadth-first from its root and emit one link per node.

    The root is the first node without incoming edges. Edges that would close
    a cycle and nodes that cannot be reached from the root are ignored.
    """
    if not graph.nodes:
        raise ValueError(f"Graph '{graph.name}' has no nodes to build a robot from")

    roots = [i for i in range(len(graph.nodes)) if not graph.in_edges(i)]
    root = roots[0] if roots else 0

    links: list[Link] = [_make_link(graph.nodes[root].attrs, None, -1)]
    visited = {root}
    queue = deque([(root, 0)])
    while queue:
        node_idx, link_idx = queue.popleft()
        for edge_idx in graph.out_edges(node_idx):
            edge = graph.edges[edge_idx]
            if edge.head in visited:
                if config.VERBOSE:
                    console.log(f"Ignoring edge {edge_idx} of '{graph.name}': it closes a cycle")
                continue
            visited.add(edge.head)
            links.append(_make_link(graph.nodes[edge.head].attrs, edge.attrs, link_idx))
            queue.append((edge.head, len(links) - 1))

    if config.VERBOSE and len(visited) < len(graph.nodes):
        console.log(f"{len(graph.nodes) - len(visited)} node(s) of '{graph.name}' are unreachable")
    return Robot(tuple(links))
