"""
Immutable property graphs used both for robot designs and for grammar rules.

A graph is an ordered list of nodes, an ordered list of directed edges that
refer to nodes by index, and an ordered list of named subgraphs (groups of
node/edge indices). All attribute values are strings, as they are in the
Graphviz files rules are usually written in.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import networkx as nx


def _freeze(attrs: Mapping[str, Any] | None) -> Mapping[str, str]:
    return MappingProxyType({str(k): str(v) for k, v in (attrs or {}).items()})


@dataclass(frozen=True)
class Node:
    name: str
    attrs: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attrs", _freeze(self.attrs))

    @property
    def label(self) -> str:
        return self.attrs.get("label", "")


@dataclass(frozen=True)
class Edge:
    """Directed edge ``tail -> head`` (parent -> child for robot designs)."""

    tail: int
    head: int
    attrs: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attrs", _freeze(self.attrs))


@dataclass(frozen=True)
class Subgraph:
    name: str
    nodes: tuple[int, ...] = ()
    edges: tuple[int, ...] = ()
    attrs: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))
        object.__setattr__(self, "attrs", _freeze(self.attrs))


@dataclass(frozen=True)
class Graph:
    name: str
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    subgraphs: tuple[Subgraph, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))
        object.__setattr__(self, "subgraphs", tuple(self.subgraphs))

        node_count = len(self.nodes)
        for edge in self.edges:
            if not (0 <= edge.tail < node_count and 0 <= edge.head < node_count):
                raise ValueError(
                    f"Edge {edge.tail}->{edge.head} of graph '{self.name}' "
                    f"references a node outside 0..{node_count - 1}"
                )
        for subgraph in self.subgraphs:
            if any(not 0 <= i < node_count for i in subgraph.nodes):
                raise ValueError(f"Subgraph '{subgraph.name}' references an unknown node")
            if any(not 0 <= i < len(self.edges) for i in subgraph.edges):
                raise ValueError(f"Subgraph '{subgraph.name}' references an unknown edge")

    # Queries
    def find_subgraph(self, name: str) -> Subgraph | None:
        for subgraph in self.subgraphs:
            if subgraph.name == name:
                return subgraph
        return None

    def out_edges(self, node_idx: int) -> list[int]:
        return [i for i, e in enumerate(self.edges) if e.tail == node_idx]

    def in_edges(self, node_idx: int) -> list[int]:
        return [i for i, e in enumerate(self.edges) if e.head == node_idx]

    def induced(self, node_indices: Iterable[int], edge_indices: Iterable[int], name: str) -> Graph:
        """
        Copy of the given nodes and edges as a standalone graph.

        Node indices are renumbered in the order given; every edge must have
        both endpoints among the selected nodes.
        """
        node_indices = list(node_indices)
        index_map = {old: new for new, old in enumerate(node_indices)}
        nodes = [self.nodes[i] for i in node_indices]
        edges = []
        for i in edge_indices:
            e = self.edges[i]
            edges.append(Edge(index_map[e.tail], index_map[e.head], e.attrs))
        return Graph(name, nodes, edges)

    # Conversions
    def to_networkx(self) -> nx.MultiDiGraph:
        """Node ids are node indices, edge keys are edge indices."""
        g = nx.MultiDiGraph(name=self.name)
        for i, node in enumerate(self.nodes):
            g.add_node(i, **node.attrs)
        for i, edge in enumerate(self.edges):
            g.add_edge(edge.tail, edge.head, key=i, **edge.attrs)
        return g

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "nodes": [{"name": n.name, "attrs": dict(n.attrs)} for n in self.nodes],
            "edges": [{"tail": e.tail, "head": e.head, "attrs": dict(e.attrs)} for e in self.edges],
            "subgraphs": [
                {
                    "name": s.name,
                    "nodes": list(s.nodes),
                    "edges": list(s.edges),
                    "attrs": dict(s.attrs),
                }
                for s in self.subgraphs
            ],
        }

    @staticmethod
    def from_json(obj: Mapping[str, Any]) -> Graph:
        """
        Inverse of :meth:`to_json`. Edge endpoints and subgraph members may be
        given either as node indices or as node names.
        """
        nodes = [Node(n["name"], n.get("attrs", {})) for n in obj.get("nodes", [])]
        by_name = {}
        for i, node in enumerate(nodes):
            by_name.setdefault(node.name, i)

        def resolve(ref: Any) -> int:
            if isinstance(ref, int):
                return ref
            if ref not in by_name:
                raise ValueError(f"Unknown node '{ref}' in graph '{obj.get('name', '')}'")
            return by_name[ref]

        edges = [
            Edge(resolve(e["tail"]), resolve(e["head"]), e.get("attrs", {}))
            for e in obj.get("edges", [])
        ]
        subgraphs = [
            Subgraph(
                s["name"],
                [resolve(ref) for ref in s.get("nodes", [])],
                s.get("edges", []),
                s.get("attrs", {}),
            )
            for s in obj.get("subgraphs", [])
        ]
        return Graph(obj.get("name", ""), nodes, edges, subgraphs)

    def signature(self) -> str:
        """sha256 of the canonical JSON form; equal graphs give equal signatures."""
        payload = json.dumps(self.to_json(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
