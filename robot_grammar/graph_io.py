"""Reading rule/design graphs from JSON or Graphviz files and writing them back."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Sequence

import pydot

from robot_grammar.graph import Edge, Graph, Node, Subgraph

# Graphviz statements that set defaults rather than declare nodes, and the
# stray newline node some pydot versions emit
_DEFAULT_STATEMENTS = {"node", "edge", "graph", "\\n", ""}


class GraphFileError(ValueError):
    """The graph source is missing, malformed or holds no graphs."""


def _unquote(value: Any) -> str:
    text = str(value)
    if len(text) >= 2 and text[0] == text[-1] == '"':
        text = text[1:-1]
    return text


def _clean(attrs: dict[str, Any]) -> dict[str, str]:
    return {_unquote(k): _unquote(v) for k, v in attrs.items()}


class _DotGraphBuilder:
    def __init__(self, name: str) -> None:
        self.name = name
        self.node_names: list[str] = []
        self.node_attrs: list[dict[str, str]] = []
        self.index: dict[str, int] = {}
        self.edges: list[Edge] = []
        self.subgraphs: list[tuple[str, list[int], list[int], dict[str, str]]] = []

    def node(self, name: str, attrs: dict[str, str] | None = None) -> int:
        if name not in self.index:
            self.index[name] = len(self.node_names)
            self.node_names.append(name)
            self.node_attrs.append({})
        idx = self.index[name]
        self.node_attrs[idx].update(attrs or {})
        return idx

    def visit(self, dot_graph: Any, enclosing: list[int]) -> None:
        for dot_node in dot_graph.get_node_list():
            name = _unquote(dot_node.get_name())
            if name in _DEFAULT_STATEMENTS:
                continue
            idx = self.node(name, _clean(dot_node.get_attributes()))
            self._add_members(enclosing, nodes=[idx])

        for dot_edge in dot_graph.get_edge_list():
            source, destination = dot_edge.get_source(), dot_edge.get_destination()
            if not isinstance(source, str) or not isinstance(destination, str):
                raise GraphFileError(f"Graph '{self.name}': edges between subgraphs are not supported")
            tail = self.node(_unquote(source).split(":")[0])
            head = self.node(_unquote(destination).split(":")[0])
            self.edges.append(Edge(tail, head, _clean(dot_edge.get_attributes())))
            self._add_members(enclosing, nodes=[tail, head], edges=[len(self.edges) - 1])

        for dot_subgraph in dot_graph.get_subgraph_list():
            self.subgraphs.append((_unquote(dot_subgraph.get_name()), [], [], _clean(dot_subgraph.get_attributes())))
            self.visit(dot_subgraph, enclosing + [len(self.subgraphs) - 1])

    def _add_members(self, enclosing: list[int], nodes: Sequence[int] = (), edges: Sequence[int] = ()) -> None:
        for s in enclosing:
            _, sub_nodes, sub_edges, _ = self.subgraphs[s]
            sub_nodes.extend(n for n in nodes if n not in sub_nodes)
            sub_edges.extend(edges)

    def build(self) -> Graph:
        nodes = [Node(name, attrs) for name, attrs in zip(self.node_names, self.node_attrs)]
        subgraphs = [Subgraph(name, n, e, attrs) for name, n, e, attrs in self.subgraphs]
        return Graph(self.name, nodes, self.edges, subgraphs)


def _load_dot(path: Path) -> list[Graph]:
    dot_graphs = pydot.graph_from_dot_file(str(path))
    if dot_graphs is None:
        raise GraphFileError(f"Could not parse Graphviz file {path}")
    graphs = []
    for dot_graph in dot_graphs:
        builder = _DotGraphBuilder(_unquote(dot_graph.get_name()))
        builder.visit(dot_graph, [])
        graphs.append(builder.build())
    return graphs


def _load_json(path: Path) -> list[Graph]:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data["graphs"] if "graphs" in data else [data]
    try:
        return [Graph.from_json(obj) for obj in data]
    except (KeyError, TypeError, ValueError) as e:
        raise GraphFileError(f"Malformed graph in {path}: {e}") from e


def load_graphs(path: str | Path) -> list[Graph]:
    """
    Load every graph in ``path``.

    ``.json`` files hold a list of graphs (or ``{"graphs": [...]}``) in the
    :meth:`Graph.to_json` layout; anything else is read as Graphviz.

    Raises:
        GraphFileError: the file is unreadable, malformed or empty.
    """
    path = Path(path)
    if not path.is_file():
        raise GraphFileError(f"Graph file {path} does not exist")
    try:
        graphs = _load_json(path) if path.suffix.lower() == ".json" else _load_dot(path)
    except (OSError, json.JSONDecodeError) as e:
        raise GraphFileError(f"Could not read {path}: {e}") from e
    if not graphs:
        raise GraphFileError("Graph file does not contain any graphs")
    return graphs


def save_graph_as_json(graph: Graph, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(graph.to_json(), f, indent=2)
