"""
Graph grammar rules: construction from rule graphs, matching and application.

A rule is written as a single graph with two subgraphs, ``L`` (what to look
for) and ``R`` (what to put in its place). Nodes listed in both subgraphs are
kept when the rule fires, nodes only in ``L`` are deleted and nodes only in
``R`` are created. Attributes named ``require_<key>`` are match conditions on
the host's ``<key>`` attribute; every other attribute is written to the result.

Example (Graphviz)::

    digraph append_body {
        subgraph L { tail [require_label="tail"]; }
        subgraph R {
            tail [label="body"];
            new_tail [label="tail"];
            tail -> new_tail [type="hinge"];
        }
    }
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

from networkx.algorithms import isomorphism

from robot_grammar import config, console
from robot_grammar.graph import Edge, Graph, Node, Subgraph

REQUIRE_PREFIX = "require_"
LHS_NAME = "L"
RHS_NAME = "R"


@dataclass(frozen=True)
class GraphMapping:
    """Where each pattern node/edge landed in the host graph."""

    node_mapping: tuple[int, ...]
    edge_mapping: tuple[int, ...]


@dataclass(frozen=True)
class Rule:
    name: str
    lhs: Graph
    rhs: Graph
    # (lhs index, rhs index) pairs for nodes/edges the rule keeps
    common_nodes: tuple[tuple[int, int], ...]
    common_edges: tuple[tuple[int, int], ...]


def _requirements(attrs: Mapping[str, str]) -> dict[str, str]:
    n = len(REQUIRE_PREFIX)
    return {k[n:]: v for k, v in attrs.items() if k.startswith(REQUIRE_PREFIX)}


def _replacements(attrs: Mapping[str, str]) -> dict[str, str]:
    return {k: v for k, v in attrs.items() if not k.startswith(REQUIRE_PREFIX)}


def _satisfies(host_attrs: Mapping[str, str], pattern_attrs: Mapping[str, str]) -> bool:
    return all(host_attrs.get(k) == v for k, v in _requirements(pattern_attrs).items())


def _assign(candidates: Sequence[Sequence[int]]) -> list[int] | None:
    """Pick one distinct candidate per slot (small backtracking search)."""
    chosen: list[int] = []
    used: set[int] = set()

    def search(slot: int) -> bool:
        if slot == len(candidates):
            return True
        for c in candidates[slot]:
            if c in used:
                continue
            used.add(c)
            chosen.append(c)
            if search(slot + 1):
                return True
            used.discard(c)
            chosen.pop()
        return False

    return chosen if search(0) else None


def create_rule_from_graph(graph: Graph) -> Rule:
    lhs_sub = graph.find_subgraph(LHS_NAME)
    rhs_sub = graph.find_subgraph(RHS_NAME)
    if lhs_sub is None or rhs_sub is None:
        raise ValueError(f"Rule graph '{graph.name}' needs both an 'L' and an 'R' subgraph")
    if not lhs_sub.nodes:
        raise ValueError(f"Rule graph '{graph.name}' has an empty left-hand side")

    lhs_nodes = list(dict.fromkeys(lhs_sub.nodes))
    rhs_nodes = list(dict.fromkeys(rhs_sub.nodes))
    lhs_edges = list(dict.fromkeys(lhs_sub.edges))
    rhs_edges = list(dict.fromkeys(rhs_sub.edges))
    for side, nodes, edges in ((LHS_NAME, lhs_nodes, lhs_edges), (RHS_NAME, rhs_nodes, rhs_edges)):
        members = set(nodes)
        for i in edges:
            e = graph.edges[i]
            if e.tail not in members or e.head not in members:
                raise ValueError(
                    f"Edge {graph.nodes[e.tail].name} -> {graph.nodes[e.head].name} of rule "
                    f"'{graph.name}' leaves subgraph '{side}'"
                )

    lhs = graph.induced(lhs_nodes, lhs_edges, f"{graph.name}_lhs")
    rhs = graph.induced(rhs_nodes, rhs_edges, f"{graph.name}_rhs")

    rhs_pos = {n: i for i, n in enumerate(rhs_nodes)}
    common_nodes = tuple((i, rhs_pos[n]) for i, n in enumerate(lhs_nodes) if n in rhs_pos)

    # An L edge and an R edge are the same edge if they join the same nodes
    # and carry the same (possibly missing) id
    common_edges = []
    taken: set[int] = set()
    for i, le in enumerate(lhs_edges):
        el = graph.edges[le]
        for j, re in enumerate(rhs_edges):
            er = graph.edges[re]
            if j in taken or (er.tail, er.head) != (el.tail, el.head):
                continue
            if er.attrs.get("id") != el.attrs.get("id"):
                continue
            common_edges.append((i, j))
            taken.add(j)
            break

    return Rule(graph.name, lhs, rhs, common_nodes, tuple(common_edges))


def _edge_match(host_edges: Mapping[int, Mapping], pattern_edges: Mapping[int, Mapping]) -> bool:
    host_items = list(host_edges.items())
    candidates = [
        [k for k, h_attrs in host_items if _satisfies(h_attrs, p_attrs)]
        for p_attrs in pattern_edges.values()
    ]
    return _assign(candidates) is not None


def _map_edges(pattern: Graph, graph: Graph, node_mapping: Sequence[int]) -> list[int] | None:
    candidates = []
    for pe in pattern.edges:
        tail, head = node_mapping[pe.tail], node_mapping[pe.head]
        candidates.append([
            i for i, he in enumerate(graph.edges)
            if he.tail == tail and he.head == head and _satisfies(he.attrs, pe.attrs)
        ])
    return _assign(candidates)


def find_matches(pattern: Graph, graph: Graph) -> list[GraphMapping]:
    """
    All embeddings of ``pattern`` in ``graph``.

    Embeddings are monomorphisms: extra host edges between matched nodes are
    allowed. The order is deterministic for a given pair of graphs.
    """
    matcher = isomorphism.MultiDiGraphMatcher(
        graph.to_networkx(),
        pattern.to_networkx(),
        node_match=_satisfies,
        edge_match=_edge_match,
    )
    matches = []
    for host_to_pattern in matcher.subgraph_monomorphisms_iter():
        node_mapping = [0] * len(pattern.nodes)
        for host_idx, pattern_idx in host_to_pattern.items():
            node_mapping[pattern_idx] = host_idx
        edge_mapping = _map_edges(pattern, graph, node_mapping)
        if edge_mapping is None:
            continue
        matches.append(GraphMapping(tuple(node_mapping), tuple(edge_mapping)))
    return matches


def apply_rule(rule: Rule, graph: Graph, mapping: GraphMapping) -> Graph:
    """Return a new graph with ``rule`` applied at ``mapping``."""
    if len(mapping.node_mapping) != len(rule.lhs.nodes) or len(mapping.edge_mapping) != len(rule.lhs.edges):
        raise ValueError(f"Mapping does not fit the left-hand side of rule '{rule.name}'")

    lhs_to_rhs = dict(rule.common_nodes)
    rhs_to_lhs = {r: l for l, r in rule.common_nodes}
    matched = {host: lhs for lhs, host in enumerate(mapping.node_mapping)}
    deleted = {host for host, lhs in matched.items() if lhs not in lhs_to_rhs}

    nodes: list[Node] = []
    node_map: dict[int, int] = {}  # host index -> result index
    for i, node in enumerate(graph.nodes):
        if i in deleted:
            continue
        if i in matched:
            attrs = dict(node.attrs)
            attrs.update(_replacements(rule.rhs.nodes[lhs_to_rhs[matched[i]]].attrs))
            node = Node(node.name, attrs)
        node_map[i] = len(nodes)
        nodes.append(node)

    rhs_map: dict[int, int] = {}  # rhs index -> result index
    for r, rhs_node in enumerate(rule.rhs.nodes):
        if r in rhs_to_lhs:
            rhs_map[r] = node_map[mapping.node_mapping[rhs_to_lhs[r]]]
        else:
            rhs_map[r] = len(nodes)
            nodes.append(Node(rhs_node.name, _replacements(rhs_node.attrs)))

    lhs_edge_to_rhs = dict(rule.common_edges)
    rhs_common_edges = {r for _, r in rule.common_edges}
    matched_edges = {host: lhs for lhs, host in enumerate(mapping.edge_mapping)}

    edges: list[Edge] = []
    edge_map: dict[int, int] = {}
    for i, edge in enumerate(graph.edges):
        attrs = edge.attrs
        if i in matched_edges:
            lhs_edge = matched_edges[i]
            if lhs_edge not in lhs_edge_to_rhs:
                continue
            attrs = dict(edge.attrs)
            attrs.update(_replacements(rule.rhs.edges[lhs_edge_to_rhs[lhs_edge]].attrs))
        elif edge.tail in deleted or edge.head in deleted:
            if config.VERBOSE:
                console.log(
                    f"Rule '{rule.name}': dropping edge "
                    f"{graph.nodes[edge.tail].name} -> {graph.nodes[edge.head].name}"
                )
            continue
        edge_map[i] = len(edges)
        edges.append(Edge(node_map[edge.tail], node_map[edge.head], attrs))

    for r, rhs_edge in enumerate(rule.rhs.edges):
        if r in rhs_common_edges:
            continue
        edges.append(Edge(rhs_map[rhs_edge.tail], rhs_map[rhs_edge.head], _replacements(rhs_edge.attrs)))

    subgraphs = [
        Subgraph(
            s.name,
            [node_map[n] for n in s.nodes if n in node_map],
            [edge_map[e] for e in s.edges if e in edge_map],
            s.attrs,
        )
        for s in graph.subgraphs
    ]
    return Graph(graph.name, nodes, edges, subgraphs)


def make_seed_graph() -> Graph:
    """The single-node graph every design starts from."""
    return Graph("robot", [Node("robot", {"label": "robot"})])


def apply_rule_sequence(seed: Graph, rules: Sequence[Rule], rule_sequence: Sequence[int]) -> Graph:
    """
    Grow a design by applying rules in order, always at their first match.

    Indices that do not name a rule and rules that do not match are skipped,
    so sequences produced by a search over a larger rule set stay usable.
    """
    graph = seed
    for rule_idx in rule_sequence:
        if not 0 <= rule_idx < len(rules):
            if config.VERBOSE:
                console.log(f"Skipping rule index {rule_idx} (only {len(rules)} rules)")
            continue
        rule = rules[rule_idx]
        matches = find_matches(rule.lhs, graph)
        if not matches:
            if config.VERBOSE:
                console.log(f"Rule {rule_idx} ('{rule.name}') has no match")
            continue
        graph = apply_rule(rule, graph, matches[0])
    return graph
