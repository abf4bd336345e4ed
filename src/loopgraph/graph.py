"""
Static graph model: nodes, edges and the validated GraphDefinition.

Nodes and edges refer to each other by name only, held in flat collections
owned by the definition, so cycles and self-loops are plain repeated
lookups. The networkx view (``to_networkx``) is derived on demand for
analysis and rendering.

Copyright (c) 2024 Claudionor Coelho Jr, Fabrício Ceolin
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

import networkx as nx

from loopgraph.exceptions import GraphValidationError
from loopgraph.parallel import JoinKind, JoinStrategy
from loopgraph.state import GraphState
from loopgraph.visualization import VisualizationMixin

logger = logging.getLogger(__name__)

NodeAction = Callable[..., Any]
EdgeCondition = Callable[[GraphState], bool]
MergeFunction = Callable[[List[GraphState]], GraphState]


@dataclass
class Node:
    """A named unit of work backed by a user-supplied action."""

    name: str
    action: Optional[NodeAction] = None
    description: str = ""

    def __post_init__(self):
        if not self.description:
            self.description = self.name

    @property
    def kind(self) -> str:
        return "node"


@dataclass
class ForkNode(Node):
    """Splits execution into concurrent branches starting at ``branches``."""

    branches: List[str] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return "fork"


@dataclass
class JoinNode(Node):
    """
    Waits for forked branches per ``strategy`` and merges their states.

    Attributes:
        strategy: JoinStrategy deciding how many branch results are needed.
        merge: Combines the satisfied branch states into one state.
        fork: Name of the fork this join consumes (None = most recent fork).
    """

    strategy: JoinStrategy = JoinStrategy.ALL
    merge: Optional[MergeFunction] = None
    fork: Optional[str] = None

    @property
    def kind(self) -> str:
        return "join"


@dataclass
class Edge:
    """
    A directed transition. An edge without a condition is unconditional.
    """

    source: str
    target: str
    condition: Optional[EdgeCondition] = None
    label: str = ""

    def applies(self, state: GraphState) -> bool:
        return self.condition is None or bool(self.condition(state))

    @property
    def condition_label(self) -> str:
        """Readable name of the condition for exports ('' when unconditional)."""
        if self.label:
            return self.label
        if self.condition is None:
            return ""
        label = getattr(self.condition, "label", None)
        if label:
            return str(label)
        name = getattr(self.condition, "__name__", "")
        if name and name != "<lambda>":
            return name
        return "condition"


@dataclass
class GraphDefinition(VisualizationMixin):
    """
    The static graph: a name-indexed set of nodes and an ordered list of edges.

    Invariants (checked by ``validate``):
        - ``entry_node`` is a key of ``nodes``
        - every edge endpoint, fork branch and join fork reference exists

    Attributes:
        entry_node: Node where a fresh execution starts.
        nodes: Mapping of node name to Node.
        edges: Edges in declaration order (routing takes the first match).
        max_iterations: Circuit breaker against runaway loops.
        name: Graph name recorded in checkpoints.
    """

    entry_node: str
    nodes: Dict[str, Node] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)
    max_iterations: int = 100
    name: str = "graph"

    def node(self, name: str) -> Optional[Node]:
        return self.nodes.get(name)

    def edges_from(self, name: str) -> List[Edge]:
        """Outgoing edges of ``name`` in declaration order."""
        return [edge for edge in self.edges if edge.source == name]

    def successors(self, name: str) -> List[str]:
        seen: List[str] = []
        for edge in self.edges_from(name):
            if edge.target not in seen:
                seen.append(edge.target)
        return seen

    def join_nodes(self) -> Set[str]:
        return {name for name, node in self.nodes.items() if isinstance(node, JoinNode)}

    def validate(self) -> None:
        """
        Check every reference in the definition.

        Raises:
            GraphValidationError: On the first unresolved reference.
        """
        if self.max_iterations < 1:
            raise GraphValidationError(
                f"max_iterations must be at least 1, got {self.max_iterations}"
            )
        if self.entry_node not in self.nodes:
            raise GraphValidationError(
                f"Entry node '{self.entry_node}' does not exist in the graph."
            )
        for edge in self.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in self.nodes:
                    raise GraphValidationError(
                        f"Edge '{edge.source}' -> '{edge.target}' references "
                        f"unknown node '{endpoint}'."
                    )
        for node in self.nodes.values():
            if isinstance(node, ForkNode):
                if not node.branches:
                    raise GraphValidationError(f"Fork '{node.name}' has no branches.")
                for branch in node.branches:
                    if branch not in self.nodes:
                        raise GraphValidationError(
                            f"Fork '{node.name}' references unknown branch node '{branch}'."
                        )
            elif isinstance(node, JoinNode):
                if node.strategy.kind is JoinKind.COUNT and (node.strategy.n or 0) < 1:
                    raise GraphValidationError(
                        f"Join '{node.name}' needs a positive count, got {node.strategy.n}."
                    )
                if node.fork is not None and not isinstance(self.nodes.get(node.fork), ForkNode):
                    raise GraphValidationError(
                        f"Join '{node.name}' references '{node.fork}', which is not a fork node."
                    )

    def to_networkx(self) -> nx.MultiDiGraph:
        """
        Build a networkx view of the graph.

        Node attributes: ``kind``, ``description``; fork branches appear as
        edges with ``branch=True``. Conditional edges carry ``label``.
        """
        graph = nx.MultiDiGraph(name=self.name, entry=self.entry_node)
        for name, node in self.nodes.items():
            graph.add_node(name, kind=node.kind, description=node.description)
        for index, edge in enumerate(self.edges):
            graph.add_edge(
                edge.source,
                edge.target,
                label=edge.condition_label,
                conditional=edge.condition is not None,
                order=index,
            )
        for name, node in self.nodes.items():
            if isinstance(node, ForkNode):
                for branch in node.branches:
                    graph.add_edge(name, branch, label="branch", branch=True)
        return graph

    def unreachable_nodes(self) -> List[str]:
        """Nodes no path from the entry node can reach (branches count as paths)."""
        graph = self.to_networkx()
        if self.entry_node not in graph:
            return sorted(self.nodes)
        reachable = nx.descendants(graph, self.entry_node) | {self.entry_node}
        # Branches end at joins implicitly, so a join whose fork is reachable is too.
        for name, node in self.nodes.items():
            if isinstance(node, JoinNode) and name not in reachable:
                if any(isinstance(self.nodes[r], ForkNode) for r in reachable):
                    reachable |= nx.descendants(graph, name) | {name}
        return [name for name in self.nodes if name not in reachable]

    def has_cycles(self) -> bool:
        return not nx.is_directed_acyclic_graph(nx.DiGraph(self.to_networkx()))
