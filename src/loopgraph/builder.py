"""
Construction-time API for graph definitions.

GraphBuilder registers nodes, edges, forks and joins and validates every
reference in ``build()``, so a definition that builds is safe to execute.
The fluent variant wires the edge to the following node in the same call:

    >>> graph = (
    ...     start_graph("fetch")
    ...     .do(fetch)
    ...     .next("summarise")
    ...     .do(summarise)
    ...     .end()
    ...     .build()
    ... )
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from loopgraph.conditions import negate
from loopgraph.engine import apply_action_result, prepare_function_params
from loopgraph.exceptions import GraphValidationError
from loopgraph.graph import (
    Edge,
    EdgeCondition,
    ForkNode,
    GraphDefinition,
    JoinNode,
    MergeFunction,
    Node,
    NodeAction,
)
from loopgraph.parallel import JoinStrategy

logger = logging.getLogger(__name__)


class GraphBuilder:
    """
    Assembles a GraphDefinition.

    Example:
        >>> builder = GraphBuilder("attempt", max_iterations=10, name="retry")
        >>> builder.node("attempt", attempt).node("done", done)
        >>> builder.edge("attempt", "attempt", condition=flag("error"))
        >>> builder.edge("attempt", "done")
        >>> definition = builder.build()
    """

    def __init__(self, entry_node: str, max_iterations: int = 100, name: str = "graph"):
        if not entry_node:
            raise GraphValidationError("An entry node name is required.")
        self.entry_node = entry_node
        self.max_iterations = max_iterations
        self.name = name
        self._nodes: Dict[str, Node] = {}
        self._edges: List[Edge] = []

    def _register(self, node: Node) -> "GraphBuilder":
        if not node.name:
            raise GraphValidationError("Node names must be non-empty.")
        if node.name in self._nodes:
            raise GraphValidationError(f"Node '{node.name}' already exists in the graph.")
        self._nodes[node.name] = node
        return self

    def node(
        self, name: str, action: Optional[NodeAction] = None, description: Optional[str] = None
    ) -> "GraphBuilder":
        """Add a node; ``action`` may be None for a pass-through node."""
        if action is not None and not callable(action):
            raise GraphValidationError(f"Action of node '{name}' is not callable.")
        return self._register(Node(name, action, description or ""))

    def edge(
        self,
        source: str,
        target: str,
        condition: Optional[EdgeCondition] = None,
        label: Optional[str] = None,
    ) -> "GraphBuilder":
        """
        Add an edge. Edges leaving the same node are tried in the order they
        were added; the first whose condition holds (or that has none) wins.
        """
        if condition is not None and not callable(condition):
            raise GraphValidationError(f"Condition of edge '{source}' -> '{target}' is not callable.")
        self._edges.append(Edge(source, target, condition, label or ""))
        return self

    def default_edge(self, source: str, target: str) -> "GraphBuilder":
        """Unconditional edge labelled ``default``; add it after the conditional ones."""
        return self.edge(source, target, None, "default")

    def fork(self, name: str, *branches: str, description: Optional[str] = None) -> "GraphBuilder":
        """
        Add a fork node that runs ``branches`` concurrently on cloned states.
        """
        if not branches:
            raise GraphValidationError(f"Fork '{name}' needs at least one branch.")
        if len(set(branches)) != len(branches):
            raise GraphValidationError(f"Fork '{name}' lists a branch more than once.")
        return self._register(
            ForkNode(
                name,
                None,
                description or f"Fork to: {', '.join(branches)}",
                branches=list(branches),
            )
        )

    def join(
        self,
        name: str,
        strategy: JoinStrategy = JoinStrategy.ALL,
        merge: Optional[MergeFunction] = None,
        fork: Optional[str] = None,
        description: Optional[str] = None,
    ) -> "GraphBuilder":
        """
        Add a join node.

        Args:
            name: Join node name; branches stop when routed here.
            strategy: JoinStrategy.ALL, JoinStrategy.ANY or JoinStrategy.count(n).
            merge: Combines branch states; defaults to merge_data_union.
            fork: Fork whose branches this join consumes (default: most recent).
        """
        if not isinstance(strategy, JoinStrategy):
            raise GraphValidationError(f"Join '{name}' needs a JoinStrategy, got {strategy!r}.")
        if merge is not None and not callable(merge):
            raise GraphValidationError(f"Merge function of join '{name}' is not callable.")
        return self._register(
            JoinNode(
                name,
                None,
                description or f"Join with {strategy} strategy",
                strategy=strategy,
                merge=merge,
                fork=fork,
            )
        )

    def set_entry_point(self, name: str) -> "GraphBuilder":
        self.entry_node = name
        return self

    def has_node(self, name: str) -> bool:
        return name in self._nodes

    def build(self) -> GraphDefinition:
        """
        Validate and return the GraphDefinition.

        Raises:
            GraphValidationError: If the entry node, an edge endpoint, a fork
                branch or a join's fork reference does not resolve.
        """
        definition = GraphDefinition(
            entry_node=self.entry_node,
            nodes=dict(self._nodes),
            edges=list(self._edges),
            max_iterations=self.max_iterations,
            name=self.name,
        )
        definition.validate()
        unreachable = definition.unreachable_nodes()
        if unreachable:
            logger.warning(f"Graph '{self.name}' has nodes unreachable from '{self.entry_node}': {unreachable}")
        return definition


def _ending(name: str, action: NodeAction) -> Callable[..., Any]:
    """Wrap ``action`` so the node always sets ``should_end``."""

    def finish(**params: Any):
        result = action(**prepare_function_params(action, params))
        state = apply_action_result(name, params["state"], result)
        state.should_end = True
        return state

    finish.__name__ = getattr(action, "__name__", "finish")
    return finish


class FluentGraphBuilder:
    """
    Chain-style construction on top of GraphBuilder.

    Attributes:
        builder (GraphBuilder): The underlying builder, for forks, joins and
            extra edges.
    """

    def __init__(self, entry_node: str, max_iterations: int = 100, name: str = "graph"):
        self.builder = GraphBuilder(entry_node, max_iterations, name)

    def step(self, name: str) -> "FluentNode":
        """Start describing node ``name``."""
        return FluentNode(self, name)

    def build(self) -> GraphDefinition:
        return self.builder.build()


class FluentNode:
    """A node under construction; registered by ``next``, ``if_`` or ``end``."""

    def __init__(self, owner: FluentGraphBuilder, name: str):
        self._owner = owner
        self.name = name
        self._action: Optional[NodeAction] = None
        self._description: Optional[str] = None

    def do(self, action: NodeAction) -> "FluentNode":
        """Set the node action."""
        self._action = action
        return self

    def describe(self, description: str) -> "FluentNode":
        self._description = description
        return self

    def _add(self, action: Optional[NodeAction] = None, method: str = "next") -> GraphBuilder:
        if self._action is None:
            raise GraphValidationError(f"Node action must be set before calling {method}()")
        return self._owner.builder.node(self.name, action or self._action, self._description)

    def next(self, name: str, condition: Optional[EdgeCondition] = None) -> "FluentNode":
        """Register this node, wire an edge to ``name`` and continue with ``name``."""
        self._add(method="next").edge(self.name, name, condition)
        return self._owner.step(name)

    def if_(
        self,
        condition: EdgeCondition,
        true_node: str,
        false_node: Optional[str] = None,
    ) -> FluentGraphBuilder:
        """
        Register this node with a conditional branch.

        The false edge, when given, uses the negated condition. Continue with
        ``.step(true_node)`` on the returned builder.
        """
        builder = self._add(method="if_")
        builder.edge(self.name, true_node, condition)
        if false_node:
            builder.edge(self.name, false_node, negate(condition))
        return self._owner

    def end(self) -> FluentGraphBuilder:
        """Register this node as terminal: it sets ``should_end`` after running."""
        if self._action is None:
            raise GraphValidationError("Node action must be set before calling end()")
        self._add(_ending(self.name, self._action), method="end")
        return self._owner


def start_graph(entry_node: str, max_iterations: int = 100, name: str = "graph") -> FluentNode:
    """Create a fluent builder and return its entry FluentNode."""
    return FluentGraphBuilder(entry_node, max_iterations, name).step(entry_node)
