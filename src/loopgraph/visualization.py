"""
Visualization mixin for GraphDefinition.

Exports the graph structure as plain text, Graphviz DOT or Mermaid, and
renders images through pygraphviz when it is installed (``viz`` extra).

Fork branches are drawn dashed, conditional edges carry their condition
label and the entry node is marked.

Example:
    >>> definition = builder.build()
    >>> print(definition.to_mermaid())
    >>> definition.save_graph_image("retry.png")
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional

import networkx as nx
from networkx.drawing.nx_agraph import to_agraph

if TYPE_CHECKING:
    from loopgraph.graph import Edge, Node


def _escape_node_id(name: str) -> str:
    """Escape characters that break Mermaid node ids."""
    escaped = name
    for char in " -.()[]{}<>|:;,&#\"'":
        escaped = escaped.replace(char, "_")
    return escaped


def _escape_label(text: str) -> str:
    return text.replace('"', "'").replace("|", "/")


def _dot_quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


class VisualizationMixin:
    """
    Mixin providing export functionality for GraphDefinition.

    Expects ``entry_node``, ``nodes``, ``edges`` and ``name`` on the class.
    """

    entry_node: str
    nodes: Dict[str, "Node"]
    edges: List["Edge"]
    name: str

    def _branch_edges(self) -> List[tuple]:
        return [
            (name, branch)
            for name, node in self.nodes.items()
            for branch in getattr(node, "branches", None) or []
        ]

    def to_text(self) -> str:
        """
        Human-readable summary of nodes and edges.

        Example:
            >>> print(definition.to_text())
            Graph: retry (entry: attempt, max_iterations: 10)
            Nodes (2):
              attempt
              done
            Edges (2):
              attempt -> attempt [when: error]
              attempt -> done
        """
        lines = [
            f"Graph: {self.name} (entry: {self.entry_node}, "
            f"max_iterations: {getattr(self, 'max_iterations', '?')})",
            f"Nodes ({len(self.nodes)}):",
        ]
        for name, node in self.nodes.items():
            line = f"  {name}"
            if node.kind != "node":
                line += f" [{node.kind}]"
            if node.description and node.description != name:
                line += f" - {node.description}"
            lines.append(line)

        lines.append(f"Edges ({len(self.edges)}):")
        for edge in self.edges:
            line = f"  {edge.source} -> {edge.target}"
            if edge.condition_label:
                line += f" [when: {edge.condition_label}]"
            lines.append(line)
        for fork, branch in self._branch_edges():
            lines.append(f"  {fork} => {branch} [branch]")
        return "\n".join(lines)

    def to_dot(self) -> str:
        """Graphviz DOT source for the graph."""
        lines = [f"digraph {_dot_quote(self.name)} {{", "  rankdir=TB;", "  node [shape=rectangle];"]
        for name, node in self.nodes.items():
            attrs = [f"label={_dot_quote(name)}"]
            if node.kind == "fork" or node.kind == "join":
                attrs.append("shape=diamond")
            if name == self.entry_node:
                attrs.append("penwidth=2")
            lines.append(f"  {_dot_quote(name)} [{', '.join(attrs)}];")
        for edge in self.edges:
            label = edge.condition_label
            suffix = f" [label={_dot_quote('when: ' + label)}]" if label else ""
            lines.append(f"  {_dot_quote(edge.source)} -> {_dot_quote(edge.target)}{suffix};")
        for fork, branch in self._branch_edges():
            lines.append(f"  {_dot_quote(fork)} -> {_dot_quote(branch)} [style=dashed];")
        lines.append("}")
        return "\n".join(lines)

    def to_mermaid(self) -> str:
        """
        Mermaid flowchart syntax for the graph.

        Example:
            >>> print(definition.to_mermaid())
            graph TD
                attempt[attempt]
                done[done]
                attempt-->|error|attempt
                attempt-->done
        """
        lines = ["graph TD"]
        for name, node in self.nodes.items():
            node_id = _escape_node_id(name)
            label = _escape_label(name)
            if node.kind == "fork" or node.kind == "join":
                lines.append(f"    {node_id}{{{label}}}")
            elif name == self.entry_node:
                lines.append(f"    {node_id}([{label}])")
            else:
                lines.append(f"    {node_id}[{label}]")

        for edge in self.edges:
            u_id = _escape_node_id(edge.source)
            v_id = _escape_node_id(edge.target)
            label = edge.condition_label
            if label:
                lines.append(f"    {u_id}-->|{_escape_label(label)}|{v_id}")
            else:
                lines.append(f"    {u_id}-->{v_id}")
        for fork, branch in self._branch_edges():
            lines.append(f"    {_escape_node_id(fork)}-.->{_escape_node_id(branch)}")
        return "\n".join(lines)

    def render_graphviz(self, interrupt_before: Optional[List[str]] = None, interrupt_after: Optional[List[str]] = None):
        """
        Render the graph using NetworkX and Graphviz.

        Returns:
            pygraphviz.AGraph: A PyGraphviz graph object.

        Raises:
            ImportError: If pygraphviz is not installed.
        """
        interrupt_before = interrupt_before or []
        interrupt_after = interrupt_after or []
        G = nx.DiGraph()
        for name, node in self.nodes.items():
            label = f"{name}\n"
            if node.kind != "node":
                label += f"({node.kind})\n"
            label += f"interrupt_before: {name in interrupt_before}\n"
            label += f"interrupt_after: {name in interrupt_after}"
            G.add_node(name, label=label)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target, label=edge.condition_label)
        for fork, branch in self._branch_edges():
            G.add_edge(fork, branch, label="branch", style="dashed")

        try:
            A = to_agraph(G)
        except ImportError as e:
            raise ImportError(
                "pygraphviz is required for graph images. "
                "Install it with: pip install 'loopgraph[viz]'"
            ) from e

        A.graph_attr.update(rankdir="TB", size="8,8")
        A.node_attr.update(shape="rectangle", style="filled", fillcolor="white")
        A.edge_attr.update(color="black")
        return A

    def save_graph_image(self, filename: str = "graph.png", **kwargs: Any) -> None:
        """
        Save the graph as an image file.

        Args:
            filename (str): The name of the file to save the graph image to.
            **kwargs: Passed to ``render_graphviz`` (interrupt node lists).
        """
        A = self.render_graphviz(**kwargs)
        A.layout(prog="dot")
        A.draw(filename)
