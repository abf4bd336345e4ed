"""
Execution state threaded through every node of a graph.

GraphState is created once per top-level execution (or restored from a
checkpoint) and mutated in place by node actions. Fork branches receive deep
copies, so nothing is shared between branches once cloned.

Example:
    >>> state = GraphState(data={"n": 0})
    >>> state.set("n", state.get("n") + 1).get("n")
    1
"""

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Scalar types allowed inside GraphState.data when it has to be persisted.
_SCALARS = (str, int, float, bool, type(None))


def ensure_serializable(value: Any, path: str = "data") -> None:
    """
    Check that a value is made only of JSON-compatible building blocks.

    Allowed: str, int, float, bool, None, lists/tuples of allowed values and
    dicts with string keys and allowed values.

    Raises:
        TypeError: With the dotted path of the first offending value.
    """
    if isinstance(value, _SCALARS):
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            ensure_serializable(item, f"{path}[{index}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path}: key {key!r} is not a string")
            ensure_serializable(item, f"{path}.{key}")
        return
    raise TypeError(f"{path}: {type(value).__name__} is not JSON-serializable")


@dataclass
class GraphState:
    """
    The mutable execution context passed to and returned by node actions.

    Attributes:
        current_node: Node being executed, or the node to resume at.
        next_node: Explicit routing request; overrides edge evaluation when set.
        should_end: Terminal signal, independent of the edge topology.
        output: Final textual output of the execution.
        data: General-purpose payload shared between steps.
    """

    current_node: str = ""
    next_node: Optional[str] = None
    should_end: bool = False
    output: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Return ``data[key]`` or ``default``."""
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> "GraphState":
        """Set ``data[key]`` and return self for chaining."""
        self.data[key] = value
        return self

    def update(self, values: Dict[str, Any]) -> "GraphState":
        """Merge a partial update into ``data``."""
        self.data.update(values)
        return self

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def clone(self) -> "GraphState":
        """Return an independent deep copy."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_node": self.current_node,
            "next_node": self.next_node,
            "should_end": self.should_end,
            "output": self.output,
            "data": copy.deepcopy(self.data),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "GraphState":
        """Build a state from ``to_dict()`` output; missing keys use defaults."""
        return cls(
            current_node=raw.get("current_node", ""),
            next_node=raw.get("next_node"),
            should_end=bool(raw.get("should_end", False)),
            output=raw.get("output") or "",
            data=copy.deepcopy(raw.get("data") or {}),
        )

    def to_json(self, **kwargs: Any) -> str:
        ensure_serializable(self.data)
        return json.dumps(self.to_dict(), **kwargs)
