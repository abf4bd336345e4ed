"""
Reusable edge conditions.

Edge conditions are plain ``(GraphState) -> bool`` callables. The helpers
here build common ones and attach a readable ``label`` that the
visualization export shows on the edge.

Example:
    >>> builder.edge("attempt", "attempt", condition=flag("error"))
    >>> builder.edge("attempt", "done", condition=negate(flag("error")))
    >>> builder.edge("score", "publish", condition=when("score >= `0.8`"))
"""

from typing import Any, Callable

import jmespath
from jmespath.exceptions import JMESPathError

from loopgraph.exceptions import GraphValidationError
from loopgraph.state import GraphState


class Condition:
    """A labelled edge condition."""

    def __init__(self, predicate: Callable[[GraphState], Any], label: str):
        self._predicate = predicate
        self.label = label
        self.__name__ = label

    def __call__(self, state: GraphState) -> bool:
        return bool(self._predicate(state))

    def __repr__(self) -> str:
        return f"Condition({self.label!r})"


def when(expression: str) -> Condition:
    """
    Condition from a JMESPath expression evaluated against ``state.data``.

    The edge applies when the expression result is truthy. Literals use
    JMESPath backticks, e.g. ``when("n < `3`")`` or ``when("status == 'ok'")``.

    Raises:
        GraphValidationError: If the expression does not compile.
    """
    try:
        compiled = jmespath.compile(expression)
    except JMESPathError as e:
        raise GraphValidationError(f"Invalid condition expression '{expression}': {e}") from e
    return Condition(lambda state: compiled.search(state.data), expression)


def flag(key: str) -> Condition:
    """True when ``state.data[key]`` is truthy."""
    return Condition(lambda state: state.get(key), key)


def equals(key: str, value: Any) -> Condition:
    """True when ``state.data[key] == value``."""
    return Condition(lambda state: state.get(key) == value, f"{key} == {value!r}")


def negate(condition: Callable[[GraphState], Any]) -> Condition:
    """Logical NOT of another condition."""
    inner = getattr(condition, "label", None) or getattr(condition, "__name__", "condition")
    if inner == "<lambda>":
        inner = "condition"
    return Condition(lambda state: not condition(state), f"not {inner}")
