"""
Exception classes for loopgraph.

Build-time problems raise GraphValidationError. Everything that can go wrong
while a graph runs derives from GraphRuntimeError and carries the last good
GraphState in ``.state`` so callers can inspect partial output.

Design Principle:
    exceptions.py (BASE - zero dependencies)
        ^
    state.py / graph.py (MODEL)
        ^
    engine.py / parallel.py / checkpoint.py (RUNTIME)
"""

from typing import Any, Dict, Optional


class LoopGraphError(Exception):
    """Base class for every error raised by loopgraph."""


class GraphValidationError(LoopGraphError):
    """Raised when a graph definition references unknown nodes or is malformed."""


class ConfigError(LoopGraphError):
    """Raised for invalid engine configuration."""


class PersistenceError(LoopGraphError):
    """Raised when a checkpoint cannot be written, read or serialized."""


class GraphRuntimeError(LoopGraphError):
    """
    Base class for failures during graph execution.

    Attributes:
        state: The last good GraphState (may be None when unknown).
        node: Name of the node the failure is attributed to.
    """

    def __init__(self, message: str, state: Any = None, node: Optional[str] = None):
        super().__init__(message)
        self.state = state
        self.node = node


class UnknownNodeError(GraphRuntimeError):
    """Raised when routing selects a node that is not part of the graph."""

    def __init__(self, node: str, state: Any = None):
        super().__init__(f"Node '{node}' does not exist in the graph", state, node)


class NoApplicableEdgeError(GraphRuntimeError):
    """Raised when no outgoing edge matches and the state did not end."""

    def __init__(self, node: str, state: Any = None):
        super().__init__(f"No valid next node found from node '{node}'", state, node)


class GraphExecutionError(GraphRuntimeError):
    """
    Wraps an exception raised by a node action.

    The original exception is available as ``original`` and ``__cause__``.
    """

    def __init__(self, node: str, original: BaseException, state: Any = None):
        super().__init__(f"Error in node '{node}': {original}", state, node)
        self.original = original


class IterationLimitExceeded(GraphRuntimeError):
    """Raised when execution runs ``max_iterations`` steps without ending."""

    def __init__(self, max_iterations: int, state: Any = None, node: Optional[str] = None):
        super().__init__(
            f"Graph execution exceeded maximum iterations ({max_iterations})",
            state,
            node,
        )
        self.max_iterations = max_iterations


class BranchExecutionError(GraphRuntimeError):
    """
    Raised by a Join when forked branches failed.

    Attributes:
        branch: The first failed branch (declaration order).
        failures: Mapping of branch name to error message.
    """

    def __init__(
        self,
        branch: str,
        failures: Dict[str, str],
        state: Any = None,
        node: Optional[str] = None,
        message: Optional[str] = None,
    ):
        if message is None:
            message = f"Parallel branch '{branch}' failed: {failures.get(branch)}"
        super().__init__(message, state, node)
        self.branch = branch
        self.failures = dict(failures)


class ExecutionCancelled(GraphRuntimeError):
    """Raised when the execution's cancellation token was triggered."""

    def __init__(self, node: Optional[str] = None, state: Any = None):
        where = f" at node '{node}'" if node else ""
        super().__init__(f"Graph execution cancelled{where}", state, node)


class GraphInterrupted(LoopGraphError):
    """
    Signals that execution paused at an interrupt point.

    This is control flow rather than a failure: resume later with
    ``ExecutionEngine.resume(checkpoint_id)``.

    Attributes:
        node: The interrupt node.
        state: State at the interrupt.
        checkpoint_id: Id of the checkpoint saved at the interrupt (None when
            no checkpoint store is configured).
    """

    def __init__(self, node: str, state: Any = None, checkpoint_id: Optional[str] = None):
        super().__init__(f"Execution interrupted at node '{node}'")
        self.node = node
        self.state = state
        self.checkpoint_id = checkpoint_id
