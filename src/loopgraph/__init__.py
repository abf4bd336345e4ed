from .state import GraphState
from .graph import Node, ForkNode, JoinNode, Edge, GraphDefinition
from .builder import GraphBuilder, FluentGraphBuilder, FluentNode, start_graph
from .engine import ExecutionEngine

# Core exceptions (zero dependencies)
from .exceptions import (
    LoopGraphError,
    GraphValidationError,
    GraphRuntimeError,
    UnknownNodeError,
    NoApplicableEdgeError,
    GraphExecutionError,
    IterationLimitExceeded,
    BranchExecutionError,
    ExecutionCancelled,
    GraphInterrupted,
    PersistenceError,
    ConfigError,
)

# Fork/join coordination
from .parallel import (
    BranchResult,
    CancellationToken,
    ForkJoinCoordinator,
    JoinStrategy,
    PendingFork,
    merge_data_union,
)

# Checkpoints
from .checkpoint import (
    Checkpoint,
    CheckpointStore,
    MemoryCheckpointStore,
    FileCheckpointStore,
)

# Lifecycle events
from .events import (
    EventBus,
    GraphListener,
    NODE_START,
    NODE_END,
    ERROR,
    STREAMING,
)

from .conditions import when, flag, equals, negate
from .config import EngineConfig
from . import templates

__all__ = [
    "GraphState",
    "Node",
    "ForkNode",
    "JoinNode",
    "Edge",
    "GraphDefinition",
    "GraphBuilder",
    "FluentGraphBuilder",
    "FluentNode",
    "start_graph",
    "ExecutionEngine",
    # Exceptions
    "LoopGraphError",
    "GraphValidationError",
    "GraphRuntimeError",
    "UnknownNodeError",
    "NoApplicableEdgeError",
    "GraphExecutionError",
    "IterationLimitExceeded",
    "BranchExecutionError",
    "ExecutionCancelled",
    "GraphInterrupted",
    "PersistenceError",
    "ConfigError",
    # Fork/join
    "BranchResult",
    "CancellationToken",
    "ForkJoinCoordinator",
    "JoinStrategy",
    "PendingFork",
    "merge_data_union",
    # Checkpoints
    "Checkpoint",
    "CheckpointStore",
    "MemoryCheckpointStore",
    "FileCheckpointStore",
    # Events
    "EventBus",
    "GraphListener",
    "NODE_START",
    "NODE_END",
    "ERROR",
    "STREAMING",
    # Conditions and config
    "when",
    "flag",
    "equals",
    "negate",
    "EngineConfig",
    "templates",
    "__version__",
]

__version__ = "0.1.0"
