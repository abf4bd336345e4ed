import inspect
import logging
import time
from typing import Any, Callable, Dict, Generator, List, Optional, Union

from loopgraph.checkpoint import (
    Checkpoint,
    CheckpointStore,
    FileCheckpointStore,
    new_checkpoint_id,
)
from loopgraph.events import EventBus
from loopgraph.exceptions import (
    ConfigError,
    ExecutionCancelled,
    GraphExecutionError,
    GraphInterrupted,
    GraphRuntimeError,
    IterationLimitExceeded,
    NoApplicableEdgeError,
    PersistenceError,
    UnknownNodeError,
)
from loopgraph.graph import ForkNode, GraphDefinition, JoinNode, Node
from loopgraph.parallel import CancellationToken, ForkJoinCoordinator, merge_data_union
from loopgraph.state import GraphState

# Copyright (c) 2024 Claudionor Coelho Jr, Fabrício Ceolin


def prepare_function_params(
    func: Callable[..., Any], available_params: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Prepare the parameters for a node action based on its signature.

    A leading positional parameter with an unknown name receives the state,
    so ``lambda s: ...`` works as well as ``def run(state, cancel_token)``.

    Args:
        func (Callable[..., Any]): The function to prepare parameters for.
        available_params (Dict[str, Any]): Dictionary of available parameters.

    Returns:
        Dict[str, Any]: The prepared parameters for the function.

    Raises:
        ValueError: If required parameters for the function are not provided.
    """
    sig = inspect.signature(func)
    function_params: Dict[str, Any] = {}

    for index, (param_name, param) in enumerate(sig.parameters.items()):
        if param_name in available_params:
            function_params[param_name] = available_params[param_name]
        elif param.kind == inspect.Parameter.VAR_KEYWORD:
            function_params.update(
                {k: v for k, v in available_params.items() if k not in function_params}
            )
            break
        elif param.kind == inspect.Parameter.VAR_POSITIONAL:
            continue
        elif index == 0 and param.kind == inspect.Parameter.POSITIONAL_OR_KEYWORD:
            function_params[param_name] = available_params["state"]
        elif param.default is not inspect.Parameter.empty:
            continue
        else:
            raise ValueError(
                f"Required parameter '{param_name}' not provided for function "
                f"'{getattr(func, '__name__', func)}'"
            )

    return function_params


def apply_action_result(node: str, state: GraphState, result: Any) -> GraphState:
    """
    Interpret a node action's return value.

    A GraphState replaces the current state, a dict is merged into
    ``state.data`` and None keeps the (possibly mutated) input state.
    """
    if result is None:
        return state
    if isinstance(result, GraphState):
        return result
    if isinstance(result, dict):
        state.update(result)
        return state
    raise TypeError(
        f"Node '{node}' returned {type(result).__name__}; expected GraphState, dict or None"
    )


class ExecutionEngine:
    """
    Interpreter loop that walks a GraphDefinition.

    Starting at the entry node (or the state's ``current_node`` when
    resuming), the engine repeatedly runs the current node's action, checks
    ``should_end``, and selects the next node: an explicit ``next_node`` set
    by the action wins, otherwise the first outgoing edge (in declaration
    order) whose condition holds. Fork nodes launch concurrent branches and
    join nodes merge their results.

    Attributes:
        definition (GraphDefinition): The graph being executed.
        checkpoint_store (Optional[CheckpointStore]): Where checkpoints go.
        auto_checkpoint (bool): Save a checkpoint after every main-path node.
        events (EventBus): Lifecycle event dispatcher.
        max_workers (Optional[int]): Thread pool size for fork branches.
        interrupt_before (List[str]): Nodes to pause before.
        interrupt_after (List[str]): Nodes to pause after.
        logger (logging.Logger): Logger instance for observability.
        log_state_values (bool): Whether to log full state values.

    Logging:
        Log levels used:
        - DEBUG: Node entry/exit, edge evaluation, transitions
        - INFO: Node completion, fork/join, checkpoints, execution complete
        - WARNING: Joins without a pending fork
        - ERROR: Exceptions in node execution

    Example:
        >>> builder = GraphBuilder("attempt", max_iterations=10)
        >>> builder.node("attempt", attempt).node("done", done)
        >>> builder.edge("attempt", "attempt", condition=lambda s: s.get("error"))
        >>> builder.edge("attempt", "done")
        >>> final = ExecutionEngine(builder.build()).execute(GraphState(data={"n": 0}))
    """

    def __init__(
        self,
        definition: GraphDefinition,
        checkpoint_store: Optional[CheckpointStore] = None,
        auto_checkpoint: bool = False,
        events: Optional[EventBus] = None,
        max_workers: Optional[int] = None,
        interrupt_before: Optional[List[str]] = None,
        interrupt_after: Optional[List[str]] = None,
        log_level: int = logging.WARNING,
        log_state_values: bool = False,
    ):
        """
        Initialize the engine.

        Args:
            definition: A validated graph definition (see GraphBuilder.build).
            checkpoint_store: Store used for auto checkpoints, interrupts and resume.
            auto_checkpoint: If True, save a checkpoint after every main-path node.
            events: Event bus to notify; a private one is created when None.
            max_workers: Maximum threads per fork. None uses the executor default.
            interrupt_before: Node names to pause before executing.
            interrupt_after: Node names to pause after executing.
            log_level: Logging level for the engine. Defaults to logging.WARNING.
            log_state_values: If True, log full state values. Defaults to False for
                security (state may contain secrets, API keys, or PII).

        Raises:
            ConfigError: If auto_checkpoint is set without a store, or an interrupt
                names an unknown node.
        """
        if auto_checkpoint and checkpoint_store is None:
            raise ConfigError("auto_checkpoint requires a checkpoint_store")
        for name in list(interrupt_before or []) + list(interrupt_after or []):
            if name not in definition.nodes:
                raise ConfigError(f"Interrupt node '{name}' does not exist in the graph.")
        self.definition = definition
        self.checkpoint_store = checkpoint_store
        self.auto_checkpoint = auto_checkpoint
        self.events = events if events is not None else EventBus()
        self.max_workers = max_workers
        self.interrupt_before: List[str] = list(interrupt_before or [])
        self.interrupt_after: List[str] = list(interrupt_after or [])
        self.logger = logging.getLogger(__name__)
        self.logger.setLevel(log_level)
        self.log_state_values = log_state_values

    @classmethod
    def from_config(cls, definition: GraphDefinition, config: Any, **overrides: Any) -> "ExecutionEngine":
        """
        Build an engine from an EngineConfig.

        A ``checkpoint_dir`` in the config creates a FileCheckpointStore unless
        ``checkpoint_store`` is passed in ``overrides``.
        """
        store = overrides.pop("checkpoint_store", None)
        if store is None and config.checkpoint_dir:
            store = FileCheckpointStore(config.checkpoint_dir)
        events = overrides.pop("events", None)
        if events is None:
            events = EventBus(error_policy=config.listener_error_policy)
        kwargs = dict(
            checkpoint_store=store,
            auto_checkpoint=config.auto_checkpoint,
            events=events,
            max_workers=config.max_workers,
            interrupt_before=config.interrupt_before,
            interrupt_after=config.interrupt_after,
            log_level=config.log_level,
            log_state_values=config.log_state_values,
        )
        kwargs.update(overrides)
        return cls(definition, **kwargs)

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[..., Any]:
        """Shortcut for ``engine.events.on(event, handler)``."""
        return self.events.on(event, handler)

    # ------------------------------------------------------------------
    # Public execution API
    # ------------------------------------------------------------------

    def execute(
        self,
        initial_state: Union[GraphState, Dict[str, Any], None] = None,
        config: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        checkpoint_id: Optional[str] = None,
    ) -> GraphState:
        """
        Run the graph to completion and return the terminal state.

        Args:
            initial_state: Starting state. A dict is used as ``data``. When
                ``checkpoint_id`` is given, a dict is merged into the restored data.
            config: Per-run configuration passed to node actions that ask for it.
            cancel_token: Cooperative cancellation for this execution.
            checkpoint_id: Resume from this checkpoint instead of starting fresh.

        Returns:
            GraphState: The state whose ``should_end`` became true.

        Raises:
            GraphExecutionError: A node action raised.
            UnknownNodeError: Routing selected a node that does not exist.
            NoApplicableEdgeError: No edge matched and the state did not end.
            IterationLimitExceeded: ``max_iterations`` ran without termination.
            BranchExecutionError: A join could not be satisfied.
            ExecutionCancelled: ``cancel_token`` was cancelled.
            GraphInterrupted: Execution paused at an interrupt point.
            PersistenceError: A checkpoint could not be saved or loaded.
        """
        for event in self.stream(initial_state, config, cancel_token, checkpoint_id):
            event_type = event["type"]
            if event_type == "final":
                return event["state"]
            if event_type == "interrupt":
                raise GraphInterrupted(event["node"], event["state"], event["checkpoint_id"])
            if event_type == "cancelled":
                raise ExecutionCancelled(event["node"], event["state"])
        raise RuntimeError("Execution stream ended without a final event")

    def resume(
        self,
        checkpoint_id: str,
        config: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        state_update: Optional[Dict[str, Any]] = None,
    ) -> GraphState:
        """
        Continue an execution from a saved checkpoint.

        The loop restarts at the checkpoint's ``current_node``; the node that
        produced the checkpoint is not run again.
        """
        return self.execute(state_update or None, config, cancel_token, checkpoint_id=checkpoint_id)

    def stream(
        self,
        initial_state: Union[GraphState, Dict[str, Any], None] = None,
        config: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        checkpoint_id: Optional[str] = None,
    ) -> Generator[Dict[str, Any], None, None]:
        """
        Execute the graph, yielding events as it goes.

        Yields:
            Dict[str, Any]: Events during execution. Possible types:
                - {"type": "node_start", "node": str}
                - {"type": "streaming", "node": str, "chunk": str}
                - {"type": "node_end", "node": str, "elapsed": float, "state": GraphState}
                - {"type": "checkpoint", "node": str, "checkpoint_id": str}
                - {"type": "interrupt", "node": str, "state": GraphState, "checkpoint_id": str}
                - {"type": "cancelled", "node": str, "state": GraphState}
                - {"type": "final", "state": GraphState}

        Raises:
            The same errors as ``execute`` except GraphInterrupted and
            ExecutionCancelled, which are reported as events.
        """
        token = cancel_token or CancellationToken()
        run_config = dict(config or {})
        history: List[str] = []
        resume_node: Optional[str] = None

        if checkpoint_id is not None:
            checkpoint = self._load_checkpoint(checkpoint_id)
            state = checkpoint.to_state()
            if isinstance(initial_state, GraphState):
                state.update(initial_state.data)
            elif initial_state:
                state.update(initial_state)
            history = list(checkpoint.execution_history)
            resume_node = checkpoint.current_node
            run_id = checkpoint.id
            self.logger.info(
                f"Resuming checkpoint '{checkpoint_id}' at node '{checkpoint.current_node}'"
            )
        else:
            state = self._coerce_state(initial_state)
            run_id = run_config.get("checkpoint_id") or new_checkpoint_id()

        start = state.current_node or self.definition.entry_node
        self.logger.debug(f"Starting execution at '{start}' with data keys: {list(state.data.keys())}")
        if self.log_state_values:
            self.logger.debug(f"Initial state: {state}")

        yield from self._run(
            start,
            state,
            run_config,
            token,
            history,
            branch=False,
            run_id=run_id,
            resume_node=resume_node,
        )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def save_checkpoint(
        self,
        state: GraphState,
        checkpoint_id: Optional[str] = None,
        execution_history: Optional[List[str]] = None,
    ) -> str:
        """
        Save ``state`` as a checkpoint positioned at ``state.current_node``.

        Returns:
            str: The checkpoint id.

        Raises:
            PersistenceError: If no store is configured or the save fails.
        """
        if self.checkpoint_store is None:
            raise PersistenceError("No checkpoint store configured")
        if not state.current_node:
            state.current_node = self.definition.entry_node
        checkpoint = Checkpoint.from_state(
            state, self.definition.name, execution_history, checkpoint_id
        )
        try:
            previous = self.checkpoint_store.load(checkpoint.id)
        except PersistenceError as e:
            self.logger.warning(f"Overwriting unreadable checkpoint '{checkpoint.id}': {e}")
            previous = None
        if previous is not None:
            checkpoint.created_at = previous.created_at
        return self.checkpoint_store.save(checkpoint)

    def restore_state(self, checkpoint_id: str) -> Optional[GraphState]:
        """Rebuild the state saved in a checkpoint, or None if it does not exist."""
        if self.checkpoint_store is None:
            raise PersistenceError("No checkpoint store configured")
        checkpoint = self.checkpoint_store.load(checkpoint_id)
        return checkpoint.to_state() if checkpoint is not None else None

    def _load_checkpoint(self, checkpoint_id: str) -> Checkpoint:
        if self.checkpoint_store is None:
            raise PersistenceError("No checkpoint store configured")
        checkpoint = self.checkpoint_store.load(checkpoint_id)
        if checkpoint is None:
            raise PersistenceError(f"Checkpoint not found: {checkpoint_id}")
        if checkpoint.graph_name != self.definition.name:
            self.logger.warning(
                f"Checkpoint '{checkpoint_id}' belongs to graph '{checkpoint.graph_name}', "
                f"resuming it with '{self.definition.name}'"
            )
        return checkpoint

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_state(initial_state: Union[GraphState, Dict[str, Any], None]) -> GraphState:
        if initial_state is None:
            return GraphState()
        if isinstance(initial_state, GraphState):
            return initial_state
        if isinstance(initial_state, dict):
            return GraphState(data=dict(initial_state))
        raise TypeError(
            f"initial_state must be a GraphState or dict, got {type(initial_state).__name__}"
        )

    def _run(
        self,
        start: str,
        state: GraphState,
        config: Dict[str, Any],
        token: CancellationToken,
        history: List[str],
        branch: bool,
        run_id: Optional[str] = None,
        resume_node: Optional[str] = None,
    ) -> Generator[Dict[str, Any], None, None]:
        """
        The interpreter loop shared by the main path and fork branches.

        Branches stop when routed to a join node, when ``should_end`` is set,
        or at a node without outgoing edges; they never checkpoint or interrupt.
        """
        definition = self.definition
        join_nodes = definition.join_nodes()
        coordinator = ForkJoinCoordinator(token, self.max_workers)
        current = start
        iterations = 0
        try:
            while iterations < definition.max_iterations:
                state.current_node = current
                if token.is_cancelled():
                    self.logger.info(f"Execution cancelled before node '{current}'")
                    if branch:
                        raise ExecutionCancelled(current, state)
                    yield {"type": "cancelled", "node": current, "state": state}
                    return

                node = definition.nodes.get(current)
                if node is None:
                    raise UnknownNodeError(current, state)

                pause = (
                    not branch
                    and current in self.interrupt_before
                    and not (iterations == 0 and current == resume_node)
                )
                if pause and coordinator.awaiting_join():
                    self.logger.warning(f"Ignoring interrupt before '{current}': branches await a join")
                elif pause:
                    checkpoint_id = self._interrupt_checkpoint(state, run_id, history)
                    self.logger.info(f"Interrupt before node '{current}'")
                    yield {
                        "type": "interrupt",
                        "node": current,
                        "state": state,
                        "checkpoint_id": checkpoint_id,
                    }
                    return

                iterations += 1
                self.logger.debug(f"Entering node: {current}")
                if self.log_state_values:
                    self.logger.debug(f"Node '{current}' input state: {state}")
                self.events.fire_node_start(current)
                yield {"type": "node_start", "node": current}

                chunks: List[str] = []
                started = time.perf_counter()
                try:
                    state = self._run_node(node, state, config, token, coordinator, chunks)
                except Exception as e:
                    if isinstance(e, ExecutionCancelled) and token.is_cancelled():
                        if branch:
                            raise
                        self.logger.info(f"Execution cancelled in node '{current}'")
                        yield {"type": "cancelled", "node": current, "state": e.state or state}
                        return
                    self.logger.error(f"Error in node '{current}': {e}")
                    self.events.fire_error(current, e)
                    # Only fork/join dispatch reports its own runtime errors.
                    if isinstance(e, GraphRuntimeError) and isinstance(node, (ForkNode, JoinNode)):
                        if e.state is None:
                            e.state = state
                        raise
                    raise GraphExecutionError(current, e, state) from e
                elapsed = time.perf_counter() - started

                if token.is_cancelled():
                    self.logger.info(f"Execution cancelled during node '{current}'")
                    if branch:
                        raise ExecutionCancelled(current, state)
                    yield {"type": "cancelled", "node": current, "state": state}
                    return

                state.current_node = current
                history.append(current)
                for chunk in chunks:
                    yield {"type": "streaming", "node": current, "chunk": chunk}
                self.events.fire_node_end(current, elapsed)
                self.logger.info(f"Node '{current}' completed successfully")
                if self.log_state_values:
                    self.logger.debug(f"Node '{current}' output state: {state}")
                yield {"type": "node_end", "node": current, "elapsed": elapsed, "state": state}

                if state.should_end:
                    self.logger.info(f"Execution ended at node '{current}' after {iterations} step(s)")
                    yield {"type": "final", "state": state}
                    return

                next_node = self._next_node(node, state, branch)
                if branch and (next_node is None or next_node in join_nodes):
                    self.logger.debug(f"Branch finished at node '{current}'")
                    yield {"type": "final", "state": state}
                    return

                self.logger.debug(f"Transitioning from '{current}' to '{next_node}'")
                state.current_node = next_node

                # No checkpoints between a fork and its join.
                forked = coordinator.awaiting_join()
                saved_id = None
                if not branch and self.auto_checkpoint:
                    if forked:
                        self.logger.debug(f"Skipping checkpoint after '{current}': branches await a join")
                    else:
                        saved_id = self.save_checkpoint(state, run_id, history)
                        yield {"type": "checkpoint", "node": current, "checkpoint_id": saved_id}

                pause = not branch and current in self.interrupt_after
                if pause and forked:
                    self.logger.warning(f"Ignoring interrupt after '{current}': branches await a join")
                elif pause:
                    if saved_id is None:
                        saved_id = self._interrupt_checkpoint(state, run_id, history)
                    self.logger.info(f"Interrupt after node '{current}'")
                    yield {
                        "type": "interrupt",
                        "node": current,
                        "state": state,
                        "checkpoint_id": saved_id,
                    }
                    return

                current = next_node

            self.logger.warning(
                f"Iteration limit of {definition.max_iterations} reached at node '{current}'"
            )
            raise IterationLimitExceeded(definition.max_iterations, state, current)
        finally:
            coordinator.shutdown()

    def _interrupt_checkpoint(
        self, state: GraphState, run_id: Optional[str], history: List[str]
    ) -> Optional[str]:
        if self.checkpoint_store is None:
            return None
        return self.save_checkpoint(state, run_id, history)

    def _run_node(
        self,
        node: Node,
        state: GraphState,
        config: Dict[str, Any],
        token: CancellationToken,
        coordinator: ForkJoinCoordinator,
        chunks: List[str],
    ) -> GraphState:
        if isinstance(node, ForkNode):
            coordinator.fork(
                node.name,
                node.branches,
                state,
                lambda branch, branch_state, branch_token: self._run_branch(
                    branch, branch_state, config, branch_token
                ),
            )
            return state

        if isinstance(node, JoinNode):
            results = coordinator.join(node.name, node.strategy, node.fork)
            if results is None:
                self.logger.warning(f"Join '{node.name}' reached with no pending fork")
                states = [state]
            else:
                states = [result.state for result in results]
            merge = node.merge or merge_data_union
            try:
                merged = merge(states)
            except Exception as e:
                raise GraphExecutionError(node.name, e, state) from e
            if not isinstance(merged, GraphState):
                raise GraphExecutionError(
                    node.name,
                    TypeError(
                        f"Merge function of join '{node.name}' returned {type(merged).__name__}, "
                        "expected GraphState"
                    ),
                    state,
                )
            merged.current_node = node.name
            return merged

        if node.action is None:
            return state

        def emit(chunk: Any) -> None:
            text = str(chunk)
            chunks.append(text)
            self.events.fire_streaming(text)

        available_params = {
            "state": state,
            "config": config,
            "node": node.name,
            "engine": self,
            "cancel_token": token,
            "emit": emit,
        }
        function_params = prepare_function_params(node.action, available_params)
        result = node.action(**function_params)
        return apply_action_result(node.name, state, result)

    def _run_branch(
        self,
        branch: str,
        state: GraphState,
        config: Dict[str, Any],
        token: CancellationToken,
    ) -> GraphState:
        final_state = state
        for event in self._run(branch, state, dict(config), token, [], branch=True):
            if event["type"] == "final":
                final_state = event["state"]
        return final_state

    def _next_node(self, node: Node, state: GraphState, branch: bool) -> Optional[str]:
        """
        Pick the node after ``node``.

        Order: explicit ``state.next_node`` (cleared once used), then the first
        outgoing edge whose condition holds. A fork without matching edges
        routes to the join that consumes it. Inside a branch, a node without
        outgoing edges returns None (branch complete).
        """
        current = node.name
        if state.next_node:
            target = state.next_node
            state.next_node = None
            if target not in self.definition.nodes:
                raise UnknownNodeError(target, state)
            self.logger.debug(f"Explicit routing from '{current}' to '{target}'")
            return target

        edges = self.definition.edges_from(current)
        for edge in edges:
            try:
                applies = edge.applies(state)
            except Exception as e:
                self.events.fire_error(current, e)
                raise GraphExecutionError(current, e, state) from e
            self.logger.debug(
                f"Edge '{current}' -> '{edge.target}': condition result = {applies}"
            )
            if applies:
                return edge.target

        if isinstance(node, ForkNode):
            target = self._join_for_fork(current)
            if target is not None:
                return target
        if branch and not edges:
            return None
        self.logger.warning(f"No valid next node found from node '{current}'")
        raise NoApplicableEdgeError(current, state)

    def _join_for_fork(self, fork_name: str) -> Optional[str]:
        joins = [
            node for node in self.definition.nodes.values() if isinstance(node, JoinNode)
        ]
        for join in joins:
            if join.fork == fork_name:
                return join.name
        unbound = [join for join in joins if join.fork is None]
        if len(unbound) == 1:
            return unbound[0].name
        return None
