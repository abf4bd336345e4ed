"""
Fork/join coordination for loopgraph executions.

This module provides the pieces the engine uses when a fork node is reached:

- CancellationToken: Cooperative cancellation shared by an execution and its branches
- JoinStrategy: How many branch results a join needs (ALL, ANY, COUNT(n))
- BranchResult: Outcome of one branch sub-execution with timing and error details
- PendingFork: The branches launched by one fork, awaiting a join
- ForkJoinCoordinator: Launches branches on a thread pool and waits per strategy
- merge_data_union: Default merge function for joins

Branches run as independent tasks on their own deep-copied GraphState; the
parent execution only sees their results when a join consumes them.
"""

import logging
import threading
import time
import traceback
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from loopgraph.exceptions import BranchExecutionError, ExecutionCancelled
from loopgraph.state import GraphState

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while a join waits on its branches.
JOIN_POLL_INTERVAL = 0.05


class CancellationToken:
    """
    Cooperative cancellation token for executions and their branches.

    Python threads cannot be forcibly stopped, so node actions that run for a
    long time should check ``is_cancelled()`` and return early. The engine
    checks the token between nodes and while a join is waiting.

    Child tokens (see ``child()``) report cancellation when either they or any
    ancestor is cancelled, which lets the engine stop leftover branches
    without touching the caller's token.

    Thread Safety:
        The token is thread-safe and can be shared across branches.

    Example:
        >>> token = CancellationToken()
        >>> def long_running(state, cancel_token):
        ...     for chunk in work_items(state):
        ...         if cancel_token.is_cancelled():
        ...             return {"cancelled": True}
        ...         process(chunk)
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._cancelled = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        """Signal cancellation. Thread-safe."""
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        """Check if cancellation was requested here or on any parent."""
        if self._cancelled.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled()

    def reset(self) -> None:
        """Reset this token (parents are left alone)."""
        self._cancelled.clear()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for cancellation signal.

        Args:
            timeout: Maximum time to wait in seconds (None = wait forever)

        Returns:
            True if cancelled, False if timeout elapsed.
        """
        if self._parent is None:
            return self._cancelled.wait(timeout=timeout)
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.is_cancelled():
            if deadline is not None and time.monotonic() >= deadline:
                return False
            self._cancelled.wait(JOIN_POLL_INTERVAL)
        return True

    def child(self) -> "CancellationToken":
        """Return a token that is also cancelled when this one is."""
        return CancellationToken(parent=self)


class JoinKind(Enum):
    """The closed set of join strategies."""

    ALL = "all"
    ANY = "any"
    COUNT = "count"


@dataclass(frozen=True)
class JoinStrategy:
    """
    How many forked branch results a join requires before it proceeds.

    Use the ``JoinStrategy.ALL`` / ``JoinStrategy.ANY`` constants or
    ``JoinStrategy.count(n)``.
    """

    kind: JoinKind
    n: Optional[int] = None

    @classmethod
    def count(cls, n: int) -> "JoinStrategy":
        return cls(JoinKind.COUNT, n)

    def required(self, total: int) -> int:
        """Number of successful branches needed out of ``total``."""
        if self.kind is JoinKind.ALL:
            return total
        if self.kind is JoinKind.ANY:
            return 1
        return self.n or 0

    def __str__(self) -> str:
        if self.kind is JoinKind.COUNT:
            return f"count({self.n})"
        return self.kind.value


JoinStrategy.ALL = JoinStrategy(JoinKind.ALL)
JoinStrategy.ANY = JoinStrategy(JoinKind.ANY)


@dataclass
class BranchResult:
    """
    Result from a single branch sub-execution.

    Attributes:
        branch: The branch name (its starting node)
        success: True if the branch completed without raising
        state: Final branch state (the clone's last good state on failure)
        error: Error message if failed
        error_type: Exception class name if failed
        traceback: Full traceback if failed
        timing_ms: Execution time in milliseconds
    """

    branch: str
    success: bool
    state: Optional[GraphState] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    traceback: Optional[str] = None
    timing_ms: float = 0.0

    @classmethod
    def from_success(cls, branch: str, state: GraphState, timing_ms: float) -> "BranchResult":
        return cls(branch=branch, success=True, state=state, timing_ms=timing_ms)

    @classmethod
    def from_error(
        cls,
        branch: str,
        exception: BaseException,
        state: Optional[GraphState] = None,
        timing_ms: float = 0.0,
    ) -> "BranchResult":
        return cls(
            branch=branch,
            success=False,
            state=state,
            error=str(exception),
            error_type=type(exception).__name__,
            traceback="".join(
                traceback.format_exception(type(exception), exception, exception.__traceback__)
            ),
            timing_ms=timing_ms,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "branch": self.branch,
            "success": self.success,
            "state": self.state.to_dict() if self.state is not None else None,
            "error": self.error,
            "error_type": self.error_type,
            "timing_ms": self.timing_ms,
        }


@dataclass
class PendingFork:
    """Branches launched by one fork node and not yet consumed by a join."""

    fork_name: str
    branches: List[str]
    futures: Dict[str, Future]
    tokens: Dict[str, CancellationToken]
    consumed: set = field(default_factory=set)

    def outstanding(self) -> List[str]:
        """Unconsumed branch names in declaration order."""
        return [b for b in self.branches if b not in self.consumed]


# (branch name, cloned state, branch token) -> final branch state
BranchRunner = Callable[[str, GraphState, CancellationToken], GraphState]


class ForkJoinCoordinator:
    """
    Launches fork branches on a thread pool and synchronises joins.

    One coordinator belongs to one execution loop (the main path or a single
    branch), so nested forks get their own pool and cannot starve the pool
    their parent join is waiting on.

    Attributes:
        max_workers: Thread pool size (None = ThreadPoolExecutor default)
    """

    def __init__(
        self,
        cancel_token: CancellationToken,
        max_workers: Optional[int] = None,
    ):
        self.cancel_token = cancel_token
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: List[PendingFork] = []
        self._lock = threading.Lock()

    @property
    def executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="loopgraph-branch"
            )
        return self._executor

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._pending)

    def awaiting_join(self) -> bool:
        """True while some fork has branches that no join has consumed yet."""
        with self._lock:
            return any(not pending.consumed for pending in self._pending)

    def fork(
        self,
        fork_name: str,
        branches: List[str],
        state: GraphState,
        run_branch: BranchRunner,
    ) -> PendingFork:
        """
        Clone ``state`` once per branch and start every branch concurrently.

        Returns:
            The PendingFork registered for a later join.
        """
        futures: Dict[str, Future] = {}
        tokens: Dict[str, CancellationToken] = {}
        for branch in branches:
            branch_state = state.clone()
            branch_state.current_node = branch
            branch_state.next_node = None
            branch_state.should_end = False
            token = self.cancel_token.child()
            tokens[branch] = token
            logger.debug(f"Launching branch '{branch}' from fork '{fork_name}'")
            futures[branch] = self.executor.submit(
                self._run_branch, run_branch, branch, branch_state, token
            )
        pending = PendingFork(fork_name, list(branches), futures, tokens)
        with self._lock:
            self._pending.append(pending)
        logger.info(f"Fork '{fork_name}' started {len(branches)} branch(es)")
        return pending

    @staticmethod
    def _run_branch(
        run_branch: BranchRunner,
        branch: str,
        state: GraphState,
        token: CancellationToken,
    ) -> BranchResult:
        start_time = time.time()
        try:
            final_state = run_branch(branch, state, token)
        except Exception as e:
            elapsed_ms = (time.time() - start_time) * 1000
            logger.error(f"Branch '{branch}' failed: {e}")
            last_state = getattr(e, "state", None)
            return BranchResult.from_error(
                branch, e, state=last_state if isinstance(last_state, GraphState) else None,
                timing_ms=elapsed_ms,
            )
        elapsed_ms = (time.time() - start_time) * 1000
        return BranchResult.from_success(branch, final_state, elapsed_ms)

    def _take(self, fork_name: Optional[str]) -> Optional[PendingFork]:
        with self._lock:
            for index in range(len(self._pending) - 1, -1, -1):
                pending = self._pending[index]
                if fork_name is None or pending.fork_name == fork_name:
                    return self._pending.pop(index)
        return None

    def join(
        self,
        join_name: str,
        strategy: JoinStrategy,
        fork_name: Optional[str] = None,
    ) -> Optional[List[BranchResult]]:
        """
        Block until ``strategy`` is satisfied for the selected pending fork.

        Args:
            join_name: Name of the join node (for errors and logs).
            strategy: The join strategy.
            fork_name: Pending fork to consume; None takes the most recent one.

        Returns:
            Successful results in branch declaration order, or None when no
            fork is pending.

        Raises:
            BranchExecutionError: ALL saw a failed branch, or too many branches
                failed for ANY/COUNT to be satisfied.
            ExecutionCancelled: The execution was cancelled while waiting.
        """
        pending = self._take(fork_name)
        if pending is None:
            return None

        candidates = pending.outstanding()
        required = strategy.required(len(candidates))
        successes: Dict[str, BranchResult] = {}
        failures: Dict[str, str] = {}
        outstanding = {pending.futures[b]: b for b in candidates}
        logger.info(
            f"Joining {len(candidates)} branch(es) of fork '{pending.fork_name}' "
            f"at '{join_name}' (strategy={strategy}, required={required})"
        )

        try:
            while len(successes) < required:
                if self.cancel_token.is_cancelled():
                    raise ExecutionCancelled(join_name)
                if len(successes) + len(outstanding) < required:
                    first_failed = next(iter(failures)) if failures else join_name
                    raise BranchExecutionError(
                        first_failed,
                        failures,
                        node=join_name,
                        message=(
                            f"Join '{join_name}' cannot be satisfied: needs {required} "
                            f"branch(es), {len(successes)} succeeded, failed: {failures}"
                        ),
                    )
                done, _ = wait(
                    list(outstanding), timeout=JOIN_POLL_INTERVAL, return_when=FIRST_COMPLETED
                )
                # Branches that stopped early because of the cancel are not results.
                if self.cancel_token.is_cancelled():
                    raise ExecutionCancelled(join_name)
                finished = [b for b in candidates if pending.futures[b] in done and b in outstanding.values()]
                for branch in finished:
                    if len(successes) >= required:
                        break
                    future = pending.futures[branch]
                    del outstanding[future]
                    pending.consumed.add(branch)
                    result: BranchResult = future.result()
                    if result.success:
                        successes[branch] = result
                        continue
                    failures[branch] = result.error or result.error_type or "unknown error"
                    if strategy.kind is JoinKind.ALL:
                        raise BranchExecutionError(branch, failures, node=join_name)
            if self.cancel_token.is_cancelled():
                raise ExecutionCancelled(join_name)
        except (BranchExecutionError, ExecutionCancelled):
            self._abandon(pending)
            raise

        if pending.outstanding():
            with self._lock:
                self._pending.append(pending)
            logger.debug(
                f"Fork '{pending.fork_name}' keeps running branches {pending.outstanding()}"
            )
        logger.info(f"Join '{join_name}' satisfied by {list(successes)}")
        return [successes[b] for b in candidates if b in successes]

    def _abandon(self, pending: PendingFork) -> None:
        for branch in pending.outstanding():
            pending.tokens[branch].cancel()
            pending.futures[branch].cancel()

    def shutdown(self) -> None:
        """Signal leftover branches to stop and release the pool without waiting."""
        with self._lock:
            leftovers, self._pending = self._pending, []
        for pending in leftovers:
            if pending.outstanding():
                logger.debug(
                    f"Cancelling unjoined branches {pending.outstanding()} of fork '{pending.fork_name}'"
                )
            self._abandon(pending)
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None


def merge_data_union(states: List[GraphState]) -> GraphState:
    """
    Default join merge: union of the branches' data maps.

    Later branches win on duplicate keys; output is taken from the last
    branch with a non-empty output.
    """
    if not states:
        return GraphState()
    merged = states[0].clone()
    merged.next_node = None
    merged.should_end = False
    for state in states[1:]:
        merged.data.update(state.clone().data)
        if state.output:
            merged.output = state.output
    return merged
