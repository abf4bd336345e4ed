"""
Checkpoint persistence for graph executions.

A checkpoint is a snapshot of GraphState.data plus the position in the graph,
enough to resume an execution later from where it stopped.

Available stores:
    - MemoryCheckpointStore: In-memory storage for tests and short-lived processes
    - FileCheckpointStore: One JSON file per checkpoint on any fsspec filesystem

Example:
    >>> from loopgraph.checkpoint import FileCheckpointStore
    >>> store = FileCheckpointStore("/tmp/checkpoints")
    >>> engine = ExecutionEngine(definition, checkpoint_store=store, auto_checkpoint=True)
    >>> final = engine.execute(GraphState(data={"x": 1}))
    >>> for checkpoint in store.list(definition.name):
    ...     print(checkpoint.id, checkpoint.current_node)
"""

import copy
import json
import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import fsspec
import jsonschema
from jsonschema import Draft202012Validator

from loopgraph.exceptions import PersistenceError
from loopgraph.state import GraphState, ensure_serializable

logger = logging.getLogger(__name__)

_VALID_ID = re.compile(r"^[A-Za-z0-9_.-]+$")

CHECKPOINT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "loopgraph checkpoint",
    "type": "object",
    "required": [
        "id",
        "graph_name",
        "current_node",
        "state_data",
        "execution_history",
        "created_at",
        "updated_at",
    ],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "graph_name": {"type": "string"},
        "current_node": {"type": "string"},
        "state_data": {"type": "object"},
        "execution_history": {"type": "array", "items": {"type": "string"}},
        "created_at": {"type": "string"},
        "updated_at": {"type": "string"},
    },
}

_validator = Draft202012Validator(CHECKPOINT_SCHEMA)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_checkpoint_id() -> str:
    return uuid.uuid4().hex


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Checkpoint:
    """
    Persisted snapshot of a GraphState and its position in the graph.

    ``current_node`` is the node an execution resumed from this checkpoint
    starts at; ``execution_history`` lists the nodes already run, in order.
    """

    id: str = field(default_factory=new_checkpoint_id)
    graph_name: str = ""
    current_node: str = ""
    state_data: Dict[str, Any] = field(default_factory=dict)
    execution_history: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_state(
        cls,
        state: GraphState,
        graph_name: str,
        execution_history: Optional[List[str]] = None,
        checkpoint_id: Optional[str] = None,
    ) -> "Checkpoint":
        return cls(
            id=checkpoint_id or new_checkpoint_id(),
            graph_name=graph_name,
            current_node=state.current_node,
            state_data=copy.deepcopy(state.data),
            execution_history=list(execution_history or []),
        )

    def to_state(self) -> GraphState:
        """Reconstruct a GraphState positioned at ``current_node``."""
        return GraphState(current_node=self.current_node, data=copy.deepcopy(self.state_data))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "graph_name": self.graph_name,
            "current_node": self.current_node,
            "state_data": copy.deepcopy(self.state_data),
            "execution_history": list(self.execution_history),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "Checkpoint":
        """
        Build a checkpoint from a stored record.

        Raises:
            PersistenceError: If the record does not match CHECKPOINT_SCHEMA.
        """
        try:
            _validator.validate(record)
            return cls(
                id=record["id"],
                graph_name=record["graph_name"],
                current_node=record["current_node"],
                state_data=copy.deepcopy(record["state_data"]),
                execution_history=list(record["execution_history"]),
                created_at=parse_timestamp(record["created_at"]),
                updated_at=parse_timestamp(record["updated_at"]),
            )
        except jsonschema.ValidationError as e:
            raise PersistenceError(f"Invalid checkpoint record: {e.message}") from e
        except ValueError as e:
            raise PersistenceError(f"Invalid checkpoint timestamp: {e}") from e

    def copy(self) -> "Checkpoint":
        return copy.deepcopy(self)


def _check_id(checkpoint_id: str) -> None:
    if not isinstance(checkpoint_id, str) or not _VALID_ID.match(checkpoint_id):
        raise PersistenceError(
            f"Invalid checkpoint id {checkpoint_id!r}: use letters, digits, '_', '.' or '-'"
        )


def _check_serializable(checkpoint: Checkpoint) -> None:
    try:
        ensure_serializable(checkpoint.state_data, "state_data")
    except TypeError as e:
        raise PersistenceError(f"Checkpoint '{checkpoint.id}' is not serializable: {e}") from e


class CheckpointStore(ABC):
    """
    Interface for checkpoint persistence.

    Contract:
        - save() overwrites a checkpoint with the same id and sets updated_at
        - load() returns None for a missing id
        - list() is ordered by updated_at, newest first
        - delete() is idempotent
    """

    @abstractmethod
    def save(self, checkpoint: Checkpoint) -> str:
        """Persist ``checkpoint`` and return its id."""

    @abstractmethod
    def load(self, checkpoint_id: str) -> Optional[Checkpoint]:
        """Return the checkpoint or None when it does not exist."""

    @abstractmethod
    def list(self, graph_name: Optional[str] = None) -> List[Checkpoint]:
        """Return the checkpoints of ``graph_name`` (all when None), newest first."""

    @abstractmethod
    def delete(self, checkpoint_id: str) -> None:
        """Remove a checkpoint; missing ids are ignored."""

    def __contains__(self, checkpoint_id: str) -> bool:
        return self.load(checkpoint_id) is not None


class MemoryCheckpointStore(CheckpointStore):
    """
    In-memory checkpoint storage for testing and simple use cases.

    Note:
        Checkpoints are lost when the process exits. For persistent storage,
        use FileCheckpointStore instead.

    Example:
        >>> store = MemoryCheckpointStore()
        >>> store.save(Checkpoint(id="cp_1", graph_name="g", current_node="a"))
        'cp_1'
        >>> store.load("cp_1").current_node
        'a'
    """

    def __init__(self) -> None:
        self._storage: Dict[str, Checkpoint] = {}
        self._lock = threading.Lock()

    def save(self, checkpoint: Checkpoint) -> str:
        _check_id(checkpoint.id)
        _check_serializable(checkpoint)
        with self._lock:
            checkpoint.updated_at = _utcnow()
            # Stored as a copy to prevent external modification
            self._storage[checkpoint.id] = checkpoint.copy()
        return checkpoint.id

    def load(self, checkpoint_id: str) -> Optional[Checkpoint]:
        with self._lock:
            checkpoint = self._storage.get(checkpoint_id)
            return checkpoint.copy() if checkpoint is not None else None

    def list(self, graph_name: Optional[str] = None) -> List[Checkpoint]:
        with self._lock:
            matching = [c.copy() for c in self._storage.values() if graph_name is None or c.graph_name == graph_name]
        return sorted(matching, key=lambda c: c.updated_at, reverse=True)

    def delete(self, checkpoint_id: str) -> None:
        with self._lock:
            self._storage.pop(checkpoint_id, None)

    def clear(self) -> None:
        """Delete all checkpoints."""
        with self._lock:
            self._storage.clear()

    def __len__(self) -> int:
        return len(self._storage)

    def __bool__(self) -> bool:
        """Store is always truthy (even when empty)."""
        return True


class FileCheckpointStore(CheckpointStore):
    """
    File-backed checkpoint store: one ``{id}.json`` file per checkpoint.

    ``root`` is a local directory or any fsspec URL (``memory://``, ``s3://``,
    ``gs://`` ...). Writes to the same id are serialised; different ids are
    written concurrently without coordination.

    Attributes:
        root (str): Directory path on the resolved filesystem.
        fs: The fsspec filesystem instance.
    """

    def __init__(self, root: str):
        if not root:
            raise PersistenceError("FileCheckpointStore needs a root directory")
        self.uri = root
        self.fs, self.root = fsspec.core.url_to_fs(root)
        self.root = self.root.rstrip("/") or "/"
        # id -> [lock, number of callers holding or waiting for it]
        self._locks: Dict[str, List[Any]] = {}
        self._locks_guard = threading.Lock()
        try:
            self.fs.makedirs(self.root, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create checkpoint directory '{root}': {e}") from e

    def _path(self, checkpoint_id: str) -> str:
        return f"{self.root}/{checkpoint_id}.json"

    @contextmanager
    def _locked(self, checkpoint_id: str) -> Iterator[None]:
        """Hold the per-id lock; the entry is dropped once nobody uses it."""
        with self._locks_guard:
            entry = self._locks.setdefault(checkpoint_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[checkpoint_id]

    def save(self, checkpoint: Checkpoint) -> str:
        """
        Write the checkpoint file, replacing any previous version.

        Raises:
            PersistenceError: On invalid id, unserializable state or I/O failure.
        """
        _check_id(checkpoint.id)
        _check_serializable(checkpoint)
        path = self._path(checkpoint.id)
        with self._locked(checkpoint.id):
            checkpoint.updated_at = _utcnow()
            payload = json.dumps(checkpoint.to_dict(), indent=2, ensure_ascii=False)
            tmp_path = f"{path}.{uuid.uuid4().hex}.tmp"
            try:
                with self.fs.open(tmp_path, "w", encoding="utf-8") as f:
                    f.write(payload)
                self.fs.mv(tmp_path, path)
            except (OSError, ValueError) as e:
                error_msg = f"Failed to save checkpoint to '{path}': {e}"
                logger.error(error_msg)
                raise PersistenceError(error_msg) from e
        logger.info(f"Checkpoint '{checkpoint.id}' saved to '{path}'")
        return checkpoint.id

    def _read(self, path: str) -> Checkpoint:
        try:
            with self.fs.open(path, "r", encoding="utf-8") as f:
                record = json.load(f)
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(f"Failed to read checkpoint file '{path}': {e}") from e
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt checkpoint file '{path}': {e}") from e
        if not isinstance(record, dict):
            raise PersistenceError(
                f"Invalid checkpoint format in '{path}': expected object, got {type(record).__name__}"
            )
        return Checkpoint.from_dict(record)

    def load(self, checkpoint_id: str) -> Optional[Checkpoint]:
        """
        Load a checkpoint by id.

        Returns:
            The checkpoint, or None if no file exists for ``checkpoint_id``.

        Raises:
            PersistenceError: If the file exists but is unreadable or corrupt.
        """
        if not isinstance(checkpoint_id, str) or not _VALID_ID.match(checkpoint_id):
            return None
        path = self._path(checkpoint_id)
        if not self.fs.exists(path):
            return None
        return self._read(path)

    def list(self, graph_name: Optional[str] = None) -> List[Checkpoint]:
        """Checkpoints of ``graph_name``, newest first; corrupt files are skipped."""
        checkpoints = []
        for path in sorted(self.fs.glob(f"{self.root}/*.json")):
            try:
                checkpoint = self._read(path)
            except PersistenceError as e:
                logger.warning(f"Skipping unreadable checkpoint '{path}': {e}")
                continue
            if graph_name is None or checkpoint.graph_name == graph_name:
                checkpoints.append(checkpoint)
        return sorted(checkpoints, key=lambda c: c.updated_at, reverse=True)

    def delete(self, checkpoint_id: str) -> None:
        if not isinstance(checkpoint_id, str) or not _VALID_ID.match(checkpoint_id):
            return
        path = self._path(checkpoint_id)
        with self._locked(checkpoint_id):
            try:
                if self.fs.exists(path):
                    self.fs.rm(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise PersistenceError(f"Failed to delete checkpoint '{path}': {e}") from e
        logger.debug(f"Checkpoint '{checkpoint_id}' deleted")
