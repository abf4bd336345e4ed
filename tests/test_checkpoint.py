import json
import os
import shutil
import tempfile
import threading
import time
import unittest
import uuid
from datetime import datetime, timezone

import fsspec
from parameterized import parameterized

from loopgraph import (
    Checkpoint,
    ExecutionEngine,
    FileCheckpointStore,
    GraphBuilder,
    GraphInterrupted,
    GraphState,
    MemoryCheckpointStore,
    PersistenceError,
)

from sample_graphs import build_fan_out_graph, build_linear_graph, build_retry_graph


class StoreContract:
    """Behaviour shared by every CheckpointStore implementation."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def test_save_load_roundtrip(self):
        checkpoint = Checkpoint(
            id="cp1",
            graph_name="g",
            current_node="b",
            state_data={"n": 2, "items": ["x"], "nested": {"ok": True}},
            execution_history=["a"],
        )
        self.assertEqual(self.store.save(checkpoint), "cp1")
        loaded = self.store.load("cp1")
        self.assertEqual(loaded.current_node, "b")
        self.assertEqual(loaded.state_data, checkpoint.state_data)
        self.assertEqual(loaded.execution_history, ["a"])
        self.assertEqual(loaded.graph_name, "g")

    def test_load_missing_returns_none(self):
        self.assertIsNone(self.store.load("nope"))
        self.assertNotIn("nope", self.store)

    def test_delete_is_idempotent(self):
        self.store.delete("never-saved")
        self.store.save(Checkpoint(id="cp1", graph_name="g", current_node="a"))
        self.store.delete("cp1")
        self.store.delete("cp1")
        self.assertIsNone(self.store.load("cp1"))

    def test_overwrite_same_id(self):
        self.store.save(Checkpoint(id="cp1", graph_name="g", current_node="a", state_data={"v": 1}))
        self.store.save(Checkpoint(id="cp1", graph_name="g", current_node="b", state_data={"v": 2}))
        loaded = self.store.load("cp1")
        self.assertEqual((loaded.current_node, loaded.state_data), ("b", {"v": 2}))

    def test_save_sets_updated_at(self):
        checkpoint = Checkpoint(id="cp1", graph_name="g", current_node="a")
        before = checkpoint.updated_at
        time.sleep(0.01)
        self.store.save(checkpoint)
        self.assertGreater(self.store.load("cp1").updated_at, before)

    def test_list_filters_and_orders_newest_first(self):
        for checkpoint_id in ("first", "second"):
            self.store.save(Checkpoint(id=checkpoint_id, graph_name="g", current_node="a"))
            time.sleep(0.01)
        self.store.save(Checkpoint(id="other", graph_name="h", current_node="a"))
        time.sleep(0.01)
        self.store.save(Checkpoint(id="first", graph_name="g", current_node="b"))

        self.assertEqual([c.id for c in self.store.list("g")], ["first", "second"])
        self.assertEqual([c.id for c in self.store.list("h")], ["other"])
        self.assertEqual(len(self.store.list()), 3)

    def test_load_returns_copies(self):
        self.store.save(Checkpoint(id="cp1", graph_name="g", current_node="a", state_data={"l": [1]}))
        self.store.load("cp1").state_data["l"].append(2)
        self.assertEqual(self.store.load("cp1").state_data, {"l": [1]})

    def test_unserializable_state_rejected(self):
        with self.assertRaises(PersistenceError):
            self.store.save(Checkpoint(id="cp1", graph_name="g", current_node="a", state_data={"o": object()}))

    @parameterized.expand([
        ("path_separator", "../escape"),
        ("slash", "a/b"),
        ("empty", ""),
        ("space", "has space"),
    ])
    def test_invalid_ids_rejected(self, name, checkpoint_id):
        with self.assertRaises(PersistenceError):
            self.store.save(Checkpoint(id=checkpoint_id, graph_name="g", current_node="a"))


class TestMemoryCheckpointStore(StoreContract, unittest.TestCase):

    def make_store(self):
        return MemoryCheckpointStore()

    def test_clear_and_len(self):
        self.store.save(Checkpoint(id="cp1", graph_name="g", current_node="a"))
        self.assertEqual(len(self.store), 1)
        self.store.clear()
        self.assertEqual(len(self.store), 0)
        self.assertTrue(self.store)


class FileStoreContract(StoreContract):
    """Behaviour of FileCheckpointStore on any fsspec filesystem."""

    def save_concurrently(self, writers=8):
        def write(n):
            self.store.save(
                Checkpoint(
                    id="shared",
                    graph_name="g",
                    current_node=f"n{n}",
                    state_data={"writer": n, "payload": [n] * 500},
                )
            )

        threads = [threading.Thread(target=write, args=(n,)) for n in range(writers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def test_concurrent_saves_keep_one_complete_record(self):
        self.save_concurrently()
        loaded = self.store.load("shared")
        writer = loaded.state_data["writer"]
        self.assertEqual(loaded.current_node, f"n{writer}")
        self.assertEqual(loaded.state_data["payload"], [writer] * 500)
        self.assertEqual(self.store.fs.glob(f"{self.store.root}/*.tmp"), [])

    def test_id_locks_released(self):
        self.save_concurrently()
        self.store.delete("shared")
        self.store.save(Checkpoint(id="other", graph_name="g", current_node="a"))
        self.assertEqual(self.store._locks, {})

    def test_naive_and_zulu_timestamps_listed(self):
        self.store.save(Checkpoint(id="aware", graph_name="g", current_node="a"))
        for checkpoint_id, stamp in (("naive", "2024-01-01T00:00:00"), ("zulu", "2024-01-02T00:00:00Z")):
            record = {
                "id": checkpoint_id,
                "graph_name": "g",
                "current_node": "a",
                "state_data": {},
                "execution_history": [],
                "created_at": stamp,
                "updated_at": stamp,
            }
            with self.store.fs.open(self.store._path(checkpoint_id), "w") as f:
                json.dump(record, f)

        listed = self.store.list("g")
        self.assertEqual([c.id for c in listed], ["aware", "zulu", "naive"])
        self.assertEqual(listed[2].updated_at, datetime(2024, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(self.store.load("zulu").created_at, datetime(2024, 1, 2, tzinfo=timezone.utc))


class TestFileCheckpointStore(FileStoreContract, unittest.TestCase):

    def make_store(self):
        self.tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmpdir, True)
        return FileCheckpointStore(os.path.join(self.tmpdir, "checkpoints"))

    def test_file_layout(self):
        self.store.save(Checkpoint(id="cp1", graph_name="g", current_node="a", state_data={"k": "v"}))
        path = os.path.join(self.tmpdir, "checkpoints", "cp1.json")
        with open(path, encoding="utf-8") as f:
            record = json.load(f)
        self.assertEqual(
            set(record),
            {"id", "graph_name", "current_node", "state_data", "execution_history", "created_at", "updated_at"},
        )
        self.assertEqual(record["state_data"], {"k": "v"})
        self.assertEqual(
            [name for name in os.listdir(os.path.join(self.tmpdir, "checkpoints"))], ["cp1.json"]
        )

    def test_corrupt_files_skipped_in_list(self):
        self.store.save(Checkpoint(id="good", graph_name="g", current_node="a"))
        directory = os.path.join(self.tmpdir, "checkpoints")
        with open(os.path.join(directory, "broken.json"), "w") as f:
            f.write("{not json")
        with open(os.path.join(directory, "wrong_shape.json"), "w") as f:
            json.dump({"id": "wrong_shape"}, f)

        with self.assertLogs("loopgraph.checkpoint", level="WARNING") as logs:
            listed = self.store.list("g")
        self.assertEqual([c.id for c in listed], ["good"])
        self.assertEqual(len(logs.output), 2)

    def test_corrupt_file_load_raises(self):
        directory = os.path.join(self.tmpdir, "checkpoints")
        with open(os.path.join(directory, "broken.json"), "w") as f:
            f.write("[]")
        with self.assertRaises(PersistenceError):
            self.store.load("broken")

    def test_survives_new_store_instance(self):
        self.store.save(Checkpoint(id="cp1", graph_name="g", current_node="z"))
        reopened = FileCheckpointStore(os.path.join(self.tmpdir, "checkpoints"))
        self.assertEqual(reopened.load("cp1").current_node, "z")


class TestFsspecMemoryFilesystem(FileStoreContract, unittest.TestCase):

    def make_store(self):
        root = f"memory://loopgraph-tests/{uuid.uuid4().hex}"
        self.addCleanup(self._cleanup, root)
        return FileCheckpointStore(root)

    @staticmethod
    def _cleanup(root):
        fs, path = fsspec.core.url_to_fs(root)
        if fs.exists(path):
            fs.rm(path, recursive=True)


class TestEngineCheckpointing(unittest.TestCase):

    def setUp(self):
        self.store = MemoryCheckpointStore()

    def test_auto_checkpoint_records_next_node(self):
        engine = ExecutionEngine(build_retry_graph(), checkpoint_store=self.store, auto_checkpoint=True)
        events = list(engine.stream({"n": 0}, config={"checkpoint_id": "run1"}))

        saved = [e for e in events if e["type"] == "checkpoint"]
        self.assertEqual([e["node"] for e in saved], ["attempt", "attempt", "attempt"])
        self.assertTrue(all(e["checkpoint_id"] == "run1" for e in saved))

        checkpoint = self.store.load("run1")
        self.assertEqual(checkpoint.current_node, "done")
        self.assertEqual(checkpoint.execution_history, ["attempt", "attempt", "attempt"])
        self.assertEqual(checkpoint.state_data["n"], 3)
        self.assertEqual(checkpoint.graph_name, "retry")

    def test_resume_does_not_rerun_checkpointed_node(self):
        calls = []

        def step(name):
            def run(state):
                calls.append(name)
                if name == "third":
                    state.should_end = True
                return {name: True}

            return run

        builder = GraphBuilder("first", name="counted")
        for name in ("first", "second", "third"):
            builder.node(name, step(name))
        builder.edge("first", "second").edge("second", "third")
        definition = builder.build()

        engine = ExecutionEngine(definition, checkpoint_store=self.store)
        state = GraphState(current_node="second", data={"first": True})
        checkpoint_id = engine.save_checkpoint(state, "manual", ["first"])

        final = engine.resume(checkpoint_id)
        self.assertEqual(calls, ["second", "third"])
        self.assertEqual(final.data, {"first": True, "second": True, "third": True})

    def test_resume_after_auto_checkpoint(self):
        engine = ExecutionEngine(build_linear_graph(), checkpoint_store=self.store, auto_checkpoint=True)
        stream = engine.stream(config={"checkpoint_id": "run"})
        for event in stream:
            if event["type"] == "checkpoint":
                break
        stream.close()

        checkpoint = self.store.load("run")
        self.assertEqual(checkpoint.current_node, "second")
        final = engine.resume("run")
        self.assertEqual(final.get("visited"), ["first", "second", "third"])
        self.assertEqual(self.store.load("run").execution_history, ["first", "second"])

    def test_resume_merges_state_update(self):
        engine = ExecutionEngine(build_retry_graph(), checkpoint_store=self.store)
        engine.save_checkpoint(GraphState(current_node="attempt", data={"n": 0}), "cp")
        final = engine.resume("cp", state_update={"n": 5})
        self.assertEqual(final.get("n"), 6)

    def test_resume_missing_checkpoint(self):
        engine = ExecutionEngine(build_retry_graph(), checkpoint_store=self.store)
        with self.assertRaises(PersistenceError):
            engine.resume("missing")

    def test_save_checkpoint_preserves_created_at(self):
        engine = ExecutionEngine(build_retry_graph(), checkpoint_store=self.store)
        engine.save_checkpoint(GraphState(current_node="attempt"), "cp")
        created = self.store.load("cp").created_at
        time.sleep(0.01)
        engine.save_checkpoint(GraphState(current_node="done"), "cp")
        reloaded = self.store.load("cp")
        self.assertEqual(reloaded.created_at, created)
        self.assertGreater(reloaded.updated_at, created)

    def test_restore_state(self):
        engine = ExecutionEngine(build_retry_graph(), checkpoint_store=self.store)
        engine.save_checkpoint(GraphState(current_node="done", data={"n": 3}), "cp")
        state = engine.restore_state("cp")
        self.assertEqual((state.current_node, state.data), ("done", {"n": 3}))
        self.assertIsNone(engine.restore_state("missing"))

    def test_no_checkpoint_while_branches_await_join(self):
        engine = ExecutionEngine(build_fan_out_graph(), checkpoint_store=self.store, auto_checkpoint=True)
        events = list(engine.stream(config={"checkpoint_id": "run"}))
        self.assertEqual([e["node"] for e in events if e["type"] == "checkpoint"], ["start", "join"])

        checkpoint = self.store.load("run")
        self.assertEqual(checkpoint.current_node, "finish")
        self.assertEqual(checkpoint.state_data, {"started": True, "a": 1, "b": 2, "c": 3})
        final = engine.resume("run")
        self.assertEqual(final.data, {"started": True, "a": 1, "b": 2, "c": 3})

    def test_save_checkpoint_overwrites_corrupt_record(self):
        store = FileCheckpointStore("memory://loopgraph-corrupt-" + uuid.uuid4().hex)
        with store.fs.open(store._path("cp"), "w") as f:
            f.write("{not json")
        engine = ExecutionEngine(build_retry_graph(), checkpoint_store=store)
        engine.save_checkpoint(GraphState(current_node="done", data={"n": 3}), "cp")
        self.assertEqual(store.load("cp").state_data, {"n": 3})

    def test_save_without_store(self):
        with self.assertRaises(PersistenceError):
            ExecutionEngine(build_retry_graph()).save_checkpoint(GraphState())


class TestInterrupts(unittest.TestCase):

    def setUp(self):
        self.store = MemoryCheckpointStore()

    def test_interrupt_before_and_resume(self):
        engine = ExecutionEngine(build_linear_graph(), checkpoint_store=self.store, interrupt_before=["second"])
        with self.assertRaises(GraphInterrupted) as ctx:
            engine.execute()
        interrupted = ctx.exception
        self.assertEqual(interrupted.node, "second")
        self.assertEqual(interrupted.state.get("visited"), ["first"])

        checkpoint = self.store.load(interrupted.checkpoint_id)
        self.assertEqual(checkpoint.current_node, "second")

        final = engine.resume(interrupted.checkpoint_id)
        self.assertEqual(final.get("visited"), ["first", "second", "third"])

    def test_interrupt_after_and_resume(self):
        engine = ExecutionEngine(build_linear_graph(), checkpoint_store=self.store, interrupt_after=["first"])
        events = list(engine.stream())
        self.assertEqual(events[-1]["type"], "interrupt")
        self.assertEqual(events[-1]["node"], "first")
        checkpoint = self.store.load(events[-1]["checkpoint_id"])
        self.assertEqual(checkpoint.current_node, "second")
        self.assertEqual(checkpoint.execution_history, ["first"])

        final = engine.resume(events[-1]["checkpoint_id"])
        self.assertEqual(final.get("visited"), ["first", "second", "third"])

    def test_interrupts_inside_fork_window_are_ignored(self):
        engine = ExecutionEngine(
            build_fan_out_graph(),
            checkpoint_store=self.store,
            interrupt_after=["fork"],
            interrupt_before=["join"],
        )
        with self.assertLogs("loopgraph.engine", level="WARNING") as logs:
            final = engine.execute()
        self.assertEqual(final.data, {"started": True, "a": 1, "b": 2, "c": 3})
        self.assertEqual(len([line for line in logs.output if "await a join" in line]), 2)
        self.assertEqual(self.store.list(), [])

    def test_interrupt_without_store(self):
        engine = ExecutionEngine(build_linear_graph(), interrupt_before=["third"])
        with self.assertRaises(GraphInterrupted) as ctx:
            engine.execute()
        self.assertIsNone(ctx.exception.checkpoint_id)
        self.assertEqual(ctx.exception.state.get("visited"), ["first", "second"])


if __name__ == "__main__":
    unittest.main()
