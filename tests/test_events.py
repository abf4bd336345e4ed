import threading
import unittest

from parameterized import parameterized

from loopgraph import EventBus, ExecutionEngine, GraphBuilder, GraphExecutionError, GraphListener
from loopgraph.events import NODE_END, NODE_START, STREAMING

from sample_graphs import build_fan_out_graph, build_linear_graph


class RecordingListener:
    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def on_node_start(self, node):
        with self._lock:
            self.calls.append(("start", node))

    def on_node_end(self, node, elapsed):
        with self._lock:
            self.calls.append(("end", node))

    def on_error(self, node, error):
        with self._lock:
            self.calls.append(("error", node, type(error).__name__))


class StartOnly:
    def __init__(self):
        self.nodes = []

    def on_node_start(self, node):
        self.nodes.append(node)


class TestEventBus(unittest.TestCase):

    def test_listener_receives_lifecycle_in_order(self):
        listener = RecordingListener()
        engine = ExecutionEngine(build_linear_graph(), events=EventBus([listener]))
        engine.execute()
        self.assertEqual(
            listener.calls,
            [
                ("start", "first"), ("end", "first"),
                ("start", "second"), ("end", "second"),
                ("start", "third"), ("end", "third"),
            ],
        )

    def test_partial_listener(self):
        listener = StartOnly()
        bus = EventBus()
        bus.add_listener(listener)
        ExecutionEngine(build_linear_graph(), events=bus).execute()
        self.assertEqual(listener.nodes, ["first", "second", "third"])

    def test_full_listener_matches_protocol(self):
        class Full:
            def on_node_start(self, node): pass
            def on_node_end(self, node, elapsed): pass
            def on_error(self, node, error): pass
            def on_streaming(self, chunk): pass

        self.assertIsInstance(Full(), GraphListener)

    def test_closures_receive_arguments(self):
        engine = ExecutionEngine(build_linear_graph())
        ends = []
        engine.on(NODE_END, lambda node, elapsed: ends.append((node, elapsed >= 0)))
        engine.execute()
        self.assertEqual(ends, [("first", True), ("second", True), ("third", True)])

    def test_on_returns_handler_for_decorator_use(self):
        bus = EventBus()
        seen = []

        def on_start(handler):
            return bus.on(NODE_START, handler)

        @on_start
        def record(node):
            seen.append(node)

        bus.fire_node_start("x")
        self.assertEqual(seen, ["x"])
        self.assertEqual(len(bus), 1)

    def test_off_and_remove_listener(self):
        bus = EventBus()
        seen = []
        handler = bus.on(NODE_START, seen.append)
        listener = StartOnly()
        bus.add_listener(listener)
        bus.off(NODE_START, handler)
        bus.remove_listener(listener)
        bus.fire_node_start("x")
        self.assertEqual((seen, listener.nodes), ([], []))
        self.assertEqual(len(bus), 0)
        self.assertTrue(bus)

    def test_unknown_event_rejected(self):
        with self.assertRaises(ValueError):
            EventBus().on("node_finished", print)

    def test_unknown_policy_rejected(self):
        with self.assertRaises(ValueError):
            EventBus(error_policy="ignore")

    def test_error_event_fires_before_propagation(self):
        listener = RecordingListener()

        def broken(state):
            raise KeyError("missing")

        builder = GraphBuilder("broken")
        builder.node("broken", broken)
        engine = ExecutionEngine(builder.build(), events=EventBus([listener]))
        with self.assertRaises(GraphExecutionError):
            engine.execute()
        self.assertEqual(listener.calls[-1], ("error", "broken", "KeyError"))

    def test_streaming_event(self):
        def talker(state, emit):
            emit(1)
            state.should_end = True

        builder = GraphBuilder("talker")
        builder.node("talker", talker)
        engine = ExecutionEngine(builder.build())
        chunks = []
        engine.on(STREAMING, chunks.append)
        engine.execute()
        self.assertEqual(chunks, ["1"])

    def test_branch_events_from_worker_threads(self):
        listener = RecordingListener()
        ExecutionEngine(build_fan_out_graph(), events=EventBus([listener])).execute()
        started = {call[1] for call in listener.calls if call[0] == "start"}
        self.assertEqual(started, {"start", "fork", "a", "b", "c", "join", "finish"})


class TestErrorPolicies(unittest.TestCase):

    @staticmethod
    def failing(node):
        raise RuntimeError("handler broke")

    def test_log_policy_keeps_running(self):
        bus = EventBus()
        bus.on(NODE_START, self.failing)
        with self.assertLogs("loopgraph.events", level="WARNING") as logs:
            final = ExecutionEngine(build_linear_graph(), events=bus).execute()
        self.assertEqual(final.get("visited"), ["first", "second", "third"])
        self.assertEqual(len(logs.output), 3)

    def test_raise_policy_propagates(self):
        bus = EventBus(error_policy="raise")
        bus.on(NODE_START, self.failing)
        with self.assertRaises(RuntimeError):
            ExecutionEngine(build_linear_graph(), events=bus).execute()

    @parameterized.expand([
        ("closure", False),
        ("listener", True),
    ])
    def test_remove_policy_drops_failing_handler(self, name, as_listener):
        bus = EventBus(error_policy="remove")
        calls = []

        def flaky(node):
            calls.append(node)
            raise RuntimeError("once is enough")

        if as_listener:
            listener = StartOnly()
            listener.on_node_start = flaky
            bus.add_listener(listener)
        else:
            bus.on(NODE_START, flaky)

        with self.assertLogs("loopgraph.events", level="WARNING"):
            ExecutionEngine(build_linear_graph(), events=bus).execute()
        self.assertEqual(calls, ["first"])
        self.assertEqual(len(bus), 0)

    def test_other_handlers_still_called(self):
        bus = EventBus()
        seen = []
        bus.on(NODE_START, self.failing)
        bus.on(NODE_START, seen.append)
        with self.assertLogs("loopgraph.events", level="WARNING"):
            bus.fire_node_start("x")
        self.assertEqual(seen, ["x"])


if __name__ == "__main__":
    unittest.main()
