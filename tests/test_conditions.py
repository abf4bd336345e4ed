import unittest

from parameterized import parameterized

from loopgraph import ExecutionEngine, GraphBuilder, GraphState, GraphValidationError
from loopgraph.conditions import Condition, equals, flag, negate, when


def is_ready(state):
    return state.get("ready")


class TestConditions(unittest.TestCase):

    @parameterized.expand([
        ("below", {"n": 1}, True),
        ("above", {"n": 5}, False),
        ("missing_key", {}, False),
    ])
    def test_when_compares(self, name, data, expected):
        self.assertIs(when("n < `3`")(GraphState(data=data)), expected)

    def test_when_nested_paths_and_strings(self):
        condition = when("result.status == 'ok' && length(result.items) > `1`")
        self.assertTrue(condition(GraphState(data={"result": {"status": "ok", "items": [1, 2]}})))
        self.assertFalse(condition(GraphState(data={"result": {"status": "ok", "items": [1]}})))

    def test_when_invalid_expression(self):
        with self.assertRaises(GraphValidationError):
            when("n <")

    def test_flag(self):
        self.assertTrue(flag("error")(GraphState(data={"error": "timeout"})))
        self.assertFalse(flag("error")(GraphState(data={"error": ""})))
        self.assertFalse(flag("error")(GraphState()))

    def test_equals(self):
        condition = equals("action", "tool")
        self.assertTrue(condition(GraphState(data={"action": "tool"})))
        self.assertFalse(condition(GraphState(data={"action": "answer"})))

    def test_negate(self):
        self.assertTrue(negate(flag("x"))(GraphState(data={"x": False})))
        self.assertFalse(negate(lambda s: True)(GraphState()))

    @parameterized.expand([
        ("when", when("n < `3`"), "n < `3`"),
        ("flag", flag("error"), "error"),
        ("equals", equals("action", "tool"), "action == 'tool'"),
        ("negate_labelled", negate(flag("error")), "not error"),
        ("negate_function", negate(is_ready), "not is_ready"),
        ("negate_lambda", negate(lambda s: True), "not condition"),
    ])
    def test_labels(self, name, condition, label):
        self.assertIsInstance(condition, Condition)
        self.assertEqual(condition.label, label)

    def test_labels_reach_edges(self):
        builder = GraphBuilder("a")
        builder.node("a", None).node("b", None).node("c", None).node("d", None)
        builder.edge("a", "b", condition=flag("go"))
        builder.edge("a", "c", condition=is_ready)
        builder.edge("a", "d", condition=lambda s: True)
        labels = [edge.condition_label for edge in builder.build().edges_from("a")]
        self.assertEqual(labels, ["go", "is_ready", "condition"])

    def test_routes_through_engine(self):
        builder = GraphBuilder("check")
        builder.node("check", None)
        builder.node("high", lambda s: setattr(s, "should_end", True))
        builder.node("low", lambda s: setattr(s, "should_end", True))
        builder.edge("check", "high", condition=when("score >= `0.8`"))
        builder.edge("check", "low", condition=negate(when("score >= `0.8`")))
        engine = ExecutionEngine(builder.build())
        self.assertEqual(engine.execute({"score": 0.9}).current_node, "high")
        self.assertEqual(engine.execute({"score": 0.1}).current_node, "low")


if __name__ == "__main__":
    unittest.main()
