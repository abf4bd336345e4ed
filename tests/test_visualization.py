import importlib.util
import unittest
from unittest.mock import MagicMock, patch

from loopgraph import GraphBuilder

from sample_graphs import build_fan_out_graph, build_retry_graph

HAS_PYGRAPHVIZ = importlib.util.find_spec("pygraphviz") is not None


class TestTextExport(unittest.TestCase):

    def test_retry_graph(self):
        self.assertEqual(
            build_retry_graph().to_text(),
            "\n".join([
                "Graph: retry (entry: attempt, max_iterations: 10)",
                "Nodes (2):",
                "  attempt - Try the flaky operation",
                "  done",
                "Edges (2):",
                "  attempt -> attempt [when: error]",
                "  attempt -> done [when: ok]",
            ]),
        )

    def test_fork_and_join_marked(self):
        text = build_fan_out_graph().to_text()
        self.assertIn("  fork [fork]", text)
        self.assertIn("  join [join]", text)
        self.assertIn("  fork => a [branch]", text)
        self.assertIn("  fork -> join\n", text)


class TestDotExport(unittest.TestCase):

    def test_retry_graph(self):
        dot = build_retry_graph().to_dot()
        self.assertTrue(dot.startswith('digraph "retry" {'))
        self.assertTrue(dot.endswith("}"))
        self.assertIn('"attempt" [label="attempt", penwidth=2];', dot)
        self.assertIn('"attempt" -> "attempt" [label="when: error"];', dot)
        self.assertIn('"attempt" -> "done" [label="when: ok"];', dot)

    def test_fork_branches_dashed(self):
        dot = build_fan_out_graph().to_dot()
        self.assertIn('"fork" [label="fork", shape=diamond];', dot)
        self.assertIn('"fork" -> "b" [style=dashed];', dot)

    def test_quotes_are_escaped(self):
        builder = GraphBuilder('say "hi"', name="quotes")
        builder.node('say "hi"', None)
        self.assertIn('"say \\"hi\\""', builder.build().to_dot())


class TestMermaidExport(unittest.TestCase):

    def test_retry_graph(self):
        self.assertEqual(
            build_retry_graph().to_mermaid(),
            "\n".join([
                "graph TD",
                "    attempt([attempt])",
                "    done[done]",
                "    attempt-->|error|attempt",
                "    attempt-->|ok|done",
            ]),
        )

    def test_fork_join_shapes(self):
        mermaid = build_fan_out_graph().to_mermaid()
        self.assertIn("    fork{fork}", mermaid)
        self.assertIn("    join{join}", mermaid)
        self.assertIn("    fork-.->c", mermaid)
        self.assertIn("    fork-->join", mermaid)

    def test_node_ids_escaped(self):
        builder = GraphBuilder("load data", name="escape")
        builder.node("load data", None).node("clean-up", None)
        builder.edge("load data", "clean-up", label="a|b")
        mermaid = builder.build().to_mermaid()
        self.assertIn("    load_data([load data])", mermaid)
        self.assertIn("    load_data-->|a/b|clean_up", mermaid)


class TestGraphvizRendering(unittest.TestCase):

    def test_missing_pygraphviz_hint(self):
        with patch("loopgraph.visualization.to_agraph", side_effect=ImportError("no pygraphviz")):
            with self.assertRaises(ImportError) as ctx:
                build_retry_graph().render_graphviz()
        self.assertIn("loopgraph[viz]", str(ctx.exception))

    def test_save_graph_image_lays_out_and_draws(self):
        definition = build_retry_graph()
        agraph = MagicMock()
        with patch.object(type(definition), "render_graphviz", return_value=agraph) as render:
            definition.save_graph_image("out.png", interrupt_before=["done"])
        render.assert_called_once_with(interrupt_before=["done"])
        agraph.layout.assert_called_once_with(prog="dot")
        agraph.draw.assert_called_once_with("out.png")

    @unittest.skipUnless(HAS_PYGRAPHVIZ, "pygraphviz not installed")
    def test_render_marks_interrupts(self):
        agraph = build_fan_out_graph().render_graphviz(interrupt_before=["join"])
        self.assertIn("interrupt_before: True", agraph.get_node("join").attr["label"])
        self.assertEqual(agraph.get_edge("fork", "a").attr["style"], "dashed")


if __name__ == "__main__":
    unittest.main()
