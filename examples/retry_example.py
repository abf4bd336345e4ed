"""
A flaky operation retried in a loop until it succeeds.

``attempt`` loops back to itself while the ``error`` flag is set and moves
to ``done`` once it clears. Every step is checkpointed to a local directory,
so ``loopgraph checkpoints list ./retry-checkpoints`` shows the run afterwards.

Run it with:
    python examples/retry_example.py
or through the CLI:
    loopgraph run examples/retry_example.py:build_graph --input '{"n": 0}'
"""

import logging
import random

import loopgraph as lg
from loopgraph.conditions import flag, negate


def attempt(state):
    n = state.get("n", 0) + 1
    failed = random.random() < 0.6 and n < 5
    print(f"attempt #{n}: {'failed' if failed else 'succeeded'}")
    return {"n": n, "error": failed}


def done(state):
    state.output = f"succeeded after {state.get('n')} attempt(s)"
    state.should_end = True


def build_graph():
    return (
        lg.GraphBuilder("attempt", max_iterations=10, name="retry")
        .node("attempt", attempt, "Try the flaky operation")
        .node("done", done)
        .edge("attempt", "attempt", condition=flag("error"))
        .edge("attempt", "done", condition=negate(flag("error")))
        .build()
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    definition = build_graph()
    print(definition.to_mermaid())

    engine = lg.ExecutionEngine(
        definition,
        checkpoint_store=lg.FileCheckpointStore("./retry-checkpoints"),
        auto_checkpoint=True,
        log_level=logging.INFO,
    )
    engine.on("node_end", lambda node, elapsed: print(f"  {node} took {elapsed * 1000:.1f}ms"))
    final = engine.execute({"n": 0})
    print(final.output)
