import loopgraph as lg


def run_two_flows_fan_out_fan_in_example():
    """
This example demonstrates a two-flows fan-out and fan-in execution pattern using fork and join nodes.

The workflow branches into two concurrent flows: one performs summation, the other multiplication.
Each branch works on its own clone of the state. The join waits for both (JoinStrategy.ALL), and a
custom merge function aggregates the branch states into one.

## Workflow Structure:
   - start -> fork -> [sum_flow, multiply_flow] -> fan_in -> end

## Example:
- Initial State: {'a': 4, 'b': 5}
- sum_flow: 4 + 5 = 9
- multiply_flow: 4 * 5 = 20
- fan_in: 9 + 20 = 29

## Expected Output:
Starting the two-flows fan-out and fan-in example with initial state: {'a': 4, 'b': 5}
start_run: Initialized 'a' = 4, 'b' = 5
sum_flow_run: Calculated sum_result = 9
multiply_flow_run: Calculated multiply_result = 20
fan_in_merge: Aggregated sum_result and multiply_result -> total = 29
end_run: Final aggregated result = 29

Final output: 29
"""

    def start_run(state):
        state.set("a", state.get("a", 4)).set("b", state.get("b", 5))
        print(f"start_run: Initialized 'a' = {state.get('a')}, 'b' = {state.get('b')}")

    def sum_flow_run(state):
        sum_result = state.get("a", 0) + state.get("b", 0)
        print(f"sum_flow_run: Calculated sum_result = {sum_result}")
        return {"sum_result": sum_result}

    def multiply_flow_run(state):
        multiply_result = state.get("a", 0) * state.get("b", 0)
        print(f"multiply_flow_run: Calculated multiply_result = {multiply_result}")
        return {"multiply_result": multiply_result}

    def fan_in_merge(states):
        merged = lg.merge_data_union(states)
        total = merged.get("sum_result", 0) + merged.get("multiply_result", 0)
        print(f"fan_in_merge: Aggregated sum_result and multiply_result -> total = {total}")
        return merged.set("result", total)

    def end_run(state):
        print(f"end_run: Final aggregated result = {state.get('result')}")
        state.output = str(state.get("result"))
        state.should_end = True

    builder = lg.GraphBuilder("start", name="two_flows")
    builder.node("start", start_run)
    builder.fork("fork", "sum_flow", "multiply_flow")
    builder.node("sum_flow", sum_flow_run)
    builder.node("multiply_flow", multiply_flow_run)
    builder.join("fan_in", lg.JoinStrategy.ALL, merge=fan_in_merge, fork="fork")
    builder.node("end", end_run)

    builder.edge("start", "fork")
    builder.edge("fork", "fan_in")
    builder.edge("sum_flow", "fan_in")
    builder.edge("multiply_flow", "fan_in")
    builder.edge("fan_in", "end")
    definition = builder.build()

    initial_state = {"a": 4, "b": 5}
    print("Starting the two-flows fan-out and fan-in example with initial state:", initial_state)

    final_state = None
    for event in lg.ExecutionEngine(definition).stream(initial_state):
        if event["type"] == "final":
            final_state = event["state"]

    if final_state:
        print(f"\nFinal output: {final_state.output}")
    else:
        print("No final output was produced.")


if __name__ == "__main__":
    run_two_flows_fan_out_fan_in_example()
