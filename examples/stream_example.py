import loopgraph as lg

# Define the graph
builder = lg.GraphBuilder("start", name="stream_example")
builder.node("start", lambda state: {"value": state.get("value", 0) + 1})


def finish(state, emit):
    emit(f"Final value: {state.get('value')}")
    state.output = f"Final value: {state.get('value')}"
    state.should_end = True


builder.node("end", finish)
builder.edge("start", "end")
definition = builder.build()

# Interrupts stop execution and need an explicit resume from the saved checkpoint
store = lg.MemoryCheckpointStore()
engine = lg.ExecutionEngine(definition, checkpoint_store=store, interrupt_before=["start", "end"])

checkpoint_id = None
input_state = {"value": 1}

while True:
    if checkpoint_id:
        stream = engine.stream(checkpoint_id=checkpoint_id)
    else:
        stream = engine.stream(input_state)

    checkpoint_id = None
    for event in stream:
        if event["type"] == "node_end":
            print(f"Intermediate state at node {event['node']}: {event['state'].data}")
        elif event["type"] == "streaming":
            print(f"Chunk from {event['node']}: {event['chunk']}")
        elif event["type"] == "interrupt":
            print(f"Interrupt before node {event['node']}: {event['state'].data}")
            checkpoint_id = event["checkpoint_id"]
        elif event["type"] == "final":
            print(f"Final state: {event['state'].data} -> {event['state'].output}")

    if checkpoint_id is None:
        break
