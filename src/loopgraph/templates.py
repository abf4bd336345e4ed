"""
Pre-built graphs for common LLM agent patterns.

Each factory takes an ``llm`` callable (``(prompt: str) -> str``) and returns
a validated GraphDefinition. Prompts are Jinja2 templates rendered with
StrictUndefined, so a missing variable fails loudly instead of producing an
empty prompt.

Available templates:
    - react_graph: Reason/act loop that calls tools until the model answers
    - reflection_graph: Generate, critique and refine until the critique is satisfied
    - map_reduce_graph: Summarise documents in parallel, then combine the summaries

Example:
    >>> graph = react_graph(my_llm, {"add": lambda a, b: a + b})
    >>> final = ExecutionEngine(graph).execute({"task": "What is 2 + 3?"})
    >>> final.output
    '5'
"""

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Sequence

from jinja2 import BaseLoader, Environment, StrictUndefined

from loopgraph.builder import GraphBuilder
from loopgraph.conditions import equals
from loopgraph.exceptions import GraphValidationError
from loopgraph.graph import GraphDefinition
from loopgraph.parallel import JoinStrategy, merge_data_union
from loopgraph.state import GraphState

logger = logging.getLogger(__name__)

LLM = Callable[[str], str]

_jinja_env = Environment(
    loader=BaseLoader(),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)

REACT_PROMPT = _jinja_env.from_string(
    """Task: {{ task }}

Available tools: {{ tools | join(", ") if tools else "none" }}

Previous steps:
{% for step in history %}{{ step }}
{% endfor %}
Think about what to do next. If you need to use a tool, respond with JSON:
{"action": "tool", "tool": "tool_name", "args": {"param": "value"}}

If you can answer directly, respond with JSON:
{"action": "answer", "content": "your answer"}"""
)

GENERATE_PROMPT = _jinja_env.from_string("Complete this task: {{ task }}")

REFLECT_PROMPT = _jinja_env.from_string(
    """Task: {{ task }}
Response: {{ response }}

Critically evaluate this response. Is it correct? What could be improved?"""
)

REFINE_PROMPT = _jinja_env.from_string(
    """Task: {{ task }}
Previous attempt: {{ response }}
Reflection: {{ reflection }}

Provide an improved response:"""
)

SUMMARISE_PROMPT = _jinja_env.from_string("Summarise this document:\n\n{{ document }}")

REDUCE_PROMPT = _jinja_env.from_string(
    """Combine these summaries into one answer:
{% for summary in summaries %}
- {{ summary }}{% endfor %}"""
)


def react_graph(
    llm: LLM,
    tools: Mapping[str, Callable[..., Any]],
    max_iterations: int = 20,
    name: str = "react",
) -> GraphDefinition:
    """
    ReAct loop: think -> parse -> execute_tool -> think ... -> finalize.

    Input state keys: ``task``. The model replies with JSON; an unparsable
    reply is recorded in ``history`` and the loop thinks again. Tool errors
    are recorded as the tool result so the model can react to them.

    Args:
        llm: Model callable.
        tools: Tool callables keyed by name, called with the reply's ``args``.
        max_iterations: Node executions allowed before IterationLimitExceeded.
        name: Graph name.
    """
    tools = dict(tools)

    def think(state: GraphState) -> Dict[str, Any]:
        prompt = REACT_PROMPT.render(
            task=state.get("task", ""),
            tools=sorted(tools),
            history=state.get("history", []),
        )
        return {"llm_response": llm(prompt)}

    def parse(state: GraphState) -> None:
        response = state.get("llm_response", "")
        history = list(state.get("history", []))
        try:
            reply = json.loads(response)
            action = reply["action"]
            if action == "tool":
                state.set("tool_name", reply["tool"]).set("tool_args", reply.get("args") or {})
            elif action == "answer":
                state.set("answer", str(reply["content"]))
            else:
                raise ValueError(f"unknown action '{action}'")
        except (ValueError, KeyError, TypeError) as e:
            logger.debug(f"Unparsable model reply, thinking again: {e}")
            history.append(f"Invalid reply ({e}): {response}")
            state.set("history", history).set("action", None)
            state.next_node = "think"
            return
        state.set("action", action)

    def execute_tool(state: GraphState) -> Dict[str, Any]:
        tool_name = state.get("tool_name")
        args = state.get("tool_args") or {}
        tool = tools.get(tool_name)
        if tool is None:
            result = f"Unknown tool '{tool_name}'"
        else:
            try:
                result = tool(**args)
            except Exception as e:
                logger.warning(f"Tool '{tool_name}' failed: {e}")
                result = f"Error: {e}"
        history = list(state.get("history", []))
        history.append(f"Action: {tool_name}({json.dumps(args, sort_keys=True)}) -> {result}")
        return {"tool_result": result, "history": history}

    def finalize(state: GraphState) -> None:
        state.output = state.get("answer", "")
        state.should_end = True

    builder = GraphBuilder("think", max_iterations=max_iterations, name=name)
    builder.node("think", think, "Ask the model for the next step")
    builder.node("parse", parse, "Decode the model reply")
    builder.node("execute_tool", execute_tool, "Call the requested tool")
    builder.node("finalize", finalize, "Publish the answer")
    builder.edge("think", "parse")
    builder.edge("parse", "execute_tool", condition=equals("action", "tool"))
    builder.edge("parse", "finalize", condition=equals("action", "answer"))
    builder.edge("execute_tool", "think")
    return builder.build()


def reflection_graph(llm: LLM, max_rounds: int = 3, name: str = "reflection") -> GraphDefinition:
    """
    Self-correcting loop: generate -> reflect -> refine -> reflect ... -> finalize.

    Input state keys: ``task``. Refinement happens while the reflection
    mentions "improve" or "incorrect" and fewer than ``max_rounds`` responses
    have been produced.
    """
    if max_rounds < 1:
        raise GraphValidationError(f"max_rounds must be at least 1, got {max_rounds}")

    def generate(state: GraphState) -> Dict[str, Any]:
        return {"response": llm(GENERATE_PROMPT.render(task=state.get("task", ""))), "attempts": 1}

    def reflect(state: GraphState) -> Dict[str, Any]:
        prompt = REFLECT_PROMPT.render(task=state.get("task", ""), response=state.get("response", ""))
        return {"reflection": llm(prompt)}

    def refine(state: GraphState) -> Dict[str, Any]:
        prompt = REFINE_PROMPT.render(
            task=state.get("task", ""),
            response=state.get("response", ""),
            reflection=state.get("reflection", ""),
        )
        return {"response": llm(prompt), "attempts": state.get("attempts", 1) + 1}

    def finalize(state: GraphState) -> None:
        state.output = state.get("response", "")
        state.should_end = True

    def needs_refinement(state: GraphState) -> bool:
        reflection = str(state.get("reflection", "")).lower()
        wants_change = "improve" in reflection or "incorrect" in reflection
        return wants_change and state.get("attempts", 1) < max_rounds

    # Each round is reflect + refine, plus generate, a last reflect and finalize.
    builder = GraphBuilder("generate", max_iterations=2 * max_rounds + 3, name=name)
    builder.node("generate", generate, "Draft a response")
    builder.node("reflect", reflect, "Critique the response")
    builder.node("refine", refine, "Rewrite using the critique")
    builder.node("finalize", finalize, "Publish the response")
    builder.edge("generate", "reflect")
    builder.edge("reflect", "refine", condition=needs_refinement)
    builder.default_edge("reflect", "finalize")
    builder.edge("refine", "reflect")
    return builder.build()


def map_reduce_graph(llm: LLM, documents: Sequence[str], name: str = "map_reduce") -> GraphDefinition:
    """
    Fan out one summarising branch per document, join with ALL and reduce.

    The final state carries ``summaries`` (in document order) in its data
    and the combined answer in ``output``.
    """
    documents = list(documents)
    if not documents:
        raise GraphValidationError("map_reduce_graph needs at least one document")
    branches = [f"summarise_{index}" for index in range(len(documents))]

    def summariser(index: int) -> Callable[[GraphState], Dict[str, Any]]:
        def summarise(state: GraphState) -> Dict[str, Any]:
            return {f"summary_{index}": llm(SUMMARISE_PROMPT.render(document=documents[index]))}

        return summarise

    def collect(states: List[GraphState]) -> GraphState:
        merged = merge_data_union(states)
        merged.set("summaries", [merged.get(f"summary_{index}") for index in range(len(documents))])
        return merged

    def reduce(state: GraphState) -> None:
        state.output = llm(REDUCE_PROMPT.render(summaries=state.get("summaries", [])))
        state.should_end = True

    builder = GraphBuilder("map", max_iterations=10, name=name)
    builder.fork("map", *branches)
    for index, branch in enumerate(branches):
        builder.node(branch, summariser(index), f"Summarise document {index}")
    builder.join("collect", JoinStrategy.ALL, merge=collect, fork="map")
    builder.node("reduce", reduce, "Combine the summaries")
    builder.edge("map", "collect")
    builder.edge("collect", "reduce")
    return builder.build()
