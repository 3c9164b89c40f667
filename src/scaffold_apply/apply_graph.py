"""LangGraph wrapper for the apply executor - trace harness only.

Wraps the executor's stage functions in a LangGraph StateGraph so that each
state is visible as a node in LangGraph Studio.

NO new orchestration logic. Same semantics as apply_scaffold_plan(), just
structured visibility.
"""

from typing import Any, List

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from scaffold_apply.apply_executor import (
    STAGES,
    TERMINAL_STATES,
    ApplyEnvironment,
    ApplyRun,
    finish,
    step,
)
from scaffold_apply.models import ApplyContext, ApplyResult, ApplyState


class ApplyGraphState(TypedDict):
    """State for the apply graph."""
    state: str
    trace: List[str]
    # ApplyRun reference (passed through state)
    run: Any


def _node_name(state: ApplyState) -> str:
    return state.value.lower()


def _make_node(stage: ApplyState):
    def node(graph_state: ApplyGraphState) -> ApplyGraphState:
        next_state = step(graph_state["run"], stage)
        return {
            **graph_state,
            "state": next_state.value,
            "trace": graph_state["trace"] + [stage.value],
        }
    node.__name__ = f"node_{_node_name(stage)}"
    return node


def route(graph_state: ApplyGraphState) -> str:
    """Next node for a state, or end once a terminal state is reached."""
    state = ApplyState(graph_state["state"])
    if state in TERMINAL_STATES:
        return "end"
    return _node_name(state)


def build_apply_graph() -> StateGraph:
    """
    Build the apply graph.

    Flow:
        init -> replay_check -> conflict_check -> checkpoint -> write -> manifest_write -> end
        write / manifest_write -> rollback -> end
        any earlier node -> end on a terminal state
    """
    graph = StateGraph(ApplyGraphState)

    for stage in STAGES:
        graph.add_node(_node_name(stage), _make_node(stage))

    graph.set_entry_point(_node_name(ApplyState.INIT))

    routes = {_node_name(stage): _node_name(stage) for stage in STAGES}
    routes["end"] = END
    for stage in STAGES:
        graph.add_conditional_edges(_node_name(stage), route, routes)

    return graph


def run_apply_graph(ctx: ApplyContext, env: ApplyEnvironment) -> ApplyResult:
    """
    Run the apply graph and return the result.

    This is the traced equivalent of apply_scaffold_plan().
    """
    compiled = build_apply_graph().compile()
    run = ApplyRun(ctx=ctx, env=env)

    initial: ApplyGraphState = {
        "state": ApplyState.INIT.value,
        "trace": [],
        "run": run,
    }

    try:
        compiled.invoke(initial)
    finally:
        result = finish(run)
    return result
