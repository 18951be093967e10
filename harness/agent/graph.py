"""LangGraph StateGraph — compile the agent loop graph."""

from __future__ import annotations

from langgraph.graph import END, START, StateGraph

from harness.agent.nodes import make_nodes, make_step_guard, should_continue
from harness.agent.state import GraphState


def create_graph(call, provider, hooks, ledger, **node_kwargs):
    """
    Build and compile the agent graph for one prepared call.

    Graph flow:
        START → reason ⇄ execute_tools → respond → END
    """
    nodes = make_nodes(call, provider, hooks, ledger, **node_kwargs)

    graph = StateGraph(GraphState)

    # Add nodes
    graph.add_node("reason", nodes["reason"])
    graph.add_node("execute_tools", nodes["execute_tools"])
    graph.add_node("respond", nodes["respond"])

    # Edges
    graph.add_edge(START, "reason")
    graph.add_conditional_edges("reason", should_continue)
    graph.add_conditional_edges("execute_tools", make_step_guard(call.max_steps))
    graph.add_edge("respond", END)
    return graph.compile()
