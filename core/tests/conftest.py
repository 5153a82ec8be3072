"""Shared fixtures: fake agent client, in-memory store and small graph builders."""

from unittest.mock import AsyncMock

import pytest

from flowgraph.graph.edge import Edge
from flowgraph.graph.workflow import StepNode, WorkflowGraph
from flowgraph.llm.provider import AgentClient, AgentResponse, TokenUsage
from flowgraph.storage.memory import InMemoryStore
from flowgraph.storage.repository import ExecutionRepository


class FakeAgentClient(AgentClient):
    """Agent client returning scripted replies in order; raises queued exceptions."""

    def __init__(self, replies: list[str | Exception] | None = None, default: str = "{}"):
        self.replies = list(replies or [])
        self.default = default
        self.calls: list[dict] = []

    async def call(self, prompt, context=None, options=None):
        self.calls.append({"prompt": prompt, "context": context, "options": options})
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return AgentResponse(
            content=reply,
            model=(options.model if options and options.model else "fake/model"),
            usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
            finish_reason="stop",
        )


def node(node_id: str, kind: str, **config) -> StepNode:
    return StepNode(id=node_id, kind=kind, label=node_id, config=config)


def edge(source: str, target: str, guard: str | None = None) -> Edge:
    return Edge(id=f"{source}->{target}", source=source, target=target, guard=guard)


def graph(nodes: list[StepNode], edges: list[Edge], graph_id: str = "wf-test") -> WorkflowGraph:
    return WorkflowGraph(id=graph_id, name="Test workflow", nodes=nodes, edges=edges)


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    """Mock asyncio.sleep to avoid real delays from retry backoff."""
    monkeypatch.setattr("asyncio.sleep", AsyncMock())


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def repository(store):
    return ExecutionRepository(store)


@pytest.fixture
def agent_client():
    return FakeAgentClient()
