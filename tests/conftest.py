import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, AsyncMock
from fastapi.testclient import TestClient

from config import EngineConfig
from executor.engine_builder import EngineBuilder
from models.dispatch import DispatchResult
from models.enrollment import ContactState
from models.job import JobStatus
from models.workflow import AutomationEdge, AutomationNode, NodeType, Workflow, WorkflowDefinition
from storage.memory_store import InMemoryContactDirectory, InMemoryStore

BUSINESS_ID = "biz-1"
# A Wednesday afternoon
FROZEN_NOW = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = FROZEN_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def pending_jobs(store, run_id):
    return [j for j in store.list_jobs_for_run(run_id) if j.status == JobStatus.PENDING]


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def contacts():
    return InMemoryContactDirectory([
        ContactState(id="c-1", business_id=BUSINESS_ID, email="ann@example.com", phone="+15550001", name="Ann"),
        ContactState(id="c-2", business_id=BUSINESS_ID, email="bob@example.com", phone="+15550002", name="Bob"),
    ])


@pytest.fixture
def dispatcher():
    mock = MagicMock()
    mock.execute = AsyncMock(return_value=DispatchResult.ok())
    return mock


@pytest.fixture
def build_engine(store, contacts, dispatcher, clock):
    def _build(**overrides):
        return EngineBuilder.build(EngineConfig(**overrides), store=store, contacts=contacts,
                                   dispatcher=dispatcher, clock=clock)
    return _build


@pytest.fixture
def engine(build_engine):
    return build_engine()


@pytest.fixture
def make_workflow(store):
    """
    Saves a workflow built from compact tuples:
      nodes: (id, node_type[, action_type[, config]])
      edges: (from_id, to_id[, condition_key])
    """
    counter = {"n": 0}

    def _make(nodes, edges, intents=("booking.create",), business_id=BUSINESS_ID, **fields):
        counter["n"] += 1
        workflow_id = fields.pop("id", f"wf-{counter['n']}")
        workflow = Workflow(id=workflow_id, business_id=business_id, name=f"Workflow {counter['n']}",
                            trigger_intents=list(intents), **fields)
        definition = WorkflowDefinition(
            workflow=workflow,
            nodes=[
                AutomationNode(
                    id=n[0],
                    workflow_id=workflow_id,
                    node_type=NodeType(n[1]),
                    action_type=n[2] if len(n) > 2 else None,
                    config=n[3] if len(n) > 3 else {},
                )
                for n in nodes
            ],
            edges=[
                AutomationEdge(workflow_id=workflow_id, from_node_id=e[0], to_node_id=e[1],
                               condition_key=e[2] if len(e) > 2 else None)
                for e in edges
            ],
        )
        store.save_workflow(definition)
        return definition
    return _make


@pytest.fixture
def client(engine):
    from app import app, get_engine
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()
