import pytest

from executor.dag_compiler import WorkflowCache, compile_workflow
from executor.errors import NodeTraversalError, WorkflowCompileError


def test_compile_builds_transition_table(make_workflow):
    definition = make_workflow(
        nodes=[("t", "trigger"), ("a", "action", "send_email"), ("c", "condition"),
               ("yes", "action", "send_sms"), ("no", "action", "create_task")],
        edges=[("t", "a"), ("a", "c"), ("c", "yes", "yes"), ("c", "no")],
    )

    table = compile_workflow(definition)

    assert table.trigger_node_id == "t"
    assert table.next_node("t") == "a"
    assert table.next_node("c", "yes") == "yes"
    # unknown key falls back to the null edge
    assert table.next_node("c", "maybe") == "no"
    assert table.next_node("yes") is None
    assert table.warnings == []


def test_single_keyed_edge_is_default_for_non_condition_nodes(make_workflow):
    definition = make_workflow(
        nodes=[("t", "trigger"), ("a", "action", "send_email")],
        edges=[("t", "a", "anything")],
    )
    assert compile_workflow(definition).next_node("t") == "a"


def test_condition_without_fallback_only_warns(make_workflow):
    definition = make_workflow(
        nodes=[("t", "trigger"), ("c", "condition"), ("a", "action", "send_email")],
        edges=[("t", "c"), ("c", "a", "yes")],
    )

    table = compile_workflow(definition)

    assert table.next_node("c", "no") is None
    assert any("no fallback edge" in w for w in table.warnings)


def test_cycles_are_allowed(make_workflow):
    definition = make_workflow(
        nodes=[("t", "trigger"), ("a", "action", "create_task"), ("b", "action", "create_task")],
        edges=[("t", "a"), ("a", "b"), ("b", "a")],
    )
    table = compile_workflow(definition)
    assert table.next_node("b") == "a"


@pytest.mark.parametrize("nodes,edges,message", [
    ([("a", "action", "send_email")], [], "exactly one trigger"),
    ([("t1", "trigger"), ("t2", "trigger")], [], "exactly one trigger"),
    ([("t", "trigger")], [("t", "ghost")], "unknown node"),
    ([("t", "trigger"), ("a", "action")], [("t", "a")], "no action_type"),
    ([("t", "trigger"), ("a", "action", "send_email")], [("t", "a"), ("a", "t")], "back into the trigger"),
    ([("t", "trigger"), ("a", "action", "send_email"), ("b", "action", "send_sms")],
     [("t", "a"), ("t", "b")], "more than one edge"),
    ([("t", "trigger"), ("a", "action", "send_email"), ("b", "action", "send_sms")],
     [("t", "a", "x"), ("t", "b", "y")], "no default edge"),
])
def test_invalid_definitions_are_rejected(make_workflow, nodes, edges, message):
    definition = make_workflow(nodes=nodes, edges=edges)
    with pytest.raises(WorkflowCompileError, match=message):
        compile_workflow(definition)


def test_unreachable_node_is_reported(make_workflow):
    definition = make_workflow(
        nodes=[("t", "trigger"), ("a", "action", "send_email"), ("orphan", "action", "send_sms")],
        edges=[("t", "a")],
    )
    assert any("orphan" in w for w in compile_workflow(definition).warnings)


def test_unknown_node_lookup_raises_traversal_error(make_workflow):
    table = compile_workflow(make_workflow(nodes=[("t", "trigger")], edges=[]))
    with pytest.raises(NodeTraversalError):
        table.node("missing")


def test_cache_compiles_once_until_invalidated(store, make_workflow):
    definition = make_workflow(
        nodes=[("t", "trigger"), ("a", "action", "send_email")],
        edges=[("t", "a")],
        id="wf-cached",
    )
    cache = WorkflowCache(store)

    first = cache.get("wf-cached")
    assert cache.get("wf-cached") is first

    definition.nodes.append(definition.nodes[1].model_copy(update={"id": "b", "action_type": "send_sms"}))
    definition.edges.append(definition.edges[0].model_copy(update={"id": "e-b", "from_node_id": "a", "to_node_id": "b"}))
    store.save_workflow(definition)
    assert cache.get("wf-cached") is first

    cache.invalidate("wf-cached")
    assert cache.get("wf-cached").next_node("a") == "b"


def test_cache_recompiles_for_newer_version(store, make_workflow):
    definition = make_workflow(nodes=[("t", "trigger")], edges=[], id="wf-v")
    cache = WorkflowCache(store)
    first = cache.get("wf-v")

    definition.workflow.version = 2
    store.save_workflow(definition)

    assert cache.get("wf-v", min_version=2) is not first
    assert cache.get("wf-v", min_version=2).workflow.version == 2


def test_cache_raises_for_missing_workflow(store):
    with pytest.raises(WorkflowCompileError):
        WorkflowCache(store).get("nope")
