"""
Compiles a workflow's nodes and edges into a transition table.

The table answers "where do I go from node N given condition key K" with a
single dict lookup, so the executor never walks the graph at runtime. Cycles
are allowed here; loop prevention happens at run time through max_steps.
"""
import logging
import threading
from collections import deque
from typing import Dict, List, Optional, Tuple

from executor.errors import NodeTraversalError, WorkflowCompileError
from models.workflow import AutomationNode, NodeType, Workflow, WorkflowDefinition
from storage.base_store import AutomationStore

logger = logging.getLogger("automation_engine")

TransitionKey = Tuple[str, Optional[str]]


class TransitionTable:
    def __init__(
        self,
        workflow: Workflow,
        nodes: Dict[str, AutomationNode],
        transitions: Dict[TransitionKey, str],
        trigger_node_id: str,
        warnings: List[str],
    ):
        self.workflow = workflow
        self.nodes = nodes
        self.transitions = transitions
        self.trigger_node_id = trigger_node_id
        self.warnings = warnings

    def node(self, node_id: Optional[str]) -> AutomationNode:
        node = self.nodes.get(node_id) if node_id else None
        if node is None:
            raise NodeTraversalError(f"Node {node_id} does not exist in workflow {self.workflow.id}", node_id=node_id)
        return node

    def next_node(self, node_id: str, condition_key: Optional[str] = None) -> Optional[str]:
        """Exact (node, key) match first, then the node's fallback edge."""
        if condition_key is not None:
            target = self.transitions.get((node_id, condition_key))
            if target is not None:
                return target
        return self.transitions.get((node_id, None))

    def has_outgoing(self, node_id: str) -> bool:
        return any(source == node_id for source, _ in self.transitions)


def compile_workflow(definition: WorkflowDefinition) -> TransitionTable:
    workflow = definition.workflow
    nodes = {n.id: n for n in definition.nodes}
    warnings: List[str] = []

    if len(nodes) != len(definition.nodes):
        raise WorkflowCompileError(f"Workflow {workflow.id} has duplicate node ids")

    triggers = [n for n in definition.nodes if n.node_type == NodeType.TRIGGER]
    if len(triggers) != 1:
        raise WorkflowCompileError(f"Workflow {workflow.id} must have exactly one trigger node, found {len(triggers)}")
    trigger = triggers[0]

    for node in definition.nodes:
        if node.node_type == NodeType.ACTION and not node.action_type:
            raise WorkflowCompileError(f"Action node {node.id} has no action_type", node_id=node.id)

    outgoing: Dict[str, list] = {}
    for edge in definition.edges:
        if edge.from_node_id not in nodes or edge.to_node_id not in nodes:
            raise WorkflowCompileError(
                f"Edge {edge.id} references an unknown node ({edge.from_node_id} -> {edge.to_node_id})"
            )
        if edge.to_node_id == trigger.id:
            raise WorkflowCompileError(f"Edge {edge.id} points back into the trigger node")
        outgoing.setdefault(edge.from_node_id, []).append(edge)

    transitions: Dict[TransitionKey, str] = {}
    for node_id, edges in outgoing.items():
        node = nodes[node_id]
        for edge in edges:
            key = (node_id, edge.condition_key)
            if key in transitions:
                raise WorkflowCompileError(
                    f"Node {node_id} has more than one edge for condition key {edge.condition_key!r}", node_id=node_id
                )
            transitions[key] = edge.to_node_id

        if node.node_type != NodeType.CONDITION and (node_id, None) not in transitions:
            if len(edges) == 1:
                transitions[(node_id, None)] = edges[0].to_node_id
            else:
                raise WorkflowCompileError(
                    f"{node.node_type.value} node {node_id} has several keyed edges and no default edge",
                    node_id=node_id,
                )

    for node in definition.nodes:
        if node.node_type == NodeType.CONDITION and (node.id, None) not in transitions:
            warnings.append(f"Condition node {node.id} has no fallback edge; unmatched keys will fail the run")

    reachable = _reachable_from(trigger.id, transitions)
    for node_id in nodes:
        if node_id not in reachable:
            warnings.append(f"Node {node_id} is not reachable from the trigger")

    for warning in warnings:
        logger.warning(f"[Compiler] Workflow {workflow.id}: {warning}")

    return TransitionTable(workflow, nodes, transitions, trigger.id, warnings)


def _reachable_from(root: str, transitions: Dict[TransitionKey, str]) -> set:
    adjacency: Dict[str, list] = {}
    for (source, _), target in transitions.items():
        adjacency.setdefault(source, []).append(target)

    seen = {root}
    queue = deque([root])
    while queue:
        for target in adjacency.get(queue.popleft(), []):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


class WorkflowCache:
    """
    Compiled transition tables keyed by workflow id. Authoring tooling must
    call invalidate() after editing a workflow; a table is also recompiled
    when the stored workflow's version moves past the cached one.
    """

    def __init__(self, store: AutomationStore):
        self.store = store
        self._lock = threading.Lock()
        self._tables: Dict[str, TransitionTable] = {}

    def get(self, workflow_id: str, min_version: Optional[int] = None) -> TransitionTable:
        with self._lock:
            table = self._tables.get(workflow_id)
        if table is not None and (min_version is None or table.workflow.version >= min_version):
            return table

        definition = self.store.get_workflow_definition(workflow_id)
        if definition is None:
            raise WorkflowCompileError(f"Workflow {workflow_id} not found")

        table = compile_workflow(definition)
        with self._lock:
            self._tables[workflow_id] = table
        logger.info(f"[Compiler] Compiled workflow {workflow_id} v{table.workflow.version} ({len(table.nodes)} nodes)")
        return table

    def invalidate(self, workflow_id: str) -> None:
        with self._lock:
            self._tables.pop(workflow_id, None)
