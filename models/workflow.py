from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from enum import Enum
from datetime import datetime
from uuid import uuid4

from utils.time_utils import utcnow


class NodeType(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    WAIT = "wait"
    GOAL = "goal"


class ActionType(str, Enum):
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    MAKE_CALL = "make_call"
    CREATE_TASK = "create_task"
    MOVE_PIPELINE_STAGE = "move_pipeline_stage"
    CALL_WEBHOOK = "call_webhook"
    CREATE_LEAD = "create_lead"


# Actions that reach a person and are therefore subject to guardrails
TIME_SENSITIVE_ACTIONS = {ActionType.SEND_EMAIL.value, ActionType.SEND_SMS.value, ActionType.MAKE_CALL.value}


class Workflow(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    business_id: str
    name: str = ""
    industry: Optional[str] = None
    recipe_id: Optional[str] = None
    is_recipe: bool = False
    active: bool = True
    trigger_intents: List[str] = Field(default_factory=list)
    priority: int = 50
    max_enrollments_per_contact: Optional[int] = 1
    reenroll_after_days: Optional[int] = None
    suppression_tags: List[str] = Field(default_factory=list)
    suppression_stages: List[str] = Field(default_factory=list)
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AutomationNode(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_id: str
    node_type: NodeType
    action_type: Optional[str] = None
    label: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    # Authoring hint for the canvas; traversal only follows edges
    execution_order: int = 0


class AutomationEdge(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_id: str
    from_node_id: str
    to_node_id: str
    condition_key: Optional[str] = None


class WorkflowDefinition(BaseModel):
    """A workflow together with its graph, as loaded for compilation."""
    workflow: Workflow
    nodes: List[AutomationNode] = Field(default_factory=list)
    edges: List[AutomationEdge] = Field(default_factory=list)
