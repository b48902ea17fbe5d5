"""
Built-in recipe packs: pre-authored workflows per industry.

A recipe is a list of steps. Steps run in order; a `condition` step ends its
list and carries one step list per branch key (`default` becomes the
fallback edge). Installing a pack materialises each recipe as a Workflow with
its nodes and edges.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from models.workflow import AutomationEdge, AutomationNode, NodeType, Workflow, WorkflowDefinition
from storage.base_store import AutomationStore
from utils.time_utils import utcnow

logger = logging.getLogger("automation_engine")


def _email(subject: str, body: str) -> Dict[str, Any]:
    return {"type": "action", "action": "send_email",
            "config": {"to": "{{ contact.email }}", "subject": subject, "body": body}}


def _sms(body: str) -> Dict[str, Any]:
    return {"type": "action", "action": "send_sms", "config": {"to": "{{ contact.phone }}", "body": body}}


def _wait(duration: str) -> Dict[str, Any]:
    return {"type": "wait", "config": {"duration": duration}}


def _goal(goal: str) -> Dict[str, Any]:
    return {"type": "goal", "config": {"goal": goal}}


def _task(title: str) -> Dict[str, Any]:
    return {"type": "action", "action": "create_task", "config": {"title": title}}


RECIPE_PACKS: Dict[str, Dict[str, Any]] = {
    "salon_basic": {
        "name": "Salon Essentials",
        "industry": "salon",
        "recipes": [
            {
                "id": "booking_confirmation",
                "name": "Booking Confirmation",
                "trigger": "booking.create",
                "steps": [
                    _email("Your booking is confirmed", "Hi {{ contact.name }}, see you on {{ payload.date }}."),
                    _wait("P1D"),
                    _sms("Reminder: your appointment is on {{ payload.date }}. Reply C to cancel."),
                    _goal("booking_completed"),
                ],
            },
            {
                "id": "followup_review_request",
                "name": "Review Request",
                "trigger": "booking.completed",
                "steps": [_wait("P1D"), _email("How did we do?", "Hi {{ contact.name }}, we'd love a review.")],
            },
        ],
    },
    "contractor_basic": {
        "name": "Contractor Essentials",
        "industry": "contractor",
        "recipes": [
            {
                "id": "quote_request_followup",
                "name": "Quote Follow-up",
                "trigger": "quote.request",
                "steps": [
                    _email("We received your quote request", "Hi {{ contact.name }}, we'll be in touch shortly."),
                    _task("Prepare quote for {{ contact.name }}"),
                    _wait("P2D"),
                    _goal("quote_accepted"),
                    _sms("Any questions about your quote? Just reply to this message."),
                ],
            },
            {
                "id": "lead_nurture_sequence",
                "name": "Lead Follow-up",
                "trigger": "lead.capture",
                "steps": [
                    _email("Thanks for reaching out", "Hi {{ contact.name }}, thanks for your interest."),
                    _wait("P2D"),
                    _goal("lead_converted"),
                    _sms("Still interested? We have availability this week."),
                    _wait("P3D"),
                    _goal("lead_converted"),
                    _task("Call {{ contact.name }} about their enquiry"),
                ],
            },
        ],
    },
    "restaurant_basic": {
        "name": "Restaurant Essentials",
        "industry": "restaurant",
        "recipes": [
            {
                "id": "reservation_confirmation",
                "name": "Reservation Confirmation",
                "trigger": "booking.create",
                "steps": [_sms("Your table for {{ payload.party_size }} is booked for {{ payload.date }}.")],
            },
            {
                "id": "no_show_followup",
                "name": "No-Show Follow-up",
                "trigger": "reservation.noshow",
                "steps": [_wait("PT2H"), _email("We missed you", "Hi {{ contact.name }}, book again anytime.")],
            },
        ],
    },
    "ecommerce_basic": {
        "name": "E-commerce Essentials",
        "industry": "ecommerce",
        "recipes": [
            {
                "id": "order_confirmation",
                "name": "Order Confirmation",
                "trigger": "order.created",
                "steps": [_email("Order {{ payload.order_id }} confirmed", "Thanks for your order!")],
            },
            {
                "id": "abandoned_cart",
                "name": "Abandoned Cart Recovery",
                "trigger": "cart.abandoned",
                "steps": [
                    _wait("PT1H"),
                    _goal("order_placed"),
                    {
                        "type": "condition",
                        "config": {"field": "payload.cart_total", "operator": "greater_than", "value": 100},
                        "branches": {
                            "yes": [_email("Still thinking it over?", "Here is 10% off your cart.")],
                            "default": [_email("You left something behind", "Your cart is waiting.")],
                        },
                    },
                ],
            },
        ],
    },
}

# Extra intents a recipe listens to, per industry, with the enrollment priority
INTENT_MAPPINGS: Dict[Tuple[str, str], Dict[str, Any]] = {
    ("contact.submit", "salon"): {"recipe_ids": ["lead_nurture_sequence"], "priority": 30},
    ("contact.submit", "contractor"): {"recipe_ids": ["lead_nurture_sequence"], "priority": 30},
    ("contact.submit", "restaurant"): {"recipe_ids": ["reservation_confirmation"], "priority": 30},
    ("booking.create", "salon"): {"recipe_ids": ["booking_confirmation"], "priority": 10},
    ("booking.create", "restaurant"): {"recipe_ids": ["reservation_confirmation"], "priority": 10},
    ("lead.capture", "contractor"): {"recipe_ids": ["lead_nurture_sequence"], "priority": 20},
    ("quote.request", "contractor"): {"recipe_ids": ["quote_request_followup"], "priority": 15},
}


class _GraphBuilder:
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        self.nodes: List[AutomationNode] = []
        self.edges: List[AutomationEdge] = []

    def node(self, node_type: NodeType, action_type: Optional[str] = None,
             config: Optional[Dict[str, Any]] = None) -> AutomationNode:
        node = AutomationNode(
            id=f"{self.workflow_id}:n{len(self.nodes) + 1}",
            workflow_id=self.workflow_id,
            node_type=node_type,
            action_type=action_type,
            label=action_type or node_type.value,
            config=config or {},
            execution_order=len(self.nodes),
        )
        self.nodes.append(node)
        return node

    def edge(self, source: AutomationNode, target: AutomationNode, key: Optional[str] = None) -> None:
        self.edges.append(AutomationEdge(
            id=f"{self.workflow_id}:e{len(self.edges) + 1}",
            workflow_id=self.workflow_id,
            from_node_id=source.id,
            to_node_id=target.id,
            condition_key=key,
        ))

    def chain(self, parent: AutomationNode, steps: List[Dict[str, Any]], key: Optional[str] = None) -> None:
        for step in steps:
            node = self.node(NodeType(step["type"]), step.get("action"), step.get("config"))
            self.edge(parent, node, key)
            key = None
            if step["type"] == "condition":
                for branch, branch_steps in step["branches"].items():
                    self.chain(node, branch_steps, None if branch == "default" else branch)
                return
            parent = node


def build_recipe(business_id: str, industry: str, pack_id: str, recipe: Dict[str, Any],
                 version: int = 1) -> WorkflowDefinition:
    workflow_id = str(uuid.uuid5(uuid.NAMESPACE_URL, f"{business_id}/{pack_id}/{recipe['id']}"))

    intents = [recipe["trigger"]]
    priority = 50
    for (intent, mapped_industry), mapping in INTENT_MAPPINGS.items():
        if mapped_industry == industry and recipe["id"] in mapping["recipe_ids"]:
            if intent not in intents:
                intents.append(intent)
            priority = min(priority, mapping["priority"])

    workflow = Workflow(
        id=workflow_id,
        business_id=business_id,
        name=recipe["name"],
        industry=industry,
        recipe_id=recipe["id"],
        is_recipe=True,
        trigger_intents=intents,
        priority=priority,
        version=version,
    )
    builder = _GraphBuilder(workflow_id)
    trigger = builder.node(NodeType.TRIGGER, config={"intents": intents})
    builder.chain(trigger, recipe["steps"])
    return WorkflowDefinition(workflow=workflow, nodes=builder.nodes, edges=builder.edges)


def install_recipe_pack(store: AutomationStore, business_id: str, industry: str, pack_id: str) -> List[Workflow]:
    """
    Installs (or reinstalls) every recipe of a pack for one business.
    Reinstalling replaces the workflows and bumps their version.
    """
    pack = RECIPE_PACKS.get(pack_id)
    if pack is None:
        raise ValueError(f"Unknown recipe pack: {pack_id}")
    if industry and industry != pack["industry"]:
        logger.warning(f"Installing {pack_id} ({pack['industry']}) for a {industry} business")

    installed = []
    for recipe in pack["recipes"]:
        definition = build_recipe(business_id, industry or pack["industry"], pack_id, recipe)
        existing = store.get_workflow_definition(definition.workflow.id)
        if existing is not None:
            definition.workflow.version = existing.workflow.version + 1
            definition.workflow.created_at = existing.workflow.created_at
            definition.workflow.updated_at = utcnow()
        store.save_workflow(definition)
        installed.append(definition.workflow)
        logger.info(f"Installed recipe '{recipe['name']}' for business {business_id} (v{definition.workflow.version})")
    return installed
