import pytest

from executor.condition_evaluator import default_condition_evaluator, default_goal_evaluator, resolve_path
from executor.template_renderer import TemplateRenderer
from models.workflow import AutomationNode, NodeType

CONTEXT = {
    "payload": {"amount": "250", "items": ["gift-card", "shampoo"], "vip": True},
    "contact": {"stage": "lead", "tags": ["new"], "goals_achieved": ["booked"], "name": "Ann"},
}


def node(node_type=NodeType.CONDITION, **config):
    return AutomationNode(id="n", workflow_id="wf", node_type=node_type, config=config)


@pytest.mark.parametrize("config,expected", [
    ({"field": "payload.amount", "operator": "greater_than", "value": 100}, "yes"),
    ({"field": "payload.amount", "operator": "lt", "value": 100}, "no"),
    ({"field": "contact.stage", "operator": "equals", "value": "lead"}, "yes"),
    ({"field": "contact.stage", "operator": "not_equals", "value": "lead"}, "no"),
    ({"field": "payload.items", "operator": "contains", "value": "shampoo"}, "yes"),
    ({"field": "contact.tags", "operator": "not_contains", "value": "vip"}, "yes"),
    ({"field": "payload.coupon", "operator": "exists"}, "no"),
    ({"field": "payload.coupon", "operator": "not_exists"}, "yes"),
    ({"field": "payload.coupon", "operator": "equals", "value": "X"}, "no"),
    ({"field": "payload.coupon", "operator": "not_equals", "value": "X"}, "yes"),
    ({"field": "payload.amount", "operator": "greater_than", "value": "lots"}, "no"),
    ({"field": "payload.amount", "operator": "roughly", "value": 250}, "no"),
])
def test_condition_operators(config, expected):
    assert default_condition_evaluator(node(**config), CONTEXT) == expected


def test_switch_mode_uses_field_value():
    assert default_condition_evaluator(node(field="contact.stage", mode="switch"), CONTEXT) == "lead"
    assert default_condition_evaluator(node(field="contact.missing", mode="switch"), CONTEXT) is None


def test_condition_without_field_has_no_key():
    assert default_condition_evaluator(node(), CONTEXT) is None


def test_resolve_path_walks_lists():
    assert resolve_path(CONTEXT, "payload.items.1") == "shampoo"


def test_goal_by_name_or_predicate():
    assert default_goal_evaluator(node(NodeType.GOAL, goal="booked"), CONTEXT)
    assert not default_goal_evaluator(node(NodeType.GOAL, goal="paid"), CONTEXT)
    assert default_goal_evaluator(node(NodeType.GOAL, field="payload.vip", operator="equals", value=True), CONTEXT)
    assert not default_goal_evaluator(node(NodeType.GOAL), CONTEXT)


def test_renderer_fills_nested_config():
    renderer = TemplateRenderer()
    config = {"to": "{{ contact.name }}", "lines": ["Total {{ payload.amount }}", 3], "plain": "no tags"}

    rendered = renderer.render_config(config, CONTEXT)

    assert rendered == {"to": "Ann", "lines": ["Total 250", 3], "plain": "no tags"}


def test_renderer_keeps_unknown_and_broken_templates():
    renderer = TemplateRenderer()
    assert renderer.render("Hi {{ nickname }}", CONTEXT) == "Hi {{ nickname }}"
    assert renderer.render("Hi {{ contact.name", CONTEXT) == "Hi {{ contact.name"
    assert renderer.variables("{{ contact.name }} {{ payload.amount }}") == {"contact", "payload"}
