import pytest
import sys
import os

# Add src to path for internal imports
src_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from promo_engine.engine.conditions import (
    ConditionEvaluator,
    all_of,
    any_of,
    condition,
    get_field_value,
    parse_rule_tree,
    rule_tree_to_dict,
    MISSING,
)
from promo_engine.engine.errors import RuleTreeError
from promo_engine.engine.models import RuleGroup


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


@pytest.fixture
def context():
    return {
        "channel": "web",
        "cart": {"subtotal": 12000, "item_count": 4, "product_ids": ("P1", "P2")},
        "user": {"tier": "GOLD", "email": "sam@staff.example.com", "vip": True, "order_count": 0},
    }


def test_empty_and_group_is_true(evaluator):
    """Degenerate AND with no children holds."""
    assert evaluator.evaluate(RuleGroup(operator="AND"), {}) is True


def test_empty_or_group_is_false(evaluator):
    """Degenerate OR with no children fails."""
    assert evaluator.evaluate(RuleGroup(operator="OR"), {}) is False


@pytest.mark.parametrize("operator,value,expected", [
    ("=", 12000, True),
    ("!=", 12000, False),
    (">", 11999, True),
    ("<", 12000, False),
    (">=", 12000, True),
    ("<=", 11999, False),
    ("in", [10000, 12000], True),
    ("not_in", [10000, 12000], False),
])
def test_operator_table(evaluator, context, operator, value, expected):
    rule = all_of(condition("cart.subtotal", operator, value))
    assert evaluator.evaluate(rule, context) is expected


def test_contains_on_string_and_collection(evaluator, context):
    assert evaluator.evaluate(all_of(condition("user.email", "contains", "@staff.")), context)
    assert evaluator.evaluate(all_of(condition("cart.product_ids", "contains", "P2")), context)
    assert not evaluator.evaluate(all_of(condition("cart.product_ids", "contains", "P9")), context)


def test_nested_groups(evaluator, context):
    rule = all_of(
        condition("cart.subtotal", ">=", 5000),
        any_of(
            condition("user.tier", "in", ["PLATINUM"]),
            condition("channel", "=", "web"),
        ),
    )
    assert evaluator.evaluate(rule, context) is True

    context["channel"] = "phone"
    assert evaluator.evaluate(rule, context) is False


@pytest.mark.parametrize("operator,value,expected", [
    ("=", "x", False),
    (">", 0, False),
    ("<=", 0, False),
    ("in", ["x"], False),
    ("contains", "x", False),
    ("!=", "x", True),
    ("not_in", ["x"], True),
])
def test_missing_field_policy(evaluator, context, operator, value, expected):
    """Missing fields fail everything except the negative operators."""
    rule = all_of(condition("user.segment", operator, value))
    assert evaluator.evaluate(rule, context) is expected


def test_incomparable_values_do_not_raise(evaluator, context):
    """Ordering a string against a number evaluates to False."""
    rule = all_of(condition("user.tier", ">", 5))
    assert evaluator.evaluate(rule, context) is False


def test_bool_does_not_equal_int(evaluator, context):
    assert evaluator.evaluate(all_of(condition("user.vip", "=", True)), context) is True
    assert evaluator.evaluate(all_of(condition("user.vip", "=", 1)), context) is False


def test_field_lookup_walks_attributes():
    class User:
        tier = "SILVER"

    assert get_field_value("user.tier", {"user": User()}) == "SILVER"
    assert get_field_value("user.missing", {"user": User()}) is MISSING
    assert get_field_value("a.b.c", {"a": {"b": None}}) is MISSING


def test_invalid_operator_rejected():
    with pytest.raises(RuleTreeError):
        condition("cart.subtotal", "~=", 1)


def test_in_requires_list_value():
    with pytest.raises(RuleTreeError):
        condition("user.tier", "in", "GOLD")


def test_unsupported_value_type_rejected():
    with pytest.raises(RuleTreeError):
        condition("user.tier", "=", {"nested": "dict"})


def test_group_rejects_foreign_children():
    with pytest.raises(RuleTreeError):
        RuleGroup(operator="AND", children=("not a node",))


def test_parse_rule_tree(evaluator, context):
    data = {
        "operator": "OR",
        "conditions": [
            {"field": "user.tier", "operator": "in", "value": ["GOLD", "PLATINUM"]},
            {"operator": "AND", "conditions": [
                {"field": "cart.item_count", "operator": ">=", "value": 10},
            ]},
        ],
    }
    rule = parse_rule_tree(data)
    assert rule.operator == "OR"
    assert rule.children[0].value == ("GOLD", "PLATINUM")
    assert evaluator.evaluate(rule, context) is True
    assert rule_tree_to_dict(rule) == data


def test_parse_bare_condition_wraps_in_and():
    rule = parse_rule_tree({"field": "channel", "operator": "=", "value": "web"})
    assert rule.operator == "AND"
    assert len(rule.children) == 1


def test_parse_rejects_cycles():
    data = {"operator": "AND", "conditions": []}
    data["conditions"].append(data)
    with pytest.raises(RuleTreeError, match="cycle"):
        parse_rule_tree(data)


def test_parse_rejects_incomplete_condition():
    with pytest.raises(RuleTreeError, match="missing keys"):
        parse_rule_tree({"operator": "AND", "conditions": [{"field": "x", "operator": "="}]})
