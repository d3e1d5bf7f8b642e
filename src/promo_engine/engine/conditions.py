"""
Condition Evaluator - Evaluates promotion rule trees against a cart context.

Rule trees are built bottom-up from frozen Condition/RuleGroup nodes, either
with the builder helpers or by parsing the nested dicts stored in the
promotion catalog. Evaluation is side-effect free and never raises: a missing
field or an incomparable value simply fails the condition.
"""
from collections.abc import Mapping
from typing import Any, Union

from .errors import RuleTreeError
from .models import Condition, RuleGroup


class _Missing:
    """Sentinel for a context path that does not resolve."""

    def __repr__(self):
        return "<missing>"


MISSING = _Missing()

RuleNode = Union[Condition, RuleGroup]


def condition(field: str, operator: str, value) -> Condition:
    """Build a simple condition."""
    return Condition(field=field, operator=operator, value=value)


def all_of(*children: RuleNode) -> RuleGroup:
    """Build an AND group."""
    return RuleGroup(operator='AND', children=children)


def any_of(*children: RuleNode) -> RuleGroup:
    """Build an OR group."""
    return RuleGroup(operator='OR', children=children)


def parse_rule_tree(data) -> RuleGroup:
    """
    Build a rule tree from nested dicts.

    Groups look like {"operator": "AND", "conditions": [...]}, leaves like
    {"field": "cart.subtotal", "operator": ">=", "value": 5000}. A bare leaf
    at the top level is wrapped in an AND group.

    Raises RuleTreeError on malformed nodes or on a cycle in the raw data.
    """
    node = _parse_node(data, path=())
    if isinstance(node, Condition):
        return RuleGroup(operator='AND', children=(node,))
    return node


def _parse_node(data, path: tuple) -> RuleNode:
    if not isinstance(data, Mapping):
        raise RuleTreeError(f"Rule node must be an object, got {type(data).__name__}")
    if id(data) in path:
        raise RuleTreeError("Rule tree contains a cycle")

    if 'conditions' in data:
        children = data['conditions']
        if not isinstance(children, (list, tuple)):
            raise RuleTreeError("Rule group 'conditions' must be a list")
        child_path = path + (id(data), id(children))
        if id(children) in path:
            raise RuleTreeError("Rule tree contains a cycle")
        return RuleGroup(
            operator=data.get('operator', 'AND'),
            children=tuple(_parse_node(child, child_path) for child in children),
        )

    missing = [key for key in ('field', 'operator', 'value') if key not in data]
    if missing:
        raise RuleTreeError(f"Condition is missing keys: {', '.join(missing)}")
    return Condition(field=data['field'], operator=data['operator'], value=data['value'])


def rule_tree_to_dict(node: RuleNode) -> dict:
    """Serialize a rule tree back to the nested dict form."""
    if isinstance(node, Condition):
        value = list(node.value) if isinstance(node.value, tuple) else node.value
        return {'field': node.field, 'operator': node.operator, 'value': value}
    return {
        'operator': node.operator,
        'conditions': [rule_tree_to_dict(child) for child in node.children],
    }


def get_field_value(field: str, context) -> Any:
    """Walk a dotted path through mappings (or attributes); MISSING if absent."""
    current = context
    for key in field.split('.'):
        if isinstance(current, Mapping):
            if key not in current:
                return MISSING
            current = current[key]
        elif current is not None and hasattr(current, key):
            current = getattr(current, key)
        else:
            return MISSING
    return current


def _equals(actual, expected) -> bool:
    # bool is an int subclass; keep True from matching 1
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def _compare(actual, expected, op) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return False
    try:
        return op(actual, expected)
    except TypeError:
        return False


def _contains(actual, expected) -> bool:
    if isinstance(actual, str):
        return str(expected) in actual
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(_equals(item, expected) for item in actual)
    return False


def _member(actual, values: tuple) -> bool:
    return any(_equals(actual, v) for v in values)


OPERATORS = {
    '=': lambda a, v: _equals(a, v),
    '!=': lambda a, v: not _equals(a, v),
    '>': lambda a, v: _compare(a, v, lambda x, y: x > y),
    '<': lambda a, v: _compare(a, v, lambda x, y: x < y),
    '>=': lambda a, v: _compare(a, v, lambda x, y: x >= y),
    '<=': lambda a, v: _compare(a, v, lambda x, y: x <= y),
    'in': lambda a, v: _member(a, v),
    'not_in': lambda a, v: not _member(a, v),
    'contains': lambda a, v: _contains(a, v),
}

# Negative operators hold trivially when the field is absent
MISSING_FIELD_MATCHES = {'!=', 'not_in'}


class ConditionEvaluator:
    """
    Evaluates a RuleGroup against a context mapping.

    Missing field policy: a path that does not resolve fails every operator
    except '!=' and 'not_in', which succeed. Empty groups: AND is true,
    OR is false.
    """

    def evaluate(self, rule: RuleGroup, context: Mapping) -> bool:
        """Evaluate a rule tree; always returns a bool."""
        return self._evaluate_node(rule, context)

    def _evaluate_node(self, node: RuleNode, context: Mapping) -> bool:
        if isinstance(node, Condition):
            return self.evaluate_condition(node, context)
        if node.operator == 'AND':
            return all(self._evaluate_node(child, context) for child in node.children)
        return any(self._evaluate_node(child, context) for child in node.children)

    def evaluate_condition(self, cond: Condition, context: Mapping) -> bool:
        """Evaluate a single leaf."""
        actual = get_field_value(cond.field, context)
        if actual is MISSING:
            return cond.operator in MISSING_FIELD_MATCHES
        return bool(OPERATORS[cond.operator](actual, cond.value))

    def explain(self, rule: RuleGroup, context: Mapping) -> list[str]:
        """List the leaf conditions that failed, for traces."""
        failures = []
        self._collect_failures(rule, context, failures)
        return failures

    def _collect_failures(self, node: RuleNode, context: Mapping, failures: list[str]):
        if isinstance(node, Condition):
            if not self.evaluate_condition(node, context):
                actual = get_field_value(node.field, context)
                failures.append(f"{node.field} {node.operator} {node.value!r} (got {actual!r})")
            return
        for child in node.children:
            self._collect_failures(child, context, failures)
