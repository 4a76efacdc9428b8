import logging
from typing import Iterable, List, Set

from router_types import Condition, ConditionGroup, ConditionNode, ContentItem, RoutingContext, RoutingDecision


class ConditionTreeEvaluator:
    """Evaluates a condition tree by delegating leaves to registered evaluators.

    Groups short-circuit. A leaf goes to the first evaluator claiming its field;
    when nobody claims it, every evaluator exposing ``evaluate_condition`` is
    tried in registry order and the first one that answers wins. ``negate`` is
    applied to the node's own result after evaluation.
    """

    def __init__(self, evaluators: Iterable):
        self._evaluators = evaluators

    def evaluate(self, node: ConditionNode, item: ContentItem, context: RoutingContext) -> bool:
        if isinstance(node, ConditionGroup):
            if not node.conditions:
                # An empty group never matches, negated or not
                return False
            result = self._evaluate_group(node, item, context)
        else:
            result = self._evaluate_leaf(node, item, context)
        return not result if node.negate else result

    def _evaluate_group(self, group: ConditionGroup, item, context) -> bool:
        if group.operator == 'AND':
            for child in group.conditions:
                if not self.evaluate(child, item, context):
                    return False
            return True
        for child in group.conditions:
            if self.evaluate(child, item, context):
                return True
        return False

    def _evaluate_leaf(self, condition: Condition, item, context) -> bool:
        for evaluator in self._evaluators:
            claims = getattr(evaluator, 'can_evaluate_condition_field', None)
            if not callable(claims) or not hasattr(evaluator, 'evaluate_condition'):
                continue
            if not claims(condition.field):
                continue
            try:
                return bool(evaluator.evaluate_condition(condition, item, context))
            except Exception as e:
                logging.error(f"Evaluator '{evaluator.name}' failed on field '{condition.field}': {e}")

        for evaluator in self._evaluators:
            generic = getattr(evaluator, 'evaluate_condition', None)
            if not callable(generic):
                continue
            try:
                return bool(generic(condition, item, context))
            except Exception as e:
                logging.debug(f"Fallback evaluator '{evaluator.name}' could not handle "
                              f"field '{condition.field}': {e}")

        logging.warning(f"No evaluator found for condition field: {condition.field}")
        return False


def condition_fields(node: ConditionNode) -> Set[str]:
    """Every leaf field referenced anywhere in the tree."""
    if isinstance(node, ConditionGroup):
        fields: Set[str] = set()
        for child in node.conditions:
            fields |= condition_fields(child)
        return fields
    return {node.field}


def condition_mentions(node: ConditionNode, word: str) -> bool:
    """True when any leaf value contains ``word``, case-insensitively."""
    if isinstance(node, ConditionGroup):
        return any(condition_mentions(child, word) for child in node.conditions)
    return word.lower() in str(node.value).lower()


def resolve_decisions(decisions: List[RoutingDecision]) -> List[RoutingDecision]:
    """Keep the highest-priority decision per instance.

    Input is re-sorted by descending priority with a stable sort, so ties keep
    the order the evaluators produced them in.
    """
    seen = set()
    resolved = []
    for decision in sorted(decisions, key=lambda d: d.priority, reverse=True):
        if decision.instance_id in seen:
            continue
        seen.add(decision.instance_id)
        resolved.append(decision)
    return resolved
