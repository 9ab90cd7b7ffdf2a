from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable, Mapping

from .effects import EffectDispatcher, NullEffects
from .formula_engine import coerce_number
from .models import (
    TODAY_PLACEHOLDER,
    ActionType,
    ConditionOperator,
    ExecutionType,
    LogicalOperator,
    MessageType,
    ValidationAction,
    ValidationCondition,
    ValidationRule,
    load_rule_definitions,
)

FALSE_STRINGS = {"false", "0", "no", "off", ""}

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Message:
    id: str
    message: str
    type: MessageType


@dataclass(slots=True)
class ExecuteResult:
    messages: list[Message] = field(default_factory=list)
    is_valid: bool = True


def resolve_placeholder(value: Any) -> Any:
    if value == TODAY_PLACEHOLDER:
        return date.today().isoformat()
    return value


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return not value
    return False


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _folded(value: Any) -> str:
    return _text(value).casefold()


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in FALSE_STRINGS
    return bool(value)


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def _check(left: Any, right: Any) -> bool:
        left_number = coerce_number(left)
        right_number = coerce_number(right)
        if left_number is None or right_number is None:
            return False
        return compare(left_number, right_number)

    return _check


CONDITION_OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: lambda left, right: _text(left) == _text(right),
    ConditionOperator.NOT_EQUALS: lambda left, right: _text(left) != _text(right),
    ConditionOperator.GREATER_THAN: _numeric(lambda left, right: left > right),
    ConditionOperator.LESS_THAN: _numeric(lambda left, right: left < right),
    ConditionOperator.GREATER_OR_EQUAL: _numeric(lambda left, right: left >= right),
    ConditionOperator.LESS_OR_EQUAL: _numeric(lambda left, right: left <= right),
    ConditionOperator.CONTAINS: lambda left, right: _folded(right) in _folded(left),
    ConditionOperator.NOT_CONTAINS: lambda left, right: _folded(right) not in _folded(left),
    ConditionOperator.STARTS_WITH: lambda left, right: _folded(left).startswith(_folded(right)),
    ConditionOperator.ENDS_WITH: lambda left, right: _folded(left).endswith(_folded(right)),
    ConditionOperator.IS_EMPTY: lambda left, _right: is_empty(left),
    ConditionOperator.IS_NOT_EMPTY: lambda left, _right: not is_empty(left),
}

ActionHandler = Callable[[ValidationAction, EffectDispatcher, ExecuteResult], None]


def _show_message(action: ValidationAction, effects: EffectDispatcher, result: ExecuteResult) -> None:
    if not action.message:
        return
    result.messages.append(Message(id=action.id, message=action.message, type=action.message_type))
    effects.on_show_message(action.message, action.message_type)


def _block_submit(action: ValidationAction, effects: EffectDispatcher, result: ExecuteResult) -> None:
    blocked = True if action.value is None else _truthy(action.value)
    if blocked:
        result.is_valid = False
    effects.on_block_submit(blocked)


def _set_field_value(action: ValidationAction, effects: EffectDispatcher, result: ExecuteResult) -> None:
    effects.on_set_field_value(action.target_field, resolve_placeholder(action.value))


def _clear_field(action: ValidationAction, effects: EffectDispatcher, result: ExecuteResult) -> None:
    effects.on_set_field_value(action.target_field, "")


def _change_color(action: ValidationAction, effects: EffectDispatcher, result: ExecuteResult) -> None:
    effects.on_change_field_color(action.target_field, action.color)


def _toggle(method: str, state: bool) -> ActionHandler:
    def _handler(action: ValidationAction, effects: EffectDispatcher, result: ExecuteResult) -> None:
        getattr(effects, method)(action.target_field, state)

    return _handler


ACTION_HANDLERS: dict[ActionType, ActionHandler] = {
    ActionType.SHOW_MESSAGE: _show_message,
    ActionType.BLOCK_SUBMIT: _block_submit,
    ActionType.SET_FIELD_VALUE: _set_field_value,
    ActionType.CLEAR_FIELD: _clear_field,
    ActionType.SHOW_FIELD: _toggle("on_toggle_field_visibility", True),
    ActionType.HIDE_FIELD: _toggle("on_toggle_field_visibility", False),
    ActionType.MAKE_REQUIRED: _toggle("on_toggle_field_required", True),
    ActionType.MAKE_OPTIONAL: _toggle("on_toggle_field_required", False),
    ActionType.DISABLE_FIELD: _toggle("on_toggle_field_disabled", True),
    ActionType.ENABLE_FIELD: _toggle("on_toggle_field_disabled", False),
    ActionType.CHANGE_COLOR: _change_color,
}


@dataclass(slots=True)
class RuleEngine:
    """Evaluates validation rules for one form session.

    Callers serialize access: the loaded rules and the value snapshot are
    plain attributes with no locking.
    """

    rules: list[ValidationRule] = field(default_factory=list)
    values: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_rules(cls, rules: Iterable[Mapping[str, Any] | ValidationRule]) -> RuleEngine:
        engine = cls()
        engine.load_rules(rules)
        return engine

    def load_rules(self, rules: Iterable[Mapping[str, Any] | ValidationRule]) -> None:
        self.rules = load_rule_definitions(rules)
        logger.info(
            "rules_loaded",
            extra={"rule_count": len(self.rules), "enabled_count": sum(rule.enabled for rule in self.rules)},
        )

    def update_field_values(self, values: Mapping[str, Any]) -> None:
        self.values = dict(values)

    def applicable_rules(self, event: ExecutionType | str) -> list[ValidationRule]:
        event = ExecutionType(event)
        selected = [rule for rule in self.rules if rule.enabled and rule.execution_type is event]
        return sorted(selected, key=lambda rule: rule.priority)

    def evaluate_condition(self, condition: ValidationCondition) -> bool:
        left = self.values.get(condition.field_name)
        if condition.compare_with_field:
            right = self.values.get(condition.compare_with_field)
        else:
            right = resolve_placeholder(condition.value)
        return CONDITION_OPERATORS[condition.operator](left, right)

    def evaluate_rule(self, rule: ValidationRule) -> bool:
        if rule.logical_operator is LogicalOperator.OR and rule.conditions:
            return any(self.evaluate_condition(condition) for condition in rule.conditions)
        return all(self.evaluate_condition(condition) for condition in rule.conditions)

    def execute(self, event: ExecutionType | str, effects: EffectDispatcher | None = None) -> ExecuteResult:
        event = ExecutionType(event)
        effects = effects if effects is not None else NullEffects()
        result = ExecuteResult()

        for rule in self.applicable_rules(event):
            try:
                matched = self.evaluate_rule(rule)
                actions = rule.actions_true if matched else rule.actions_false
                logger.debug(
                    "rule_evaluated",
                    extra={"rule_id": rule.id, "event": event.value, "matched": matched, "action_count": len(actions)},
                )
                for action in actions:
                    ACTION_HANDLERS[action.type](action, effects, result)
            except Exception as exc:
                logger.exception("rule_execution_failed", extra={"rule_id": rule.id, "event": event.value})
                result.messages.append(
                    Message(
                        id=f"rule-error:{rule.id}",
                        message=f"Rule '{rule.name or rule.id}' failed: {exc}",
                        type=MessageType.ERROR,
                    )
                )

        return result
