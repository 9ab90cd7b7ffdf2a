from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from .formula_engine import DEFAULT_DECIMAL_PLACES, FormatType, FormulaParseError, extract_dependencies

TODAY_PLACEHOLDER = "{{TODAY}}"


class TemplateError(ValueError):
    """Raised when field or rule definitions are malformed."""


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    TEXTAREA = "textarea"
    SELECT = "select"
    CHECKBOX = "checkbox"
    CALCULATED = "calculated"
    DYNAMIC_LIST = "dynamic_list"
    SIGNATURE = "signature"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ExecutionType(str, Enum):
    ON_LOAD = "on_load"
    ON_FOCUS = "on_focus"
    ON_BLUR = "on_blur"
    ON_CHANGE = "on_change"
    ON_SAVE = "on_save"
    ON_SUBMIT = "on_submit"
    ON_PRINT = "on_print"
    CONTINUOUS = "continuous"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class ActionType(str, Enum):
    SHOW_MESSAGE = "show_message"
    BLOCK_SUBMIT = "block_submit"
    SET_FIELD_VALUE = "set_field_value"
    CLEAR_FIELD = "clear_field"
    SHOW_FIELD = "show_field"
    HIDE_FIELD = "hide_field"
    MAKE_REQUIRED = "make_required"
    MAKE_OPTIONAL = "make_optional"
    DISABLE_FIELD = "disable_field"
    ENABLE_FIELD = "enable_field"
    CHANGE_COLOR = "change_color"


class MessageType(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


UNTARGETED_ACTIONS = {ActionType.SHOW_MESSAGE, ActionType.BLOCK_SUBMIT}


def _enum_value(enum_cls: type[Enum], raw_value: Any, label: str) -> Any:
    if isinstance(raw_value, enum_cls):
        return raw_value
    try:
        return enum_cls(str(raw_value).strip())
    except ValueError:
        raise TemplateError(f"unsupported {label}: {raw_value!r}") from None


def _int_or_default(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(slots=True, frozen=True)
class CalculatedConfig:
    formula: str
    format_type: FormatType = FormatType.NUMBER
    decimal_places: int = DEFAULT_DECIMAL_PLACES
    prefix: str = ""
    suffix: str = ""
    custom_format: str = ""
    dependencies: frozenset[str] = field(init=False, default=frozenset())

    def __post_init__(self) -> None:
        try:
            dependencies = frozenset(extract_dependencies(self.formula))
        except FormulaParseError:
            # reported as a field issue when the dependency graph is built
            dependencies = frozenset()
        object.__setattr__(self, "dependencies", dependencies)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CalculatedConfig:
        return cls(
            formula=str(payload.get("formula") or ""),
            format_type=_enum_value(FormatType, payload.get("formatType") or "number", "format type"),
            decimal_places=_int_or_default(payload.get("decimalPlaces"), DEFAULT_DECIMAL_PLACES),
            prefix=str(payload.get("prefix") or ""),
            suffix=str(payload.get("suffix") or ""),
            custom_format=str(payload.get("customFormat") or ""),
        )


@dataclass(slots=True, frozen=True)
class FieldDefinition:
    """A template field. ``name`` is the key formulas and rules resolve against.

    Hosts that key their own state by ``id`` translate to ``name`` before
    handing values to the engine.
    """

    id: str
    name: str
    type: FieldType
    label: str = ""
    required: bool = False
    calculated_config: CalculatedConfig | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise TemplateError(f"field {self.id!r} has no name")
        if self.type is FieldType.CALCULATED and (
            self.calculated_config is None or not self.calculated_config.formula.strip()
        ):
            raise TemplateError(f"calculated field '{self.name}' requires a formula")

    @property
    def is_calculated(self) -> bool:
        return self.type is FieldType.CALCULATED

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> FieldDefinition:
        raw_config = payload.get("calculatedConfig")
        name = str(payload.get("name") or "").strip()
        return cls(
            id=str(payload.get("id") or name),
            name=name,
            type=_enum_value(FieldType, payload.get("type") or "text", "field type"),
            label=str(payload.get("label") or ""),
            required=bool(payload.get("required", False)),
            calculated_config=CalculatedConfig.from_dict(raw_config) if raw_config else None,
        )


@dataclass(slots=True, frozen=True)
class ValidationCondition:
    id: str
    field_name: str
    operator: ConditionOperator
    value: Any = None
    compare_with_field: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ValidationCondition:
        field_name = str(payload.get("fieldName") or "").strip()
        if not field_name:
            raise TemplateError(f"condition {payload.get('id')!r} has no fieldName")
        return cls(
            id=str(payload.get("id") or ""),
            field_name=field_name,
            operator=_enum_value(ConditionOperator, payload.get("operator"), "condition operator"),
            value=payload.get("value"),
            compare_with_field=payload.get("compareWithField") or None,
        )


@dataclass(slots=True, frozen=True)
class ValidationAction:
    id: str
    type: ActionType
    target_field: str | None = None
    value: Any = None
    message: str = ""
    message_type: MessageType = MessageType.INFO
    color: str | None = None

    def __post_init__(self) -> None:
        if self.type not in UNTARGETED_ACTIONS and not self.target_field:
            raise TemplateError(f"action {self.id!r} ({self.type.value}) requires a targetField")
        if self.type is ActionType.CHANGE_COLOR and not self.color:
            raise TemplateError(f"action {self.id!r} (change_color) requires a color")

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ValidationAction:
        return cls(
            id=str(payload.get("id") or ""),
            type=_enum_value(ActionType, payload.get("type"), "action type"),
            target_field=payload.get("targetField") or None,
            value=payload.get("value"),
            message=str(payload.get("message") or ""),
            message_type=_enum_value(MessageType, payload.get("messageType") or "info", "message type"),
            color=payload.get("color") or None,
        )


@dataclass(slots=True, frozen=True)
class ValidationRule:
    id: str
    name: str
    conditions: tuple[ValidationCondition, ...] = ()
    logical_operator: LogicalOperator = LogicalOperator.AND
    actions_true: tuple[ValidationAction, ...] = ()
    actions_false: tuple[ValidationAction, ...] = ()
    execution_type: ExecutionType = ExecutionType.ON_CHANGE
    priority: int = 0
    enabled: bool = True
    description: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ValidationRule:
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            conditions=tuple(ValidationCondition.from_dict(item) for item in payload.get("conditions") or []),
            logical_operator=_enum_value(
                LogicalOperator, str(payload.get("logicalOperator") or "AND").upper(), "logical operator"
            ),
            actions_true=tuple(ValidationAction.from_dict(item) for item in payload.get("actionsTrue") or []),
            actions_false=tuple(ValidationAction.from_dict(item) for item in payload.get("actionsFalse") or []),
            execution_type=_enum_value(ExecutionType, payload.get("executionType") or "on_change", "execution type"),
            priority=_int_or_default(payload.get("priority"), 0),
            enabled=bool(payload.get("enabled", True)),
            description=str(payload.get("description") or ""),
        )


VALIDATION_RULE_EXAMPLES: list[dict[str, Any]] = [
    {
        "id": "example-minimum-temperature",
        "name": "Minimum temperature",
        "description": "Warn and block submission when the temperature is below 0",
        "conditions": [{"id": "1", "fieldName": "temperature", "operator": "less_than", "value": 0}],
        "logicalOperator": "AND",
        "actionsTrue": [
            {"id": "1", "type": "show_message", "message": "Temperature cannot be below 0°C", "messageType": "error"},
            {"id": "2", "type": "block_submit"},
        ],
        "executionType": "on_change",
    },
    {
        "id": "example-compare-fields",
        "name": "Compare two fields",
        "description": "Show an error when final_value is lower than initial_value",
        "conditions": [
            {
                "id": "1",
                "fieldName": "final_value",
                "operator": "less_than",
                "value": None,
                "compareWithField": "initial_value",
            }
        ],
        "logicalOperator": "AND",
        "actionsTrue": [
            {
                "id": "1",
                "type": "show_message",
                "message": "Final value cannot be lower than initial value",
                "messageType": "error",
            }
        ],
        "executionType": "on_change",
    },
    {
        "id": "example-conditional-required",
        "name": "Conditionally required field",
        "description": "When inspection_type is 'full', require and show notes",
        "conditions": [{"id": "1", "fieldName": "inspection_type", "operator": "equals", "value": "full"}],
        "logicalOperator": "AND",
        "actionsTrue": [
            {"id": "1", "type": "make_required", "targetField": "notes"},
            {"id": "2", "type": "show_field", "targetField": "notes"},
        ],
        "actionsFalse": [
            {"id": "1", "type": "make_optional", "targetField": "notes"},
            {"id": "2", "type": "hide_field", "targetField": "notes"},
        ],
        "executionType": "on_change",
    },
    {
        "id": "example-critical-alert",
        "name": "Critical alert",
        "description": "When pressure is above 100 and temperature above 80, raise a critical alert",
        "conditions": [
            {"id": "1", "fieldName": "pressure", "operator": "greater_than", "value": 100},
            {"id": "2", "fieldName": "temperature", "operator": "greater_than", "value": 80},
        ],
        "logicalOperator": "AND",
        "actionsTrue": [
            {
                "id": "1",
                "type": "show_message",
                "message": "Critical: pressure and temperature above limits",
                "messageType": "error",
            },
            {"id": "2", "type": "block_submit"},
        ],
        "executionType": "continuous",
    },
    {
        "id": "example-stamp-date",
        "name": "Stamp inspection date",
        "description": "Fill inspection_date with today's date when the form opens empty",
        "conditions": [{"id": "1", "fieldName": "inspection_date", "operator": "is_empty"}],
        "logicalOperator": "AND",
        "actionsTrue": [
            {"id": "1", "type": "set_field_value", "targetField": "inspection_date", "value": TODAY_PLACEHOLDER}
        ],
        "executionType": "on_load",
    },
]


def load_field_definitions(payload: Iterable[Mapping[str, Any] | FieldDefinition]) -> list[FieldDefinition]:
    fields = [item if isinstance(item, FieldDefinition) else FieldDefinition.from_dict(item) for item in payload]
    seen: set[str] = set()
    for definition in fields:
        if definition.name in seen:
            raise TemplateError(f"duplicate field name: {definition.name}")
        seen.add(definition.name)
    return fields


def load_rule_definitions(payload: Iterable[Mapping[str, Any] | ValidationRule]) -> list[ValidationRule]:
    return [item if isinstance(item, ValidationRule) else ValidationRule.from_dict(item) for item in payload]


def validate_template(payload: Iterable[Mapping[str, Any]]) -> list[str]:
    errors: list[str] = []
    seen: set[str] = set()
    for index, item in enumerate(payload):
        try:
            definition = FieldDefinition.from_dict(item)
        except TemplateError as exc:
            errors.append(f"field {index}: {exc}")
            continue
        if definition.name in seen:
            errors.append(f"field {index}: duplicate field name '{definition.name}'")
        seen.add(definition.name)
    return errors


def validate_rules(payload: Any) -> list[str]:
    """Integrity check for a stored rule list; returns one message per problem."""
    if not isinstance(payload, list):
        return ["rules must be a list"]

    errors: list[str] = []
    for index, rule in enumerate(payload):
        if not isinstance(rule, Mapping):
            errors.append(f"rule {index}: must be an object")
            continue
        if not rule.get("id"):
            errors.append(f"rule {index}: id is required")
        if not rule.get("name"):
            errors.append(f"rule {index}: name is required")
        if not isinstance(rule.get("conditions"), list):
            errors.append(f"rule {index}: conditions must be a list")
        if not isinstance(rule.get("actionsTrue"), list):
            errors.append(f"rule {index}: actionsTrue must be a list")
        if errors and errors[-1].startswith(f"rule {index}:"):
            continue
        try:
            ValidationRule.from_dict(rule)
        except TemplateError as exc:
            errors.append(f"rule {index}: {exc}")
    return errors
