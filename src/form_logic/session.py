from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .dependencies import FieldIssue, affected_by, build_graph, recompute
from .effects import EffectDispatcher, FieldOverrides, OverrideRecorder
from .formula_engine import EvalError, FormulaValidation, format_value, validate_formula
from .models import ExecutionType, FieldDefinition, ValidationRule, load_field_definitions
from .rules_engine import ExecuteResult, Message, RuleEngine
from .settings import EngineSettings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionResult:
    event: ExecutionType
    messages: list[Message]
    is_valid: bool
    passes: int
    converged: bool
    values: dict[str, Any]
    display_values: dict[str, str]
    issues: dict[str, FieldIssue]
    overrides: FieldOverrides


class FormSession:
    """Calculated fields and validation rules for one open form.

    Each open form gets its own session; nothing is shared between sessions.
    ``dispatch`` runs the rules of an event and then keeps applying the value
    writes those rules request, recomputing and re-running continuous rules,
    until nothing changes or ``settings.max_passes`` is reached.
    """

    def __init__(
        self,
        fields: Iterable[Mapping[str, Any] | FieldDefinition],
        rules: Iterable[Mapping[str, Any] | ValidationRule] = (),
        values: Mapping[str, Any] | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.fields = load_field_definitions(fields)
        self.graph = build_graph(
            self.fields,
            max_length=self.settings.max_formula_length,
            max_depth=self.settings.max_formula_depth,
        )
        self.engine = RuleEngine.from_rules(rules)
        self.overrides = FieldOverrides()
        self.values = recompute(self.graph, dict(values or {})).values
        self.engine.update_field_values(self.values)

    def load_rules(self, rules: Iterable[Mapping[str, Any] | ValidationRule]) -> None:
        self.engine.load_rules(rules)

    def validate_formula(self, formula: str, field_name: str | None = None) -> FormulaValidation:
        return validate_formula(
            formula,
            self.fields,
            field_name,
            max_length=self.settings.max_formula_length,
            max_depth=self.settings.max_formula_depth,
        )

    def set_value(self, field_name: str, value: Any) -> dict[str, float | EvalError]:
        """Store a raw value and return the calculated fields it changed."""
        if not self._apply_writes({field_name: value}):
            return {}
        affected = affected_by(self.graph, field_name)
        return {name: self.values[name] for name in self.graph.order if name in affected}

    def display_values(self) -> dict[str, str]:
        return {
            definition.name: format_value(
                self.values.get(definition.name, 0.0),
                definition.calculated_config,
                self.settings.locale,
            )
            for definition in self.fields
            if definition.is_calculated
        }

    def dispatch(self, event: ExecutionType | str, effects: EffectDispatcher | None = None) -> SessionResult:
        event = ExecutionType(event)
        recorder = OverrideRecorder(self.overrides, forward=effects)

        primary: ExecuteResult | None = None
        if event is not ExecutionType.CONTINUOUS:
            primary = self.engine.execute(event, recorder)
        continuous = self.engine.execute(ExecutionType.CONTINUOUS, recorder)

        passes = 1
        converged = True
        while self._apply_writes(recorder.take_value_writes()):
            if passes >= self.settings.max_passes:
                converged = False
                logger.warning(
                    "rule_passes_exhausted",
                    extra={"event": event.value, "max_passes": self.settings.max_passes},
                )
                break
            passes += 1
            continuous = self.engine.execute(ExecutionType.CONTINUOUS, recorder)

        messages = list(primary.messages) if primary is not None else []
        messages.extend(continuous.messages)
        is_valid = continuous.is_valid and (primary is None or primary.is_valid)
        logger.info(
            "form_event_dispatched",
            extra={
                "event": event.value,
                "passes": passes,
                "converged": converged,
                "is_valid": is_valid,
                "message_count": len(messages),
            },
        )
        return SessionResult(
            event=event,
            messages=messages,
            is_valid=is_valid,
            passes=passes,
            converged=converged,
            values=dict(self.values),
            display_values=self.display_values(),
            issues=dict(self.graph.issues),
            overrides=self.overrides.copy(),
        )

    def _apply_writes(self, writes: Mapping[str, Any]) -> list[str]:
        changed: list[str] = []
        for field_name, value in writes.items():
            definition = self.graph.fields.get(field_name)
            if definition is not None and definition.is_calculated:
                logger.warning("calculated_field_write_ignored", extra={"field_name": field_name})
                continue
            if field_name in self.values and self.values[field_name] == value:
                continue
            self.values[field_name] = value
            changed.append(field_name)

        if changed:
            self.values = recompute(self.graph, self.values, changed=changed).values
            self.engine.update_field_values(self.values)
        return changed
