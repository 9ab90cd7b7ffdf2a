from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from .models import FieldDefinition, MessageType


class EffectDispatcher(Protocol):
    """Side effects the rule engine requests from the host.

    The engine only calls these; applying them to the form is the host's job.
    """

    def on_show_message(self, message: str, message_type: MessageType) -> None: ...

    def on_block_submit(self, blocked: bool) -> None: ...

    def on_set_field_value(self, field_name: str, value: Any) -> None: ...

    def on_toggle_field_visibility(self, field_name: str, visible: bool) -> None: ...

    def on_toggle_field_required(self, field_name: str, required: bool) -> None: ...

    def on_toggle_field_disabled(self, field_name: str, disabled: bool) -> None: ...

    def on_change_field_color(self, field_name: str, color: str) -> None: ...


class NullEffects:
    """Dispatcher that ignores every effect; subclass and override what you need."""

    def on_show_message(self, message: str, message_type: MessageType) -> None:
        pass

    def on_block_submit(self, blocked: bool) -> None:
        pass

    def on_set_field_value(self, field_name: str, value: Any) -> None:
        pass

    def on_toggle_field_visibility(self, field_name: str, visible: bool) -> None:
        pass

    def on_toggle_field_required(self, field_name: str, required: bool) -> None:
        pass

    def on_toggle_field_disabled(self, field_name: str, disabled: bool) -> None:
        pass

    def on_change_field_color(self, field_name: str, color: str) -> None:
        pass


@dataclass(slots=True)
class FieldOverrides:
    visibility: dict[str, bool] = field(default_factory=dict)
    required: dict[str, bool] = field(default_factory=dict)
    disabled: dict[str, bool] = field(default_factory=dict)
    color: dict[str, str] = field(default_factory=dict)

    def copy(self) -> FieldOverrides:
        return FieldOverrides(
            visibility=dict(self.visibility),
            required=dict(self.required),
            disabled=dict(self.disabled),
            color=dict(self.color),
        )

    def is_visible(self, field_name: str) -> bool:
        return self.visibility.get(field_name, True)

    def is_required(self, definition: FieldDefinition) -> bool:
        return self.required.get(definition.name, definition.required)

    def is_disabled(self, field_name: str) -> bool:
        return self.disabled.get(field_name, False)


class OverrideRecorder(NullEffects):
    """Keeps last-writer-wins overrides and pending value writes.

    Every call is also forwarded to ``forward`` when one is given, so a host
    can observe effects while the session applies them.
    """

    def __init__(self, overrides: FieldOverrides | None = None, forward: EffectDispatcher | None = None) -> None:
        self.overrides = overrides if overrides is not None else FieldOverrides()
        self.forward = forward
        self.value_writes: dict[str, Any] = {}

    def take_value_writes(self) -> dict[str, Any]:
        writes, self.value_writes = self.value_writes, {}
        return writes

    def on_show_message(self, message: str, message_type: MessageType) -> None:
        if self.forward is not None:
            self.forward.on_show_message(message, message_type)

    def on_block_submit(self, blocked: bool) -> None:
        if self.forward is not None:
            self.forward.on_block_submit(blocked)

    def on_set_field_value(self, field_name: str, value: Any) -> None:
        self.value_writes.pop(field_name, None)
        self.value_writes[field_name] = value
        if self.forward is not None:
            self.forward.on_set_field_value(field_name, value)

    def on_toggle_field_visibility(self, field_name: str, visible: bool) -> None:
        self.overrides.visibility[field_name] = visible
        if self.forward is not None:
            self.forward.on_toggle_field_visibility(field_name, visible)

    def on_toggle_field_required(self, field_name: str, required: bool) -> None:
        self.overrides.required[field_name] = required
        if self.forward is not None:
            self.forward.on_toggle_field_required(field_name, required)

    def on_toggle_field_disabled(self, field_name: str, disabled: bool) -> None:
        self.overrides.disabled[field_name] = disabled
        if self.forward is not None:
            self.forward.on_toggle_field_disabled(field_name, disabled)

    def on_change_field_color(self, field_name: str, color: str) -> None:
        self.overrides.color[field_name] = color
        if self.forward is not None:
            self.forward.on_change_field_color(field_name, color)
