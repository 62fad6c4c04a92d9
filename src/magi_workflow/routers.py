"""Conditional routers.

A router is a pure decision over the workflow state: it reads a few fields
and returns the name of one of the nodes it was configured with. Routers
accept the LangGraph state mapping (snake_case keys), a camelCase wire
mapping, or a pydantic model. Missing, unknown or mistyped fields resolve
to the router's safe default edge; a router never raises.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

_MISSING = object()


def _field(state: Any, name: str) -> Any:
    if isinstance(state, Mapping):
        if name in state:
            return state[name]
        return state.get(to_camel(name), _MISSING)
    return getattr(state, name, _MISSING)


def _is_true(value: Any) -> bool:
    return value is True


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def has_fatal_errors(state: Any) -> bool:
    """True when the state carries at least one fatal error message.

    A fatal error overrides every other flag, so routers that consult it
    check it before anything else. A malformed field counts as fatal.
    """
    messages = _field(state, "workflow_fatal_error_messages")
    if messages is _MISSING or messages is None:
        return False
    if isinstance(messages, (list, tuple)):
        return len(messages) > 0
    logger.warning("workflow_fatal_error_messages has unexpected type %s; treating as fatal", type(messages).__name__)
    return True


class ProjectValidRouter:
    def __init__(self, success_node: str, failure_node: str) -> None:
        self.success_node = success_node
        self.failure_node = failure_node

    def execute(self, state: Any) -> str:
        if has_fatal_errors(state):
            return self.failure_node
        if _is_true(_field(state, "valid_project")):
            return self.success_node
        return self.failure_node

    __call__ = execute


class PodInstallRouter:
    """Dependency install runs only for iOS projects whose Podfile was modified."""

    def __init__(self, pod_install_node: str, build_validation_node: str) -> None:
        self.pod_install_node = pod_install_node
        self.build_validation_node = build_validation_node

    def execute(self, state: Any) -> str:
        platform = _enum_value(_field(state, "platform"))
        if platform == "iOS" and _is_true(_field(state, "podfile_modified")):
            return self.pod_install_node
        return self.build_validation_node

    __call__ = execute


class FatalErrorGate:
    def __init__(self, next_node: str, failure_node: str) -> None:
        self.next_node = next_node
        self.failure_node = failure_node

    def execute(self, state: Any) -> str:
        return self.failure_node if has_fatal_errors(state) else self.next_node

    __call__ = execute


class IntegrationRouter:
    def __init__(self, success_node: str, failure_node: str) -> None:
        self.success_node = success_node
        self.failure_node = failure_node

    def execute(self, state: Any) -> str:
        if has_fatal_errors(state):
            return self.failure_node
        errors = _field(state, "integration_error_messages")
        clean = errors is _MISSING or errors is None or (isinstance(errors, (list, tuple)) and not errors)
        if _is_true(_field(state, "integration_successful")) and clean:
            return self.success_node
        return self.failure_node

    __call__ = execute


class BuildResultRouter:
    """Deploy on success, retry recovery while attempts remain, otherwise fail."""

    def __init__(self, success_node: str, recovery_node: str, failure_node: str, *, max_attempts: int) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.success_node = success_node
        self.recovery_node = recovery_node
        self.failure_node = failure_node
        self.max_attempts = max_attempts

    def execute(self, state: Any) -> str:
        if has_fatal_errors(state):
            return self.failure_node
        if _is_true(_field(state, "build_successful")):
            return self.success_node
        attempts = _field(state, "build_attempt_count")
        if isinstance(attempts, bool) or not isinstance(attempts, int):
            return self.failure_node
        if attempts < self.max_attempts:
            return self.recovery_node
        return self.failure_node

    __call__ = execute


class PropertiesFulfilledRouter:
    """Continue once every required template property has a value; otherwise collect more."""

    def __init__(self, fulfilled_node: str, unfulfilled_node: str) -> None:
        self.fulfilled_node = fulfilled_node
        self.unfulfilled_node = unfulfilled_node

    def execute(self, state: Any) -> str:
        selected = _field(state, "selected_template")
        if selected is _MISSING or not selected:
            return self.unfulfilled_node
        metadata = _field(state, "template_properties_metadata")
        if metadata is _MISSING or not metadata:
            return self.fulfilled_node
        if not isinstance(metadata, Mapping):
            return self.unfulfilled_node
        values = _field(state, "template_properties")
        if values is _MISSING or not isinstance(values, Mapping):
            return self.unfulfilled_node
        missing = missing_template_properties(metadata, values)
        if missing:
            logger.debug("Template properties still missing: %s", ", ".join(missing))
            return self.unfulfilled_node
        return self.fulfilled_node

    __call__ = execute


def missing_template_properties(metadata: Mapping[str, Any], values: Mapping[str, Any] | None) -> list[str]:
    """Names of required properties in ``metadata`` with no value in ``values``."""
    values = values or {}
    missing = []
    for name, entry in metadata.items():
        required = entry.get("required") if isinstance(entry, Mapping) else getattr(entry, "required", False)
        if _is_true(required) and not values.get(name):
            missing.append(name)
    return missing
