from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .features import FEATURE_SLUG_RE


class WorkflowKind(str, Enum):
    SPEC_DOCUMENTS = "spec-documents"
    ADD_FEATURE = "add-feature"


class SddState(str, Enum):
    """Closed state set of the spec document pipeline."""

    INIT = "init"
    BUILDING_PRD = "buildingPrd"
    BUILDING_TDD = "buildingTdd"
    BUILDING_TASKS = "buildingTasks"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, raw: str) -> "SddState | None":
        try:
            return cls(raw)
        except ValueError:
            return None


TERMINAL_SDD_STATES = frozenset({SddState.COMPLETED, SddState.FAILED})


class Platform(str, Enum):
    IOS = "iOS"
    ANDROID = "Android"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    FINALIZED = "finalized"


class _WireModel(BaseModel):
    """Base for records exchanged with callers and the state store (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class WorkflowContext(_WireModel):
    """Per-feature workflow record; the only state that survives between turns."""

    workflow: WorkflowKind
    feature_id: str = Field(min_length=1)
    project_path: str = Field(min_length=1)
    magi_directory: str | None = None
    prd_path: str | None = None
    tdd_path: str | None = None
    tasks_path: str | None = None
    platform: Platform | None = None
    podfile_modified: bool = False
    valid_project: bool = False
    workflow_fatal_error_messages: list[str] = Field(default_factory=list)
    current_state: str = Field(min_length=1)
    next_state: str | None = None
    version: int = Field(default=0, ge=0)

    def has_fatal_errors(self) -> bool:
        return bool(self.workflow_fatal_error_messages)

    def with_fatal_error(self, message: str) -> "WorkflowContext":
        return self.model_copy(
            update={"workflow_fatal_error_messages": [*self.workflow_fatal_error_messages, message]}
        )

    def preserves_fatal_errors_of(self, previous: "WorkflowContext") -> bool:
        """True when ``previous``'s fatal messages are an unchanged prefix of this context's."""
        prior = previous.workflow_fatal_error_messages
        return self.workflow_fatal_error_messages[: len(prior)] == prior


class DocumentEntry(_WireModel):
    status: DocumentStatus
    path: str


class TurnResult(_WireModel):
    success: bool
    feature_id: str
    project_path: str
    magi_directory: str | None = None
    current_state: str
    next_action: str
    documents: dict[str, DocumentEntry] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    result_schema: dict[str, Any] | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class SpecTurnRequest(_WireModel):
    project_path: str = Field(min_length=1)
    feature_id: str = Field(min_length=1)
    user_input: str | None = None


class AddFeatureTurnRequest(_WireModel):
    project_path: str = Field(min_length=1)
    feature_slug: str | None = None
    feature_description: str | None = None
    agent_result: dict[str, Any] | None = None

    @field_validator("feature_slug")
    @classmethod
    def _slug_format(cls, value: str | None) -> str | None:
        if value is not None and not FEATURE_SLUG_RE.match(value):
            raise ValueError("featureSlug must be kebab-case (lowercase letters, digits, hyphens)")
        return value

    @model_validator(mode="after")
    def _slug_or_description(self) -> "AddFeatureTurnRequest":
        if self.feature_slug is None and not (self.feature_description or "").strip():
            raise ValueError("either featureSlug or featureDescription is required")
        return self


@dataclass(frozen=True)
class DocumentConfig:
    """One document-producing phase, resolved per turn and never persisted."""

    name: str
    key: str
    current_path: str
    current_state: SddState
    instructions_file: Path
    next_path: str | None = None
    next_state: SddState | None = None
    next_instructions_file: Path | None = None

    def __post_init__(self) -> None:
        if (self.next_path is None) != (self.next_state is None):
            raise ValueError(f"{self.name}: next_path and next_state must be both present or both absent")
        if (self.next_instructions_file is None) != (self.next_state is None):
            raise ValueError(f"{self.name}: next_instructions_file is required exactly when next_state is set")

    @property
    def is_terminal(self) -> bool:
        return self.next_state is None
