from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Mapping

from .features import feature_name
from .models import SddState, WorkflowContext

logger = logging.getLogger(__name__)

DOCUMENT_STATES = (SddState.BUILDING_PRD, SddState.BUILDING_TDD, SddState.BUILDING_TASKS)

DEFAULT_INSTRUCTION_FILES: dict[SddState, str] = {
    SddState.BUILDING_PRD: "prd-instructions.md",
    SddState.BUILDING_TDD: "tdd-instructions.md",
    SddState.BUILDING_TASKS: "tasks-instructions.md",
}

_SAVE_PHRASE_RE = re.compile(r"(MUST save the [^.\n]*?) to the specified file path\.")


class InstructionsError(OSError):
    """Instruction text for a phase could not be read."""


def _relative(project_path: str, target: str | None) -> str:
    if not target:
        return ""
    return os.path.relpath(target, project_path)


def render_template(template: str, context: WorkflowContext) -> str:
    """Substitute the ``<placeholder>`` tokens with project-relative values."""
    replacements = {
        "<project_path>": ".",
        "<feature_id>": context.feature_id,
        "<feature_name>": feature_name(context.feature_id),
        "<magi_directory>": _relative(context.project_path, context.magi_directory),
        "<prd_path>": _relative(context.project_path, context.prd_path),
        "<tdd_path>": _relative(context.project_path, context.tdd_path),
        "<tasks_path>": _relative(context.project_path, context.tasks_path),
    }
    rendered = template
    for placeholder, value in replacements.items():
        rendered = rendered.replace(placeholder, value)
    return rendered


def pin_save_location(instructions: str, location: str) -> str:
    """Rewrite the generic "save to the specified file path" rule to name ``location``."""
    return _SAVE_PHRASE_RE.sub(lambda match: f"{match.group(1)} to: {location}", instructions)


class InstructionCatalog:
    """Explicit mapping from document phase to its instruction resource.

    Resolved once at startup and injected into the spec workflow.
    """

    def __init__(self, locations: Mapping[SddState, Path]) -> None:
        missing = [state.value for state in DOCUMENT_STATES if state not in locations]
        if missing:
            raise ValueError(f"Instruction catalog is missing phases: {', '.join(missing)}")
        unexpected = [state.value for state in locations if state not in DOCUMENT_STATES]
        if unexpected:
            raise ValueError(f"Instruction catalog maps non-document states: {', '.join(unexpected)}")
        self._locations = {state: Path(locations[state]) for state in DOCUMENT_STATES}

    @classmethod
    def from_directory(cls, directory: Path) -> "InstructionCatalog":
        return cls({state: directory / name for state, name in DEFAULT_INSTRUCTION_FILES.items()})

    @classmethod
    def packaged(cls) -> "InstructionCatalog":
        """Catalog over the templates shipped inside the package."""
        return cls.from_directory(Path(__file__).resolve().parent / "resources")

    @classmethod
    def from_settings(cls, instructions_dir: str) -> "InstructionCatalog":
        if instructions_dir:
            return cls.from_directory(Path(instructions_dir))
        return cls.packaged()

    def location(self, state: SddState) -> Path:
        return self._locations[state]

    def render(self, state: SddState, context: WorkflowContext) -> str:
        path = self.location(state)
        try:
            template = path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.error("Instruction text unavailable for %s at %s: %s", state.value, path, exc)
            raise InstructionsError(f"Failed to read {state.value} instructions at {path}: {exc}") from exc
        return render_template(template, context)
