"""State handlers for the spec document pipeline.

Every handler takes a :class:`TurnContext` and returns a :class:`HandlerOutcome`.
Handlers never raise for resource problems; they report ``success=False``
and hand back the context they were given. Advancement is requested by
setting ``next_state`` on the returned context and is applied by the
executor, never inferred by it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable

from .documents import DocumentFiles
from .instructions import InstructionCatalog, InstructionsError, pin_save_location
from .models import DocumentConfig, DocumentEntry, DocumentStatus, SddState, TurnResult, WorkflowContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnContext:
    context: WorkflowContext
    user_input: str | None = None

    @property
    def confirmed(self) -> bool:
        return (self.user_input or "").strip().lower() == "finalize"


@dataclass(frozen=True)
class HandlerOutcome:
    result: TurnResult
    context: WorkflowContext


StateHandler = Callable[[TurnContext], HandlerOutcome]


@dataclass(frozen=True)
class DocumentPhase:
    state: SddState
    name: str
    key: str
    description: str
    next_state: SddState | None


PRD_PHASE = DocumentPhase(
    state=SddState.BUILDING_PRD,
    name="PRD",
    key="prd",
    description="PRD (Product Requirements Document)",
    next_state=SddState.BUILDING_TDD,
)
TDD_PHASE = DocumentPhase(
    state=SddState.BUILDING_TDD,
    name="TDD",
    key="tdd",
    description="TDD (Technical Design Document)",
    next_state=SddState.BUILDING_TASKS,
)
TASKS_PHASE = DocumentPhase(
    state=SddState.BUILDING_TASKS,
    name="Tasks",
    key="tasks",
    description="Tasks document",
    next_state=None,
)

DOCUMENT_PHASES: dict[SddState, DocumentPhase] = {
    phase.state: phase for phase in (PRD_PHASE, TDD_PHASE, TASKS_PHASE)
}
PHASE_ORDER = (PRD_PHASE, TDD_PHASE, TASKS_PHASE)


def _artifact_path(context: WorkflowContext, phase: DocumentPhase) -> str:
    path = getattr(context, f"{phase.key}_path")
    if not path:
        raise ValueError(f"Workflow context has no {phase.key}Path")
    return path


def document_config(phase: DocumentPhase, context: WorkflowContext, catalog: InstructionCatalog) -> DocumentConfig:
    next_phase = DOCUMENT_PHASES[phase.next_state] if phase.next_state is not None else None
    return DocumentConfig(
        name=phase.name,
        key=phase.key,
        current_path=_artifact_path(context, phase),
        current_state=phase.state,
        instructions_file=catalog.location(phase.state),
        next_path=_artifact_path(context, next_phase) if next_phase else None,
        next_state=next_phase.state if next_phase else None,
        next_instructions_file=catalog.location(next_phase.state) if next_phase else None,
    )


def document_statuses(
    context: WorkflowContext,
    active: SddState,
    *,
    active_status: DocumentStatus = DocumentStatus.IN_PROGRESS,
) -> dict[str, DocumentEntry]:
    """Earlier phases finalized, the active phase ``active_status``, later phases pending.

    Phases whose path is absent from the context are left out.
    """
    active_index = next(index for index, phase in enumerate(PHASE_ORDER) if phase.state == active)
    statuses: dict[str, DocumentEntry] = {}
    for index, phase in enumerate(PHASE_ORDER):
        path = getattr(context, f"{phase.key}_path")
        if not path:
            continue
        if index < active_index:
            status = DocumentStatus.FINALIZED
        elif index == active_index:
            status = active_status
        else:
            status = DocumentStatus.PENDING
        statuses[phase.key] = DocumentEntry(status=status, path=path)
    return statuses


def _all_finalized(context: WorkflowContext) -> dict[str, DocumentEntry]:
    entries = {}
    for phase in PHASE_ORDER:
        path = getattr(context, f"{phase.key}_path")
        if path:
            entries[phase.key] = DocumentEntry(status=DocumentStatus.FINALIZED, path=path)
    return entries


def _result(
    context: WorkflowContext,
    *,
    success: bool,
    current_state: str,
    next_action: str,
    documents: dict[str, DocumentEntry] | None = None,
    errors: list[str] | None = None,
) -> TurnResult:
    return TurnResult(
        success=success,
        feature_id=context.feature_id,
        project_path=context.project_path,
        magi_directory=context.magi_directory,
        current_state=current_state,
        next_action=next_action,
        documents=documents or {},
        errors=errors or [],
    )


def _resource_failure(turn: TurnContext, phase: DocumentPhase, exc: Exception) -> HandlerOutcome:
    context = turn.context
    message = f"{phase.name} step could not complete: {exc}"
    logger.warning("Resource failure in %s for %s: %s", phase.state.value, context.feature_id, exc)
    return HandlerOutcome(
        result=_result(
            context,
            success=False,
            current_state=context.current_state,
            next_action=f"{message}. Fix the problem and call magi again with the same input to retry.",
            errors=[message],
        ),
        context=context,
    )


def _relative(context: WorkflowContext, path: str) -> str:
    return os.path.relpath(path, context.project_path)


def _guidance(phase: DocumentPhase, context: WorkflowContext, config: DocumentConfig, catalog: InstructionCatalog) -> str:
    instructions = pin_save_location(catalog.render(phase.state, context), _relative(context, config.current_path))
    return (
        f"You are currently building the {phase.description}. "
        f"Here's comprehensive guidance on creating it:\n\n{instructions}"
    )


def check_prior_documents(
    phase: DocumentPhase, context: WorkflowContext, files: DocumentFiles
) -> list[str]:
    """Messages for every earlier phase whose artifact lost its finalization marker."""
    messages = []
    for prior in PHASE_ORDER:
        if prior.state == phase.state:
            break
        path = _artifact_path(context, prior)
        if not files.is_finalized(Path(path)):
            messages.append(f"{prior.name} document at {path} is no longer finalized")
    return messages


def build_document(
    turn: TurnContext,
    phase: DocumentPhase,
    *,
    catalog: InstructionCatalog,
    files: DocumentFiles,
) -> HandlerOutcome:
    """Shared document-building step for every phase, driven by its ``DocumentConfig``."""
    context = turn.context
    try:
        config = document_config(phase, context, catalog)
        broken = check_prior_documents(phase, context, files)
    except (OSError, ValueError) as exc:
        return _resource_failure(turn, phase, exc)

    if broken:
        updated = context
        for message in broken:
            updated = updated.with_fatal_error(message)
        logger.error("Integrity check failed for %s: %s", context.feature_id, "; ".join(broken))
        return HandlerOutcome(
            result=_result(
                updated,
                success=False,
                current_state=context.current_state,
                next_action=(
                    "Earlier documents were modified after finalization, so this feature cannot continue. "
                    "Call magi again to get the failure report."
                ),
                errors=broken,
            ),
            context=updated,
        )

    current_path = Path(config.current_path)

    if config.is_terminal:
        if not turn.confirmed:
            try:
                guidance = _guidance(phase, context, config, catalog)
                finalized = files.is_finalized(current_path)
            except OSError as exc:
                return _resource_failure(turn, phase, exc)
            status = DocumentStatus.FINALIZED if finalized else DocumentStatus.IN_PROGRESS
            return HandlerOutcome(
                result=_result(
                    context,
                    success=True,
                    current_state=config.current_state.value,
                    next_action=guidance,
                    documents=document_statuses(context, phase.state, active_status=status),
                ),
                context=context,
            )
        try:
            files.mark_finalized(current_path)
        except OSError as exc:
            return _resource_failure(turn, phase, exc)
        logger.info("Final document %s confirmed for %s", phase.name, context.feature_id)
        return HandlerOutcome(
            result=_result(
                context,
                success=True,
                current_state=SddState.COMPLETED.value,
                next_action="All documents have been finalized! The magi workflow is complete.",
                documents=_all_finalized(context),
            ),
            context=context.model_copy(update={"next_state": SddState.COMPLETED.value}),
        )

    if not turn.confirmed:
        try:
            guidance = _guidance(phase, context, config, catalog)
        except InstructionsError as exc:
            return _resource_failure(turn, phase, exc)
        return HandlerOutcome(
            result=_result(
                context,
                success=True,
                current_state=config.current_state.value,
                next_action=(
                    f"{guidance}\n\nWhen the {phase.name} is complete and approved, "
                    'call magi again with userInput: "finalize" to move to the next phase.'
                ),
                documents=document_statuses(context, phase.state),
            ),
            context=context,
        )

    next_phase = DOCUMENT_PHASES[config.next_state]
    try:
        next_instructions = pin_save_location(
            catalog.render(next_phase.state, context), _relative(context, config.next_path)
        )
        files.mark_finalized(current_path)
        files.create_placeholder(Path(config.next_path), next_phase.name)
    except OSError as exc:
        return _resource_failure(turn, phase, exc)

    logger.info("%s finalized for %s; requesting %s", phase.name, context.feature_id, next_phase.state.value)
    return HandlerOutcome(
        result=_result(
            context,
            success=True,
            current_state=next_phase.state.value,
            next_action=(
                f"{phase.name} finalized! I've created a placeholder {next_phase.name} document. "
                f"Here's comprehensive guidance on creating the {next_phase.description}:\n\n{next_instructions}"
            ),
            documents=document_statuses(context, next_phase.state),
        ),
        context=context.model_copy(update={"next_state": next_phase.state.value}),
    )


def handle_init(turn: TurnContext, *, catalog: InstructionCatalog, files: DocumentFiles) -> HandlerOutcome:
    """Create all three placeholders, then hand over to PRD guidance."""
    context = turn.context
    try:
        if context.magi_directory:
            files.ensure_directory(Path(context.magi_directory))
        for phase in PHASE_ORDER:
            files.create_placeholder(Path(_artifact_path(context, phase)), phase.name)
    except (OSError, ValueError) as exc:
        return _resource_failure(turn, PRD_PHASE, exc)

    prd = build_document(TurnContext(context=context), PRD_PHASE, catalog=catalog, files=files)
    if not prd.result.success:
        return prd
    result = prd.result.model_copy(
        update={
            "current_state": SddState.BUILDING_PRD.value,
            "next_action": (
                "Feature initialized! I've created placeholder documents for PRD, TDD, and Tasks.\n\n"
                f"{prd.result.next_action}"
            ),
        }
    )
    return HandlerOutcome(
        result=result,
        context=context.model_copy(update={"next_state": SddState.BUILDING_PRD.value}),
    )


def handle_completed(turn: TurnContext) -> HandlerOutcome:
    context = turn.context
    return HandlerOutcome(
        result=_result(
            context,
            success=True,
            current_state=SddState.COMPLETED.value,
            next_action="The magi workflow is already complete. All documents have been finalized.",
            documents=_all_finalized(context),
        ),
        context=context,
    )


def handle_failed(turn: TurnContext) -> HandlerOutcome:
    context = turn.context
    messages = list(context.workflow_fatal_error_messages)
    listing = "\n".join(f"- {message}" for message in messages) or "- (no messages recorded)"
    return HandlerOutcome(
        result=_result(
            context,
            success=True,
            current_state=SddState.FAILED.value,
            next_action=(
                "The magi workflow stopped because of non-recoverable errors:\n"
                f"{listing}\n\n"
                "Describe these failures to the user. This workflow instance will not continue; "
                "fix the issues and start a new feature."
            ),
            errors=messages,
        ),
        context=context,
    )


def build_handler_table(catalog: InstructionCatalog, files: DocumentFiles) -> dict[SddState, StateHandler]:
    """Exhaustive state -> handler mapping for the spec document pipeline."""
    table: dict[SddState, StateHandler] = {
        SddState.INIT: partial(handle_init, catalog=catalog, files=files),
        SddState.COMPLETED: handle_completed,
        SddState.FAILED: handle_failed,
    }
    for state, phase in DOCUMENT_PHASES.items():
        table[state] = partial(build_document, phase=phase, catalog=catalog, files=files)
    return table
