from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .documents import DocumentFiles
from .features import resolve_spec_feature_id
from .handlers import StateHandler, TurnContext, build_handler_table
from .instructions import InstructionCatalog
from .models import (
    TERMINAL_SDD_STATES,
    SddState,
    SpecTurnRequest,
    TurnResult,
    WorkflowContext,
    WorkflowKind,
)
from .settings import RuntimeSettings
from .state_store import StaleStateError, WorkflowStateStore

logger = logging.getLogger(__name__)


def rejected_turn(
    *,
    project_path: str,
    feature_id: str,
    current_state: str,
    message: str,
    next_action: str,
    magi_directory: str | None = None,
) -> TurnResult:
    return TurnResult(
        success=False,
        feature_id=feature_id,
        project_path=project_path,
        magi_directory=magi_directory,
        current_state=current_state,
        next_action=next_action,
        errors=[message],
    )


def validation_messages(exc: ValidationError) -> list[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "request"
        messages.append(f"{location}: {error.get('msg', 'invalid value')}")
    return messages


class SpecDocumentWorkflow:
    """Turn executor for the PRD -> TDD -> Tasks pipeline.

    Each call to :meth:`run_turn` loads the feature's persisted context,
    dispatches exactly one handler, applies the handler's advancement
    request and writes the context back if it changed. Nothing is carried
    in memory between turns.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        catalog: InstructionCatalog | None = None,
        files: DocumentFiles | None = None,
        handlers: Mapping[SddState, StateHandler] | None = None,
    ) -> None:
        self.settings = settings or RuntimeSettings.from_env()
        self.catalog = catalog or InstructionCatalog.from_settings(self.settings.instructions_dir)
        self.files = files or DocumentFiles()
        table = dict(handlers) if handlers is not None else build_handler_table(self.catalog, self.files)
        missing = [state.value for state in SddState if state not in table]
        unknown = [str(key) for key in table if not isinstance(key, SddState)]
        if missing or unknown:
            raise ValueError(
                "Handler table must cover the spec pipeline states exactly; "
                f"missing={missing or 'none'} unknown={unknown or 'none'}"
            )
        self.handlers: dict[SddState, StateHandler] = table

    def store_for(self, project_path: Path) -> WorkflowStateStore:
        return WorkflowStateStore(self.settings.state_store_path(project_path))

    def new_context(self, project_path: Path, feature_id: str) -> WorkflowContext:
        magi_directory = self.settings.sdd_root(project_path) / feature_id
        return WorkflowContext(
            workflow=WorkflowKind.SPEC_DOCUMENTS,
            feature_id=feature_id,
            project_path=str(project_path),
            magi_directory=str(magi_directory),
            prd_path=str(magi_directory / "prd.md"),
            tdd_path=str(magi_directory / "tdd.md"),
            tasks_path=str(magi_directory / "tasks.md"),
            current_state=SddState.INIT.value,
        )

    def run_turn(self, request: SpecTurnRequest | Mapping[str, Any]) -> TurnResult:
        """Process one external invocation. Never raises for turn-level problems."""
        if not isinstance(request, SpecTurnRequest):
            try:
                request = SpecTurnRequest.model_validate(request)
            except ValidationError as exc:
                messages = validation_messages(exc)
                logger.warning("Rejected spec turn request: %s", "; ".join(messages))
                raw = request if isinstance(request, Mapping) else {}
                return rejected_turn(
                    project_path=str(raw.get("projectPath", "")),
                    feature_id=str(raw.get("featureId", "")),
                    current_state=SddState.INIT.value,
                    message="; ".join(messages),
                    next_action="Fix the request fields listed in errors and call magi again.",
                )

        project_path = Path(request.project_path).expanduser()
        if not project_path.is_dir():
            return rejected_turn(
                project_path=request.project_path,
                feature_id=request.feature_id,
                current_state=SddState.INIT.value,
                message=f"Project path does not exist or is not a directory: {request.project_path}",
                next_action="Call magi again with the absolute path of an existing project directory.",
            )
        project_path = project_path.resolve()

        try:
            feature_id = resolve_spec_feature_id(self.settings.sdd_root(project_path), request.feature_id)
        except ValueError as exc:
            return rejected_turn(
                project_path=str(project_path),
                feature_id=request.feature_id,
                current_state=SddState.INIT.value,
                message=str(exc),
                next_action="Call magi again with a featureId like 001-my-feature or a plain feature name.",
            )

        store = self.store_for(project_path)
        try:
            with store.locked(WorkflowKind.SPEC_DOCUMENTS, feature_id):
                return self._locked_turn(store, project_path, feature_id, request.user_input)
        except OSError as exc:
            logger.error("Could not lock state for %s: %s", feature_id, exc)
            return rejected_turn(
                project_path=str(project_path),
                feature_id=feature_id,
                current_state="unknown",
                message=f"Workflow state could not be locked: {exc}",
                next_action="Fix the file system problem and call magi again with the same input.",
            )

    def _locked_turn(
        self,
        store: WorkflowStateStore,
        project_path: Path,
        feature_id: str,
        user_input: str | None,
    ) -> TurnResult:
        try:
            loaded = store.load_or_none(WorkflowKind.SPEC_DOCUMENTS, feature_id)
        except (OSError, ValueError) as exc:
            logger.error("Unreadable state for %s: %s", feature_id, exc)
            return rejected_turn(
                project_path=str(project_path),
                feature_id=feature_id,
                current_state="unknown",
                message=f"Stored workflow state could not be read: {exc}",
                next_action="Repair or remove the stored state record, then call magi again.",
            )
        baseline = loaded if loaded is not None else self.new_context(project_path, feature_id)
        context = baseline

        state = SddState.parse(context.current_state)
        handler = self.handlers.get(state) if state is not None else None
        if handler is None:
            logger.error("No handler registered for state %r (feature %s)", context.current_state, feature_id)
            return rejected_turn(
                project_path=context.project_path,
                feature_id=feature_id,
                magi_directory=context.magi_directory,
                current_state=context.current_state,
                message=f"No handler registered for state: {context.current_state}",
                next_action="The stored state is not part of this workflow. Fix the state record and retry.",
            )

        if context.has_fatal_errors() and state not in TERMINAL_SDD_STATES:
            logger.warning("Fatal errors recorded for %s; routing %s to failed", feature_id, state.value)
            state = SddState.FAILED
            context = context.model_copy(update={"current_state": state.value, "next_state": None})
            handler = self.handlers[state]

        logger.info("Spec turn for %s in state %s", feature_id, state.value)
        outcome = handler(TurnContext(context=context, user_input=user_input))
        updated = outcome.context

        if not updated.preserves_fatal_errors_of(context):
            logger.error("Handler for %s dropped fatal error messages; discarding its changes", state.value)
            return rejected_turn(
                project_path=context.project_path,
                feature_id=feature_id,
                magi_directory=context.magi_directory,
                current_state=context.current_state,
                message=f"Handler for {state.value} removed recorded fatal errors",
                next_action="Internal workflow error. Nothing was saved; report this and retry.",
            )

        try:
            updated = self._apply_advancement(updated)
        except ValueError as exc:
            logger.error("Invalid advancement from %s: %s", state.value, exc)
            return rejected_turn(
                project_path=context.project_path,
                feature_id=feature_id,
                magi_directory=context.magi_directory,
                current_state=context.current_state,
                message=str(exc),
                next_action="Internal workflow error. Nothing was saved; report this and retry.",
            )

        if updated == baseline:
            logger.debug("No context change for %s; skipping write", feature_id)
            return outcome.result

        expected = loaded.version if loaded is not None else 0
        try:
            store.save(updated, expected_version=expected)
        except StaleStateError as exc:
            logger.warning("%s", exc)
            return rejected_turn(
                project_path=context.project_path,
                feature_id=feature_id,
                magi_directory=context.magi_directory,
                current_state=context.current_state,
                message=str(exc),
                next_action="Another invocation updated this feature concurrently. Call magi again.",
            )
        except OSError as exc:
            logger.error("Could not persist state for %s: %s", feature_id, exc)
            return rejected_turn(
                project_path=context.project_path,
                feature_id=feature_id,
                magi_directory=context.magi_directory,
                current_state=context.current_state,
                message=f"Workflow state could not be saved: {exc}",
                next_action="Fix the file system problem and call magi again with the same input.",
            )
        return outcome.result

    def _apply_advancement(self, context: WorkflowContext) -> WorkflowContext:
        if context.next_state is None:
            return context
        target = SddState.parse(context.next_state)
        if target is None:
            raise ValueError(f"Handler requested unknown state: {context.next_state}")
        if target == SddState.COMPLETED and context.has_fatal_errors():
            target = SddState.FAILED
        logger.info("Advancing %s from %s to %s", context.feature_id, context.current_state, target.value)
        return context.model_copy(update={"current_state": target.value, "next_state": None})

    def status(self, project_path: Path, feature_id: str) -> WorkflowContext | None:
        store = self.store_for(project_path.resolve())
        return store.load_or_none(WorkflowKind.SPEC_DOCUMENTS, feature_id)
