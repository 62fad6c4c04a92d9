from __future__ import annotations

from pathlib import Path

import pytest

from magi_workflow import (
    DOCUMENT_PHASES,
    DocumentConfig,
    DocumentFiles,
    InstructionCatalog,
    RuntimeSettings,
    SddState,
    SpecDocumentWorkflow,
    TurnContext,
    WorkflowContext,
    WorkflowKind,
    WorkflowStateStore,
    build_document,
    to_canonical_json,
)
from magi_workflow.documents import FINALIZED_BADGE
from magi_workflow.handlers import (
    HandlerOutcome,
    build_handler_table,
    document_config,
    handle_completed,
    handle_failed,
)


def _workflow(**kwargs: object) -> SpecDocumentWorkflow:
    return SpecDocumentWorkflow(settings=RuntimeSettings(), **kwargs)


def _turn(workflow: SpecDocumentWorkflow, project: Path, feature_id: str = "001-login", finalize: bool = False):
    return workflow.run_turn(
        {
            "projectPath": str(project),
            "featureId": feature_id,
            "userInput": "finalize" if finalize else None,
        }
    )


def _store(project: Path) -> WorkflowStateStore:
    return WorkflowStateStore(RuntimeSettings().state_store_path(project.resolve()))


def _record_text(project: Path, feature_id: str = "001-login") -> str:
    path = _store(project).record_path(WorkflowKind.SPEC_DOCUMENTS, feature_id)
    return path.read_text(encoding="utf-8")


def _context(**overrides: object) -> WorkflowContext:
    values: dict[str, object] = {
        "workflow": WorkflowKind.SPEC_DOCUMENTS,
        "feature_id": "001-login",
        "project_path": "/p",
        "current_state": "buildingPrd",
    }
    values.update(overrides)
    return WorkflowContext(**values)


def test_prd_phase_without_confirmation_stays_in_progress() -> None:
    context = _context(prd_path="/p/prd.md", tdd_path="/p/tdd.md")
    outcome = build_document(
        TurnContext(context=context),
        DOCUMENT_PHASES[SddState.BUILDING_PRD],
        catalog=InstructionCatalog.packaged(),
        files=DocumentFiles(),
    )
    assert outcome.result.success is True
    assert outcome.result.current_state == "buildingPrd"
    assert outcome.result.documents["prd"].status.value == "in-progress"
    assert outcome.result.documents["prd"].path == "/p/prd.md"
    assert outcome.result.documents["tdd"].status.value == "pending"
    assert "tasks" not in outcome.result.documents
    assert "PRD Instructions" in outcome.result.next_action
    assert "MUST save the PRD to: prd.md" in outcome.result.next_action
    assert outcome.context == context
    assert outcome.context.next_state is None


def test_prd_phase_with_confirmation_advances_to_tdd(tmp_path: Path) -> None:
    prd = tmp_path / "prd.md"
    prd.write_text("# PRD\n\nLogin with email.\n", encoding="utf-8")
    context = _context(project_path=str(tmp_path), prd_path=str(prd), tdd_path=str(tmp_path / "tdd.md"))
    outcome = build_document(
        TurnContext(context=context, user_input="finalize"),
        DOCUMENT_PHASES[SddState.BUILDING_PRD],
        catalog=InstructionCatalog.packaged(),
        files=DocumentFiles(),
    )
    assert outcome.result.success is True
    assert outcome.result.current_state == "buildingTdd"
    assert outcome.context.next_state == "buildingTdd"
    assert outcome.context.current_state == "buildingPrd"
    assert "TDD Instructions" in outcome.result.next_action
    assert "MUST save the TDD to: tdd.md" in outcome.result.next_action
    assert FINALIZED_BADGE in prd.read_text(encoding="utf-8")
    assert "placeholder TDD document" in (tmp_path / "tdd.md").read_text(encoding="utf-8")
    assert outcome.result.documents["prd"].status.value == "finalized"
    assert outcome.result.documents["tdd"].status.value == "in-progress"


@pytest.mark.parametrize("user_input", [None, "finalize", "keep going"])
def test_terminal_phase_only_requests_completion(tmp_path: Path, user_input: str | None) -> None:
    paths = {name: tmp_path / f"{name}.md" for name in ("prd", "tdd", "tasks")}
    files = DocumentFiles()
    for path in paths.values():
        path.write_text("content\n", encoding="utf-8")
    files.mark_finalized(paths["prd"])
    files.mark_finalized(paths["tdd"])
    context = _context(
        project_path=str(tmp_path),
        current_state="buildingTasks",
        prd_path=str(paths["prd"]),
        tdd_path=str(paths["tdd"]),
        tasks_path=str(paths["tasks"]),
    )
    phase = DOCUMENT_PHASES[SddState.BUILDING_TASKS]
    config = document_config(phase, context, InstructionCatalog.packaged())
    assert config.next_path is None and config.next_state is None

    outcome = build_document(
        TurnContext(context=context, user_input=user_input),
        phase,
        catalog=InstructionCatalog.packaged(),
        files=files,
    )
    assert outcome.result.success is True
    assert outcome.context.current_state == "buildingTasks"
    if user_input == "finalize":
        assert outcome.result.current_state == "completed"
        assert outcome.context.next_state == "completed"
        assert all(entry.status.value == "finalized" for entry in outcome.result.documents.values())
    else:
        assert outcome.result.current_state == "buildingTasks"
        assert outcome.context.next_state is None
        assert outcome.result.documents["tasks"].status.value == "in-progress"


def test_document_config_requires_paired_transition_fields() -> None:
    with pytest.raises(ValueError):
        DocumentConfig(
            name="PRD",
            key="prd",
            current_path="/p/prd.md",
            current_state=SddState.BUILDING_PRD,
            instructions_file=Path("prd.md"),
            next_path="/p/tdd.md",
        )
    with pytest.raises(ValueError):
        DocumentConfig(
            name="PRD",
            key="prd",
            current_path="/p/prd.md",
            current_state=SddState.BUILDING_PRD,
            instructions_file=Path("prd.md"),
            next_path="/p/tdd.md",
            next_state=SddState.BUILDING_TDD,
        )


def test_completed_handler_is_bit_identical_across_calls() -> None:
    context = _context(
        current_state="completed",
        prd_path="/p/prd.md",
        tdd_path="/p/tdd.md",
        tasks_path="/p/tasks.md",
    )
    outcomes = [handle_completed(TurnContext(context=context)) for _ in range(5)]
    rendered = {to_canonical_json(outcome.result) for outcome in outcomes}
    assert len(rendered) == 1
    first = outcomes[0]
    assert first.result.current_state == "completed"
    assert first.result.next_action == "The magi workflow is already complete. All documents have been finalized."
    assert {entry.status.value for entry in first.result.documents.values()} == {"finalized"}
    assert all(outcome.context == context for outcome in outcomes)


def test_failed_handler_reports_fatal_messages() -> None:
    context = _context(current_state="failed", workflow_fatal_error_messages=["disk full"])
    first = handle_failed(TurnContext(context=context))
    second = handle_failed(TurnContext(context=context))
    assert to_canonical_json(first.result) == to_canonical_json(second.result)
    assert first.result.success is True
    assert first.result.errors == ["disk full"]
    assert "- disk full" in first.result.next_action


def test_full_pipeline_end_to_end(tmp_path: Path) -> None:
    workflow = _workflow()

    init = _turn(workflow, tmp_path)
    assert init.success is True
    assert init.current_state == "buildingPrd"
    assert init.next_action.startswith("Feature initialized!")
    feature_dir = tmp_path / "magi-sdd" / "001-login"
    assert init.magi_directory == str(feature_dir.resolve())
    assert all((feature_dir / f"{name}.md").is_file() for name in ("prd", "tdd", "tasks"))
    assert {key: entry.status.value for key, entry in init.documents.items()} == {
        "prd": "in-progress",
        "tdd": "pending",
        "tasks": "pending",
    }

    again = _turn(workflow, tmp_path)
    assert again.current_state == "buildingPrd"

    to_tdd = _turn(workflow, tmp_path, finalize=True)
    assert to_tdd.current_state == "buildingTdd"
    assert "TDD Instructions" in to_tdd.next_action

    to_tasks = _turn(workflow, tmp_path, finalize=True)
    assert to_tasks.current_state == "buildingTasks"

    tasks_guidance = _turn(workflow, tmp_path)
    assert tasks_guidance.current_state == "buildingTasks"
    assert tasks_guidance.documents["tasks"].status.value == "in-progress"

    last = _turn(workflow, tmp_path, finalize=True)
    assert last.success is True
    assert last.current_state == "completed"
    stored = _store(tmp_path).load(WorkflowKind.SPEC_DOCUMENTS, "001-login")
    assert stored.current_state == "completed"
    assert stored.next_state is None

    done = _turn(workflow, tmp_path)
    assert done.current_state == "completed"
    assert {entry.status.value for entry in done.documents.values()} == {"finalized"}


def test_completed_turns_do_not_rewrite_state(tmp_path: Path) -> None:
    workflow = _workflow()
    _turn(workflow, tmp_path)
    for _ in range(3):
        _turn(workflow, tmp_path, finalize=True)
    before = _record_text(tmp_path)
    first = _turn(workflow, tmp_path)
    second = _turn(workflow, tmp_path, finalize=True)
    assert to_canonical_json(first) == to_canonical_json(second)
    assert _record_text(tmp_path) == before


def test_guidance_turns_without_confirmation_do_not_advance(tmp_path: Path) -> None:
    workflow = _workflow()
    _turn(workflow, tmp_path)
    version = _store(tmp_path).load(WorkflowKind.SPEC_DOCUMENTS, "001-login").version
    for user_input in (None, "next", "done"):
        result = workflow.run_turn({"projectPath": str(tmp_path), "featureId": "001-login", "userInput": user_input})
        assert result.current_state == "buildingPrd"
    stored = _store(tmp_path).load(WorkflowKind.SPEC_DOCUMENTS, "001-login")
    assert stored.current_state == "buildingPrd"
    assert stored.version == version


def test_unknown_state_fails_without_writing(tmp_path: Path) -> None:
    workflow = _workflow()
    _turn(workflow, tmp_path)
    store = _store(tmp_path)
    context = store.load(WorkflowKind.SPEC_DOCUMENTS, "001-login")
    store.save(context.model_copy(update={"current_state": "reviewingPrd"}))
    before = _record_text(tmp_path)

    result = _turn(workflow, tmp_path, finalize=True)
    assert result.success is False
    assert result.current_state == "reviewingPrd"
    assert "No handler registered for state: reviewingPrd" in result.errors[0]
    assert result.next_action
    assert _record_text(tmp_path) == before


def test_fatal_errors_route_to_failed_and_never_complete(tmp_path: Path) -> None:
    workflow = _workflow()
    _turn(workflow, tmp_path)
    store = _store(tmp_path)
    context = store.load(WorkflowKind.SPEC_DOCUMENTS, "001-login")
    store.save(context.with_fatal_error("disk full"))

    result = _turn(workflow, tmp_path, finalize=True)
    assert result.success is True
    assert result.current_state == "failed"
    assert result.errors == ["disk full"]
    stored = store.load(WorkflowKind.SPEC_DOCUMENTS, "001-login")
    assert stored.current_state == "failed"
    assert stored.workflow_fatal_error_messages == ["disk full"]

    before = _record_text(tmp_path)
    repeat = _turn(workflow, tmp_path, finalize=True)
    assert to_canonical_json(repeat) == to_canonical_json(result)
    assert _record_text(tmp_path) == before


def test_modified_prior_document_is_fatal(tmp_path: Path) -> None:
    workflow = _workflow()
    _turn(workflow, tmp_path)
    _turn(workflow, tmp_path, finalize=True)
    prd = tmp_path / "magi-sdd" / "001-login" / "prd.md"
    prd.write_text("# PRD\n\nRewritten after approval.\n", encoding="utf-8")

    broken = _turn(workflow, tmp_path)
    assert broken.success is False
    assert broken.current_state == "buildingTdd"
    assert "no longer finalized" in broken.errors[0]

    failed = _turn(workflow, tmp_path, finalize=True)
    assert failed.current_state == "failed"
    stored = _store(tmp_path).load(WorkflowKind.SPEC_DOCUMENTS, "001-login")
    assert stored.current_state == "failed"
    assert len(stored.workflow_fatal_error_messages) == 1


def test_missing_instructions_is_a_retryable_resource_error(tmp_path: Path) -> None:
    broken = _workflow(catalog=InstructionCatalog.from_directory(tmp_path / "missing"))
    project = tmp_path / "project"
    project.mkdir()
    result = _turn(broken, project)
    assert result.success is False
    assert result.current_state == "init"
    assert "instructions" in result.errors[0]
    assert not _store(project).exists(WorkflowKind.SPEC_DOCUMENTS, "001-login")

    retried = _turn(_workflow(), project)
    assert retried.success is True
    assert retried.current_state == "buildingPrd"


def test_existing_documents_are_not_overwritten_on_init(tmp_path: Path) -> None:
    prd = tmp_path / "magi-sdd" / "001-login" / "prd.md"
    prd.parent.mkdir(parents=True)
    prd.write_text("# PRD\n\nAlready drafted.\n", encoding="utf-8")
    _turn(_workflow(), tmp_path)
    assert prd.read_text(encoding="utf-8") == "# PRD\n\nAlready drafted.\n"


def test_bare_feature_name_is_formatted_and_reused(tmp_path: Path) -> None:
    (tmp_path / "magi-sdd" / "004-search").mkdir(parents=True)
    workflow = _workflow()
    first = _turn(workflow, tmp_path, feature_id="User Login!")
    assert first.feature_id == "005-user-login"
    second = _turn(workflow, tmp_path, feature_id="user login", finalize=True)
    assert second.feature_id == "005-user-login"
    assert second.current_state == "buildingTdd"


@pytest.mark.parametrize(
    "request_payload",
    [
        {"featureId": "001-login"},
        {"projectPath": "", "featureId": "001-login"},
        {"projectPath": "/definitely/not/here", "featureId": "001-login"},
        {"featureId": "001-login", "projectPath": "PROJECT", "unexpected": 1},
    ],
)
def test_invalid_requests_are_rejected_before_dispatch(tmp_path: Path, request_payload: dict) -> None:
    payload = {key: (str(tmp_path) if value == "PROJECT" else value) for key, value in request_payload.items()}
    result = _workflow().run_turn(payload)
    assert result.success is False
    assert result.errors
    assert result.next_action
    assert not (tmp_path / "magi-sdd").exists()


def test_unusable_feature_name_is_rejected(tmp_path: Path) -> None:
    result = _turn(_workflow(), tmp_path, feature_id="!!!")
    assert result.success is False
    assert "Invalid featureId" in result.errors[0]


def test_handler_table_must_cover_every_state() -> None:
    catalog = InstructionCatalog.packaged()
    table = build_handler_table(catalog, DocumentFiles())
    del table[SddState.FAILED]
    with pytest.raises(ValueError):
        SpecDocumentWorkflow(settings=RuntimeSettings(), catalog=catalog, handlers=table)

    extended = build_handler_table(catalog, DocumentFiles())
    extended["reviewing"] = handle_completed  # type: ignore[index]
    with pytest.raises(ValueError):
        SpecDocumentWorkflow(settings=RuntimeSettings(), catalog=catalog, handlers=extended)


def test_concurrent_update_is_reported_as_stale(tmp_path: Path) -> None:
    workflow = _workflow()
    _turn(workflow, tmp_path)
    store = _store(tmp_path)
    table = build_handler_table(workflow.catalog, workflow.files)
    original = table[SddState.BUILDING_PRD]

    def racing_handler(turn: TurnContext) -> HandlerOutcome:
        store.save(turn.context, expected_version=turn.context.version)
        return original(turn)

    table[SddState.BUILDING_PRD] = racing_handler
    racing = SpecDocumentWorkflow(settings=RuntimeSettings(), catalog=workflow.catalog, handlers=table)
    result = _turn(racing, tmp_path, finalize=True)
    assert result.success is False
    assert "Stale write" in result.errors[0]
    assert store.load(WorkflowKind.SPEC_DOCUMENTS, "001-login").current_state == "buildingPrd"


def test_undecodable_document_is_a_resource_failure(tmp_path: Path) -> None:
    workflow = _workflow()
    _turn(workflow, tmp_path)
    _turn(workflow, tmp_path, finalize=True)
    prd = tmp_path / "magi-sdd" / "001-login" / "prd.md"
    prd.write_bytes(b"# PRD \xff\xfe broken\n")
    before = _record_text(tmp_path)

    result = _turn(workflow, tmp_path)
    assert result.success is False
    assert result.current_state == "buildingTdd"
    assert "not valid UTF-8" in result.errors[0]
    assert _record_text(tmp_path) == before

    finalize = _turn(workflow, tmp_path, finalize=True)
    assert finalize.success is False
    assert _record_text(tmp_path) == before


def test_document_files_report_undecodable_text_as_os_error(tmp_path: Path) -> None:
    path = tmp_path / "tasks.md"
    path.write_bytes(b"\xff\xfe")
    files = DocumentFiles()
    with pytest.raises(OSError):
        files.is_finalized(path)
    with pytest.raises(OSError):
        files.mark_finalized(path)
    with pytest.raises(OSError):
        files.create_placeholder(path, "Tasks")


def test_record_without_prior_document_path_is_a_resource_failure(tmp_path: Path) -> None:
    project = tmp_path.resolve()
    directory = project / "magi-sdd" / "001-login"
    _store(tmp_path).save(
        WorkflowContext(
            workflow=WorkflowKind.SPEC_DOCUMENTS,
            feature_id="001-login",
            project_path=str(project),
            magi_directory=str(directory),
            tdd_path=str(directory / "tdd.md"),
            tasks_path=str(directory / "tasks.md"),
            current_state="buildingTasks",
        ),
        expected_version=0,
    )
    result = _turn(_workflow(), tmp_path)
    assert result.success is False
    assert "prdPath" in result.errors[0]
    assert _store(tmp_path).load(WorkflowKind.SPEC_DOCUMENTS, "001-login").current_state == "buildingTasks"


def test_unlockable_state_store_is_reported(tmp_path: Path) -> None:
    (tmp_path / "magi-sdd").write_text("not a directory\n", encoding="utf-8")
    result = _turn(_workflow(), tmp_path)
    assert result.success is False
    assert result.current_state == "unknown"
    assert "could not be locked" in result.errors[0]
