from __future__ import annotations

from pathlib import Path

import pytest

from magi_workflow import Platform, StaleStateError, WorkflowContext, WorkflowKind, WorkflowStateStore, to_canonical_json


def _spec_context(**overrides: object) -> WorkflowContext:
    values: dict[str, object] = {
        "workflow": WorkflowKind.SPEC_DOCUMENTS,
        "feature_id": "001-login",
        "project_path": "/p",
        "magi_directory": "/p/magi-sdd/001-login",
        "prd_path": "/p/magi-sdd/001-login/prd.md",
        "tdd_path": "/p/magi-sdd/001-login/tdd.md",
        "tasks_path": "/p/magi-sdd/001-login/tasks.md",
        "current_state": "buildingTdd",
    }
    values.update(overrides)
    return WorkflowContext(**values)


def test_round_trip_with_all_optional_fields(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path)
    context = _spec_context(
        platform=Platform.IOS,
        podfile_modified=True,
        valid_project=True,
        workflow_fatal_error_messages=["disk full", "prd.md lost its finalization marker"],
        next_state="buildingTasks",
        version=7,
    )
    written = store.save(context)
    assert written == context
    assert store.load(WorkflowKind.SPEC_DOCUMENTS, "001-login") == context


def test_round_trip_with_optional_fields_absent(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path)
    context = WorkflowContext(
        workflow=WorkflowKind.ADD_FEATURE,
        feature_id="login-screen",
        project_path="/p",
        current_state="validateProject",
    )
    store.save(context)
    loaded = store.load(WorkflowKind.ADD_FEATURE, "login-screen")
    assert loaded == context
    assert loaded.magi_directory is None
    assert loaded.workflow_fatal_error_messages == []


def test_record_is_canonical_camel_case_json(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path)
    context = _spec_context(workflow_fatal_error_messages=["x"])
    store.save(context)
    path = store.record_path(WorkflowKind.SPEC_DOCUMENTS, "001-login")
    text = path.read_text(encoding="utf-8")
    assert text == to_canonical_json(context)
    assert '"workflowFatalErrorMessages":["x"]' in text
    assert '"currentState":"buildingTdd"' in text


def test_compare_and_swap_bumps_version(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path)
    first = store.save(_spec_context(), expected_version=0)
    assert first.version == 1
    second = store.save(first.model_copy(update={"current_state": "buildingTasks"}), expected_version=1)
    assert second.version == 2
    assert store.load(WorkflowKind.SPEC_DOCUMENTS, "001-login").current_state == "buildingTasks"


def test_compare_and_swap_rejects_stale_write(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path)
    store.save(_spec_context(), expected_version=0)
    with pytest.raises(StaleStateError):
        store.save(_spec_context(current_state="completed"), expected_version=0)
    assert store.load(WorkflowKind.SPEC_DOCUMENTS, "001-login").current_state == "buildingTdd"


def test_load_missing_and_corrupt_records(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path)
    with pytest.raises(FileNotFoundError):
        store.load(WorkflowKind.SPEC_DOCUMENTS, "001-login")
    assert store.load_or_none(WorkflowKind.SPEC_DOCUMENTS, "001-login") is None

    path = store.record_path(WorkflowKind.SPEC_DOCUMENTS, "001-login")
    path.parent.mkdir(parents=True)
    path.write_text("   ", encoding="utf-8")
    with pytest.raises(ValueError):
        store.load(WorkflowKind.SPEC_DOCUMENTS, "001-login")
    path.write_text('{"workflow": "spec-documents"}', encoding="utf-8")
    with pytest.raises(ValueError):
        store.load(WorkflowKind.SPEC_DOCUMENTS, "001-login")


def test_load_rejects_record_for_another_feature(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path)
    store.save(_spec_context())
    source = store.record_path(WorkflowKind.SPEC_DOCUMENTS, "001-login")
    target = store.record_path(WorkflowKind.SPEC_DOCUMENTS, "002-other")
    target.write_text(source.read_text(encoding="utf-8"), encoding="utf-8")
    with pytest.raises(ValueError):
        store.load(WorkflowKind.SPEC_DOCUMENTS, "002-other")


def test_record_path_rejects_traversal(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path)
    with pytest.raises(ValueError):
        store.record_path(WorkflowKind.SPEC_DOCUMENTS, "../escape")


def test_distinct_features_use_distinct_records(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path)
    store.save(_spec_context())
    store.save(_spec_context(feature_id="002-search", current_state="init"))
    assert store.load(WorkflowKind.SPEC_DOCUMENTS, "001-login").current_state == "buildingTdd"
    assert store.load(WorkflowKind.SPEC_DOCUMENTS, "002-search").current_state == "init"
    with store.locked(WorkflowKind.SPEC_DOCUMENTS, "001-login"):
        with store.locked(WorkflowKind.SPEC_DOCUMENTS, "002-search"):
            pass


def test_canonical_json_is_key_order_independent() -> None:
    left = {"b": 2, "a": 1, "nested": {"z": 9, "y": [3, 2, 1]}}
    right = {"nested": {"y": [3, 2, 1], "z": 9}, "a": 1, "b": 2}
    assert to_canonical_json(left) == to_canonical_json(right)
