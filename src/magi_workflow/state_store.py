from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .canonical import to_canonical_json
from .models import WorkflowContext, WorkflowKind

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


class StaleStateError(RuntimeError):
    """Raised when a save's expected version no longer matches the stored record."""


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the data file can be atomically
    replaced via ``os.replace`` without disturbing the lock handle. flock
    locks conflict between separate opens even within one process, so the
    lock must not be re-entered.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place, so readers never see a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, label: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class WorkflowStateStore:
    """One canonical JSON record per (workflow, feature) under ``root``.

    Layout::

        <root>/spec-documents/<feature id>.json
        <root>/add-feature/<feature slug>.json

    Read-modify-write sequences run inside :meth:`locked`; :meth:`save`
    itself does not take the lock.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def record_path(self, workflow: WorkflowKind, feature_id: str) -> Path:
        if not feature_id or "/" in feature_id or feature_id in {".", ".."}:
            raise ValueError(f"Invalid feature identifier for state record: {feature_id!r}")
        return self.root / workflow.value / f"{feature_id}.json"

    @contextmanager
    def locked(self, workflow: WorkflowKind, feature_id: str) -> Iterator[None]:
        with _locked_file(self.record_path(workflow, feature_id)):
            yield

    def exists(self, workflow: WorkflowKind, feature_id: str) -> bool:
        return self.record_path(workflow, feature_id).is_file()

    def load(self, workflow: WorkflowKind, feature_id: str) -> WorkflowContext:
        path = self.record_path(workflow, feature_id)
        text = _safe_read_json(path, "Workflow state")
        try:
            context = WorkflowContext.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"Corrupt workflow state at {path}: {exc}") from exc
        if context.workflow != workflow or context.feature_id != feature_id:
            raise ValueError(
                f"Workflow state at {path} belongs to {context.workflow.value}/{context.feature_id}"
            )
        return context

    def load_or_none(self, workflow: WorkflowKind, feature_id: str) -> WorkflowContext | None:
        if not self.exists(workflow, feature_id):
            return None
        return self.load(workflow, feature_id)

    def stored_version(self, workflow: WorkflowKind, feature_id: str) -> int:
        existing = self.load_or_none(workflow, feature_id)
        return existing.version if existing is not None else 0

    def save(self, context: WorkflowContext, *, expected_version: int | None = None) -> WorkflowContext:
        """Persist *context* and return what was written.

        With ``expected_version`` the write is a compare-and-swap: the stored
        version (0 when no record exists) must equal it, and the record is
        written with ``expected_version + 1``. Without it the context is
        written verbatim.

        Raises:
            StaleStateError: If the stored version does not match.
        """
        path = self.record_path(context.workflow, context.feature_id)
        to_write = context
        if expected_version is not None:
            current = self.stored_version(context.workflow, context.feature_id)
            if current != expected_version:
                raise StaleStateError(
                    f"Stale write for {context.workflow.value}/{context.feature_id}: "
                    f"expected version {expected_version}, found {current}"
                )
            to_write = context.model_copy(update={"version": expected_version + 1})
        atomic_write_text(path, to_canonical_json(to_write))
        logger.debug("Persisted %s/%s at version %d", to_write.workflow.value, to_write.feature_id, to_write.version)
        return to_write
