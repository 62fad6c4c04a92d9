from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

_DIRECTORY_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    sdd_directory_name: str = "magi-sdd"
    state_store_root: str = ""
    instructions_dir: str = ""
    checkpoint_db: str = ""
    recursion_limit: int = 100
    max_build_attempts: int = 3

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            sdd_directory_name=os.getenv("MAGI_SDD_DIRECTORY", "magi-sdd"),
            state_store_root=os.getenv("MAGI_STATE_STORE_ROOT", ""),
            instructions_dir=os.getenv("MAGI_INSTRUCTIONS_DIR", ""),
            checkpoint_db=os.getenv("MAGI_CHECKPOINT_DB", ""),
            recursion_limit=_get_env_int("MAGI_RECURSION_LIMIT", default=100, minimum=25),
            max_build_attempts=_get_env_int("MAGI_MAX_BUILD_ATTEMPTS", default=3, minimum=1),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        sdd_directory_name = self.sdd_directory_name.strip()
        if not sdd_directory_name:
            raise ValueError("MAGI_SDD_DIRECTORY must be non-empty")
        if not _DIRECTORY_NAME_RE.match(sdd_directory_name) or sdd_directory_name in {".", ".."}:
            raise ValueError(f"MAGI_SDD_DIRECTORY must be a single directory name, got: {sdd_directory_name!r}")

        # -- Numeric bounds validation --
        if self.recursion_limit > 10_000:
            raise ValueError(f"MAGI_RECURSION_LIMIT must be <= 10000, got: {self.recursion_limit}")
        if self.max_build_attempts > 20:
            raise ValueError(f"MAGI_MAX_BUILD_ATTEMPTS must be <= 20, got: {self.max_build_attempts}")

        instructions_dir = self.instructions_dir.strip()
        if instructions_dir and not Path(instructions_dir).is_dir():
            raise ValueError(f"MAGI_INSTRUCTIONS_DIR is not a directory: {instructions_dir}")

        return RuntimeSettings(
            sdd_directory_name=sdd_directory_name,
            state_store_root=self.state_store_root.strip(),
            instructions_dir=instructions_dir,
            checkpoint_db=self.checkpoint_db.strip(),
            recursion_limit=self.recursion_limit,
            max_build_attempts=self.max_build_attempts,
        )

    def sdd_root(self, project_path: Path) -> Path:
        return project_path / self.sdd_directory_name

    def state_store_path(self, project_path: Path) -> Path:
        if not self.state_store_root:
            return self.sdd_root(project_path) / ".state"
        path = Path(self.state_store_root)
        return path if path.is_absolute() else project_path / path

    def checkpoint_path(self, project_path: Path) -> Path:
        if not self.checkpoint_db:
            return self.state_store_path(project_path) / "checkpoints" / "add_feature.sqlite"
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else project_path / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
