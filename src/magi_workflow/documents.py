from __future__ import annotations

import logging
from pathlib import Path

from .state_store import atomic_write_text

logger = logging.getLogger(__name__)

FINALIZED_BADGE = "✅ **FINALIZED**"
FINALIZED_FOOTER = "*This document was finalized by the magi workflow system.*"
FINALIZATION_MARKER = (
    "\n\n---\n\n## Finalization Status\n\n"
    f"{FINALIZED_BADGE} - This document is complete and approved for the next phase.\n\n"
    f"{FINALIZED_FOOTER}"
)


def placeholder_text(doc_type: str) -> str:
    return (
        f"# {doc_type} Document\n"
        "\n"
        "## Overview\n"
        f"This is a placeholder {doc_type} document. Please replace this content with your actual {doc_type}.\n"
        "\n"
        "## Instructions\n"
        f"- Edit this file with your {doc_type} content\n"
        '- Once complete, call magi with userInput: "finalize" to move to the next phase\n'
        "\n"
        "---\n"
        "*This file was created by the magi workflow system.*\n"
    )


class DocumentFiles:
    """File-system collaborator for spec document artifacts.

    All writes are whole-file atomic replaces. Errors surface as ``OSError``
    so handlers can turn them into failed turns.
    """

    def ensure_directory(self, directory: Path) -> None:
        directory.mkdir(parents=True, exist_ok=True)

    def read(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise OSError(f"{path} is not valid UTF-8 text: {exc}") from exc

    def has_content(self, path: Path) -> bool:
        try:
            return bool(self.read(path).strip())
        except FileNotFoundError:
            return False

    def is_finalized(self, path: Path) -> bool:
        try:
            content = self.read(path)
        except FileNotFoundError:
            return False
        return FINALIZED_BADGE in content or FINALIZED_FOOTER in content

    def create_placeholder(self, path: Path, doc_type: str) -> bool:
        """Write a placeholder unless the artifact already has content. Returns True if written."""
        if self.has_content(path):
            logger.debug("Keeping existing %s document at %s", doc_type, path)
            return False
        atomic_write_text(path, placeholder_text(doc_type))
        logger.info("Created %s placeholder at %s", doc_type, path)
        return True

    def mark_finalized(self, path: Path) -> bool:
        """Append the finalization marker once. Returns True if the file changed."""
        if self.is_finalized(path):
            return False
        existing = self.read(path)
        atomic_write_text(path, existing + FINALIZATION_MARKER)
        logger.info("Marked %s as finalized", path)
        return True
