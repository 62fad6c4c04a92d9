"""Feature identifier kinds.

Two distinct kinds exist and are never unified:

* spec feature ids (``NNN-kebab-case``) name a spec document pipeline
  instance and its ``<sdd root>/<id>/`` directory;
* feature slugs (bare ``kebab-case``) name an add-feature workflow instance.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

SPEC_FEATURE_ID_RE = re.compile(r"^\d{3}-[a-z0-9-]+$")
FEATURE_SLUG_RE = re.compile(r"^[a-z0-9-]+$")
_PREFIX_RE = re.compile(r"^(\d{3})-")
_MAX_PREFIX = 999


def kebab_case(name: str) -> str:
    lowered = re.sub(r"[^a-z0-9\s-]", "", name.lower().strip())
    dashed = re.sub(r"\s+", "-", lowered)
    return re.sub(r"-+", "-", dashed).strip("-")


def is_spec_feature_id(value: str) -> bool:
    return bool(SPEC_FEATURE_ID_RE.match(value))


def feature_name(feature_id: str) -> str:
    """Strip the numeric prefix: ``003-user-login`` -> ``user-login``."""
    return _PREFIX_RE.sub("", feature_id, count=1)


def _existing_feature_dirs(sdd_root: Path) -> list[Path]:
    if not sdd_root.is_dir():
        return []
    return sorted(entry for entry in sdd_root.iterdir() if entry.is_dir() and _PREFIX_RE.match(entry.name))


def next_spec_feature_id(sdd_root: Path, name: str) -> str:
    """Allocate ``NNN-<kebab name>`` with the next free numeric prefix under ``sdd_root``."""
    slug = kebab_case(name)
    if not slug:
        raise ValueError(f"Feature name has no usable characters: {name!r}")
    highest = 0
    for entry in _existing_feature_dirs(sdd_root):
        highest = max(highest, int(entry.name[:3]))
    if highest >= _MAX_PREFIX:
        raise ValueError(f"No free feature number left under {sdd_root}")
    return f"{highest + 1:03d}-{slug}"


def resolve_spec_feature_id(sdd_root: Path, raw: str) -> str:
    """Accept a strict spec feature id verbatim, or format a bare feature name.

    A bare name reuses the directory of an already-allocated feature with the
    same name so that repeated turns address the same pipeline instance.
    """
    candidate = raw.strip()
    if is_spec_feature_id(candidate):
        return candidate
    slug = kebab_case(candidate)
    if not slug:
        raise ValueError(f"Invalid featureId: {raw!r}")
    for entry in _existing_feature_dirs(sdd_root):
        if feature_name(entry.name) == slug:
            logger.debug("Reusing feature directory %s for name %r", entry.name, raw)
            return entry.name
    allocated = next_spec_feature_id(sdd_root, slug)
    logger.info("Generated feature ID %s from input %r", allocated, raw)
    return allocated


def resolve_feature_slug(slug: str | None, description: str | None) -> str:
    if slug is not None:
        if not FEATURE_SLUG_RE.match(slug):
            raise ValueError(f"Invalid featureSlug: {slug!r}")
        return slug
    derived = kebab_case(description or "")[:64].strip("-")
    if not derived:
        raise ValueError("Cannot derive a feature slug from an empty description")
    return derived
