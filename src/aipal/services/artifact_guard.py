"""Containment checks for files the agent's output asks us to send.

Paths are only ever acted upon when they resolve inside the artifact root;
whatever the agent's text claims about other locations is dropped.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Union

from aipal.lib.logging_config import get_audit_logger
from aipal.lib.observability import get_bridge_metrics


logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

IMAGE_TOKEN_RE = re.compile(r"\[\[image:([^\]]+)\]\]")
# A run of tokens plus the horizontal whitespace around it.
TOKEN_RUN_RE = re.compile(r"[ \t]*(?:\[\[image:[^\]]+\]\][ \t]*)+")
FILE_SCHEME = "file://"

PathLike = Union[str, Path]


@dataclass
class ExtractedReferences:
    """Agent text with artifact tokens removed, plus the accepted paths."""

    cleaned_text: str
    paths: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


def _resolve(path: PathLike) -> str:
    return os.path.realpath(os.path.abspath(os.path.expanduser(str(path))))


def contains(root: PathLike, candidate: PathLike) -> bool:
    """Whether ``candidate`` resolves to ``root`` or somewhere beneath it."""
    base = _resolve(root)
    target = _resolve(candidate)
    if base == target:
        return True
    return target.startswith(base.rstrip(os.sep) + os.sep)


def _remove_tokens(text: str) -> str:
    def replace(match):
        before = text[match.start() - 1] if match.start() > 0 else "\n"
        after = text[match.end()] if match.end() < len(text) else "\n"
        # Keep one space only when the run separated two words on one line.
        if before.isspace() or after.isspace():
            return ""
        return " "

    cleaned = TOKEN_RUN_RE.sub(replace, text)
    return "\n".join(line.rstrip() for line in cleaned.split("\n")).strip()


def extract_references(text: str, root: PathLike) -> ExtractedReferences:
    """Pull ``[[image:<path>]]`` tokens out of agent text.

    Args:
        text: Raw reply text
        root: Artifact root every accepted path must be contained in

    Returns:
        Cleaned text, accepted absolute paths (deduplicated, in order) and
        rejected references
    """
    text = text or ""
    accepted: List[str] = []
    rejected: List[str] = []

    for match in IMAGE_TOKEN_RE.finditer(text):
        raw = match.group(1).strip()
        if not raw:
            continue
        if raw.startswith(FILE_SCHEME):
            raw = raw[len(FILE_SCHEME):]
        candidate = raw if os.path.isabs(raw) else os.path.join(str(root), raw)
        candidate = os.path.normpath(candidate)

        if contains(root, candidate):
            if candidate not in accepted:
                accepted.append(candidate)
        else:
            rejected.append(candidate)
            logger.warning(f"Ignoring artifact path outside {root}: {candidate}")
            audit_logger.log_security_event(
                event_type="artifact_outside_root",
                severity="medium",
                description="Agent referenced a file outside the artifact root",
                metadata={"path": candidate, "root": str(root)}
            )

    if rejected:
        get_bridge_metrics().record_artifact_rejected(len(rejected))

    return ExtractedReferences(cleaned_text=_remove_tokens(text), paths=accepted, rejected=rejected)


def filter_paths(paths: Iterable[PathLike], root: PathLike) -> List[str]:
    """Keep only paths contained in ``root``, logging the others."""
    kept = []
    for path in paths:
        if contains(root, path):
            kept.append(str(path))
        else:
            logger.warning(f"Skipping path outside {root}: {path}")
    return kept
