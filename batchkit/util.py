"""Helpers for naming and templating repositories."""

from __future__ import annotations

import base64
import hashlib
from collections.abc import Iterable
from dataclasses import dataclass, field

_REF_PREFIX = "refs/heads/"


@dataclass
class TemplatingRepo:
    """The view of a repository that step templates and conditions see."""

    name: str
    file_matches: list[str] = field(default_factory=list)


def new_templating_repo(repo_name: str, file_matches: Iterable[str]) -> TemplatingRepo:
    """Build a TemplatingRepo from a repository name and its matched files.

    ``file_matches`` may be a mapping of path to flag; every key is included.
    """
    return TemplatingRepo(name=repo_name, file_matches=list(file_matches))


def slug_for_path_in_repo(repo_name: str, commit: str, path: str) -> str:
    """Return a filesystem-safe slug for a workspace path in a repository."""
    name = repo_name
    if path:
        # The path may hold separators that differ between systems, so hash it.
        digest = hashlib.sha256(path.encode("utf-8")).digest()
        encoded = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
        name = f"{name}-{encoded}"
    return f"{name.replace('/', '-')}-{commit}"


def slug_for_repo(repo_name: str, commit: str) -> str:
    """Return a filesystem-safe slug for a repository at a commit."""
    return f"{repo_name.replace('/', '-')}-{commit}"


def ensure_ref_prefix(ref: str) -> str:
    """Prefix ``ref`` with ``refs/heads/`` unless it already has it."""
    if ref.startswith(_REF_PREFIX):
        return ref
    return _REF_PREFIX + ref