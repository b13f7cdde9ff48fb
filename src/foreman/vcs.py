"""Git queries on task branches.

Functions raise RuntimeError on failure so callers decide whether a missing
diff blocks anything.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Protocol

log = logging.getLogger(__name__)


class VCS(Protocol):
    def changed_files(self, project_dir: str, branch: str, base_branch: str) -> list[str]: ...

    def diff(self, project_dir: str, branch: str, base_branch: str) -> str: ...


def _git(project_dir: str, *args: str) -> str:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=project_dir,
            capture_output=True,
            text=True,
            check=True,
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"git {args[0]} failed: {e.stderr.strip()}") from None
    except OSError as e:
        raise RuntimeError(f"git unavailable in {project_dir}: {e}") from None
    return result.stdout


def changed_files(project_dir: str, branch: str, base_branch: str = "main") -> list[str]:
    """Files the branch touches relative to its merge base with *base_branch*."""
    out = _git(project_dir, "diff", "--name-only", f"{base_branch}...{branch}")
    return sorted({line.strip() for line in out.splitlines() if line.strip()})


def branch_diff(project_dir: str, branch: str, base_branch: str = "main") -> str:
    return _git(project_dir, "diff", f"{base_branch}...{branch}")


class GitVCS:
    """VCS collaborator backed by the git CLI."""

    def changed_files(self, project_dir: str, branch: str, base_branch: str) -> list[str]:
        return changed_files(project_dir, branch, base_branch)

    def diff(self, project_dir: str, branch: str, base_branch: str) -> str:
        return branch_diff(project_dir, branch, base_branch)
