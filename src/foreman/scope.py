"""File scope enforcement for agent work.

Blocked patterns take precedence over allowed patterns. Patterns are shell
globs matched against the whole repo-relative path; a pattern without a
slash also matches the basename anywhere in the tree (``*.lock`` blocks
``web/package-lock.json``'s siblings too).
"""

from __future__ import annotations

import fnmatch
import posixpath
from dataclasses import dataclass


@dataclass(frozen=True)
class ScopeDecision:
    allowed: bool
    reason: str | None = None
    matched_pattern: str | None = None


def _normalize(path: str) -> str:
    normalized = path.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def matches_pattern(path: str, pattern: str) -> bool:
    path = _normalize(path)
    pattern = _normalize(pattern)
    if not pattern:
        return False
    if fnmatch.fnmatch(path, pattern):
        return True
    if pattern.endswith("/") and path.startswith(pattern):
        return True
    return "/" not in pattern and fnmatch.fnmatch(posixpath.basename(path), pattern)


class ScopeEnforcer:
    """Check paths against a task's allowed/blocked globs.

    With no allowed patterns every path that is not blocked is in scope.
    """

    def __init__(self, allowed: list[str] | None = None, blocked: list[str] | None = None):
        self.allowed = list(allowed or [])
        self.blocked = list(blocked or [])

    def check(self, path: str) -> ScopeDecision:
        for pattern in self.blocked:
            if matches_pattern(path, pattern):
                return ScopeDecision(False, "File is explicitly blocked", pattern)
        if not self.allowed:
            return ScopeDecision(True)
        for pattern in self.allowed:
            if matches_pattern(path, pattern):
                return ScopeDecision(True, matched_pattern=pattern)
        return ScopeDecision(False, "File is not in the allowed list")

    def check_all(self, paths: list[str]) -> dict[str, ScopeDecision]:
        return {path: self.check(path) for path in paths}

    def violations(self, paths: list[str]) -> list[str]:
        return [path for path in paths if not self.check(path).allowed]
