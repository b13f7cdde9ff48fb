"""Quality verification of agent work.

A Verifier is any callable ``(project_dir, branch) -> QCResult``. The
default ``CommandVerifier`` runs the check commands of a project quality
gate::

    {
      "checks": [
        {"name": "tests", "cmd": ["pytest", "-q"], "timeout": 300},
        {"name": "lint", "cmd": ["ruff", "check", "."]}
      ]
    }

read from ``<project_dir>/.foreman/quality_gate.json`` unless a JSON string
is given explicitly. Foreman makes no assumptions about project tooling: no
gate means no checks, which passes.
"""

from __future__ import annotations

import json
import logging
import subprocess
import time
from pathlib import Path
from typing import Any, Protocol

from foreman.errors import VerifierUnavailableError
from foreman.models import QCCheck, QCResult
from foreman.paths import QUALITY_GATE_PATH

log = logging.getLogger(__name__)

DEFAULT_CHECK_TIMEOUT = 120
_MESSAGE_LIMIT = 500


class Verifier(Protocol):
    def __call__(self, project_dir: str, branch: str) -> QCResult: ...


def _default_quality_gate() -> dict[str, Any]:
    return {"checks": []}


def load_quality_gate(quality_gate_json: str | None) -> dict[str, Any]:
    """Parse a quality gate config, or return the empty gate if it is invalid."""
    if not quality_gate_json:
        return _default_quality_gate()
    try:
        config = json.loads(quality_gate_json)
    except (json.JSONDecodeError, TypeError):
        log.warning("Ignoring quality gate that is not valid JSON")
        return _default_quality_gate()
    if not isinstance(config, dict) or not isinstance(config.get("checks"), list):
        log.warning("Ignoring quality gate without a 'checks' list")
        return _default_quality_gate()
    return config


def read_project_quality_gate(project_dir: str) -> str | None:
    path = Path(project_dir) / QUALITY_GATE_PATH
    try:
        return path.read_text()
    except FileNotFoundError:
        return None
    except OSError:
        log.warning("Failed to read quality gate %s", path, exc_info=True)
        return None


def _run_check(check: dict[str, Any], project_dir: str) -> QCCheck | None:
    cmd = check.get("cmd") or []
    if not isinstance(cmd, list) or not cmd:
        return None
    name = check.get("name") or " ".join(str(part) for part in cmd)
    timeout = check.get("timeout", DEFAULT_CHECK_TIMEOUT)
    start = time.monotonic()
    try:
        result = subprocess.run(
            [str(part) for part in cmd],
            cwd=project_dir,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        return QCCheck(
            name=name,
            passed=False,
            message=f"Timed out after {timeout}s",
            duration_ms=elapsed_ms,
        )
    except OSError as exc:
        raise VerifierUnavailableError(f"Cannot run check '{name}': {exc}") from exc
    elapsed_ms = int((time.monotonic() - start) * 1000)
    output = (result.stdout + result.stderr).strip()
    if result.returncode == 0:
        message = output[-_MESSAGE_LIMIT:] or "OK"
    else:
        message = output[-_MESSAGE_LIMIT:] or f"Exited with status {result.returncode}"
    return QCCheck(
        name=name,
        passed=result.returncode == 0,
        message=message,
        duration_ms=elapsed_ms,
    )


class CommandVerifier:
    """Run quality gate commands in the project directory.

    The working tree is expected to have *branch* checked out (the Process
    Runner works in a per-task worktree); the branch name only labels the
    result.
    """

    def __init__(self, quality_gate_json: str | None = None) -> None:
        self.quality_gate_json = quality_gate_json

    def __call__(self, project_dir: str, branch: str) -> QCResult:
        if not Path(project_dir).is_dir():
            raise VerifierUnavailableError(f"Project directory {project_dir} does not exist")
        raw = self.quality_gate_json
        if raw is None:
            raw = read_project_quality_gate(project_dir)
        config = load_quality_gate(raw)

        checks: list[QCCheck] = []
        for check in config["checks"]:
            if not isinstance(check, dict):
                continue
            outcome = _run_check(check, project_dir)
            if outcome is not None:
                checks.append(outcome)
        result = QCResult.from_checks(checks, branch)
        log.info("QC on %s: %s", branch, result.summary)
        return result
