"""Agent briefing assembly.

Combines the project's system prompt, optional manifest and the task's own
briefing into the single instruction document an agent receives.
"""

from __future__ import annotations

from pathlib import Path

BRIEFING_FOOTER = (
    "---",
    "*This task is managed by Foreman. Only modify files within the allowed scope.*",
    "*When done, provide a clear summary of all changes made.*",
)


def build_agent_briefing(
    *,
    system_prompt: str,
    task_briefing: str,
    branch: str,
    allowed_files: list[str],
    blocked_files: list[str],
    project_manifest: str | None = None,
) -> str:
    lines: list[str] = [system_prompt, ""]

    lines += ["## Branch Assignment", f"You are assigned to work on branch: `{branch}`", ""]

    if project_manifest:
        lines += ["## Project Manifest", project_manifest, ""]

    lines += ["## File Scope", ""]
    if allowed_files:
        lines.append("### Allowed Files (you may ONLY modify these):")
        lines += [f"- {path}" for path in allowed_files]
        lines.append("")
    if blocked_files:
        lines.append("### Blocked Files (NEVER touch these):")
        lines += [f"- {path}" for path in blocked_files]
        lines.append("")

    lines += ["## Task Briefing", task_briefing, ""]
    lines += BRIEFING_FOOTER
    return "\n".join(lines)


def read_optional_text(path: Path) -> str | None:
    """Read a UTF-8 file, or None when it is missing or unreadable."""
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
