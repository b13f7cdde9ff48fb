from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from foreman import __version__
from foreman.briefing import build_agent_briefing, read_optional_text
from foreman.config import load_coordinator_config, load_dag_max_concurrency
from foreman.dag import build_dag, topological_waves
from foreman.errors import DagValidationError, VerifierUnavailableError
from foreman.models import TaskDefinition
from foreman.paths import CONFIG_PATH, MANIFEST_FILENAME, SYSTEM_PROMPT_FILENAME
from foreman.scope import ScopeEnforcer
from foreman.verifier import CommandVerifier

log = logging.getLogger(__name__)


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr. Every foreman
    command prints JSON, so errors are emitted as ``{"ok": false, ...}`` on
    stdout too. Unknown commands get fuzzy-matched suggestions.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _load_json_file(path: str) -> dict:
    try:
        data = json.loads(Path(path).read_text())
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise click.ClickException(f"{path} must contain a JSON object")
    return data


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool):
    """Orchestrate autonomous coding agents: task queue, QC loop and DAG workflows.

    \b
    Quick start:
      foreman dag validate workflow.json          Check a DAG definition
      foreman briefing task.json -d PROJECT_DIR   Render an agent briefing
      foreman qc PROJECT_DIR -b foreman/task_1    Run the project quality gate
      foreman events --dag DAG_ID                 Follow live DAG events
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# -- dag --


@main.group()
def dag():
    """Inspect DAG workflow definitions."""


@dag.command("validate")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
def dag_validate(file: str):
    """Validate a DAG definition and show its execution waves."""
    definition = _load_json_file(file)
    try:
        parsed = build_dag(definition)
    except DagValidationError as e:
        raise click.ClickException(str(e)) from e
    sinks = [node.id for node in parsed.nodes if not parsed.successors(node.id)]
    click.echo(
        json.dumps(
            {
                "ok": True,
                "name": parsed.name,
                "project": parsed.project,
                "approval_mode": parsed.approval_mode,
                "nodes": len(parsed.nodes),
                "edges": len(parsed.edges),
                "gates": [node.id for node in parsed.nodes if node.type == "gate"],
                "sinks": sinks,
                "waves": topological_waves(parsed),
            },
            indent=2,
        )
    )


# -- config --


@main.group()
def config():
    """Show effective configuration."""


@config.command("show")
@click.option(
    "--file",
    "config_file",
    default=None,
    type=click.Path(dir_okay=False),
    help=f"Config file (default: {CONFIG_PATH}).",
)
def config_show(config_file: str | None):
    """Print the coordinator config and DAG concurrency after env overrides."""
    path = Path(config_file) if config_file else None
    payload = {
        "coordinator": load_coordinator_config(path).to_dict(),
        "dag": {"max_concurrency": load_dag_max_concurrency(path)},
    }
    click.echo(json.dumps(payload, indent=2))


# -- briefing --


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--project-dir",
    "-d",
    default=".",
    type=click.Path(exists=True, file_okay=False),
    help="Directory holding AGENT_SYSTEM_PROMPT.md and MANIFEST.md.",
)
def briefing(file: str, project_dir: str):
    """Render the full agent briefing for a task definition file."""
    data = _load_json_file(file)
    data.setdefault("id", Path(file).stem)
    data.setdefault("title", data["id"])
    data.setdefault("briefing", "")
    data.setdefault("project", Path(project_dir).resolve().name)
    task = TaskDefinition.from_dict(data)
    root = Path(project_dir)
    branch = task.branch or f"foreman/{task.id}"
    text = build_agent_briefing(
        system_prompt=read_optional_text(root / SYSTEM_PROMPT_FILENAME) or "",
        task_briefing=task.briefing,
        project_manifest=read_optional_text(root / MANIFEST_FILENAME),
        branch=branch,
        allowed_files=task.allowed_files,
        blocked_files=task.blocked_files,
    )
    click.echo(json.dumps({"task_id": task.id, "branch": branch, "briefing": text}, indent=2))


# -- qc --


@main.command()
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--branch", "-b", required=True, help="Branch under verification.")
@click.option(
    "--gate",
    "gate_file",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Quality gate JSON (default: PROJECT_DIR/.foreman/quality_gate.json).",
)
def qc(project_dir: str, branch: str, gate_file: str | None):
    """Run the project quality gate and print the QC result."""
    gate_json = Path(gate_file).read_text() if gate_file else None
    try:
        result = CommandVerifier(gate_json)(project_dir, branch)
    except VerifierUnavailableError as e:
        raise click.ClickException(str(e)) from e
    click.echo(json.dumps(result.to_dict(), indent=2))
    if not result.passed:
        raise SystemExit(1)


# -- scope --


@main.command()
@click.argument("paths", nargs=-1, required=True)
@click.option("--allow", "allowed", multiple=True, help="Allowed glob (repeatable).")
@click.option("--block", "blocked", multiple=True, help="Blocked glob (repeatable).")
def scope(paths: tuple[str, ...], allowed: tuple[str, ...], blocked: tuple[str, ...]):
    """Check file paths against allowed/blocked globs."""
    enforcer = ScopeEnforcer(list(allowed), list(blocked))
    decisions = {
        path: {
            "allowed": decision.allowed,
            "reason": decision.reason,
            "matched_pattern": decision.matched_pattern,
        }
        for path, decision in enforcer.check_all(list(paths)).items()
    }
    violations = [path for path, decision in decisions.items() if not decision["allowed"]]
    click.echo(json.dumps({"ok": not violations, "violations": violations, "files": decisions}, indent=2))
    if violations:
        raise SystemExit(1)


# -- events --


@main.command()
@click.option("--dag", "dag_id", default=None, help="Only events for this DAG; stops when it finishes.")
@click.option("--node", "node_id", default=None, help="Only events for this node (or task) id.")
@click.option("--project", default=None, help="Only events for this project.")
@click.option(
    "--type", "types", multiple=True, help="Event type prefix, e.g. 'dag:node:' (repeatable)."
)
@click.option("--replay", is_flag=True, help="Start from the oldest retained event.")
@click.option("--timeout", default=30.0, show_default=True, help="Seconds to wait per event.")
@click.option("--count", default=0, help="Stop after N events (0 = until timeout).")
def events(
    dag_id: str | None,
    node_id: str | None,
    project: str | None,
    types: tuple[str, ...],
    replay: bool,
    timeout: float,
    count: int,
):
    """Follow the live event stream as JSON lines."""
    from foreman.events import subscribe_events

    subscriber = subscribe_events(
        dag_id=dag_id,
        entity_id=node_id,
        project=project,
        types=types,
        timeout=timeout,
        replay=replay,
        until_finished=dag_id is not None,
    )
    seen = 0
    try:
        for event in subscriber:
            if event is None:
                break
            click.echo(json.dumps(event, default=str))
            seen += 1
            if count and seen >= count:
                break
    except KeyboardInterrupt:
        pass
