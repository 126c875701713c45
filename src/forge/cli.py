"""CLI commands for running agent sessions and managing their checkpoints."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import typer

from . import __version__
from .config import DEFAULT_CONFIG_NAME, AgentConfig, write_default_config
from .models.registry import DEFAULT_ORCHESTRATOR, DEFAULT_SUB_AGENT, MODELS
from .orchestrator import SessionOrchestrator, SessionRequest
from .snapshots import SnapshotManager
from .streaming import AgentEvent, encode_sse, with_heartbeat
from .tools.vcs import GitError, GitRepository
from .usage import JsonStore, UsageLedger

APP_HELP = "Forge: plan, build and repair features in an existing project."

app = typer.Typer(help=APP_HELP)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging before any command runs."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT, force=True)


def load_config(config: str, root: Optional[Path] = None) -> AgentConfig:
    """Load configuration, resolving a relative ``config`` against ``root`` when given.

    Relative paths inside the file resolve against the file's directory, so
    ``--root`` alone is enough to point a session at another project.
    """
    config_path = Path(config)
    if root is not None and not config_path.is_absolute():
        config_path = root / config_path
    try:
        loaded = AgentConfig.load(config_path)
    except (OSError, ValueError) as error:
        typer.echo(f"Failed to load config: {error}")
        raise typer.Exit(code=1) from error
    return loaded


def build_orchestrator(config: AgentConfig, *, assume_yes: bool = False) -> SessionOrchestrator:
    """Wire the session orchestrator used by ``forge run``."""
    return SessionOrchestrator(config, confirm_delete=_delete_prompt(assume_yes))


def _delete_prompt(assume_yes: bool) -> Callable[[str], bool]:
    def _confirm(path: str) -> bool:
        if assume_yes:
            return True
        return typer.confirm(f"Delete {path}?", default=False)

    return _confirm


def _render_plain(event: AgentEvent) -> Iterator[str]:
    data = event.data
    if event.is_heartbeat:
        return
    if event.event == "plan":
        label = "Revised plan" if data.get("replanned") else "Plan"
        yield f"{label}: {data.get('summary') or '(no summary)'}"
        for step in data.get("steps", []):
            yield f"  {step['id']}. [{step['action']}] {step['title']}"
    elif event.event == "step_start":
        yield f"-> Step {data.get('id')}: {data.get('title')}"
    elif event.event == "progress":
        prefix = "!" if data.get("level") == "warning" else " "
        yield f"{prefix}  {data.get('message', '')}"
    elif event.event == "file-update":
        yield f"   {data.get('action')}: {data.get('path')}"
    elif event.event == "task-done":
        yield f"<- Step {data.get('id')} {data.get('status')} ({data.get('tokens_used', 0)} tokens)"
        if data.get("status") != "done" and data.get("detail"):
            yield f"   {data['detail']}"
    elif event.event == "snapshot":
        yield f"Snapshot {str(data.get('commit', ''))[:12]}: {data.get('label', '')}"
    elif event.event == "result":
        if data.get("clarify_question"):
            yield f"Question: {data['clarify_question']}"
        if data.get("reply"):
            yield data["reply"]
        if data.get("summary") and not data.get("clarify_question"):
            yield data["summary"]
        tests = data.get("tests")
        if tests:
            for item in tests.get("results", []):
                if item["severity"] != "pass":
                    yield f"  [{item['severity']}] {item['title']}: {item['detail']}"
        yield f"Tokens: {data.get('tokens_used', 0)} (${data.get('cost', 0.0):.4f})"
    elif event.event == "error":
        yield f"Error: {data.get('message', '')}"


@app.command()
def init(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to write the configuration file."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config file already exists: {config_path}")
        raise typer.Exit(code=1)
    write_default_config(config_path)
    typer.echo(f"Wrote default configuration to {config_path}")


@app.command()
def run(
    message: str = typer.Argument(..., help="What the agent should build, change or answer."),
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root to operate on."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the agent configuration file."),
    budget: Optional[int] = typer.Option(None, "--budget", min=1, help="Token ceiling for this session."),
    verify: bool = typer.Option(True, "--verify/--no-verify", help="Run the verification pass after the steps."),
    sse: bool = typer.Option(False, "--sse", help="Print server-sent-event frames instead of plain lines."),
    open_file: Optional[str] = typer.Option(None, "--open-file", help="File currently open in the editor."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Approve file deletions without prompting."),
) -> None:
    """Run one agent session and stream its progress."""
    agent_config = load_config(config, root)
    if budget is not None:
        agent_config.budget.max_tokens = budget
    orchestrator = build_orchestrator(agent_config, assume_yes=yes)
    request = SessionRequest(message=message, open_file=open_file, verify=verify)

    events = orchestrator.stream(request)
    failed = False
    if sse:
        for event in with_heartbeat(events, agent_config.streaming.heartbeat_seconds):
            failed = failed or event.event == "error"
            typer.echo(encode_sse(event), nl=False)
    else:
        for event in events:
            failed = failed or event.event == "error"
            for line in _render_plain(event):
                typer.echo(line)
    if failed:
        raise typer.Exit(code=1)


@app.command()
def snapshot(
    label: Optional[str] = typer.Option(None, "--label", "-l", help="Label recorded in the checkpoint commit."),
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root to operate on."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the agent configuration file."),
) -> None:
    """Create a checkpoint commit of the current working tree."""
    manager = _snapshot_manager(load_config(config, root))
    try:
        created = manager.create(label)
    except GitError as error:
        typer.echo(f"Snapshot failed: {error}")
        raise typer.Exit(code=1) from error
    typer.echo(f"Snapshot {created.commit_hash} ({created.label})")


@app.command()
def diff(
    checkpoint: str = typer.Argument(..., help="Checkpoint commit to compare against."),
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root to operate on."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the agent configuration file."),
) -> None:
    """List files changed since a checkpoint."""
    manager = _snapshot_manager(load_config(config, root))
    try:
        result = manager.diff(checkpoint)
    except GitError as error:
        typer.echo(f"Diff failed: {error}")
        raise typer.Exit(code=1) from error
    if not result.changed_files:
        typer.echo(f"No changes since {checkpoint[:12]}.")
        return
    typer.echo(f"{len(result.changed_files)} file(s) changed since {checkpoint[:12]}:")
    for path in result.changed_files:
        typer.echo(f"- {path}")
    if result.stat:
        typer.echo(result.stat)


@app.command()
def rollback(
    checkpoint: str = typer.Argument(..., help="Checkpoint commit to restore from."),
    files: List[str] = typer.Argument(..., help="Files the session touched; only these are reverted."),
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root to operate on."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the agent configuration file."),
) -> None:
    """Revert the listed files to their checkpoint content."""
    manager = _snapshot_manager(load_config(config, root))
    try:
        result = manager.rollback(checkpoint, files)
    except GitError as error:
        typer.echo(f"Rollback failed: {error}")
        raise typer.Exit(code=1) from error
    typer.echo(f"Reverted {result.files_reverted} file(s) to {checkpoint[:12]}.")
    for path in result.restored:
        typer.echo(f"- restored {path}")
    for path in result.deleted:
        typer.echo(f"- deleted {path}")


@app.command()
def stats(
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root to operate on."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the agent configuration file."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw statistics as JSON."),
) -> None:
    """Show accumulated token usage across sessions."""
    agent_config = load_config(config, root)
    data = UsageLedger(JsonStore(agent_config.usage_db)).stats()
    if as_json:
        typer.echo(json.dumps(data, indent=2))
        return
    typer.echo(f"Sessions: {data['sessions']}")
    typer.echo(f"Total tokens: {data['totalTokens']}")
    typer.echo(f"  orchestrator: {data['orchestratorTokens']}")
    typer.echo(f"  sub-agent: {data['subAgentTokens']}")
    typer.echo(f"Files generated: {data['filesGenerated']}")


@app.command()
def models() -> None:
    """List the models the agent can route to."""
    for info in MODELS:
        markers = []
        if info.id == DEFAULT_ORCHESTRATOR:
            markers.append("default orchestrator")
        if info.id == DEFAULT_SUB_AGENT:
            markers.append("default sub-agent")
        suffix = f" ({', '.join(markers)})" if markers else ""
        typer.echo(f"{info.id:<28} {info.provider:<10} {info.tier:<13} ${info.cost_per_1k_tokens}/1k{suffix}")


@app.command()
def version() -> None:
    """Print the installed version."""
    typer.echo(__version__)


def _snapshot_manager(config: AgentConfig) -> SnapshotManager:
    return SnapshotManager(GitRepository(config.project_root, timeout=config.snapshots.timeout))


__all__ = ["app", "build_orchestrator", "load_config"]
