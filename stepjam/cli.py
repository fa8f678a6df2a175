"""StepJam CLI — Typer application root.

Entry point for the ``stepjam`` console script.

Commands
--------

``stepjam serve``
    Run the live session server under uvicorn.

``stepjam inspect-hash STATE_FILE``
    Print the canonical state hash of a session state saved as JSON
    (the ``state`` object of a snapshot, or a debug-route dump).  Useful
    for comparing what two clients reported against what is on disk.
"""
from __future__ import annotations

import enum
import json
from pathlib import Path

import typer
from pydantic import ValidationError

from stepjam.config import settings
from stepjam.core.canonical_hash import canonical_json, compute_state_hash
from stepjam.core.invariants import find_violations
from stepjam.models.session import SessionState


class ExitCode(enum.IntEnum):
    """Standardised CLI exit codes."""

    SUCCESS = 0
    USER_ERROR = 1
    INVALID_STATE = 2


cli = typer.Typer(
    name="stepjam",
    help="StepJam Live — real-time collaborative step-sequencer server.",
    no_args_is_help=True,
)


@cli.command("serve", help="Run the live session server.")
def serve(
    host: str = typer.Option(settings.host, "--host", help="Interface to bind."),
    port: int = typer.Option(settings.port, "--port", "-p", help="Port to bind."),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes (development)."),
) -> None:
    import uvicorn

    uvicorn.run(
        "stepjam.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="debug" if settings.debug else "info",
    )


@cli.command("inspect-hash", help="Print the canonical hash of a saved session state.")
def inspect_hash(
    state_file: Path = typer.Argument(..., help="JSON file holding a session state."),
    canonical: bool = typer.Option(
        False, "--canonical", help="Also print the canonical serialization that is hashed."
    ),
    check: bool = typer.Option(
        False, "--check", help="Report invariant violations; exit 2 if any."
    ),
    step_count: int = typer.Option(settings.step_count, "--steps", help="Canonical step count."),
) -> None:
    try:
        raw = json.loads(state_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        typer.echo(f"❌ Cannot read {state_file}: {exc}", err=True)
        raise typer.Exit(code=ExitCode.USER_ERROR)

    # Accept a bare state or any wrapper that nests it under "state".
    if isinstance(raw, dict) and isinstance(raw.get("state"), dict):
        raw = raw["state"]

    try:
        state = SessionState.model_validate(raw)
    except ValidationError as exc:
        typer.echo(f"❌ Not a session state: {exc}", err=True)
        raise typer.Exit(code=ExitCode.USER_ERROR)

    typer.echo(f"hash:    {compute_state_hash(state, step_count)}")
    typer.echo(f"version: {state.version}")
    typer.echo(f"tracks:  {len(state.tracks)}")
    if canonical:
        typer.echo(canonical_json(state, step_count))

    if check:
        violations = find_violations(state, step_count)
        if violations:
            for violation in violations:
                typer.echo(f"  ✗ {violation}")
            raise typer.Exit(code=ExitCode.INVALID_STATE)
        typer.echo("invariants: ok")


if __name__ == "__main__":
    cli()
