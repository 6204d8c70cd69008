"""
CLI interface for kindling.

Usage:
    kindling status
    kindling search "npm test" --session s1
    kindling list capsules --repo /path/to/repo
    kindling pin <observation-id> --reason "root cause"
    kindling export backup.json
"""

import json
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .errors import KindlingError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .service import Kindling
from .types import ScopeIds

# Configure quiet mode by default
# Set KINDLING_VERBOSE=1 to enable debug mode via environment
if os.environ.get("KINDLING_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"kindling {version('kindling')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="kindling",
    help="Local memory for coding-assistant sessions.",
    no_args_is_help=False,
    invoke_without_command=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="KINDLING_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Local memory for coding-assistant sessions."""
    if ctx.invoked_subcommand is None:
        status(store=None)


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        help="Path to the store directory (default: ~/.kindling/)"
    )
]

LimitOption = Annotated[
    int,
    typer.Option("--limit", "-n", help="Maximum results to return")
]

SessionOption = Annotated[
    Optional[str], typer.Option("--session", help="Filter by session id")
]
RepoOption = Annotated[
    Optional[str], typer.Option("--repo", help="Filter by repository id")
]
AgentOption = Annotated[
    Optional[str], typer.Option("--agent", help="Filter by agent id")
]
UserOption = Annotated[
    Optional[str], typer.Option("--user", help="Filter by user id")
]


def _scope(session: Optional[str], repo: Optional[str],
           agent: Optional[str], user: Optional[str]) -> ScopeIds:
    return ScopeIds(session_id=session, repo_id=repo, agent_id=agent, user_id=user)


def _get_kindling(store: Optional[Path]) -> Kindling:
    """Open the store, turning setup errors into a clean exit."""
    actual_store = store if store is not None else _get_store_override()
    try:
        return Kindling(actual_store)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: cannot open store: {e}", err=True)
        raise typer.Exit(1)


def _fail(e: Exception) -> None:
    """Report a domain error and exit 1."""
    typer.echo(f"Error: {e}", err=True)
    for err in getattr(e, "errors", []) or []:
        typer.echo(f"  - {err.field}: {err.message}" if hasattr(err, "field") else f"  - {err}", err=True)
    raise typer.Exit(1)


def _fmt_ts(ms: Optional[int]) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _one_line(text: str, width: int = 80) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[:width - 3] + "..."


def _emit_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def status(store: StoreOption = None):
    """Show store location, entity counts and schema version."""
    with _get_kindling(store) as kn:
        info = kn.status()
    if _get_json_output():
        _emit_json(info)
        return
    counts = info["counts"]
    typer.echo(f"Store:        {info['storePath']}")
    typer.echo(f"Database:     {info['database']}")
    typer.echo(f"Schema:       v{info['schemaVersion']} (latest v{info['latestSchemaVersion']})")
    typer.echo(f"Search:       {info['provider']}"
               f"{'' if info['fullTextIndex'] else ' (no FTS5, substring match)'}")
    typer.echo(f"Observations: {counts['observations']} ({counts['redacted']} redacted)")
    typer.echo(f"Capsules:     {counts['capsules']} ({counts['open_capsules']} open)")
    typer.echo(f"Summaries:    {counts['summaries']}")
    typer.echo(f"Pins:         {counts['pins']} ({info['activePins']} active)")


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Full-text query")],
    store: StoreOption = None,
    session: SessionOption = None,
    repo: RepoOption = None,
    agent: AgentOption = None,
    user: UserOption = None,
    limit: LimitOption = 10,
    budget: Annotated[Optional[int], typer.Option(
        "--budget", "-b", help="Token budget for ranked results"
    )] = None,
    include_redacted: Annotated[bool, typer.Option(
        "--include-redacted", help="Include redacted observations"
    )] = False,
):
    """Retrieve pinned context and ranked matches for a query."""
    with _get_kindling(store) as kn:
        result = kn.retrieve(
            query,
            _scope(session, repo, agent, user),
            token_budget=budget,
            max_candidates=limit,
            include_redacted=include_redacted,
        )
    if _get_json_output():
        _emit_json(result.to_dict())
        return

    for item in result.pins:
        reason = f" ({item.pin.reason})" if item.pin.reason else ""
        typer.echo(f"[pin] {item.target.id}{reason}: {_one_line(item.target.content)}")
    if result.current_summary is not None:
        typer.echo(f"[summary] {_one_line(result.current_summary.content)}")
    for hit in result.candidates:
        typer.echo(f"{hit.score:.3f} {hit.entity_type:<11} {hit.id}  {_one_line(hit.match_context, 60)}")
    prov = result.provenance
    typer.echo(
        f"{prov.returned_candidates} of {prov.total_candidates} candidates"
        f"{' (truncated by token budget)' if prov.truncated_due_to_token_budget else ''}",
        err=True,
    )
    if result.tier0_exceeds_budget:
        typer.echo("Warning: pinned context alone exceeds the token budget", err=True)


@app.command("list")
def list_cmd(
    what: Annotated[str, typer.Argument(
        help="What to list: observations, capsules or pins"
    )] = "observations",
    store: StoreOption = None,
    session: SessionOption = None,
    repo: RepoOption = None,
    agent: AgentOption = None,
    user: UserOption = None,
    limit: LimitOption = 20,
    status_filter: Annotated[Optional[str], typer.Option(
        "--status", help="Capsule status filter: open or closed"
    )] = None,
    include_expired: Annotated[bool, typer.Option(
        "--expired", help="Include expired pins"
    )] = False,
):
    """List observations, capsules or pins within a scope."""
    if what not in ("observations", "capsules", "pins"):
        typer.echo(f"Error: expected observations, capsules or pins, got '{what}'", err=True)
        raise typer.Exit(1)
    scope = _scope(session, repo, agent, user)

    with _get_kindling(store) as kn:
        if what == "observations":
            items = kn.store.query_observations(scope, limit=limit)
            lines = [
                f"{_fmt_ts(o.ts)} {o.kind:<11} {o.id}  {_one_line(o.content, 60)}"
                for o in items
            ]
        elif what == "capsules":
            items = kn.list_capsules(scope, status=status_filter, limit=limit)
            lines = [
                f"{_fmt_ts(c.opened_at)} {c.status:<6} {c.type:<15} {c.id}  "
                f"{_one_line(c.intent, 40)} ({len(c.observation_ids)} obs)"
                for c in items
            ]
        else:
            items = kn.list_pins(scope, include_expired=include_expired)[:limit]
            lines = [
                f"{_fmt_ts(p.created_at)} {p.id} -> {p.target_type} {p.target_id}"
                f"{'  ' + p.reason if p.reason else ''}"
                f"{'  (expires ' + _fmt_ts(p.expires_at) + ')' if p.expires_at else ''}"
                for p in items
            ]

    if _get_json_output():
        _emit_json([i.to_dict() for i in items])
    elif lines:
        typer.echo("\n".join(lines))
    else:
        typer.echo(f"No {what}.", err=True)


@app.command()
def pin(
    target_id: Annotated[str, typer.Argument(help="Observation or summary id")],
    store: StoreOption = None,
    summary: Annotated[bool, typer.Option(
        "--summary", help="Target is a summary rather than an observation"
    )] = False,
    reason: Annotated[Optional[str], typer.Option(
        "--reason", "-r", help="Why this is pinned"
    )] = None,
    ttl_hours: Annotated[Optional[float], typer.Option(
        "--ttl", help="Expire the pin after this many hours"
    )] = None,
):
    """Pin an observation or summary so retrieval always includes it."""
    ttl_ms = int(ttl_hours * 3600 * 1000) if ttl_hours is not None else None
    with _get_kindling(store) as kn:
        try:
            p = kn.pin("summary" if summary else "observation", target_id,
                       reason=reason, ttl_ms=ttl_ms)
        except KindlingError as e:
            _fail(e)
    if _get_json_output():
        _emit_json(p.to_dict())
    else:
        typer.echo(p.id)


@app.command()
def unpin(
    pin_id: Annotated[str, typer.Argument(help="Pin id")],
    store: StoreOption = None,
):
    """Remove a pin."""
    with _get_kindling(store) as kn:
        try:
            kn.unpin(pin_id)
        except KindlingError as e:
            _fail(e)
    typer.echo(f"Unpinned {pin_id}", err=True)


@app.command()
def forget(
    observation_id: Annotated[str, typer.Argument(help="Observation id")],
    store: StoreOption = None,
):
    """Redact an observation's content and remove it from search."""
    with _get_kindling(store) as kn:
        try:
            kn.forget(observation_id)
        except KindlingError as e:
            _fail(e)
    typer.echo(f"Redacted {observation_id}", err=True)


@app.command("export")
def export_cmd(
    output: Annotated[str, typer.Argument(help="Output file path (use '-' for stdout)")],
    store: StoreOption = None,
    session: SessionOption = None,
    repo: RepoOption = None,
    agent: AgentOption = None,
    user: UserOption = None,
    include_redacted: Annotated[bool, typer.Option(
        "--include-redacted", help="Include redacted observations"
    )] = False,
    description: Annotated[Optional[str], typer.Option(
        "--description", "-d", help="Description stored in bundle metadata"
    )] = None,
):
    """Export the store (or one scope) to a JSON bundle."""
    from .bundle import bundle_stats, serialize_bundle, write_bundle

    scope = _scope(session, repo, agent, user)
    with _get_kindling(store) as kn:
        bundle = kn.export(
            scope if not scope.is_empty() else None,
            include_redacted=include_redacted,
            metadata={"description": description} if description else None,
        )

    if output == "-":
        sys.stdout.write(serialize_bundle(bundle, pretty=True) + "\n")
        return
    write_bundle(bundle, output)
    stats = bundle_stats(bundle)
    typer.echo(
        f"Exported {stats['observations']} observations, {stats['capsules']} capsules, "
        f"{stats['summaries']} summaries, {stats['pins']} pins to {output}",
        err=True,
    )


@app.command("import")
def import_cmd(
    file: Annotated[str, typer.Argument(help="Bundle file to import ('-' for stdin)")],
    store: StoreOption = None,
    dry_run: Annotated[bool, typer.Option(
        "--dry-run", help="Validate and count without writing"
    )] = False,
):
    """Import a JSON bundle. Existing ids are skipped."""
    from .bundle import deserialize_bundle, read_bundle

    if file != "-" and not Path(file).exists():
        typer.echo(f"Error: file not found: {file}", err=True)
        raise typer.Exit(1)

    try:
        bundle = deserialize_bundle(sys.stdin.read()) if file == "-" else read_bundle(file)
    except KindlingError as e:
        _fail(e)

    with _get_kindling(store) as kn:
        result = kn.import_bundle(bundle, dry_run=dry_run)

    if _get_json_output():
        _emit_json(result.to_dict())
    else:
        verb = "Would import" if result.dry_run else "Imported"
        typer.echo(
            f"{verb} {result.observations} observations, {result.capsules} capsules, "
            f"{result.summaries} summaries, {result.pins} pins; skipped {result.skipped}.",
            err=True,
        )
        for err in result.errors:
            typer.echo(f"  - {err}", err=True)
    if result.errors:
        raise typer.Exit(1)


@app.command()
def migrations(store: StoreOption = None):
    """Show applied and pending schema migrations."""
    with _get_kindling(store) as kn:
        info = kn.store.migration_status()
    if _get_json_output():
        _emit_json(info.to_dict())
        return
    for m in info.applied:
        typer.echo(f"v{m['version']} {m['name']}  applied {_fmt_ts(m['appliedAt'])}")
    for m in info.pending:
        typer.echo(f"v{m['version']} {m['name']}  pending")


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="kindling CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
