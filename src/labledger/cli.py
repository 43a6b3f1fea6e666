"""labledger CLI: lab note ledger backed by SQLite, fed from a markdown tree.

Commands:
    labledger init [NAME]              create labledger.toml, migrate, seed marker note
    labledger migrate                  bring the db schema up to date
    labledger sync [--force]           ingest the markdown tree
    labledger list [--locale L]        published notes (--drafts for drafts too)
    labledger show SLUG                effective content of one note
    labledger write SLUG --title T --file F [--publish]
    labledger status SLUG STATUS       draft | published | archived
    labledger history SLUG             revision chain
    labledger export SLUG [-r N]       a revision as markdown + frontmatter
    labledger verify SLUG              recompute hashes, check the chain
    labledger repair                   fix null/dangling pointers
    labledger info                     ledger stats
    labledger events [SLUG]            audit log
    labledger watch                    poll the tree and sync on change
"""

from __future__ import annotations

import contextlib
import getpass
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from labledger.bootstrap import open_ledger, seed_marker_note
from labledger.config import LedgerConfig, init_config, load_config
from labledger.db import get_conn
from labledger.errors import LedgerError
from labledger.migrate import get_schema_version
from labledger.migrate import migrate as _migrate
from labledger.models import NOTE_STATUSES, REVISION_SOURCES, Actor
from labledger.service import LabNotesService, NoteInput
from labledger.watcher import watch as _watch

if TYPE_CHECKING:
    from collections.abc import Iterator

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_cfg(ctx: click.Context) -> LedgerConfig:
    try:
        cfg = load_config(ctx.obj.get("root"))
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    level = logging.DEBUG if ctx.obj.get("verbose") else cfg.logging.level
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    return cfg


@contextlib.contextmanager
def _service(ctx: click.Context) -> Iterator[LabNotesService]:
    """Open (and migrate) the ledger; LedgerError → ClickException."""
    cfg = _load_cfg(ctx)
    try:
        store = open_ledger(cfg)
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    try:
        yield LabNotesService(store, cfg.sync)
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        store.conn.close()


def _cli_actor() -> Actor:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "cli"
    return Actor(actor_type="human", actor_id=user, auth_type="human_session")


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="labledger")
@click.option("--root", type=click.Path(file_okay=False), envvar="LABLEDGER_ROOT",
              help="Project root (default: search upward from cwd for labledger.toml)")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, root: str | None, verbose: bool) -> None:
    """labledger: append-only lab note ledger."""
    ctx.ensure_object(dict)
    ctx.obj["root"] = Path(root).resolve() if root else None
    ctx.obj["verbose"] = verbose


# ---------------------------------------------------------------------------
# labledger init / migrate / repair
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("name", required=False)
@click.option("--notes-dir", default="notes", show_default=True, help="Markdown tree, relative to the root")
@click.pass_context
def init(ctx: click.Context, name: str | None, notes_dir: str) -> None:
    """Create labledger.toml, the database and the marker note."""
    root_path = ctx.obj.get("root") or Path.cwd()
    ctx.obj["root"] = root_path
    try:
        config_path = init_config(root_path, name=name, notes_dir=notes_dir)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("labledger.toml already exists, skipping init")

    (root_path / notes_dir).mkdir(parents=True, exist_ok=True)
    with _service(ctx) as svc:
        outcome = seed_marker_note(svc.store)
        cfg = _load_cfg(ctx)
        click.echo(f"Database  : {cfg.db_path}")
        click.echo(f"Notes dir : {cfg.sync.root}")
        click.echo(f"Marker    : {outcome}")


@cli.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Apply schema migrations (also done implicitly by every command)."""
    cfg = _load_cfg(ctx)
    try:
        conn = get_conn(cfg)
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    try:
        result = _migrate(conn)
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        conn.close()
    click.echo(f"Schema v{result.previous_version} → v{result.version}")
    if result.added_columns:
        click.echo(f"  added columns: {', '.join(result.added_columns)}")
    for step in result.steps_applied:
        click.echo(f"  {step}")
    if not result.changed:
        click.echo("  up to date")


@cli.command()
@click.pass_context
def info(ctx: click.Context) -> None:
    """Show ledger stats: schema version, notes per locale and status, revisions."""
    from rich.console import Console
    from rich.table import Table

    cfg = _load_cfg(ctx)
    with _service(ctx) as svc:
        version = get_schema_version(svc.store.conn)
        stats = svc.store.stats()

    table = Table(title=f"labledger: {cfg.name}", show_header=True, header_style="bold")
    table.add_column("Metric", style="dim", no_wrap=True)
    table.add_column("Value", justify="right")
    table.add_row("Config", str(cfg.root / "labledger.toml"))
    table.add_row("Database", str(cfg.db_path))
    table.add_row("Schema", f"v{version}")
    table.add_row("Notes dir", str(cfg.sync.root) if cfg.sync.root else "[yellow]not set[/yellow]")
    table.add_row("", "")
    if stats["notes"]:
        for key, n in stats["notes"].items():
            table.add_row(f"Notes {key}", str(n))
    else:
        table.add_row("Notes", "[dim]none[/dim]")
    table.add_row("Revisions", str(stats["revisions"]))
    if stats["content_pending"]:
        table.add_row("  Content pending", f"[yellow]{stats['content_pending']}[/yellow]")
    if stats["legacy_only"]:
        table.add_row("  Legacy content only", f"[yellow]{stats['legacy_only']}[/yellow]")
    table.add_row("Pending proposals", str(stats["pending_proposals"]))
    table.add_row("Events", str(stats["events"]))
    Console().print(table)


@cli.command()
@click.pass_context
def repair(ctx: click.Context) -> None:
    """Point null or dangling revision pointers at each note's latest revision."""
    with _service(ctx) as svc:
        repaired = svc.store.repair_pointers()
    click.echo(f"Repaired {len(repaired)} note(s)")


# ---------------------------------------------------------------------------
# labledger sync / watch
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--force", is_flag=True, help="Advance pointers even over edits made outside sync")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
@click.pass_context
def sync(ctx: click.Context, force: bool, as_json: bool) -> None:
    """Ingest the markdown tree into the ledger."""
    with _service(ctx) as svc:
        result = svc.run_sync(force=force)
    if as_json:
        _echo_json(result.to_dict())
        return
    parts = [f"{v} {k.replace('_', ' ')}" for k, v in result.counters().items() if v]
    click.echo(f"[{result.root}] {', '.join(parts) or 'no files'}")
    for err in result.errors:
        click.echo(f"  error: {err['file']}: {err['error']}", err=True)


@cli.command()
@click.option("--interval", type=float, default=None, help="Seconds between polls (default from config)")
@click.option("--force", is_flag=True, help="Sync with --force on every change")
@click.pass_context
def watch(ctx: click.Context, interval: float | None, force: bool) -> None:
    """Poll the markdown tree and sync on change. Ctrl-C to stop."""
    cfg = _load_cfg(ctx)
    with _service(ctx) as svc:
        click.echo(f"Watching {cfg.sync.root} (Ctrl-C to stop)")
        try:
            _watch(svc, interval if interval is not None else cfg.watch.interval, force=force)
        except KeyboardInterrupt:
            click.echo("Stopped")


# ---------------------------------------------------------------------------
# labledger list / show / history / events
# ---------------------------------------------------------------------------


@cli.command("list")
@click.option("--locale", "-l", default="en", show_default=True, help='Locale, or "all"')
@click.option("--drafts", is_flag=True, help="Include drafts")
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def list_cmd(ctx: click.Context, locale: str, drafts: bool, as_json: bool) -> None:
    """List notes (newest first)."""
    with _service(ctx) as svc:
        notes = svc.list_notes(locale, include_drafts=drafts)
    if as_json:
        _echo_json([n.to_dict() for n in notes])
        return
    if not notes:
        click.echo("No notes")
        return
    for n in notes:
        published = n.published[:10] if n.published else "-"
        click.echo(f"{n.locale}  {n.slug:<32} {n.status:<9} {published:<10}  {n.title}")


@cli.command()
@click.argument("slug")
@click.option("--locale", "-l", default="en", show_default=True)
@click.option("--drafts", is_flag=True, help="Also resolve draft notes")
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def show(ctx: click.Context, slug: str, locale: str, drafts: bool, as_json: bool) -> None:
    """Print a note's effective content."""
    with _service(ctx) as svc:
        detail = svc.get_note(slug, locale, include_drafts=drafts)
    if detail is None:
        raise click.ClickException(f"Note not found: {slug} ({locale})")
    if as_json:
        _echo_json(detail.to_dict())
        return
    click.echo(f"# {detail.title}  [{detail.locale}, {detail.status}]")
    source = detail.content_source or "pending"
    rev = f"r{detail.revision_num}" if detail.revision_num else "no revision"
    click.echo(f"  {rev} via {source}")
    if detail.tags:
        click.echo(f"  tags: {', '.join(detail.tags)}")
    click.echo("")
    click.echo(detail.content)


@cli.command()
@click.argument("slug")
@click.option("--locale", "-l", default="en", show_default=True)
@click.pass_context
def history(ctx: click.Context, slug: str, locale: str) -> None:
    """Show the revision chain of a note."""
    with _service(ctx) as svc:
        note = svc.store.require_note(slug, locale)
        revisions = svc.history(slug, locale)
    for rev in revisions:
        marks = "".join([
            "*" if rev.id == note.current_revision_id else " ",
            "P" if rev.id == note.published_revision_id else " ",
        ])
        click.echo(
            f"{marks} r{rev.revision_num:<3} {rev.created_at}  {rev.source:<6} "
            f"{rev.content_hash[:12]}  {rev.intent}"
        )


@cli.command()
@click.argument("slug")
@click.option("--locale", "-l", default="en", show_default=True)
@click.option("--revision", "-r", "revision_num", type=int, default=None, help="revision number (default: tip)")
@click.option("--out", "-o", type=click.File("w", encoding="utf-8"), default="-", help="output file (default: stdout)")
@click.pass_context
def export(ctx: click.Context, slug: str, locale: str, revision_num: int | None, out: Any) -> None:
    """Write a revision out as markdown with YAML frontmatter."""
    with _service(ctx) as svc:
        text = svc.export_note(slug, locale, revision_num=revision_num)
    out.write(text)


@cli.command()
@click.argument("slug", required=False)
@click.option("--locale", "-l", default="en", show_default=True)
@click.option("--limit", "-n", default=20, show_default=True)
@click.pass_context
def events(ctx: click.Context, slug: str | None, locale: str, limit: int) -> None:
    """Show the audit log, newest first."""
    with _service(ctx) as svc:
        note_id = svc.store.require_note(slug, locale).id if slug else None
        rows = svc.store.list_events(note_id, limit=limit)
    for ev in rows:
        payload = json.dumps(ev.payload, ensure_ascii=False, default=str) if ev.payload else ""
        click.echo(f"{ev.created_at}  {ev.event_type:<22} {ev.actor_type}:{ev.actor_id}  {payload}")


# ---------------------------------------------------------------------------
# labledger write / status / verify
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("slug")
@click.option("--title", "-t", required=True)
@click.option("--file", "-f", "body_file", type=click.File("r", encoding="utf-8"), default="-",
              show_default=True, help="Markdown body ('-' for stdin)")
@click.option("--locale", "-l", default="en", show_default=True)
@click.option("--type", "note_type", default="labnote", show_default=True,
              type=click.Choice(["labnote", "paper", "memo"]))
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--source", default="cli", show_default=True,
              type=click.Choice([s for s in REVISION_SOURCES if s != "import"]))
@click.option("--publish", is_flag=True, help="Publish in the same write")
@click.pass_context
def write(
    ctx: click.Context,
    slug: str,
    title: str,
    body_file: Any,
    locale: str,
    note_type: str,
    tags: tuple[str, ...],
    source: str,
    publish: bool,
) -> None:
    """Write a new revision of a note (creates the note if needed)."""
    data = NoteInput(slug=slug, title=title, body=body_file.read(), locale=locale,
                     type=note_type, tags=list(tags))
    with _service(ctx) as svc:
        result = svc.save_note(data, actor=_cli_actor(), source=source, publish=publish)
    if result.noop and not result.pointer_advanced:
        click.echo(f"{slug}: unchanged (r{result.revision_num})")
    else:
        created = " (new note)" if result.created_note else ""
        click.echo(f"{slug}: r{result.revision_num}{created}")


@cli.command()
@click.argument("slug")
@click.argument("status", type=click.Choice(list(NOTE_STATUSES)))
@click.option("--locale", "-l", default="en", show_default=True)
@click.pass_context
def status(ctx: click.Context, slug: str, status: str, locale: str) -> None:
    """Publish, unpublish (draft) or archive a note."""
    with _service(ctx) as svc:
        note = svc.set_status(slug, locale, status, actor=_cli_actor())
    click.echo(f"{note.slug} ({note.locale}): {note.status}")


@cli.command()
@click.argument("slug")
@click.option("--locale", "-l", default="en", show_default=True)
@click.pass_context
def verify(ctx: click.Context, slug: str, locale: str) -> None:
    """Recompute revision hashes and check numbering and supersession."""
    with _service(ctx) as svc:
        note = svc.store.require_note(slug, locale)
        problems = svc.store.verify_chain(note.id)
        count = len(svc.store.list_revisions(note.id))
    if problems:
        for p in problems:
            click.echo(f"  {p}", err=True)
        raise click.ClickException(f"{slug}: {len(problems)} problem(s)")
    click.echo(f"{slug}: {count} revision(s), chain intact")
