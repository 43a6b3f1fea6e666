"""Schema migrator: bring any ledger database up to SCHEMA_VERSION.

One pass, one transaction, foreign keys off for the duration:

    1. always   schema_meta, lab_notes(id) seed, add-missing columns, legacy backfills
    2. gated    version steps (2, 7, 8, 10, 11), each idempotent
    3. always   indexes, then views dropped + recreated
    4. always   foreign_key_check, then the version number is written

A failure anywhere rolls the whole pass back and raises MigrationError;
callers must not serve from that database.

The views are the only place "effective content" is computed. lab_notes
never stores canonical content; content_html is a legacy fallback read only
when a note has no revision at all.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from labledger.db import (
    execute_script,
    foreign_keys_disabled,
    object_exists,
    table_columns,
    transaction,
)
from labledger.errors import MigrationError, StorageError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("labledger.migrate")

SCHEMA_VERSION = 11
_VERSION_KEY = "lab_notes_schema_version"

_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ','now')"

# Inline markdown columns from the pre-ledger wide table. Folded into content_html, then dropped.
_LEGACY_CONTENT_COLUMNS = ("content_md", "content_markdown")


@dataclass(frozen=True)
class Column:
    """One lab_notes column.

    add_ddl     used by ALTER TABLE ADD COLUMN (constant defaults only)
    table_ddl   shape in a rebuilt table (may use expression defaults)
    normalize   expression used to clean legacy values when rows are copied
    """

    name: str
    add_ddl: str
    table_ddl: str | None = None
    normalize: str | None = None

    @property
    def definition(self) -> str:
        return f"{self.name} {self.table_ddl or self.add_ddl}"


NOTE_COLUMNS: tuple[Column, ...] = (
    # identity
    Column("group_id", "TEXT NOT NULL DEFAULT ''", normalize="COALESCE(NULLIF(group_id, ''), id)"),
    Column("slug", "TEXT NOT NULL DEFAULT ''", "TEXT NOT NULL", "COALESCE(NULLIF(slug, ''), id)"),
    Column("locale", "TEXT NOT NULL DEFAULT 'en'", normalize="LOWER(COALESCE(NULLIF(TRIM(locale), ''), 'en'))"),
    # display metadata
    Column("type", "TEXT NOT NULL DEFAULT 'labnote'", normalize="COALESCE(NULLIF(type, ''), 'labnote')"),
    Column("title", "TEXT NOT NULL DEFAULT ''", normalize="COALESCE(NULLIF(title, ''), slug, id)"),
    Column("subtitle", "TEXT"),
    Column("summary", "TEXT"),
    Column("excerpt", "TEXT"),
    Column("category", "TEXT"),
    Column("department_id", "TEXT"),
    Column("dept", "TEXT"),
    Column("card_style", "TEXT"),
    Column("shadow_density", "REAL"),
    Column("coherence_score", "REAL"),
    Column("safer_landing", "INTEGER"),
    Column("read_time_minutes", "INTEGER"),
    Column("tags_json", "TEXT"),
    # publishing
    Column(
        "status",
        "TEXT NOT NULL DEFAULT 'draft'",
        "TEXT NOT NULL DEFAULT 'draft' CHECK (status IN ('draft','published','archived'))",
        "CASE WHEN status IN ('draft','published','archived') THEN status "
        "WHEN NULLIF(published_at, '') IS NOT NULL THEN 'published' ELSE 'draft' END",
    ),
    Column("published_at", "TEXT"),
    # authors
    Column("author", "TEXT"),
    Column("ai_author", "TEXT"),
    # translation metadata
    Column("source_locale", "TEXT"),
    Column("translation_status", "TEXT NOT NULL DEFAULT 'original'",
           normalize="COALESCE(NULLIF(translation_status, ''), 'original')"),
    Column("translation_provider", "TEXT"),
    Column("translation_version", "INTEGER NOT NULL DEFAULT 1", normalize="COALESCE(translation_version, 1)"),
    Column("source_updated_at", "TEXT"),
    Column("translation_meta_json", "TEXT"),
    # legacy inline content (fallback only)
    Column("content_html", "TEXT"),
    # ledger pointers
    Column("current_revision_id", "TEXT"),
    Column("published_revision_id", "TEXT"),
    # timestamps
    Column("created_at", "TEXT NOT NULL DEFAULT ''", f"TEXT NOT NULL DEFAULT ({_NOW_SQL})",
           f"COALESCE(NULLIF(created_at, ''), {_NOW_SQL})"),
    Column("updated_at", "TEXT NOT NULL DEFAULT ''", f"TEXT NOT NULL DEFAULT ({_NOW_SQL})",
           f"COALESCE(NULLIF(updated_at, ''), NULLIF(created_at, ''), {_NOW_SQL})"),
)

_NOTE_COLUMN_NAMES = ("id", *(c.name for c in NOTE_COLUMNS))


@dataclass
class MigrationResult:
    previous_version: int
    version: int = SCHEMA_VERSION
    added_columns: list[str] = field(default_factory=list)
    created_fresh_table: bool = False
    steps_applied: list[str] = field(default_factory=list)
    dropped_indexes: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return (
            self.created_fresh_table
            or bool(self.added_columns)
            or bool(self.dropped_indexes)
            or self.previous_version != self.version
        )


@dataclass(frozen=True)
class Step:
    version: int
    name: str
    apply: Callable[[sqlite3.Connection, MigrationResult], None]


# ---------------------------------------------------------------------------
# Version bookkeeping
# ---------------------------------------------------------------------------

def get_schema_version(conn: sqlite3.Connection) -> int:
    """Stored schema version; a missing table, row or garbage value reads as 0."""
    if not object_exists(conn, "table", "schema_meta"):
        return 0
    row = conn.execute("SELECT value FROM schema_meta WHERE key = ?", (_VERSION_KEY,)).fetchone()
    if row is None:
        return 0
    try:
        return int(row["value"])
    except (TypeError, ValueError):
        return 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        "INSERT INTO schema_meta (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (_VERSION_KEY, str(version)),
    )


# ---------------------------------------------------------------------------
# Always-run steps
# ---------------------------------------------------------------------------

def _ensure_base(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
    conn.execute("CREATE TABLE IF NOT EXISTS lab_notes (id TEXT PRIMARY KEY)")


def _add_missing_columns(conn: sqlite3.Connection, result: MigrationResult) -> None:
    existing = set(table_columns(conn, "lab_notes"))
    for col in NOTE_COLUMNS:
        if col.name not in existing:
            conn.execute(f"ALTER TABLE lab_notes ADD COLUMN {col.name} {col.add_ddl}")
            result.added_columns.append(col.name)


def _backfill_legacy_rows(conn: sqlite3.Connection) -> None:
    conn.execute("UPDATE lab_notes SET group_id = id WHERE group_id IS NULL OR group_id = ''")
    conn.execute("UPDATE lab_notes SET slug = id WHERE slug IS NULL OR slug = ''")
    conn.execute("UPDATE lab_notes SET title = slug WHERE title IS NULL OR title = ''")
    conn.execute(
        f"UPDATE lab_notes SET created_at = COALESCE(NULLIF(updated_at, ''), {_NOW_SQL}) "
        "WHERE created_at IS NULL OR created_at = ''"
    )
    conn.execute(
        f"UPDATE lab_notes SET updated_at = COALESCE(NULLIF(created_at, ''), {_NOW_SQL}) "
        "WHERE updated_at IS NULL OR updated_at = ''"
    )


_NOTE_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_lab_notes_locale ON lab_notes(locale)",
    "CREATE INDEX IF NOT EXISTS idx_lab_notes_status ON lab_notes(status)",
    "CREATE INDEX IF NOT EXISTS idx_lab_notes_published_at ON lab_notes(published_at)",
    "CREATE INDEX IF NOT EXISTS idx_lab_notes_group_id ON lab_notes(group_id)",
    "CREATE INDEX IF NOT EXISTS idx_lab_notes_department_id ON lab_notes(department_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_lab_notes_slug_locale ON lab_notes(slug, locale)",
)


def _ensure_note_indexes(conn: sqlite3.Connection) -> None:
    for ddl in _NOTE_INDEXES:
        conn.execute(ddl)


def rebuild_table(
    conn: sqlite3.Connection,
    table: str,
    definitions: list[str],
    copy: dict[str, str],
) -> None:
    """Replace ``table`` with a new shape: shadow table, copy, drop, rename.

    ``copy`` maps target column → SELECT expression over the old table.
    Caller provides the transaction and disables foreign keys; the table's
    indexes are dropped with it and must be recreated by the caller.
    """
    shadow = f"{table}_new"
    conn.execute(f"DROP TABLE IF EXISTS {shadow}")
    conn.execute(f"CREATE TABLE {shadow} (\n    " + ",\n    ".join(definitions) + "\n)")
    conn.execute(
        f"INSERT INTO {shadow} ({', '.join(copy)}) "
        f"SELECT {', '.join(copy.values())} FROM {table}"
    )
    conn.execute(f"DROP TABLE {table}")
    conn.execute(f"ALTER TABLE {shadow} RENAME TO {table}")


def _note_table_definitions() -> list[str]:
    return ["id TEXT PRIMARY KEY", *(c.definition for c in NOTE_COLUMNS)]


# ---------------------------------------------------------------------------
# Versioned steps
# ---------------------------------------------------------------------------

def _create_ledger_tables(conn: sqlite3.Connection, result: MigrationResult) -> None:  # noqa: ARG001
    """v2: append-only revisions + proposals + events."""
    execute_script(conn, """
        CREATE TABLE IF NOT EXISTS lab_note_revisions (
            id TEXT PRIMARY KEY,
            note_id TEXT NOT NULL,

            revision_num INTEGER NOT NULL CHECK (revision_num >= 1),
            supersedes_revision_id TEXT NULL,

            frontmatter_json TEXT NOT NULL DEFAULT '{}',
            content_body TEXT NOT NULL,
            content_hash TEXT NOT NULL,

            schema_version TEXT NOT NULL DEFAULT 'v1',
            source TEXT NOT NULL CHECK (source IN ('cli','web','api','import')),

            intent TEXT NOT NULL,
            intent_version TEXT NOT NULL DEFAULT '1',

            scope_json TEXT NOT NULL DEFAULT '[]',
            side_effects_json TEXT NOT NULL DEFAULT '[]',
            reversible INTEGER NOT NULL DEFAULT 1 CHECK (reversible IN (0,1)),

            auth_type TEXT NOT NULL CHECK (auth_type IN ('human_session','api_token')),
            scopes_json TEXT NOT NULL DEFAULT '[]',
            reasoning_json TEXT NULL,

            created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now')),

            UNIQUE (note_id, revision_num),
            FOREIGN KEY (note_id) REFERENCES lab_notes(id) ON DELETE CASCADE,
            FOREIGN KEY (supersedes_revision_id) REFERENCES lab_note_revisions(id)
        );
        CREATE INDEX IF NOT EXISTS idx_revisions_note ON lab_note_revisions(note_id);
        CREATE INDEX IF NOT EXISTS idx_revisions_intent ON lab_note_revisions(intent);
        CREATE INDEX IF NOT EXISTS idx_revisions_hash ON lab_note_revisions(content_hash);

        CREATE TABLE IF NOT EXISTS lab_note_proposals (
            id TEXT PRIMARY KEY,
            note_id TEXT NOT NULL,

            base_revision_id TEXT NOT NULL,
            proposed_revision_id TEXT NOT NULL,

            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending','accepted','rejected','withdrawn')),

            created_by TEXT NOT NULL,
            created_by_type TEXT NOT NULL CHECK (created_by_type IN ('human','ai','system')),

            reviewed_by TEXT NULL,
            reviewed_at TEXT NULL,
            review_comment TEXT NULL,
            diff_patch TEXT NULL,

            created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now')),

            FOREIGN KEY (note_id) REFERENCES lab_notes(id) ON DELETE CASCADE,
            FOREIGN KEY (base_revision_id) REFERENCES lab_note_revisions(id),
            FOREIGN KEY (proposed_revision_id) REFERENCES lab_note_revisions(id)
        );
        CREATE INDEX IF NOT EXISTS idx_proposals_note ON lab_note_proposals(note_id);
        CREATE INDEX IF NOT EXISTS idx_proposals_status ON lab_note_proposals(status);

        CREATE TABLE IF NOT EXISTS lab_events (
            id TEXT PRIMARY KEY,

            event_type TEXT NOT NULL,
            note_id TEXT NULL,
            revision_id TEXT NULL,
            proposal_id TEXT NULL,

            intent TEXT NULL,
            intent_version TEXT NULL,

            actor_type TEXT NOT NULL CHECK (actor_type IN ('human','ai','system')),
            actor_id TEXT NOT NULL,

            auth_type TEXT NULL CHECK (auth_type IN ('human_session','api_token')),
            scopes_json TEXT NULL,

            payload_json TEXT NOT NULL DEFAULT '{}',

            created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now')),

            FOREIGN KEY (note_id) REFERENCES lab_notes(id) ON DELETE SET NULL,
            FOREIGN KEY (revision_id) REFERENCES lab_note_revisions(id) ON DELETE SET NULL,
            FOREIGN KEY (proposal_id) REFERENCES lab_note_proposals(id) ON DELETE SET NULL
        );
        CREATE INDEX IF NOT EXISTS idx_events_type ON lab_events(event_type);
        CREATE INDEX IF NOT EXISTS idx_events_note ON lab_events(note_id);
        CREATE INDEX IF NOT EXISTS idx_events_created_at ON lab_events(created_at);
    """)


def _drop_legacy_note_columns(conn: sqlite3.Connection, result: MigrationResult) -> None:
    """v7: rebuild lab_notes without columns outside the canonical shape.

    Inline markdown from the pre-ledger table survives as the content_html
    fallback when that field is empty, so nothing readable is lost.
    """
    existing = table_columns(conn, "lab_notes")
    extra = [c for c in existing if c not in _NOTE_COLUMN_NAMES]
    if not extra:
        return

    copy = {name: name for name in _NOTE_COLUMN_NAMES}
    legacy = [c for c in _LEGACY_CONTENT_COLUMNS if c in extra]
    if legacy:
        copy["content_html"] = "COALESCE(NULLIF(content_html, ''), " + ", ".join(
            f"NULLIF({c}, '')" for c in legacy
        ) + ")"

    rebuild_table(conn, "lab_notes", _note_table_definitions(), copy)
    logger.info("dropped legacy lab_notes column(s): %s", ", ".join(extra))
    result.steps_applied.append(f"dropped columns: {', '.join(extra)}")


def _dedupe_and_rebuild_notes(conn: sqlite3.Connection, result: MigrationResult) -> None:
    """v8: one row per (slug, locale), real column defaults, normalized values.

    Duplicates keep the most recently updated row. Foreign keys are off, so
    the losers' dependents are removed (or detached, for events) by hand.
    """
    conn.execute("DROP TABLE IF EXISTS _dedupe_losers")
    conn.execute("""
        CREATE TEMP TABLE _dedupe_losers AS
        SELECT id FROM (
            SELECT
                id,
                ROW_NUMBER() OVER (
                    PARTITION BY COALESCE(NULLIF(slug, ''), id),
                                 LOWER(COALESCE(NULLIF(TRIM(locale), ''), 'en'))
                    ORDER BY updated_at DESC, created_at DESC, id DESC
                ) AS rn
            FROM lab_notes
        )
        WHERE rn > 1
    """)
    losers = [r["id"] for r in conn.execute("SELECT id FROM _dedupe_losers").fetchall()]
    if losers:
        if object_exists(conn, "table", "lab_note_tags"):
            conn.execute("DELETE FROM lab_note_tags WHERE note_id IN (SELECT id FROM _dedupe_losers)")
        conn.execute(
            "UPDATE lab_events SET note_id = NULL, revision_id = NULL, proposal_id = NULL "
            "WHERE note_id IN (SELECT id FROM _dedupe_losers)"
        )
        conn.execute("DELETE FROM lab_note_proposals WHERE note_id IN (SELECT id FROM _dedupe_losers)")
        conn.execute("DELETE FROM lab_note_revisions WHERE note_id IN (SELECT id FROM _dedupe_losers)")
        conn.execute("DELETE FROM lab_notes WHERE id IN (SELECT id FROM _dedupe_losers)")
        logger.warning("removed %d duplicate (slug, locale) note(s): %s", len(losers), ", ".join(losers))
        result.steps_applied.append(f"deduped {len(losers)} note(s)")
    conn.execute("DROP TABLE _dedupe_losers")

    copy = {"id": "id"}
    for col in NOTE_COLUMNS:
        copy[col.name] = col.normalize or col.name
    rebuild_table(conn, "lab_notes", _note_table_definitions(), copy)


def _drop_slug_only_unique_indexes(conn: sqlite3.Connection, result: MigrationResult) -> None:
    """v10: uniqueness is (slug, locale); a slug-only unique index blocks translations."""
    for idx in conn.execute("PRAGMA index_list('lab_notes')").fetchall():
        if not idx["unique"] or idx["origin"] != "c":
            continue
        name = idx["name"]
        cols = [r["name"] for r in conn.execute(f"PRAGMA index_info('{name}')").fetchall()]
        if cols == ["slug"]:
            conn.execute(f'DROP INDEX IF EXISTS "{name}"')
            result.dropped_indexes.append(name)
            logger.info("dropped legacy unique index on slug: %s", name)


def _create_tag_table(conn: sqlite3.Connection, result: MigrationResult) -> None:  # noqa: ARG001
    """v11: normalized tags, backfilled from tags_json."""
    execute_script(conn, """
        CREATE TABLE IF NOT EXISTS lab_note_tags (
            note_id TEXT NOT NULL REFERENCES lab_notes(id) ON DELETE CASCADE,
            tag TEXT NOT NULL,
            UNIQUE (note_id, tag)
        );
        CREATE INDEX IF NOT EXISTS idx_lab_note_tags_note_id ON lab_note_tags(note_id);
        CREATE INDEX IF NOT EXISTS idx_lab_note_tags_tag ON lab_note_tags(tag);

        INSERT OR IGNORE INTO lab_note_tags (note_id, tag)
        SELECT n.id, TRIM(j.value)
        FROM lab_notes n,
             json_each(CASE WHEN json_valid(n.tags_json) AND json_type(n.tags_json) = 'array'
                            THEN n.tags_json ELSE '[]' END) j
        WHERE j.type = 'text' AND TRIM(j.value) != '';
    """)


STEPS: tuple[Step, ...] = (
    Step(2, "ledger tables", _create_ledger_tables),
    Step(7, "drop legacy note columns", _drop_legacy_note_columns),
    Step(8, "dedupe + rebuild lab_notes with defaults", _dedupe_and_rebuild_notes),
    Step(10, "drop slug-only unique indexes", _drop_slug_only_unique_indexes),
    Step(11, "normalized tag table", _create_tag_table),
)


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

_DROP_VIEWS = """
    DROP VIEW IF EXISTS v_lab_notes;
    DROP VIEW IF EXISTS v_lab_notes_current;
"""

# Resolution order: published revision (if published) → current → published →
# highest revision_num → legacy content_html → NULL ("content pending").
# Pointers are only followed when the revision belongs to the note.
_CREATE_VIEWS = """
    CREATE VIEW v_lab_notes AS
    SELECT
        e.id, e.group_id, e.slug, e.locale, e.type, e.title,
        e.subtitle, e.summary, e.excerpt, e.category,
        e.department_id, e.dept, e.card_style,
        e.shadow_density, e.coherence_score, e.safer_landing, e.read_time_minutes,
        e.tags_json,
        e.status, e.published_at, e.author, e.ai_author,
        e.source_locale, e.translation_status, e.translation_provider,
        e.translation_version, e.source_updated_at, e.translation_meta_json,
        e.current_revision_id, e.published_revision_id,
        r.id AS effective_revision_id,
        r.revision_num AS effective_revision_num,
        r.content_hash AS effective_content_hash,
        COALESCE(r.content_body, NULLIF(TRIM(e.content_html), '')) AS content_body,
        CASE
            WHEN r.id IS NOT NULL THEN e.resolved_via
            WHEN NULLIF(TRIM(e.content_html), '') IS NOT NULL THEN 'legacy'
        END AS content_source,
        e.content_html,
        e.created_at, e.updated_at
    FROM (
        SELECT
            n.*,
            CASE
                WHEN n.status = 'published' AND pub.id IS NOT NULL THEN pub.id
                WHEN cur.id IS NOT NULL THEN cur.id
                WHEN pub.id IS NOT NULL THEN pub.id
                ELSE (
                    SELECT l.id FROM lab_note_revisions l
                    WHERE l.note_id = n.id
                    ORDER BY l.revision_num DESC
                    LIMIT 1
                )
            END AS resolved_revision_id,
            CASE
                WHEN n.status = 'published' AND pub.id IS NOT NULL THEN 'published'
                WHEN cur.id IS NOT NULL THEN 'current'
                WHEN pub.id IS NOT NULL THEN 'published'
                ELSE 'latest'
            END AS resolved_via
        FROM lab_notes n
        LEFT JOIN lab_note_revisions cur
            ON cur.id = n.current_revision_id AND cur.note_id = n.id
        LEFT JOIN lab_note_revisions pub
            ON pub.id = n.published_revision_id AND pub.note_id = n.id
    ) e
    LEFT JOIN lab_note_revisions r ON r.id = e.resolved_revision_id;

    -- Admin view: the tip (current revision) with its provenance
    CREATE VIEW v_lab_notes_current AS
    SELECT
        n.id AS note_id,
        n.slug, n.locale, n.title, n.status, n.published_at,
        n.author, n.ai_author, n.card_style,
        n.current_revision_id, n.published_revision_id,
        r.revision_num, r.schema_version, r.source,
        r.intent, r.intent_version,
        r.scope_json, r.side_effects_json, r.reversible,
        r.auth_type, r.scopes_json,
        r.frontmatter_json, r.content_body, r.content_hash,
        r.created_at AS revision_created_at,
        n.created_at, n.updated_at
    FROM lab_notes n
    LEFT JOIN lab_note_revisions r
        ON r.id = n.current_revision_id AND r.note_id = n.id;
"""


def _check_foreign_keys(conn: sqlite3.Connection) -> None:
    rows = conn.execute("PRAGMA foreign_key_check").fetchall()
    if rows:
        sample = ", ".join(f"{r[0]}#{r[1]}→{r[2]}" for r in rows[:5])
        raise MigrationError(f"foreign key violations after migration ({len(rows)}): {sample}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def migrate(conn: sqlite3.Connection) -> MigrationResult:
    """Bring ``conn`` to SCHEMA_VERSION. Idempotent; safe on every start."""
    if conn.in_transaction:
        raise MigrationError("migrate() must not run inside an open transaction")

    had_notes = object_exists(conn, "table", "lab_notes")
    previous = get_schema_version(conn)
    result = MigrationResult(previous_version=previous, created_fresh_table=not had_notes)
    if previous > SCHEMA_VERSION:
        logger.warning(
            "database schema v%d is newer than this code (v%d); applying idempotent steps only",
            previous, SCHEMA_VERSION,
        )
    result.version = max(previous, SCHEMA_VERSION)

    try:
        with foreign_keys_disabled(conn), transaction(conn, "schema migration"):
            execute_script(conn, _DROP_VIEWS)
            _ensure_base(conn)
            _add_missing_columns(conn, result)
            _backfill_legacy_rows(conn)

            for step in STEPS:
                if previous < step.version:
                    step.apply(conn, result)
                    result.steps_applied.append(f"v{step.version} {step.name}")

            _ensure_note_indexes(conn)
            execute_script(conn, _CREATE_VIEWS)
            _check_foreign_keys(conn)
            _set_schema_version(conn, result.version)
    except MigrationError:
        raise
    except (StorageError, sqlite3.Error) as exc:
        raise MigrationError(f"schema migration v{previous} → v{SCHEMA_VERSION} failed: {exc}") from exc

    if result.changed:
        cols = (
            f"added {len(result.added_columns)} column(s): {', '.join(result.added_columns)}"
            if result.added_columns else "no column changes"
        )
        logger.info("lab_notes migration: v%d → v%d; %s", previous, result.version, cols)
    return result
