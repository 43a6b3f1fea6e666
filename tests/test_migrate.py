"""Tests for the schema migrator."""

import logging

import pytest

from labledger.db import object_exists, table_columns
from labledger.errors import MigrationError
from labledger.migrate import NOTE_COLUMNS, SCHEMA_VERSION, get_schema_version, migrate
from labledger.store import LedgerStore


def _count(conn, table):
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def test_fresh_store(raw_conn):
    result = migrate(raw_conn)

    assert result.created_fresh_table
    assert result.previous_version == 0
    assert result.version == SCHEMA_VERSION
    assert get_schema_version(raw_conn) == SCHEMA_VERSION
    for table in ("lab_notes", "lab_note_revisions", "lab_note_proposals", "lab_events", "lab_note_tags"):
        assert object_exists(raw_conn, "table", table)
        assert _count(raw_conn, table) == 0
    assert object_exists(raw_conn, "view", "v_lab_notes")
    assert object_exists(raw_conn, "view", "v_lab_notes_current")


def test_foreign_keys_enabled_after_migration(raw_conn):
    migrate(raw_conn)
    assert raw_conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    assert not raw_conn.in_transaction


def test_second_run_is_a_quiet_noop(conn, caplog):
    caplog.set_level(logging.INFO, logger="labledger.migrate")
    result = migrate(conn)

    assert result.added_columns == []
    assert result.steps_applied == []
    assert not result.changed
    assert [r for r in caplog.records if r.name == "labledger.migrate"] == []


def test_views_are_recreated_every_run(conn):
    conn.execute("DROP VIEW v_lab_notes")
    migrate(conn)
    assert object_exists(conn, "view", "v_lab_notes")


def test_id_only_legacy_table(raw_conn):
    raw_conn.execute("CREATE TABLE lab_notes (id TEXT PRIMARY KEY)")
    raw_conn.execute("INSERT INTO lab_notes (id) VALUES ('n1')")

    result = migrate(raw_conn)

    assert not result.created_fresh_table
    assert set(result.added_columns) == {c.name for c in NOTE_COLUMNS}
    row = raw_conn.execute("SELECT * FROM lab_notes WHERE id = 'n1'").fetchone()
    assert row["group_id"] == "n1"
    assert row["slug"] == "n1"
    assert row["title"] == "n1"
    assert row["locale"] == "en"
    assert row["status"] == "draft"
    assert row["created_at"]
    assert row["updated_at"]


def test_legacy_columns_dropped_without_losing_rows(raw_conn):
    raw_conn.execute(
        "CREATE TABLE lab_notes (id TEXT PRIMARY KEY, slug TEXT, title TEXT, locale TEXT, "
        "content_md TEXT, updated_at TEXT)"
    )
    raw_conn.execute(
        "INSERT INTO lab_notes VALUES ('n1', 'hello', 'Hello', 'EN', '# Hi', '2024-01-01T00:00:00Z')"
    )

    migrate(raw_conn)

    assert "content_md" not in table_columns(raw_conn, "lab_notes")
    row = raw_conn.execute("SELECT * FROM lab_notes WHERE id = 'n1'").fetchone()
    assert (row["slug"], row["title"], row["locale"]) == ("hello", "Hello", "en")
    assert row["content_html"] == "# Hi"

    view = raw_conn.execute("SELECT * FROM v_lab_notes WHERE id = 'n1'").fetchone()
    assert view["content_source"] == "legacy"
    assert view["content_body"] == "# Hi"


def test_duplicate_slug_locale_rows_are_deduped(raw_conn, caplog):
    raw_conn.execute("CREATE TABLE lab_notes (id TEXT PRIMARY KEY, slug TEXT, locale TEXT, title TEXT, updated_at TEXT)")
    raw_conn.executemany(
        "INSERT INTO lab_notes VALUES (?, ?, ?, ?, ?)",
        [
            ("old", "x", "en", "Old", "2024-01-01T00:00:00Z"),
            ("new", "x", "EN", "New", "2024-06-01T00:00:00Z"),
            ("other", "x", "ko", "Ko", "2024-01-01T00:00:00Z"),
        ],
    )

    with caplog.at_level(logging.WARNING, logger="labledger.migrate"):
        migrate(raw_conn)

    ids = {r["id"] for r in raw_conn.execute("SELECT id FROM lab_notes")}
    assert ids == {"new", "other"}
    assert any("duplicate" in r.getMessage() for r in caplog.records)


def test_slug_only_uniqueness_does_not_block_translations(raw_conn):
    raw_conn.execute("CREATE TABLE lab_notes (id TEXT PRIMARY KEY, slug TEXT UNIQUE, locale TEXT)")
    migrate(raw_conn)
    store = LedgerStore(raw_conn)

    _, created_en = store.upsert_note("x", "en", {"title": "X"})
    _, created_ko = store.upsert_note("x", "ko", {"title": "X (ko)"})

    assert created_en and created_ko


def test_status_check_constraint_on_rebuilt_table(conn):
    import sqlite3

    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("INSERT INTO lab_notes (id, slug, title, status) VALUES ('a', 'a', 'A', 'bogus')")


def test_failed_migration_rolls_back_everything(raw_conn):
    raw_conn.execute("CREATE TABLE lab_notes (id TEXT PRIMARY KEY, slug TEXT)")
    # a half-made revisions table from some earlier tool: indexes on it cannot be created
    raw_conn.execute("CREATE TABLE lab_note_revisions (id TEXT PRIMARY KEY)")

    with pytest.raises(MigrationError):
        migrate(raw_conn)

    assert table_columns(raw_conn, "lab_notes") == ["id", "slug"]
    assert not object_exists(raw_conn, "table", "schema_meta")
    assert get_schema_version(raw_conn) == 0
    assert raw_conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1


def test_newer_schema_is_not_downgraded(conn, caplog):
    conn.execute("UPDATE schema_meta SET value = ? WHERE key = 'lab_notes_schema_version'", (str(SCHEMA_VERSION + 1),))

    with caplog.at_level(logging.WARNING, logger="labledger.migrate"):
        result = migrate(conn)

    assert result.version == SCHEMA_VERSION + 1
    assert result.steps_applied == []
    assert get_schema_version(conn) == SCHEMA_VERSION + 1
    assert any("newer" in r.getMessage() for r in caplog.records)


def test_tag_table_backfilled_from_tags_json(raw_conn):
    raw_conn.execute("CREATE TABLE lab_notes (id TEXT PRIMARY KEY, slug TEXT, tags_json TEXT)")
    raw_conn.execute("""INSERT INTO lab_notes VALUES ('n1', 'a', '["ops", " launch ", ""]')""")
    raw_conn.execute("INSERT INTO lab_notes VALUES ('n2', 'b', 'not json')")

    migrate(raw_conn)

    tags = [(r["note_id"], r["tag"]) for r in raw_conn.execute("SELECT * FROM lab_note_tags ORDER BY tag")]
    assert tags == [("n1", "launch"), ("n1", "ops")]
