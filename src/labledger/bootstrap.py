"""Startup: open the ledger, migrate, repair pointers, seed the marker note.

Every process entry point (CLI command, watcher) goes through open_ledger(),
so a database is never served at an older schema. MigrationError propagates.

The marker note (api-marker-note / en) is a published note with a known body
that health checks can read back through the full read path.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from labledger.db import get_conn, transaction
from labledger.migrate import migrate
from labledger.models import SYSTEM_ACTOR, Provenance
from labledger.store import LedgerStore

if TYPE_CHECKING:
    from labledger.config import LedgerConfig

logger = logging.getLogger("labledger.bootstrap")

MARKER_SLUG = "api-marker-note"
MARKER_LOCALE = "en"
MARKER_TITLE = "API Marker Note"
MARKER_BODY = (
    "# API Marker Note\n\n"
    "This note exists to confirm the lab notes ledger and read path are alive."
)


def open_ledger(cfg: LedgerConfig) -> LedgerStore:
    """Connect, migrate (fail fast) and repair dangling pointers."""
    conn = get_conn(cfg)
    try:
        migrate(conn)
        store = LedgerStore(conn)
        store.repair_pointers()
    except Exception:
        conn.close()
        raise
    return store


def seed_marker_note(store: LedgerStore) -> str:
    """Ensure the marker note exists, is published and has content.

    Returns "seeded", "repaired" or "noop". Safe on every start.
    """
    with transaction(store.conn, "seed marker note"):
        note, created = store.upsert_note(
            MARKER_SLUG, MARKER_LOCALE, {"type": "memo", "title": MARKER_TITLE},
            actor=SYSTEM_ACTOR, status="published",
        )
        if store.latest_revision(note.id) is None:
            store.write_revision(
                note,
                {"slug": MARKER_SLUG, "locale": MARKER_LOCALE, "title": MARKER_TITLE, "type": "memo"},
                MARKER_BODY,
                provenance=Provenance(
                    source="import", intent="seed_marker_note",
                    scope=["bootstrap"], side_effects=["create"],
                ),
                actor=SYSTEM_ACTOR,
                publish=True,
            )
            outcome = "seeded"
        elif not note.is_published or store.tip(note) is None:
            store.set_status(note, "published", actor=SYSTEM_ACTOR)
            store.repair_pointers(note.id)
            outcome = "repaired"
        else:
            outcome = "noop"

    if outcome != "noop":
        logger.info("marker note %s/%s: %s%s", MARKER_LOCALE, MARKER_SLUG, outcome, " (created)" if created else "")
    return outcome
