"""Lab note ledger: append-only, content-addressed revisions behind note pointers.

Layout:
    lab_notes            identity + display metadata + two pointers
                         (current_revision_id, published_revision_id)
    lab_note_revisions   immutable (frontmatter, body, hash, provenance) rows,
                         numbered 1..n per note, each superseding the last
    lab_events           audit log of every mutation
    v_lab_notes          effective content per note (published → current → latest → legacy)

A markdown tree (notes/<locale>/<slug>.md) is synced one way into the ledger;
edits made through the CLI or API are never overwritten by sync unless forced.
"""

from labledger.config import LedgerConfig, init_config, load_config
from labledger.service import LabNotesService, NoteInput
from labledger.store import LedgerStore

__all__ = ["LabNotesService", "LedgerConfig", "LedgerStore", "NoteInput", "init_config", "load_config"]
