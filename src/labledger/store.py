"""LedgerStore: notes (identity + pointers), append-only revisions, events.

Write path (write_revision), in one transaction:

    hash(frontmatter, body)
    == tip hash                → no new row
    == latest (unadvanced) hash → no new row, pointer adopts it
    otherwise                  → insert revision_num = max + 1, supersedes = latest
    advance current_revision_id; published_revision_id too when the note is
    (or becomes) published. Pointers only ever move to a higher revision_num.

Reads of "effective" content go through the v_lab_notes view (see migrate).
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from labledger.db import transaction
from labledger.errors import NotFoundError, ValidationError
from labledger.hashing import canonical_frontmatter, content_hash
from labledger.models import (
    NOTE_STATUSES,
    REVISION_SCHEMA_VERSION,
    SYSTEM_ACTOR,
    Actor,
    Event,
    Note,
    Provenance,
    Revision,
    WriteResult,
    new_id,
    normalize_locale,
    now_iso,
)

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterable, Mapping

logger = logging.getLogger("labledger.store")

# Display metadata that upsert_note may write. Everything else on lab_notes is
# identity, status or pointers and has its own code path.
META_COLUMNS = (
    "group_id", "type", "title", "subtitle", "summary", "excerpt", "category",
    "department_id", "dept", "card_style", "shadow_density", "coherence_score",
    "safer_landing", "read_time_minutes", "author", "ai_author", "published_at",
    "source_locale", "translation_status", "translation_provider", "translation_version",
    "source_updated_at", "translation_meta_json",
)
# NOT NULL columns: a None value means "leave as is", never "clear"
_KEEP_IF_NONE = frozenset({"group_id", "type", "title", "published_at", "translation_status", "translation_version"})


class LedgerStore:
    """All ledger reads and writes for one connection (single writer)."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def get_note(self, note_id: str) -> Note | None:
        row = self.conn.execute("SELECT * FROM lab_notes WHERE id = ?", (note_id,)).fetchone()
        return Note.from_row(row) if row else None

    def find_note(self, slug: str, locale: str) -> Note | None:
        row = self.conn.execute(
            "SELECT * FROM lab_notes WHERE slug = ? AND locale = ?",
            (slug, normalize_locale(locale)),
        ).fetchone()
        return Note.from_row(row) if row else None

    def require_note(self, slug: str, locale: str) -> Note:
        note = self.find_note(slug, locale)
        if note is None:
            raise NotFoundError(f"no note {slug!r} in locale {locale!r}")
        return note

    def list_notes(self, locale: str | None = None) -> list[Note]:
        if locale is None or locale == "all":
            rows = self.conn.execute("SELECT * FROM lab_notes ORDER BY locale, slug").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM lab_notes WHERE locale = ? ORDER BY slug", (normalize_locale(locale),)
            ).fetchall()
        return [Note.from_row(r) for r in rows]

    def tags_for(self, note_id: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT tag FROM lab_note_tags WHERE note_id = ? ORDER BY tag", (note_id,)
        ).fetchall()
        return [r["tag"] for r in rows]

    def upsert_note(
        self,
        slug: str,
        locale: str,
        fields: Mapping[str, Any],
        *,
        actor: Actor = SYSTEM_ACTOR,
        status: str | None = None,
    ) -> tuple[Note, bool]:
        """Create the (slug, locale) note or update its display metadata.

        Keys present in ``fields`` overwrite (None clears) except for NOT NULL
        columns and published_at, which are only written when a value is
        given. ``tags`` (a list) replaces the note's tags. ``status`` applies
        on creation only; use set_status() for existing notes.
        Returns (note, created).
        """
        slug = (slug or "").strip()
        if not slug:
            raise ValidationError("slug is required")
        locale = normalize_locale(locale)
        if status is not None and status not in NOTE_STATUSES:
            raise ValidationError(f"unknown status: {status!r}")
        unknown = set(fields) - set(META_COLUMNS) - {"tags"}
        if unknown:
            raise ValidationError(f"unknown note field(s): {', '.join(sorted(unknown))}")

        values = {k: v for k, v in fields.items() if k != "tags" and not (v is None and k in _KEEP_IF_NONE)}
        tags = fields.get("tags")

        with transaction(self.conn, "upsert note"):
            existing = self.find_note(slug, locale)
            if existing is None:
                title = (values.get("title") or "").strip()
                if not title:
                    raise ValidationError("title is required")
                note_id = new_id()
                now = now_iso()
                row = {
                    **values,
                    "id": note_id,
                    "group_id": values.get("group_id") or note_id,
                    "slug": slug,
                    "locale": locale,
                    "title": title,
                    "status": status or "draft",
                    "created_at": now,
                    "updated_at": now,
                }
                if row["status"] == "published" and not row.get("published_at"):
                    row["published_at"] = now
                if tags is not None:
                    row["tags_json"] = json.dumps(list(tags))
                cols = ", ".join(row)
                marks = ", ".join(f":{k}" for k in row)
                self.conn.execute(f"INSERT INTO lab_notes ({cols}) VALUES ({marks})", row)
                if tags is not None:
                    self._write_tags(note_id, tags)
                self.record_event(
                    "note.created", actor=actor, note_id=note_id,
                    payload={"slug": slug, "locale": locale, "status": row["status"]},
                )
                return self.get_note(note_id), True  # type: ignore[return-value]

            changes = {k: v for k, v in values.items() if getattr(existing, k) != v}
            if tags is not None and list(tags) != existing.tags:
                changes["tags_json"] = json.dumps(list(tags))
            if not changes:
                return existing, False

            assignments = ", ".join(f"{k} = :{k}" for k in changes)
            self.conn.execute(
                f"UPDATE lab_notes SET {assignments}, updated_at = :updated_at WHERE id = :id",
                {**changes, "updated_at": now_iso(), "id": existing.id},
            )
            if "tags_json" in changes:
                self._write_tags(existing.id, tags or [])
            self.record_event(
                "note.metadata_updated", actor=actor, note_id=existing.id,
                payload={"fields": sorted(changes)},
            )
            return self.get_note(existing.id), False  # type: ignore[return-value]

    def _write_tags(self, note_id: str, tags: Iterable[str]) -> None:
        self.conn.execute("DELETE FROM lab_note_tags WHERE note_id = ?", (note_id,))
        self.conn.executemany(
            "INSERT OR IGNORE INTO lab_note_tags (note_id, tag) VALUES (?, ?)",
            [(note_id, t.strip()) for t in tags if t and t.strip()],
        )

    def set_status(self, note: Note, status: str, *, actor: Actor = SYSTEM_ACTOR) -> Note:
        """Publish / unpublish / archive. Never clears a pointer."""
        if status not in NOTE_STATUSES:
            raise ValidationError(f"unknown status: {status!r}")
        actor.validate()
        with transaction(self.conn, "set status"):
            current = self.get_note(note.id)
            if current is None:
                raise NotFoundError(f"note {note.id} no longer exists")
            if current.status == status:
                return current
            self._apply_status(current, status, actor)
            tip = self.tip(current)
            if status == "published" and tip is not None:
                self._advance_pointers(self.get_note(note.id), tip, published=True, actor=actor)  # type: ignore[arg-type]
            return self.get_note(note.id)  # type: ignore[return-value]

    def _apply_status(self, note: Note, status: str, actor: Actor) -> None:
        now = now_iso()
        self.conn.execute(
            "UPDATE lab_notes SET status = ?, "
            "published_at = CASE WHEN ? = 'published' THEN COALESCE(NULLIF(published_at, ''), ?) "
            "ELSE published_at END, updated_at = ? WHERE id = ?",
            (status, status, now, now, note.id),
        )
        self.record_event(
            "note.status_changed", actor=actor, note_id=note.id,
            payload={"from": note.status, "to": status},
        )

    # ------------------------------------------------------------------
    # Revisions
    # ------------------------------------------------------------------

    def get_revision(self, revision_id: str | None) -> Revision | None:
        if not revision_id:
            return None
        row = self.conn.execute(
            "SELECT * FROM lab_note_revisions WHERE id = ?", (revision_id,)
        ).fetchone()
        return Revision.from_row(row) if row else None

    def latest_revision(self, note_id: str) -> Revision | None:
        row = self.conn.execute(
            "SELECT * FROM lab_note_revisions WHERE note_id = ? ORDER BY revision_num DESC LIMIT 1",
            (note_id,),
        ).fetchone()
        return Revision.from_row(row) if row else None

    def list_revisions(self, note_id: str) -> list[Revision]:
        rows = self.conn.execute(
            "SELECT * FROM lab_note_revisions WHERE note_id = ? ORDER BY revision_num", (note_id,)
        ).fetchall()
        return [Revision.from_row(r) for r in rows]

    def tip(self, note: Note) -> Revision | None:
        """The revision current_revision_id points at, if it exists and is the note's."""
        rev = self.get_revision(note.current_revision_id)
        return rev if rev is not None and rev.note_id == note.id else None

    def write_revision(
        self,
        note: Note,
        frontmatter: Mapping[str, Any],
        body: str,
        *,
        provenance: Provenance,
        actor: Actor = SYSTEM_ACTOR,
        publish: bool = False,
        advance: bool = True,
    ) -> WriteResult:
        """Append a revision (unless it would duplicate) and move the pointers.

        ``advance=False`` records the revision without touching pointers
        (provenance-protected sync). ``publish=True`` publishes the note in
        the same transaction.
        """
        provenance.validate()
        actor.validate()
        digest = content_hash(frontmatter, body)

        with transaction(self.conn, "write revision"):
            current = self.get_note(note.id)
            if current is None:
                raise NotFoundError(f"note {note.id} no longer exists")

            if publish and not current.is_published:
                self._apply_status(current, "published", actor)
                current = self.get_note(note.id)  # type: ignore[assignment]

            tip = self.tip(current)  # type: ignore[arg-type]
            latest = self.latest_revision(current.id)  # type: ignore[union-attr]

            created = False
            if tip is not None and tip.content_hash == digest:
                revision = tip
            elif latest is not None and latest.content_hash == digest:
                revision = latest
            else:
                revision = self._insert_revision(current, frontmatter, body, digest, latest, provenance)  # type: ignore[arg-type]
                created = True
                self.record_event(
                    "revision.created", actor=actor, note_id=current.id,  # type: ignore[union-attr]
                    revision_id=revision.id, intent=provenance.intent,
                    intent_version=provenance.intent_version,
                    payload={"revision_num": revision.revision_num, "source": provenance.source},
                )

            advanced = False
            if advance:
                advanced = self._advance_pointers(
                    current, revision, published=current.is_published, actor=actor,  # type: ignore[arg-type, union-attr]
                )

        return WriteResult(
            note_id=note.id,
            revision_id=revision.id,
            revision_num=revision.revision_num,
            noop=not created,
            pointer_advanced=advanced,
        )

    def _insert_revision(
        self,
        note: Note,
        frontmatter: Mapping[str, Any],
        body: str,
        digest: str,
        latest: Revision | None,
        provenance: Provenance,
    ) -> Revision:
        rev_id = new_id()
        self.conn.execute(
            """
            INSERT INTO lab_note_revisions (
                id, note_id, revision_num, supersedes_revision_id,
                frontmatter_json, content_body, content_hash,
                schema_version, source, intent, intent_version,
                scope_json, side_effects_json, reversible,
                auth_type, scopes_json, reasoning_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rev_id, note.id,
                (latest.revision_num if latest else 0) + 1,
                latest.id if latest else None,
                canonical_frontmatter(frontmatter), body, digest,
                REVISION_SCHEMA_VERSION, provenance.source, provenance.intent, provenance.intent_version,
                json.dumps(provenance.scope), json.dumps(provenance.side_effects), int(provenance.reversible),
                provenance.auth_type, json.dumps(provenance.scopes),
                json.dumps(provenance.reasoning) if provenance.reasoning is not None else None,
                now_iso(),
            ),
        )
        return self.get_revision(rev_id)  # type: ignore[return-value]

    def advance_to(self, note: Note, revision: Revision, *, actor: Actor = SYSTEM_ACTOR) -> bool:
        """Point ``note`` at an already recorded revision of its own."""
        if revision.note_id != note.id:
            raise ValidationError(f"revision {revision.id} does not belong to note {note.id}")
        with transaction(self.conn, "advance pointers"):
            current = self.get_note(note.id)
            if current is None:
                raise NotFoundError(f"note {note.id} no longer exists")
            return self._advance_pointers(current, revision, published=current.is_published, actor=actor)

    def _advance_pointers(self, note: Note, revision: Revision, *, published: bool, actor: Actor) -> bool:
        """Move current (and, if ``published``, published) forward to ``revision``."""
        changes: dict[str, str] = {}
        cur = self.tip(note)
        if cur is None or (cur.id != revision.id and cur.revision_num < revision.revision_num):
            changes["current_revision_id"] = revision.id
        if published:
            pub = self.get_revision(note.published_revision_id)
            if pub is None or pub.note_id != note.id or pub.revision_num < revision.revision_num:
                changes["published_revision_id"] = revision.id
        if not changes:
            return False

        assignments = ", ".join(f"{k} = :{k}" for k in changes)
        self.conn.execute(
            f"UPDATE lab_notes SET {assignments}, updated_at = :updated_at WHERE id = :id",
            {**changes, "updated_at": now_iso(), "id": note.id},
        )
        self.record_event(
            "pointer.advanced", actor=actor, note_id=note.id, revision_id=revision.id,
            payload={
                k: {"from": getattr(note, k), "to": v} for k, v in changes.items()
            },
        )
        return True

    def repair_pointers(self, note_id: str | None = None) -> list[str]:
        """Point null/dangling pointers at each note's highest revision.

        current_revision_id is always repaired; a null published_revision_id
        is only filled for published notes. Content is never touched, so
        this is safe on every startup. Returns the repaired note ids.
        """
        sql = """
            SELECT
                n.id, n.status, n.current_revision_id, n.published_revision_id,
                (SELECT r.id FROM lab_note_revisions r WHERE r.note_id = n.id
                 ORDER BY r.revision_num DESC LIMIT 1) AS latest_id,
                EXISTS (SELECT 1 FROM lab_note_revisions r
                        WHERE r.id = n.current_revision_id AND r.note_id = n.id) AS cur_ok,
                EXISTS (SELECT 1 FROM lab_note_revisions r
                        WHERE r.id = n.published_revision_id AND r.note_id = n.id) AS pub_ok
            FROM lab_notes n
        """
        params: tuple[str, ...] = ()
        if note_id is not None:
            sql += " WHERE n.id = ?"
            params = (note_id,)

        repaired: list[str] = []
        with transaction(self.conn, "repair pointers"):
            for row in self.conn.execute(sql, params).fetchall():
                latest_id = row["latest_id"]
                if latest_id is None:
                    continue
                changes: dict[str, str] = {}
                if not row["cur_ok"]:
                    changes["current_revision_id"] = latest_id
                dangling_pub = row["published_revision_id"] is not None and not row["pub_ok"]
                if dangling_pub or (row["status"] == "published" and row["published_revision_id"] is None):
                    changes["published_revision_id"] = latest_id
                if not changes:
                    continue
                assignments = ", ".join(f"{k} = :{k}" for k in changes)
                self.conn.execute(
                    f"UPDATE lab_notes SET {assignments} WHERE id = :id", {**changes, "id": row["id"]}
                )
                self.record_event(
                    "pointer.repaired", actor=SYSTEM_ACTOR, note_id=row["id"], revision_id=latest_id,
                    payload={k: {"from": row[k], "to": v} for k, v in changes.items()},
                )
                repaired.append(row["id"])
        if repaired:
            logger.info("repaired pointers on %d note(s)", len(repaired))
        return repaired

    def verify_chain(self, note_id: str) -> list[str]:
        """Check numbering, supersession links, hashes and pointers. [] means intact."""
        problems: list[str] = []
        prev: Revision | None = None
        for rev in self.list_revisions(note_id):
            expected_num = (prev.revision_num if prev else 0) + 1
            if rev.revision_num != expected_num:
                problems.append(f"r{rev.revision_num}: expected revision_num {expected_num}")
            expected_prev = prev.id if prev else None
            if rev.supersedes_revision_id != expected_prev:
                problems.append(f"r{rev.revision_num}: supersedes {rev.supersedes_revision_id}, expected {expected_prev}")
            if content_hash(rev.frontmatter, rev.content_body) != rev.content_hash:
                problems.append(f"r{rev.revision_num}: content_hash mismatch")
            if prev is not None and prev.content_hash == rev.content_hash:
                problems.append(f"r{rev.revision_num}: duplicates r{prev.revision_num}")
            prev = rev

        note = self.get_note(note_id)
        if note is not None and prev is not None:
            if self.tip(note) is None:
                problems.append("current_revision_id is null or dangling")
            if note.published_revision_id and self.get_revision(note.published_revision_id) is None:
                problems.append("published_revision_id is dangling")
        return problems

    # ------------------------------------------------------------------
    # Effective content (v_lab_notes)
    # ------------------------------------------------------------------

    def effective(self, slug: str, locale: str, *, statuses: Iterable[str] | None = None) -> sqlite3.Row | None:
        sql = "SELECT * FROM v_lab_notes WHERE slug = ? AND locale = ?"
        params: list[Any] = [slug, normalize_locale(locale)]
        if statuses is not None:
            wanted = list(statuses)
            sql += f" AND status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        return self.conn.execute(sql + " LIMIT 1", params).fetchone()

    def list_effective(
        self, locale: str | None = None, *, statuses: Iterable[str] = ("published",)
    ) -> list[sqlite3.Row]:
        wanted = list(statuses)
        sql = f"SELECT * FROM v_lab_notes WHERE status IN ({', '.join('?' for _ in wanted)})"
        params: list[Any] = list(wanted)
        if locale is not None and locale != "all":
            sql += " AND locale = ?"
            params.append(normalize_locale(locale))
        sql += " ORDER BY COALESCE(published_at, '') DESC, updated_at DESC"
        return self.conn.execute(sql, params).fetchall()

    def stats(self) -> dict[str, Any]:
        """Counts for the CLI overview."""
        def count(sql: str) -> int:
            return self.conn.execute(sql).fetchone()[0]

        notes = self.conn.execute(
            "SELECT locale, status, COUNT(*) AS n FROM lab_notes GROUP BY locale, status ORDER BY locale, status"
        ).fetchall()
        return {
            "notes": {f"{r['locale']}/{r['status']}": r["n"] for r in notes},
            "revisions": count("SELECT COUNT(*) FROM lab_note_revisions"),
            "content_pending": count("SELECT COUNT(*) FROM v_lab_notes WHERE content_source IS NULL"),
            "legacy_only": count("SELECT COUNT(*) FROM v_lab_notes WHERE content_source = 'legacy'"),
            "pending_proposals": count("SELECT COUNT(*) FROM lab_note_proposals WHERE status = 'pending'"),
            "events": count("SELECT COUNT(*) FROM lab_events"),
        }

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def record_event(
        self,
        event_type: str,
        *,
        actor: Actor = SYSTEM_ACTOR,
        note_id: str | None = None,
        revision_id: str | None = None,
        proposal_id: str | None = None,
        intent: str | None = None,
        intent_version: str | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> str:
        event_id = new_id()
        self.conn.execute(
            """
            INSERT INTO lab_events (
                id, event_type, note_id, revision_id, proposal_id,
                intent, intent_version, actor_type, actor_id,
                auth_type, scopes_json, payload_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event_id, event_type, note_id, revision_id, proposal_id,
                intent, intent_version, actor.actor_type, actor.actor_id,
                actor.auth_type, json.dumps(list(actor.scopes)),
                json.dumps(dict(payload or {}), default=str), now_iso(),
            ),
        )
        return event_id

    def list_events(self, note_id: str | None = None, *, limit: int = 100) -> list[Event]:
        if note_id is None:
            rows = self.conn.execute(
                "SELECT * FROM lab_events ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM lab_events WHERE note_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (note_id, limit),
            ).fetchall()
        return [Event.from_row(r) for r in rows]
