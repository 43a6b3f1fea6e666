"""LabNotesService: the read/write surface used by the CLI (and any HTTP layer).

Reads go through v_lab_notes, so callers never see pointer mechanics:

    svc.list_notes("en")                     → [NotePreview]  published only
    svc.get_note("launch-notes", "ko")       → NoteDetail | None
    svc.save_note(NoteInput(...), actor=a)   → WriteResult
    svc.export_note("launch-notes")          → markdown with YAML frontmatter
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from typing import TYPE_CHECKING, Any

from labledger import frontmatter
from labledger.db import transaction
from labledger.errors import ConfigError, NotFoundError, ValidationError
from labledger.models import (
    DEFAULT_LOCALE,
    NOTE_TYPES,
    REVISION_SOURCES,
    Actor,
    Frontmatter,
    Provenance,
    _json_list,
    normalize_locale,
)
from labledger.sync import Synchronizer

if TYPE_CHECKING:
    import sqlite3

    from labledger.config import SyncConfig
    from labledger.models import Note, Revision, WriteResult
    from labledger.store import LedgerStore
    from labledger.sync import SyncResult

logger = logging.getLogger("labledger.service")

CONTENT_PENDING = "Content pending migration."
DEFAULT_DEPARTMENT = "SCMS"
DEFAULT_READING_TIME = 5


@dataclass
class NotePreview:
    """List-card shape. No body."""

    id: str
    slug: str
    locale: str
    title: str
    status: str
    type: str
    subtitle: str | None = None
    summary: str = ""
    published: str = ""
    department_id: str = DEFAULT_DEPARTMENT
    dept: str | None = None
    shadow_density: float = 0.0
    safer_landing: bool = False
    tags: list[str] = field(default_factory=list)
    reading_time: int = DEFAULT_READING_TIME
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row, tags: list[str]) -> NotePreview:
        return cls(
            id=row["slug"],
            slug=row["slug"],
            locale=row["locale"],
            title=row["title"],
            status=row["status"],
            type=row["type"] or "labnote",
            subtitle=row["subtitle"],
            summary=row["summary"] or row["excerpt"] or "",
            published=row["published_at"] or "",
            department_id=row["department_id"] or DEFAULT_DEPARTMENT,
            dept=row["dept"],
            shadow_density=float(row["shadow_density"] or 0),
            safer_landing=bool(row["safer_landing"]),
            tags=tags or _json_list(row["tags_json"]),
            reading_time=int(row["read_time_minutes"] or DEFAULT_READING_TIME),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class NoteDetail(NotePreview):
    """Preview plus the effective body and where it came from."""

    content: str = CONTENT_PENDING
    content_source: str | None = None       # published | current | latest | legacy | None
    revision_id: str | None = None
    revision_num: int | None = None

    @property
    def content_pending(self) -> bool:
        return self.content_source is None

    @classmethod
    def from_row(cls, row: sqlite3.Row, tags: list[str]) -> NoteDetail:
        preview = NotePreview.from_row(row, tags)
        body = row["content_body"]
        return cls(
            **asdict(preview),
            content=body if body and body.strip() else CONTENT_PENDING,
            content_source=row["content_source"],
            revision_id=row["effective_revision_id"],
            revision_num=row["effective_revision_num"],
        )


@dataclass
class NoteInput:
    """An authored write: identity, display metadata, and the body."""

    slug: str
    title: str
    body: str
    locale: str = DEFAULT_LOCALE
    type: str = "labnote"
    subtitle: str | None = None
    summary: str | None = None
    excerpt: str | None = None
    category: str | None = None
    department_id: str | None = None
    dept: str | None = None
    card_style: str | None = None
    author: str | None = None
    ai_author: str | None = None
    group_id: str | None = None
    tags: list[str] = field(default_factory=list)
    shadow_density: float | None = None
    coherence_score: float | None = None
    safer_landing: bool | None = None
    read_time_minutes: int | None = None
    published_at: str | None = None

    def validate(self) -> None:
        if not (self.slug or "").strip():
            raise ValidationError("slug is required")
        if ":" in self.slug:
            raise ValidationError("slug must not contain ':'")
        if not (self.title or "").strip():
            raise ValidationError("title is required")
        if not (self.body or "").strip():
            raise ValidationError("body is required")
        if self.type not in NOTE_TYPES:
            raise ValidationError(f"unknown note type: {self.type!r}")

    def frontmatter(self) -> Frontmatter:
        data = {k: v for k, v in asdict(self).items() if k != "body"}
        data["slug"] = self.slug.strip()
        data["title"] = self.title.strip()
        data["locale"] = normalize_locale(self.locale)
        return Frontmatter.from_mapping(data)


class LabNotesService:
    def __init__(self, store: LedgerStore, sync_config: SyncConfig | None = None) -> None:
        self.store = store
        self.sync_config = sync_config

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_notes(self, locale: str = DEFAULT_LOCALE, *, include_drafts: bool = False) -> list[NotePreview]:
        """Published notes for a locale ("all" for every locale). Archived are never listed."""
        statuses = ("published", "draft") if include_drafts else ("published",)
        rows = self.store.list_effective(normalize_locale(locale), statuses=statuses)
        return [NotePreview.from_row(r, self.store.tags_for(r["id"])) for r in rows]

    def get_note(
        self, slug: str, locale: str = DEFAULT_LOCALE, *, include_drafts: bool = False
    ) -> NoteDetail | None:
        """Resolve by (slug, locale), falling back to legacy "slug:locale" slugs."""
        slug = (slug or "").strip()
        if not slug:
            raise ValidationError("slug is required")
        locale = normalize_locale(locale)
        if locale == "all":
            raise ValidationError("a single note needs a concrete locale")
        statuses = ("published", "draft") if include_drafts else ("published",)

        candidates = [(slug, locale), (f"{slug}:{locale}", locale)]
        if ":" in slug:
            base, _, maybe_locale = slug.partition(":")
            inferred = normalize_locale(maybe_locale, locale)
            if inferred == "all":
                inferred = locale
            candidates += [(base, inferred), (f"{base}:{inferred}", inferred)]

        for cand_slug, cand_locale in candidates:
            row = self.store.effective(cand_slug, cand_locale, statuses=statuses)
            if row is not None:
                return NoteDetail.from_row(row, self.store.tags_for(row["id"]))
        return None

    def history(self, slug: str, locale: str = DEFAULT_LOCALE) -> list[Revision]:
        note = self.store.require_note(slug, locale)
        return self.store.list_revisions(note.id)

    def export_note(
        self, slug: str, locale: str = DEFAULT_LOCALE, *, revision_num: int | None = None
    ) -> str:
        """A revision as a markdown file that sync would read back unchanged.

        Defaults to the tip, or the latest revision when no pointer is set.
        """
        note = self.store.require_note(slug, normalize_locale(locale))
        if revision_num is not None:
            rev = next(
                (r for r in self.store.list_revisions(note.id) if r.revision_num == revision_num), None,
            )
        else:
            rev = self.store.tip(note) or self.store.latest_revision(note.id)
        if rev is None:
            wanted = f"r{revision_num}" if revision_num is not None else "revision"
            raise NotFoundError(f"{note.locale}/{note.slug} has no {wanted}")
        fm = Frontmatter.from_mapping(rev.frontmatter)
        return frontmatter.render(fm, rev.content_body + "\n")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save_note(
        self,
        data: NoteInput,
        *,
        actor: Actor,
        source: str = "web",
        publish: bool = False,
        intent: str = "note.save",
    ) -> WriteResult:
        """Authored write: metadata upsert + revision + pointer advance, atomically."""
        data.validate()
        actor.validate()
        if source not in REVISION_SOURCES:
            raise ValidationError(f"unknown revision source: {source!r}")

        fm = data.frontmatter()
        provenance = Provenance(
            source=source,
            intent=intent,
            auth_type=actor.auth_type or "human_session",
            scopes=list(actor.scopes),
        )
        provenance.validate()

        with transaction(self.store.conn, "save note"):
            note, created = self.store.upsert_note(
                fm.slug, fm.locale, fm.note_fields(), actor=actor,  # type: ignore[arg-type]
            )
            result = self.store.write_revision(
                note, fm.to_dict(), data.body.strip(),
                provenance=provenance, actor=actor, publish=publish,
            )
        logger.info(
            "saved %s/%s r%s (noop=%s) by %s:%s",
            note.locale, note.slug, result.revision_num, result.noop, actor.actor_type, actor.actor_id,
        )
        return replace(result, created_note=created)

    def set_status(self, slug: str, locale: str, status: str, *, actor: Actor) -> Note:
        note = self.store.require_note(slug, locale)
        return self.store.set_status(note, status, actor=actor)

    def run_sync(self, *, force: bool = False) -> SyncResult:
        if self.sync_config is None:
            raise ConfigError("sync is not configured for this service")
        return Synchronizer(self.store, self.sync_config).run(force=force)

