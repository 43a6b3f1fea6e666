"""Data models for the note ledger."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, fields
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any

from labledger.errors import ParseError, ValidationError
from labledger.hashing import canonical_frontmatter

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Mapping

NOTE_STATUSES = ("draft", "published", "archived")
NOTE_TYPES = ("labnote", "paper", "memo")
REVISION_SOURCES = ("cli", "web", "api", "import")
AUTH_TYPES = ("human_session", "api_token")
ACTOR_TYPES = ("human", "ai", "system")
PROPOSAL_STATUSES = ("pending", "accepted", "rejected", "withdrawn")

DEFAULT_LOCALE = "en"
_SQLITE_INT_MIN, _SQLITE_INT_MAX = -(2**63), 2**63 - 1
REVISION_SCHEMA_VERSION = "v1"


def new_id() -> str:
    return uuid.uuid4().hex


def now_iso() -> str:
    """UTC timestamp with millisecond precision, e.g. 2025-01-02T03:04:05.678Z."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def normalize_locale(value: object, default: str = DEFAULT_LOCALE) -> str:
    """en-US / en_us / EN → en. Empty input → default. "all" passes through."""
    raw = str(value if value is not None else "").strip().lower()
    if not raw:
        return default
    if raw == "all":
        return raw
    primary = raw.replace("_", "-").split("-")[0]
    return primary[:2] if len(primary) >= 2 else default


def _json_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    return [x for x in value if isinstance(x, str)] if isinstance(value, list) else []


def _json_obj(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


# ---------------------------------------------------------------------------
# Frontmatter
# ---------------------------------------------------------------------------

_STR_FIELDS = (
    "slug", "title", "locale", "group_id", "type", "status", "subtitle", "summary",
    "excerpt", "category", "department_id", "dept", "card_style", "author", "ai_author",
)


@dataclass
class Frontmatter:
    """Known frontmatter keys, typed. Anything else is kept verbatim in ``extra``."""

    slug: str | None = None
    title: str | None = None
    locale: str | None = None
    group_id: str | None = None
    type: str | None = None
    status: str | None = None
    subtitle: str | None = None
    summary: str | None = None
    excerpt: str | None = None
    category: str | None = None
    department_id: str | None = None
    dept: str | None = None
    card_style: str | None = None
    author: str | None = None
    ai_author: str | None = None
    tags: list[str] = field(default_factory=list)
    shadow_density: float | None = None
    coherence_score: float | None = None
    safer_landing: bool | None = None
    read_time_minutes: int | None = None
    published_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None, path: object = None) -> Frontmatter:
        """Coerce a parsed YAML mapping. Raises ParseError on ill-typed known keys."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ParseError(f"frontmatter must be a mapping, got {type(data).__name__}", path)

        known = {f.name for f in fields(cls)} - {"extra"}
        fm = cls(extra={str(k): v for k, v in data.items() if k not in known})

        for key in _STR_FIELDS:
            value = data.get(key)
            if value is None:
                continue
            if isinstance(value, (dict, list)):
                raise ParseError(f"frontmatter '{key}' must be a scalar", path)
            setattr(fm, key, str(value).strip())

        tags = data.get("tags")
        if isinstance(tags, str):
            fm.tags = [t.strip() for t in tags.split(",") if t.strip()]
        elif isinstance(tags, list):
            fm.tags = [str(t).strip() for t in tags if str(t).strip()]
        elif tags is not None:
            raise ParseError("frontmatter 'tags' must be a list or comma-separated string", path)

        for key, conv in (("shadow_density", float), ("coherence_score", float), ("read_time_minutes", int)):
            value = data.get(key)
            if value is None or value == "":
                continue
            try:
                number = conv(value)
            except (TypeError, ValueError, OverflowError) as exc:
                raise ParseError(f"frontmatter '{key}' is not a number: {value!r}", path) from exc
            if conv is int and not _SQLITE_INT_MIN <= number <= _SQLITE_INT_MAX:
                raise ParseError(f"frontmatter '{key}' is out of range: {value!r}", path)
            setattr(fm, key, number)

        landing = data.get("safer_landing")
        if landing is not None:
            if isinstance(landing, str):
                fm.safer_landing = landing.strip().lower() in ("1", "true", "yes", "on")
            else:
                fm.safer_landing = bool(landing)

        published = data.get("published_at")
        if isinstance(published, (datetime, date)):
            fm.published_at = published.isoformat()
        elif published:
            fm.published_at = str(published).strip()

        # the snapshot is hashed as canonical JSON; nested keys must sort
        try:
            canonical_frontmatter(fm.to_dict())
        except (TypeError, ValueError) as exc:
            raise ParseError(f"frontmatter cannot be serialized: {exc}", path) from exc
        return fm

    def to_dict(self) -> dict[str, Any]:
        """Snapshot stored on the revision (and hashed). Unset keys are omitted."""
        out: dict[str, Any] = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is None or (f.name == "tags" and not value):
                continue
            out[f.name] = list(value) if f.name == "tags" else value
        return out

    def note_fields(self) -> dict[str, Any]:
        """Display metadata for the lab_notes row."""
        return {
            "group_id": self.group_id,
            "type": self.type,
            "title": self.title,
            "subtitle": self.subtitle,
            "summary": self.summary,
            "excerpt": self.excerpt,
            "category": self.category,
            "department_id": self.department_id,
            "dept": self.dept,
            "card_style": self.card_style,
            "author": self.author,
            "ai_author": self.ai_author,
            "shadow_density": self.shadow_density,
            "coherence_score": self.coherence_score,
            "safer_landing": None if self.safer_landing is None else int(self.safer_landing),
            "read_time_minutes": self.read_time_minutes,
            "tags": list(self.tags),
            "published_at": self.published_at,
        }


# ---------------------------------------------------------------------------
# Provenance / actor
# ---------------------------------------------------------------------------

@dataclass
class Actor:
    """Who is acting. Supplied by the (external) auth layer."""

    actor_type: str = "human"          # human | ai | system
    actor_id: str = "anonymous"
    auth_type: str | None = "human_session"
    scopes: tuple[str, ...] = ()

    def validate(self) -> None:
        if self.actor_type not in ACTOR_TYPES:
            raise ValidationError(f"unknown actor_type: {self.actor_type!r}")
        if self.auth_type is not None and self.auth_type not in AUTH_TYPES:
            raise ValidationError(f"unknown auth_type: {self.auth_type!r}")


SYSTEM_ACTOR = Actor(actor_type="system", actor_id="labledger", auth_type=None)


@dataclass
class Provenance:
    """How a revision came to be."""

    source: str                        # cli | web | api | import
    intent: str
    auth_type: str = "human_session"
    intent_version: str = "1"
    scope: list[str] = field(default_factory=list)
    side_effects: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)
    reversible: bool = True
    reasoning: dict[str, Any] | None = None

    def validate(self) -> None:
        if self.source not in REVISION_SOURCES:
            raise ValidationError(f"unknown revision source: {self.source!r}")
        if self.auth_type not in AUTH_TYPES:
            raise ValidationError(f"unknown auth_type: {self.auth_type!r}")
        if not self.intent:
            raise ValidationError("revision intent is required")


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

@dataclass
class Note:
    """A lab_notes row: identity, pointers, display metadata."""

    id: str
    slug: str
    locale: str
    group_id: str = ""
    type: str = "labnote"
    title: str = ""
    status: str = "draft"
    subtitle: str | None = None
    summary: str | None = None
    excerpt: str | None = None
    category: str | None = None
    department_id: str | None = None
    dept: str | None = None
    card_style: str | None = None
    shadow_density: float | None = None
    coherence_score: float | None = None
    safer_landing: int | None = None
    read_time_minutes: int | None = None
    tags_json: str | None = None
    author: str | None = None
    ai_author: str | None = None
    published_at: str | None = None
    source_locale: str | None = None
    translation_status: str = "original"
    translation_provider: str | None = None
    translation_version: int = 1
    source_updated_at: str | None = None
    translation_meta_json: str | None = None
    content_html: str | None = None
    current_revision_id: str | None = None
    published_revision_id: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Note:
        keys = set(row.keys())
        return cls(**{f.name: row[f.name] for f in fields(cls) if f.name in keys})

    @property
    def tags(self) -> list[str]:
        return _json_list(self.tags_json)

    @property
    def is_published(self) -> bool:
        return self.status == "published"


@dataclass
class Revision:
    """An immutable lab_note_revisions row."""

    id: str
    note_id: str
    revision_num: int
    content_body: str
    content_hash: str
    source: str
    intent: str
    auth_type: str
    supersedes_revision_id: str | None = None
    frontmatter_json: str = "{}"
    schema_version: str = REVISION_SCHEMA_VERSION
    intent_version: str = "1"
    scope_json: str = "[]"
    side_effects_json: str = "[]"
    scopes_json: str = "[]"
    reversible: int = 1
    reasoning_json: str | None = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Revision:
        keys = set(row.keys())
        return cls(**{f.name: row[f.name] for f in fields(cls) if f.name in keys})

    @property
    def frontmatter(self) -> dict[str, Any]:
        value = _json_obj(self.frontmatter_json)
        return value if isinstance(value, dict) else {}

    def to_dict(self, *, include_body: bool = True) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "note_id": self.note_id,
            "revision_num": self.revision_num,
            "supersedes_revision_id": self.supersedes_revision_id,
            "content_hash": self.content_hash,
            "source": self.source,
            "intent": self.intent,
            "auth_type": self.auth_type,
            "reversible": bool(self.reversible),
            "created_at": self.created_at,
        }
        if include_body:
            d["frontmatter"] = self.frontmatter
            d["content_body"] = self.content_body
        return d


@dataclass
class Event:
    id: str
    event_type: str
    actor_type: str
    actor_id: str
    note_id: str | None = None
    revision_id: str | None = None
    proposal_id: str | None = None
    intent: str | None = None
    intent_version: str | None = None
    auth_type: str | None = None
    scopes_json: str | None = None
    payload_json: str = "{}"
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Event:
        keys = set(row.keys())
        return cls(**{f.name: row[f.name] for f in fields(cls) if f.name in keys})

    @property
    def payload(self) -> dict[str, Any]:
        value = _json_obj(self.payload_json)
        return value if isinstance(value, dict) else {}


@dataclass
class Proposal:
    id: str
    note_id: str
    base_revision_id: str
    proposed_revision_id: str
    created_by: str
    created_by_type: str
    status: str = "pending"
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    review_comment: str | None = None
    diff_patch: str | None = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Proposal:
        keys = set(row.keys())
        return cls(**{f.name: row[f.name] for f in fields(cls) if f.name in keys})


@dataclass
class WriteResult:
    """Outcome of a write-path call."""

    note_id: str
    revision_id: str | None
    revision_num: int | None
    noop: bool = False
    pointer_advanced: bool = False
    created_note: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "note_id": self.note_id,
            "revision_id": self.revision_id,
            "revision_num": self.revision_num,
            "noop": self.noop,
            "pointer_advanced": self.pointer_advanced,
            "created_note": self.created_note,
        }
