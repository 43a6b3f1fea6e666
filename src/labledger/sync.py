"""Markdown tree → ledger sync (one-way, guarded).

Layout under the sync root:

    notes/en/launch-notes.md     # locale = first-level directory
    notes/ko/launch-notes.md
    notes/launch-notes.md        # only when there are no locale dirs: default_locale

Per file:
    parse frontmatter + body            ParseError → errors[], batch continues
    upsert note metadata                disk wins; published_at only if given;
                                        status only when the note is created
    empty body                          → empty_body_skipped (metadata only)
    hash == latest revision             → unchanged
    tip authored outside sync, !force   → revision recorded, pointer kept
                                          (pointers_protected)
    otherwise                           → revision + pointer advance

The whole batch is one transaction and each file runs in its own savepoint:
a rejected file leaves nothing behind, a storage failure rolls back every file.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from labledger import frontmatter
from labledger.db import transaction
from labledger.errors import ParseError, ValidationError
from labledger.hashing import content_hash
from labledger.models import NOTE_STATUSES, SYSTEM_ACTOR, Provenance, normalize_locale

if TYPE_CHECKING:
    from labledger.config import SyncConfig
    from labledger.models import Frontmatter
    from labledger.store import LedgerStore

logger = logging.getLogger("labledger.sync")

SYNC_SOURCE = "import"


@dataclass
class SyncResult:
    root: str
    locales: list[str] = field(default_factory=list)
    scanned: int = 0
    upserted: int = 0
    revisions_inserted: int = 0
    pointers_advanced: int = 0
    pointers_protected: int = 0
    empty_body_skipped: int = 0
    unchanged: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def counters(self) -> dict[str, int]:
        return {k: v for k, v in asdict(self).items() if isinstance(v, int)}


# ---------------------------------------------------------------------------
# File discovery
# ---------------------------------------------------------------------------

def _visible(path: Path) -> bool:
    return not path.name.startswith((".", "_"))


def _matching_files(directory: Path, extensions: list[str]) -> list[Path]:
    wanted = {e.lower() for e in extensions}
    files = [
        p for p in directory.rglob("*")
        if p.is_file() and p.suffix.lower() in wanted
        and not any(part.startswith(".") for part in p.relative_to(directory).parts)
    ]
    return sorted(files)


def collect_files(root: Path, extensions: list[str], default_locale: str = "en") -> list[tuple[str, Path]]:
    """Return sorted (locale, path) pairs for every syncable file under root."""
    locale_dirs = sorted(d for d in root.iterdir() if d.is_dir() and _visible(d))
    if not locale_dirs:
        locale = normalize_locale(default_locale)
        return [(locale, p) for p in _matching_files(root, extensions)]
    out: list[tuple[str, Path]] = []
    for d in locale_dirs:
        locale = normalize_locale(d.name, default_locale)
        out.extend((locale, p) for p in _matching_files(d, extensions))
    return out


# ---------------------------------------------------------------------------
# Synchronizer
# ---------------------------------------------------------------------------

class Synchronizer:
    def __init__(self, store: LedgerStore, config: SyncConfig) -> None:
        self.store = store
        self.config = config

    def run(self, *, force: bool = False) -> SyncResult:
        """Sync the whole tree. ConfigError if the root is unset or missing."""
        root = self.config.require_root()
        files = collect_files(root, self.config.extensions, self.config.default_locale)
        result = SyncResult(root=str(root), locales=sorted({loc for loc, _ in files}))

        with transaction(self.store.conn, "sync"):
            for locale, path in files:
                result.scanned += 1
                try:
                    with transaction(self.store.conn, f"sync {path.name}"):
                        counts = self._sync_file(path, locale, force=force)
                except (ParseError, ValidationError) as exc:
                    logger.warning("skipping %s: %s", path, exc)
                    result.errors.append({"file": str(path), "error": str(exc)})
                    continue
                for key, n in counts.items():
                    setattr(result, key, getattr(result, key) + n)
            self.store.record_event(
                "sync.completed", actor=SYSTEM_ACTOR,
                payload={**result.counters(), "root": result.root, "force": force,
                         "errors": len(result.errors)},
            )

        logger.info(
            "sync %s: scanned=%d inserted=%d advanced=%d protected=%d unchanged=%d empty=%d errors=%d",
            result.root, result.scanned, result.revisions_inserted, result.pointers_advanced,
            result.pointers_protected, result.unchanged, result.empty_body_skipped, len(result.errors),
        )
        return result

    def _sync_file(self, path: Path, locale: str, *, force: bool) -> Counter[str]:
        """Sync one file; returns the SyncResult counters it bumps."""
        counts: Counter[str] = Counter()
        fm, body = frontmatter.parse_file(path)
        slug = fm.slug or path.stem
        fields = self._note_fields(fm, slug)
        status = fm.status.lower() if fm.status else None
        if status is not None and status not in NOTE_STATUSES:
            raise ParseError(f"unknown status {fm.status!r}", path)

        note, _ = self.store.upsert_note(slug, locale, fields, actor=SYSTEM_ACTOR, status=status)
        counts["upserted"] += 1

        body = body.strip()
        if not body:
            counts["empty_body_skipped"] += 1
            return counts

        snapshot = fm.to_dict()
        digest = content_hash(snapshot, body)
        tip = self.store.tip(note)
        latest = self.store.latest_revision(note.id)

        if latest is not None and latest.content_hash == digest:
            if not force or (tip is not None and tip.id == latest.id):
                counts["unchanged"] += 1
                return counts

        protected = tip is not None and tip.source != SYNC_SOURCE and not force
        written = self.store.write_revision(
            note, snapshot, body,
            provenance=Provenance(source=SYNC_SOURCE, intent=f"sync:md:{slug}:{locale}"),
            actor=SYSTEM_ACTOR,
            advance=not protected,
        )
        if not written.noop:
            counts["revisions_inserted"] += 1
        if protected and written.revision_id != tip.id:  # type: ignore[union-attr]
            counts["pointers_protected"] += 1
            logger.info("%s/%s: tip authored via %s; recorded without advancing", locale, slug, tip.source)  # type: ignore[union-attr]
        elif written.pointer_advanced:
            counts["pointers_advanced"] += 1
        elif written.noop:
            # file matches the tip already
            counts["unchanged"] += 1
        return counts

    @staticmethod
    def _note_fields(fm: Frontmatter, slug: str) -> dict[str, Any]:
        fields = fm.note_fields()
        fields["title"] = fm.title or slug
        return fields
