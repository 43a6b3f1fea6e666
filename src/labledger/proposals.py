"""Proposals: a revision recorded off-pointer, waiting for review.

    create   → revision appended with advance=False, proposal 'pending'
    accept   → base must still be the tip; pointers advance to the proposal
    reject   → pending → rejected (revision stays in the log)
    withdraw → pending → withdrawn
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from labledger.db import transaction
from labledger.errors import ConflictError, NotFoundError, ValidationError
from labledger.models import SYSTEM_ACTOR, Actor, Proposal, new_id, now_iso

if TYPE_CHECKING:
    from collections.abc import Mapping

    from labledger.models import Note, Provenance
    from labledger.store import LedgerStore

logger = logging.getLogger("labledger.proposals")


class Proposals:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store
        self.conn = store.conn

    def get(self, proposal_id: str) -> Proposal | None:
        row = self.conn.execute("SELECT * FROM lab_note_proposals WHERE id = ?", (proposal_id,)).fetchone()
        return Proposal.from_row(row) if row else None

    def for_note(self, note_id: str, *, status: str | None = None) -> list[Proposal]:
        sql = "SELECT * FROM lab_note_proposals WHERE note_id = ?"
        params: list[Any] = [note_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        rows = self.conn.execute(sql + " ORDER BY created_at, rowid", params).fetchall()
        return [Proposal.from_row(r) for r in rows]

    def create(
        self,
        note: Note,
        frontmatter: Mapping[str, Any],
        body: str,
        *,
        provenance: Provenance,
        actor: Actor,
        diff_patch: str | None = None,
    ) -> Proposal:
        with transaction(self.conn, "create proposal"):
            base = self.store.tip(note)
            if base is None:
                raise ConflictError(f"note {note.slug!r} has no revision to propose against")
            written = self.store.write_revision(
                note, frontmatter, body, provenance=provenance, actor=actor, advance=False,
            )
            if written.revision_id == base.id:
                raise ValidationError("proposal does not change the current content")

            proposal_id = new_id()
            self.conn.execute(
                """
                INSERT INTO lab_note_proposals (
                    id, note_id, base_revision_id, proposed_revision_id,
                    status, created_by, created_by_type, diff_patch, created_at
                ) VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?)
                """,
                (proposal_id, note.id, base.id, written.revision_id,
                 actor.actor_id, actor.actor_type, diff_patch, now_iso()),
            )
            self.store.record_event(
                "proposal.created", actor=actor, note_id=note.id,
                revision_id=written.revision_id, proposal_id=proposal_id,
                intent=provenance.intent, intent_version=provenance.intent_version,
                payload={"base_revision_id": base.id},
            )
        logger.info("proposal %s created for %s/%s", proposal_id, note.locale, note.slug)
        return self.get(proposal_id)  # type: ignore[return-value]

    def accept(self, proposal_id: str, *, actor: Actor = SYSTEM_ACTOR, comment: str | None = None) -> Proposal:
        with transaction(self.conn, "accept proposal"):
            proposal = self._pending(proposal_id)
            note = self.store.get_note(proposal.note_id)
            if note is None:
                raise NotFoundError(f"note {proposal.note_id} no longer exists")
            tip = self.store.tip(note)
            if tip is None or tip.id != proposal.base_revision_id:
                raise ConflictError(
                    f"proposal {proposal_id} was based on {proposal.base_revision_id}, "
                    f"current is {tip.id if tip else None}"
                )
            revision = self.store.get_revision(proposal.proposed_revision_id)
            if revision is None:
                raise NotFoundError(f"revision {proposal.proposed_revision_id} not found")
            self.store.advance_to(note, revision, actor=actor)
            self._review(proposal, "accepted", actor, comment)
        return self.get(proposal_id)  # type: ignore[return-value]

    def reject(self, proposal_id: str, *, actor: Actor = SYSTEM_ACTOR, comment: str | None = None) -> Proposal:
        with transaction(self.conn, "reject proposal"):
            self._review(self._pending(proposal_id), "rejected", actor, comment)
        return self.get(proposal_id)  # type: ignore[return-value]

    def withdraw(self, proposal_id: str, *, actor: Actor) -> Proposal:
        with transaction(self.conn, "withdraw proposal"):
            proposal = self._pending(proposal_id)
            if actor.actor_id != proposal.created_by:
                raise ValidationError("only the author can withdraw a proposal")
            self._review(proposal, "withdrawn", actor, None)
        return self.get(proposal_id)  # type: ignore[return-value]

    # ------------------------------------------------------------------

    def _pending(self, proposal_id: str) -> Proposal:
        proposal = self.get(proposal_id)
        if proposal is None:
            raise NotFoundError(f"proposal {proposal_id} not found")
        if proposal.status != "pending":
            raise ConflictError(f"proposal {proposal_id} is {proposal.status}, not pending")
        return proposal

    def _review(self, proposal: Proposal, status: str, actor: Actor, comment: str | None) -> None:
        self.conn.execute(
            "UPDATE lab_note_proposals SET status = ?, reviewed_by = ?, reviewed_at = ?, review_comment = ? "
            "WHERE id = ?",
            (status, actor.actor_id, now_iso(), comment, proposal.id),
        )
        self.store.record_event(
            f"proposal.{status}", actor=actor, note_id=proposal.note_id,
            revision_id=proposal.proposed_revision_id, proposal_id=proposal.id,
            payload={"comment": comment} if comment else None,
        )
