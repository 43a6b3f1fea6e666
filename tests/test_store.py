"""Tests for LedgerStore: write path, pointers, effective content, events."""

import pytest

from labledger.errors import StorageError, ValidationError
from labledger.models import Provenance


@pytest.fixture
def note(store):
    note, created = store.upsert_note("launch-notes", "en", {"title": "Launch Notes"})
    assert created
    return note


def _write(store, note, body, provenance, **kwargs):
    return store.write_revision(note, {"title": note.title}, body, provenance=provenance, **kwargs)


def _effective(store, note):
    return store.effective(note.slug, note.locale)


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------

def test_new_note_defaults(note):
    assert note.group_id == note.id
    assert note.status == "draft"
    assert note.current_revision_id is None
    assert note.published_revision_id is None


def test_upsert_is_keyed_by_slug_and_locale(store, note):
    again, created = store.upsert_note("launch-notes", "EN-us", {"title": "Launch Notes v2"})
    assert not created
    assert again.id == note.id
    assert again.title == "Launch Notes v2"

    ko, created = store.upsert_note("launch-notes", "ko", {"title": "출시 노트", "group_id": note.group_id})
    assert created
    assert ko.id != note.id
    assert ko.group_id == note.group_id


def test_upsert_validation(store):
    with pytest.raises(ValidationError):
        store.upsert_note("", "en", {"title": "T"})
    with pytest.raises(ValidationError):
        store.upsert_note("no-title", "en", {})
    with pytest.raises(ValidationError):
        store.upsert_note("x", "en", {"title": "T", "bogus_field": 1})
    assert store.list_notes() == []


def test_published_at_kept_unless_supplied(store, note):
    store.upsert_note(note.slug, note.locale, {"published_at": "2025-01-02"})
    updated, _ = store.upsert_note(note.slug, note.locale, {"title": "Retitled", "published_at": None})
    assert updated.published_at == "2025-01-02"
    assert updated.title == "Retitled"


def test_unchanged_metadata_records_no_event(store, note):
    before = len(store.list_events(note.id))
    same, created = store.upsert_note(note.slug, note.locale, {"title": note.title})
    assert not created
    assert same.updated_at == note.updated_at
    assert len(store.list_events(note.id)) == before


def test_tags_are_mirrored(store, note):
    store.upsert_note(note.slug, note.locale, {"tags": ["ops", "launch"]})
    assert store.tags_for(note.id) == ["launch", "ops"]
    store.upsert_note(note.slug, note.locale, {"tags": ["ops"]})
    assert store.tags_for(note.id) == ["ops"]


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------

def test_first_write(store, note, web_edit):
    result = _write(store, note, "A", web_edit)

    assert not result.noop
    assert result.pointer_advanced
    assert result.revision_num == 1
    note = store.get_note(note.id)
    assert note.current_revision_id == result.revision_id
    assert note.published_revision_id is None
    rev = store.get_revision(result.revision_id)
    assert rev.supersedes_revision_id is None
    assert rev.source == "web"
    assert rev.content_body == "A"


def test_identical_write_is_a_noop(store, note, web_edit):
    first = _write(store, note, "A", web_edit)
    second = _write(store, note, "A", web_edit)

    assert second.noop
    assert not second.pointer_advanced
    assert second.revision_id == first.revision_id
    assert len(store.list_revisions(note.id)) == 1


def test_revisions_form_a_linear_chain(store, note, web_edit):
    ids = [_write(store, note, body, web_edit).revision_id for body in ("A", "B", "C")]

    revs = store.list_revisions(note.id)
    assert [r.revision_num for r in revs] == [1, 2, 3]
    assert [r.supersedes_revision_id for r in revs] == [None, ids[0], ids[1]]
    assert store.get_note(note.id).current_revision_id == ids[2]
    assert store.verify_chain(note.id) == []


def test_earlier_revisions_are_never_modified(store, note, web_edit):
    first = _write(store, note, "A", web_edit)
    snapshot = store.get_revision(first.revision_id)
    _write(store, note, "B", web_edit)
    _write(store, note, "C", web_edit, publish=True)
    assert store.get_revision(first.revision_id) == snapshot


def test_unadvanced_revision_is_recorded_without_moving_pointer(store, note, web_edit):
    first = _write(store, note, "A", web_edit)
    held = _write(store, note, "B", Provenance(source="import", intent="sync"), advance=False)

    assert not held.noop
    assert not held.pointer_advanced
    assert held.revision_num == 2
    assert store.get_note(note.id).current_revision_id == first.revision_id

    # writing the same content later adopts the recorded revision
    adopted = _write(store, note, "B", web_edit)
    assert adopted.noop
    assert adopted.pointer_advanced
    assert adopted.revision_id == held.revision_id
    assert len(store.list_revisions(note.id)) == 2


def test_numbering_continues_after_unadvanced_revision(store, note, web_edit):
    _write(store, note, "A", web_edit)
    _write(store, note, "B", web_edit, advance=False)
    third = _write(store, note, "C", web_edit)

    assert third.revision_num == 3
    assert store.get_revision(third.revision_id).supersedes_revision_id == store.list_revisions(note.id)[1].id


def test_invalid_provenance_rejected_before_writing(store, note):
    with pytest.raises(ValidationError):
        _write(store, note, "A", Provenance(source="email", intent="x"))
    with pytest.raises(ValidationError):
        _write(store, note, "A", Provenance(source="web", intent="x", auth_type="cookie"))
    assert store.list_revisions(note.id) == []


def test_storage_failure_rolls_back_the_write(store, note, web_edit):
    store.conn.execute("DROP TABLE lab_events")

    with pytest.raises(StorageError):
        _write(store, note, "A", web_edit)

    assert store.list_revisions(note.id) == []
    assert store.get_note(note.id).current_revision_id is None


# ---------------------------------------------------------------------------
# Publishing and pointer monotonicity
# ---------------------------------------------------------------------------

def test_publish_in_same_write(store, note, web_edit):
    result = _write(store, note, "A", web_edit, publish=True)

    note = store.get_note(note.id)
    assert note.status == "published"
    assert note.published_at
    assert note.published_revision_id == result.revision_id


def test_published_note_advances_both_pointers(store, note, web_edit):
    _write(store, note, "A", web_edit, publish=True)
    second = _write(store, note, "B", web_edit)

    note = store.get_note(note.id)
    assert note.current_revision_id == second.revision_id
    assert note.published_revision_id == second.revision_id


def test_unpublish_keeps_pointers_and_republish_moves_forward(store, note, web_edit):
    first = _write(store, note, "A", web_edit, publish=True)
    published_at = store.get_note(note.id).published_at

    note = store.set_status(store.get_note(note.id), "draft")
    assert note.published_revision_id == first.revision_id

    second = _write(store, note, "B", web_edit)
    note = store.get_note(note.id)
    assert note.current_revision_id == second.revision_id
    assert note.published_revision_id == first.revision_id

    note = store.set_status(note, "published")
    assert note.published_revision_id == second.revision_id
    assert note.published_at == published_at


def test_archive_keeps_pointers(store, note, web_edit):
    first = _write(store, note, "A", web_edit, publish=True)
    note = store.set_status(store.get_note(note.id), "archived")
    assert note.status == "archived"
    assert note.current_revision_id == first.revision_id
    assert note.published_revision_id == first.revision_id


def test_set_status_rejects_unknown(store, note):
    with pytest.raises(ValidationError):
        store.set_status(note, "deleted")


# ---------------------------------------------------------------------------
# Effective content
# ---------------------------------------------------------------------------

def test_effective_content_prefers_published_revision(store, note, web_edit):
    _write(store, note, "A", web_edit, publish=True)
    store.set_status(store.get_note(note.id), "draft")
    _write(store, note, "B", web_edit)
    store.conn.execute("UPDATE lab_notes SET status = 'published' WHERE id = ?", (note.id,))

    row = _effective(store, note)
    assert row["content_body"] == "A"
    assert row["content_source"] == "published"


def test_effective_content_of_draft_is_current(store, note, web_edit):
    _write(store, note, "A", web_edit)
    row = _effective(store, note)
    assert row["content_body"] == "A"
    assert row["content_source"] == "current"


def test_effective_content_falls_back_to_latest(store, note, web_edit):
    _write(store, note, "A", web_edit)
    _write(store, note, "B", web_edit)
    store.conn.execute("UPDATE lab_notes SET current_revision_id = NULL WHERE id = ?", (note.id,))

    row = _effective(store, note)
    assert row["content_body"] == "B"
    assert row["content_source"] == "latest"


def test_effective_content_legacy_and_pending(store, note):
    row = _effective(store, note)
    assert row["content_body"] is None
    assert row["content_source"] is None

    store.conn.execute("UPDATE lab_notes SET content_html = '<p>old</p>' WHERE id = ?", (note.id,))
    row = _effective(store, note)
    assert row["content_body"] == "<p>old</p>"
    assert row["content_source"] == "legacy"


def test_revision_wins_over_legacy_content(store, note, web_edit):
    store.conn.execute("UPDATE lab_notes SET content_html = '<p>old</p>' WHERE id = ?", (note.id,))
    _write(store, note, "A", web_edit)
    assert _effective(store, note)["content_body"] == "A"


def test_list_effective_orders_and_filters(store, web_edit):
    for slug, published_at in (("older", "2025-01-01"), ("newer", "2025-02-01")):
        n, _ = store.upsert_note(slug, "en", {"title": slug, "published_at": published_at})
        _write(store, n, slug, web_edit, publish=True)
    store.upsert_note("draft", "en", {"title": "draft"})
    store.upsert_note("gone", "en", {"title": "gone"}, status="archived")

    assert [r["slug"] for r in store.list_effective("en")] == ["newer", "older"]
    assert {r["slug"] for r in store.list_effective("en", statuses=("published", "draft"))} == {
        "newer", "older", "draft",
    }
    assert store.list_effective("ko") == []


# ---------------------------------------------------------------------------
# Repair / verify / events / delete
# ---------------------------------------------------------------------------

def test_repair_fixes_null_and_dangling_pointers(store, note, web_edit):
    _write(store, note, "A", web_edit, publish=True)
    second = _write(store, note, "B", web_edit)
    store.conn.execute(
        "UPDATE lab_notes SET current_revision_id = 'missing', published_revision_id = NULL WHERE id = ?",
        (note.id,),
    )

    assert store.repair_pointers() == [note.id]
    note = store.get_note(note.id)
    assert note.current_revision_id == second.revision_id
    assert note.published_revision_id == second.revision_id
    assert store.repair_pointers() == []


def test_repair_leaves_notes_without_revisions_alone(store, note):
    assert store.repair_pointers() == []
    assert store.get_note(note.id).current_revision_id is None


def test_verify_chain_detects_tampering(store, note, web_edit):
    _write(store, note, "A", web_edit)
    _write(store, note, "B", web_edit)
    store.conn.execute("UPDATE lab_note_revisions SET content_body = 'edited' WHERE revision_num = 1")

    problems = store.verify_chain(note.id)
    assert problems == ["r1: content_hash mismatch"]


def test_events_cover_every_mutation(store, note, web_edit, alice):
    _write(store, note, "A", web_edit, actor=alice, publish=True)

    types = [e.event_type for e in reversed(store.list_events(note.id))]
    assert types == ["note.created", "note.status_changed", "revision.created", "pointer.advanced"]
    created = next(e for e in store.list_events(note.id) if e.event_type == "revision.created")
    assert created.actor_id == "alice"
    assert created.intent == "edit"
    assert created.payload["revision_num"] == 1


def test_stats(store, note, web_edit):
    _write(store, note, "A", web_edit, publish=True)
    store.upsert_note("empty", "ko", {"title": "Empty"})

    stats = store.stats()
    assert stats["notes"] == {"en/published": 1, "ko/draft": 1}
    assert stats["revisions"] == 1
    assert stats["content_pending"] == 1
    assert stats["legacy_only"] == 0
    assert stats["pending_proposals"] == 0
    assert stats["events"] > 0
