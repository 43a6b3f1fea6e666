"""Tests for LabNotesService: the read/write surface."""

import pytest

from labledger.errors import ConfigError, NotFoundError, ValidationError
from labledger.service import CONTENT_PENDING, LabNotesService, NoteInput


def _input(**kw):
    data = {"slug": "launch-notes", "title": "Launch Notes", "body": "Body"}
    data.update(kw)
    return NoteInput(**data)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def test_save_creates_note_and_revision(service, store, alice):
    result = service.save_note(_input(tags=["ops"]), actor=alice)

    assert result.created_note
    assert result.revision_num == 1
    assert not result.noop
    assert result.pointer_advanced

    note = store.find_note("launch-notes", "en")
    assert note.current_revision_id == result.revision_id
    assert note.status == "draft"
    assert store.tags_for(note.id) == ["ops"]
    rev = store.get_revision(result.revision_id)
    assert rev.source == "web"
    assert rev.intent == "note.save"
    assert rev.content_body == "Body"


def test_save_same_content_is_noop(service, alice):
    service.save_note(_input(), actor=alice)
    again = service.save_note(_input(body="  Body \n"), actor=alice)

    assert again.noop
    assert not again.created_note
    assert again.revision_num == 1


def test_save_rejects_bad_input(service, store, alice):
    with pytest.raises(ValidationError):
        service.save_note(_input(body="   "), actor=alice)
    with pytest.raises(ValidationError):
        service.save_note(_input(slug="a:b"), actor=alice)
    with pytest.raises(ValidationError):
        service.save_note(_input(title=""), actor=alice)
    with pytest.raises(ValidationError):
        service.save_note(_input(type="novel"), actor=alice)
    with pytest.raises(ValidationError):
        service.save_note(_input(), actor=alice, source="carrier-pigeon")
    assert store.list_notes() == []


def test_save_with_publish(service, store, alice):
    result = service.save_note(_input(), actor=alice, publish=True)

    note = store.find_note("launch-notes", "en")
    assert note.status == "published"
    assert note.published_at
    assert note.published_revision_id == result.revision_id


def test_set_status_and_missing_note(service, alice):
    service.save_note(_input(), actor=alice)
    note = service.set_status("launch-notes", "en", "published", actor=alice)
    assert note.status == "published"

    with pytest.raises(NotFoundError):
        service.set_status("nope", "en", "published", actor=alice)


def test_history(service, alice):
    service.save_note(_input(body="one"), actor=alice)
    service.save_note(_input(body="two"), actor=alice)

    assert [r.content_body for r in service.history("launch-notes")] == ["one", "two"]
    with pytest.raises(NotFoundError):
        service.history("nope")


def test_export_note(service, store, alice):
    service.save_note(_input(body="one", tags=["ops"]), actor=alice)
    service.save_note(_input(body="two", tags=["ops"]), actor=alice)

    text = service.export_note("launch-notes")
    assert text.startswith("---\n")
    assert "title: Launch Notes\n" in text
    assert "- ops\n" in text
    assert text.endswith("---\ntwo\n")
    assert service.export_note("launch-notes", revision_num=1).endswith("---\none\n")

    with pytest.raises(NotFoundError):
        service.export_note("launch-notes", revision_num=9)
    store.upsert_note("empty", "en", {"title": "Empty"})
    with pytest.raises(NotFoundError):
        service.export_note("empty")


def test_export_reads_back_unchanged(service, store, notes_dir, alice):
    service.save_note(_input(body="Body\n\nMore", shadow_density=0.5), actor=alice)
    path = notes_dir / "en" / "launch-notes.md"
    path.parent.mkdir(parents=True)
    path.write_text(service.export_note("launch-notes"), encoding="utf-8")

    result = service.run_sync()

    assert result.errors == []
    assert result.unchanged == 1
    assert len(service.history("launch-notes")) == 1


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def test_list_is_published_only(service, alice):
    service.save_note(_input(slug="pub", title="Pub"), actor=alice, publish=True)
    service.save_note(_input(slug="draft", title="Draft"), actor=alice)
    service.save_note(_input(slug="gone", title="Gone"), actor=alice, publish=True)
    service.set_status("gone", "en", "archived", actor=alice)
    service.save_note(_input(slug="ko-only", title="Ko", locale="ko"), actor=alice, publish=True)

    assert [n.slug for n in service.list_notes("en")] == ["pub"]
    assert {n.slug for n in service.list_notes("en", include_drafts=True)} == {"pub", "draft"}
    assert {n.slug for n in service.list_notes("all")} == {"pub", "ko-only"}


def test_preview_defaults(service, alice):
    service.save_note(_input(tags=["a", "b"]), actor=alice, publish=True)

    preview = service.list_notes()[0]
    assert preview.id == "launch-notes"
    assert preview.department_id == "SCMS"
    assert preview.reading_time == 5
    assert preview.tags == ["a", "b"]
    assert preview.published
    assert "content" not in preview.to_dict()


def test_get_note_returns_effective_body(service, alice):
    service.save_note(_input(body="v1"), actor=alice, publish=True)
    service.save_note(_input(body="v2"), actor=alice)

    detail = service.get_note("launch-notes", "en")
    assert detail.content == "v2"
    assert detail.content_source == "published"
    assert detail.revision_num == 2
    assert not detail.content_pending


def test_get_note_hides_drafts(service, alice):
    service.save_note(_input(), actor=alice)

    assert service.get_note("launch-notes") is None
    detail = service.get_note("launch-notes", include_drafts=True)
    assert detail.content_source == "current"


def test_get_note_locale_normalized(service, alice):
    service.save_note(_input(locale="ko"), actor=alice, publish=True)
    assert service.get_note("launch-notes", "ko-KR").locale == "ko"
    assert service.get_note("launch-notes", "en") is None


def test_legacy_slug_locale_fallback(store, service):
    store.upsert_note("old-note:ko", "ko", {"title": "Old"}, status="published")
    store.upsert_note("older", "en", {"title": "Older"}, status="published")
    store.conn.execute("UPDATE lab_notes SET content_html = 'legacy body' WHERE slug = 'older'")

    by_base = service.get_note("old-note", "ko")
    assert by_base.slug == "old-note:ko"

    by_suffix = service.get_note("older:en", "ko")
    assert by_suffix.slug == "older"
    assert by_suffix.content == "legacy body"
    assert by_suffix.content_source == "legacy"


def test_content_pending_placeholder(store, service):
    store.upsert_note("empty", "en", {"title": "Empty"}, status="published")

    detail = service.get_note("empty")
    assert detail.content == CONTENT_PENDING
    assert detail.content_pending
    assert detail.revision_id is None


def test_get_note_rejects_bad_args(service):
    with pytest.raises(ValidationError):
        service.get_note("  ")
    with pytest.raises(ValidationError):
        service.get_note("x", "all")


def test_run_sync_requires_config(store, service, write_note):
    write_note("en/a.md", "a", title="A")
    assert service.run_sync().revisions_inserted == 1

    with pytest.raises(ConfigError):
        LabNotesService(store).run_sync()
