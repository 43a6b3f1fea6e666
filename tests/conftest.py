"""Shared fixtures: an in-memory migrated ledger and a temporary notes tree."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from labledger.config import SyncConfig
from labledger.db import connect
from labledger.migrate import migrate
from labledger.models import Actor, Provenance
from labledger.service import LabNotesService
from labledger.store import LedgerStore


@pytest.fixture
def conn():
    c = connect(":memory:")
    migrate(c)
    yield c
    c.close()


@pytest.fixture
def raw_conn():
    """Unmigrated in-memory connection, for building legacy shapes by hand."""
    c = connect(":memory:")
    yield c
    c.close()


@pytest.fixture
def store(conn):
    return LedgerStore(conn)


@pytest.fixture
def notes_dir(tmp_path):
    d = tmp_path / "notes"
    d.mkdir()
    return d


@pytest.fixture
def sync_config(notes_dir):
    return SyncConfig(root=notes_dir)


@pytest.fixture
def service(store, sync_config):
    return LabNotesService(store, sync_config)


@pytest.fixture
def alice():
    return Actor(actor_type="human", actor_id="alice", auth_type="human_session")


@pytest.fixture
def web_edit():
    return Provenance(source="web", intent="edit")


@pytest.fixture
def write_note(notes_dir):
    """Write notes/<rel> with YAML frontmatter from kwargs. Returns the path."""

    def _write(rel: str, body: str, **frontmatter) -> Path:
        path = notes_dir / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        head = f"---\n{yaml.safe_dump(frontmatter, sort_keys=True)}---\n" if frontmatter else ""
        path.write_text(head + body, encoding="utf-8")
        return path

    return _write
