"""Tests for labledger.toml / .env loading."""

from pathlib import Path

import pytest

from labledger.config import MEMORY_DB, LedgerConfig, SyncConfig, init_config, load_config
from labledger.errors import ConfigError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("LABNOTES_DIR", raising=False)
    monkeypatch.delenv("LABLEDGER_DB_PATH", raising=False)


def test_defaults_without_config_file(tmp_path):
    cfg = load_config(tmp_path)

    assert cfg.root == tmp_path
    assert cfg.name == tmp_path.name
    assert cfg.db_path == tmp_path / ".labledger" / "lab.db"
    assert cfg.sync.root is None
    assert cfg.sync.extensions == [".md"]
    assert cfg.watch.interval == 2.0
    assert cfg.logging.level == "INFO"


def test_toml_values(tmp_path):
    (tmp_path / "labledger.toml").write_text(
        '[ledger]\nname = "lab"\ndb_path = ":memory:"\n'
        '[sync]\nroot = "docs/notes"\ndefault_locale = "KO"\nextensions = ["md", ".markdown"]\n'
        "[watch]\ninterval = 0.5\n"
        '[logging]\nlevel = "debug"\n'
    )

    cfg = load_config(tmp_path)

    assert cfg.name == "lab"
    assert cfg.in_memory
    assert cfg.db_path == MEMORY_DB
    assert cfg.sync.root == tmp_path / "docs" / "notes"
    assert cfg.sync.default_locale == "ko"
    assert cfg.sync.extensions == [".md", ".markdown"]
    assert cfg.watch.interval == 0.5
    assert cfg.logging.level == "DEBUG"


def test_root_found_by_walking_up(tmp_path):
    (tmp_path / "labledger.toml").write_text('[ledger]\nname = "up"\n')
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert load_config(nested).root == tmp_path


def test_env_file_then_process_env(tmp_path, monkeypatch):
    (tmp_path / "labledger.toml").write_text('[sync]\nroot = "from-toml"\n')
    (tmp_path / ".env").write_text('# comment\nLABNOTES_DIR="from-dotenv"\n')

    assert load_config(tmp_path).sync.root == tmp_path / "from-dotenv"

    monkeypatch.setenv("LABNOTES_DIR", str(tmp_path / "from-env"))
    monkeypatch.setenv("LABLEDGER_DB_PATH", "db/x.db")
    cfg = load_config(tmp_path)
    assert cfg.sync.root == tmp_path / "from-env"
    assert cfg.db_path == tmp_path / "db" / "x.db"


def test_invalid_toml_is_config_error(tmp_path):
    (tmp_path / "labledger.toml").write_text("[ledger\nname=")
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_invalid_values_are_config_errors(tmp_path):
    (tmp_path / "labledger.toml").write_text("[sync]\nextensions = 3\n")
    with pytest.raises(ConfigError):
        load_config(tmp_path)

    (tmp_path / "labledger.toml").write_text('[watch]\ninterval = "soon"\n')
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_init_config_writes_loadable_file(tmp_path):
    path = init_config(tmp_path, "demo", notes_dir="lab")

    cfg = load_config(tmp_path)
    assert path == tmp_path / "labledger.toml"
    assert cfg.name == "demo"
    assert cfg.sync.root == tmp_path / "lab"
    with pytest.raises(FileExistsError):
        init_config(tmp_path)


def test_ensure_dirs_writes_gitignore(tmp_path):
    cfg = LedgerConfig(root=tmp_path, db_path=tmp_path / ".labledger" / "lab.db")
    cfg.ensure_dirs()

    assert (tmp_path / ".labledger" / ".gitignore").read_text().startswith("*.db")
    LedgerConfig(root=tmp_path).ensure_dirs()


def test_require_root(tmp_path):
    assert SyncConfig(root=tmp_path).require_root() == tmp_path
    with pytest.raises(ConfigError):
        SyncConfig().require_root()
    with pytest.raises(ConfigError):
        SyncConfig(root=Path(tmp_path / "missing")).require_root()
