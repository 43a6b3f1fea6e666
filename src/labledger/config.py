"""LedgerConfig: project-local config for the note ledger.

Default layout (all relative to the project root):

    labledger.toml        # project config (git-tracked)
    .env                  # optional: LABNOTES_DIR, LABLEDGER_DB_PATH (gitignore this)
    .labledger/
        lab.db            # SQLite ledger (add to .gitignore)
        .gitignore        # auto-written: ignores *.db*
    notes/                # markdown tree synced into the ledger
        en/
            launch-notes.md
        ko/
            launch-notes.md

labledger.toml example:

    [ledger]
    name = "my-lab"
    # db_path = ".labledger/lab.db"   # default; ":memory:" for throwaway runs

    [sync]
    root = "notes"          # or LABNOTES_DIR in .env
    default_locale = "en"   # used when the tree has no locale subdirectories
    extensions = [".md"]

    [watch]
    interval = 2.0

    [logging]
    level = "INFO"

Precedence for the sync root and db path: process environment, then .env,
then labledger.toml.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from labledger.errors import ConfigError

_CONFIG_FILENAME = "labledger.toml"
_DEFAULT_DB_PATH = ".labledger/lab.db"
_GITIGNORE_CONTENT = "*.db\n*.db-*\n"
_DEFAULT_EXTENSIONS = [".md"]

MEMORY_DB = ":memory:"


@dataclass
class SyncConfig:
    """[sync] section. ``root`` may be None until configured."""

    root: Path | None = None
    default_locale: str = "en"
    extensions: list[str] = field(default_factory=lambda: list(_DEFAULT_EXTENSIONS))

    def require_root(self) -> Path:
        """Return the sync root or raise ConfigError if unset / missing."""
        if self.root is None or not str(self.root).strip():
            raise ConfigError("sync root is not set (set [sync].root or LABNOTES_DIR)")
        if not self.root.is_dir():
            raise ConfigError(f"sync root not found: {self.root}")
        return self.root


@dataclass
class WatchConfig:
    interval: float = 2.0


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class LedgerConfig:
    """Resolved configuration for a ledger project."""

    root: Path                      # directory that contains labledger.toml
    name: str = ""
    db_path: Path | str = MEMORY_DB
    sync: SyncConfig = field(default_factory=SyncConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def in_memory(self) -> bool:
        return str(self.db_path) == MEMORY_DB

    def ensure_dirs(self) -> None:
        """Create the db directory (and its .gitignore) if the db is file-backed."""
        if self.in_memory:
            return
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)
        gitignore = db_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(_GITIGNORE_CONTENT)


def _load_env(root: Path) -> dict[str, str]:
    """Parse a simple KEY=VALUE .env file (no external dependency)."""
    env_file = root / ".env"
    if not env_file.exists():
        return {}
    env: dict[str, str] = {}
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            env[k.strip()] = v.strip().strip('"').strip("'")
    return env


def _resolve(root: Path, value: str) -> Path:
    p = Path(value).expanduser()
    return p if p.is_absolute() else root / p


def load_config(root: Path | str | None = None) -> LedgerConfig:
    """Load labledger.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root) if root else Path.cwd())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        try:
            with config_path.open("rb") as f:
                raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"invalid {config_path}: {exc}") from exc

    env = {**_load_env(root_path), **os.environ}

    ledger_section = raw.get("ledger", {})
    sync_section = raw.get("sync", {})
    watch_section = raw.get("watch", {})
    log_section = raw.get("logging", {})

    db_raw = env.get("LABLEDGER_DB_PATH") or str(ledger_section.get("db_path", _DEFAULT_DB_PATH))
    db_path: Path | str = MEMORY_DB if db_raw == MEMORY_DB else _resolve(root_path, db_raw)

    sync_raw = env.get("LABNOTES_DIR") or str(sync_section.get("root", "")).strip()
    sync_root = _resolve(root_path, sync_raw) if sync_raw else None

    extensions = sync_section.get("extensions", list(_DEFAULT_EXTENSIONS))
    if not isinstance(extensions, list) or not all(isinstance(e, str) for e in extensions):
        raise ConfigError("[sync].extensions must be a list of strings")

    try:
        interval = float(watch_section.get("interval", 2.0))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"[watch].interval is not a number: {watch_section.get('interval')!r}") from exc

    return LedgerConfig(
        root=root_path,
        name=ledger_section.get("name", root_path.name),
        db_path=db_path,
        sync=SyncConfig(
            root=sync_root,
            default_locale=str(sync_section.get("default_locale", "en")).lower(),
            extensions=[e if e.startswith(".") else f".{e}" for e in extensions],
        ),
        watch=WatchConfig(interval=interval),
        logging=LoggingConfig(level=str(log_section.get("level", "INFO")).upper()),
    )


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for labledger.toml."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    return start


def init_config(root: Path, name: str | None = None, *, notes_dir: str = "notes") -> Path:
    """Write a default labledger.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"labledger.toml already exists at {config_path}"
        raise FileExistsError(msg)

    project_name = name or root.name
    content = f"""\
[ledger]
name = "{project_name}"
# db_path = ".labledger/lab.db"   # default; keep it out of git

[sync]
root = "{notes_dir}"            # one subdirectory per locale: {notes_dir}/en, {notes_dir}/ko, ...
# default_locale = "en"         # used when {notes_dir}/ has no locale subdirectories
# extensions = [".md"]

# [watch]
# interval = 2.0                # seconds between polls for `labledger watch`

# [logging]
# level = "INFO"
"""
    config_path.write_text(content)
    return config_path
