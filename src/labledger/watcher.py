"""Polling watcher: re-run the markdown sync whenever the notes tree changes.

    labledger watch                 # via the CLI
    python -m labledger.watcher [CONFIG_ROOT]

Every ``interval`` seconds the tree is scanned for added, modified or removed
files (mtime); any change triggers one full sync (cheap: unchanged files are
hash-skipped). The first scan always syncs, so edits made while the watcher
was down are picked up. SIGHUP reloads labledger.toml.
"""

from __future__ import annotations

import logging
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING

from labledger.config import load_config
from labledger.errors import ConfigError

if TYPE_CHECKING:
    from collections.abc import Callable

    from labledger.service import LabNotesService

logger = logging.getLogger("labledger.watcher")

_reload_state: list[bool] = [False]     # [0] = SIGHUP reload requested


class _ReloadRequestedError(Exception):
    """Raised from the poll loop to trigger a config reload."""


def _handle_sighup(signum: int, frame: object) -> None:  # noqa: ARG001
    _reload_state[0] = True
    logger.info("SIGHUP received, config reload requested")


def scan(root: Path, seen: dict[Path, float], extensions: list[str] | None = None) -> bool:
    """Update ``seen`` (path → mtime) in place. True if anything changed."""
    wanted = {e.lower() for e in (extensions or [".md"])}
    current: dict[Path, float] = {}
    for f in root.rglob("*"):
        if not f.is_file() or f.suffix.lower() not in wanted:
            continue
        if any(part.startswith(".") for part in f.relative_to(root).parts):
            continue
        try:
            current[f] = f.stat().st_mtime
        except OSError:
            continue
    changed = current != seen
    if changed:
        seen.clear()
        seen.update(current)
    return changed


def watch(
    service: LabNotesService,
    interval: float = 2.0,
    *,
    force: bool = False,
    max_cycles: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Poll and sync until interrupted (or ``max_cycles`` polls). Returns syncs run."""
    if service.sync_config is None:
        raise ConfigError("sync is not configured")
    root = service.sync_config.require_root()
    extensions = service.sync_config.extensions
    seen: dict[Path, float] = {}
    syncs = 0
    cycles = 0
    logger.info("polling %s interval=%.1fs", root, interval)

    while max_cycles is None or cycles < max_cycles:
        cycles += 1
        if scan(root, seen, extensions):
            try:
                result = service.run_sync(force=force)
            except Exception:
                logger.exception("sync failed for %s", root)
                # forget the snapshot so the next poll retries
                seen.clear()
            else:
                syncs += 1
                for err in result.errors:
                    logger.warning("%s: %s", err["file"], err["error"])
        if _reload_state[0]:
            raise _ReloadRequestedError
        if max_cycles is None or cycles < max_cycles:
            sleep(interval)
    return syncs


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_from_config(config_root: Path | None = None, *, force: bool = False) -> None:
    """Load labledger.toml, open the ledger and watch. SIGHUP reloads the config."""
    import signal as _signal

    from labledger.bootstrap import open_ledger
    from labledger.service import LabNotesService

    if hasattr(_signal, "SIGHUP"):
        _signal.signal(_signal.SIGHUP, _handle_sighup)

    while True:
        _reload_state[0] = False
        cfg = load_config(config_root)
        logging.basicConfig(level=cfg.logging.level, format="%(asctime)s %(name)s %(message)s")
        store = open_ledger(cfg)
        try:
            watch(LabNotesService(store, cfg.sync), cfg.watch.interval, force=force)
            break
        except _ReloadRequestedError:
            logger.info("reloading config from %s", config_root or Path.cwd())
        finally:
            store.conn.close()


if __name__ == "__main__":
    root = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    run_from_config(root)
