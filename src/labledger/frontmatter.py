"""Markdown files with YAML frontmatter:

    ---
    slug: launch-notes
    title: Launch Notes
    status: published
    tags: [ops, launch]
    ---
    Body text...

No fence → empty frontmatter, whole text is the body.
"""

from __future__ import annotations

import re
from pathlib import Path

import yaml

from labledger.errors import ParseError
from labledger.models import Frontmatter

_FRONTMATTER_RE = re.compile(r"^---[ \t]*\n(.*?)\n?---[ \t]*(?:\n|$)", re.DOTALL)


def split(text: str) -> tuple[str | None, str]:
    """Return (raw frontmatter or None, body)."""
    text = text.lstrip("\ufeff").replace("\r\n", "\n")
    m = _FRONTMATTER_RE.match(text)
    if not m:
        return None, text
    return m.group(1), text[m.end():]


def parse(text: str, path: Path | str | None = None) -> tuple[Frontmatter, str]:
    """Parse document text → (Frontmatter, body). Raises ParseError."""
    raw, body = split(text)
    if raw is None or not raw.strip():
        return Frontmatter(), body
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ParseError(f"invalid YAML frontmatter: {exc}", path) from exc
    return Frontmatter.from_mapping(data, path), body


def parse_file(path: Path) -> tuple[Frontmatter, str]:
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError(f"not UTF-8 text: {exc}", path) from exc
    except OSError as exc:
        raise ParseError(f"unreadable: {exc}", path) from exc
    return parse(text, path)


def render(frontmatter: Frontmatter, body: str) -> str:
    """Inverse of parse(), for exporting a revision back to a file."""
    data = frontmatter.to_dict()
    if not data:
        return body
    head = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"---\n{head}---\n{body}"
