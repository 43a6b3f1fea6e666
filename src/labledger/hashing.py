"""Content addressing: canonical (frontmatter, body) serialization + SHA-256.

Layout of the hashed bytes:

    <frontmatter as JSON, sorted keys, compact separators>
    \\n---\\n
    <raw body>

Dates and other non-JSON scalars in the frontmatter are stringified, so a
YAML ``2025-01-02`` and the string ``"2025-01-02"`` hash identically.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

HASH_SEPARATOR = "\n---\n"


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_frontmatter(frontmatter: Mapping[str, Any] | None) -> str:
    """Order-stable JSON encoding of a frontmatter mapping."""
    return json.dumps(
        dict(frontmatter or {}),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def canonical_bytes(frontmatter: Mapping[str, Any] | None, body: str) -> bytes:
    return (canonical_frontmatter(frontmatter) + HASH_SEPARATOR + body).encode("utf-8")


def content_hash(frontmatter: Mapping[str, Any] | None, body: str) -> str:
    """Digest used for idempotent sync, no-op write detection and chain checks."""
    return hashlib.sha256(canonical_bytes(frontmatter, body)).hexdigest()
