"""Deterministic hashing helpers for content-addressed identifiers."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(payload: Any) -> str:
    """Serialise ``payload`` with sorted keys and compact separators."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def hash_content(content: str) -> str:
    """Return the full SHA-256 hex digest of ``content``."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def hash_payload(payload: Any) -> str:
    """Return the SHA-256 digest of the canonical JSON form of ``payload``."""
    return hash_content(canonical_json(payload))


def short_hash(value: str, length: int = 8) -> str:
    """Truncate a digest for log output."""
    return value[:length]
