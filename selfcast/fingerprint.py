"""Content fingerprinting for Selfcast.

A fingerprint is a short, deterministic summary of the content that affects
a project's public page. Two form states with the same public key/value
pairs always produce the same fingerprint, in any key order; internal keys
(prefixed with ``_``) and the reserved metadata keys (``name``,
``settings``, ``projectId``) never contribute.

The hash is a 32-bit polynomial rolling hash (base 31, seed 0) over the
characters of a canonical JSON serialization. It is a change-detection
heuristic, not a security control: collisions are possible and accepted.

Key functions:
- compute_fingerprint: Fingerprint a form-state mapping.
- fingerprint_items: Fingerprint store-shaped content.
- public_content: The filtered, sorted mapping that gets hashed.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping

from .content import INTERNAL_PREFIX, RESERVED_KEYS, ContentItem, items_to_mapping

_HASH_BASE = 31
_HASH_MASK = 0xFFFFFFFF


def is_public_key(key: str) -> bool:
    """Return True if a content key affects the public rendering."""
    return not key.startswith(INTERNAL_PREFIX) and key not in RESERVED_KEYS


def public_content(content: Mapping[str, str]) -> dict[str, str]:
    """Return the public-visible subset of content, sorted by key."""
    return {key: content[key] for key in sorted(content) if is_public_key(key)}


def canonicalize(content: Mapping[str, str]) -> str:
    """Serialize the public subset of content independently of key order."""
    pairs = [
        [key, "" if value is None else str(value)]
        for key, value in public_content(content).items()
    ]
    return json.dumps(pairs, ensure_ascii=False, separators=(",", ":"))


def rolling_hash(text: str) -> int:
    """32-bit rolling hash over code points. Seed 0, so stable across processes."""
    value = 0
    for ch in text:
        value = (value * _HASH_BASE + ord(ch)) & _HASH_MASK
    return value


def compute_fingerprint(content: Mapping[str, str]) -> str:
    """Compute the fingerprint of a form-state mapping.

    Args:
        content: Full editable form state, including transient metadata.

    Returns:
        An 8-character lowercase hex string.

    Examples:
        >>> compute_fingerprint({"a": "1", "b": "2"}) == compute_fingerprint({"b": "2", "a": "1"})
        True
        >>> compute_fingerprint({"a": "1"}) == compute_fingerprint({"a": "1", "name": "Site"})
        True
    """
    return f"{rolling_hash(canonicalize(content)):08x}"


def fingerprint_items(items: Iterable[ContentItem]) -> str:
    return compute_fingerprint(items_to_mapping(items))
