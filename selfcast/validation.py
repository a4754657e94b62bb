"""Boundary validation for Selfcast.

Untyped request payloads are turned into typed content here, before they
reach the store or the fingerprint engine.

Key functions:
- normalize_items: Coerce a payload (list of items or mapping) into ContentItems.
- validate_project_id: Check that a project id is URL-safe.
- validate_content_form: Field-level checks for colours, URLs and the title.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import urlparse

from .content import ContentItem, mapping_to_items
from .errors import ValidationError

PROJECT_ID_RE = re.compile(r"^[a-z0-9](?:[a-z0-9_-]{0,62}[a-z0-9])?$")
HEX_COLOR_RE = re.compile(r"^#(?:[A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")
URL_FIELDS = frozenset(
    {
        "profile_image_url",
        "banner_1_image_url",
        "banner_2_image_url",
        "banner_3_image_url",
        "client_website",
    }
)


def validate_project_id(project_id: Any) -> str:
    """Return the project id if it is URL-safe, otherwise raise ValidationError.

    Project ids are lowercase letters, digits, ``-`` and ``_``, start and end
    with a letter or digit, and are at most 64 characters long.
    """
    if not isinstance(project_id, str) or not PROJECT_ID_RE.match(project_id):
        raise ValidationError(
            f"Invalid project id: {project_id!r}",
            {"projectId": "Use lowercase letters, digits, '-' or '_'"},
        )
    return project_id


def normalize_items(payload: Any) -> list[ContentItem]:
    """Coerce a content payload into a list of ContentItems.

    Accepts a list of ``{"key": ..., "value": ...}`` dicts, a list of
    ContentItems, or a plain key/value mapping. ``None`` values become empty
    strings; non-string values are stringified.

    Raises:
        ValidationError: If the payload has the wrong shape or any key is
            empty or whitespace-only.
    """
    if isinstance(payload, Mapping):
        items = mapping_to_items(payload)
    elif isinstance(payload, Iterable) and not isinstance(payload, (str, bytes)):
        items = [_coerce_item(entry) for entry in payload]
    else:
        raise ValidationError("Content must be an array of {key, value} items")

    for index, item in enumerate(items):
        if not item.key.strip():
            raise ValidationError(
                f"Content item {index} has an empty key",
                {f"content[{index}]": "Key must not be empty"},
            )
    return items


def _coerce_item(entry: Any) -> ContentItem:
    if isinstance(entry, ContentItem):
        return entry
    if not isinstance(entry, Mapping) or "key" not in entry:
        raise ValidationError("Content items must be objects with a 'key'")
    key = entry["key"]
    if not isinstance(key, str):
        raise ValidationError(f"Content item key must be a string, got {type(key).__name__}")
    value = entry.get("value")
    return ContentItem(key=key, value="" if value is None else str(value))


def is_valid_hex_color(value: str) -> bool:
    return bool(HEX_COLOR_RE.match(value))


def is_valid_url(value: str) -> bool:
    """Check a URL, allowing bare domains and site-relative paths.

    Examples:
        >>> is_valid_url("example.com")
        True
        >>> is_valid_url("/api/images/abc123")
        True
        >>> is_valid_url("not a url")
        False
    """
    if value.startswith("/") and not value.startswith("//"):
        return " " not in value
    candidate = value if value.startswith("http") else f"https://{value}"
    try:
        parsed = urlparse(candidate)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and "." in parsed.netloc and " " not in candidate


def validate_content_form(items: Iterable[ContentItem]) -> None:
    """Field-level validation of submitted content.

    Only submitted fields are checked, since saves merge into existing
    content. Empty colour and URL values are allowed (they clear a field).

    Raises:
        ValidationError: With one message per offending field.
    """
    errors: dict[str, str] = {}
    for item in items:
        key, value = item.key, item.value.strip()
        if key == "rendered_title" and not value:
            errors[key] = "Site title is required"
        elif key.endswith("_color") and value and not is_valid_hex_color(value):
            errors[key] = "Invalid color format. Use hexadecimal format (#RRGGBB)"
        elif (key in URL_FIELDS or key.endswith("_url")) and value and not is_valid_url(value):
            errors[key] = "Invalid URL format"
    if errors:
        raise ValidationError("Content failed validation", errors)
