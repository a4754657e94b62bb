"""Content model for Selfcast.

A project is a tenant's editable brand site: an ordered list of key/value
content items plus a little metadata. This module holds the dataclasses and
the pure helpers that convert between store-shaped content (a list of
items) and form-shaped content (a mapping).

Key classes:
- ContentItem: One named field of site content.
- Project: A tenant's site record.

Key functions:
- merge_items: Merge-not-replace update of an item list.
- items_to_mapping / mapping_to_items: Shape conversion.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Keys beginning with this prefix are internal bookkeeping, never rendered.
INTERNAL_PREFIX = "_"

# Metadata keys that travel with the form state but are not site content.
RESERVED_KEYS = frozenset({"name", "settings", "projectId"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ContentItem:
    """One named field of site content.

    Attributes:
        key: Field name, unique within a project (e.g. ``rendered_title``).
        value: Field value. Image URLs are ordinary values too.
    """

    key: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key, "value": self.value}


@dataclass
class Project:
    """A tenant's editable site record.

    Attributes:
        project_id: Unique, URL-safe identifier; also the public path.
        name: Display name of the project.
        content: Ordered content items, keys unique.
        settings: Free-form project settings.
        created_at: Creation timestamp (UTC).
        updated_at: Last modification timestamp (UTC).
        last_revalidated_fingerprint: Fingerprint of the content the public
            page was last successfully regenerated from. Derived and cached,
            never authoritative.
    """

    project_id: str
    name: str
    content: list[ContentItem] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_revalidated_fingerprint: str | None = None

    @property
    def path(self) -> str:
        """Public URL path of the project's site."""
        return f"/{self.project_id}"

    def content_mapping(self) -> dict[str, str]:
        return items_to_mapping(self.content)

    def to_dict(self, include_content: bool = True) -> dict[str, Any]:
        """Serialize to the wire/document shape (camelCase keys)."""
        payload: dict[str, Any] = {
            "projectId": self.project_id,
            "name": self.name,
            "settings": dict(self.settings),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "lastRevalidatedFingerprint": self.last_revalidated_fingerprint,
        }
        if include_content:
            payload["content"] = [item.to_dict() for item in self.content]
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Project:
        """Build a Project from its document shape.

        Timestamps may be ISO strings or datetimes (YAML loads either).
        """
        return cls(
            project_id=str(payload["projectId"]),
            name=str(payload.get("name") or ""),
            content=[
                ContentItem(key=str(item["key"]), value=_as_text(item.get("value")))
                for item in payload.get("content") or []
            ],
            settings=dict(payload.get("settings") or {}),
            created_at=_as_datetime(payload.get("createdAt")),
            updated_at=_as_datetime(payload.get("updatedAt")),
            last_revalidated_fingerprint=payload.get("lastRevalidatedFingerprint"),
        )


def items_to_mapping(items: Iterable[ContentItem]) -> dict[str, str]:
    """Convert an item list to a key/value mapping, preserving order."""
    return {item.key: item.value for item in items}


def mapping_to_items(mapping: Mapping[str, Any]) -> list[ContentItem]:
    """Convert a mapping to content items; ``None`` values become ``""``."""
    return [ContentItem(key=key, value=_as_text(value)) for key, value in mapping.items()]


def merge_items(
    existing: Iterable[ContentItem], updates: Iterable[ContentItem]
) -> list[ContentItem]:
    """Merge updates into existing content without dropping unspecified keys.

    Existing keys keep their position and take the new value; keys seen for
    the first time are appended in the order supplied. When the same key is
    supplied twice, the last value wins.

    Args:
        existing: Current content of the project.
        updates: Items to insert or overwrite.

    Returns:
        The merged item list.
    """
    merged = items_to_mapping(existing)
    for item in updates:
        merged[item.key] = item.value
    return mapping_to_items(merged)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return utcnow()
