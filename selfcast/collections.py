from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping

from .content import ContentItem, items_to_mapping
from .fingerprint import is_public_key

_NUMBERED_RE_TEMPLATE = r"^{prefix}_(\d+)_{suffix}$"


class ContentMap(Mapping[str, str]):
    """Read-only view of a project's content for templates and code.

    Only public keys are visible; internal and reserved keys are hidden.
    """

    def __init__(self, items: Iterable[ContentItem]):
        self._values = {k: v for k, v in items_to_mapping(items).items() if is_public_key(k)}

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def value(self, key: str, default: str = "") -> str:
        """Return a value, falling back to ``default`` when missing or blank."""
        return self._values.get(key) or default

    def numbered(self, prefix: str, suffix: str) -> list[str]:
        """Return non-empty values of ``<prefix>_<n>_<suffix>`` keys ordered by n.

        Used for repeated fields such as ``banner_1_image_url``,
        ``banner_2_image_url``.
        """
        pattern = re.compile(
            _NUMBERED_RE_TEMPLATE.format(prefix=re.escape(prefix), suffix=re.escape(suffix))
        )
        numbered: list[tuple[int, str]] = []
        for key, value in self._values.items():
            match = pattern.match(key)
            if match and value:
                numbered.append((int(match.group(1)), value))
        return [value for _, value in sorted(numbered)]

    def with_prefix(self, prefix: str) -> dict[str, str]:
        return {k: v for k, v in self._values.items() if k.startswith(prefix) and v}

    def __repr__(self) -> str:  # pragma: no cover - for debugging
        return f"ContentMap({len(self._values)} keys)"
