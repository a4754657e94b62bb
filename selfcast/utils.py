"""Utility functions for Selfcast.

Path and URL helpers shared by the trigger, the renderer and the server.

Key functions:
    normalize_path: Canonical form of a public URL path.
    path_segments: Split a public path into its segments.
    project_id_from_path: The project a public path belongs to, if any.
    join_root_url: Join a base URL and a path without doubling slashes.
    cache_busting_url: Append a cache-busting query parameter to a URL.
    titleize: Turn a snake_case content key into a label.
    ensure_clean_dir: Ensure a directory exists and is empty.
    atomic_write_text: Write a file via a temp file and ``os.replace``.
"""

from __future__ import annotations

import os
import re
import shutil
import tempfile
from pathlib import Path
from urllib.parse import urlencode, urlsplit, urlunsplit


def normalize_path(path: str) -> str:
    """Normalize a public path: drop query/fragment, collapse slashes.

    Examples:
        >>> normalize_path("/acme/?x=1")
        '/acme'
        >>> normalize_path("//acme//about/")
        '/acme/about'
        >>> normalize_path("/")
        '/'
    """
    bare = re.split(r"[?#]", path, maxsplit=1)[0]
    segments = [part for part in bare.split("/") if part]
    return "/" + "/".join(segments)


def path_segments(path: str) -> list[str]:
    return [part for part in normalize_path(path).split("/") if part]


def project_id_from_path(path: str) -> str | None:
    """Return the project id addressed by a public path.

    Public project pages live at ``/<project_id>``; anything deeper is still
    owned by the first segment.

    Examples:
        >>> project_id_from_path("/acme")
        'acme'
        >>> project_id_from_path("/") is None
        True
    """
    segments = path_segments(path)
    return segments[0] if segments else None


def join_root_url(root_url: str, path: str) -> str:
    """Safely join a root URL and a path, avoiding double slashes.

    Examples:
        >>> join_root_url('https://example.com', '/about')
        'https://example.com/about'

        >>> join_root_url('https://example.com/', 'about')
        'https://example.com/about'
    """
    if not root_url:
        return path
    base = root_url.rstrip("/")
    suffix = path if path.startswith("/") else f"/{path}"
    return f"{base}{suffix}"


def cache_busting_url(url: str, token: str, param: str = "_cb") -> str:
    """Return ``url`` with a cache-busting query parameter added.

    Existing query parameters are preserved.

    Examples:
        >>> cache_busting_url("https://example.com/acme", "1700000000000-1")
        'https://example.com/acme?_cb=1700000000000-1'
        >>> cache_busting_url("https://example.com/acme?x=1", "t")
        'https://example.com/acme?x=1&_cb=t'
    """
    parts = urlsplit(url)
    extra = urlencode({param: token})
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def titleize(key: str) -> str:
    """Convert a snake_case content key into a human-readable label.

    Examples:
        >>> titleize("rendered_title")
        'Rendered Title'
        >>> titleize("banner_1_image_url")
        'Banner 1 Image Url'
    """
    words = re.split(r"[\s\-_]+", key.strip())
    return " ".join(word.capitalize() for word in words if word)


def ensure_clean_dir(path: Path) -> None:
    """Ensure a directory exists and is empty.

    If the directory exists, removes all contents. Creates the
    directory if it doesn't exist.

    Args:
        path: Directory path to clean or create.
    """
    if path.exists():
        shutil.rmtree(str(path), ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` atomically.

    The content is written to a temp file in the same directory and moved
    into place with ``os.replace``, so readers never observe a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
