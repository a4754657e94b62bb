"""Protocol definitions for Selfcast.

The revalidation core talks to its collaborators (the content store, the
render boundary, the fingerprint ledger) only through these interfaces, so
each can be swapped: a YAML store or an in-memory one, a local Jinja2
renderer or a remote regeneration endpoint.
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .content import ContentItem, Project
    from .render import RenderResult


@runtime_checkable
class ContentStore(Protocol):
    """Persistence for per-project key/value content.

    Implementations must make each document update atomic; there is no
    cross-document locking.
    """

    @abstractmethod
    def get_project(self, project_id: str) -> Project:
        """Return a project.

        Raises:
            NotFound: If the project is unknown.
        """
        ...

    @abstractmethod
    def list_projects(self) -> list[Project]:
        """Return all projects, most recently updated first."""
        ...

    @abstractmethod
    def create_project(
        self, project_id: str, name: str, content: Iterable[ContentItem] = ()
    ) -> Project:
        """Create a project.

        Raises:
            ValidationError: If the id is not URL-safe or the name is empty.
            ConflictError: If the project already exists.
        """
        ...

    @abstractmethod
    def get_content(self, project_id: str) -> list[ContentItem]:
        """Return the ordered content items of a project.

        Raises:
            NotFound: If the project is unknown.
        """
        ...

    @abstractmethod
    def save_content(self, project_id: str, items: Iterable[ContentItem]) -> Project:
        """Merge items into a project's content (insert or overwrite per key).

        Raises:
            NotFound: If the project is unknown.
            ValidationError: If an item has an empty or whitespace key.
        """
        ...

    @abstractmethod
    def update_metadata(
        self,
        project_id: str,
        name: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Project:
        """Update project name and/or settings."""
        ...

    @abstractmethod
    def update_project(
        self,
        project_id: str,
        items: Iterable[ContentItem] = (),
        name: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Project:
        """Merge content and update metadata in a single document write."""
        ...

    @abstractmethod
    def touch(self, project_id: str) -> None:
        """Refresh the project's ``updated_at`` timestamp."""
        ...

    @abstractmethod
    def mark_revalidated(self, project_id: str, fingerprint: str) -> None:
        """Record the fingerprint the public page was last regenerated from."""
        ...


@runtime_checkable
class RenderBoundary(Protocol):
    """The static render layer that serves public pages."""

    @abstractmethod
    async def regenerate(self, path: str) -> RenderResult:
        """Regenerate the cached artifact for a public path.

        Raises:
            RegenerationFailure: If the artifact could not be regenerated.
        """
        ...


@runtime_checkable
class FingerprintLedger(Protocol):
    """Tracks the last successfully revalidated fingerprint per path."""

    @abstractmethod
    def get(self, path: str) -> str | None:
        ...

    @abstractmethod
    def record(self, path: str, fingerprint: str) -> None:
        ...
