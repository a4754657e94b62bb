"""Content store implementations for Selfcast.

Each project is a single document. Every mutation loads the document,
applies the change and writes the whole document back in one step, so a
content merge and a metadata update can never be half-applied. Writers of
the same project are serialized by a per-project lock; different projects
never contend.

Key classes:
- BaseContentStore: Shared merge/validation logic over a document backend.
- MemoryContentStore: Dict-backed store (tests, embedding).
- YamlContentStore: One YAML file per project under ``<data_dir>/projects``.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .content import ContentItem, Project, merge_items, utcnow
from .errors import ConflictError, NotFound, StoreFailure, ValidationError
from .validation import PROJECT_ID_RE, normalize_items, validate_project_id
from .utils import atomic_write_text

logger = logging.getLogger(__name__)


class BaseContentStore(ABC):
    """Content store logic shared by all document backends.

    Subclasses only implement raw document access: ``_load``, ``_write``
    and ``_load_all``.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @abstractmethod
    def _load(self, project_id: str) -> Project | None:
        """Return the stored project or None."""

    @abstractmethod
    def _write(self, project: Project) -> None:
        """Persist the full project document."""

    @abstractmethod
    def _load_all(self) -> list[Project]:
        """Return every stored project."""

    def _lock_for(self, project_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(project_id, threading.Lock())

    def get_project(self, project_id: str) -> Project:
        project = self._load(project_id) if PROJECT_ID_RE.match(project_id or "") else None
        if project is None:
            raise NotFound(f"Project not found: {project_id}")
        return project

    def list_projects(self) -> list[Project]:
        return sorted(self._load_all(), key=lambda p: p.updated_at, reverse=True)

    def create_project(
        self, project_id: str, name: str, content: Iterable[ContentItem] = ()
    ) -> Project:
        validate_project_id(project_id)
        if not name or not str(name).strip():
            raise ValidationError("Project name is required", {"name": "Required"})
        items = merge_items([], normalize_items(list(content)))
        with self._lock_for(project_id):
            if self._load(project_id) is not None:
                raise ConflictError(f"Project ID already exists: {project_id}")
            now = utcnow()
            project = Project(
                project_id=project_id,
                name=str(name).strip(),
                content=items,
                created_at=now,
                updated_at=now,
            )
            self._write(project)
        logger.info("Created project %s", project_id)
        return project

    def get_content(self, project_id: str) -> list[ContentItem]:
        return list(self.get_project(project_id).content)

    def save_content(self, project_id: str, items: Iterable[ContentItem]) -> Project:
        return self.update_project(project_id, items=items)

    def update_metadata(
        self,
        project_id: str,
        name: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Project:
        if name is None and settings is None:
            raise ValidationError("No valid fields to update")
        return self.update_project(project_id, name=name, settings=settings)

    def update_project(
        self,
        project_id: str,
        items: Iterable[ContentItem] = (),
        name: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Project:
        """Merge content and update metadata in one document write.

        Args:
            project_id: Target project.
            items: Content items to insert or overwrite; other keys are kept.
            name: New project name, if changing.
            settings: New settings mapping, if changing.

        Returns:
            The updated project.

        Raises:
            NotFound: If the project is unknown.
            ValidationError: If an item key is empty or the name is blank.
        """
        updates = normalize_items(list(items))
        if name is not None and not str(name).strip():
            raise ValidationError("Project name must not be empty", {"name": "Required"})
        if settings is not None and not isinstance(settings, dict):
            raise ValidationError("Settings must be an object", {"settings": "Must be an object"})
        with self._lock_for(project_id):
            current = self.get_project(project_id)
            updated = replace(
                current,
                content=merge_items(current.content, updates),
                name=str(name).strip() if name is not None else current.name,
                settings=dict(settings) if settings is not None else current.settings,
                updated_at=utcnow(),
            )
            self._write(updated)
        logger.debug("Saved %d item(s) to project %s", len(updates), project_id)
        return updated

    def touch(self, project_id: str) -> None:
        with self._lock_for(project_id):
            current = self.get_project(project_id)
            self._write(replace(current, updated_at=utcnow()))

    def mark_revalidated(self, project_id: str, fingerprint: str) -> None:
        with self._lock_for(project_id):
            current = self.get_project(project_id)
            self._write(replace(current, last_revalidated_fingerprint=fingerprint))


class MemoryContentStore(BaseContentStore):
    """Content store kept entirely in process memory."""

    def __init__(self, projects: Iterable[Project] = ()) -> None:
        super().__init__()
        self._documents: dict[str, dict[str, Any]] = {}
        for project in projects:
            self._write(project)

    def _load(self, project_id: str) -> Project | None:
        document = self._documents.get(project_id)
        return Project.from_dict(document) if document is not None else None

    def _write(self, project: Project) -> None:
        # Store the serialized shape so callers never share mutable state.
        self._documents[project.project_id] = project.to_dict()

    def _load_all(self) -> list[Project]:
        return [Project.from_dict(doc) for doc in list(self._documents.values())]


class YamlContentStore(BaseContentStore):
    """Content store with one YAML document per project.

    Documents live at ``<data_dir>/projects/<project_id>.yaml`` and are
    replaced atomically on every write.

    Attributes:
        data_dir: Root data directory.
        projects_dir: Directory holding the project documents.
    """

    def __init__(self, data_dir: Path):
        super().__init__()
        self.data_dir = data_dir
        self.projects_dir = data_dir / "projects"

    def document_path(self, project_id: str) -> Path:
        return self.projects_dir / f"{project_id}.yaml"

    def _load(self, project_id: str) -> Project | None:
        return self._read_document(self.document_path(project_id))

    def _read_document(self, path: Path) -> Project | None:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                payload = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise StoreFailure(f"Could not read {path.name}: {exc}", exc) from exc
        if not isinstance(payload, dict) or "projectId" not in payload:
            raise StoreFailure(f"Malformed project document: {path.name}")
        return Project.from_dict(payload)

    def _write(self, project: Project) -> None:
        text = yaml.safe_dump(project.to_dict(), sort_keys=False, allow_unicode=True)
        try:
            atomic_write_text(self.document_path(project.project_id), text)
        except OSError as exc:
            raise StoreFailure(f"Could not write project {project.project_id}: {exc}", exc) from exc

    def _load_all(self) -> list[Project]:
        if not self.projects_dir.exists():
            return []
        projects = []
        for path in sorted(self.projects_dir.glob("*.yaml")):
            project = self._read_document(path)
            if project is not None:
                projects.append(project)
        return projects
