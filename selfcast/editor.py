"""Editor service: save content, then publish it.

``ContentEditor.save`` is the one entry point used by the API and the CLI
when a client submits the edit form. It always finishes the store write
before evaluating the revalidation trigger, and it reports the two
guarantees separately: ``saved`` (the content is persisted) and
``published`` (the public page reflects it). A failed publish never rolls
back the save; the fingerprint ledger is left behind so the next save
retries.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .auth import Identity, authorize_project
from .content import INTERNAL_PREFIX, ContentItem, Project
from .errors import RegenerationFailure, ValidationError
from .fingerprint import fingerprint_items
from .protocols import ContentStore
from .revalidation import RevalidationOutcome, RevalidationTrigger
from .validation import normalize_items, validate_content_form

logger = logging.getLogger(__name__)


@dataclass
class SaveResult:
    """Outcome of one save operation.

    Attributes:
        project: The project as stored after the save.
        fingerprint: Fingerprint of the saved public content.
        saved: Always True when returned; save failures raise instead.
        published: Whether the public page was regenerated or already current.
        publish_error: Why publishing failed, if it did.
        outcome: The trigger outcome, when the trigger ran.
    """

    project: Project
    fingerprint: str
    saved: bool = True
    published: bool = False
    publish_error: str | None = None
    outcome: RevalidationOutcome | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "saved": self.saved,
            "published": self.published,
            "fingerprint": self.fingerprint,
            "project": self.project.to_dict(include_content=False),
        }
        if self.outcome is not None:
            payload["revalidation"] = self.outcome.to_dict()
        if self.publish_error:
            payload["publishError"] = self.publish_error
        return payload


def split_form_state(form_state: Any) -> tuple[list[ContentItem], str | None, dict | None]:
    """Separate an edit form's state into content and metadata.

    The form carries the project ``name`` and ``settings`` next to the
    content fields. Those, ``projectId`` and internal ``_``-prefixed fields
    are never stored as content items.

    Returns:
        ``(items, name, settings)``; name and settings are None when absent.

    Raises:
        ValidationError: If the form shape or any key is invalid.
    """
    settings = None
    if isinstance(form_state, Mapping) and "settings" in form_state:
        settings = form_state["settings"]
        if settings is not None and not isinstance(settings, dict):
            raise ValidationError("Settings must be an object", {"settings": "Must be an object"})
        form_state = {k: v for k, v in form_state.items() if k != "settings"}
    items = normalize_items(form_state)
    name = None
    content = []
    for item in items:
        if item.key == "name":
            name = item.value
        elif item.key == "projectId" or item.key.startswith(INTERNAL_PREFIX):
            continue
        elif item.key == "settings":
            raise ValidationError(
                "Settings must be sent as an object", {"settings": "Must be an object"}
            )
        else:
            content.append(item)
    return content, name, settings


class ContentEditor:
    """Saves edits and drives the revalidation of the edited page.

    Attributes:
        store: Content store the edits are written to.
        trigger: Revalidation trigger for the project's public path.
    """

    def __init__(self, store: ContentStore, trigger: RevalidationTrigger):
        self.store = store
        self.trigger = trigger

    async def save(
        self,
        identity: Identity,
        project_id: str,
        content: Any = (),
        name: str | None = None,
        settings: dict[str, Any] | None = None,
        publish: bool = True,
    ) -> SaveResult:
        """Save content and metadata, then publish the project page.

        Args:
            identity: Caller identity; admin or the project's owner.
            project_id: Project being edited.
            content: Edit form state, a mapping or a list of ``{key, value}``.
            name: New project name, overriding a ``name`` field in the form.
            settings: New settings, overriding ``settings`` in the form.
            publish: Whether to run the revalidation trigger after saving.

        Returns:
            SaveResult. Publish failures are reported here, not raised.

        Raises:
            Unauthorized: If the caller may not edit the project.
            ValidationError: If the form fails validation; nothing is saved.
            NotFound: If the project is unknown.
            StoreFailure: If the write failed.
        """
        authorize_project(identity, project_id)
        items, form_name, form_settings = split_form_state(content)
        validate_content_form(items)
        project = self.store.update_project(
            project_id,
            items=items,
            name=name if name is not None else form_name,
            settings=settings if settings is not None else form_settings,
        )
        fingerprint = fingerprint_items(project.content)
        result = SaveResult(project=project, fingerprint=fingerprint)
        logger.info("Saved project %s (fingerprint %s)", project_id, fingerprint)
        if not publish:
            return result

        try:
            result.outcome = await self.trigger.revalidate(
                identity, project.path, fingerprint=fingerprint
            )
        except RegenerationFailure as exc:
            result.outcome = exc.outcome
            result.publish_error = exc.message
            logger.warning("Saved %s but publishing failed: %s", project_id, exc.message)
            return result
        result.published = True
        return result
