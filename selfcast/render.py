"""Static render boundary for Selfcast.

Public project pages are rendered ahead of time into the output directory
and served as static files. Regenerating a path re-renders that page from
the persisted content and swaps the new file into place atomically, so
readers see either the old page or the new one, never a partial write.

Key classes:
- SiteRenderer: Jinja2 environment and page rendering.
- LocalRenderBoundary: Renders pages into the output directory.
- HttpRenderBoundary: Asks a remote regeneration endpoint to rebuild a path.

Key functions:
- create_render_boundary: Build the boundary selected by configuration.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape
from markupsafe import Markup, escape

from .collections import ContentMap
from .config import resolve_dir
from .content import Project
from .errors import RegenerationFailure, SelfcastError
from .fingerprint import fingerprint_items
from .protocols import ContentStore
from .utils import (
    atomic_write_text,
    ensure_clean_dir,
    join_root_url,
    normalize_path,
    project_id_from_path,
)

logger = logging.getLogger(__name__)

BUNDLED_TEMPLATES_DIR = Path(__file__).parent / "templates"

THEME_DEFAULTS = {
    "primary_color": "#3b82f6",
    "secondary_color": "#4b5563",
    "accent_color": "#10b981",
    "text_color": "#1f2937",
    "background_color": "#ffffff",
    "font_family": "Arial, sans-serif",
}


@dataclass
class RenderResult:
    """Result of regenerating one public path.

    Attributes:
        path: Normalized public path.
        output_path: File written, for local rendering.
        fingerprint: Fingerprint of the content the page was rendered from.
        duration_ms: Time spent rendering.
    """

    path: str
    output_path: Path | None = None
    fingerprint: str | None = None
    duration_ms: float = 0.0


def render_paragraphs(text: str) -> Markup:
    """Render plain text as HTML paragraphs.

    Blank lines separate paragraphs and single newlines become ``<br>``. The
    text is escaped first, so content values can never inject markup.

    Examples:
        >>> str(render_paragraphs("Hi <b>\\n\\nBye"))
        '<p>Hi &lt;b&gt;</p>\\n<p>Bye</p>'
    """
    blocks = [block.strip() for block in re.split(r"\n\s*\n", str(text or "")) if block.strip()]
    rendered = [
        Markup("<p>{}</p>").format(Markup("<br>").join(escape(line) for line in block.splitlines()))
        for block in blocks
    ]
    return Markup("\n").join(rendered)


class SiteRenderer:
    """Template rendering for public pages using Jinja2.

    Attributes:
        env: Jinja2 environment. User templates shadow the bundled ones.
        base_url: Public origin used by ``url_for``.
    """

    def __init__(self, templates_dir: Path | None = None, base_url: str = ""):
        search_path = []
        if templates_dir is not None and templates_dir.exists():
            search_path.append(templates_dir)
        search_path.append(BUNDLED_TEMPLATES_DIR)
        self.base_url = base_url
        self.env = Environment(
            loader=FileSystemLoader(search_path),
            autoescape=select_autoescape(["html", "xml", "jinja"]),
            enable_async=False,
        )
        self.env.globals["url_for"] = self._url_for
        self.env.filters["paragraphs"] = render_paragraphs

    def _url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://", "//")):
            return path
        return join_root_url(self.base_url, path if path.startswith("/") else f"/{path}")

    def render_project(self, project: Project, fingerprint: str | None = None) -> str:
        """Render a project's public page.

        Args:
            project: Project to render.
            fingerprint: Content fingerprint to embed in the page.

        Returns:
            Rendered HTML string.
        """
        content = ContentMap(project.content)
        theme = {key: content.value(key, default) for key, default in THEME_DEFAULTS.items()}
        template = self.env.get_template("site.html.jinja")
        return template.render(
            project=project,
            content=content,
            theme=theme,
            fingerprint=fingerprint or fingerprint_items(project.content),
            current_year=datetime.now(timezone.utc).year,
        )

    def render_index(self, projects: Iterable[Project]) -> str:
        return self.env.get_template("index.html.jinja").render(projects=list(projects))

    def render_not_found(self) -> str:
        return self.env.get_template("404.html.jinja").render()


class LocalRenderBoundary:
    """Render boundary that writes pages into a local output directory.

    ``/<project_id>`` is written to ``<output_dir>/<project_id>/index.html``;
    ``/`` is written to ``<output_dir>/index.html``.

    Attributes:
        store: Content store the pages are rendered from.
        output_dir: Directory served as the public site.
        renderer: Template renderer.
        listeners: Callables invoked with the path after each regeneration.
    """

    def __init__(
        self,
        store: ContentStore,
        output_dir: Path,
        renderer: SiteRenderer | None = None,
    ):
        self.store = store
        self.output_dir = output_dir
        self.renderer = renderer or SiteRenderer()
        self.listeners: list[Callable[[str], None]] = []

    def output_path_for(self, path: str) -> Path:
        project_id = project_id_from_path(path)
        if project_id is None:
            return self.output_dir / "index.html"
        return self.output_dir / project_id / "index.html"

    def render_path(self, path: str) -> RenderResult:
        """Render one public path synchronously.

        Raises:
            NotFound: If the path names an unknown project.
        """
        started = time.perf_counter()
        normalized = normalize_path(path)
        project_id = project_id_from_path(normalized)
        fingerprint = None
        if project_id is None:
            html = self.renderer.render_index(self.store.list_projects())
        else:
            project = self.store.get_project(project_id)
            fingerprint = fingerprint_items(project.content)
            html = self.renderer.render_project(project, fingerprint)
        target = self.output_path_for(normalized)
        atomic_write_text(target, html)
        self._ensure_not_found_page()
        duration_ms = (time.perf_counter() - started) * 1000
        logger.info("Rendered %s -> %s (%.1f ms)", normalized, target, duration_ms)
        for listener in list(self.listeners):
            listener(normalized)
        return RenderResult(
            path=normalized,
            output_path=target,
            fingerprint=fingerprint,
            duration_ms=duration_ms,
        )

    def _ensure_not_found_page(self) -> None:
        page = self.output_dir / "404.html"
        if not page.exists():
            atomic_write_text(page, self.renderer.render_not_found())

    async def regenerate(self, path: str) -> RenderResult:
        try:
            return await asyncio.to_thread(self.render_path, path)
        except RegenerationFailure:
            raise
        except (SelfcastError, TemplateError, OSError) as exc:
            raise RegenerationFailure(f"Could not regenerate {path}: {exc}", path=path) from exc

    def build_all(
        self, project_ids: Iterable[str] | None = None, clean: bool = False
    ) -> list[RenderResult]:
        """Render every project (or the named ones) plus the index page.

        Args:
            project_ids: Projects to render; all projects when None.
            clean: Wipe the output directory first.

        Returns:
            One RenderResult per rendered path.
        """
        if clean:
            ensure_clean_dir(self.output_dir)
        if project_ids is None:
            ids = [project.project_id for project in self.store.list_projects()]
        else:
            ids = list(project_ids)
            for project_id in ids:
                self.store.get_project(project_id)
        results = [self.render_path(f"/{project_id}") for project_id in ids]
        results.append(self.render_path("/"))
        return results


class HttpRenderBoundary:
    """Render boundary backed by a remote regeneration endpoint.

    Sends ``POST <render_url> {"path": ...}`` and expects a 2xx response,
    optionally with ``{"revalidated": true}``.
    """

    def __init__(
        self,
        render_url: str,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        if not render_url:
            raise ValueError("render_url is required for HTTP rendering")
        self.render_url = render_url
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._client = client

    async def regenerate(self, path: str) -> RenderResult:
        started = time.perf_counter()
        normalized = normalize_path(path)
        try:
            if self._client is not None:
                response = await self._post(self._client, normalized)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await self._post(client, normalized)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RegenerationFailure(
                f"Regeneration request failed for {normalized}: {exc}", path=normalized
            ) from exc
        payload = _json_or_empty(response)
        if payload.get("revalidated") is False:
            message = payload.get("message") or "renderer declined to regenerate"
            raise RegenerationFailure(
                f"Regeneration refused for {normalized}: {message}", path=normalized
            )
        return RenderResult(
            path=normalized,
            fingerprint=payload.get("fingerprint"),
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    async def _post(self, client: httpx.AsyncClient, path: str) -> httpx.Response:
        return await client.post(self.render_url, json={"path": path}, headers=self.headers)


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def create_render_boundary(
    config: dict[str, Any], store: ContentStore
) -> LocalRenderBoundary | HttpRenderBoundary:
    """Build the render boundary selected by ``render_mode``.

    Raises:
        ValueError: For an unknown render_mode or a missing render_url.
    """
    mode = str(config.get("render_mode") or "local")
    if mode == "http":
        return HttpRenderBoundary(
            str(config.get("render_url") or ""),
            timeout=float(config.get("regeneration_timeout", 10.0)),
        )
    if mode != "local":
        raise ValueError(f"Unknown render_mode: {mode}")
    renderer = SiteRenderer(
        resolve_dir(config, "templates_dir"), base_url=str(config.get("base_url") or "")
    )
    return LocalRenderBoundary(store, resolve_dir(config, "output_dir"), renderer)
