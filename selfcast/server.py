"""HTTP server for Selfcast.

One ThreadingHTTPServer serves both the JSON API used by the editor and the
public site rendered into the output directory:
- ``/api/...`` (and ``/revalidate``) routes are dispatched by SelfcastApp.
- Every other path is served from the output directory. A project page that
  has never been rendered is rendered on demand; unknown pages get 404.html.
- With live reload enabled, HTML responses carry a small script that
  listens on a websocket and reloads after the page is regenerated.

Key classes:
- SelfcastApp: Routing and request handling, independent of sockets.
- SelfcastServer: Runs the HTTP and websocket servers.
- ReloadBroadcaster: Websocket server pushing reload messages.
- ProjectWatcher: Revalidates projects whose documents change on disk.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any

import websockets
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .auth import SYSTEM_IDENTITY, Identity, TokenSigner, authorize_project
from .config import get_secret, resolve_dir
from .editor import ContentEditor
from .errors import (
    NotFound,
    RegenerationFailure,
    SelfcastError,
    Unauthorized,
    ValidationError,
)
from .protocols import ContentStore, RenderBoundary
from .render import LocalRenderBoundary, create_render_boundary
from .revalidation import RevalidationTrigger, create_trigger
from .store import YamlContentStore
from .utils import normalize_path, project_id_from_path

logger = logging.getLogger(__name__)

RELOAD_SCRIPT_TEMPLATE = """
<script>
(() => {{
  const ws = new WebSocket('ws://' + location.hostname + ':{ws_port}');
  ws.onmessage = (event) => {{
    const data = JSON.parse(event.data || '{{}}');
    if (data.type === 'reload' && (!data.path || data.path === location.pathname.replace(/\\/+$/, '') || data.path === '/')) location.reload();
  }};
}})();
</script>
"""

_PROJECT_ROUTE = re.compile(r"^/api/projects/(?P<project_id>[^/]+)(?P<content>/content)?$")
_REVALIDATE_ROUTES = ("/api/revalidate", "/revalidate")


@dataclass
class Response:
    """A response produced by SelfcastApp, before it hits the socket."""

    status: int
    payload: dict[str, Any] | None = None
    body: bytes = b""
    content_type: str = "application/json"
    headers: dict[str, str] = field(default_factory=dict)

    def encode(self) -> bytes:
        if self.payload is not None:
            return json.dumps(self.payload).encode("utf-8")
        return self.body


def json_response(status: int, payload: dict[str, Any]) -> Response:
    return Response(status=status, payload=payload)


class SelfcastApp:
    """Request handling for the API and the public site.

    Attributes:
        store: Content store.
        boundary: Render boundary.
        trigger: Revalidation trigger.
        editor: Save-and-publish service.
        signer: Token verifier for API requests.
        output_dir: Directory holding the rendered public site.
        reload_script: Script injected into HTML pages, or "" when disabled.
    """

    def __init__(
        self,
        store: ContentStore,
        boundary: RenderBoundary,
        trigger: RevalidationTrigger,
        signer: TokenSigner,
        output_dir: Path,
        reload_script: str = "",
    ):
        self.store = store
        self.boundary = boundary
        self.trigger = trigger
        self.editor = ContentEditor(store, trigger)
        self.signer = signer
        self.output_dir = output_dir
        self.reload_script = reload_script
        self.started_at = time.monotonic()

    @classmethod
    def from_config(cls, config: dict[str, Any], reload_script: str = "") -> SelfcastApp:
        """Wire the store, boundary and trigger from configuration.

        Raises:
            ConfigError: If no signing secret is configured.
        """
        store = YamlContentStore(resolve_dir(config, "data_dir"))
        boundary = create_render_boundary(config, store)
        trigger = create_trigger(config, store, boundary)
        signer = TokenSigner(get_secret(config), max_age=int(config.get("token_max_age", 86400)))
        return cls(
            store,
            boundary,
            trigger,
            signer,
            resolve_dir(config, "output_dir"),
            reload_script=reload_script,
        )

    # API

    def handle_api(
        self, method: str, path: str, headers: Mapping[str, str], body: bytes = b""
    ) -> Response:
        """Dispatch one API request and turn errors into JSON responses."""
        route = normalize_path(path)
        try:
            if route == "/api/health":
                return self._only(method, "GET", self._health)
            identity = self.signer.identity_from_headers(headers)
            if route in _REVALIDATE_ROUTES:
                return self._only(method, "POST", lambda: self._revalidate(identity, body))
            if route == "/api/projects":
                if method == "GET":
                    return self._list_projects(identity)
                if method == "POST":
                    return self._create_project(identity, body)
                return _method_not_allowed()
            match = _PROJECT_ROUTE.match(route)
            if match:
                project_id = match.group("project_id")
                if match.group("content"):
                    return self._content_route(identity, method, project_id, body)
                return self._project_route(identity, method, project_id, body)
            return json_response(404, {"message": "Not found"})
        except RegenerationFailure as exc:
            return json_response(500, {"message": "Error revalidating", "error": exc.message})
        except SelfcastError as exc:
            if exc.status >= 500:
                logger.error("%s %s failed: %s", method, route, exc.message)
            return json_response(exc.status, exc.to_dict())

    def _only(self, method: str, allowed: str, handler: Callable[[], Response]) -> Response:
        if method != allowed:
            return _method_not_allowed()
        return handler()

    def _health(self) -> Response:
        return json_response(
            200,
            {
                "status": "ok",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "uptime": round(time.monotonic() - self.started_at, 3),
            },
        )

    def _revalidate(self, identity: Identity, body: bytes) -> Response:
        payload = _parse_json(body)
        path = payload.get("path")
        if not isinstance(path, str) or not path:
            raise ValidationError("Path is required", {"path": "Required"})
        fingerprint = payload.get("contentFingerprint")
        if fingerprint is not None and not isinstance(fingerprint, str):
            raise ValidationError("contentFingerprint must be a string")
        timestamp = _parse_timestamp(payload.get("timestamp"))
        outcome = asyncio.run(
            self.trigger.revalidate(identity, path, fingerprint=fingerprint, timestamp=timestamp)
        )
        return json_response(200, outcome.to_dict())

    def _list_projects(self, identity: Identity) -> Response:
        if identity.is_admin:
            projects = [p.to_dict(include_content=False) for p in self.store.list_projects()]
            return json_response(200, {"projects": projects})
        if not identity.project_id:
            raise NotFound("No project assigned")
        project = self.store.get_project(identity.project_id)
        return json_response(200, {"project": project.to_dict(include_content=False)})

    def _create_project(self, identity: Identity, body: bytes) -> Response:
        if not identity.is_admin:
            raise Unauthorized("Only administrators can create projects")
        payload = _parse_json(body)
        project = self.store.create_project(
            payload.get("projectId"),
            payload.get("name") or "",
            content=payload.get("content") or (),
        )
        return json_response(201, {"project": project.to_dict()})

    def _project_route(
        self, identity: Identity, method: str, project_id: str, body: bytes
    ) -> Response:
        authorize_project(identity, project_id)
        if method == "GET":
            project = self.store.get_project(project_id)
            return json_response(200, {"project": project.to_dict(include_content=False)})
        if method == "PUT":
            payload = _parse_json(body)
            result = asyncio.run(
                self.editor.save(
                    identity,
                    project_id,
                    content=payload.get("content") or (),
                    name=payload.get("name"),
                    settings=payload.get("settings"),
                )
            )
            return json_response(200, result.to_dict())
        return _method_not_allowed()

    def _content_route(
        self, identity: Identity, method: str, project_id: str, body: bytes
    ) -> Response:
        authorize_project(identity, project_id)
        if method == "GET":
            items = self.store.get_content(project_id)
            return json_response(200, {"content": [item.to_dict() for item in items]})
        if method == "PUT":
            payload = _parse_json(body)
            if "content" not in payload:
                raise ValidationError("Content is required", {"content": "Required"})
            result = asyncio.run(self.editor.save(identity, project_id, content=payload["content"]))
            return json_response(200, result.to_dict())
        return _method_not_allowed()

    # Public site

    def public_page(self, path: str) -> Response:
        """Resolve a public path to a file in the output directory.

        Project pages that were never rendered are rendered on demand when
        the boundary is local. Anything else missing gets the 404 page.
        """
        normalized = normalize_path(path)
        target = self._resolve_output(normalized)
        if target is None:
            return self._not_found_page()
        if not target.exists():
            target = self._render_on_demand(normalized)
            if target is None:
                return self._not_found_page()
        if target.suffix == ".html":
            return self._html(200, target.read_text(encoding="utf-8"))
        return Response(
            status=200,
            body=target.read_bytes(),
            content_type=_guess_type(target),
        )

    def _resolve_output(self, path: str) -> Path | None:
        root = self.output_dir.resolve()
        candidate = (root / path.lstrip("/")).resolve()
        try:
            candidate.relative_to(root)
        except ValueError:
            return None
        if candidate.is_dir() or candidate == root or "." not in candidate.name:
            candidate = candidate / "index.html"
        if candidate.name.startswith("."):
            return None
        return candidate

    def _render_on_demand(self, path: str) -> Path | None:
        if not isinstance(self.boundary, LocalRenderBoundary):
            return None
        project_id = project_id_from_path(path)
        if project_id is not None and path != f"/{project_id}":
            return None
        try:
            return self.boundary.render_path(path).output_path
        except NotFound:
            return None
        except (SelfcastError, OSError) as exc:
            logger.error("On-demand render of %s failed: %s", path, exc)
            return None

    def _not_found_page(self) -> Response:
        page = self.output_dir / "404.html"
        if page.exists():
            return self._html(404, page.read_text(encoding="utf-8"))
        return self._html(404, "<h1>Site Not Found</h1>")

    def _html(self, status: int, content: str) -> Response:
        if self.reload_script:
            if "</body>" in content:
                content = content.replace("</body>", f"{self.reload_script}</body>")
            else:
                content += self.reload_script
        return Response(
            status=status,
            body=content.encode("utf-8"),
            content_type="text/html; charset=utf-8",
        )


def _method_not_allowed() -> Response:
    return json_response(405, {"message": "Method not allowed"})


def _parse_json(body: bytes) -> dict[str, Any]:
    if not body:
        return {}
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Invalid JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _parse_timestamp(value: Any) -> int | None:
    """Accept a JSON number of epoch milliseconds, such as 1700000000000 or 1700000000000.0."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("timestamp must be a number (epoch milliseconds)")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise ValidationError("timestamp must be a whole number (epoch milliseconds)")


_CONTENT_TYPES = {
    ".css": "text/css; charset=utf-8",
    ".js": "application/javascript",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".txt": "text/plain; charset=utf-8",
    ".xml": "application/xml",
}


def _guess_type(path: Path) -> str:
    return _CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")


class _RequestHandler(BaseHTTPRequestHandler):
    """Bridges http.server requests to a SelfcastApp."""

    app: SelfcastApp

    def do_GET(self):
        self._dispatch("GET")

    def do_POST(self):
        self._dispatch("POST")

    def do_PUT(self):
        self._dispatch("PUT")

    def do_DELETE(self):
        self._dispatch("DELETE")

    def _dispatch(self, method: str) -> None:
        route = normalize_path(self.path)
        if route.startswith("/api/") or route == "/api" or route in _REVALIDATE_ROUTES:
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length) if length else b""
            response = self.app.handle_api(method, self.path, self.headers, body)
        elif method == "GET":
            response = self.app.public_page(self.path)
        else:
            response = _method_not_allowed()
        self._send(response)

    def _send(self, response: Response) -> None:
        encoded = response.encode()
        self.send_response(response.status)
        self.send_header("Content-Type", response.content_type)
        self.send_header("Content-Length", str(len(encoded)))
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(encoded)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


class ReloadBroadcaster:
    """Websocket server that tells preview pages to reload.

    Runs its own event loop in a background thread; ``notify`` may be called
    from any thread.
    """

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self._clients: set = set()
        self._loop = asyncio.new_event_loop()

    def start(self) -> None:  # pragma: no cover - integration path
        threading.Thread(target=self._run, daemon=True).start()

    def stop(self) -> None:
        self._loop.call_soon_threadsafe(self._loop.stop)

    def _run(self) -> None:  # pragma: no cover - integration path
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._serve())
        except OSError as exc:
            logger.error("WebSocket server failed to start (port %s): %s", self.port, exc)

    async def _serve(self) -> None:  # pragma: no cover - integration path
        async with websockets.serve(self._handler, self.host, self.port):
            await asyncio.Future()

    async def _handler(self, websocket):
        self._clients.add(websocket)
        try:
            await websocket.wait_closed()
        finally:
            self._clients.discard(websocket)

    def notify(self, path: str) -> None:
        if not self._loop.is_running():
            return
        message = json.dumps({"type": "reload", "path": path})
        asyncio.run_coroutine_threadsafe(self.broadcast(message), self._loop)

    async def broadcast(self, message: str) -> None:
        stale = set()
        for ws in list(self._clients):
            try:
                await ws.send(message)
            except websockets.ConnectionClosed:
                stale.add(ws)
        for ws in stale:
            self._clients.discard(ws)


class SelfcastServer:
    """Runs the API, the public site and (optionally) live reload.

    Attributes:
        config: Loaded configuration.
        app: The request handling application.
        host: Interface to bind.
        http_port: Port for HTTP.
        ws_port: Port for the reload websocket.
    """

    def __init__(
        self,
        config: dict[str, Any],
        http_port: int | None = None,
        ws_port: int | None = None,
        live_reload: bool = False,
    ):
        self.config = config
        self.host = str(config.get("host") or "127.0.0.1")
        self.http_port = int(http_port or config.get("port", 4000))
        self.ws_port = int(
            ws_port if ws_port is not None else config.get("ws_port", self.http_port + 1)
        )
        script = RELOAD_SCRIPT_TEMPLATE.format(ws_port=self.ws_port) if live_reload else ""
        self.app = SelfcastApp.from_config(config, reload_script=script)
        self._broadcaster = ReloadBroadcaster(self.host, self.ws_port) if live_reload else None
        if self._broadcaster and isinstance(self.app.boundary, LocalRenderBoundary):
            self.app.boundary.listeners.append(self._broadcaster.notify)
        self._httpd: ThreadingHTTPServer | None = None

    def start(self) -> None:  # pragma: no cover - integration path
        if self._broadcaster:
            self._broadcaster.start()
        handler_cls = type("_BoundRequestHandler", (_RequestHandler,), {"app": self.app})
        self._httpd = ThreadingHTTPServer((self.host, self.http_port), handler_cls)
        logger.info("Serving Selfcast at http://%s:%s", self.host, self.http_port)
        try:
            self._httpd.serve_forever()
        except KeyboardInterrupt:
            self.stop()

    def stop(self) -> None:
        if self._httpd:
            self._httpd.shutdown()
            self._httpd.server_close()
        if self._broadcaster:
            self._broadcaster.stop()


class ProjectWatcher:
    """Revalidates projects whose YAML documents change on disk.

    Changes are attributed to the project named by the document file and run
    through the trigger as the system identity; unchanged fingerprints are
    skipped by the trigger itself.
    """

    def __init__(self, store: YamlContentStore, trigger: RevalidationTrigger):
        self.store = store
        self.trigger = trigger
        self._observer: Observer | None = None
        self._lock = threading.Lock()

    def start(self) -> None:
        self.store.projects_dir.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(
            _ProjectChangeHandler(self), str(self.store.projects_dir), recursive=False
        )
        observer.start()
        self._observer = observer
        logger.info("Watching %s for project changes", self.store.projects_dir)

    def stop(self) -> None:
        if self._observer:
            self._observer.stop()
            self._observer.join()

    def project_changed(self, project_id: str) -> None:
        # One revalidation at a time; the observer thread delivers events serially anyway.
        with self._lock:
            try:
                outcome = asyncio.run(self.trigger.revalidate(SYSTEM_IDENTITY, f"/{project_id}"))
            except SelfcastError as exc:
                logger.warning("Revalidation after change to %s failed: %s", project_id, exc)
                return
            if outcome.revalidated:
                logger.info("Republished /%s after on-disk change", project_id)


class _ProjectChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher: ProjectWatcher):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in ("created", "modified", "moved"):
            return
        raw = getattr(event, "dest_path", "") or event.src_path
        path = Path(raw if isinstance(raw, str) else raw.decode())
        if path.suffix != ".yaml" or path.name.startswith("."):
            return
        self.watcher.project_changed(path.stem)


