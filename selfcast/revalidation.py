"""Revalidation trigger for Selfcast.

Decides whether a public path must be regenerated after an edit and, if so,
drives the regeneration. Each request walks a small state machine::

    IDLE -> FINGERPRINT_COMPUTED -> SKIPPED
                                 -> TRIGGERING -> SUCCEEDED
                                               -> FAILED

A request is skipped when its fingerprint equals the last fingerprint that
was successfully revalidated for the path. Otherwise the render boundary is
asked to regenerate the path. Once it has, a few concurrent cache-bypass
GETs hit the public URL to push fresh content through intermediary caches.
The bypass fetches are best-effort; only the primary regeneration decides
success. The ledger advances on success only, so a failed regeneration is
retried by the next save or by an identical retry of the same request.

Key classes:
- RevalidationTrigger: The trigger itself.
- RevalidationRequest / RevalidationOutcome: Input and result of one trigger.
- MemoryLedger / StoreLedger: Last-revalidated fingerprint tracking.
- CacheBypassFetcher: Cache-busting GETs of the public URL.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from .auth import Identity, authorize_revalidation
from .batch import BatchResult, Operation, run_best_effort
from .errors import NotFound, RegenerationFailure, StoreFailure, ValidationError
from .fingerprint import fingerprint_items
from .protocols import ContentStore, FingerprintLedger, RenderBoundary
from .utils import cache_busting_url, join_root_url, normalize_path, project_id_from_path

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

DEFAULT_REGENERATION_TIMEOUT = 10.0
DEFAULT_BYPASS_FETCHES = 3
_MAX_REMEMBERED_REQUESTS = 1024


class RevalidationState(str, Enum):
    IDLE = "idle"
    FINGERPRINT_COMPUTED = "fingerprint_computed"
    SKIPPED = "skipped"
    TRIGGERING = "triggering"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS = {
    RevalidationState.IDLE: {RevalidationState.FINGERPRINT_COMPUTED},
    RevalidationState.FINGERPRINT_COMPUTED: {
        RevalidationState.SKIPPED,
        RevalidationState.TRIGGERING,
    },
    RevalidationState.TRIGGERING: {RevalidationState.SUCCEEDED, RevalidationState.FAILED},
}


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RevalidationRequest:
    """One request to revalidate a path. Never persisted.

    Attributes:
        path: Normalized public path.
        fingerprint: Fingerprint of the content to publish; None when unknown,
            in which case the request always triggers.
        timestamp: Request time in epoch milliseconds.
    """

    path: str
    fingerprint: str | None
    timestamp: int

    @property
    def key(self) -> tuple[str, str | None, int]:
        return (self.path, self.fingerprint, self.timestamp)


@dataclass
class RevalidationOutcome:
    """Result of processing one RevalidationRequest.

    Attributes:
        path: Normalized public path.
        fingerprint: Fingerprint of the request.
        previous_fingerprint: Ledger value before the request.
        state: Final state reached.
        reason: Why the request was skipped (``unchanged`` or ``replay``).
        bypass: Aggregate result of the cache-bypass fetches.
        error: Primary failure message, when FAILED.
        duration_ms: Time spent triggering.
        history: Every state visited, in order.
    """

    path: str
    fingerprint: str | None
    previous_fingerprint: str | None
    state: RevalidationState = RevalidationState.IDLE
    reason: str = ""
    bypass: BatchResult | None = None
    error: str | None = None
    duration_ms: float = 0.0
    history: list[RevalidationState] = field(
        default_factory=lambda: [RevalidationState.IDLE]
    )

    @property
    def revalidated(self) -> bool:
        return self.state is RevalidationState.SUCCEEDED

    @property
    def skipped(self) -> bool:
        return self.state is RevalidationState.SKIPPED

    def advance(self, state: RevalidationState) -> None:
        if state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Invalid revalidation transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "path": self.path,
            "revalidated": self.revalidated,
            "state": self.state.value,
            "fingerprint": self.fingerprint,
            "previousFingerprint": self.previous_fingerprint,
        }
        if self.reason:
            payload["reason"] = self.reason
        if self.bypass is not None:
            payload["cacheBypass"] = self.bypass.to_dict()
        if self.error:
            payload["error"] = self.error
        return payload


class MemoryLedger:
    """Last-revalidated fingerprints kept for the life of the process."""

    def __init__(self) -> None:
        self._fingerprints: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> str | None:
        with self._lock:
            return self._fingerprints.get(normalize_path(path))

    def record(self, path: str, fingerprint: str) -> None:
        with self._lock:
            self._fingerprints[normalize_path(path)] = fingerprint


class StoreLedger(MemoryLedger):
    """Ledger that also persists project-page fingerprints in the store.

    For ``/<project_id>`` paths the fingerprint is written to the project
    document, so it survives restarts. Other paths are session-only.
    """

    def __init__(self, store: ContentStore):
        super().__init__()
        self.store = store

    def get(self, path: str) -> str | None:
        cached = super().get(path)
        if cached is not None:
            return cached
        project_id = self._project_for(path)
        if project_id is None:
            return None
        try:
            return self.store.get_project(project_id).last_revalidated_fingerprint
        except NotFound:
            return None

    def record(self, path: str, fingerprint: str) -> None:
        super().record(path, fingerprint)
        project_id = self._project_for(path)
        if project_id is None:
            return
        try:
            self.store.mark_revalidated(project_id, fingerprint)
        except (NotFound, StoreFailure) as exc:
            logger.warning("Could not persist fingerprint for %s: %s", path, exc)

    @staticmethod
    def _project_for(path: str) -> str | None:
        normalized = normalize_path(path)
        project_id = project_id_from_path(normalized)
        if project_id is None or normalized != f"/{project_id}":
            return None
        return project_id


class CacheBypassFetcher:
    """Issues cache-busting GETs of a public URL.

    Each fetch carries a distinct ``_cb`` query parameter and no-cache
    headers so that CDN and proxy caches miss.

    Attributes:
        base_url: Public origin of the site. Fetching is disabled when empty.
        count: Number of fetches per revalidation.
        timeout: Per-fetch timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        count: int = DEFAULT_BYPASS_FETCHES,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url
        self.count = count
        self.timeout = timeout
        self._client = client

    def urls(self, path: str, timestamp: int) -> list[str]:
        target = join_root_url(self.base_url, path)
        return [cache_busting_url(target, f"{timestamp}-{n}") for n in range(1, self.count + 1)]

    async def run(self, path: str, timestamp: int) -> BatchResult:
        label = f"cache-bypass {path}"
        if not self.base_url or self.count <= 0:
            logger.debug("%s: no base_url configured, skipping", label)
            return BatchResult(label=label)
        if self._client is not None:
            return await run_best_effort(self._operations(self._client, path, timestamp), label)
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            return await run_best_effort(self._operations(client, path, timestamp), label)

    def _operations(self, client: httpx.AsyncClient, path: str, timestamp: int) -> list[Operation]:
        return [
            lambda url=url: self._fetch(client, url) for url in self.urls(path, timestamp)
        ]

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> int:
        response = await client.get(url, headers=NO_CACHE_HEADERS)
        response.raise_for_status()
        return response.status_code


class RevalidationTrigger:
    """Decides whether to regenerate a path and drives the regeneration.

    Attributes:
        store: Content store, used for touching timestamps and reading content.
        boundary: Render boundary asked to regenerate paths.
        ledger: Last-revalidated fingerprint per path.
        fetcher: Cache-bypass fetcher; None disables the supplementary fetches.
        regeneration_timeout: Bound on the primary regeneration call, seconds.
    """

    def __init__(
        self,
        store: ContentStore,
        boundary: RenderBoundary,
        ledger: FingerprintLedger | None = None,
        fetcher: CacheBypassFetcher | None = None,
        regeneration_timeout: float = DEFAULT_REGENERATION_TIMEOUT,
    ):
        self.store = store
        self.boundary = boundary
        self.ledger = ledger if ledger is not None else StoreLedger(store)
        self.fetcher = fetcher
        self.regeneration_timeout = regeneration_timeout
        self._processed: OrderedDict[tuple[str, str | None, int], None] = OrderedDict()
        self._processed_lock = threading.Lock()

    async def revalidate(
        self,
        identity: Identity,
        path: str,
        fingerprint: str | None = None,
        timestamp: int | None = None,
    ) -> RevalidationOutcome:
        """Revalidate a public path on behalf of a caller.

        Args:
            identity: Caller identity; must be admin or own the path's project.
            path: Public path to regenerate, e.g. ``/acme``.
            fingerprint: Fingerprint of the content to publish. Computed from
                the store when omitted.
            timestamp: Request time in epoch milliseconds; defaults to now.

        Returns:
            The outcome, SKIPPED or SUCCEEDED.

        Raises:
            Unauthorized: Before any side effect, if the caller lacks rights.
            ValidationError: If the path is missing or not absolute.
            RegenerationFailure: If the primary regeneration failed.
        """
        if not isinstance(path, str) or not path.strip():
            raise ValidationError("Path is required", {"path": "Required"})
        authorize_revalidation(identity, path)
        if not path.startswith("/"):
            raise ValidationError("Path must start with '/'", {"path": "Must be absolute"})
        normalized = normalize_path(path)
        if fingerprint is None:
            fingerprint = self._current_fingerprint(normalized)
        request = RevalidationRequest(
            path=normalized,
            fingerprint=fingerprint,
            timestamp=timestamp if timestamp is not None else now_ms(),
        )
        return await self.process(request, check_replay=timestamp is not None)

    def _current_fingerprint(self, path: str) -> str | None:
        project_id = project_id_from_path(path)
        if project_id is None:
            return None
        try:
            return fingerprint_items(self.store.get_content(project_id))
        except NotFound:
            return None

    async def process(
        self, request: RevalidationRequest, check_replay: bool = True
    ) -> RevalidationOutcome:
        """Run an already-authorized request through the state machine.

        Replay protection only applies to requests whose timestamp came from
        the caller; a server-assigned timestamp identifies nothing.
        """
        outcome = RevalidationOutcome(
            path=request.path,
            fingerprint=request.fingerprint,
            previous_fingerprint=self.ledger.get(request.path),
        )
        outcome.advance(RevalidationState.FINGERPRINT_COMPUTED)

        if check_replay and self._seen(request):
            outcome.reason = "replay"
            outcome.advance(RevalidationState.SKIPPED)
            logger.info("Skipping replayed revalidation of %s", request.path)
            return outcome
        if request.fingerprint is not None and request.fingerprint == outcome.previous_fingerprint:
            outcome.reason = "unchanged"
            outcome.advance(RevalidationState.SKIPPED)
            logger.info(
                "Skipping revalidation of %s: fingerprint %s unchanged",
                request.path,
                request.fingerprint,
            )
            return outcome

        outcome.advance(RevalidationState.TRIGGERING)
        logger.info(
            "Revalidating %s (fingerprint %s -> %s)",
            request.path,
            outcome.previous_fingerprint,
            request.fingerprint,
        )
        await self._touch(request.path)

        started = time.perf_counter()
        try:
            await self._regenerate(request.path)
        except Exception as exc:
            outcome.duration_ms = (time.perf_counter() - started) * 1000
            outcome.error = str(exc)
            outcome.advance(RevalidationState.FAILED)
            logger.error("Revalidation of %s failed: %s", request.path, exc)
            raise RegenerationFailure(
                f"Error updating website: {exc}", path=request.path, outcome=outcome
            ) from exc

        # Fetching before the primary finishes would re-cache the stale page.
        try:
            outcome.bypass = await self._bypass(request)
        except Exception as exc:
            logger.warning("Cache bypass for %s failed (non-blocking): %s", request.path, exc)
        outcome.duration_ms = (time.perf_counter() - started) * 1000

        outcome.advance(RevalidationState.SUCCEEDED)
        if request.fingerprint is not None:
            self.ledger.record(request.path, request.fingerprint)
        if check_replay:
            self._remember(request)
        logger.info("Revalidated %s in %.1f ms", request.path, outcome.duration_ms)
        return outcome

    async def _touch(self, path: str) -> None:
        project_id = project_id_from_path(path)
        if project_id is None:
            return
        try:
            await asyncio.to_thread(self.store.touch, project_id)
        except Exception as exc:
            logger.warning("Could not touch project %s (non-blocking): %s", project_id, exc)

    async def _regenerate(self, path: str) -> Any:
        try:
            return await asyncio.wait_for(
                self.boundary.regenerate(path), timeout=self.regeneration_timeout
            )
        except asyncio.TimeoutError as exc:
            raise RegenerationFailure(
                f"Regeneration of {path} timed out after {self.regeneration_timeout:g}s",
                path=path,
            ) from exc

    async def _bypass(self, request: RevalidationRequest) -> BatchResult | None:
        if self.fetcher is None:
            return None
        return await self.fetcher.run(request.path, request.timestamp)

    def _seen(self, request: RevalidationRequest) -> bool:
        with self._processed_lock:
            return request.key in self._processed

    def _remember(self, request: RevalidationRequest) -> None:
        with self._processed_lock:
            self._processed[request.key] = None
            while len(self._processed) > _MAX_REMEMBERED_REQUESTS:
                self._processed.popitem(last=False)


def create_trigger(
    config: dict[str, Any], store: ContentStore, boundary: RenderBoundary
) -> RevalidationTrigger:
    """Build a trigger from configuration."""
    fetcher = CacheBypassFetcher(
        str(config.get("base_url") or ""),
        count=int(config.get("cache_bypass_fetches", DEFAULT_BYPASS_FETCHES)),
        timeout=float(config.get("fetch_timeout", 5.0)),
    )
    return RevalidationTrigger(
        store,
        boundary,
        ledger=StoreLedger(store),
        fetcher=fetcher,
        regeneration_timeout=float(
            config.get("regeneration_timeout", DEFAULT_REGENERATION_TIMEOUT)
        ),
    )
