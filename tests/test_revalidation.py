import asyncio
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest
import respx

from selfcast.batch import BatchResult, run_best_effort
from selfcast.errors import NotFound, RegenerationFailure, Unauthorized, ValidationError
from selfcast.fingerprint import compute_fingerprint
from selfcast.revalidation import (
    NO_CACHE_HEADERS,
    CacheBypassFetcher,
    MemoryLedger,
    RevalidationOutcome,
    RevalidationRequest,
    RevalidationState,
    RevalidationTrigger,
    StoreLedger,
    create_trigger,
)

BASE_URL = "https://sites.example.com"
F_A = compute_fingerprint({"rendered_title": "A"})
F_B = compute_fingerprint({"rendered_title": "B"})


def make_trigger(store, boundary, fetcher=None, **kwargs):
    return RevalidationTrigger(store, boundary, ledger=StoreLedger(store), fetcher=fetcher, **kwargs)


def test_first_trigger_succeeds_and_advances_ledger(store, boundary, admin):
    trigger = make_trigger(store, boundary)
    outcome = asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_A))
    assert outcome.state is RevalidationState.SUCCEEDED
    assert outcome.revalidated
    assert outcome.history == [
        RevalidationState.IDLE,
        RevalidationState.FINGERPRINT_COMPUTED,
        RevalidationState.TRIGGERING,
        RevalidationState.SUCCEEDED,
    ]
    assert boundary.calls == ["/acme"]
    assert store.get_project("acme").last_revalidated_fingerprint == F_A


def test_second_trigger_with_same_fingerprint_is_skipped(store, boundary, admin):
    trigger = make_trigger(store, boundary)
    asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_A))
    outcome = asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_A))
    assert outcome.state is RevalidationState.SKIPPED
    assert outcome.reason == "unchanged"
    assert not outcome.revalidated
    assert boundary.calls == ["/acme"]


def test_fingerprint_defaults_to_stored_content(store, boundary, admin):
    trigger = make_trigger(store, boundary)
    outcome = asyncio.run(trigger.revalidate(admin, "/acme"))
    assert outcome.fingerprint == F_A


def test_identical_retry_after_failure_regenerates(store, boundary, admin):
    trigger = make_trigger(store, boundary)
    boundary.fail_with = RegenerationFailure("boom")
    with pytest.raises(RegenerationFailure):
        asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_B, timestamp=1000))
    boundary.fail_with = None
    outcome = asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_B, timestamp=1000))
    assert outcome.state is RevalidationState.SUCCEEDED
    assert boundary.calls == ["/acme", "/acme"]
    assert store.get_project("acme").last_revalidated_fingerprint == F_B


def test_exact_replay_after_success_is_skipped(store, boundary, admin):
    trigger = make_trigger(store, boundary)
    asyncio.run(trigger.revalidate(admin, "/acme", timestamp=1000))
    trigger.ledger = MemoryLedger()
    outcome = asyncio.run(trigger.revalidate(admin, "/acme", timestamp=1000))
    assert outcome.reason == "replay"
    assert boundary.calls == ["/acme"]


class RecordingFetcher:
    def __init__(self, events):
        self.events = events

    async def run(self, path, timestamp):
        self.events.append("bypass")
        return BatchResult(label=path)


def test_bypass_fetches_start_after_primary_completes(store, admin):
    events = []

    class SlowBoundary:
        async def regenerate(self, path):
            events.append("primary-start")
            await asyncio.sleep(0.05)
            events.append("primary-done")

    trigger = make_trigger(store, SlowBoundary(), fetcher=RecordingFetcher(events))
    asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_B))
    assert events == ["primary-start", "primary-done", "bypass"]


def test_failed_primary_skips_bypass_fetches(store, boundary, admin):
    events = []
    boundary.fail_with = RegenerationFailure("down")
    trigger = make_trigger(store, boundary, fetcher=RecordingFetcher(events))
    with pytest.raises(RegenerationFailure) as excinfo:
        asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_B))
    assert events == []
    assert excinfo.value.outcome.bypass is None


def test_remembered_requests_are_bounded_across_threads(store, boundary):
    trigger = make_trigger(store, boundary)
    ledger = MemoryLedger()

    def work(worker):
        for n in range(500):
            request = RevalidationRequest(f"/p{worker}", None, n)
            trigger._remember(request)
            ledger.record(request.path, str(n))

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(work, range(8)))

    assert len(trigger._processed) == 1024
    assert all(ledger.get(f"/p{worker}") == "499" for worker in range(8))


@respx.mock
def test_changed_content_fires_one_primary_and_three_bypass_fetches(store, boundary, admin):
    route = respx.get(url__startswith=f"{BASE_URL}/acme").mock(return_value=httpx.Response(200))
    trigger = make_trigger(store, boundary, fetcher=CacheBypassFetcher(BASE_URL))
    asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_A))
    boundary.calls.clear()
    route.reset()

    outcome = asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_B, timestamp=42))

    assert boundary.calls == ["/acme"]
    assert route.call_count == 3
    urls = {str(call.request.url) for call in route.calls}
    assert urls == {f"{BASE_URL}/acme?_cb=42-{n}" for n in (1, 2, 3)}
    for call in route.calls:
        for name, value in NO_CACHE_HEADERS.items():
            assert call.request.headers[name] == value
    assert outcome.previous_fingerprint == F_A
    assert outcome.bypass.to_dict() == {"total": 3, "succeeded": 3, "failed": 0}
    assert store.get_project("acme").last_revalidated_fingerprint == F_B


@respx.mock
def test_bypass_failures_never_fail_the_trigger(store, boundary, admin):
    respx.get(url__startswith=f"{BASE_URL}/acme").mock(side_effect=httpx.ConnectError("down"))
    trigger = make_trigger(store, boundary, fetcher=CacheBypassFetcher(BASE_URL))
    outcome = asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_B))
    assert outcome.revalidated
    assert outcome.bypass.failed == 3


def test_primary_failure_keeps_old_fingerprint_and_retries(store, boundary, admin):
    trigger = make_trigger(store, boundary)
    asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_A))

    boundary.fail_with = RegenerationFailure("simulated network error")
    with pytest.raises(RegenerationFailure) as excinfo:
        asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_B))
    assert excinfo.value.outcome.state is RevalidationState.FAILED
    assert "simulated network error" in excinfo.value.outcome.error
    assert store.get_project("acme").last_revalidated_fingerprint == F_A
    assert trigger.ledger.get("/acme") == F_A

    boundary.fail_with = None
    outcome = asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_B))
    assert outcome.revalidated
    assert boundary.calls == ["/acme", "/acme", "/acme"]


def test_primary_timeout_is_regeneration_failure(store, admin):
    class SlowBoundary:
        async def regenerate(self, path):
            await asyncio.sleep(5)

    trigger = make_trigger(store, SlowBoundary(), regeneration_timeout=0.01)
    with pytest.raises(RegenerationFailure, match="timed out"):
        asyncio.run(trigger.revalidate(admin, "/acme", fingerprint=F_B))
    assert store.get_project("acme").last_revalidated_fingerprint is None


def test_unauthorized_caller_has_zero_side_effects(store, boundary, stranger, monkeypatch):
    touched = []
    monkeypatch.setattr(store, "touch", lambda project_id: touched.append(project_id))
    before = store.get_project("acme")
    trigger = make_trigger(store, boundary)

    with pytest.raises(Unauthorized):
        asyncio.run(trigger.revalidate(stranger, "/acme", fingerprint=F_B))

    assert touched == []
    assert boundary.calls == []
    assert store.get_project("acme") == before


def test_owner_may_revalidate_own_paths_only(store, boundary, owner):
    trigger = make_trigger(store, boundary)
    asyncio.run(trigger.revalidate(owner, "/acme", fingerprint=F_B))
    with pytest.raises(Unauthorized):
        asyncio.run(trigger.revalidate(owner, "/acme-two", fingerprint=F_B))


def test_owner_cannot_reach_another_tenant_through_nested_path(store, boundary, owner):
    before = store.get_project("other")
    trigger = make_trigger(store, boundary)
    with pytest.raises(Unauthorized):
        asyncio.run(trigger.revalidate(owner, "/other/acme", fingerprint=F_B))
    assert boundary.calls == []
    assert store.get_project("other") == before


def test_touch_failure_does_not_block(store, boundary, admin, monkeypatch):
    def broken(project_id):
        raise OSError("read-only")

    monkeypatch.setattr(store, "touch", broken)
    outcome = asyncio.run(make_trigger(store, boundary).revalidate(admin, "/acme", fingerprint=F_B))
    assert outcome.revalidated


def test_touch_refreshes_updated_at(store, boundary, admin):
    before = store.get_project("acme").updated_at
    asyncio.run(make_trigger(store, boundary).revalidate(admin, "/acme", fingerprint=F_B))
    assert store.get_project("acme").updated_at > before


@pytest.mark.parametrize("path", ["", "acme"])
def test_invalid_paths_are_rejected(store, boundary, admin, path):
    with pytest.raises(ValidationError):
        asyncio.run(make_trigger(store, boundary).revalidate(admin, path))
    assert boundary.calls == []


def test_unknown_project_path_fails_regeneration(store, admin):
    class StrictBoundary:
        async def regenerate(self, path):
            raise RegenerationFailure(f"Could not regenerate {path}")

    with pytest.raises(RegenerationFailure):
        asyncio.run(make_trigger(store, StrictBoundary()).revalidate(admin, "/ghost"))


def test_non_project_paths_are_tracked_in_memory(store, boundary, admin):
    trigger = make_trigger(store, boundary)
    asyncio.run(trigger.revalidate(admin, "/acme/about", fingerprint="abc"))
    outcome = asyncio.run(trigger.revalidate(admin, "/acme/about/", fingerprint="abc"))
    assert outcome.skipped
    assert store.get_project("acme").last_revalidated_fingerprint is None


def test_store_ledger_survives_restart(store, boundary, admin):
    asyncio.run(make_trigger(store, boundary).revalidate(admin, "/acme", fingerprint=F_A))
    fresh = make_trigger(store, boundary)
    outcome = asyncio.run(fresh.revalidate(admin, "/acme", fingerprint=F_A))
    assert outcome.skipped


def test_store_ledger_unknown_project():
    from selfcast.store import MemoryContentStore

    ledger = StoreLedger(MemoryContentStore())
    assert ledger.get("/ghost") is None
    ledger.record("/ghost", "abc")
    assert ledger.get("/ghost") == "abc"


def test_memory_ledger_normalizes_paths():
    ledger = MemoryLedger()
    ledger.record("/acme/", "abc")
    assert ledger.get("/acme?x=1") == "abc"


def test_invalid_transition_is_rejected():
    outcome = RevalidationOutcome(path="/acme", fingerprint=None, previous_fingerprint=None)
    with pytest.raises(RuntimeError):
        outcome.advance(RevalidationState.SUCCEEDED)


def test_fetcher_without_base_url_does_nothing():
    result = asyncio.run(CacheBypassFetcher("").run("/acme", 1))
    assert result.total == 0


def test_fetcher_urls_are_distinct():
    urls = CacheBypassFetcher(BASE_URL + "/", count=3).urls("/acme", 7)
    assert urls == [f"{BASE_URL}/acme?_cb=7-{n}" for n in (1, 2, 3)]


def test_run_best_effort_collects_results_and_errors():
    async def ok():
        return 1

    async def bad():
        raise ValueError("nope")

    def raises_synchronously():
        raise KeyError("sync")

    result = asyncio.run(run_best_effort([ok, bad, raises_synchronously, ok], label="test"))
    assert isinstance(result, BatchResult)
    assert result.results == [1, 1]
    assert result.failed == 2
    assert result.total == 4


def test_run_best_effort_empty():
    assert asyncio.run(run_best_effort([])).total == 0


def test_create_trigger_reads_config(store, boundary):
    trigger = create_trigger(
        {"base_url": BASE_URL, "cache_bypass_fetches": 2, "regeneration_timeout": 3},
        store,
        boundary,
    )
    assert trigger.fetcher.count == 2
    assert trigger.regeneration_timeout == 3.0
    assert isinstance(trigger.ledger, StoreLedger)


def test_not_found_store_is_reported_by_boundary(store, admin):
    class NotFoundBoundary:
        async def regenerate(self, path):
            raise NotFound("gone")

    with pytest.raises(RegenerationFailure) as excinfo:
        asyncio.run(make_trigger(store, NotFoundBoundary()).revalidate(admin, "/acme", fingerprint=F_B))
    assert isinstance(excinfo.value.__cause__, NotFound)
