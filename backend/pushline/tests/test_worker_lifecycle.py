"""
Tests for the background worker lifecycle.

Covers:
  - install pre-caches static URLs; a missing or unreachable URL is skipped
  - a failing install routine leaves the worker redundant and can be retried
  - activation evicts stale cache generations and claims open windows
  - a new version waits while the old one controls windows, unless told
    to skip waiting
  - exactly one activated worker per scope; redundant workers get no events
  - scoped tasks keep an event open until they finish
"""

import asyncio

import pytest

from pushline.worker.lifecycle import (
    ExtendableEvent,
    WorkerInstallError,
    WorkerRedundantError,
    WorkerRegistration,
    WorkerState,
    WorkerStateError,
)
from pushline.worker.platform import Request, WindowClient
from pushline.worker.runtime import PushWorker

ORIGIN = "https://app.example"


def _activated(registration: WorkerRegistration) -> list:
    return [w for w in registration.workers() if w.state is WorkerState.ACTIVATED]


# ---------------------------------------------------------------------------
# install
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_registration_installs_and_activates(worker_registration, worker_platform):
    worker = await worker_registration.register("v1")

    assert worker.state is WorkerState.ACTIVATED
    assert worker_registration.active is worker
    assert worker_registration.controller is worker
    assert await worker_registration.ready() is worker

    cache = await worker_platform.caches.open("pwa-cache-v1")
    assert sorted(await cache.keys()) == [f"{ORIGIN}/", f"{ORIGIN}/manifest.json"]
    assert cache.entry(f"{ORIGIN}/").generation == "pwa-cache-v1"


@pytest.mark.asyncio
async def test_missing_static_url_does_not_fail_install(worker_platform, network):
    del network.routes["/manifest.json"]  # 404
    registration = WorkerRegistration(ORIGIN + "/", worker_platform, PushWorker.factory(["/", "/manifest.json", "/logo.png"]))

    worker = await registration.register("v1")

    assert worker.state is WorkerState.ACTIVATED
    cache = await worker_platform.caches.open("pwa-cache-v1")
    assert await cache.keys() == [f"{ORIGIN}/"]


@pytest.mark.asyncio
async def test_install_succeeds_while_offline(worker_registration, worker_platform, network):
    network.online = False

    worker = await worker_registration.register("v1")

    assert worker.state is WorkerState.ACTIVATED
    assert await (await worker_platform.caches.open("pwa-cache-v1")).keys() == []


@pytest.mark.asyncio
async def test_failing_install_routine_is_fatal_and_retryable(worker_platform):
    attempts = []

    class FlakyWorker(PushWorker):
        def on_install(self, event):
            attempts.append(self.worker)
            if len(attempts) == 1:
                raise RuntimeError("script error")
            super().on_install(event)

    registration = WorkerRegistration(ORIGIN + "/", worker_platform, FlakyWorker.factory())

    with pytest.raises(WorkerInstallError):
        await registration.register("v1")
    assert attempts[0].state is WorkerState.REDUNDANT
    assert registration.active is None

    worker = await registration.register("v1")
    assert worker.state is WorkerState.ACTIVATED
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_rejected_install_task_is_fatal(worker_platform):
    class BrokenCacheWorker(PushWorker):
        def on_install(self, event):
            async def boom():
                raise OSError("quota exceeded")

            event.wait_until(boom())

    registration = WorkerRegistration(ORIGIN + "/", worker_platform, BrokenCacheWorker.factory())
    with pytest.raises(WorkerInstallError):
        await registration.register("v1")


# ---------------------------------------------------------------------------
# activate / update
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_activation_evicts_stale_generations(worker_registration, worker_platform):
    stale = await worker_platform.caches.open("pwa-cache-v0")
    await worker_platform.caches.open("thumbnails")

    await worker_registration.register("v1")

    assert await worker_platform.caches.keys() == ["pwa-cache-v1"]
    assert stale.name not in await worker_platform.caches.keys()


@pytest.mark.asyncio
async def test_activation_claims_open_windows(worker_registration, worker_platform):
    window = worker_platform.clients.add(WindowClient(url=f"{ORIGIN}/inbox"))

    worker = await worker_registration.register("v1")

    assert window.controller is worker


@pytest.mark.asyncio
async def test_new_version_supersedes_old_with_skip_waiting(worker_registration, worker_platform):
    worker_platform.clients.add(WindowClient(url=f"{ORIGIN}/"))
    v1 = await worker_registration.register("v1")
    v2 = await worker_registration.register("v2")

    assert v1.state is WorkerState.REDUNDANT
    assert v2.state is WorkerState.ACTIVATED
    assert _activated(worker_registration) == [v2]
    assert await worker_platform.caches.keys() == ["pwa-cache-v2"]
    assert worker_platform.clients.controlled_by(v2)


@pytest.mark.asyncio
async def test_new_version_waits_while_old_controls_windows(worker_platform):
    registration = WorkerRegistration(ORIGIN + "/", worker_platform, PushWorker.factory(skip_waiting=False))
    window = worker_platform.clients.add(WindowClient(url=f"{ORIGIN}/"))
    v1 = await registration.register("v1")

    v2 = await registration.register("v2")

    assert v2.state is WorkerState.INSTALLED
    assert registration.waiting is v2
    assert registration.active is v1

    worker_platform.clients.close(window)
    await registration.update_waiting()

    assert v2.state is WorkerState.ACTIVATED
    assert v1.state is WorkerState.REDUNDANT
    assert registration.waiting is None


@pytest.mark.asyncio
async def test_skip_waiting_message_activates_waiting_worker(worker_platform):
    registration = WorkerRegistration(ORIGIN + "/", worker_platform, PushWorker.factory(skip_waiting=False))
    worker_platform.clients.add(WindowClient(url=f"{ORIGIN}/"))
    v1 = await registration.register("v1")
    v2 = await registration.register("v2")

    await v2.post_message({"type": "ping"})
    assert v2.state is WorkerState.INSTALLED

    await v2.post_message({"type": "skip-waiting"})

    assert v2.state is WorkerState.ACTIVATED
    assert v1.state is WorkerState.REDUNDANT
    assert _activated(registration) == [v2]


@pytest.mark.asyncio
async def test_registering_same_version_is_a_noop(worker_registration, network):
    v1 = await worker_registration.register("v1")
    fetched = len(network.requests)

    assert await worker_registration.register("v1") is v1
    assert len(network.requests) == fetched


@pytest.mark.asyncio
async def test_concurrent_registrations_of_one_version_install_once(worker_platform, network):
    scripts = []
    factory = PushWorker.factory()

    def counting_factory(worker):
        scripts.append(worker)
        return factory(worker)

    registration = WorkerRegistration(ORIGIN + "/", worker_platform, counting_factory)

    first, second = await asyncio.gather(registration.register("v1"), registration.register("v1"))

    assert first is second
    assert len(scripts) == 1
    assert first.state is WorkerState.ACTIVATED
    assert _activated(registration) == [first]
    # "/" and "/manifest.json" pre-cached exactly once
    assert len(network.requests) == 2


# ---------------------------------------------------------------------------
# monotonicity
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_redundant_worker_rejects_every_event(worker_registration):
    v1 = await worker_registration.register("v1")
    await worker_registration.register("v2")

    with pytest.raises(WorkerRedundantError):
        await v1.push({"title": "late"})
    with pytest.raises(WorkerRedundantError):
        await v1.handle_fetch(Request(url=f"{ORIGIN}/"))
    with pytest.raises(WorkerRedundantError):
        await v1.post_message({"type": "skip-waiting"})


@pytest.mark.asyncio
async def test_waiting_worker_does_not_receive_functional_events(worker_platform):
    registration = WorkerRegistration(ORIGIN + "/", worker_platform, PushWorker.factory(skip_waiting=False))
    worker_platform.clients.add(WindowClient(url=f"{ORIGIN}/"))
    await registration.register("v1")
    v2 = await registration.register("v2")

    with pytest.raises(WorkerStateError):
        await v2.push({"title": "too early"})


@pytest.mark.asyncio
async def test_exactly_one_activated_across_many_updates(worker_registration, worker_platform):
    worker_platform.clients.add(WindowClient(url=f"{ORIGIN}/"))
    seen = []
    for n in range(5):
        seen.append(await worker_registration.register(f"v{n}"))
        assert len(_activated(worker_registration)) == 1

    assert [w.state for w in seen[:-1]] == [WorkerState.REDUNDANT] * 4
    assert seen[-1].state is WorkerState.ACTIVATED


def test_illegal_transition_rejected(worker_registration):
    from pushline.worker.lifecycle import ServiceWorker

    worker = ServiceWorker(worker_registration, "v9", PushWorker.factory())
    with pytest.raises(WorkerStateError):
        worker._transition(WorkerState.ACTIVATED)


# ---------------------------------------------------------------------------
# scoped tasks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_event_settles_only_after_scoped_tasks():
    event = ExtendableEvent()
    finished = []

    async def slow():
        await asyncio.sleep(0.01)
        finished.append("slow")

    event.wait_until(slow())
    handle = event.hold()

    settle = asyncio.create_task(event.settle())
    await asyncio.sleep(0.02)
    assert finished == ["slow"]
    assert not settle.done()

    handle.resolve()
    assert await settle == []
    assert event.settled


@pytest.mark.asyncio
async def test_settle_collects_failures_without_short_circuit():
    event = ExtendableEvent()
    finished = []

    async def fail():
        raise ValueError("bad")

    async def ok():
        await asyncio.sleep(0)
        finished.append("ok")

    event.wait_until(fail())
    event.wait_until(ok())

    errors = await event.settle()

    assert finished == ["ok"]
    assert len(errors) == 1 and isinstance(errors[0], ValueError)
    with pytest.raises(WorkerStateError):
        event.wait_until(asyncio.get_running_loop().create_future())
