"""
Background worker lifecycle — registration, state machine and event dispatch.

State machine (per worker instance, one script version each):

  installing ──► installed (waiting) ──► activating ──► activated ──► redundant
       │                 │                                   ▲
       └── install fails ┴────── superseded ─────────────────┘

Only one instance per registration is ever ``activated``. A new version is
installed alongside the active one, waits until the active one no longer
controls any window (or skip-waiting is requested), and then takes over:
the previous instance becomes ``redundant`` before the new one activates.

Handlers never run unbounded background work. Anything asynchronous started
from a handler is attached to the event with ``event.wait_until()`` (or a
manual ``event.hold()`` handle); the event is settled only once every such
``ScopedTask`` has finished, successfully or not.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pushline.core import events
from pushline.worker.cache import cache_name_for
from pushline.worker.platform import (
    Notification,
    PushMessageData,
    Request,
    Response,
    WorkerPlatform,
)

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


_TRANSITIONS = {
    WorkerState.INSTALLING: {WorkerState.INSTALLED, WorkerState.REDUNDANT},
    WorkerState.INSTALLED: {WorkerState.ACTIVATING, WorkerState.REDUNDANT},
    WorkerState.ACTIVATING: {WorkerState.ACTIVATED, WorkerState.REDUNDANT},
    WorkerState.ACTIVATED: {WorkerState.REDUNDANT},
    WorkerState.REDUNDANT: set(),
}

# Which event categories each state will accept
_ACCEPTS = {
    WorkerState.INSTALLING: {events.INSTALL},
    WorkerState.INSTALLED: {events.MESSAGE},
    WorkerState.ACTIVATING: {events.ACTIVATE},
    WorkerState.ACTIVATED: {
        events.FETCH,
        events.PUSH,
        events.NOTIFICATION_CLICK,
        events.MESSAGE,
        events.SYNC,
    },
    WorkerState.REDUNDANT: set(),
}


class WorkerStateError(RuntimeError):
    """An event or transition is not valid in the worker's current state."""


class WorkerRedundantError(WorkerStateError):
    """The worker has been superseded and no longer receives events."""


class WorkerInstallError(RuntimeError):
    """The install routine itself failed; the platform retries on next registration."""


# ---------------------------------------------------------------------------
# Events and lifetime extension
# ---------------------------------------------------------------------------


class ScopedTask:
    """A unit of work that keeps its event alive until it concludes.

    Created from an awaitable (``event.wait_until(coro)``) or as a bare handle
    (``event.hold()``) that the owner resolves or rejects explicitly.
    """

    def __init__(self, awaitable: Optional[Awaitable] = None) -> None:
        if awaitable is None:
            self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        else:
            self._future = asyncio.ensure_future(awaitable)

    def resolve(self, result: Any = None) -> None:
        if not self._future.done():
            self._future.set_result(result)

    def reject(self, exc: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(exc)

    def done(self) -> bool:
        return self._future.done()

    def exception(self) -> Optional[BaseException]:
        if not self._future.done():
            return None
        if self._future.cancelled():
            return asyncio.CancelledError()
        return self._future.exception()

    @property
    def future(self) -> asyncio.Future:
        return self._future

    def __await__(self):
        return self._future.__await__()


class ExtendableEvent:
    type = ""

    def __init__(self) -> None:
        self._tasks: list[ScopedTask] = []
        self._handler_errors: list[BaseException] = []
        self._settled = False

    def wait_until(self, awaitable: Awaitable) -> ScopedTask:
        if self._settled:
            raise WorkerStateError(f"{self.type} event already settled")
        task = ScopedTask(awaitable)
        self._tasks.append(task)
        return task

    def hold(self) -> ScopedTask:
        if self._settled:
            raise WorkerStateError(f"{self.type} event already settled")
        task = ScopedTask()
        self._tasks.append(task)
        return task

    def record_handler_error(self, exc: BaseException) -> None:
        self._handler_errors.append(exc)

    @property
    def settled(self) -> bool:
        return self._settled

    async def settle(self) -> list[BaseException]:
        """Wait for every scoped task, all-settled, and return their failures.

        Tasks registered while waiting are picked up as well.
        """
        while True:
            pending = [t.future for t in self._tasks if not t.done()]
            if not pending:
                break
            await asyncio.wait(pending)
        self._settled = True
        errors = list(self._handler_errors)
        errors.extend(exc for exc in (t.exception() for t in self._lifetime_tasks()) if exc is not None)
        return errors

    def _lifetime_tasks(self) -> list[ScopedTask]:
        return self._tasks


class InstallEvent(ExtendableEvent):
    type = events.INSTALL


class ActivateEvent(ExtendableEvent):
    type = events.ACTIVATE


class FetchEvent(ExtendableEvent):
    type = events.FETCH

    def __init__(self, request: Request) -> None:
        super().__init__()
        self.request = request
        self._response: Optional[ScopedTask] = None

    def respond_with(self, awaitable: Awaitable[Response]) -> None:
        if self._response is not None:
            raise WorkerStateError("respond_with() already called")
        self._response = self.wait_until(awaitable)

    @property
    def response(self) -> Optional[ScopedTask]:
        return self._response

    def _lifetime_tasks(self) -> list[ScopedTask]:
        # The response outcome belongs to the caller, not to the event
        return [t for t in self._tasks if t is not self._response]


class PushEvent(ExtendableEvent):
    type = events.PUSH

    def __init__(self, data: Optional[PushMessageData] = None) -> None:
        super().__init__()
        self.data = data


class NotificationClickEvent(ExtendableEvent):
    type = events.NOTIFICATION_CLICK

    def __init__(self, notification: Notification, action: str = "") -> None:
        super().__init__()
        self.notification = notification
        self.action = action


class MessageEvent(ExtendableEvent):
    type = events.MESSAGE

    def __init__(self, data: Any) -> None:
        super().__init__()
        self.data = data


class SyncEvent(ExtendableEvent):
    type = events.SYNC

    def __init__(self, tag: str) -> None:
        super().__init__()
        self.tag = tag


# ---------------------------------------------------------------------------
# Worker instance
# ---------------------------------------------------------------------------


class ServiceWorker:
    """One instance of the worker script at a given version."""

    def __init__(
        self,
        registration: "WorkerRegistration",
        version: str,
        script_factory: Callable[["ServiceWorker"], Any],
    ) -> None:
        self.registration = registration
        self.version = version
        self.state = WorkerState.INSTALLING
        self.skip_waiting_requested = False
        self._inflight: set[asyncio.Task] = set()
        self.script = script_factory(self)

    def __repr__(self) -> str:
        return f"<ServiceWorker version={self.version} state={self.state.value}>"

    @property
    def platform(self) -> WorkerPlatform:
        return self.registration.platform

    @property
    def scope(self) -> str:
        return self.registration.scope

    @property
    def cache_name(self) -> str:
        return cache_name_for(self.version)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new_state: WorkerState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise WorkerStateError(f"cannot move from {self.state.value} to {new_state.value}")
        logger.info("Worker %s: %s -> %s", self.version, self.state.value, new_state.value)
        self.state = new_state

    def _make_redundant(self) -> None:
        if self.state is not WorkerState.REDUNDANT:
            self._transition(WorkerState.REDUNDANT)

    async def skip_waiting(self) -> None:
        """Ask to activate without waiting for controlled windows to close."""
        self.skip_waiting_requested = True
        if self.state is WorkerState.INSTALLED and self.registration.waiting is self:
            await self.registration._activate(self)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    def _check_accepts(self, event: ExtendableEvent) -> None:
        if self.state is WorkerState.REDUNDANT:
            raise WorkerRedundantError(f"worker {self.version} is redundant")
        if event.type not in _ACCEPTS[self.state]:
            raise WorkerStateError(f"worker {self.version} cannot handle {event.type} while {self.state.value}")

    def _invoke(self, event: ExtendableEvent) -> None:
        handler = getattr(self.script, f"on_{event.type}", None)
        if handler is None:
            return
        try:
            handler(event)
        except Exception as exc:
            event.record_handler_error(exc)

    async def _run(self, event: ExtendableEvent) -> list[BaseException]:
        self._check_accepts(event)
        self._invoke(event)
        errors = await event.settle()
        if event.type not in events.LIFECYCLE_EVENTS:
            for exc in errors:
                logger.error("Worker %s: unhandled error in %s handler: %r", self.version, event.type, exc)
        return errors

    def _track(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def idle(self) -> None:
        """Wait until every event dispatched so far has settled."""
        while self._inflight:
            await asyncio.wait(list(self._inflight))

    async def handle_fetch(self, request: Request) -> Optional[Response]:
        """Dispatch a fetch event.

        Returns ``None`` when the worker does not intercept the request, in
        which case the caller performs the network request itself.
        """
        event = FetchEvent(request)
        self._check_accepts(event)
        self._invoke(event)
        settled = self._track(self._settle_fetch(event))
        if event.response is None:
            await settled
            return None
        return await event.response

    async def _settle_fetch(self, event: FetchEvent) -> None:
        for exc in await event.settle():
            logger.error("Worker %s: unhandled error in fetch handler: %r", self.version, exc)

    async def push(self, data: bytes | str | dict | None = None) -> PushEvent:
        event = PushEvent(PushMessageData(data) if data is not None else None)
        await self._run(event)
        return event

    async def notification_click(self, notification: Notification, action: str = "") -> NotificationClickEvent:
        event = NotificationClickEvent(notification, action)
        await self._run(event)
        return event

    async def post_message(self, data: Any) -> MessageEvent:
        event = MessageEvent(data)
        await self._run(event)
        return event

    async def sync(self, tag: str) -> SyncEvent:
        event = SyncEvent(tag)
        await self._run(event)
        return event


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class WorkerRegistration:
    """Owns the installing / waiting / active workers for a single scope."""

    def __init__(
        self,
        scope: str,
        platform: WorkerPlatform,
        script_factory: Callable[[ServiceWorker], Any],
    ) -> None:
        self.scope = scope
        self.platform = platform
        self._script_factory = script_factory
        self.installing: Optional[ServiceWorker] = None
        self.waiting: Optional[ServiceWorker] = None
        self.active: Optional[ServiceWorker] = None
        self._ready = asyncio.Event()
        self._installs: dict[str, asyncio.Task] = {}

    def workers(self) -> list[ServiceWorker]:
        return [w for w in (self.installing, self.waiting, self.active) if w is not None]

    async def register(self, version: str) -> ServiceWorker:
        """Install *version*.

        A no-op when *version* is already active or waiting; concurrent calls
        for a version that is still installing share that one installation.
        """
        for current in (self.active, self.waiting):
            if current is not None and current.version == version:
                return current

        task = self._installs.get(version)
        if task is None:
            task = asyncio.create_task(self._install(version))
            self._installs[version] = task

            def _forget(done: asyncio.Task) -> None:
                if self._installs.get(version) is done:
                    del self._installs[version]

            task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def _install(self, version: str) -> ServiceWorker:
        worker = ServiceWorker(self, version, self._script_factory)
        if self.installing is not None:
            self.installing._make_redundant()
        self.installing = worker

        errors = await worker._run(InstallEvent())
        if self.installing is worker:
            self.installing = None
        if errors:
            worker._make_redundant()
            logger.error("Worker %s: installation failed: %r", version, errors[0])
            raise WorkerInstallError(f"install of {version} failed") from errors[0]
        if worker.state is not WorkerState.INSTALLING:
            # superseded by a newer registration while installing
            return worker

        worker._transition(WorkerState.INSTALLED)
        if self.waiting is not None:
            self.waiting._make_redundant()
        self.waiting = worker

        if worker.skip_waiting_requested or not self._active_controls_clients():
            await self._activate(worker)
        else:
            logger.info("Worker %s installed; waiting for controlled windows to close", version)
        return worker

    def _active_controls_clients(self) -> bool:
        return self.active is not None and bool(self.platform.clients.controlled_by(self.active))

    async def update_waiting(self) -> None:
        """Activate the waiting worker once the active one controls no window."""
        if self.waiting is not None and not self._active_controls_clients():
            await self._activate(self.waiting)

    async def _activate(self, worker: ServiceWorker) -> None:
        if self.waiting is worker:
            self.waiting = None
        previous = self.active
        worker._transition(WorkerState.ACTIVATING)
        if previous is not None:
            previous._make_redundant()
        self.active = worker

        errors = await worker._run(ActivateEvent())
        for exc in errors:
            logger.error("Worker %s: activation error: %r", worker.version, exc)
        if worker.state is WorkerState.ACTIVATING:
            worker._transition(WorkerState.ACTIVATED)
            self._ready.set()

    async def ready(self) -> ServiceWorker:
        """Wait for an activated worker and return it."""
        while True:
            await self._ready.wait()
            if self.active is not None and self.active.state is WorkerState.ACTIVATED:
                return self.active
            self._ready.clear()

    @property
    def controller(self) -> Optional[ServiceWorker]:
        if self.active is not None and self.active.state is WorkerState.ACTIVATED:
            return self.active
        return None
