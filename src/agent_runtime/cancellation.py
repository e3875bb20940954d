# cancellation.py
# Cooperative cancellation for long-running operations.
#
# Two pieces:
#   CancellationRegistry: an explicit (non-global) stack of abortable
#       operations. Each operation registers, receives an opaque
#       registration, and must unregister when it settles. cancel() targets
#       the most recently registered live operation.
#   CancellationToken: the one-shot broadcast signal raised by the user
#       (ESC). Every suspension point races its own work against it. The
#       token stays triggered until reset() is called, which the agent loop
#       does before every pass.

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

CancelCallback = Callable[[Any], None]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class CancellationRegistration:
    """Handle returned by CancellationRegistry.register()."""

    def __init__(self, registry: "CancellationRegistry", description: str,
                 on_cancel: CancelCallback | None) -> None:
        self._registry = registry
        self.description = description
        self.created_at = time.monotonic()
        self._on_cancel = on_cancel
        self.canceled = False
        self.reason: Any = None
        self.removed = False

    def is_canceled(self) -> bool:
        return self.canceled

    def set_cancel_callback(self, callback: CancelCallback | None) -> None:
        self._on_cancel = callback

    def cancel(self, reason: Any = None) -> bool:
        """Mark canceled and fire the callback. Returns False if already canceled."""
        if self.canceled:
            return False
        self.canceled = True
        self.reason = reason
        if self._on_cancel is not None:
            try:
                self._on_cancel(reason)
            except Exception:
                logger.exception("cancel callback for %r failed", self.description)
        self.unregister()
        return True

    def unregister(self) -> None:
        if not self.removed:
            self.removed = True
            self._registry._remove(self)


class CancellationRegistry:
    """Stack of live operations that can be aborted, newest first."""

    def __init__(self) -> None:
        self._stack: list[CancellationRegistration] = []

    def register(self, description: str = "operation",
                 on_cancel: CancelCallback | None = None) -> CancellationRegistration:
        registration = CancellationRegistration(self, description, on_cancel)
        self._stack.append(registration)
        logger.debug("registered cancellable operation %r", description)
        return registration

    def _remove(self, registration: CancellationRegistration) -> None:
        if registration in self._stack:
            self._stack.remove(registration)

    def active(self) -> CancellationRegistration | None:
        return self._stack[-1] if self._stack else None

    def cancel(self, reason: Any = None) -> bool:
        """Cancel the most recent live operation, if any."""
        registration = self.active()
        if registration is None:
            return False
        logger.debug("canceling operation %r (%s)", registration.description, reason)
        return registration.cancel(reason)

    def __len__(self) -> int:
        return len(self._stack)


# ---------------------------------------------------------------------------
# One-shot token
# ---------------------------------------------------------------------------


class CancellationToken:
    """
    One-shot broadcast signal with an explicit reset.

    trigger() flips `triggered`, stores the payload, notifies listeners and
    resolves every pending waiter exactly once. Waiters created after the
    trigger resolve immediately with the stored payload until reset().
    """

    def __init__(self) -> None:
        self.triggered = False
        self.payload: Any = None
        self._waiters: set[asyncio.Future] = set()
        self._listeners: list[CancelCallback] = []

    def subscribe(self, listener: CancelCallback) -> Callable[[], None]:
        """Call `listener(payload)` on every trigger. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def trigger(self, payload: Any = None) -> None:
        self.triggered = True
        self.payload = payload

        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception("cancellation listener failed")

        waiters, self._waiters = self._waiters, set()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(payload)

    def reset(self) -> None:
        self.triggered = False
        self.payload = None
        for waiter in self._waiters:
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()

    def waiter(self) -> asyncio.Future:
        """A future resolved with the payload on the next trigger."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        if self.triggered:
            future.set_result(self.payload)
            return future
        self._waiters.add(future)
        future.add_done_callback(self._waiters.discard)
        return future

    @property
    def pending_waiters(self) -> int:
        return len(self._waiters)


class Canceled:
    """Marker returned by race() when the token won."""

    def __init__(self, payload: Any) -> None:
        self.payload = payload

    def __repr__(self) -> str:
        return f"Canceled({self.payload!r})"


async def race(work: Awaitable[T], token: CancellationToken | None) -> T | Canceled:
    """
    Await `work` unless `token` fires first.

    When the token wins, the work task is cancelled and awaited so nothing is
    left running, and a Canceled marker carrying the payload is returned.
    An already-triggered token wins without starting the work.
    """
    if token is None:
        return await work
    if token.triggered:
        if asyncio.iscoroutine(work):
            work.close()
        return Canceled(token.payload)

    task = asyncio.ensure_future(work)
    waiter = token.waiter()
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if not waiter.done():
            waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    return Canceled(waiter.result())
