from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from .broadcast import BroadcastBridge
from .engine import SessionEngine
from .errors import EngineFailure, SessionNotReadyError
from .events import Event, EventKind
from .metrics import (
    IGNORED_EVENTS_TOTAL,
    RECOVERY_ATTEMPTS_TOTAL,
    SESSION_STATE,
    SESSION_TRANSITIONS_TOTAL,
)


LOGGER = logging.getLogger("wagateway")


class SessionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILED = "auth_failed"


# event kind -> {current state: next state}; anything missing is ignored.
TRANSITIONS: Dict[EventKind, Dict[SessionState, SessionState]] = {
    EventKind.QR_CHALLENGE: {
        SessionState.UNINITIALIZED: SessionState.AWAITING_CHALLENGE,
        SessionState.AWAITING_CHALLENGE: SessionState.AWAITING_CHALLENGE,
    },
    EventKind.AUTHENTICATED: {
        SessionState.AWAITING_CHALLENGE: SessionState.AUTHENTICATED,
        # restored credentials never produce a QR challenge
        SessionState.UNINITIALIZED: SessionState.AUTHENTICATED,
    },
    EventKind.READY: {
        SessionState.AUTHENTICATED: SessionState.READY,
    },
    EventKind.DISCONNECTED: {
        SessionState.AUTHENTICATED: SessionState.DISCONNECTED,
        SessionState.READY: SessionState.DISCONNECTED,
    },
    EventKind.AUTH_FAILED: {
        SessionState.AWAITING_CHALLENGE: SessionState.AUTH_FAILED,
        SessionState.UNINITIALIZED: SessionState.AUTH_FAILED,
    },
}

RECOVERY_STATES = frozenset({SessionState.DISCONNECTED, SessionState.AUTH_FAILED})


def next_state(state: SessionState, event: Event) -> Optional[SessionState]:
    """Return the state ``event`` leads to from ``state``, or ``None``."""
    return TRANSITIONS.get(event.kind, {}).get(state)


@dataclass(slots=True)
class RecoveryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0

    def delay(self, attempt: int) -> float:
        if attempt <= 0 or self.base_delay <= 0:
            return 0.0
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


@dataclass(slots=True)
class Session:
    state: SessionState = SessionState.UNINITIALIZED
    last_transition_at: float = 0.0
    retry_count: int = 0
    exhausted: bool = False
    last_error: Optional[str] = None


@dataclass(slots=True)
class SessionSnapshot:
    """Read-only view of the session for status endpoints."""

    state: str
    retry_count: int
    last_transition_at: Optional[int]
    exhausted: bool
    last_error: Optional[str]
    subscribers: int = 0

    @classmethod
    def from_session(cls, session: Session, *, subscribers: int = 0) -> "SessionSnapshot":
        transition_ms = None
        if session.last_transition_at:
            transition_ms = int(session.last_transition_at * 1000)
        return cls(
            state=session.state.value,
            retry_count=session.retry_count,
            last_transition_at=transition_ms,
            exhausted=session.exhausted,
            last_error=session.last_error,
            subscribers=subscribers,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "retry_count": self.retry_count,
            "last_transition_at": self.last_transition_at,
            "exhausted": bool(self.exhausted),
            "last_error": self.last_error,
            "subscribers": self.subscribers,
        }


EventListener = Callable[[Event], Awaitable[None]]


class SessionManager:
    """Own the single session engine and drive its lifecycle state machine.

    Every state transition and every engine command issued through
    :meth:`ready_engine` runs under one lock, so sends and transitions never
    interleave. ``disconnected`` and ``auth-failed`` schedule a single-flight
    teardown and re-initialize bounded by :class:`RecoveryPolicy`.
    """

    def __init__(
        self,
        engine_factory: Callable[[], SessionEngine],
        bridge: BroadcastBridge,
        *,
        policy: RecoveryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._engine_factory = engine_factory
        self._bridge = bridge
        self._policy = policy or RecoveryPolicy()
        self._sleep = sleep
        self._session = Session(last_transition_at=time.time())
        self._lock = asyncio.Lock()
        self._engine: Optional[SessionEngine] = None
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._recovery_task: Optional[asyncio.Task[None]] = None
        self._listeners: list[EventListener] = []
        self._listener_tasks: set[asyncio.Task[None]] = set()
        self._started = False
        self._release_after: Optional[asyncio.Future[Any]] = None
        self._update_metrics()

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def session(self) -> Session:
        return self._session

    @property
    def engine(self) -> Optional[SessionEngine]:
        return self._engine

    @property
    def bridge(self) -> BroadcastBridge:
        return self._bridge

    @property
    def recovering(self) -> bool:
        return self._recovery_task is not None and not self._recovery_task.done()

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot.from_session(
            self._session, subscribers=self._bridge.subscriber_count
        )

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._bridge.start()
        try:
            await self._boot()
        except Exception as exc:
            self._session.last_error = str(exc) or exc.__class__.__name__
            LOGGER.exception("stage=initialize_failed error=%s", exc)
            self.request_recovery("initialize_failed")

    async def shutdown(self) -> None:
        task = self._recovery_task
        self._recovery_task = None
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for listener_task in list(self._listener_tasks):
            listener_task.cancel()
        await self._teardown()
        await self._bridge.stop()
        self._started = False

    def _set_state(self, state: SessionState, *, reason: str | None = None) -> None:
        previous = self._session.state
        if previous != state:
            LOGGER.info(
                "stage=state_transition from=%s to=%s reason=%s",
                previous.value,
                state.value,
                reason or "-",
            )
            SESSION_TRANSITIONS_TOTAL.labels(previous.value, state.value).inc()
        self._session.state = state
        self._session.last_transition_at = time.time()
        self._update_metrics()

    async def apply(self, event: Event) -> bool:
        """Apply a lifecycle event; returns ``False`` when it was ignored."""
        if not event.is_lifecycle:
            return False
        async with self._lock:
            current = self._session.state
            target = next_state(current, event)
            if target is None:
                IGNORED_EVENTS_TOTAL.labels(event.kind.value, current.value).inc()
                LOGGER.warning(
                    "stage=event_ignored event=%s state=%s", event.kind.value, current.value
                )
                return False
            self._set_state(target, reason=event.kind.value)
            if target is SessionState.READY:
                self._session.retry_count = 0
                self._session.exhausted = False
                self._session.last_error = None
            elif target in RECOVERY_STATES:
                reason = event.get("reason")
                self._session.last_error = str(reason) if reason else target.value
        if target in RECOVERY_STATES:
            self.request_recovery(target.value)
        return True

    async def handle_event(self, event: Event) -> None:
        await self.apply(event)
        self._bridge.publish(event)
        for listener in self._listeners:
            task = asyncio.get_running_loop().create_task(self._run_listener(listener, event))
            self._listener_tasks.add(task)
            task.add_done_callback(self._listener_tasks.discard)

    async def _run_listener(self, listener: EventListener, event: Event) -> None:
        try:
            await listener(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("stage=listener_failed event=%s", event.kind.value)

    def ingest(self, raw: dict[str, Any]) -> Optional[Event]:
        """Hand a raw engine event from the webhook to the live engine."""
        engine = self._engine
        feed = getattr(engine, "feed", None)
        if engine is None or feed is None:
            LOGGER.info(
                "event=engine_event_dropped name=%s reason=no_engine state=%s",
                raw.get("event") if isinstance(raw, dict) else "-",
                self._session.state.value,
            )
            return None
        return feed(raw)

    @contextlib.asynccontextmanager
    async def ready_engine(self) -> AsyncIterator[SessionEngine]:
        """Hold the session lock and yield the engine if the session is ready.

        The lock is normally released on exit. When the holder handed an
        unfinished engine call to :meth:`hold_lock_until`, the lock stays held
        until that call settles.
        """
        await self._lock.acquire()
        try:
            engine = self._engine
            if self._session.state is not SessionState.READY or engine is None:
                raise SessionNotReadyError(self._session.state.value)
            yield engine
        finally:
            pending = self._release_after
            self._release_after = None
            if pending is not None and not pending.done():
                LOGGER.warning("stage=lock_held_for_late_call")
                pending.add_done_callback(self._release_lock)
            else:
                self._lock.release()

    def hold_lock_until(self, call: "asyncio.Future[Any]") -> None:
        """Keep the lock of the current :meth:`ready_engine` block until ``call`` is done."""
        if not self._lock.locked():
            raise RuntimeError("hold_lock_until called outside ready_engine")
        self._release_after = call

    def _release_lock(self, _call: "asyncio.Future[Any]") -> None:
        LOGGER.info("stage=lock_released_after_late_call")
        self._lock.release()

    def request_recovery(self, reason: str) -> bool:
        if self.recovering:
            LOGGER.info("stage=recovery_suppressed reason=%s", reason)
            return False
        if self._session.exhausted:
            LOGGER.warning("stage=recovery_skipped reason=%s cause=exhausted", reason)
            return False
        self._recovery_task = asyncio.get_running_loop().create_task(
            self._recover(reason), name="session-recovery"
        )
        return True

    async def restart(self) -> SessionSnapshot:
        """Clear an exhausted session and schedule a fresh initialize."""
        self._session.exhausted = False
        self._session.retry_count = 0
        self._bridge.clear_failure()
        LOGGER.info("stage=manual_restart state=%s", self._session.state.value)
        self.request_recovery("manual_restart")
        return self.snapshot()

    async def _recover(self, reason: str) -> None:
        while True:
            attempt = self._session.retry_count + 1
            if attempt > self._policy.max_attempts:
                self._mark_exhausted(reason)
                return
            self._session.retry_count = attempt
            LOGGER.warning(
                "stage=recovery_start reason=%s attempt=%s max_attempts=%s",
                reason,
                attempt,
                self._policy.max_attempts,
            )
            await self._teardown()
            async with self._lock:
                self._set_state(SessionState.UNINITIALIZED, reason="recovery")
            delay = self._policy.delay(attempt)
            if delay > 0:
                await self._sleep(delay)
            try:
                await self._boot()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._session.last_error = str(exc) or exc.__class__.__name__
                RECOVERY_ATTEMPTS_TOTAL.labels("failed").inc()
                LOGGER.error(
                    "stage=recovery_failed reason=%s attempt=%s error=%s", reason, attempt, exc
                )
                reason = "initialize_failed"
                continue
            RECOVERY_ATTEMPTS_TOTAL.labels("ok").inc()
            LOGGER.info("stage=recovery_ok attempt=%s", attempt)
            return

    def _mark_exhausted(self, reason: str) -> None:
        failure = EngineFailure(reason, attempts=self._session.retry_count)
        self._session.exhausted = True
        self._session.last_error = f"recovery_exhausted: {failure.reason}"
        RECOVERY_ATTEMPTS_TOTAL.labels("exhausted").inc()
        LOGGER.error(
            "stage=recovery_exhausted reason=%s attempts=%s", failure.reason, failure.attempts
        )
        self._bridge.report_failure(
            f"Whatsapp session failed after {failure.attempts} restart attempts, manual restart required"
        )

    async def _boot(self) -> None:
        engine = self._engine_factory()
        self._engine = engine
        self._pump_task = asyncio.get_running_loop().create_task(
            self._pump(engine), name="engine-events"
        )
        try:
            await engine.initialize()
        except Exception:
            await self._teardown()
            raise

    async def _pump(self, engine: SessionEngine) -> None:
        async for event in engine.events():
            try:
                await self.handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("stage=event_dispatch_failed event=%s", event.kind.value)

    async def _teardown(self) -> None:
        engine = self._engine
        pump = self._pump_task
        self._engine = None
        self._pump_task = None
        if pump is not None and pump is not asyncio.current_task() and not pump.done():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
        if engine is not None:
            try:
                await engine.destroy()
            except Exception as exc:
                LOGGER.warning("stage=engine_destroy_failed error=%s", exc)

    def _update_metrics(self) -> None:
        for state in SessionState:
            SESSION_STATE.labels(state.value).set(1 if state is self._session.state else 0)


__all__ = [
    "RecoveryPolicy",
    "Session",
    "SessionManager",
    "SessionSnapshot",
    "SessionState",
    "TRANSITIONS",
    "next_state",
]
