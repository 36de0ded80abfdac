"""Scan workflow: a pure state machine plus the asyncio loop that drives it.

The machine (``transition``) never touches timers or the camera. It mutates a
``ScanSession`` and returns the effects the driver must carry out, so it can be
exercised by feeding events directly. ``ScanLoop`` turns real time into
events: a fixed-interval tick task and a one-shot forget timer.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from camera import Camera
from config import (
    CHECKOUT_MAX_ATTEMPTS,
    CHECKOUT_TICK_INTERVAL,
    FORGET_DELAY,
    GREET_TICK_INTERVAL,
    SIM_THRESHOLD,
)
from matcher import best_match

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    RECOGNIZED = "recognized"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class ScanSettings:
    tick_interval: float
    forget_delay: float = FORGET_DELAY
    max_attempts: Optional[int] = None  # None: scan until stopped
    stop_on_match: bool = False         # gate/checkout surfaces release the camera on a match


GREET_MODE = ScanSettings(tick_interval=GREET_TICK_INTERVAL)
CHECKOUT_MODE = ScanSettings(
    tick_interval=CHECKOUT_TICK_INTERVAL,
    max_attempts=CHECKOUT_MAX_ATTEMPTS,
    stop_on_match=True,
)
MODES = {"greet": GREET_MODE, "checkout": CHECKOUT_MODE}


# Events

@dataclass
class Started:
    pass


@dataclass
class RetryRequested:
    pass


@dataclass
class Stopped:
    pass


@dataclass
class TickMatched:
    identity: Any
    frame: Any = None


@dataclass
class TickMissed:
    frame: Any = None


@dataclass
class TickFailed:
    error: Exception


@dataclass
class ForgetElapsed:
    generation: int


@dataclass
class IdentityRemoved:
    identity_id: str


class Effect(str, Enum):
    ARM_FORGET = "arm_forget"
    CANCEL_FORGET = "cancel_forget"
    STOP_CAMERA = "stop_camera"
    HAND_OFF_REGISTRATION = "hand_off_registration"
    NOTIFY = "notify"


@dataclass
class ScanSession:
    state: ScanState = ScanState.IDLE
    camera_on: bool = False
    attempt_count: int = 0
    last_matched_id: Optional[str] = None
    identity: Any = None
    ever_matched: bool = False
    forget_pending: bool = False
    forget_generation: int = 0
    last_frame: Any = None
    handoff_frame: Any = None

    def restart(self):
        self.state = ScanState.SCANNING
        self.camera_on = True
        self.attempt_count = 0
        self.last_matched_id = None
        self.identity = None
        self.ever_matched = False
        self.forget_pending = False
        self.last_frame = None
        self.handoff_frame = None


def transition(session: ScanSession, event, settings: ScanSettings) -> List[Effect]:
    if isinstance(event, Started):
        session.restart()
        return [Effect.NOTIFY]

    if isinstance(event, RetryRequested):
        if session.state is not ScanState.EXHAUSTED:
            return []
        session.restart()
        return [Effect.NOTIFY]

    if isinstance(event, Stopped):
        if session.state is ScanState.IDLE:
            return []
        effects = []
        if session.forget_pending:
            session.forget_pending = False
            effects.append(Effect.CANCEL_FORGET)
        if session.camera_on:
            session.camera_on = False
            effects.append(Effect.STOP_CAMERA)
        session.state = ScanState.IDLE
        session.identity = None
        session.last_matched_id = None
        effects.append(Effect.NOTIFY)
        return effects

    if isinstance(event, IdentityRemoved):
        return _on_identity_removed(session, event)

    # Everything below only applies while the camera is running
    if not session.camera_on:
        return []

    if isinstance(event, TickFailed):
        session.attempt_count += 1
        if session.last_matched_id is not None:
            return []
        return _check_cap(session, settings)

    if isinstance(event, TickMatched):
        return _on_match(session, event, settings)

    if isinstance(event, TickMissed):
        return _on_miss(session, event, settings)

    if isinstance(event, ForgetElapsed):
        if not session.forget_pending or event.generation != session.forget_generation:
            return []
        session.forget_pending = False
        session.last_matched_id = None
        session.identity = None
        session.state = ScanState.SCANNING
        return [Effect.NOTIFY]

    raise TypeError(f"Unknown scan event: {event!r}")


def _on_identity_removed(session, event):
    if session.last_matched_id is None or session.last_matched_id != event.identity_id:
        return []
    effects = []
    if session.forget_pending:
        session.forget_pending = False
        effects.append(Effect.CANCEL_FORGET)
    session.last_matched_id = None
    session.identity = None
    if session.state is ScanState.RECOGNIZED:
        session.state = ScanState.SCANNING if session.camera_on else ScanState.IDLE
    effects.append(Effect.NOTIFY)
    return effects


def _on_match(session, event, settings):
    effects = []
    session.attempt_count += 1
    session.last_frame = event.frame

    if session.forget_pending:
        session.forget_pending = False
        effects.append(Effect.CANCEL_FORGET)

    identity_id = getattr(event.identity, "id", None)
    if identity_id == session.last_matched_id:
        return effects

    session.state = ScanState.RECOGNIZED
    session.identity = event.identity
    session.last_matched_id = identity_id
    session.ever_matched = True
    if settings.stop_on_match:
        session.camera_on = False
        effects.append(Effect.STOP_CAMERA)
    effects.append(Effect.NOTIFY)
    return effects


def _on_miss(session, event, settings):
    session.attempt_count += 1
    if event.frame is not None:
        session.last_frame = event.frame

    if session.last_matched_id is not None:
        # The timer runs once per absence; only a match cancels it
        if session.forget_pending:
            return []
        session.forget_generation += 1
        session.forget_pending = True
        return [Effect.ARM_FORGET]

    return _check_cap(session, settings)


def _check_cap(session, settings):
    cap = settings.max_attempts
    if not session.ever_matched and cap is not None and session.attempt_count >= cap:
        session.state = ScanState.EXHAUSTED
        session.camera_on = False
        session.handoff_frame = session.last_frame
        return [Effect.STOP_CAMERA, Effect.HAND_OFF_REGISTRATION, Effect.NOTIFY]
    return []


@dataclass
class ScanUpdate:
    state: ScanState
    identity: Any = None
    attempt_count: int = 0
    handoff_frame: Any = None


Listener = Callable[[ScanUpdate], None]


class ScanLoop:
    """Drives one camera through scan sessions.

    Only one session is alive at a time; start() tears down the previous one.
    The tick task, the in-flight tick and the forget timer are cancelled
    together and the camera is released on every exit path.
    """

    def __init__(self, engine, load_identities, camera_factory=Camera,
                 settings: ScanSettings = GREET_MODE, threshold: float = SIM_THRESHOLD):
        self.engine = engine
        self.settings = settings
        self.threshold = threshold
        self.session = ScanSession()
        self.handoff_frame = None
        self._load_identities = load_identities
        self._camera_factory = camera_factory
        self._camera = None
        self._candidates = []
        self._listeners: List[Listener] = []
        self._ticker = None
        self._current_tick = None
        self._forget_handle = None
        self._in_flight = False

    @property
    def state(self):
        return self.session.state

    def subscribe(self, listener: Listener):
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def start(self, settings: Optional[ScanSettings] = None):
        await self.stop()
        if settings is not None:
            self.settings = settings
        # ModelLoadError propagates: no scanning without models
        await self.engine.load()
        self._open(Started())

    async def retry(self):
        if self.session.state is not ScanState.EXHAUSTED:
            return
        self._open(RetryRequested())

    async def stop(self):
        self._dispatch(Stopped())
        self._teardown()

    def forget_identity(self, identity_id):
        """Drop a deleted identity from the candidates and from the tracked match"""
        if self.session.camera_on:
            self.refresh_candidates()
        self._dispatch(IdentityRemoved(identity_id))

    def refresh_candidates(self):
        self._candidates = list(self._load_identities())
        logger.info("Scan candidates loaded: %d identities", len(self._candidates))

    def _open(self, event):
        self.refresh_candidates()
        camera = self._camera_factory()
        camera.open()
        self._camera = camera
        self.handoff_frame = None
        self._dispatch(event)
        self._ticker = asyncio.create_task(self._run())

    async def _run(self):
        while True:
            await asyncio.sleep(self.settings.tick_interval)
            if self._in_flight:
                logger.debug("Previous scan tick still running, skipping")
                continue
            self._in_flight = True
            self._current_tick = asyncio.create_task(self._tick())

    async def _tick(self):
        try:
            frame = await self._camera.read()
            detection = await self.engine.detect_single_face(frame)
            if detection is None:
                event = TickMissed(frame)
            else:
                probe = await detection.descriptor()
                match = best_match(probe, self._candidates, self.threshold)
                event = TickMatched(match.identity, frame) if match else TickMissed(frame)
        except Exception as e:
            logger.exception("Scan tick failed, continuing")
            event = TickFailed(e)
        finally:
            self._in_flight = False
        self._dispatch(event)

    def _dispatch(self, event):
        for effect in transition(self.session, event, self.settings):
            if effect is Effect.ARM_FORGET:
                self._cancel_forget()
                generation = self.session.forget_generation
                self._forget_handle = asyncio.get_running_loop().call_later(
                    self.settings.forget_delay, self._dispatch, ForgetElapsed(generation)
                )
            elif effect is Effect.CANCEL_FORGET:
                self._cancel_forget()
            elif effect is Effect.STOP_CAMERA:
                self._teardown()
            elif effect is Effect.HAND_OFF_REGISTRATION:
                self.handoff_frame = self.session.handoff_frame
                logger.info("No match after %d attempts, handing off to registration",
                            self.session.attempt_count)
            elif effect is Effect.NOTIFY:
                self._notify()

    def _notify(self):
        update = ScanUpdate(
            state=self.session.state,
            identity=self.session.identity,
            attempt_count=self.session.attempt_count,
            handoff_frame=self.session.handoff_frame,
        )
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("Scan listener failed")

    def _cancel_forget(self):
        if self._forget_handle is not None:
            self._forget_handle.cancel()
            self._forget_handle = None

    def _teardown(self):
        self._cancel_forget()
        current = asyncio.current_task()
        for task in (self._ticker, self._current_tick):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._ticker = None
        self._current_tick = None
        self._in_flight = False
        if self._camera is not None:
            self._camera.release()
            self._camera = None
