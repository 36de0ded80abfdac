import asyncio

import pytest

from conftest import FakeCamera, FakeEngine, person, unit
from camera import CameraUnavailableError
from face_engine import ModelLoadError
from scan_session import (
    CHECKOUT_MODE,
    GREET_MODE,
    Effect,
    ForgetElapsed,
    IdentityRemoved,
    RetryRequested,
    ScanLoop,
    ScanSession,
    ScanSettings,
    ScanState,
    Started,
    Stopped,
    TickFailed,
    TickMatched,
    TickMissed,
    transition,
)

X = person("x", unit(0))
Y = person("y", unit(1))


def started(settings=GREET_MODE):
    session = ScanSession()
    assert transition_effects(session, Started(), settings) == [Effect.NOTIFY]
    return session


def transition_effects(session, event, settings=GREET_MODE):
    return transition(session, event, settings)


class TestTransition:
    def test_start_enters_scanning(self):
        session = started()
        assert session.state is ScanState.SCANNING
        assert session.camera_on
        assert session.attempt_count == 0

    def test_first_match_recognizes_and_notifies(self):
        session = started()
        effects = transition_effects(session, TickMatched(X))
        assert effects == [Effect.NOTIFY]
        assert session.state is ScanState.RECOGNIZED
        assert session.last_matched_id == "x"
        assert session.attempt_count == 1

    def test_same_identity_is_not_announced_twice(self):
        session = started()
        transition_effects(session, TickMatched(X))
        assert transition_effects(session, TickMatched(X)) == []

    def test_different_identity_is_announced(self):
        session = started()
        transition_effects(session, TickMatched(X))
        assert transition_effects(session, TickMatched(Y)) == [Effect.NOTIFY]
        assert session.identity is Y

    def test_return_within_forget_delay_stays_debounced(self):
        session = started()
        transition_effects(session, TickMatched(X))

        assert transition_effects(session, TickMissed()) == [Effect.ARM_FORGET]
        assert transition_effects(session, TickMissed()) == []
        assert session.forget_pending

        effects = transition_effects(session, TickMatched(X))
        assert effects == [Effect.CANCEL_FORGET]
        assert Effect.NOTIFY not in effects
        assert not session.forget_pending
        assert session.state is ScanState.RECOGNIZED

    def test_forget_elapsed_clears_the_match(self):
        session = started()
        transition_effects(session, TickMatched(X))
        transition_effects(session, TickMissed())

        effects = transition_effects(session, ForgetElapsed(session.forget_generation))

        assert effects == [Effect.NOTIFY]
        assert session.state is ScanState.SCANNING
        assert session.last_matched_id is None
        assert session.camera_on
        # X is greeted again after being forgotten
        assert transition_effects(session, TickMatched(X)) == [Effect.NOTIFY]

    def test_stale_forget_generation_is_ignored(self):
        session = started()
        transition_effects(session, TickMatched(X))
        transition_effects(session, TickMissed())
        stale = session.forget_generation
        transition_effects(session, TickMatched(X))
        assert transition_effects(session, TickMissed()) == [Effect.ARM_FORGET]

        assert transition_effects(session, ForgetElapsed(stale)) == []
        assert session.state is ScanState.RECOGNIZED

    def test_forget_timer_elapses_at_preset_tick_rate(self):
        # Ticks (2 s) come faster than the forget delay (3 s); absence must still clear the match
        settings = GREET_MODE
        session = started(settings)
        transition_effects(session, TickMatched(X), settings)

        deadline = None
        now = 0.0
        for _ in range(10):
            now += settings.tick_interval
            if deadline is not None and now >= deadline:
                transition_effects(session, ForgetElapsed(session.forget_generation), settings)
                deadline = None
            if Effect.ARM_FORGET in transition_effects(session, TickMissed(), settings):
                deadline = now + settings.forget_delay

        assert session.state is ScanState.SCANNING
        assert session.last_matched_id is None

    def test_forget_timer_is_armed_once_per_absence(self):
        session = started()
        transition_effects(session, TickMatched(X))
        transition_effects(session, TickMissed())
        generation = session.forget_generation
        for _ in range(5):
            assert transition_effects(session, TickMissed()) == []
        assert session.forget_generation == generation

    def test_exhausts_after_max_attempts_and_stops_camera_once(self):
        settings = ScanSettings(tick_interval=1.0, max_attempts=5)
        session = started(settings)
        collected = []
        for i in range(4):
            collected += transition_effects(session, TickMissed(frame=f"frame-{i}"), settings)
        assert collected == []

        effects = transition_effects(session, TickMissed(frame="frame-4"), settings)
        assert effects == [Effect.STOP_CAMERA, Effect.HAND_OFF_REGISTRATION, Effect.NOTIFY]
        assert session.state is ScanState.EXHAUSTED
        assert session.handoff_frame == "frame-4"

        assert transition_effects(session, TickMissed(), settings) == []
        assert transition_effects(session, Stopped(), settings) == [Effect.NOTIFY]

    def test_failed_ticks_count_as_attempts_but_keep_scanning(self):
        settings = ScanSettings(tick_interval=1.0, max_attempts=3)
        session = started(settings)
        assert transition_effects(session, TickFailed(RuntimeError("x")), settings) == []
        assert transition_effects(session, TickFailed(RuntimeError("x")), settings) == []
        assert session.state is ScanState.SCANNING
        assert Effect.STOP_CAMERA in transition_effects(session, TickMissed(), settings)

    def test_failed_ticks_alone_reach_the_cap(self):
        settings = ScanSettings(tick_interval=1.0, max_attempts=3)
        session = started(settings)
        transition_effects(session, TickFailed(RuntimeError("x")), settings)
        transition_effects(session, TickFailed(RuntimeError("x")), settings)
        effects = transition_effects(session, TickFailed(RuntimeError("x")), settings)
        assert effects == [Effect.STOP_CAMERA, Effect.HAND_OFF_REGISTRATION, Effect.NOTIFY]
        assert session.state is ScanState.EXHAUSTED

    def test_cap_does_not_apply_once_someone_was_recognized(self):
        settings = ScanSettings(tick_interval=1.0, max_attempts=2)
        session = started(settings)
        transition_effects(session, TickMatched(X), settings)
        transition_effects(session, TickMissed(), settings)
        transition_effects(session, ForgetElapsed(session.forget_generation), settings)
        assert transition_effects(session, TickMissed(), settings) == []
        assert session.state is ScanState.SCANNING

    def test_greet_mode_never_exhausts(self):
        session = started()
        for _ in range(50):
            transition_effects(session, TickMissed())
        assert session.state is ScanState.SCANNING

    def test_checkout_mode_stops_camera_on_match(self):
        session = started(CHECKOUT_MODE)
        effects = transition_effects(session, TickMatched(X), CHECKOUT_MODE)
        assert effects == [Effect.STOP_CAMERA, Effect.NOTIFY]
        assert session.state is ScanState.RECOGNIZED
        assert not session.camera_on

    def test_retry_resets_attempts(self):
        settings = ScanSettings(tick_interval=1.0, max_attempts=1)
        session = started(settings)
        transition_effects(session, TickMissed(), settings)
        assert session.state is ScanState.EXHAUSTED

        assert transition_effects(session, RetryRequested(), settings) == [Effect.NOTIFY]
        assert session.state is ScanState.SCANNING
        assert session.attempt_count == 0
        assert session.camera_on

    def test_retry_outside_exhausted_is_ignored(self):
        session = started()
        assert transition_effects(session, RetryRequested()) == []

    def test_stop_cancels_pending_forget_and_blocks_later_events(self):
        session = started()
        transition_effects(session, TickMatched(X))
        transition_effects(session, TickMissed())
        generation = session.forget_generation

        effects = transition_effects(session, Stopped())
        assert effects == [Effect.CANCEL_FORGET, Effect.STOP_CAMERA, Effect.NOTIFY]
        assert session.state is ScanState.IDLE

        assert transition_effects(session, ForgetElapsed(generation)) == []
        assert transition_effects(session, TickMatched(Y)) == []
        assert session.state is ScanState.IDLE
        assert session.identity is None

    def test_stop_when_idle_does_nothing(self):
        assert transition_effects(ScanSession(), Stopped()) == []

    def test_removed_identity_is_no_longer_tracked(self):
        session = started()
        transition_effects(session, TickMatched(X))

        assert transition_effects(session, IdentityRemoved("x")) == [Effect.NOTIFY]
        assert session.state is ScanState.SCANNING
        assert session.identity is None
        assert session.last_matched_id is None
        assert session.camera_on

    def test_removing_tracked_identity_cancels_pending_forget(self):
        session = started()
        transition_effects(session, TickMatched(X))
        transition_effects(session, TickMissed())

        effects = transition_effects(session, IdentityRemoved("x"))
        assert effects == [Effect.CANCEL_FORGET, Effect.NOTIFY]
        assert not session.forget_pending

    def test_removing_other_identity_changes_nothing(self):
        session = started()
        transition_effects(session, TickMatched(X))
        assert transition_effects(session, IdentityRemoved("y")) == []
        assert session.identity is X

    def test_removing_identity_after_checkout_match_goes_idle(self):
        session = started(CHECKOUT_MODE)
        transition_effects(session, TickMatched(X), CHECKOUT_MODE)
        assert transition_effects(session, IdentityRemoved("x"), CHECKOUT_MODE) == [Effect.NOTIFY]
        assert session.state is ScanState.IDLE


def fast(**kwargs):
    return ScanSettings(tick_interval=kwargs.pop("tick_interval", 0.01), **kwargs)


async def wait_for_state(event):
    await asyncio.wait_for(event.wait(), timeout=2)


class TestScanLoop:
    def test_exhaustion_releases_camera_exactly_once(self):
        camera = FakeCamera()

        async def scenario():
            loop = ScanLoop(FakeEngine(), lambda: [X], camera_factory=lambda: camera,
                            settings=fast(max_attempts=5))
            exhausted = asyncio.Event()
            loop.subscribe(lambda u: u.state is ScanState.EXHAUSTED and exhausted.set())
            await loop.start()
            await wait_for_state(exhausted)
            await asyncio.sleep(0.05)
            await loop.stop()
            return loop

        loop = asyncio.run(scenario())

        assert camera.open_count == 1
        assert camera.release_count == 1
        assert loop.session.attempt_count == 5
        assert loop.handoff_frame is camera.frame

    def test_recognizes_and_notifies_once_per_identity(self):
        camera = FakeCamera()
        engine = FakeEngine([unit(0), unit(0), unit(0)])
        updates = []

        async def scenario():
            loop = ScanLoop(engine, lambda: [X, Y], camera_factory=lambda: camera,
                            settings=fast(forget_delay=5.0))
            loop.subscribe(updates.append)
            await loop.start()
            while engine.calls < 4:
                await asyncio.sleep(0.01)
            await loop.stop()

        asyncio.run(scenario())

        recognized = [u for u in updates if u.state is ScanState.RECOGNIZED]
        assert len(recognized) == 1
        assert recognized[0].identity is X
        assert updates[-1].state is ScanState.IDLE
        assert camera.release_count == 1

    def test_forget_delay_returns_to_scanning(self):
        engine = FakeEngine([unit(0)])
        states = []

        async def scenario():
            loop = ScanLoop(engine, lambda: [X], camera_factory=FakeCamera,
                            settings=fast(forget_delay=0.05))
            back_to_scanning = asyncio.Event()

            def listener(update):
                states.append(update.state)
                if update.state is ScanState.SCANNING and ScanState.RECOGNIZED in states:
                    back_to_scanning.set()

            loop.subscribe(listener)
            await loop.start()
            await wait_for_state(back_to_scanning)
            await loop.stop()

        asyncio.run(scenario())
        assert states[:3] == [ScanState.SCANNING, ScanState.RECOGNIZED, ScanState.SCANNING]

    def test_stop_prevents_pending_forget_timer_from_firing(self):
        engine = FakeEngine([unit(0)])
        updates = []

        async def scenario():
            loop = ScanLoop(engine, lambda: [X], camera_factory=FakeCamera,
                            settings=fast(forget_delay=0.1))
            loop.subscribe(updates.append)
            await loop.start()
            while not loop.session.forget_pending:
                await asyncio.sleep(0.005)
            await loop.stop()
            seen = len(updates)
            await asyncio.sleep(0.2)
            return loop, seen

        loop, seen = asyncio.run(scenario())

        assert len(updates) == seen
        assert updates[-1].state is ScanState.IDLE
        assert loop.session.state is ScanState.IDLE

    def test_ticks_never_overlap(self):
        engine = FakeEngine(delay=0.05)

        async def scenario():
            loop = ScanLoop(engine, lambda: [], camera_factory=FakeCamera,
                            settings=fast(tick_interval=0.005))
            await loop.start()
            await asyncio.sleep(0.3)
            await loop.stop()

        asyncio.run(scenario())
        assert engine.calls >= 2
        assert engine.max_active == 1

    def test_tick_errors_are_logged_and_scanning_continues(self, caplog):
        engine = FakeEngine([RuntimeError("inference glitch"), unit(0)])

        async def scenario():
            loop = ScanLoop(engine, lambda: [X], camera_factory=FakeCamera, settings=fast())
            recognized = asyncio.Event()
            loop.subscribe(lambda u: u.state is ScanState.RECOGNIZED and recognized.set())
            await loop.start()
            await wait_for_state(recognized)
            await loop.stop()

        asyncio.run(scenario())
        assert "Scan tick failed" in caplog.text

    def test_model_load_failure_blocks_start(self):
        def broken():
            raise OSError("model missing")

        camera = FakeCamera()
        loop_holder = {}

        async def scenario():
            loop = ScanLoop(FakeEngine(load_fn=broken), lambda: [], camera_factory=lambda: camera)
            loop_holder["loop"] = loop
            await loop.start()

        with pytest.raises(ModelLoadError):
            asyncio.run(scenario())
        assert camera.open_count == 0
        assert loop_holder["loop"].state is ScanState.IDLE

    def test_camera_failure_blocks_start(self):
        async def scenario():
            loop = ScanLoop(FakeEngine(), lambda: [], camera_factory=lambda: FakeCamera(fail=True))
            try:
                await loop.start()
            finally:
                assert loop.state is ScanState.IDLE

        with pytest.raises(CameraUnavailableError):
            asyncio.run(scenario())

    def test_restart_tears_down_previous_session(self):
        cameras = []

        def factory():
            cameras.append(FakeCamera())
            return cameras[-1]

        async def scenario():
            loop = ScanLoop(FakeEngine(), lambda: [], camera_factory=factory, settings=fast())
            await loop.start()
            await loop.start()
            await loop.stop()

        asyncio.run(scenario())
        assert len(cameras) == 2
        assert [c.release_count for c in cameras] == [1, 1]

    def test_retry_after_exhaustion_reopens_camera(self):
        cameras = []

        def factory():
            cameras.append(FakeCamera())
            return cameras[-1]

        async def scenario():
            loop = ScanLoop(FakeEngine(), lambda: [], camera_factory=factory,
                            settings=fast(max_attempts=2))
            exhausted = asyncio.Event()
            loop.subscribe(lambda u: u.state is ScanState.EXHAUSTED and exhausted.set())
            await loop.start()
            await wait_for_state(exhausted)
            await loop.retry()
            state = loop.state
            attempts = loop.session.attempt_count
            await loop.stop()
            return state, attempts

        state, attempts = asyncio.run(scenario())
        assert state is ScanState.SCANNING
        assert attempts == 0
        assert len(cameras) == 2
