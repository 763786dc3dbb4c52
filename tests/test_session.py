"""Tests for StabilizationSession: throttling, path switching, and both decision paths."""

import asyncio
import time

import aiohttp
import numpy as np
import pytest

from gesture_stabilizer.config import ConfigError, EngineConfig, Mode
from gesture_stabilizer.metrics import MetricsCollector
from gesture_stabilizer.motion import CaptureEvent
from gesture_stabilizer.remote import CONNECTION_FAILURE, AnalysisResult, RecognitionScope
from gesture_stabilizer.segmentation import ConfirmedGestureEvent
from gesture_stabilizer.session import (
    ANALYZING_TEXT,
    INFERENCE_SIZE,
    INFERENCE_SIZE_CPU,
    NO_HAND_TEXT,
    TRACKING_TEXT,
    WAITING_TEXT,
    BackendProfile,
    StabilizationSession,
    StatusUpdate,
)
from gesture_stabilizer.tracker import TrackerResult

BLACK = np.zeros((480, 640, 3), dtype=np.uint8)
WHITE = np.full((480, 640, 3), 255, dtype=np.uint8)


def make_fist():
    """All fingertips folded below their joints: no geometric override fires."""
    lm = np.zeros((21, 3), dtype=np.float32)
    lm[0] = [0.5, 0.9, 0.0]
    for finger, x in enumerate([0.35, 0.45, 0.5, 0.55, 0.6]):
        base = 1 + finger * 4
        lm[base] = [x, 0.75, 0.0]
        lm[base + 1] = [x, 0.68, 0.0]
        lm[base + 2] = [x, 0.6, 0.0]
        lm[base + 3] = [x, 0.75, 0.0]
    return lm


def make_call_me():
    lm = make_fist()
    lm[4] = [0.35, 0.5, 0.0]   # thumb out
    lm[20] = [0.6, 0.5, 0.0]   # pinky out
    return lm


class FakeTracker:
    def __init__(self, result=None, delay_s=0.0, cpu_delegate=False, error=None):
        self.result = result or TrackerResult()
        self.delay_s = delay_s
        self.cpu_delegate = cpu_delegate
        self.error = error
        self.calls = []

    def recognize(self, frame_rgb, timestamp_ms):
        self.calls.append((frame_rgb.shape, timestamp_ms))
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.error:
            raise self.error
        return self.result


class FakeAnalyzer:
    def __init__(self, text="HELLO", error=None, gate=None):
        self.text = text
        self.error = error
        self.gate = gate
        self.calls = []
        self.closed = False

    async def analyze(self, image_b64, scope, language):
        self.calls.append((scope, language))
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        return self.text

    async def close(self):
        self.closed = True


def hold(category="Victory", landmarks=None):
    return TrackerResult(hands=[make_fist() if landmarks is None else landmarks], category=category, score=0.8)


def make_session(mode=Mode.LOCAL, tracker=None, analyzer=None, metrics=None, **config):
    session = StabilizationSession(
        EngineConfig(mode=mode, **config),
        tracker=tracker if tracker is not None else FakeTracker(),
        analyzer=analyzer,
        metrics=metrics,
    )
    events = []
    session.on_event(events.append)
    session.start()
    return session, events


def feed(session, frames, start_ms=0.0, step_ms=101.0):
    """Process frames at evenly spaced timestamps; returns the last timestamp used."""
    t = start_ms
    for frame in frames:
        session.process_frame(frame, t)
        t += step_ms
    return t - step_ms


class TestLifecycle:
    def test_inactive_session_ignores_frames(self):
        tracker = FakeTracker()
        session = StabilizationSession(EngineConfig(), tracker=tracker)
        assert session.process_frame(BLACK, 0.0) == []
        assert tracker.calls == []

    def test_start_resets_display(self):
        session, _ = make_session()
        assert session.active
        assert session.status == "IDLE"
        assert session.display == WAITING_TEXT

    def test_stop(self):
        tracker = FakeTracker(hold())
        session, _ = make_session(tracker=tracker)
        feed(session, [BLACK] * 3)
        session.stop()
        assert not session.active
        assert session.process_frame(BLACK, 10_000.0) == []
        assert len(tracker.calls) == 3
        assert len(session.state.segmenter.window) == 0

    def test_aclose_closes_analyzer(self):
        analyzer = FakeAnalyzer()
        session, _ = make_session(analyzer=analyzer)
        asyncio.run(session.aclose())
        assert analyzer.closed
        assert not session.active


class TestThrottle:
    def test_local_interval(self):
        tracker = FakeTracker()
        session, _ = make_session(tracker=tracker)
        for t in (0.0, 50.0, 100.0, 101.0, 150.0, 202.0):
            session.process_frame(BLACK, t)
        assert [ts for _, ts in tracker.calls] == [0, 101, 202]

    def test_frame_resized_for_inference(self):
        tracker = FakeTracker()
        session, _ = make_session(tracker=tracker)
        session.process_frame(BLACK, 0.0)
        width, height = INFERENCE_SIZE
        assert tracker.calls[0][0] == (height, width, 3)

    def test_slow_inference_latches_cpu_profile(self):
        tracker = FakeTracker(delay_s=0.03)
        metrics = MetricsCollector()
        session, _ = make_session(tracker=tracker, metrics=metrics)

        session.process_frame(BLACK, 0.0)
        assert session.backend.cpu_bound
        assert "gesture_stabilizer_backend_degraded 1" in metrics.render()

        tracker.delay_s = 0.0
        for t in (120.0, 151.0, 250.0, 302.0):
            session.process_frame(BLACK, t)
        assert [ts for _, ts in tracker.calls] == [0, 151, 302]

        width, height = INFERENCE_SIZE_CPU
        assert tracker.calls[-1][0] == (height, width, 3)
        # Fast calls never restore the fast profile
        assert session.backend.cpu_bound

    def test_cpu_delegate_starts_latched(self):
        session, _ = make_session(tracker=FakeTracker(cpu_delegate=True))
        assert session.backend.cpu_bound

    def test_cpu_delegate_sets_degraded_gauge(self):
        metrics = MetricsCollector()
        make_session(tracker=FakeTracker(cpu_delegate=True), metrics=metrics)
        assert "gesture_stabilizer_backend_degraded 1" in metrics.render()

    def test_latch_survives_restart(self):
        session, _ = make_session(tracker=FakeTracker(delay_s=0.03))
        session.process_frame(BLACK, 0.0)
        session.stop()
        session.start()
        assert session.backend.cpu_bound


class TestBackendProfile:
    def test_observe_latches_once(self):
        profile = BackendProfile()
        assert not profile.observe(20.0)
        assert profile.observe(20.5)
        assert not profile.observe(50.0)
        assert profile.cpu_bound
        assert profile.local_interval_ms == 150.0
        assert profile.inference_size == INFERENCE_SIZE_CPU

    def test_defaults(self):
        profile = BackendProfile()
        assert profile.local_interval_ms == 100.0
        assert profile.inference_size == INFERENCE_SIZE


class TestLocalPath:
    def test_confirms_held_gesture(self):
        metrics = MetricsCollector()
        session, events = make_session(tracker=FakeTracker(hold("Victory")), metrics=metrics)
        feed(session, [BLACK] * 5)

        confirmed = [e for e in events if isinstance(e, ConfirmedGestureEvent)]
        assert confirmed == [ConfirmedGestureEvent("Victory", 404.0)]
        assert session.status == "CONFIRMED"
        assert session.display == "✌️ Victory"
        assert metrics.confirmation_counts == {"Victory": 1}

    def test_status_updates(self):
        session, events = make_session(tracker=FakeTracker(hold("Victory")))
        feed(session, [BLACK] * 7)
        updates = [(e.status, e.display) for e in events if isinstance(e, StatusUpdate)]
        assert updates == [
            ("MOVING", TRACKING_TEXT),
            ("CONFIRMED", "✌️ Victory"),
            ("STABLE", "✌️ Victory"),
        ]
        assert all(e.path == "local" for e in events if isinstance(e, StatusUpdate))

    def test_callbacks_see_returned_events(self):
        session, events = make_session(tracker=FakeTracker(hold()))
        returned = session.process_frame(BLACK, 0.0)
        assert returned == events

    def test_geometric_override(self):
        tracker = FakeTracker(TrackerResult(hands=[make_call_me()], category=None))
        session, events = make_session(tracker=tracker)
        feed(session, [BLACK] * 5)
        assert [e.label for e in events if isinstance(e, ConfirmedGestureEvent)] == ["Call_Me"]
        assert session.display == "🤙 Call Me"

    def test_hand_loss(self):
        tracker = FakeTracker(hold())
        session, events = make_session(tracker=tracker)
        last = feed(session, [BLACK] * 6)

        tracker.result = TrackerResult()
        session.process_frame(BLACK, last + 101)
        assert events[-1] == StatusUpdate("local", "IDLE", NO_HAND_TEXT, last + 101)

        tracker.result = hold()
        feed(session, [BLACK] * 5, start_ms=last + 202)
        assert len([e for e in events if isinstance(e, ConfirmedGestureEvent)]) == 2

    def test_tracker_failure_counts_as_no_hand(self):
        session, events = make_session(tracker=FakeTracker(error=RuntimeError("model crashed")))
        session.process_frame(BLACK, 0.0)
        assert session.status == "IDLE"
        assert session.display == NO_HAND_TEXT

    def test_without_tracker_local_path_is_inert(self):
        session = StabilizationSession(EngineConfig())
        session.start()
        assert session.process_frame(BLACK, 0.0) == []

    def test_process_tracking(self):
        session, events = make_session()
        for i in range(5):
            session.process_tracking(hold("Thumb_Up"), i * 101.0)
        assert ConfirmedGestureEvent("Thumb_Up", 404.0) in events


class TestModeSwitching:
    def test_switch_discards_history(self):
        tracker = FakeTracker(hold())
        session, _ = make_session(tracker=tracker)
        feed(session, [BLACK] * 3)
        assert len(session.state.segmenter.window) == 3

        session.set_mode(Mode.CLOUD)
        assert session.effective_mode == Mode.CLOUD
        assert len(session.state.segmenter.window) == 0
        assert session.status == "IDLE"
        assert session.display == WAITING_TEXT

        feed(session, [BLACK] * 3, start_ms=1000.0, step_ms=201.0)
        assert len(tracker.calls) == 3

    def test_same_mode_keeps_history(self):
        session, _ = make_session(tracker=FakeTracker(hold()))
        feed(session, [BLACK] * 3)
        session.set_mode(Mode.LOCAL)
        assert len(session.state.segmenter.window) == 3

    def test_switch_back_needs_full_threshold(self):
        session, events = make_session(tracker=FakeTracker(hold()))
        feed(session, [BLACK] * 4)
        session.set_mode(Mode.CLOUD)
        session.set_mode(Mode.LOCAL)
        feed(session, [BLACK], start_ms=1000.0)
        assert not any(isinstance(e, ConfirmedGestureEvent) for e in events)

    def test_offline_forces_local(self):
        tracker = FakeTracker()
        session, _ = make_session(mode=Mode.CLOUD, tracker=tracker)
        session.set_online(False)
        assert session.effective_mode == Mode.LOCAL
        session.process_frame(BLACK, 0.0)
        assert len(tracker.calls) == 1

        session.set_online(True)
        assert session.effective_mode == Mode.CLOUD
        session.process_frame(BLACK, 500.0)
        assert len(tracker.calls) == 1

    def test_configure_rebuilds_trigger(self):
        session, _ = make_session()
        config = session.configure(stability_threshold_ms=2000)
        assert config.stability_threshold_ms == 2000.0
        assert session.trigger.stability_threshold_ms == 2000.0

    def test_configure_mode(self):
        session, _ = make_session()
        session.configure(mode="CLOUD")
        assert session.effective_mode == Mode.CLOUD

    def test_configure_invalid_mode_applies_nothing(self):
        session, _ = make_session()
        with pytest.raises(ConfigError):
            session.configure(stability_threshold_ms=2000, mode="BOGUS")
        assert session.config.stability_threshold_ms == 1000.0
        assert session.trigger.stability_threshold_ms == 1000.0
        assert session.config.mode == Mode.LOCAL

    def test_configure_mode_and_threshold_together(self):
        session, _ = make_session()
        config = session.configure(stability_threshold_ms=2000, mode="CLOUD")
        assert config.mode == Mode.CLOUD
        assert config.stability_threshold_ms == 2000.0
        assert session.trigger.stability_threshold_ms == 2000.0


# Black reference, motion to white at t=201, then held still.
# Stable for more than 1000 ms at t=1206.
REMOTE_FRAMES = [BLACK] + [WHITE] * 6
CAPTURE_MS = 1206.0


class TestRemotePath:
    def test_capture_without_analyzer(self):
        session, events = make_session(mode=Mode.CLOUD)
        feed(session, REMOTE_FRAMES, step_ms=201.0)

        captures = [e for e in events if isinstance(e, CaptureEvent)]
        assert len(captures) == 1
        assert captures[0].timestamp == CAPTURE_MS
        assert session.status == "CAPTURING"

        session.process_frame(WHITE, CAPTURE_MS + 201)
        assert session.status == "IDLE"

    def test_status_sequence(self):
        session, events = make_session(mode=Mode.CLOUD)
        feed(session, REMOTE_FRAMES, step_ms=201.0)
        statuses = [e.status for e in events if isinstance(e, StatusUpdate)]
        assert statuses == ["MOVING", "STABLE", "CAPTURING"]
        assert all(e.path == "remote" for e in events if isinstance(e, StatusUpdate))

    def test_remote_interval(self):
        session, events = make_session(mode=Mode.CLOUD)
        session.process_frame(BLACK, 0.0)
        session.process_frame(WHITE, 200.0)  # not due yet
        assert events == []
        session.process_frame(WHITE, 201.0)
        assert session.status == "MOVING"

    def test_analysis_result(self):
        analyzer = FakeAnalyzer("HELLO")
        metrics = MetricsCollector()

        async def scenario():
            session, events = make_session(
                mode=Mode.CLOUD, analyzer=analyzer, metrics=metrics,
                scope=RecognitionScope.WORD, language="English",
            )
            feed(session, REMOTE_FRAMES, step_ms=201.0)
            assert session.processing
            assert session.display == ANALYZING_TEXT
            await session._dispatcher.wait()
            return session, events

        session, events = asyncio.run(scenario())
        assert analyzer.calls == [(RecognitionScope.WORD, "English")]
        assert AnalysisResult(ok=True, text="HELLO", timestamp=CAPTURE_MS) in events
        assert events[-1] == AnalysisResult(ok=True, text="HELLO", timestamp=CAPTURE_MS)
        assert session.status == "IDLE"
        assert session.display == "HELLO"
        assert not session.processing
        assert 'gesture_stabilizer_analyses_total{outcome="success"} 1' in metrics.render()

    def test_analysis_failure(self):
        analyzer = FakeAnalyzer(error=aiohttp.ClientConnectionError("offline"))

        async def scenario():
            session, events = make_session(mode=Mode.CLOUD, analyzer=analyzer)
            feed(session, REMOTE_FRAMES, step_ms=201.0)
            await session._dispatcher.wait()
            return session, events

        session, events = asyncio.run(scenario())
        result = events[-1]
        assert isinstance(result, AnalysisResult)
        assert not result.ok
        assert result.text == CONNECTION_FAILURE
        assert session.display == CONNECTION_FAILURE

    def test_no_capture_while_processing(self):
        async def scenario():
            gate = asyncio.Event()
            analyzer = FakeAnalyzer(gate=gate)
            session, events = make_session(mode=Mode.CLOUD, analyzer=analyzer)
            last = feed(session, REMOTE_FRAMES, step_ms=201.0)
            # Move again and hold well past the capture interval
            feed(session, [BLACK] + [BLACK] * 20, start_ms=last + 201, step_ms=201.0)
            captures = [e for e in events if isinstance(e, CaptureEvent)]
            assert len(captures) == 1
            assert session.status == "STABLE"
            gate.set()
            await session._dispatcher.wait()
            return analyzer

        analyzer = asyncio.run(scenario())
        assert len(analyzer.calls) == 1

    def test_mode_switch_cancels_analysis(self):
        async def scenario():
            analyzer = FakeAnalyzer(gate=asyncio.Event())
            session, events = make_session(mode=Mode.CLOUD, analyzer=analyzer)
            feed(session, REMOTE_FRAMES, step_ms=201.0)
            assert session.processing
            session.set_mode(Mode.LOCAL)
            assert not session.processing
            assert await session._dispatcher.wait() is None
            await asyncio.sleep(0)
            return events

        events = asyncio.run(scenario())
        assert not any(isinstance(e, AnalysisResult) for e in events)
