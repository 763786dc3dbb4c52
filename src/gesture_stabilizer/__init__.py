"""GestureStabilizer - debounced gesture events from noisy per-frame hand tracking."""

__version__ = "0.1.0"

from gesture_stabilizer.smoothing import Observation, VoteResult, VotingWindow, ObservationHistory
from gesture_stabilizer.gestures import GeometricClassifier, HandShape, FingerState, display_label
from gesture_stabilizer.segmentation import (
    GestureSegmenter,
    SegmentationState,
    SegmenterState,
    ConfirmedGestureEvent,
    TieBreak,
)
from gesture_stabilizer.motion import MotionTrigger, MotionState, MotionSampleBuffer, CaptureEvent
from gesture_stabilizer.remote import RecognitionScope, AnalysisResult, HttpRemoteAnalyzer, RemoteDispatcher
from gesture_stabilizer.config import EngineConfig, Mode, ConfigError
from gesture_stabilizer.session import StabilizationSession, StatusUpdate, BackendProfile
from gesture_stabilizer.tracker import TrackerResult
from gesture_stabilizer.metrics import MetricsCollector
