"""Prometheus-compatible metrics for the stabilization engine.

Generates the text exposition format directly, no client library needed.

Tracked metrics:
- gesture_stabilizer_confirmations_total (counter, by label)
- gesture_stabilizer_captures_total (counter)
- gesture_stabilizer_analyses_total (counter, by outcome)
- gesture_stabilizer_transitions_total (counter, by path and status)
- gesture_stabilizer_frames_total (counter, by path)
- gesture_stabilizer_frame_latency_seconds (histogram)
- gesture_stabilizer_tracker_latency_seconds (histogram)
- gesture_stabilizer_backend_degraded (gauge)
- gesture_stabilizer_active_connections (gauge)
"""

from __future__ import annotations

import threading
import time
from collections import Counter


class _Histogram:
    """Cumulative histogram with fixed buckets."""

    def __init__(self, buckets: list[float]):
        self.buckets = sorted(buckets)
        self.bucket_counts = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float):
        with self._lock:
            self.count += 1
            self.sum += value
            for i, b in enumerate(self.buckets):
                if value <= b:
                    self.bucket_counts[i] += 1
                    break

    def render(self, name: str, help_text: str) -> list[str]:
        lines = [
            f"# HELP {name} {help_text}",
            f"# TYPE {name} histogram",
        ]
        with self._lock:
            cumulative = 0
            for b, n in zip(self.buckets, self.bucket_counts):
                cumulative += n
                lines.append(f'{name}_bucket{{le="{b}"}} {cumulative}')
            lines.append(f'{name}_bucket{{le="+Inf"}} {self.count}')
            lines.append(f"{name}_sum {self.sum:.6f}")
            lines.append(f"{name}_count {self.count}")
        return lines


class MetricsCollector:
    """Collects and renders engine metrics."""

    PREFIX = "gesture_stabilizer"

    def __init__(self):
        self._confirmations: Counter = Counter()
        self._analyses: Counter = Counter()
        self._transitions: Counter = Counter()
        self._frames: Counter = Counter()
        self._captures = 0
        self._backend_degraded = False
        self._active_connections = 0
        self._lock = threading.Lock()

        self._frame_latency = _Histogram([0.001, 0.002, 0.005, 0.010, 0.020, 0.033, 0.050, 0.100])
        self._tracker_latency = _Histogram([0.005, 0.010, 0.020, 0.040, 0.080, 0.160])
        self._start_time = time.time()

    def record_confirmation(self, label: str):
        with self._lock:
            self._confirmations[label] += 1

    def record_capture(self):
        with self._lock:
            self._captures += 1

    def record_analysis(self, ok: bool):
        with self._lock:
            self._analyses["success" if ok else "failure"] += 1

    def record_transition(self, path: str, status: str):
        with self._lock:
            self._transitions[(path, status)] += 1

    def record_frame(self, path: str, latency_seconds: float):
        with self._lock:
            self._frames[path] += 1
        self._frame_latency.observe(latency_seconds)

    def record_tracker_latency(self, latency_seconds: float):
        self._tracker_latency.observe(latency_seconds)

    def set_backend_degraded(self, degraded: bool):
        self._backend_degraded = degraded

    def set_connections(self, count: int):
        self._active_connections = count

    def _header(self, name: str, help_text: str, kind: str) -> list[str]:
        return [f"# HELP {name} {help_text}", f"# TYPE {name} {kind}"]

    def render(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        p = self.PREFIX
        lines: list[str] = []

        lines += self._header(f"{p}_uptime_seconds", "Time since collector start", "gauge")
        lines.append(f"{p}_uptime_seconds {time.time() - self._start_time:.1f}")
        lines.append("")

        with self._lock:
            lines += self._header(f"{p}_confirmations_total", "Confirmed gestures by label", "counter")
            for label, count in sorted(self._confirmations.items()):
                lines.append(f'{p}_confirmations_total{{label="{label}"}} {count}')
            lines.append("")

            lines += self._header(f"{p}_captures_total", "Frames handed to remote analysis", "counter")
            lines.append(f"{p}_captures_total {self._captures}")
            lines.append("")

            lines += self._header(f"{p}_analyses_total", "Remote analyses by outcome", "counter")
            for outcome, count in sorted(self._analyses.items()):
                lines.append(f'{p}_analyses_total{{outcome="{outcome}"}} {count}')
            lines.append("")

            lines += self._header(f"{p}_transitions_total", "Status transitions by path", "counter")
            for (path, status), count in sorted(self._transitions.items()):
                lines.append(f'{p}_transitions_total{{path="{path}",status="{status}"}} {count}')
            lines.append("")

            lines += self._header(f"{p}_frames_total", "Frames processed by path", "counter")
            for path, count in sorted(self._frames.items()):
                lines.append(f'{p}_frames_total{{path="{path}"}} {count}')
            lines.append("")

        lines += self._frame_latency.render(
            f"{p}_frame_latency_seconds", "Per-frame processing latency in seconds"
        )
        lines.append("")
        lines += self._tracker_latency.render(
            f"{p}_tracker_latency_seconds", "Hand tracker call latency in seconds"
        )
        lines.append("")

        lines += self._header(f"{p}_backend_degraded", "1 once inference fell back to the slow profile", "gauge")
        lines.append(f"{p}_backend_degraded {int(self._backend_degraded)}")
        lines.append("")

        lines += self._header(f"{p}_active_connections", "Current WebSocket connections", "gauge")
        lines.append(f"{p}_active_connections {self._active_connections}")
        lines.append("")

        return "\n".join(lines) + "\n"

    @property
    def confirmation_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._confirmations)

    @property
    def captures(self) -> int:
        return self._captures
