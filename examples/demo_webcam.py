#!/usr/bin/env python3
"""Live webcam demo of the local stabilization path.

Usage:
    python examples/demo_webcam.py [--camera 0] [--model gesture_recognizer.task] [--no-display]
"""

import argparse
import sys
import time

import cv2

from gesture_stabilizer import ConfirmedGestureEvent, EngineConfig, StabilizationSession
from gesture_stabilizer.tracker import GestureTracker

STATUS_COLORS = {
    "IDLE": (160, 160, 160),
    "MOVING": (0, 200, 255),
    "STABLE": (255, 200, 0),
    "CONFIRMED": (0, 255, 0),
}


def draw_overlay(frame, session: StabilizationSession):
    """Draw the session status and display text on a BGR frame."""
    color = STATUS_COLORS.get(session.status, (255, 255, 255))
    cv2.putText(frame, session.status, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.8, color, 2)

    backend = "CPU" if session.backend.cpu_bound else "GPU"
    cv2.putText(frame, backend, (frame.shape[1] - 70, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (200, 200, 200), 1)

    # putText can't render emoji; show the plain part of the display text
    for i, line in enumerate(session.display.splitlines()):
        text = line.encode("ascii", "ignore").decode().strip()
        cv2.putText(frame, text, (10, 70 + 30 * i), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (0, 255, 255), 2)
    return frame


def main():
    parser = argparse.ArgumentParser(description="GestureStabilizer Webcam Demo")
    parser.add_argument("--camera", type=int, default=0, help="Camera index")
    parser.add_argument("--model", default="gesture_recognizer.task", help="Gesture recognizer model")
    parser.add_argument("--no-display", action="store_true", help="Run headless")
    args = parser.parse_args()

    cap = cv2.VideoCapture(args.camera)
    if not cap.isOpened():
        print(f"Error: Cannot open camera {args.camera}")
        sys.exit(1)

    print("Starting GestureStabilizer...")
    print("Press 'q' to quit\n")

    with GestureTracker(args.model) as tracker:
        session = StabilizationSession(EngineConfig(model_path=args.model), tracker=tracker)

        def on_event(event):
            if isinstance(event, ConfirmedGestureEvent):
                print(f"  🤚 {event.display}")

        session.on_event(on_event)
        session.start()

        while True:
            ret, frame = cap.read()
            if not ret:
                break

            frame_rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            session.process_frame(frame_rgb, time.monotonic() * 1000.0)

            if not args.no_display:
                frame = draw_overlay(cv2.flip(frame, 1), session)
                cv2.imshow("GestureStabilizer", frame)
                if cv2.waitKey(1) & 0xFF == ord("q"):
                    break

        session.stop()

    cap.release()
    cv2.destroyAllWindows()


if __name__ == "__main__":
    main()
