"""GestureStabilizer CLI.

Usage:
    gesture-stabilizer serve: Start the WebSocket status server
    gesture-stabilizer watch: Run the engine on a camera and print events
    gesture-stabilizer config: Print or write a default YAML config
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

import typer

from gesture_stabilizer.config import ConfigError, EngineConfig, Mode

app = typer.Typer(
    name="gesture-stabilizer",
    help="🤚 Real-time gesture stabilization: debounced gestures and motion-gated captures.",
    add_completion=False,
)


def _load_config(path: Optional[str]) -> EngineConfig:
    if not path:
        return EngineConfig()
    try:
        return EngineConfig.from_yaml(path)
    except ConfigError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)


def _setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind address"),
    port: int = typer.Option(8765, help="Port"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    log_level: str = typer.Option("info", help="Log level"),
):
    """Start the WebSocket status server."""
    import uvicorn
    from gesture_stabilizer.server import app as fastapi_app, state

    _setup_logging(log_level)
    state.config = _load_config(config)

    typer.echo(f"🚀 Starting GestureStabilizer on {host}:{port} ({state.config.mode.value} mode)")
    typer.echo("   POST /api/session/start to open the camera")
    uvicorn.run(fastapi_app, host=host, port=port, log_level=log_level)


@app.command()
def watch(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    mode: Optional[Mode] = typer.Option(None, case_sensitive=False, help="Override the configured mode"),
    camera: Optional[int] = typer.Option(None, help="Camera device index"),
    duration: float = typer.Option(0, help="Seconds to run (0 = until Ctrl+C)"),
    log_level: str = typer.Option("warning", help="Log level"),
):
    """Run the engine on a local camera and print events as they happen."""
    _setup_logging(log_level)
    cfg = _load_config(config)
    if mode is not None:
        cfg = cfg.update(mode=mode)
    if camera is not None:
        cfg = cfg.update(camera_index=camera)

    try:
        asyncio.run(_watch(cfg, duration))
    except KeyboardInterrupt:
        pass


async def _watch(cfg: EngineConfig, duration: float):
    import cv2
    from gesture_stabilizer.metrics import MetricsCollector
    from gesture_stabilizer.motion import CaptureEvent
    from gesture_stabilizer.remote import AnalysisResult, HttpRemoteAnalyzer
    from gesture_stabilizer.segmentation import ConfirmedGestureEvent
    from gesture_stabilizer.session import StabilizationSession, StatusUpdate

    cap = cv2.VideoCapture(cfg.camera_index)
    if not cap.isOpened():
        typer.echo(f"❌ Could not open camera {cfg.camera_index}", err=True)
        raise typer.Exit(1)

    tracker = None
    if cfg.mode == Mode.LOCAL:
        from gesture_stabilizer.tracker import GestureTracker
        try:
            tracker = GestureTracker(cfg.model_path)
        except (ImportError, RuntimeError, ValueError) as e:
            cap.release()
            typer.echo(f"❌ Could not load hand tracker: {e}", err=True)
            raise typer.Exit(1)

    analyzer = HttpRemoteAnalyzer(cfg.analyzer_url, cfg.analyzer_timeout_s) if cfg.analyzer_url else None
    metrics = MetricsCollector()
    session = StabilizationSession(cfg, tracker=tracker, analyzer=analyzer, metrics=metrics)

    def on_event(event):
        if isinstance(event, StatusUpdate):
            typer.echo(f"   [{event.status:9s}] {event.display.splitlines()[0]}")
        elif isinstance(event, ConfirmedGestureEvent):
            typer.echo(f"   ✅ {event.display}")
        elif isinstance(event, CaptureEvent):
            typer.echo(f"   📸 capture (stable for {event.stable_ms:.0f} ms)")
        elif isinstance(event, AnalysisResult):
            icon = "💬" if event.ok else "⚠️ "
            typer.echo(f"   {icon} {event.text}")

    session.on_event(on_event)
    session.start()
    typer.echo(f"🎥 Watching camera {cfg.camera_index} in {cfg.mode.value} mode. Press Ctrl+C to stop")

    start = time.monotonic()
    try:
        while duration <= 0 or time.monotonic() - start < duration:
            ret, frame = cap.read()
            if not ret:
                await asyncio.sleep(0.01)
                continue
            frame_rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            session.process_frame(frame_rgb, time.monotonic() * 1000.0)
            await asyncio.sleep(0.001)
    finally:
        await session.aclose()
        cap.release()
        if tracker is not None:
            tracker.close()

    counts = metrics.confirmation_counts
    typer.echo(f"\n📊 {sum(counts.values())} confirmed gestures, {metrics.captures} captures")
    for label, n in sorted(counts.items()):
        typer.echo(f"   {label:15s} {n}")


@app.command("config")
def config_cmd(
    output: Optional[str] = typer.Option(None, "-o", help="Write the default config to this path"),
):
    """Print the default configuration, or write it as YAML."""
    cfg = EngineConfig()
    if output:
        path = Path(output)
        if path.exists() and not typer.confirm(f"{path} exists. Overwrite?"):
            raise typer.Exit(1)
        cfg.to_yaml(path)
        typer.echo(f"💾 Saved to: {path}")
        return

    for key, value in cfg.to_dict().items():
        typer.echo(f"{key}: {value}")


def main():
    app()


if __name__ == "__main__":
    main()
