"""Remote analysis hand-off for captured frames.

The capture trigger only decides *when* a frame is worth analyzing. This
module encodes that frame, sends it to an analyzer without blocking the frame
loop, and turns the outcome (text or failure) into something a user can read.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

import aiohttp
import cv2
import numpy as np

logger = logging.getLogger("gesture_stabilizer.remote")

JPEG_QUALITY = 85
NO_GESTURE_MARKER = "No gesture detected"

NO_GESTURE_MESSAGE = "No gesture detected.\nTry improving lighting or moving closer."
GENERIC_FAILURE = "Analysis failed. Please ensure good lighting and try again."
CONNECTION_FAILURE = "Connection lost. Please check internet or switch to Local Mode."
RATE_LIMITED = "Server busy (Rate Limit). Please wait a moment."
SERVICE_UNAVAILABLE = "Cloud Service unavailable. Try Local Mode or wait."


class RecognitionScope(Enum):
    WORD = "WORD"
    SENTENCE = "SENTENCE"


@dataclass(frozen=True)
class AnalysisResult:
    """Outcome of one remote analysis."""
    ok: bool
    text: str
    timestamp: float  # ms, session clock of the capture
    error: Optional[str] = None


class RemoteAnalyzer(Protocol):
    async def analyze(self, image_b64: str, scope: RecognitionScope, language: str) -> str: ...


def encode_frame(frame_rgb: np.ndarray, quality: int = JPEG_QUALITY) -> str:
    """JPEG-encode an RGB frame and return it base64-encoded."""
    bgr = cv2.cvtColor(frame_rgb, cv2.COLOR_RGB2BGR)
    ok, buf = cv2.imencode(".jpg", bgr, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return base64.b64encode(buf.tobytes()).decode("ascii")


def describe_failure(error: BaseException) -> str:
    """Map an analysis failure to a user-facing message."""
    if isinstance(error, aiohttp.ClientResponseError):
        if error.status == 429:
            return RATE_LIMITED
        if error.status >= 500:
            return SERVICE_UNAVAILABLE
        return GENERIC_FAILURE
    if isinstance(error, (aiohttp.ClientConnectionError, asyncio.TimeoutError)):
        return CONNECTION_FAILURE
    return GENERIC_FAILURE


def interpret_text(text: str) -> str:
    if not text or NO_GESTURE_MARKER in text:
        return NO_GESTURE_MESSAGE
    return text.strip()


class HttpRemoteAnalyzer:
    """POSTs ``{image, scope, language}`` as JSON and reads back ``{"text": ...}``."""

    def __init__(self, url: str, timeout: float = 15.0, headers: Optional[dict] = None):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {"Content-Type": "application/json"}
        self._session: Optional[aiohttp.ClientSession] = None

    async def analyze(self, image_b64: str, scope: RecognitionScope, language: str) -> str:
        if self._session is None:
            self._session = aiohttp.ClientSession()

        payload = {"image": image_b64, "scope": scope.value, "language": language}
        async with self._session.post(
            self.url,
            json=payload,
            headers=self.headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            raise_for_status=True,
        ) as resp:
            data = await resp.json()
        return str(data.get("text", ""))

    async def close(self):
        if self._session:
            await self._session.close()
            self._session = None


class RemoteDispatcher:
    """Runs at most one analysis at a time as an asyncio task.

    ``on_settled`` is called from the event loop when the analysis
    finishes, whether it succeeded or failed. A cancelled analysis does not
    settle.
    """

    def __init__(
        self,
        analyzer: RemoteAnalyzer,
        on_settled: Optional[Callable[[AnalysisResult], None]] = None,
    ):
        self.analyzer = analyzer
        self.on_settled = on_settled
        self._task: Optional[asyncio.Task] = None

    @property
    def processing(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(
        self,
        frame_rgb: np.ndarray,
        scope: RecognitionScope,
        language: str,
        timestamp: float,
    ) -> bool:
        """Start analyzing a frame. Returns False if one is already running.

        Must be called from within a running event loop.
        """
        if self.processing:
            return False

        image = encode_frame(frame_rgb)
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(image, scope, language, timestamp))
        return True

    async def _run(self, image: str, scope: RecognitionScope, language: str, timestamp: float):
        try:
            text = await self.analyzer.analyze(image, scope, language)
            result = AnalysisResult(ok=True, text=interpret_text(text), timestamp=timestamp)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Remote analysis failed: %s", e)
            result = AnalysisResult(ok=False, text=describe_failure(e), timestamp=timestamp, error=str(e))

        if self.on_settled:
            self.on_settled(result)
        return result

    def cancel(self):
        """Drop the outstanding analysis, if any."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def wait(self) -> Optional[AnalysisResult]:
        """Await the outstanding analysis (mainly for shutdown and tests)."""
        task = self._task
        if task is None:
            return None
        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()
