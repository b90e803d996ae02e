# src/smartscan/live.py
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

import cv2
import numpy as np

from .barcode import BarcodeAdapter
from .cancellation import CancellationToken
from .exceptions import BARCODE_TIMEOUT, CAMERA_NOT_FOUND, CameraError, ScanAborted
from .models import BarcodeResult
from .utils import elapsed_ms

logger = logging.getLogger("smartscan")

MAX_EMPTY_FRAMES = 30


class FrameSource(Protocol):
    def read(self) -> Optional[np.ndarray]:
        ...

    def release(self) -> None:
        ...


class CameraFrameSource:
    """
    OpenCV camera capture yielding RGB frames.
    Use as a context manager, or call open()/release() explicitly.
    """

    def __init__(self, device: Union[int, str] = 0, *, width: Optional[int] = None, height: Optional[int] = None):
        self.device = device
        self.width = width
        self.height = height
        self._cap = None

    def open(self) -> "CameraFrameSource":
        if self._cap is not None:
            return self
        device = int(self.device) if str(self.device).isdigit() else self.device
        cap = cv2.VideoCapture(device)
        if not cap.isOpened():
            cap.release()
            raise CameraError(f"Cannot open camera {self.device}", code=CAMERA_NOT_FOUND)
        if self.width:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        if self.height:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._cap = cap
        logger.info("Camera %s opened", self.device)
        return self

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def read(self) -> Optional[np.ndarray]:
        if self._cap is None:
            return None
        ok, frame = self._cap.read()
        if not ok or frame is None:
            return None
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def set_torch(self, enabled: bool) -> bool:
        # OpenCV exposes no portable torch control
        logger.debug("Torch control not supported for camera %s", self.device)
        return False

    def release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info("Camera %s released", self.device)

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.release()


@dataclass
class _LiveSession:
    source: Any
    done: "asyncio.Future"
    closed: Optional["asyncio.Future"] = None
    started: float = field(default_factory=time.perf_counter)
    busy: bool = False
    frames: int = 0
    skipped: int = 0
    empty: int = 0
    detections: Dict[str, int] = field(default_factory=dict)
    last_frame: Optional[np.ndarray] = None
    frame_task: Optional["asyncio.Task"] = None
    decode_task: Optional["asyncio.Future"] = None
    deadline: Optional[asyncio.TimerHandle] = None


class LiveBarcodeScanner:
    """
    Continuous barcode scanning over a frame source.

    Frames are pulled at `fps`. A decode runs on at most one frame at a time;
    frames that arrive while it is busy are skipped. A code is accepted after
    `consensus` votes (other candidates lose one vote per decoded frame), or at
    once when `instant_confidence` is set and reached.
    """

    def __init__(
        self,
        adapter: BarcodeAdapter,
        *,
        fps: int = 10,
        consensus: int = 3,
        timeout_ms: int = 7000,
        instant_confidence: Optional[float] = None,
        executor: Optional[Executor] = None,
    ):
        self.adapter = adapter
        self.fps = max(1, min(30, int(fps)))
        self.consensus = max(1, min(10, int(consensus)))
        self.timeout_ms = max(1, int(timeout_ms))
        self.instant_confidence = instant_confidence
        self.executor = executor
        self._session: Optional[_LiveSession] = None
        self.last_frame: Optional[np.ndarray] = None
        self.stats: Dict[str, int] = {}

    @classmethod
    def from_config(cls, adapter: BarcodeAdapter, config, executor: Optional[Executor] = None):
        return cls(
            adapter,
            fps=config.live_fps,
            consensus=config.live_consensus,
            timeout_ms=config.barcode_timeout_ms,
            executor=executor,
        )

    @property
    def running(self) -> bool:
        return self._session is not None

    # -----------------------------
    # Public API
    # -----------------------------
    async def start(
        self,
        source: FrameSource,
        on_detect: Optional[Callable[[BarcodeResult], Any]] = None,
        token: Optional[CancellationToken] = None,
    ) -> BarcodeResult:
        """
        Scan until a code is accepted, the deadline passes, or the scan is stopped.

        Returns the accepted result, or a failed result with `barcode_timeout`.
        Raises ScanAborted when stopped or cancelled. The frame source is
        released on every exit path.
        A scan already running is aborted and torn down first.
        """
        while self._session is not None:
            previous = self._session
            logger.info("Superseding the running live scan")
            self._finish(previous, exc=ScanAborted("superseded"))
            await asyncio.shield(previous.closed)
        if token is not None:
            try:
                token.raise_if_cancelled()
            except ScanAborted:
                source.release()
                raise

        loop = asyncio.get_running_loop()
        session = _LiveSession(source=source, done=loop.create_future(), closed=loop.create_future())
        self._session = session
        session.deadline = loop.call_later(self.timeout_ms / 1000.0, self._on_deadline, session)
        session.frame_task = asyncio.ensure_future(self._frame_loop(session))
        if token is not None:
            token.on_cancel(lambda: self._finish(session, exc=ScanAborted(token.reason or "cancelled")))

        logger.info("Live scan started, fps %d, consensus %d, timeout %d ms", self.fps, self.consensus, self.timeout_ms)
        try:
            result = await session.done
        finally:
            await self._teardown(session)

        if result.ok and on_detect is not None:
            ret = on_detect(result)
            if inspect.isawaitable(ret):
                await ret
        return result

    def stop(self) -> None:
        """Request the running scan to end. The pending `start` raises ScanAborted."""
        session = self._session
        if session is not None:
            self._finish(session, exc=ScanAborted("stopped"))

    # -----------------------------
    # Internals
    # -----------------------------
    def _finish(self, session: _LiveSession, *, result: Optional[BarcodeResult] = None,
                exc: Optional[BaseException] = None) -> None:
        if session.done.done():
            return
        if exc is not None:
            session.done.set_exception(exc)
        else:
            session.done.set_result(result)

    def _on_deadline(self, session: _LiveSession) -> None:
        logger.info("Live scan timed out after %d ms, %d frames", self.timeout_ms, session.frames)
        self._finish(session, result=BarcodeResult.failure(
            BARCODE_TIMEOUT, "No barcode detected before timeout", duration_ms=elapsed_ms(session.started)))

    async def _teardown(self, session: _LiveSession) -> None:
        try:
            if session.deadline is not None:
                session.deadline.cancel()
            pending: List[asyncio.Future] = []
            for task in (session.frame_task, session.decode_task):
                if task is not None and not task.done():
                    task.cancel()
                    pending.append(task)
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            try:
                session.source.release()
            except Exception:
                logger.exception("Failed to release frame source")
            self.stats = {"frames": session.frames, "skipped": session.skipped, "empty": session.empty}
            self.last_frame = session.last_frame
            session.detections.clear()
            session.last_frame = None
            logger.debug("Live scan stopped, %s", self.stats)
        finally:
            if self._session is session:
                self._session = None
            if not session.closed.done():
                session.closed.set_result(None)

    async def _frame_loop(self, session: _LiveSession) -> None:
        loop = asyncio.get_running_loop()
        interval = 1.0 / self.fps
        while not session.done.done():
            try:
                frame = await loop.run_in_executor(self.executor, session.source.read)
            except Exception as e:
                self._finish(session, exc=CameraError(f"Camera read failed, {e}", code=CAMERA_NOT_FOUND))
                return
            session.frames += 1
            if frame is None:
                session.empty += 1
                if session.empty > MAX_EMPTY_FRAMES:
                    self._finish(session, exc=CameraError("Camera stopped delivering frames", code=CAMERA_NOT_FOUND))
                    return
            elif session.busy:
                session.skipped += 1
            else:
                session.busy = True
                session.last_frame = frame
                session.decode_task = asyncio.ensure_future(self._decode_frame(session, frame.copy()))
            await asyncio.sleep(interval)

    async def _decode_frame(self, session: _LiveSession, frame: np.ndarray) -> None:
        try:
            result = await self.adapter.decode(frame)
        except Exception as e:
            logger.debug("Live decode failed, %s", e)
            result = None
        finally:
            session.busy = False
        accepted = self._vote(session, result)
        if accepted is not None:
            self._finish(session, result=accepted)

    def _vote(self, session: _LiveSession, result: Optional[BarcodeResult]) -> Optional[BarcodeResult]:
        detections = session.detections
        if result is None or not result.ok:
            for key in list(detections):
                if detections[key] > 1:
                    detections[key] -= 1
                else:
                    del detections[key]
            return None

        key = f"{result.code}|{result.format}"
        count = detections.get(key, 0) + 1
        for other in list(detections):
            if other != key:
                if detections[other] > 1:
                    detections[other] -= 1
                else:
                    del detections[other]
        detections[key] = count

        instant = self.instant_confidence is not None and result.confidence >= self.instant_confidence
        if count >= self.consensus or instant:
            detections.clear()
            logger.info("Live scan accepted %s after %d votes", result.code, count)
            return result
        return None
