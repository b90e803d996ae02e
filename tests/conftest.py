# tests/conftest.py
import asyncio
import logging
from typing import List, Optional

import numpy as np
import pytest

from smartscan.models import BarcodeResult, BoundingBox, OCRWord
from smartscan.ocr_backends.base import BaseOCREngine, RecognitionOutput


# --- Barcode fakes --------------------------------------------------------------

class FakeBarcodeEngine:
    """Returns a fixed result (or raises) and counts calls."""

    def __init__(self, name: str, result: Optional[BarcodeResult] = None, exc: Optional[Exception] = None):
        self.name = name
        self.result = result
        self.exc = exc
        self.calls = 0

    def decode(self, image, formats):
        self.calls += 1
        if self.exc is not None:
            raise self.exc
        return self.result


class HangingBarcodeEngine:
    def __init__(self, name: str):
        self.name = name
        self.calls = 0

    async def decode(self, image, formats):
        self.calls += 1
        await asyncio.Event().wait()


class SequenceBarcodeEngine:
    """Returns the next result from a list on every call, repeating the last one."""

    def __init__(self, name: str, results: List[Optional[BarcodeResult]]):
        self.name = name
        self.results = list(results)
        self.calls = 0

    def decode(self, image, formats):
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


def barcode(code="4006381333931", fmt="EAN_13", engine=None, confidence=1.0) -> BarcodeResult:
    return BarcodeResult(ok=True, code=code, format=fmt, confidence=confidence, engine=engine)


# --- OCR fakes ------------------------------------------------------------------

class FakeOCREngine(BaseOCREngine):
    """Plays back a list of outputs (or exceptions), repeating the last one."""
    name = "fake"

    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.calls = 0
        self.modes = []
        self.closed = False

    def recognize(self, image, mode="auto"):
        self.calls += 1
        self.modes.append(mode)
        out = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        if isinstance(out, Exception):
            raise out
        return out

    def close(self):
        self.closed = True


class HangingOCREngine(BaseOCREngine):
    name = "hanging"

    def __init__(self):
        self.calls = 0
        self.closed = False

    async def recognize(self, image, mode="auto"):
        self.calls += 1
        await asyncio.Event().wait()

    def close(self):
        self.closed = True


def ocr_output(text: str, confidence: float) -> RecognitionOutput:
    words = [
        OCRWord(text=w, confidence=confidence, bbox=BoundingBox(x=i * 40, y=0, width=38, height=20))
        for i, w in enumerate(text.split())
    ]
    return RecognitionOutput(text=text, confidence=confidence, words=words)


class FakeWorkerFactory:
    """Worker factory handing out engines from `make()` and recording lifecycle calls."""

    def __init__(self, make):
        self.make = make
        self.created = []
        self.terminated = []

    def create(self, language):
        engine = self.make()
        self.created.append((language, engine))
        return engine

    def terminate(self, engine):
        self.terminated.append(engine)
        engine.close()


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# --- Frame source ---------------------------------------------------------------

class FakeFrameSource:
    def __init__(self, frame: Optional[np.ndarray] = None, fail: Optional[Exception] = None):
        self.frame = frame if frame is not None else np.full((60, 80, 3), 180, dtype=np.uint8)
        self.fail = fail
        self.reads = 0
        self.released = False

    def read(self):
        self.reads += 1
        if self.fail is not None:
            raise self.fail
        return self.frame

    def release(self):
        self.released = True


# --- Fixtures -------------------------------------------------------------------

@pytest.fixture
def label_image() -> np.ndarray:
    """Small synthetic label: light background with dark text-like bars."""
    img = np.full((120, 400, 3), 235, dtype=np.uint8)
    for i in range(6):
        img[20 + i * 15: 28 + i * 15, 30:370] = 20
    return img


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def smartscan_logger():
    """The package logger, with its handlers and level restored afterwards."""
    logger = logging.getLogger("smartscan")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]
