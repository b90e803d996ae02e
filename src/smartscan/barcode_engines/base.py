# smartscan/barcode_engines/base.py
from __future__ import annotations

from typing import Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from ..models import BarcodeResult


@runtime_checkable
class BarcodeEngine(Protocol):
    """
    Capability shared by every barcode decoder.

    `decode` may be a plain or an async method. It returns None when nothing
    in `formats` was found, and is allowed to raise; the adapter absorbs errors.
    """
    name: str

    def decode(self, image: np.ndarray, formats: Sequence[str]) -> Optional[BarcodeResult]:
        ...


def to_barcode_result(engine: str, code: str, fmt: str, confidence: float = 1.0, raw=None) -> BarcodeResult:
    """Uniform result shape; duration is stamped later by the adapter."""
    return BarcodeResult(
        ok=True,
        code=str(code).strip(),
        format=fmt,
        confidence=max(0.0, min(1.0, float(confidence))),
        engine=engine,
        raw=raw,
    )

