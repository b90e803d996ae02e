# src/smartscan/models.py
from __future__ import annotations

import math
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Tuple

import numpy as np


def normalize_confidence(value: Any) -> float:
    """
    Bring any engine confidence onto [0, 1].
    Values above 1 are treated as a 0-100 scale. Missing or NaN values count as 0.
    """
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(v) or v < 0:
        return 0.0
    if v > 1.0:
        v = v / 100.0
    return min(1.0, v)


@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class OCRWord:
    text: str
    confidence: float
    bbox: BoundingBox


@dataclass(frozen=True)
class BarcodeResult:
    """Outcome of one barcode decode. A successful result always carries code, format and engine."""
    ok: bool
    code: Optional[str] = None
    format: Optional[str] = None
    confidence: float = 0.0
    engine: Optional[str] = None
    duration_ms: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def failure(cls, error_code: str, message: Optional[str] = None, *, duration_ms: int = 0,
                engine: Optional[str] = None) -> "BarcodeResult":
        return cls(ok=False, engine=engine, duration_ms=duration_ms,
                   error_code=error_code, error_message=message)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("raw", None)
        return d


@dataclass(frozen=True)
class OCRResult:
    ok: bool
    text: str = ""
    confidence: float = 0.0
    words: Tuple[OCRWord, ...] = ()
    duration_ms: int = 0
    warnings: Tuple[str, ...] = ()
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    was_aborted: bool = False
    quality_score: float = 0.0
    attempts: int = 1
    mode: Optional[str] = None
    engine: Optional[str] = None

    @classmethod
    def failure(cls, error_code: str, message: Optional[str] = None, *, duration_ms: int = 0,
                was_aborted: bool = False, attempts: int = 1) -> "OCRResult":
        return cls(ok=False, duration_ms=duration_ms, error_code=error_code,
                   error_message=message, was_aborted=was_aborted, attempts=attempts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PreprocessedImage:
    """Canonical bitmap plus the record of which optional steps ran."""
    image: Optional[np.ndarray]
    width: int
    height: int
    aspect_ratio: float
    density: str
    grayscale: bool = True
    threshold_applied: bool = False
    denoise_applied: bool = False
    rotation_applied: int = 0

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    def release(self) -> None:
        self.image = None

    def meta(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "pixel_count": self.pixel_count,
            "aspect_ratio": round(self.aspect_ratio, 4),
            "density": self.density,
            "grayscale": self.grayscale,
            "threshold_applied": self.threshold_applied,
            "denoise_applied": self.denoise_applied,
            "rotation_applied": self.rotation_applied,
        }
