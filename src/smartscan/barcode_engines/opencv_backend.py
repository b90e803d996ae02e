# smartscan/barcode_engines/opencv_backend.py
from __future__ import annotations

from typing import Optional, Sequence

import cv2
import numpy as np

from ..formats import normalize_format
from ..models import BarcodeResult
from .base import to_barcode_result


class OpenCVEngine:
    """
    OpenCV's built-in 1D barcode detector (EAN-8, EAN-13, UPC-A, UPC-E).
    The detector is created lazily so the class can be constructed anywhere.
    """
    name = "opencv"

    def __init__(self):
        self._detector = None

    def _get_detector(self):
        if self._detector is None:
            self._detector = cv2.barcode.BarcodeDetector()
        return self._detector

    def decode(self, image: np.ndarray, formats: Sequence[str]) -> Optional[BarcodeResult]:
        img = np.ascontiguousarray(image)
        if img.ndim == 3:
            img = cv2.cvtColor(img, cv2.COLOR_RGB2BGR)
        ok, infos, types, _points = self._get_detector().detectAndDecodeWithType(img)
        if not ok:
            return None
        for text, kind in zip(infos or (), types or ()):
            fmt = normalize_format(kind)
            if text and fmt in formats:
                return to_barcode_result(self.name, text, fmt, 1.0)
        return None
