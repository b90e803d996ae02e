# smartscan/barcode_engines/zxing_backend.py
from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import zxingcpp

from ..formats import normalize_format
from ..models import BarcodeResult
from .base import to_barcode_result

logger = logging.getLogger("smartscan")


def _read_barcodes(arr: np.ndarray, try_harder: bool):
    try:
        return zxingcpp.read_barcodes(arr, try_harder=try_harder)
    except TypeError:
        # Older bindings without try_harder
        return zxingcpp.read_barcodes(arr)


class ZXingEngine:
    """zxing-cpp decoder. Reports confidence 1.0 for every valid symbol."""
    name = "zxing"

    def __init__(self, try_harder: bool = True):
        self.try_harder = try_harder

    def decode(self, image: np.ndarray, formats: Sequence[str]) -> Optional[BarcodeResult]:
        arr = np.ascontiguousarray(image)
        for r in _read_barcodes(arr, self.try_harder):
            if hasattr(r, "valid") and not r.valid:
                continue
            fmt = normalize_format(str(r.format))
            text = (r.text or "").strip()
            if not text or fmt not in formats:
                logger.debug("zxing skipped symbol, format %s", r.format)
                continue
            return to_barcode_result(self.name, text, fmt, 1.0, raw=r)
        return None
