# smartscan/barcode_engines/pyzbar_backend.py
from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np
from PIL import Image
from pyzbar.pyzbar import ZBarSymbol, decode

from ..formats import CODE39, CODE128, EAN8, EAN13, UPC, UPCE, normalize_format
from ..models import BarcodeResult
from .base import to_barcode_result

_SYMBOL_NAMES = {
    EAN13: "EAN13",
    EAN8: "EAN8",
    UPC: "UPCA",
    UPCE: "UPCE",
    CODE128: "CODE128",
    CODE39: "CODE39",
}


def zbar_symbols(formats: Sequence[str]) -> List[ZBarSymbol]:
    """Return available ZBarSymbol members (handles build differences)."""
    out = []
    for fmt in formats:
        sym = getattr(ZBarSymbol, _SYMBOL_NAMES.get(fmt, ""), None)
        if sym is not None:
            out.append(sym)
    return out


class ZBarEngine:
    name = "zbar"

    def decode(self, image: np.ndarray, formats: Sequence[str]) -> Optional[BarcodeResult]:
        symbols = zbar_symbols(formats)
        if not symbols:
            return None
        pil = Image.fromarray(np.ascontiguousarray(image))
        for sym in decode(pil, symbols=symbols):
            fmt = normalize_format(sym.type)
            text = sym.data.decode("utf-8", errors="replace").strip()
            if text and fmt in formats:
                # zbar only reports a scan quality counter, accepted symbols count as certain
                return to_barcode_result(self.name, text, fmt, 1.0, raw=sym)
        return None
