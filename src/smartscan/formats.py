# src/smartscan/formats.py
from __future__ import annotations

import re
from typing import Iterable, List, Optional

EAN13 = "EAN13"
EAN8 = "EAN8"
UPC = "UPC"
UPCE = "UPCE"
CODE128 = "CODE128"
CODE39 = "CODE39"

CANONICAL_FORMATS = (EAN13, EAN8, UPC, UPCE, CODE128, CODE39)

_ALIASES = {
    "EAN13": EAN13,
    "EAN": EAN13,
    "EAN8": EAN8,
    "UPC": UPC,
    "UPCA": UPC,
    "UPCE": UPCE,
    "CODE128": CODE128,
    "CODE39": CODE39,
}


def _squash(name: str) -> str:
    s = str(name).strip().upper()
    # zxing-cpp enum reprs look like "BarcodeFormat.EAN13"
    s = s.rsplit(".", 1)[-1]
    s = re.sub(r"_?READER$", "", s)
    return re.sub(r"[\s_\-]", "", s)


def normalize_format(name: Optional[str]) -> Optional[str]:
    """
    Map an engine specific format label onto a canonical name.
    EAN_13, ean-13, ean_13_reader and BarcodeFormat.EAN13 all become EAN13.
    Returns None for formats outside the supported set.
    """
    if not name:
        return None
    return _ALIASES.get(_squash(name))


def normalize_formats(names: Optional[Iterable[str]]) -> List[str]:
    """Normalize a list (or comma string) of format names, dropping unknowns and duplicates."""
    if names is None:
        return list(CANONICAL_FORMATS)
    if isinstance(names, str):
        names = [n for n in names.split(",")]
    out: List[str] = []
    for n in names:
        fmt = normalize_format(n)
        if fmt and fmt not in out:
            out.append(fmt)
    return out or list(CANONICAL_FORMATS)
