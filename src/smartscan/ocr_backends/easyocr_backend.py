# smartscan/ocr_backends/easyocr_backend.py
from __future__ import annotations

from typing import Any, Dict, List
import logging
import warnings

import numpy as np
import easyocr

from ..models import BoundingBox, OCRWord
from .base import BaseOCREngine, RecognitionOutput, MODE_AUTO

logger = logging.getLogger("smartscan")


# -----------------------------
# Helpers
# -----------------------------

def _as_bool(x, default=True) -> bool:
    if isinstance(x, bool):
        return x
    if isinstance(x, str):
        s = x.strip().lower()
        if s in ("true", "1", "yes", "y", "on"):
            return True
        if s in ("false", "0", "no", "n", "off"):
            return False
    return default


# Tesseract style codes to EasyOCR codes
_EASYOCR_LANG_MAP = {
    "eng": "en",
    "vie": "vi",
    "fra": "fr",
    "deu": "de",
    "spa": "es",
}


def _norm_langs_to_easyocr(kwargs: Dict[str, Any]) -> List[str]:
    langs = kwargs.pop("languages", None) or kwargs.pop("lang", None) or kwargs.pop("language", None)
    if isinstance(langs, str):
        langs = langs.replace("+", ",").split(",")
    if not langs:
        langs = ["en"]
    out: List[str] = []
    for l in langs:
        code = _EASYOCR_LANG_MAP.get(str(l).strip().lower(), str(l).strip().lower())
        if code and code not in out:
            out.append(code)
    return out


def _ensure_rgb_uint8(arr: np.ndarray) -> np.ndarray:
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    if arr.ndim == 2:
        return np.stack([arr, arr, arr], axis=-1)
    return np.ascontiguousarray(arr[..., :3])


def _torch_cuda_available() -> bool:
    try:
        import torch
        return bool(torch.cuda.is_available())
    except Exception:
        return False


def _box_from_points(points) -> BoundingBox:
    xs = [float(p[0]) for p in points]
    ys = [float(p[1]) for p in points]
    x0, y0 = int(min(xs)), int(min(ys))
    return BoundingBox(x=x0, y=y0, width=int(max(xs)) - x0, height=int(max(ys)) - y0)


# -----------------------------
# Backend
# -----------------------------

class EasyOCREngine(BaseOCREngine):
    """
    EasyOCR adapter.

    Supported kwargs (all optional):
      - languages / lang / language: list[str] | str (default ["en"])
      - gpu / use_gpu: bool (defaults to True if CUDA is available, else False)
      - model_storage_directory, user_network_directory, download_enabled
    The recognition mode is ignored, EasyOCR runs its own text detector.
    """
    name = "easyocr"

    def __init__(self, **kwargs: Dict[str, Any]):
        k = dict(kwargs)
        langs = _norm_langs_to_easyocr(k)

        want_gpu = _as_bool(k.pop("gpu", k.pop("use_gpu", True)), True)
        use_gpu = bool(want_gpu and _torch_cuda_available())

        reader_kwargs = {
            "model_storage_directory": k.pop("model_storage_directory", None),
            "user_network_directory": k.pop("user_network_directory", None),
            "download_enabled": _as_bool(k.pop("download_enabled", True), True),
            "verbose": _as_bool(k.pop("verbose", False), False),
        }
        try:
            self.reader = easyocr.Reader(langs, gpu=use_gpu, **reader_kwargs)
        except Exception as e:
            # Fallback: try CPU if GPU init failed
            if not use_gpu:
                raise
            logger.warning("EasyOCR GPU init failed, falling back to CPU: %s", e)
            self.reader = easyocr.Reader(langs, gpu=False, **reader_kwargs)

    def recognize(self, image: np.ndarray, mode: str = MODE_AUTO) -> RecognitionOutput:
        rgb = _ensure_rgb_uint8(image)
        # suppress runtime overflow spam from the decoder
        with np.errstate(over="ignore", invalid="ignore"), warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            detections = self.reader.readtext(rgb, detail=1, paragraph=False)

        words: List[OCRWord] = []
        lines: List[str] = []
        for points, text, conf in detections:
            text = str(text or "").strip()
            if not text:
                continue
            lines.append(text)
            words.append(OCRWord(text=text, confidence=float(conf), bbox=_box_from_points(points)))

        confidence = sum(w.confidence for w in words) / len(words) if words else 0.0
        return RecognitionOutput(text="\n".join(lines), confidence=confidence, words=words)

    def close(self) -> None:
        self.reader = None
