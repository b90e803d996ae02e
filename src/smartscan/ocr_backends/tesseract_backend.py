# smartscan/ocr_backends/tesseract_backend.py
from __future__ import annotations

from typing import List, Dict, Any, Tuple
import logging
import os
import platform
import re
import shutil
from pathlib import Path

import numpy as np
from PIL import Image
import pytesseract as pt

from ..models import BoundingBox, OCRWord
from .base import (
    BaseOCREngine,
    RecognitionOutput,
    MODE_AUTO,
    MODE_SINGLE_BLOCK,
    MODE_SINGLE_LINE,
    MODE_SINGLE_WORD,
    MODE_SPARSE_TEXT,
)

logger = logging.getLogger("smartscan")


def _as_int(x, default: int) -> int:
    try:
        if isinstance(x, str):
            x = x.strip().rstrip(",}] ")
        return int(x)
    except Exception:
        m = re.search(r"-?\d+", str(x))
        return int(m.group()) if m else default


def resolve_tesseract_cmd() -> str | None:
    # 1) explicit env override
    cmd = os.getenv("TESSERACT_CMD")
    if cmd and Path(cmd).exists():
        return cmd

    # 2) look on PATH
    cmd = shutil.which("tesseract")
    if cmd:
        return cmd

    # 3) common install locations
    system = platform.system()
    if system == "Windows":
        candidates = [
            r"C:\Program Files\Tesseract-OCR\tesseract.exe",
            r"C:\Program Files (x86)\Tesseract-OCR\tesseract.exe",
        ]
    elif system == "Darwin":
        candidates = ["/opt/homebrew/bin/tesseract", "/usr/local/bin/tesseract"]
    else:
        candidates = ["/usr/bin/tesseract", "/usr/local/bin/tesseract", "/snap/bin/tesseract"]

    for p in candidates:
        if Path(p).exists():
            return p
    return None


# Short codes to Tesseract traineddata names
_TESS_LANG_MAP = {
    "en": "eng",
    "vi": "vie",
    "fr": "fra",
    "de": "deu",
    "es": "spa",
}

# Recognition mode to page segmentation mode
_MODE_PSM = {
    MODE_AUTO: 3,
    MODE_SINGLE_BLOCK: 6,
    MODE_SINGLE_LINE: 7,
    MODE_SINGLE_WORD: 8,
    MODE_SPARSE_TEXT: 11,
}


def _norm_langs_to_tesseract(kwargs: Dict[str, Any]) -> str:
    # Accept languages or lang; allow str or list
    langs = kwargs.pop("languages", None) or kwargs.pop("lang", None) or kwargs.pop("language", None)
    if isinstance(langs, str):
        langs = langs.replace("+", ",").split(",")
    if not langs:
        langs = ["eng"]
    codes = [_TESS_LANG_MAP.get(str(l).strip().lower(), str(l).strip().lower()) for l in langs if l]
    return "+".join(sorted(set(codes)))


def _group_lines(data: Dict[str, List[Any]]) -> Tuple[str, List[OCRWord], List[float]]:
    """Rebuild text line by line from image_to_data output and collect word boxes with 0..1 confidences."""
    lines: Dict[Tuple[int, int, int], List[str]] = {}
    words: List[OCRWord] = []
    confs: List[float] = []
    for i, raw_text in enumerate(data.get("text", [])):
        text = str(raw_text or "").strip()
        conf = float(data["conf"][i]) if str(data["conf"][i]).strip() not in ("", "-1") else -1.0
        if not text or conf < 0:
            continue
        key = (int(data["block_num"][i]), int(data["par_num"][i]), int(data["line_num"][i]))
        lines.setdefault(key, []).append(text)
        score = max(0.0, min(1.0, conf / 100.0))
        confs.append(score)
        words.append(OCRWord(
            text=text,
            confidence=score,
            bbox=BoundingBox(
                x=int(data["left"][i]),
                y=int(data["top"][i]),
                width=int(data["width"][i]),
                height=int(data["height"][i]),
            ),
        ))
    text = "\n".join(" ".join(ws) for _, ws in sorted(lines.items()))
    return text, words, confs


class TesseractOCREngine(BaseOCREngine):
    """
    Pytesseract-based backend.

    Kwargs supported (all optional):
      - languages / lang / language: list[str] or str, mapped to "eng", "vie", ...
      - tesseract_cmd: full path to tesseract binary
      - tessdata_prefix: path to tessdata directory
      - oem: 0..3 (default 1 = LSTM only)
      - preserve_interword_spaces: bool (default True)
      - char_whitelist: characters Tesseract may emit
      - extra_config: str of extra flags (appended to config string)
    """
    name = "tesseract"

    def __init__(self, **kwargs: Dict[str, Any]):
        k = dict(kwargs)  # don't mutate caller's dict

        # Ignore GPU-related flags shared with other backends
        for junk in ("gpu", "use_gpu", "model_storage_directory", "download_enabled"):
            k.pop(junk, None)

        tesseract_cmd = k.pop("tesseract_cmd", None) or resolve_tesseract_cmd()
        if tesseract_cmd:
            pt.pytesseract.tesseract_cmd = str(tesseract_cmd)
            if not os.path.exists(pt.pytesseract.tesseract_cmd):
                raise RuntimeError(f"Tesseract binary not found: {pt.pytesseract.tesseract_cmd}")

        tessdata_prefix = k.pop("tessdata_prefix", None)
        if tessdata_prefix:
            os.environ["TESSDATA_PREFIX"] = str(tessdata_prefix)

        self.lang = _norm_langs_to_tesseract(k)

        oem = _as_int(k.pop("oem", 1), 1)
        preserve_spaces = bool(k.pop("preserve_interword_spaces", True))
        whitelist = str(k.pop("char_whitelist", "") or "").replace(" ", "")
        extra_cfg = str(k.pop("extra_config", "")).strip()

        parts = [f"--oem {oem}"]
        if preserve_spaces:
            parts.append("-c preserve_interword_spaces=1")
        if whitelist:
            parts.append(f"-c tessedit_char_whitelist={whitelist}")
        if extra_cfg:
            parts.append(extra_cfg)
        self._base_config = " ".join(parts)

        if k:
            logger.debug("Tesseract ignoring unknown options, %s", sorted(k))

    def _config_for(self, mode: str) -> str:
        psm = _MODE_PSM.get(mode, _MODE_PSM[MODE_AUTO])
        return f"{self._base_config} --psm {psm}"

    def _to_pil(self, img) -> Image.Image:
        if isinstance(img, Image.Image):
            return img
        if img.ndim == 2:
            return Image.fromarray(img)
        return Image.fromarray(img[..., :3])

    def recognize(self, image: np.ndarray, mode: str = MODE_AUTO) -> RecognitionOutput:
        data = pt.image_to_data(
            self._to_pil(image),
            lang=self.lang,
            config=self._config_for(mode),
            output_type=pt.Output.DICT,
        )
        text, words, confs = _group_lines(data)
        confidence = sum(confs) / len(confs) if confs else 0.0
        return RecognitionOutput(text=text, confidence=confidence, words=words)
