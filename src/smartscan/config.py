# src/smartscan/config.py
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Dict, Any, Mapping, Optional
import logging
import os

from .formats import CANONICAL_FORMATS, normalize_formats
from .state import ProgressBands

logger = logging.getLogger("smartscan")

BARCODE_ENGINES = ("zxing", "zbar", "opencv")

OCR_BACKEND_ALIASES = {
    "tess": "smartscan.ocr_backends.tesseract_backend.TesseractOCREngine",
    "tesseract": "smartscan.ocr_backends.tesseract_backend.TesseractOCREngine",
    "pytesseract": "smartscan.ocr_backends.tesseract_backend.TesseractOCREngine",
    "easy": "smartscan.ocr_backends.easyocr_backend.EasyOCREngine",
    "easyocr": "smartscan.ocr_backends.easyocr_backend.EasyOCREngine",
}


def normalize_backend_alias(name: str) -> str:
    """Allow short, case-insensitive aliases. Returns a dotted 'module.Class' path."""
    if not name:
        return OCR_BACKEND_ALIASES["tesseract"]
    original = name.strip().strip('"\'')
    return OCR_BACKEND_ALIASES.get(original.lower(), original)


def _clamp_int(raw: Optional[str], default: int, lo: int, hi: Optional[int] = None) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    value = max(lo, value)
    if hi is not None:
        value = min(hi, value)
    return value


def _clamp_float(raw: Optional[str], default: float, lo: float, hi: float) -> float:
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, value))


@dataclass
class ScanConfig:
    """Configuration for a smart scan session and its shared engines."""
    # Barcode
    barcode_engine: str = "auto"
    barcode_formats: List[str] = field(default_factory=lambda: list(CANONICAL_FORMATS))
    barcode_timeout_ms: int = 7000
    engine_timeout_ms: int = 3000
    live_fps: int = 10
    live_consensus: int = 3

    # Recognition
    ocr_backend: str = OCR_BACKEND_ALIASES["tesseract"]
    ocr_backend_kwargs: Dict[str, Any] = field(default_factory=dict)
    language: str = "eng"
    ocr_timeout_ms: int = 25000
    max_concurrent: int = 2
    max_side: int = 1600
    worker_idle_timeout: float = 30.0
    sweep_interval: float = 30.0
    wedge_after: int = 2
    ocr_max_retries: int = 1
    ocr_quality_threshold: float = 0.6
    cache_size: int = 50

    # Gate & session
    confidence_threshold: float = 0.8
    force_ocr: bool = False
    history_size: int = 8
    search_limit: int = 6
    progress: ProgressBands = field(default_factory=ProgressBands)

    error_log_path: Optional[Path] = None

    def __post_init__(self):
        engine = str(self.barcode_engine or "auto").strip().lower()
        if engine != "auto" and engine not in BARCODE_ENGINES:
            logger.warning("Unknown barcode engine %s, falling back to auto", engine)
            engine = "auto"
        self.barcode_engine = engine
        self.barcode_formats = normalize_formats(self.barcode_formats)
        self.ocr_backend = normalize_backend_alias(self.ocr_backend)
        self.confidence_threshold = max(0.0, min(1.0, float(self.confidence_threshold)))

    def to_dict(self):
        """Converts config to a plain dictionary (paths become strings)."""
        d = asdict(self)
        for key, value in d.items():
            if isinstance(value, Path):
                d[key] = str(value)
        return d

    @classmethod
    def from_dict(cls, config_dict: dict):
        d = dict(config_dict)

        if isinstance(d.get("error_log_path"), str):
            d["error_log_path"] = Path(d["error_log_path"])
        if isinstance(d.get("progress"), dict):
            d["progress"] = ProgressBands(**d["progress"])

        # allow explicit None to mean use default
        for key in list(d):
            if d[key] is None and key != "error_log_path":
                d.pop(key)

        known = set(cls.__dataclass_fields__)
        unknown = [k for k in d if k not in known]
        for key in unknown:
            logger.debug("Ignoring unknown config key, %s", key)
            d.pop(key)

        return cls(**d)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides):
        """
        Build a config from SMARTSCAN_* environment variables.
        Out-of-range numbers are clamped, unparsable ones fall back to defaults.
        """
        env = os.environ if environ is None else environ
        d: Dict[str, Any] = {}

        if env.get("SMARTSCAN_BARCODE_ENGINE"):
            d["barcode_engine"] = env["SMARTSCAN_BARCODE_ENGINE"]
        if env.get("SMARTSCAN_BARCODE_FORMATS"):
            d["barcode_formats"] = normalize_formats(env["SMARTSCAN_BARCODE_FORMATS"])
        if "SMARTSCAN_BARCODE_FPS" in env:
            d["live_fps"] = _clamp_int(env["SMARTSCAN_BARCODE_FPS"], 10, 1, 30)
        if "SMARTSCAN_BARCODE_CONSENSUS" in env:
            d["live_consensus"] = _clamp_int(env["SMARTSCAN_BARCODE_CONSENSUS"], 3, 1, 10)
        if "SMARTSCAN_BARCODE_TIMEOUT_MS" in env:
            d["barcode_timeout_ms"] = _clamp_int(env["SMARTSCAN_BARCODE_TIMEOUT_MS"], 7000, 1000)
        if env.get("SMARTSCAN_OCR_BACKEND"):
            d["ocr_backend"] = env["SMARTSCAN_OCR_BACKEND"]
        if env.get("SMARTSCAN_OCR_LANGUAGE"):
            d["language"] = env["SMARTSCAN_OCR_LANGUAGE"].strip()
        if "SMARTSCAN_OCR_TIMEOUT_MS" in env:
            d["ocr_timeout_ms"] = _clamp_int(env["SMARTSCAN_OCR_TIMEOUT_MS"], 25000, 1)
        if "SMARTSCAN_OCR_MAX_CONCURRENT" in env:
            d["max_concurrent"] = _clamp_int(env["SMARTSCAN_OCR_MAX_CONCURRENT"], 2, 1)
        if "SMARTSCAN_CONFIDENCE_THRESHOLD" in env:
            d["confidence_threshold"] = _clamp_float(env["SMARTSCAN_CONFIDENCE_THRESHOLD"], 0.8, 0.0, 1.0)
        if env.get("SMARTSCAN_ERROR_LOG"):
            d["error_log_path"] = env["SMARTSCAN_ERROR_LOG"]

        d.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(d)
