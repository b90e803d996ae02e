# src/smartscan/sources.py
from __future__ import annotations

import hashlib
import io
import logging
from pathlib import Path
from typing import Any, Union

import fitz  # PyMuPDF
import numpy as np
from PIL import Image, ImageOps

from .exceptions import SmartScanError
from .models import PreprocessedImage

logger = logging.getLogger("smartscan")

ImageSource = Union[str, Path, bytes, bytearray, Image.Image, np.ndarray, PreprocessedImage]

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".bmp", ".tif", ".tiff", ".webp", ".gif")
PDF_RENDER_DPI = 200


class SourceDecodeError(SmartScanError):
    """Raised when a bitmap source cannot be decoded."""
    code = "ocr_failed"


def _pil_to_array(img: Image.Image) -> np.ndarray:
    img = ImageOps.exif_transpose(img)
    if img.mode == "L":
        return np.array(img)
    return np.array(img.convert("RGB"))


def _render_pdf_first_page(doc: "fitz.Document", dpi: int) -> np.ndarray:
    if len(doc) == 0:
        raise SourceDecodeError("PDF has zero pages")
    pix = doc[0].get_pixmap(dpi=dpi, alpha=False)
    arr = np.frombuffer(pix.samples, dtype=np.uint8).reshape(pix.height, pix.width, pix.n)
    return arr[..., :3].copy()


def _ensure_uint8(arr: np.ndarray) -> np.ndarray:
    if arr.dtype != np.uint8:
        if np.issubdtype(arr.dtype, np.floating):
            scale = 255.0 if arr.size and float(arr.max()) <= 1.0 else 1.0
            arr = np.clip(arr * scale, 0, 255).astype(np.uint8)
        else:
            arr = np.clip(arr, 0, 255).astype(np.uint8)
    if arr.ndim == 3 and arr.shape[-1] == 1:
        return arr[..., 0]
    if arr.ndim == 3 and arr.shape[-1] >= 3:
        return arr[..., :3]
    if arr.ndim != 2:
        raise SourceDecodeError(f"Unsupported array shape {arr.shape}")
    return arr


def _unwrap(prepared: PreprocessedImage) -> np.ndarray:
    if prepared.image is None:
        raise SourceDecodeError("Preprocessed image was already released")
    return prepared.image


def load_source(source: Any, *, pdf_dpi: int = PDF_RENDER_DPI) -> np.ndarray:
    """
    Decode any bitmap source into a uint8 array (H x W gray, or H x W x 3 RGB).

    Accepts numpy arrays, PIL images, raw bytes, paths to images or PDFs, and
    the output of `preprocess` itself. For PDFs only the first page is rendered.
    """
    if isinstance(source, PreprocessedImage):
        source = _unwrap(source)
    if isinstance(source, np.ndarray):
        return _ensure_uint8(source)
    if isinstance(source, Image.Image):
        return _pil_to_array(source)
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
        if data[:4] == b"%PDF":
            with fitz.open(stream=data, filetype="pdf") as doc:
                return _render_pdf_first_page(doc, pdf_dpi)
        try:
            with Image.open(io.BytesIO(data)) as im:
                return _pil_to_array(im)
        except Exception as e:
            raise SourceDecodeError(f"Cannot decode image bytes, {e}") from e
    if isinstance(source, (str, Path)):
        p = Path(source)
        if not p.exists():
            raise SourceDecodeError(f"Source file does not exist, {p}")
        if p.suffix.lower() == ".pdf":
            try:
                with fitz.open(p) as doc:
                    return _render_pdf_first_page(doc, pdf_dpi)
            except SourceDecodeError:
                raise
            except Exception as e:
                logger.warning("PyMuPDF failed to render %s, %s", p.name, e)
                raise SourceDecodeError(f"Cannot render PDF, {p.name}") from e
        try:
            with Image.open(p) as im:
                return _pil_to_array(im)
        except Exception as e:
            raise SourceDecodeError(f"Cannot decode image, {p.name}, {e}") from e
    raise SourceDecodeError(f"Unsupported source type, {type(source).__name__}")


def source_digest(source: Any) -> str:
    """SHA-256 of the source content, used as a recognition cache key."""
    h = hashlib.sha256()
    if isinstance(source, PreprocessedImage):
        source = _unwrap(source)
    if isinstance(source, np.ndarray):
        h.update(str(source.shape).encode())
        h.update(np.ascontiguousarray(source).tobytes())
    elif isinstance(source, Image.Image):
        h.update(f"{source.mode}{source.size}".encode())
        h.update(source.tobytes())
    elif isinstance(source, (bytes, bytearray)):
        h.update(bytes(source))
    elif isinstance(source, (str, Path)):
        with open(source, "rb") as f:
            for chunk in iter(lambda: f.read(1 << 20), b""):
                h.update(chunk)
    else:
        raise SourceDecodeError(f"Unsupported source type, {type(source).__name__}")
    return h.hexdigest()


def is_supported_file(path: Path) -> bool:
    return path.suffix.lower() in IMAGE_SUFFIXES + (".pdf",)
