# src/smartscan/preprocess.py
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Optional

import cv2
import numpy as np
from PIL import Image

from .models import PreprocessedImage
from .sources import load_source

logger = logging.getLogger("smartscan")

DEFAULT_MAX_SIDE = 1600
THRESHOLD_FACTOR = 0.88
LOW_DENSITY_PIXELS = 300_000
MEDIUM_DENSITY_PIXELS = 1_000_000
DENOISE_MIN_PIXELS = 1_500_000
THRESHOLD_MIN_PIXELS = 100_000
ROTATE_MIN_PIXELS = 500_000
ROTATION_MIN_ANGLE = 5
# best candidate must beat the upright score by this ratio
ROTATION_MARGIN = 1.15

_ROTATIONS = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}

_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float32)


@dataclass(frozen=True)
class PreprocessOptions:
    """
    Knobs for one preprocessing run.

    `denoise`, `threshold` and `auto_rotate` accept True/False to force a step,
    or None to let the size/density heuristics decide.
    """
    max_side: int = DEFAULT_MAX_SIDE
    preserve_color: bool = False
    denoise: Optional[bool] = None
    threshold: Optional[bool] = None
    auto_rotate: Optional[bool] = None
    threshold_factor: float = THRESHOLD_FACTOR

    def with_overrides(self, **kwargs) -> "PreprocessOptions":
        return replace(self, **kwargs)


def classify_density(pixel_count: int) -> str:
    if pixel_count < LOW_DENSITY_PIXELS:
        return "low"
    if pixel_count < MEDIUM_DENSITY_PIXELS:
        return "medium"
    return "high"


def resize_to_max_side(arr: np.ndarray, max_side: int) -> np.ndarray:
    h, w = arr.shape[:2]
    longest = max(h, w)
    if max_side <= 0 or longest <= max_side:
        return arr
    scale = max_side / float(longest)
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    resized = Image.fromarray(arr).resize((new_w, new_h), Image.LANCZOS)
    return np.array(resized)


def to_grayscale(arr: np.ndarray) -> np.ndarray:
    """Luminance-weighted grayscale, 0.299R + 0.587G + 0.114B."""
    if arr.ndim == 2:
        return arr
    gray = arr[..., :3].astype(np.float32) @ _LUMA
    return np.clip(np.rint(gray), 0, 255).astype(np.uint8)


def median_denoise(arr: np.ndarray) -> np.ndarray:
    return cv2.medianBlur(np.ascontiguousarray(arr), 3)


def binarize(arr: np.ndarray, factor: float = THRESHOLD_FACTOR) -> np.ndarray:
    """Pixels at or above `factor` x mean luminance become white, the rest black."""
    gray = to_grayscale(arr)
    cutoff = float(gray.mean()) * factor
    return np.where(gray >= cutoff, 255, 0).astype(np.uint8)


def edge_energy(arr: np.ndarray) -> int:
    """Sum of absolute differences between horizontally adjacent pixels."""
    gray = to_grayscale(arr).astype(np.int16)
    return int(np.abs(np.diff(gray, axis=1)).sum())


def rotate(arr: np.ndarray, angle: int) -> np.ndarray:
    if angle % 360 == 0:
        return arr
    return cv2.rotate(np.ascontiguousarray(arr), _ROTATIONS[angle % 360])


def detect_rotation(arr: np.ndarray) -> int:
    """
    Score 0/90/180/270 by edge energy and return the winning angle.
    A non-zero angle only wins when it beats the upright score by ROTATION_MARGIN.
    """
    upright = edge_energy(arr)
    best_angle, best_score = 0, upright
    for angle in (90, 180, 270):
        score = edge_energy(rotate(arr, angle))
        if score > best_score:
            best_angle, best_score = angle, score
    if best_angle and best_score < upright * ROTATION_MARGIN:
        return 0
    return best_angle


def should_denoise(density: str, pixel_count: int) -> bool:
    return density == "high" or pixel_count > DENOISE_MIN_PIXELS


def should_threshold(pixel_count: int) -> bool:
    return pixel_count > THRESHOLD_MIN_PIXELS


def should_auto_rotate(aspect_ratio: float, pixel_count: int) -> bool:
    return 0.5 < aspect_ratio < 2.0 and pixel_count > ROTATE_MIN_PIXELS


def preprocess(source: Any, options: Optional[PreprocessOptions] = None) -> PreprocessedImage:
    """
    Normalize a bitmap source into a canonical image plus metadata.

    Steps run in a fixed order: decode, resize, grayscale, denoise, threshold,
    rotation. Running this on its own output keeps the output dimensions.
    """
    opts = options or PreprocessOptions()

    arr = load_source(source)
    arr = resize_to_max_side(arr, opts.max_side)

    h, w = arr.shape[:2]
    pixel_count = w * h
    aspect_ratio = w / float(h) if h else 1.0
    density = classify_density(pixel_count)

    grayscale = arr.ndim == 2
    if not opts.preserve_color and not grayscale:
        arr = to_grayscale(arr)
        grayscale = True

    denoise_applied = False
    want_denoise = opts.denoise if opts.denoise is not None else should_denoise(density, pixel_count)
    if want_denoise:
        arr = median_denoise(arr)
        denoise_applied = True

    threshold_applied = False
    want_threshold = opts.threshold if opts.threshold is not None else should_threshold(pixel_count)
    if want_threshold:
        arr = binarize(arr, opts.threshold_factor)
        threshold_applied = True
        grayscale = True

    rotation_applied = 0
    want_rotate = opts.auto_rotate if opts.auto_rotate is not None else should_auto_rotate(aspect_ratio, pixel_count)
    if want_rotate:
        angle = detect_rotation(arr)
        if abs(angle) > ROTATION_MIN_ANGLE:
            arr = rotate(arr, angle)
            rotation_applied = angle

    out_h, out_w = arr.shape[:2]
    logger.debug(
        "Preprocessed %dx%d, density %s, denoise %s, threshold %s, rotation %s",
        out_w, out_h, density, denoise_applied, threshold_applied, rotation_applied,
    )
    return PreprocessedImage(
        image=arr,
        width=out_w,
        height=out_h,
        aspect_ratio=out_w / float(out_h) if out_h else 1.0,
        density=density,
        grayscale=grayscale,
        threshold_applied=threshold_applied,
        denoise_applied=denoise_applied,
        rotation_applied=rotation_applied,
    )
