# src/smartscan/exceptions.py
from __future__ import annotations

from typing import Optional


class SmartScanError(Exception):
    """Base exception for the smartscan library."""
    code = "scan_failed"

    def __init__(self, message: str = "", *, detail: Optional[str] = None):
        super().__init__(message or self.code)
        self.detail = detail


class ScanAborted(SmartScanError):
    """Raised when a stage is cancelled on purpose. Never shown as an error."""
    code = "aborted"


class BarcodeError(SmartScanError):
    code = "barcode_failed"


class CameraError(SmartScanError):
    """Raised when a frame source cannot be opened or read."""
    code = "camera_not_found"

    def __init__(self, message: str = "", *, code: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        if code:
            self.code = code


class RecognitionError(SmartScanError):
    code = "ocr_failed"


class RecognitionTimeout(RecognitionError):
    code = "ocr_timeout"


class CapacityExceededError(RecognitionError):
    """Raised by the worker pool when every slot is busy. Callers are not queued."""
    code = "capacity_exceeded"


class BackendLoadError(SmartScanError):
    """Raised when an engine class cannot be imported or constructed."""
    code = "backend_unavailable"


# Error code taxonomy
BARCODE_TIMEOUT = "barcode_timeout"
BARCODE_UNSUPPORTED = "barcode_unsupported"
BARCODE_FAILED = "barcode_failed"
CAMERA_PERMISSION_DENIED = "camera_permission_denied"
CAMERA_NOT_FOUND = "camera_not_found"
OCR_TIMEOUT = "ocr_timeout"
OCR_LOW_CONFIDENCE = "ocr_low_confidence"
OCR_FAILED = "ocr_failed"
ANALYZE_FAILED = "analyze_failed"
SEARCH_FAILED = "search_failed"
CAPACITY_EXCEEDED = "capacity_exceeded"
ABORTED = "aborted"

_BARCODE_ALIASES = {
    "timeout": BARCODE_TIMEOUT,
    "barcode_timeout": BARCODE_TIMEOUT,
    "camera_timeout": BARCODE_TIMEOUT,
    "unsupported": BARCODE_UNSUPPORTED,
    "unsupported_format": BARCODE_UNSUPPORTED,
    "barcode_unsupported": BARCODE_UNSUPPORTED,
    "not_allowed": CAMERA_PERMISSION_DENIED,
    "permission_denied": CAMERA_PERMISSION_DENIED,
    "camera_permission_denied": CAMERA_PERMISSION_DENIED,
    "camera_not_found": CAMERA_NOT_FOUND,
    "not_found": CAMERA_NOT_FOUND,
    "no_camera": CAMERA_NOT_FOUND,
    "aborted": ABORTED,
}

_DESCRIPTIONS = {
    BARCODE_TIMEOUT: "No barcode was detected before the scan timed out. Try moving closer or improving lighting.",
    BARCODE_UNSUPPORTED: "Barcode scanning is not supported with the configured engines.",
    BARCODE_FAILED: "We could not read a barcode. We will try reading the label text instead.",
    CAMERA_PERMISSION_DENIED: "Camera access was denied. Allow camera access or upload a photo instead.",
    CAMERA_NOT_FOUND: "No camera was found. Connect a camera or upload a photo instead.",
    OCR_TIMEOUT: "Reading the label text took too long. Try a sharper or smaller photo.",
    OCR_LOW_CONFIDENCE: "The label text could not be read reliably. Please review and correct it.",
    OCR_FAILED: "Reading the label text failed. Try another photo.",
    ANALYZE_FAILED: "Analysis failed. Please try again.",
    SEARCH_FAILED: "Search failed. Please try again.",
    CAPACITY_EXCEEDED: "The text reader is busy. Please try again in a moment.",
    ABORTED: "Scan cancelled.",
}

_NEXT_ACTIONS = {
    BARCODE_TIMEOUT: "ocr",
    BARCODE_UNSUPPORTED: "ocr",
    BARCODE_FAILED: "ocr",
    CAMERA_PERMISSION_DENIED: "upload",
    CAMERA_NOT_FOUND: "upload",
    OCR_TIMEOUT: "retry",
    OCR_LOW_CONFIDENCE: "manual_correction",
    OCR_FAILED: "retry",
    ANALYZE_FAILED: "retry",
    SEARCH_FAILED: "retry",
    CAPACITY_EXCEEDED: "retry",
    ABORTED: "none",
}


def canonical_barcode_error(code: Optional[str]) -> str:
    """Map a raw engine/camera error code onto the barcode error taxonomy."""
    if not code:
        return BARCODE_FAILED
    return _BARCODE_ALIASES.get(str(code).strip().lower(), BARCODE_FAILED)


def describe_error(code: Optional[str]) -> str:
    if not code:
        return "Something went wrong. Please try again."
    return _DESCRIPTIONS.get(code, _DESCRIPTIONS.get(canonical_barcode_error(code), "Something went wrong."))


def next_action(code: Optional[str]) -> str:
    """Recommended route for a given error code (ocr, manual_correction, retry, upload, none)."""
    return _NEXT_ACTIONS.get(code or "", "retry")
