# src/smartscan/gate.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .exceptions import ABORTED, OCR_FAILED, OCR_LOW_CONFIDENCE, canonical_barcode_error
from .models import BarcodeResult, OCRResult

logger = logging.getLogger("smartscan")

DEFAULT_CONFIDENCE_THRESHOLD = 0.8


class Route(str, Enum):
    ACCEPT = "accept"
    OCR = "ocr"
    MANUAL_CORRECTION = "manual_correction"
    FAIL = "fail"
    CANCELLED = "cancelled"


class Stage(str, Enum):
    BARCODE = "barcode"
    OCR = "ocr"
    ANALYSIS = "analysis"
    SEARCH = "search"


@dataclass(frozen=True)
class GateDecision:
    route: Route
    error_code: Optional[str] = None
    message: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.route is Route.ACCEPT


class ConfidenceGate:
    """
    Accept/reject policy for recognition results.

    A barcode is accepted whenever an engine produced one. OCR text is
    accepted at `threshold` or above and otherwise goes to manual correction,
    with the text kept as an editable draft.
    """

    def __init__(self, threshold: float = DEFAULT_CONFIDENCE_THRESHOLD):
        self.threshold = max(0.0, min(1.0, float(threshold)))

    def evaluate_barcode(self, result: Optional[BarcodeResult], *, force_ocr: bool = False) -> GateDecision:
        if result is not None and result.ok and result.code:
            if force_ocr:
                return GateDecision(Route.OCR)
            return GateDecision(Route.ACCEPT)
        code = canonical_barcode_error(result.error_code if result is not None else None)
        if code == ABORTED:
            return GateDecision(Route.CANCELLED, ABORTED)
        # any barcode failure falls back to OCR
        return GateDecision(Route.OCR, code, result.error_message if result is not None else None)

    def evaluate_ocr(self, result: OCRResult) -> GateDecision:
        if result.was_aborted or result.error_code == ABORTED:
            return GateDecision(Route.CANCELLED, ABORTED)
        if not result.ok:
            code = result.error_code or OCR_FAILED
            return GateDecision(Route.FAIL, code, result.error_message or "OCR processing failed")
        if result.confidence >= self.threshold:
            return GateDecision(Route.ACCEPT)
        logger.info("OCR confidence %.2f below threshold %.2f", result.confidence, self.threshold)
        return GateDecision(Route.MANUAL_CORRECTION, OCR_LOW_CONFIDENCE, "OCR confidence below threshold")


class FallbackController:
    """Chooses the stage that follows a failed or skipped one."""

    _NEXT = {
        Stage.BARCODE: Stage.OCR,
    }

    def next_stage(self, failed: Stage) -> Optional[Stage]:
        """The fallback for `failed`, or None when the session must go to error."""
        return self._NEXT.get(failed)

    def retry_stage(self, failed: Optional[Stage], accepted_barcode: bool) -> Stage:
        """
        Where a retry re-enters. Barcode and OCR failures retry their own stage;
        later failures restart from the stage that produced the accepted input.
        """
        if failed in (Stage.BARCODE, Stage.OCR):
            return failed
        return Stage.BARCODE if accepted_barcode else Stage.OCR
