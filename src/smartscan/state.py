# src/smartscan/state.py
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, Type, Union

from .exceptions import ABORTED, ANALYZE_FAILED, BARCODE_FAILED, OCR_FAILED, OCR_LOW_CONFIDENCE, SEARCH_FAILED
from .gate import FallbackController, Stage
from .models import BarcodeResult, OCRResult

logger = logging.getLogger("smartscan")


class Step(str, Enum):
    IDLE = "idle"
    SCANNING_BARCODE = "scanning_barcode"
    OCR = "ocr"
    MANUAL_CORRECTION = "manual_correction"
    ANALYZING = "analyzing"
    SEARCHING = "searching"
    DONE = "done"
    ERROR = "error"


ACTIVE_STEPS = frozenset({
    Step.SCANNING_BARCODE, Step.OCR, Step.MANUAL_CORRECTION, Step.ANALYZING, Step.SEARCHING,
})


@dataclass(frozen=True)
class ProgressBands:
    """Progress percentages reached by each transition."""
    start: int = 10
    barcode_to_ocr: int = 20
    barcode_to_ocr_forced: int = 30
    barcode_to_analyzing: int = 55
    low_confidence: int = 50
    ocr_failed: int = 40
    ocr_succeeded: int = 60
    analyze_start: int = 70
    searching: int = 85
    done: int = 100


def clamp_progress(value: float) -> int:
    return int(max(0, min(100, round(value))))


@dataclass(frozen=True)
class ScanSession:
    """Immutable snapshot of one scan. Only `reduce` produces new sessions."""
    step: Step = Step.IDLE
    progress: int = 0
    source: Optional[str] = None
    force_ocr: bool = False
    barcode_result: Optional[BarcodeResult] = None
    ocr_result: Optional[OCRResult] = None
    manual_text: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_detail: Optional[str] = None
    retry_available: bool = False
    failed_stage: Optional[Stage] = None
    was_aborted: bool = False
    accepted_input: Optional[str] = None
    analysis: Any = None
    search: Any = None

    @property
    def is_active(self) -> bool:
        return self.step in ACTIVE_STEPS

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "step": self.step.value,
            "progress": self.progress,
            "source": self.source,
            "force_ocr": self.force_ocr,
            "barcode": self.barcode_result.to_dict() if self.barcode_result else None,
            "ocr": self.ocr_result.to_dict() if self.ocr_result else None,
            "manual_text": self.manual_text,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "error_detail": self.error_detail,
            "retry_available": self.retry_available,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "was_aborted": self.was_aborted,
            "accepted_input": self.accepted_input,
            "analysis": self.analysis,
            "search": self.search,
        }
        return d


# -----------------------------
# Events
# -----------------------------
@dataclass(frozen=True)
class ScanStarted:
    source: str = "upload"


@dataclass(frozen=True)
class BarcodeSucceeded:
    result: BarcodeResult


@dataclass(frozen=True)
class BarcodeFailed:
    result: Optional[BarcodeResult] = None
    error_code: str = BARCODE_FAILED
    message: Optional[str] = None


@dataclass(frozen=True)
class OCRSucceeded:
    result: OCRResult


@dataclass(frozen=True)
class OCRLowConfidence:
    result: OCRResult


@dataclass(frozen=True)
class OCRFailed:
    result: Optional[OCRResult] = None
    error_code: str = OCR_FAILED
    message: Optional[str] = None


@dataclass(frozen=True)
class ManualTextConfirmed:
    text: str


@dataclass(frozen=True)
class AnalyzeStarted:
    pass


@dataclass(frozen=True)
class AnalyzeSucceeded:
    analysis: Any = None


@dataclass(frozen=True)
class AnalyzeFailed:
    message: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class SearchSucceeded:
    results: Any = None


@dataclass(frozen=True)
class SearchFailed:
    message: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class StageFailed:
    stage: Stage
    code: str
    message: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class ScanCancelled:
    reason: str = "cancelled"


@dataclass(frozen=True)
class RetryRequested:
    pass


@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class ForceOCRSet:
    value: bool


@dataclass(frozen=True)
class OCRProgressed:
    fraction: float


ScanEvent = Union[
    ScanStarted, BarcodeSucceeded, BarcodeFailed, OCRSucceeded, OCRLowConfidence, OCRFailed,
    ManualTextConfirmed, AnalyzeStarted, AnalyzeSucceeded, AnalyzeFailed, SearchSucceeded,
    SearchFailed, StageFailed, ScanCancelled, RetryRequested, Reset, ForceOCRSet, OCRProgressed,
]


# -----------------------------
# Transitions
# -----------------------------
_fallback = FallbackController()


def _advance(state: ScanSession, target: int, **changes) -> ScanSession:
    return replace(state, progress=max(state.progress, clamp_progress(target)), **changes)


def _fail(state: ScanSession, stage: Stage, code: str, message: Optional[str],
          detail: Optional[str] = None, progress: Optional[int] = None) -> ScanSession:
    target = state.progress if progress is None else progress
    return _advance(
        state, target, step=Step.ERROR, error_code=code, error_message=message, error_detail=detail,
        retry_available=True, failed_stage=stage, was_aborted=False,
    )


def _on_scan_started(state, event: ScanStarted, bands):
    return ScanSession(step=Step.SCANNING_BARCODE, progress=bands.start, source=event.source,
                       force_ocr=state.force_ocr)


def _on_barcode_succeeded(state, event: BarcodeSucceeded, bands):
    if state.step is not Step.SCANNING_BARCODE:
        return None
    if state.force_ocr:
        return _advance(state, bands.barcode_to_ocr_forced, step=Step.OCR, barcode_result=event.result)
    return _advance(state, bands.barcode_to_analyzing, step=Step.ANALYZING, barcode_result=event.result,
                    error_code=None, error_message=None, accepted_input="barcode")


def _on_barcode_failed(state, event: BarcodeFailed, bands):
    if state.step is not Step.SCANNING_BARCODE:
        return None
    code = event.error_code
    message = event.message
    if event.result is not None:
        code = event.result.error_code or code
        message = message or event.result.error_message
    return _advance(state, bands.barcode_to_ocr, step=Step.OCR, barcode_result=event.result,
                    error_code=code, error_message=message)


def _on_ocr_succeeded(state, event: OCRSucceeded, bands):
    if state.step is not Step.OCR:
        return None
    return _advance(state, bands.ocr_succeeded, step=Step.ANALYZING, ocr_result=event.result,
                    error_code=None, error_message=None, accepted_input="text")


def _on_ocr_low_confidence(state, event: OCRLowConfidence, bands):
    if state.step is not Step.OCR:
        return None
    return _advance(state, bands.low_confidence, step=Step.MANUAL_CORRECTION, ocr_result=event.result,
                    manual_text=event.result.text, error_code=OCR_LOW_CONFIDENCE,
                    error_message="OCR confidence below threshold")


def _on_ocr_failed(state, event: OCRFailed, bands):
    if state.step is not Step.OCR:
        return None
    code, message = event.error_code, event.message
    if event.result is not None:
        code = event.result.error_code or code
        message = message or event.result.error_message
    failed = _fail(state, Stage.OCR, code, message, progress=bands.ocr_failed)
    return replace(failed, ocr_result=event.result)


def _on_manual_text(state, event: ManualTextConfirmed, bands):
    if state.step is not Step.MANUAL_CORRECTION:
        return None
    text = (event.text or "").strip()
    if not text:
        logger.debug("Ignoring empty manual text")
        return None
    result = OCRResult(ok=True, text=text, confidence=1.0, quality_score=1.0, mode="manual", engine="manual")
    return _advance(state, bands.ocr_succeeded, step=Step.ANALYZING, ocr_result=result, manual_text=text,
                    error_code=None, error_message=None, accepted_input="text")


def _on_analyze_started(state, event, bands):
    if state.step is not Step.ANALYZING:
        return None
    return _advance(state, bands.analyze_start)


def _on_analyze_succeeded(state, event: AnalyzeSucceeded, bands):
    if state.step is not Step.ANALYZING:
        return None
    return _advance(state, bands.searching, step=Step.SEARCHING, analysis=event.analysis)


def _on_analyze_failed(state, event: AnalyzeFailed, bands):
    if state.step is not Step.ANALYZING:
        return None
    return _fail(state, Stage.ANALYSIS, ANALYZE_FAILED, event.message or "Analysis failed", event.detail)


def _on_search_succeeded(state, event: SearchSucceeded, bands):
    if state.step is not Step.SEARCHING:
        return None
    return _advance(state, bands.done, step=Step.DONE, search=event.results)


def _on_search_failed(state, event: SearchFailed, bands):
    if state.step is not Step.SEARCHING:
        return None
    return _fail(state, Stage.SEARCH, SEARCH_FAILED, event.message or "Search failed", event.detail)


def _on_stage_failed(state, event: StageFailed, bands):
    if not state.is_active:
        return None
    return _fail(state, event.stage, event.code, event.message, event.detail)


def _on_cancelled(state, event: ScanCancelled, bands):
    if not state.is_active:
        return None
    return ScanSession(step=Step.IDLE, source=state.source, force_ocr=state.force_ocr,
                       error_code=ABORTED, error_message=event.reason, retry_available=False,
                       was_aborted=True)


def _on_retry(state, event, bands):
    if state.step is not Step.ERROR or not state.retry_available:
        return None
    stage = _fallback.retry_stage(state.failed_stage, state.accepted_input == "barcode")
    if stage is Stage.BARCODE:
        return ScanSession(step=Step.SCANNING_BARCODE, progress=bands.start, source=state.source,
                           force_ocr=state.force_ocr)
    return ScanSession(step=Step.OCR, progress=bands.barcode_to_ocr, source=state.source,
                       force_ocr=state.force_ocr, barcode_result=state.barcode_result)


def _on_reset(state, event, bands):
    return ScanSession(force_ocr=state.force_ocr)


def _on_force_ocr(state, event: ForceOCRSet, bands):
    return replace(state, force_ocr=bool(event.value))


def _on_ocr_progressed(state, event: OCRProgressed, bands):
    if state.step is not Step.OCR:
        return None
    fraction = max(0.0, min(1.0, float(event.fraction)))
    lo, hi = bands.barcode_to_ocr, bands.ocr_succeeded
    return _advance(state, lo + fraction * (hi - lo))


_HANDLERS: Dict[Type, Callable[[ScanSession, Any, ProgressBands], Optional[ScanSession]]] = {
    ScanStarted: _on_scan_started,
    BarcodeSucceeded: _on_barcode_succeeded,
    BarcodeFailed: _on_barcode_failed,
    OCRSucceeded: _on_ocr_succeeded,
    OCRLowConfidence: _on_ocr_low_confidence,
    OCRFailed: _on_ocr_failed,
    ManualTextConfirmed: _on_manual_text,
    AnalyzeStarted: _on_analyze_started,
    AnalyzeSucceeded: _on_analyze_succeeded,
    AnalyzeFailed: _on_analyze_failed,
    SearchSucceeded: _on_search_succeeded,
    SearchFailed: _on_search_failed,
    StageFailed: _on_stage_failed,
    ScanCancelled: _on_cancelled,
    RetryRequested: _on_retry,
    Reset: _on_reset,
    ForceOCRSet: _on_force_ocr,
    OCRProgressed: _on_ocr_progressed,
}


def reduce(state: ScanSession, event: ScanEvent, bands: Optional[ProgressBands] = None) -> ScanSession:
    """
    Apply one event to a session and return the next session.

    Pure: no I/O, no mutation. Events that do not apply to the current step
    return `state` itself, so callers can detect a no-op with `is`.
    """
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unknown scan event, {type(event).__name__}")
    new_state = handler(state, event, bands or ProgressBands())
    if new_state is None:
        logger.debug("Ignoring %s in step %s", type(event).__name__, state.step.value)
        return state
    return new_state
