# src/smartscan/orchestrator.py
from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from concurrent.futures import Executor
from dataclasses import asdict, dataclass, replace
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Protocol

from .barcode import BarcodeAdapter
from .cancellation import CancellationToken, race
from .config import ScanConfig
from .exceptions import ABORTED, ANALYZE_FAILED, OCR_FAILED, SEARCH_FAILED, CameraError, ScanAborted, describe_error
from .gate import ConfidenceGate, Route, Stage
from .live import CameraFrameSource, FrameSource, LiveBarcodeScanner
from .logger import PROGRESS
from .models import BarcodeResult, OCRResult
from .pool import RecognitionWorkerPool, WorkerFactory
from .postprocess import extract_label_fields
from .recognition import TextRecognizer
from .state import (
    AnalyzeFailed,
    AnalyzeStarted,
    AnalyzeSucceeded,
    BarcodeFailed,
    BarcodeSucceeded,
    ForceOCRSet,
    ManualTextConfirmed,
    OCRFailed,
    OCRLowConfidence,
    OCRProgressed,
    OCRSucceeded,
    Reset,
    RetryRequested,
    ScanCancelled,
    ScanEvent,
    ScanSession,
    ScanStarted,
    SearchFailed,
    SearchSucceeded,
    StageFailed,
    Step,
    reduce,
)
from .utils import append_jsonl, elapsed_ms

logger = logging.getLogger("smartscan")

DEFAULT_SEARCH_QUERY = "supplement"

_OCR_STATUS = {
    Route.ACCEPT: "succeeded",
    Route.MANUAL_CORRECTION: "needs_review",
    Route.CANCELLED: "cancelled",
    Route.FAIL: "failed",
}


class AnalysisClient(Protocol):
    async def analyze(self, payload: Dict[str, Any], token: Optional[CancellationToken] = None) -> Any:
        ...


class SearchClient(Protocol):
    async def search(self, query: str, limit: int, token: Optional[CancellationToken] = None) -> Any:
        ...


class LabelFieldsAnalyzer:
    """Offline analysis client: label fields from OCR text, or the barcode as is."""

    async def analyze(self, payload: Dict[str, Any], token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        if payload.get("barcode"):
            return {"barcode": payload["barcode"]}
        fields = extract_label_fields(payload.get("text") or "")
        return {
            "brand": fields.brand,
            "name": fields.product_name,
            "serving_size": fields.serving_size,
            "warnings": fields.warnings,
        }


# -----------------------------
# Metrics
# -----------------------------
@dataclass(frozen=True)
class StageSnapshot:
    status: str = "pending"
    duration_ms: Optional[int] = None
    confidence: Optional[float] = None
    engine: Optional[str] = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class MetricsSnapshot:
    session_id: Optional[str]
    step: str
    progress: int
    stages: Mapping[str, StageSnapshot]
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "step": self.step,
            "progress": self.progress,
            "error_code": self.error_code,
            "stages": {name: asdict(s) for name, s in self.stages.items()},
        }


@dataclass
class HistoryEntry:
    session_id: str
    timestamp: float
    source: Optional[str]
    query: Optional[str]
    barcode: Optional[str] = None
    text: Optional[str] = None
    ok: bool = True
    error_code: Optional[str] = None
    results: Any = None


def build_search_query(analysis: Any, barcode: Optional[BarcodeResult], ocr: Optional[OCRResult]) -> str:
    """Barcode first, then brand or product name from the analysis, then the first text line."""
    if barcode is not None and barcode.ok and barcode.code:
        return barcode.code
    if isinstance(analysis, Mapping):
        for key in ("brand", "name", "product_name"):
            value = analysis.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if ocr is not None and ocr.text:
        for line in ocr.text.split("\n"):
            if line.strip():
                return line.strip()
    return DEFAULT_SEARCH_QUERY


# -----------------------------
# Orchestrator
# -----------------------------
class SmartScanOrchestrator:
    """
    Drives one scan session through barcode, OCR, analysis and search.

    All decisions about the next step are made by `reduce`; this class only
    performs the I/O for the step the session is in and dispatches the
    outcome. Starting a scan cancels any scan still in flight, and events from
    a superseded scan are dropped.
    """

    def __init__(
        self,
        adapter: BarcodeAdapter,
        recognizer: TextRecognizer,
        *,
        analysis_client: Optional[AnalysisClient] = None,
        search_client: Optional[SearchClient] = None,
        config: Optional[ScanConfig] = None,
        gate: Optional[ConfidenceGate] = None,
        live_scanner: Optional[LiveBarcodeScanner] = None,
        pool: Optional[RecognitionWorkerPool] = None,
    ):
        self.config = config or ScanConfig()
        self.adapter = adapter
        self.recognizer = recognizer
        self.analysis_client = analysis_client or LabelFieldsAnalyzer()
        self.search_client = search_client
        self.gate = gate or ConfidenceGate(self.config.confidence_threshold)
        self.live_scanner = live_scanner or LiveBarcodeScanner.from_config(adapter, self.config)
        self.pool = pool
        self.bands = self.config.progress

        self.state = ScanSession(force_ocr=self.config.force_ocr)
        self.session_id: Optional[str] = None
        self.history: Deque[HistoryEntry] = deque(maxlen=max(1, self.config.history_size))
        self._stages: Dict[str, StageSnapshot] = {}
        self._subscribers: List[Callable[[MetricsSnapshot], Any]] = []
        self._token: Optional[CancellationToken] = None
        self._in_flight = 0
        self._source: Any = None
        self._frames_factory: Optional[Callable[[], FrameSource]] = None
        self._reset_stages()

    @classmethod
    def from_config(
        cls,
        config: ScanConfig,
        *,
        analysis_client: Optional[AnalysisClient] = None,
        search_client: Optional[SearchClient] = None,
        executor: Optional[Executor] = None,
        barcode_engines: Optional[Mapping[str, Any]] = None,
        worker_factory: Optional[WorkerFactory] = None,
    ) -> "SmartScanOrchestrator":
        adapter = BarcodeAdapter.from_config(config, engines=barcode_engines, executor=executor)
        pool = RecognitionWorkerPool.from_config(config, worker_factory, executor=executor)
        recognizer = TextRecognizer.from_config(config, pool, executor=executor)
        return cls(
            adapter,
            recognizer,
            analysis_client=analysis_client,
            search_client=search_client,
            config=config,
            live_scanner=LiveBarcodeScanner.from_config(adapter, config, executor=executor),
            pool=pool,
        )

    # -----------------------------
    # Subscriptions & metrics
    # -----------------------------
    def subscribe(self, callback: Callable[[MetricsSnapshot], Any]) -> Callable[[], None]:
        """Call `callback` with a MetricsSnapshot after every transition. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            session_id=self.session_id,
            step=self.state.step.value,
            progress=self.state.progress,
            stages=MappingProxyType(dict(self._stages)),
            error_code=self.state.error_code,
        )

    def _reset_stages(self) -> None:
        self._stages = {stage.value: StageSnapshot() for stage in Stage}

    def _mark(self, stage: Stage, status: str, **fields) -> None:
        self._stages[stage.value] = replace(self._stages[stage.value], status=status, **fields)

    def _publish(self) -> None:
        snap = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snap)
            except Exception:
                logger.exception("Metrics subscriber failed")

    # -----------------------------
    # Dispatch
    # -----------------------------
    def dispatch(self, event: ScanEvent) -> ScanSession:
        """Apply `event` to the current session, then log and publish the transition."""
        previous = self.state
        new_state = reduce(previous, event, self.bands)
        if new_state is previous:
            return previous
        self.state = new_state
        if logger.isEnabledFor(PROGRESS):
            logger.progress(
                "%s: %s -> %s (%d%%)", type(event).__name__, previous.step.value, new_state.step.value,
                new_state.progress,
                extra={"phase": new_state.step.value, "pct": new_state.progress,
                       "session": self.session_id, "error_code": new_state.error_code},
            )
        if new_state.step is Step.ERROR and previous.step is not Step.ERROR:
            self._log_failure(new_state)
        self._publish()
        return new_state

    def _emit(self, token: CancellationToken, event: ScanEvent) -> bool:
        """Dispatch on behalf of the scan owning `token`. Events from superseded scans are dropped."""
        if token is not self._token:
            logger.debug("Dropping %s from a superseded scan", type(event).__name__)
            return False
        self.dispatch(event)
        return True

    def _log_failure(self, state: ScanSession) -> None:
        logger.error("Scan %s failed at %s: %s (%s)", self.session_id,
                     state.failed_stage.value if state.failed_stage else "?", state.error_code,
                     state.error_detail or state.error_message)
        append_jsonl(self.config.error_log_path, {
            "session": self.session_id,
            "source": state.source,
            "stage": state.failed_stage.value if state.failed_stage else None,
            "error_code": state.error_code,
            "message": state.error_message,
            "detail": state.error_detail,
        })

    def _begin(self) -> CancellationToken:
        if self._token is not None:
            self._token.cancel("superseded")
        self._token = CancellationToken()
        return self._token

    def _aborted(self, token: CancellationToken) -> ScanSession:
        if token is not self._token:
            return self.state
        for name, snap in self._stages.items():
            if snap.status == "running":
                self._stages[name] = replace(snap, status="cancelled", error_code=ABORTED)
        self._emit(token, ScanCancelled(token.reason or "cancelled"))
        return self.state

    # -----------------------------
    # Public API
    # -----------------------------
    async def run_image_scan(self, image: Any) -> ScanSession:
        """Scan an uploaded image: barcode first, OCR as fallback, then analysis and search."""
        token = self._begin()
        self.session_id = uuid.uuid4().hex[:12]
        self._source = image
        self._frames_factory = None
        self._reset_stages()
        self.dispatch(ScanStarted("upload"))
        return await self._guarded(token, self._barcode_flow(image, token))

    async def start_camera_scan(
        self,
        source: Optional[FrameSource] = None,
        *,
        device: int = 0,
    ) -> ScanSession:
        """
        Scan from a live frame source (the default camera when none is given).
        When no barcode is accepted, OCR runs on the last decoded frame.
        """
        token = self._begin()
        self.session_id = uuid.uuid4().hex[:12]
        self._source = None
        if source is not None:
            given = source
            self._frames_factory = lambda: given
        else:
            self._frames_factory = lambda: CameraFrameSource(device).open()
        self._reset_stages()
        self.dispatch(ScanStarted("camera"))
        return await self._guarded(token, self._camera_flow(token))

    def stop_camera_scan(self) -> None:
        """Stop the live scan. The session is cancelled, not failed."""
        if self.live_scanner.running:
            self.live_scanner.stop()
        self.cancel("stopped")

    def cancel(self, reason: str = "cancelled") -> None:
        """Abort the in-flight stage. A session waiting for manual input is cancelled directly."""
        token = self._token
        if token is None:
            return
        token.cancel(reason)
        if self._in_flight == 0 and self.state.is_active:
            self._aborted(token)

    async def confirm_manual_text(self, text: str) -> ScanSession:
        """Accept corrected text as a confidence 1.0 OCR result and continue with analysis."""
        if self.state.step is not Step.MANUAL_CORRECTION:
            logger.warning("No manual correction pending (step %s)", self.state.step.value)
            return self.state
        token = self._token if self._token is not None and not self._token.cancelled else self._begin()
        before = self.state
        self.dispatch(ManualTextConfirmed(text))
        if self.state is before:
            return self.state
        self._mark(Stage.OCR, "manual", confidence=1.0, engine="manual", error_code=None)
        return await self._guarded(token, self._analysis_flow(token))

    async def retry(self) -> ScanSession:
        """Re-run the failed stage (or the stage that produced the accepted input)."""
        if self.state.step is not Step.ERROR or not self.state.retry_available:
            logger.warning("Nothing to retry (step %s)", self.state.step.value)
            return self.state
        token = self._begin()
        self.dispatch(RetryRequested())
        if self.state.step is Step.SCANNING_BARCODE:
            self._reset_stages()
            if self.state.source == "camera":
                return await self._guarded(token, self._camera_flow(token))
            return await self._guarded(token, self._barcode_flow(self._source, token))
        for stage in (Stage.OCR, Stage.ANALYSIS, Stage.SEARCH):
            self._stages[stage.value] = StageSnapshot()
        return await self._guarded(token, self._ocr_flow(self._source, token))

    def reset(self) -> ScanSession:
        if self._token is not None:
            self._token.cancel("reset")
            self._token = None
        if self.live_scanner.running:
            self.live_scanner.stop()
        self._source = None
        self._frames_factory = None
        self.session_id = None
        self._reset_stages()
        return self.dispatch(Reset())

    def set_force_ocr(self, value: bool) -> ScanSession:
        return self.dispatch(ForceOCRSet(bool(value)))

    async def aclose(self) -> None:
        self.reset()
        if self.pool is not None:
            await self.pool.terminate_all()

    # -----------------------------
    # Flows
    # -----------------------------
    async def _guarded(self, token: CancellationToken, flow) -> ScanSession:
        self._in_flight += 1
        try:
            await flow
        except ScanAborted:
            self._aborted(token)
        finally:
            self._in_flight -= 1
        return self.state

    async def _barcode_flow(self, image: Any, token: CancellationToken) -> None:
        self._mark(Stage.BARCODE, "running")
        result = await self.adapter.decode_result(image, token=token)
        await self._after_barcode(result, image, token)

    async def _camera_flow(self, token: CancellationToken) -> None:
        self._mark(Stage.BARCODE, "running")
        start = time.perf_counter()
        try:
            frames = self._frames_factory()
            result = await self.live_scanner.start(frames, token=token)
        except CameraError as e:
            self._mark(Stage.BARCODE, "failed", duration_ms=elapsed_ms(start), error_code=e.code)
            self._emit(token, StageFailed(Stage.BARCODE, e.code, describe_error(e.code), str(e)))
            return
        self._source = self.live_scanner.last_frame
        await self._after_barcode(result, self._source, token)

    async def _after_barcode(self, result: BarcodeResult, image: Any, token: CancellationToken) -> None:
        decision = self.gate.evaluate_barcode(result, force_ocr=self.state.force_ocr)
        self._mark(Stage.BARCODE, "succeeded" if result.ok else "failed", duration_ms=result.duration_ms,
                   confidence=result.confidence if result.ok else None, engine=result.engine,
                   error_code=result.error_code)
        if decision.route is Route.CANCELLED:
            raise ScanAborted(token.reason or "cancelled")
        if decision.accepted:
            if self._emit(token, BarcodeSucceeded(result)):
                await self._analysis_flow(token)
            return
        event = BarcodeSucceeded(result) if result.ok else BarcodeFailed(result)
        if self._emit(token, event):
            await self._ocr_flow(image, token)

    async def _ocr_flow(self, image: Any, token: CancellationToken) -> None:
        if image is None:
            self._mark(Stage.OCR, "failed", error_code=OCR_FAILED)
            self._emit(token, OCRFailed(error_code=OCR_FAILED, message="No image available for OCR"))
            return
        self._mark(Stage.OCR, "running")

        def on_progress(fraction: float) -> None:
            self._emit(token, OCRProgressed(fraction))

        result = await self.recognizer.recognize(image, token=token, on_progress=on_progress)
        decision = self.gate.evaluate_ocr(result)
        self._mark(Stage.OCR, _OCR_STATUS[decision.route], duration_ms=result.duration_ms,
                   confidence=result.confidence if result.ok else None, engine=result.engine,
                   error_code=decision.error_code)

        if decision.route is Route.CANCELLED:
            raise ScanAborted(token.reason or "cancelled")
        if decision.route is Route.ACCEPT:
            if self._emit(token, OCRSucceeded(result)):
                await self._analysis_flow(token)
        elif decision.route is Route.MANUAL_CORRECTION:
            self._emit(token, OCRLowConfidence(result))
        else:
            self._emit(token, OCRFailed(result, decision.error_code or OCR_FAILED, decision.message))

    def _analysis_payload(self) -> Dict[str, Any]:
        barcode = self.state.barcode_result
        ocr = self.state.ocr_result
        payload: Dict[str, Any] = {}
        if barcode is not None and barcode.ok and barcode.code:
            payload["barcode"] = barcode.code
        if ocr is not None or not payload:
            payload["text"] = ocr.text if ocr is not None else ""
        return payload

    async def _analysis_flow(self, token: CancellationToken) -> None:
        payload = self._analysis_payload()
        if not self._emit(token, AnalyzeStarted()):
            return
        self._mark(Stage.ANALYSIS, "running")
        start = time.perf_counter()
        try:
            analysis = await race(self.analysis_client.analyze(payload, token), token, None)
        except ScanAborted:
            raise
        except Exception as e:
            logger.warning("Analysis failed, %s", e)
            self._mark(Stage.ANALYSIS, "failed", duration_ms=elapsed_ms(start), error_code=ANALYZE_FAILED)
            self._emit(token, AnalyzeFailed(describe_error(ANALYZE_FAILED), str(e)))
            return
        self._mark(Stage.ANALYSIS, "succeeded", duration_ms=elapsed_ms(start))
        if self._emit(token, AnalyzeSucceeded(analysis)):
            await self._search_flow(analysis, token)

    async def _search_flow(self, analysis: Any, token: CancellationToken) -> None:
        query = build_search_query(analysis, self.state.barcode_result, self.state.ocr_result)
        if self.search_client is None:
            self._mark(Stage.SEARCH, "skipped")
            if self._emit(token, SearchSucceeded([])):
                self._remember(query, ok=True, results=[])
            return
        self._mark(Stage.SEARCH, "running")
        start = time.perf_counter()
        try:
            results = await race(self.search_client.search(query, self.config.search_limit, token), token, None)
        except ScanAborted:
            raise
        except Exception as e:
            logger.warning("Search for %r failed, %s", query, e)
            self._mark(Stage.SEARCH, "failed", duration_ms=elapsed_ms(start), error_code=SEARCH_FAILED)
            if self._emit(token, SearchFailed(describe_error(SEARCH_FAILED), str(e))):
                self._remember(query, ok=False)
            return
        self._mark(Stage.SEARCH, "succeeded", duration_ms=elapsed_ms(start))
        if self._emit(token, SearchSucceeded(results)):
            self._remember(query, ok=True, results=results)

    def _remember(self, query: str, *, ok: bool, results: Any = None) -> None:
        state = self.state
        barcode = state.barcode_result
        self.history.appendleft(HistoryEntry(
            session_id=self.session_id or "",
            timestamp=time.time(),
            source=state.source,
            query=query,
            barcode=barcode.code if barcode is not None and barcode.ok else None,
            text=state.ocr_result.text if state.ocr_result is not None else None,
            ok=ok,
            error_code=state.error_code,
            results=results,
        ))
