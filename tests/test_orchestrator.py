# tests/test_orchestrator.py
import asyncio
import json

from smartscan.barcode import BarcodeAdapter
from smartscan.config import ScanConfig
from smartscan.live import LiveBarcodeScanner
from smartscan.orchestrator import SmartScanOrchestrator, build_search_query
from smartscan.pool import RecognitionWorkerPool
from smartscan.recognition import TextRecognizer
from smartscan.state import Step
from smartscan.gate import Stage

from conftest import (
    FakeBarcodeEngine,
    FakeFrameSource,
    FakeOCREngine,
    FakeWorkerFactory,
    HangingOCREngine,
    barcode,
    ocr_output,
)


class FakeAnalysis:
    def __init__(self, result=None, failures=0):
        self.result = result if result is not None else {"brand": "Acme"}
        self.failures = failures
        self.payloads = []

    async def analyze(self, payload, token=None):
        self.payloads.append(payload)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("analysis service unavailable")
        return self.result


class FakeSearch:
    def __init__(self, exc=None):
        self.exc = exc
        self.queries = []

    async def search(self, query, limit, token=None):
        self.queries.append((query, limit))
        if self.exc is not None:
            raise self.exc
        return [{"name": query, "rank": 1}]


def build(barcode_engine, make_ocr=None, *, analysis="fake", search="fake", **config):
    config.setdefault("cache_size", 0)
    config.setdefault("ocr_max_retries", 0)
    cfg = ScanConfig(**config)
    adapter = BarcodeAdapter("auto", {"zxing": barcode_engine}, engine_timeout_ms=200)
    factory = FakeWorkerFactory(make_ocr or (lambda: FakeOCREngine([ocr_output("unused", 90)])))
    pool = RecognitionWorkerPool(factory, max_concurrent=2)
    recognizer = TextRecognizer.from_config(cfg, pool)
    live = LiveBarcodeScanner(adapter, fps=30, consensus=2, timeout_ms=300)
    analysis_client = FakeAnalysis() if analysis == "fake" else analysis
    search_client = FakeSearch() if search == "fake" else search
    orch = SmartScanOrchestrator(adapter, recognizer, analysis_client=analysis_client,
                                 search_client=search_client, config=cfg, live_scanner=live, pool=pool)
    return orch, factory


def test_barcode_hit_skips_ocr(label_image):
    orch, factory = build(FakeBarcodeEngine("zxing", barcode()))
    snapshots = []
    orch.subscribe(snapshots.append)

    state = asyncio.run(orch.run_image_scan(label_image))

    assert state.step is Step.DONE
    assert state.progress == 100
    assert state.accepted_input == "barcode"
    assert orch.analysis_client.payloads == [{"barcode": "4006381333931"}]
    assert orch.search_client.queries == [("4006381333931", 6)]
    assert factory.created == []
    assert [s.step for s in snapshots][:2] == ["scanning_barcode", "analyzing"]
    assert "ocr" not in [s.step for s in snapshots]
    progress = [s.progress for s in snapshots]
    assert progress == sorted(progress)
    final = snapshots[-1]
    assert final.stages["barcode"].status == "succeeded"
    assert final.stages["ocr"].status == "pending"
    assert final.stages["search"].status == "succeeded"
    assert len(orch.history) == 1
    assert orch.history[0].ok
    assert orch.history[0].barcode == "4006381333931"


def test_force_ocr_visits_ocr_after_barcode(label_image):
    engine = FakeOCREngine([ocr_output("Vitamin D3 1000 IU", 93.0)])
    orch, factory = build(FakeBarcodeEngine("zxing", barcode()), lambda: engine, force_ocr=True)
    steps = []
    orch.subscribe(lambda snap: steps.append(snap.step))

    state = asyncio.run(orch.run_image_scan(label_image))

    assert state.step is Step.DONE
    assert "ocr" in steps
    assert steps.index("ocr") < steps.index("analyzing")
    assert engine.calls == 1
    assert state.accepted_input == "text"
    assert orch.analysis_client.payloads == [{"barcode": "4006381333931", "text": "Vitamin D3 1000 IU"}]


def test_low_confidence_waits_for_manual_text(label_image):
    engine = FakeOCREngine([ocr_output("Vitamn C 500 mq", 40.0)])
    orch, _ = build(FakeBarcodeEngine("zxing", None), lambda: engine)

    async def scenario():
        first = await orch.run_image_scan(label_image)
        stage = orch.snapshot().stages["ocr"].status
        second = await orch.confirm_manual_text("Vitamin C 500 mg")
        return first, stage, second

    first, stage, second = asyncio.run(scenario())

    assert first.step is Step.MANUAL_CORRECTION
    assert first.error_code == "ocr_low_confidence"
    assert first.manual_text == "Vitamin C 500 mg"
    assert stage == "needs_review"
    assert second.step is Step.DONE
    assert second.ocr_result.confidence == 1.0
    assert orch.analysis_client.payloads == [{"text": "Vitamin C 500 mg"}]
    assert orch.search_client.queries[0][0] == "Acme"
    assert orch.snapshot().stages["ocr"].status == "manual"


def test_default_analyzer_builds_query_from_label_text(label_image):
    engine = FakeOCREngine([ocr_output("Thorne Vitamin D3 1000 IU", 95.0)])
    orch, _ = build(FakeBarcodeEngine("zxing", None), lambda: engine, analysis=None)

    state = asyncio.run(orch.run_image_scan(label_image))

    assert state.step is Step.DONE
    assert state.analysis["brand"] == "Thorne"
    assert orch.search_client.queries == [("Thorne", 6)]


def test_without_search_client_search_is_skipped(label_image):
    orch, _ = build(FakeBarcodeEngine("zxing", barcode()), search=None)

    state = asyncio.run(orch.run_image_scan(label_image))

    assert state.step is Step.DONE
    assert state.search == []
    assert orch.snapshot().stages["search"].status == "skipped"
    assert len(orch.history) == 1
    entry = orch.history[0]
    assert entry.ok
    assert entry.query == "4006381333931"
    assert entry.barcode == "4006381333931"
    assert entry.results == []


def test_analysis_failure_is_logged_and_retryable(label_image, tmp_path):
    log_path = tmp_path / "errors.jsonl"
    engine = FakeBarcodeEngine("zxing", barcode())
    orch, _ = build(engine, analysis=FakeAnalysis(failures=1), error_log_path=log_path)

    async def scenario():
        failed = await orch.run_image_scan(label_image)
        retried = await orch.retry()
        return failed, retried

    failed, retried = asyncio.run(scenario())

    assert failed.step is Step.ERROR
    assert failed.failed_stage is Stage.ANALYSIS
    assert failed.error_code == "analyze_failed"
    assert failed.error_detail == "analysis service unavailable"
    assert failed.retry_available

    records = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert len(records) == 1
    assert records[0]["stage"] == "analysis"
    assert records[0]["error_code"] == "analyze_failed"
    assert records[0]["source"] == "upload"

    assert retried.step is Step.DONE
    assert engine.calls == 2
    assert len(orch.analysis_client.payloads) == 2


def test_search_failure_records_history(label_image):
    orch, _ = build(FakeBarcodeEngine("zxing", barcode()), search=FakeSearch(exc=RuntimeError("index down")))

    state = asyncio.run(orch.run_image_scan(label_image))

    assert state.step is Step.ERROR
    assert state.failed_stage is Stage.SEARCH
    assert state.error_code == "search_failed"
    assert state.error_detail == "index down"
    assert state.progress == 85
    assert orch.history[0].ok is False
    assert orch.snapshot().stages["search"].status == "failed"


def test_ocr_timeout_is_a_failure_not_an_abort(label_image):
    orch, _ = build(FakeBarcodeEngine("zxing", None), HangingOCREngine, ocr_timeout_ms=50)

    state = asyncio.run(orch.run_image_scan(label_image))

    assert state.step is Step.ERROR
    assert state.error_code == "ocr_timeout"
    assert state.failed_stage is Stage.OCR
    assert state.was_aborted is False
    assert state.retry_available


def test_cancel_during_ocr_returns_to_idle(label_image):
    orch, _ = build(FakeBarcodeEngine("zxing", None), HangingOCREngine, ocr_timeout_ms=5000)

    async def scenario():
        asyncio.get_running_loop().call_later(0.1, orch.cancel)
        return await orch.run_image_scan(label_image)

    state = asyncio.run(scenario())

    assert state.step is Step.IDLE
    assert state.was_aborted is True
    assert state.error_code == "aborted"
    assert state.retry_available is False
    assert orch.snapshot().stages["ocr"].status == "cancelled"
    assert orch.pool.stats()["busy"] == 0


def test_reset_during_ocr_drops_late_events(label_image):
    orch, _ = build(FakeBarcodeEngine("zxing", None), HangingOCREngine, ocr_timeout_ms=5000)

    async def scenario():
        asyncio.get_running_loop().call_later(0.1, orch.reset)
        return await orch.run_image_scan(label_image)

    state = asyncio.run(scenario())

    assert state.step is Step.IDLE
    assert state.was_aborted is False
    assert state.error_code is None
    assert orch.session_id is None


def test_cancel_while_waiting_for_manual_text(label_image):
    engine = FakeOCREngine([ocr_output("Vitamn C 500 mq", 40.0)])
    orch, _ = build(FakeBarcodeEngine("zxing", None), lambda: engine)

    async def scenario():
        await orch.run_image_scan(label_image)
        orch.cancel()
        return orch.state

    state = asyncio.run(scenario())

    assert state.step is Step.IDLE
    assert state.was_aborted is True


def test_camera_scan_accepts_consensus_code():
    source = FakeFrameSource()
    orch, factory = build(FakeBarcodeEngine("zxing", barcode("96385074", "EAN_8")))

    state = asyncio.run(orch.start_camera_scan(source))

    assert state.step is Step.DONE
    assert state.source == "camera"
    assert state.barcode_result.code == "96385074"
    assert source.released
    assert factory.created == []


def test_camera_without_barcode_falls_back_to_ocr_on_last_frame():
    engine = FakeOCREngine([ocr_output("Vitamin D3 1000 IU", 93.0)])
    source = FakeFrameSource()
    orch, _ = build(FakeBarcodeEngine("zxing", None), lambda: engine)

    state = asyncio.run(orch.start_camera_scan(source))

    assert state.step is Step.DONE
    assert state.accepted_input == "text"
    assert engine.calls == 1
    barcode_stage = orch.snapshot().stages["barcode"]
    assert barcode_stage.status == "failed"
    assert barcode_stage.error_code == "barcode_timeout"


def test_camera_error_fails_the_barcode_stage():
    source = FakeFrameSource(fail=OSError("device unplugged"))
    orch, _ = build(FakeBarcodeEngine("zxing", None))

    state = asyncio.run(orch.start_camera_scan(source))

    assert state.step is Step.ERROR
    assert state.failed_stage is Stage.BARCODE
    assert state.error_code == "camera_not_found"
    assert source.released


def test_stop_camera_scan_cancels_session():
    source = FakeFrameSource()
    orch, _ = build(FakeBarcodeEngine("zxing", None))
    orch.live_scanner.timeout_ms = 5000

    async def scenario():
        asyncio.get_running_loop().call_later(0.1, orch.stop_camera_scan)
        return await orch.start_camera_scan(source)

    state = asyncio.run(scenario())

    assert state.step is Step.IDLE
    assert state.was_aborted is True
    assert state.error_message == "stopped"
    assert source.released


def test_missing_barcode_is_reported_as_barcode_failed(label_image):
    engine = FakeOCREngine([ocr_output("Vitamin D3 1000 IU", 93.0)])
    orch, _ = build(FakeBarcodeEngine("zxing", None), lambda: engine)
    snapshots = []
    orch.subscribe(snapshots.append)

    state = asyncio.run(orch.run_image_scan(label_image))

    assert state.step is Step.DONE
    at_ocr = next(s for s in snapshots if s.step == "ocr")
    assert at_ocr.error_code == "barcode_failed"
    assert at_ocr.stages["barcode"].status == "failed"
    assert at_ocr.stages["barcode"].error_code == "barcode_failed"


def test_second_camera_scan_supersedes_the_first():
    engine = FakeBarcodeEngine("zxing", None)
    orch, _ = build(engine)
    orch.live_scanner.timeout_ms = 5000
    first_source, second_source = FakeFrameSource(), FakeFrameSource()

    async def scenario():
        first = asyncio.ensure_future(orch.start_camera_scan(first_source))
        await asyncio.sleep(0.1)
        engine.result = barcode("96385074", "EAN_8")
        second = await orch.start_camera_scan(second_source)
        await first
        return second

    state = asyncio.run(scenario())

    assert state.step is Step.DONE
    assert state.source == "camera"
    assert state.barcode_result.code == "96385074"
    assert first_source.released
    assert second_source.released
    assert not orch.live_scanner.running


def test_built_from_config_sweeps_workers_until_closed(label_image):
    engine = FakeOCREngine([ocr_output("Vitamin D3 1000 IU", 93.0)])
    orch = SmartScanOrchestrator.from_config(
        ScanConfig(cache_size=0),
        barcode_engines={"zxing": FakeBarcodeEngine("zxing", None)},
        worker_factory=FakeWorkerFactory(lambda: engine),
    )

    async def scenario():
        state = await orch.run_image_scan(label_image)
        sweeper = orch.pool._sweeper
        running = sweeper is not None and not sweeper.done()
        await orch.aclose()
        return state, running

    state, running = asyncio.run(scenario())

    assert state.step is Step.DONE
    assert running
    assert orch.pool._sweeper is None


def test_unsubscribe_and_noop_actions(label_image):
    orch, _ = build(FakeBarcodeEngine("zxing", barcode()))
    seen = []
    unsubscribe = orch.subscribe(seen.append)
    unsubscribe()

    async def scenario():
        await orch.run_image_scan(label_image)
        before = orch.state
        after_retry = await orch.retry()
        after_manual = await orch.confirm_manual_text("text")
        return before, after_retry, after_manual

    before, after_retry, after_manual = asyncio.run(scenario())

    assert seen == []
    assert after_retry is before
    assert after_manual is before


def test_reset_keeps_force_ocr(label_image):
    orch, _ = build(FakeBarcodeEngine("zxing", barcode()))
    orch.set_force_ocr(True)

    asyncio.run(orch.run_image_scan(label_image))
    state = orch.reset()

    assert state.step is Step.IDLE
    assert state.force_ocr is True
    assert state.barcode_result is None
    assert all(s.status == "pending" for s in orch.snapshot().stages.values())


def test_build_search_query_fallbacks():
    assert build_search_query({"brand": "Acme"}, barcode("123"), None) == "123"
    assert build_search_query({"name": " Omega 3 "}, None, None) == "Omega 3"
    from smartscan.models import OCRResult
    ocr = OCRResult(ok=True, text="\nFish Oil\nSoftgels")
    assert build_search_query({}, None, ocr) == "Fish Oil"
    assert build_search_query(None, None, None) == "supplement"
