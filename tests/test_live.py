# tests/test_live.py
import asyncio

import pytest

from smartscan.barcode import BarcodeAdapter
from smartscan.cancellation import CancellationToken
from smartscan.exceptions import CameraError, ScanAborted
from smartscan.live import LiveBarcodeScanner

from conftest import FakeBarcodeEngine, FakeFrameSource, SequenceBarcodeEngine, barcode


def scanner_for(engine, **kwargs):
    adapter = BarcodeAdapter("auto", {"zxing": engine})
    kwargs.setdefault("fps", 30)
    return LiveBarcodeScanner(adapter, **kwargs)


def _pending_tasks():
    current = asyncio.current_task()
    return [t for t in asyncio.all_tasks() if t is not current and not t.done()]


def test_code_is_accepted_after_consensus():
    engine = FakeBarcodeEngine("zxing", barcode("4006381333931", "EAN_13"))
    scanner = scanner_for(engine, consensus=3, timeout_ms=3000)
    source = FakeFrameSource()
    detected = []

    async def scenario():
        result = await scanner.start(source, on_detect=detected.append)
        return result, _pending_tasks()

    result, pending = asyncio.run(scenario())

    assert result.ok and result.code == "4006381333931"
    assert engine.calls >= 3
    assert detected == [result]
    assert source.released
    assert not scanner.running
    assert pending == []
    assert scanner.last_frame is not None


def test_alternating_codes_never_reach_consensus():
    engine = SequenceBarcodeEngine("zxing", [barcode("111", "CODE_128"), barcode("222", "CODE_128")] * 50)
    scanner = scanner_for(engine, consensus=2, timeout_ms=400)

    result = asyncio.run(scanner.start(FakeFrameSource()))

    assert not result.ok
    assert result.error_code == "barcode_timeout"


def test_instant_confidence_accepts_first_detection():
    engine = FakeBarcodeEngine("zxing", barcode())
    scanner = scanner_for(engine, consensus=5, timeout_ms=3000, instant_confidence=0.9)

    result = asyncio.run(scanner.start(FakeFrameSource()))

    assert result.ok
    assert engine.calls == 1


def test_deadline_produces_timeout_result():
    source = FakeFrameSource()
    scanner = scanner_for(FakeBarcodeEngine("zxing", None), timeout_ms=200)

    async def scenario():
        result = await scanner.start(source)
        return result, _pending_tasks()

    result, pending = asyncio.run(scenario())

    assert not result.ok
    assert result.error_code == "barcode_timeout"
    assert source.released
    assert pending == []
    assert scanner.stats["frames"] >= 1


def test_stop_releases_camera_and_raises_aborted():
    source = FakeFrameSource()
    scanner = scanner_for(FakeBarcodeEngine("zxing", None), timeout_ms=5000)

    async def scenario():
        asyncio.get_running_loop().call_later(0.1, scanner.stop)
        await scanner.start(source)

    with pytest.raises(ScanAborted):
        asyncio.run(scenario())
    assert source.released
    assert not scanner.running


def test_cancelled_token_stops_scan():
    source = FakeFrameSource()
    scanner = scanner_for(FakeBarcodeEngine("zxing", None), timeout_ms=5000)

    async def scenario():
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.1, token.cancel, "user")
        await scanner.start(source, token=token)

    with pytest.raises(ScanAborted):
        asyncio.run(scenario())
    assert source.released


def test_token_cancelled_before_start_releases_source():
    source = FakeFrameSource()
    scanner = scanner_for(FakeBarcodeEngine("zxing", barcode()))
    token = CancellationToken()
    token.cancel()

    with pytest.raises(ScanAborted):
        asyncio.run(scanner.start(source, token=token))
    assert source.released
    assert source.reads == 0


def test_camera_read_failure_is_a_camera_error():
    source = FakeFrameSource(fail=OSError("device unplugged"))
    scanner = scanner_for(FakeBarcodeEngine("zxing", None), timeout_ms=3000)

    with pytest.raises(CameraError) as info:
        asyncio.run(scanner.start(source))
    assert info.value.code == "camera_not_found"
    assert source.released


def test_second_start_supersedes_running_scan():
    engine = FakeBarcodeEngine("zxing", None)
    scanner = scanner_for(engine, consensus=1, timeout_ms=5000)
    first_source, second_source = FakeFrameSource(), FakeFrameSource()

    async def scenario():
        first = asyncio.ensure_future(scanner.start(first_source))
        await asyncio.sleep(0.1)
        assert scanner.running
        engine.result = barcode("4006381333931", "EAN_13")
        second = await scanner.start(second_source)
        outcome = await asyncio.gather(first, return_exceptions=True)
        return second, outcome[0], _pending_tasks()

    second, first_outcome, pending = asyncio.run(scenario())

    assert isinstance(first_outcome, ScanAborted)
    assert first_source.released
    assert second.ok and second.code == "4006381333931"
    assert second_source.released
    assert not scanner.running
    assert pending == []
