# tests/test_recognition.py
import asyncio
import threading

import numpy as np

from smartscan.cancellation import CancellationToken
from smartscan.models import PreprocessedImage
from smartscan.pool import RecognitionWorkerPool
from smartscan.recognition import RecognizeOptions, TextRecognizer, select_mode

from conftest import FakeOCREngine, FakeWorkerFactory, HangingOCREngine, ocr_output


def make_recognizer(make_engine, max_concurrent=2, **options):
    factory = FakeWorkerFactory(make_engine)
    pool = RecognitionWorkerPool(factory, max_concurrent=max_concurrent)
    opts = RecognizeOptions(**{"use_cache": False, **options})
    return TextRecognizer(pool, options=opts), pool, factory


def test_confident_text_is_returned_normalized(label_image):
    engine = FakeOCREngine([ocr_output("Vitamin D3 1000 IU", 93.0)])
    recognizer, pool, _ = make_recognizer(lambda: engine)

    result = asyncio.run(recognizer.recognize(label_image))

    assert result.ok
    assert result.text == "Vitamin D3 1000 IU"
    assert abs(result.confidence - 0.93) < 1e-9
    assert all(0.0 <= w.confidence <= 1.0 for w in result.words)
    assert result.attempts == 1
    assert result.engine == "fake"
    assert result.quality_score > 0.6
    assert pool.stats()["busy"] == 0


def test_low_confidence_text_is_still_ok(label_image):
    engine = FakeOCREngine([ocr_output("Vitamn C 500 mq", 40.0)])
    recognizer, _, _ = make_recognizer(lambda: engine)

    result = asyncio.run(recognizer.recognize(label_image))

    assert result.ok
    assert result.confidence == 0.4
    assert result.text == "Vitamin C 500 mg"


def test_timeout_yields_ocr_timeout_and_releases_worker(label_image):
    recognizer, pool, factory = make_recognizer(HangingOCREngine, timeout_ms=10)

    result = asyncio.run(recognizer.recognize(label_image))

    assert not result.ok
    assert result.error_code == "ocr_timeout"
    assert result.was_aborted is False
    assert pool.stats()["busy"] == 0


def test_repeated_timeouts_discard_the_worker(label_image):
    factory = FakeWorkerFactory(HangingOCREngine)
    pool = RecognitionWorkerPool(factory, max_concurrent=1)
    recognizer = TextRecognizer(pool, options=RecognizeOptions(timeout_ms=200, use_cache=False), wedge_after=1)

    result = asyncio.run(recognizer.recognize(label_image))

    assert result.error_code == "ocr_timeout"
    assert len(factory.created) == 1
    assert pool.workers() == []
    assert factory.terminated == [factory.created[0][1]]


class BlockingOCREngine(FakeOCREngine):
    """Synchronous engine that holds its executor thread until `gate` is set."""

    def __init__(self, gate):
        super().__init__([ocr_output("Vitamin D3 1000 IU", 93.0)])
        self.gate = gate

    def recognize(self, image, mode="auto"):
        self.gate.wait(5)
        return super().recognize(image, mode)


def test_timed_out_thread_keeps_its_worker_until_it_returns(label_image):
    gate = threading.Event()
    recognizer, pool, factory = make_recognizer(lambda: BlockingOCREngine(gate), timeout_ms=300)

    async def scenario():
        result = await recognizer.recognize(label_image)
        held = pool.stats()["busy"]
        other = await pool.acquire("eng")
        pool.release(other)
        gate.set()
        for _ in range(200):
            if pool.stats()["busy"] == 0:
                break
            await asyncio.sleep(0.01)
        return result, held, other

    result, held, other = asyncio.run(scenario())

    assert result.error_code == "ocr_timeout"
    assert held == 1
    assert other.engine is not factory.created[0][1]
    assert len(factory.created) == 2
    assert pool.stats()["busy"] == 0
    assert len(pool.workers()) == 2


def test_abort_before_start_touches_nothing(label_image):
    engine = FakeOCREngine([ocr_output("text", 90)])
    recognizer, pool, factory = make_recognizer(lambda: engine)
    token = CancellationToken()
    token.cancel("user")

    result = asyncio.run(recognizer.recognize(label_image, token=token))

    assert not result.ok
    assert result.was_aborted is True
    assert result.error_code == "aborted"
    assert engine.calls == 0
    assert factory.created == []


def test_abort_during_recognition(label_image):
    recognizer, pool, _ = make_recognizer(HangingOCREngine, timeout_ms=5000)

    async def scenario():
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.1, token.cancel, "user")
        return await recognizer.recognize(label_image, token=token)

    result = asyncio.run(scenario())
    assert result.was_aborted is True
    assert result.error_code == "aborted"
    assert pool.stats()["busy"] == 0


def test_capacity_exceeded_is_reported(label_image):
    engine = FakeOCREngine([ocr_output("text", 90)])
    recognizer, pool, _ = make_recognizer(lambda: engine, max_concurrent=1)

    async def scenario():
        await pool.acquire("eng")
        return await recognizer.recognize(label_image)

    result = asyncio.run(scenario())
    assert result.error_code == "capacity_exceeded"
    assert engine.calls == 0


def test_unreadable_attempt_is_retried(label_image):
    engine = FakeOCREngine([ocr_output("", 0), ocr_output("Supplement Facts Vitamin C 500 mg", 90)])
    recognizer, _, _ = make_recognizer(lambda: engine, max_retries=1)

    result = asyncio.run(recognizer.recognize(label_image))

    assert result.ok
    assert result.attempts == 2
    assert result.text.startswith("Supplement Facts")
    assert engine.calls == 2


def test_engine_error_is_retried_then_reported(label_image):
    engine = FakeOCREngine([RuntimeError("engine crashed")])
    recognizer, _, _ = make_recognizer(lambda: engine, max_retries=1)

    result = asyncio.run(recognizer.recognize(label_image))

    assert not result.ok
    assert result.error_code == "ocr_failed"
    assert result.attempts == 2
    assert "engine crashed" in result.error_message


def test_empty_text_is_flagged(label_image):
    engine = FakeOCREngine([ocr_output("", 0)])
    recognizer, _, _ = make_recognizer(lambda: engine, max_retries=0)

    result = asyncio.run(recognizer.recognize(label_image))

    assert result.ok
    assert "no_text_detected" in result.warnings


def test_cache_skips_second_recognition(label_image):
    engine = FakeOCREngine([ocr_output("Vitamin D3 1000 IU", 93.0)])
    recognizer, _, _ = make_recognizer(lambda: engine, use_cache=True)

    async def scenario():
        first = await recognizer.recognize(label_image)
        second = await recognizer.recognize(label_image.copy())
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second
    assert engine.calls == 1


def test_progress_is_reported(label_image):
    engine = FakeOCREngine([ocr_output("Vitamin D3 1000 IU", 93.0)])
    recognizer, _, _ = make_recognizer(lambda: engine)
    seen = []

    asyncio.run(recognizer.recognize(label_image, on_progress=seen.append))

    assert seen
    assert seen == sorted(seen)
    assert all(0.0 <= f <= 1.0 for f in seen)


def _meta(width, height, density):
    return PreprocessedImage(image=np.zeros((height, width), dtype=np.uint8), width=width, height=height,
                             aspect_ratio=width / height, density=density)


def test_select_mode():
    assert select_mode(_meta(600, 50, "low")) == "single_line"
    assert select_mode(_meta(150, 80, "low")) == "single_word"
    assert select_mode(_meta(1100, 1000, "high")) == "sparse_text"
    assert select_mode(_meta(800, 700, "medium")) == "single_block"
    assert select_mode(_meta(2000, 500, "high")) == "auto"
    assert select_mode(_meta(400, 400, "low")) == "auto"
