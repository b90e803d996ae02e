# src/smartscan/recognition.py
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from concurrent.futures import Executor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from .cancellation import CancellationToken, race
from .exceptions import (
    ABORTED,
    CAPACITY_EXCEEDED,
    OCR_FAILED,
    OCR_TIMEOUT,
    BackendLoadError,
    CapacityExceededError,
    RecognitionTimeout,
    ScanAborted,
)
from .models import OCRResult, OCRWord, PreprocessedImage, normalize_confidence
from .ocr_backends.base import (
    MODE_AUTO,
    MODE_SINGLE_BLOCK,
    MODE_SINGLE_LINE,
    MODE_SINGLE_WORD,
    MODE_SPARSE_TEXT,
    RecognitionOutput,
)
from .pool import RecognitionWorkerPool
from .postprocess import clean_ocr_text, extract_label_fields, quality_score
from .preprocess import PreprocessOptions, preprocess
from .sources import SourceDecodeError, source_digest
from .utils import call_async, elapsed_ms

logger = logging.getLogger("smartscan")

DEFAULT_TIMEOUT_MS = 25000

# Progressively different preprocessing for retries
RETRY_PROFILES = (
    {"max_side": 1800, "denoise": True, "threshold": True},
    {"max_side": 2000, "threshold": False, "preserve_color": True},
)


@dataclass(frozen=True)
class RecognizeOptions:
    language: str = "eng"
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    preprocess: PreprocessOptions = field(default_factory=PreprocessOptions)
    max_retries: int = 1
    quality_threshold: float = 0.6
    use_cache: bool = True


def select_mode(image: PreprocessedImage) -> str:
    """Pick a recognition mode from the preprocessed image's shape and density."""
    aspect = image.aspect_ratio
    if aspect >= 3 and image.height < 100:
        return MODE_SINGLE_LINE
    if image.width < 200 and image.height < 100:
        return MODE_SINGLE_WORD
    if image.density == "high" and 0.7 < aspect < 1.5:
        return MODE_SPARSE_TEXT
    if 0.8 < aspect < 1.25 and image.density != "low":
        return MODE_SINGLE_BLOCK
    return MODE_AUTO


def build_result(raw: RecognitionOutput, mode: str, engine: Optional[str]) -> OCRResult:
    """Normalize engine output into an OCRResult (clean text, 0..1 confidences, label warnings)."""
    text = clean_ocr_text(raw.text)
    confidence = normalize_confidence(raw.confidence)
    words = tuple(
        OCRWord(text=w.text, confidence=normalize_confidence(w.confidence), bbox=w.bbox)
        for w in raw.words
    )
    warnings = list(extract_label_fields(text).warnings)
    if not text:
        warnings.append("no_text_detected")
    return OCRResult(
        ok=True,
        text=text,
        confidence=confidence,
        words=words,
        warnings=tuple(warnings),
        quality_score=quality_score(text, confidence, words),
        mode=mode,
        engine=engine,
    )


class TextRecognizer:
    """
    Runs text recognition on pooled workers.

    Each call preprocesses the source, leases a worker for the chosen language
    and races recognition against the timeout and the cancellation token. The
    worker goes back to the pool on every exit path. Failures never raise;
    they come back as an OCRResult with an error code.
    """

    def __init__(
        self,
        pool: RecognitionWorkerPool,
        *,
        options: Optional[RecognizeOptions] = None,
        executor: Optional[Executor] = None,
        cache_size: int = 50,
        wedge_after: int = 2,
    ):
        self.pool = pool
        self.options = options or RecognizeOptions()
        self.executor = executor
        self.cache_size = cache_size
        self.wedge_after = max(1, wedge_after)
        self._cache: "OrderedDict[str, OCRResult]" = OrderedDict()

    @classmethod
    def from_config(cls, config, pool: RecognitionWorkerPool, executor: Optional[Executor] = None):
        options = RecognizeOptions(
            language=config.language,
            timeout_ms=config.ocr_timeout_ms,
            preprocess=PreprocessOptions(max_side=config.max_side),
            max_retries=config.ocr_max_retries,
            quality_threshold=config.ocr_quality_threshold,
            use_cache=config.cache_size > 0,
        )
        return cls(pool, options=options, executor=executor,
                   cache_size=config.cache_size, wedge_after=config.wedge_after)

    # -----------------------------
    # Cache
    # -----------------------------
    async def _cache_key(self, source: Any, opts: RecognizeOptions) -> Optional[str]:
        if not opts.use_cache or self.cache_size <= 0:
            return None
        loop = asyncio.get_running_loop()
        try:
            digest = await loop.run_in_executor(self.executor, source_digest, source)
        except Exception as e:
            logger.debug("Skipping OCR cache, %s", e)
            return None
        return f"{digest}:{opts.language}:{opts.preprocess}"

    def _remember(self, key: Optional[str], result: OCRResult) -> None:
        if key is None or not result.ok:
            return
        self._cache[key] = result
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        self._cache.clear()

    # -----------------------------
    # Recognition
    # -----------------------------
    async def _attempt(
        self,
        source: Any,
        opts: RecognizeOptions,
        pre: PreprocessOptions,
        token: Optional[CancellationToken],
        deadline: float,
        report: Callable[[float], None],
    ) -> OCRResult:
        loop = asyncio.get_running_loop()

        def remaining() -> float:
            left = deadline - time.perf_counter()
            if left <= 0:
                raise RecognitionTimeout(f"OCR timed out after {opts.timeout_ms} ms")
            return left

        budget = remaining()
        try:
            prepared = await race(loop.run_in_executor(self.executor, preprocess, source, pre), token, budget)
        except asyncio.TimeoutError:
            raise RecognitionTimeout(f"OCR timed out after {opts.timeout_ms} ms during preprocessing")
        report(0.3)

        mode = select_mode(prepared)
        try:
            async with self.pool.lease(opts.language) as worker:
                engine = worker.engine
                budget = remaining()
                call = call_async(self.executor, engine.recognize, prepared.image, mode)
                if not isinstance(call, asyncio.Task):
                    # executor threads cannot be interrupted, the lease waits for them
                    worker.in_flight = call
                    call = asyncio.shield(call)
                try:
                    raw = await race(call, token, budget)
                except asyncio.TimeoutError:
                    worker.timeouts += 1
                    if worker.timeouts >= self.wedge_after:
                        logger.warning("Worker %s timed out %d times, discarding", worker.worker_id, worker.timeouts)
                        worker.wedged = True
                    raise RecognitionTimeout(f"OCR timed out after {opts.timeout_ms} ms")
                worker.timeouts = 0
                report(1.0)
        finally:
            prepared.release()

        result = build_result(raw, mode, getattr(engine, "name", None))
        logger.debug("OCR attempt mode %s, confidence %.2f, quality %.2f",
                     mode, result.confidence, result.quality_score)
        return result

    @staticmethod
    def _reporter(on_progress, index: int, total: int) -> Callable[[float], None]:
        def report(fraction: float) -> None:
            if on_progress is None:
                return
            try:
                on_progress((index + fraction) / total)
            except Exception:
                logger.exception("OCR progress callback failed")
        return report

    async def recognize(
        self,
        source: Any,
        options: Optional[RecognizeOptions] = None,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> OCRResult:
        """
        Recognize text in `source`.

        Retries with different preprocessing when an attempt errors or reads
        no usable text. Aborts, timeouts and capacity errors are returned as
        they happen, without retrying.

        `on_progress`, if given, receives the completed fraction (0..1) across
        all attempts.
        """
        opts = options or self.options
        start = time.perf_counter()
        if token is not None and token.cancelled:
            return OCRResult.failure(ABORTED, "Recognition aborted before start", was_aborted=True)

        key = await self._cache_key(source, opts)
        if key is not None and key in self._cache:
            logger.debug("OCR cache hit")
            return self._cache[key]

        deadline = start + opts.timeout_ms / 1000.0
        profiles = [opts.preprocess] + [
            opts.preprocess.with_overrides(**p) for p in RETRY_PROFILES[: max(0, opts.max_retries)]
        ]
        best: Optional[OCRResult] = None
        last_error: Optional[BaseException] = None
        attempts = 0

        for pre in profiles:
            attempts += 1
            report = self._reporter(on_progress, attempts - 1, len(profiles))
            try:
                result = await self._attempt(source, opts, pre, token, deadline, report)
            except ScanAborted:
                logger.info("OCR aborted")
                return OCRResult.failure(ABORTED, "Recognition aborted", duration_ms=elapsed_ms(start),
                                         was_aborted=True, attempts=attempts)
            except RecognitionTimeout as e:
                logger.warning("%s", e)
                return OCRResult.failure(OCR_TIMEOUT, str(e), duration_ms=elapsed_ms(start), attempts=attempts)
            except CapacityExceededError as e:
                logger.warning("%s", e)
                return OCRResult.failure(CAPACITY_EXCEEDED, str(e), duration_ms=elapsed_ms(start), attempts=attempts)
            except (BackendLoadError, SourceDecodeError) as e:
                return OCRResult.failure(OCR_FAILED, str(e), duration_ms=elapsed_ms(start), attempts=attempts)
            except Exception as e:
                logger.warning("OCR attempt %d failed, %s", attempts, e, exc_info=True)
                last_error = e
                continue

            if best is None or result.quality_score > best.quality_score:
                best = result
            usable = len(result.text.strip()) > 2
            if result.quality_score >= opts.quality_threshold or usable:
                break
            logger.info("OCR attempt %d quality %.2f below %.2f, retrying",
                        attempts, result.quality_score, opts.quality_threshold)

        if best is None:
            message = str(last_error) if last_error else "OCR processing failed"
            return OCRResult.failure(OCR_FAILED, message, duration_ms=elapsed_ms(start), attempts=attempts)

        final = replace(best, attempts=attempts, duration_ms=elapsed_ms(start))
        self._remember(key, final)
        logger.info("OCR finished, %d chars, confidence %.2f, %d ms",
                    len(final.text), final.confidence, final.duration_ms)
        return final
