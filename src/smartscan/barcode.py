# src/smartscan/barcode.py
from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import Executor
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .cancellation import CancellationToken, race
from .exceptions import (
    BARCODE_FAILED,
    BARCODE_TIMEOUT,
    BARCODE_UNSUPPORTED,
    BackendLoadError,
    ScanAborted,
    canonical_barcode_error,
)
from .formats import normalize_format, normalize_formats
from .models import BarcodeResult, normalize_confidence
from .sources import SourceDecodeError, load_source
from .utils import call_async, elapsed_ms, import_obj

logger = logging.getLogger("smartscan")

ENGINE_PRIORITY = ("zxing", "zbar", "opencv")

ENGINE_PATHS = {
    "zxing": "smartscan.barcode_engines.zxing_backend.ZXingEngine",
    "zbar": "smartscan.barcode_engines.pyzbar_backend.ZBarEngine",
    "opencv": "smartscan.barcode_engines.opencv_backend.OpenCVEngine",
}

_NOT_FOUND = BARCODE_FAILED
_TIMEOUT = BARCODE_TIMEOUT
_UNSUPPORTED = BARCODE_UNSUPPORTED


def resolve_engines(strategy: str, available: Optional[Sequence[str]] = None) -> List[str]:
    """
    `auto` yields the fixed priority order, an engine name pins that engine.
    Names outside `available` are dropped.
    """
    known = list(available) if available is not None else list(ENGINE_PRIORITY)
    s = (strategy or "auto").strip().lower()
    if s == "auto":
        ordered = [n for n in ENGINE_PRIORITY if n in known]
        ordered += [n for n in known if n not in ordered]
        return ordered
    return [s] if s in known else []


def normalize_barcode_result(result: Optional[BarcodeResult]) -> BarcodeResult:
    """Canonicalize format, confidence and error code of any engine result."""
    if result is None:
        return BarcodeResult.failure(BARCODE_FAILED, "No barcode detected")
    if not result.ok:
        return replace(
            result,
            confidence=normalize_confidence(result.confidence),
            error_code=canonical_barcode_error(result.error_code),
        )
    return replace(
        result,
        format=normalize_format(result.format) or result.format,
        confidence=normalize_confidence(result.confidence),
        error_code=None,
    )


class BarcodeAdapter:
    """
    One decode contract over several interchangeable barcode engines.

    Engines are tried in order and the first non-null result wins. An engine
    that raises or exceeds `engine_timeout_ms` counts as "no result", so
    `decode` only ever resolves to a result or None. Cancellation is the one
    exception: it raises ScanAborted so callers can tell it apart.
    """

    def __init__(
        self,
        strategy: str = "auto",
        engines: Optional[Mapping[str, Any]] = None,
        *,
        allowed_formats: Optional[Sequence[str]] = None,
        engine_timeout_ms: int = 3000,
        executor: Optional[Executor] = None,
    ):
        self.strategy = (strategy or "auto").strip().lower()
        self._injected = engines is not None
        self._engines: Dict[str, Any] = dict(engines or {})
        self._failed: Dict[str, str] = {}
        self.allowed_formats = normalize_formats(allowed_formats)
        self.engine_timeout_ms = engine_timeout_ms
        self.executor = executor
        available = list(self._engines) if self._injected else list(ENGINE_PATHS)
        self.engine_names = resolve_engines(self.strategy, available)
        if not self.engine_names:
            logger.warning("No barcode engine matches strategy %s", self.strategy)

    @classmethod
    def from_config(cls, config, engines: Optional[Mapping[str, Any]] = None, executor: Optional[Executor] = None):
        return cls(
            config.barcode_engine,
            engines,
            allowed_formats=config.barcode_formats,
            engine_timeout_ms=config.engine_timeout_ms,
            executor=executor,
        )

    # -----------------------------
    # Engine loading
    # -----------------------------
    def _get_engine(self, name: str):
        if name in self._engines:
            return self._engines[name]
        if name in self._failed or self._injected:
            return None
        try:
            engine_cls = import_obj(ENGINE_PATHS[name])
            engine = engine_cls()
        except Exception as e:
            # missing native library, keep going with the other engines
            logger.warning("Barcode engine %s unavailable, %s", name, e)
            self._failed[name] = str(e)
            return None
        self._engines[name] = engine
        return engine

    def load_engines(self) -> List[str]:
        """Instantiate every configured engine now, returning the names that loaded."""
        loaded = [n for n in self.engine_names if self._get_engine(n) is not None]
        if not loaded and self.engine_names:
            raise BackendLoadError(f"No barcode engine could be loaded, {self._failed}")
        return loaded

    # -----------------------------
    # Decoding
    # -----------------------------
    async def _prepare(self, image: Any) -> np.ndarray:
        if isinstance(image, np.ndarray):
            return image
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, load_source, image)

    async def _run(
        self,
        image: Any,
        allowed_formats: Optional[Sequence[str]],
        token: Optional[CancellationToken],
    ) -> Tuple[Optional[BarcodeResult], str]:
        if token is not None:
            token.raise_if_cancelled()
        formats = normalize_formats(allowed_formats) if allowed_formats else self.allowed_formats
        if not self.engine_names:
            return None, _UNSUPPORTED

        arr = await self._prepare(image)
        timeout = self.engine_timeout_ms / 1000.0
        attempted = 0
        timed_out = 0

        for name in self.engine_names:
            if token is not None:
                token.raise_if_cancelled()
            engine = self._get_engine(name)
            if engine is None:
                continue
            attempted += 1
            start = time.perf_counter()
            try:
                result = await race(call_async(self.executor, engine.decode, arr, formats), token, timeout)
            except asyncio.TimeoutError:
                timed_out += 1
                logger.warning("Barcode engine %s timed out after %d ms", name, self.engine_timeout_ms)
                continue
            except (ScanAborted, asyncio.CancelledError):
                raise
            except Exception as e:
                logger.warning("Barcode engine %s failed, %s", name, e)
                continue

            if result is None:
                logger.debug("Barcode engine %s found nothing", name)
                continue
            result = normalize_barcode_result(replace(result, engine=result.engine or name))
            if not result.ok or not result.code or result.format not in formats:
                continue
            result = replace(result, duration_ms=elapsed_ms(start))
            logger.info("Barcode %s (%s) decoded by %s in %d ms", result.code, result.format, name, result.duration_ms)
            return result, ""

        if attempted == 0:
            return None, _UNSUPPORTED
        if timed_out == attempted:
            return None, _TIMEOUT
        return None, _NOT_FOUND

    async def decode(
        self,
        image: Any,
        allowed_formats: Optional[Sequence[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[BarcodeResult]:
        """Return the first engine's result, or None when no engine found a barcode."""
        result, _reason = await self._run(image, allowed_formats, token)
        return result

    async def decode_result(
        self,
        image: Any,
        allowed_formats: Optional[Sequence[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> BarcodeResult:
        """Like `decode` but always returns a BarcodeResult, with an error code on failure."""
        start = time.perf_counter()
        try:
            result, reason = await self._run(image, allowed_formats, token)
        except SourceDecodeError as e:
            logger.warning("Barcode source could not be decoded, %s", e)
            return BarcodeResult.failure(BARCODE_FAILED, str(e), duration_ms=elapsed_ms(start))
        if result is not None:
            return result
        code = canonical_barcode_error(reason)
        messages = {
            BARCODE_TIMEOUT: "Barcode engines timed out",
            BARCODE_UNSUPPORTED: "No barcode engine available",
        }
        return BarcodeResult.failure(code, messages.get(code, "No barcode detected"), duration_ms=elapsed_ms(start))
