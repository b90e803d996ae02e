# src/smartscan/pool.py
from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import time
from concurrent.futures import Executor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

from .exceptions import BackendLoadError, CapacityExceededError
from .utils import import_obj

logger = logging.getLogger("smartscan")

DEFAULT_IDLE_TIMEOUT = 30.0
DEFAULT_SWEEP_INTERVAL = 30.0


class WorkerFactory(Protocol):
    def create(self, language: str) -> Any:
        ...

    def terminate(self, engine: Any) -> None:
        ...


class BackendWorkerFactory:
    """Builds OCR engines from a dotted backend path, one per language."""

    def __init__(self, backend: str, backend_kwargs: Optional[Dict[str, Any]] = None):
        self.backend = backend
        self.backend_kwargs = dict(backend_kwargs or {})
        self._engine_cls = None

    def _load(self):
        if self._engine_cls is None:
            try:
                self._engine_cls = import_obj(self.backend)
            except Exception as e:
                logger.exception("Cannot import OCR backend, %s", self.backend)
                raise BackendLoadError(f"Cannot import OCR backend {self.backend}") from e
        return self._engine_cls

    def create(self, language: str) -> Any:
        engine_cls = self._load()
        kwargs = dict(self.backend_kwargs)
        kwargs.setdefault("languages", language)
        try:
            return engine_cls(**kwargs)
        except Exception as e:
            logger.exception("OCR backend initialization failed for %s", self.backend)
            raise BackendLoadError(f"OCR backend {self.backend} failed to start, {e}") from e

    def terminate(self, engine: Any) -> None:
        close = getattr(engine, "close", None)
        if callable(close):
            close()


@dataclass
class RecognitionWorker:
    """Handle to one pooled engine. Only the pool flips `busy`."""
    worker_id: str
    language: str
    engine: Any
    created_at: float
    last_used_at: float
    busy: bool = False
    uses: int = 0
    timeouts: int = 0
    wedged: bool = False
    in_flight: Optional["asyncio.Future"] = None


class RecognitionWorkerPool:
    """
    Arena of recognition workers keyed by language.

    At most `max_concurrent` workers are busy at once; an `acquire` beyond that
    fails with CapacityExceededError instead of waiting. Released workers are
    reused by the next `acquire` for the same language, and the sweep evicts
    workers idle for longer than `idle_timeout` seconds. The background sweep
    starts with the first worker and stops in `terminate_all`. The clock is
    injectable so eviction can be tested without sleeping.
    """

    def __init__(
        self,
        factory: WorkerFactory,
        *,
        max_concurrent: int = 2,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        executor: Optional[Executor] = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.factory = factory
        self.max_concurrent = max_concurrent
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.executor = executor
        self._workers: Dict[str, RecognitionWorker] = {}
        self._creating = 0
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config, factory: Optional[WorkerFactory] = None, **kwargs):
        return cls(
            factory or BackendWorkerFactory(config.ocr_backend, config.ocr_backend_kwargs),
            max_concurrent=config.max_concurrent,
            idle_timeout=config.worker_idle_timeout,
            sweep_interval=config.sweep_interval,
            **kwargs,
        )

    # -----------------------------
    # Leasing
    # -----------------------------
    def _busy_count(self) -> int:
        return sum(1 for w in self._workers.values() if w.busy) + self._creating

    def _take_idle(self, language: str) -> Optional[RecognitionWorker]:
        candidates = [w for w in self._workers.values() if w.language == language and not w.busy]
        if not candidates:
            return None
        worker = max(candidates, key=lambda w: w.last_used_at)
        worker.busy = True
        return worker

    def _evict_lru_idle(self) -> None:
        """Make room for a new worker by dropping the least recently used idle one."""
        idle = [w for w in self._workers.values() if not w.busy]
        if len(self._workers) + self._creating < self.max_concurrent or not idle:
            return
        victim = min(idle, key=lambda w: w.last_used_at)
        self._remove(victim, reason="make room")

    async def acquire(self, language: str) -> RecognitionWorker:
        with self._lock:
            worker = self._take_idle(language)
            if worker is not None:
                logger.debug("Reusing worker %s for %s", worker.worker_id, language)
                return worker
            if self._busy_count() >= self.max_concurrent:
                raise CapacityExceededError(f"OCR worker at capacity ({self.max_concurrent} busy)")
            self._evict_lru_idle()
            self._creating += 1

        loop = asyncio.get_running_loop()
        try:
            engine = await loop.run_in_executor(self.executor, self.factory.create, language)
        except BaseException:
            with self._lock:
                self._creating -= 1
            raise

        now = self.clock()
        with self._lock:
            self._creating -= 1
            worker = RecognitionWorker(
                worker_id=f"worker_{language}_{next(self._ids)}",
                language=language,
                engine=engine,
                created_at=now,
                last_used_at=now,
                busy=True,
            )
            self._workers[worker.worker_id] = worker
        logger.info("Created recognition worker %s", worker.worker_id)
        self.start_sweeper()
        return worker

    def release(self, worker: RecognitionWorker) -> None:
        with self._lock:
            if self._workers.get(worker.worker_id) is not worker:
                logger.warning("Released worker %s is not pooled", worker.worker_id)
                return
            worker.busy = False
            worker.uses += 1
            worker.last_used_at = self.clock()

    def discard(self, worker: RecognitionWorker) -> None:
        """Terminate a worker instead of returning it, e.g. when it is wedged."""
        with self._lock:
            if self._workers.get(worker.worker_id) is worker:
                self._remove(worker, reason="discarded")

    @asynccontextmanager
    async def lease(self, language: str):
        """Acquire a worker and return it to the pool on every exit path."""
        worker = await self.acquire(language)
        try:
            yield worker
        finally:
            call, worker.in_flight = worker.in_flight, None
            if call is not None and not call.done():
                logger.info("Worker %s is still running, holding it until the call returns", worker.worker_id)
                call.add_done_callback(lambda fut: self._settle(worker, fut))
            else:
                self._settle(worker)

    def _settle(self, worker: RecognitionWorker, call: Optional["asyncio.Future"] = None) -> None:
        if call is not None and not call.cancelled() and call.exception() is not None:
            logger.debug("Late call on worker %s failed, %s", worker.worker_id, call.exception())
        if worker.wedged:
            self.discard(worker)
        else:
            self.release(worker)

    # -----------------------------
    # Eviction
    # -----------------------------
    def _remove(self, worker: RecognitionWorker, *, reason: str) -> None:
        self._workers.pop(worker.worker_id, None)
        try:
            self.factory.terminate(worker.engine)
        except Exception:
            logger.exception("Failed to terminate worker %s", worker.worker_id)
        logger.info("Terminated worker %s (%s)", worker.worker_id, reason)

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """Terminate idle workers unused for longer than `idle_timeout`. Returns evicted ids."""
        now = self.clock() if now is None else now
        evicted: List[str] = []
        with self._lock:
            for worker in list(self._workers.values()):
                if not worker.busy and now - worker.last_used_at > self.idle_timeout:
                    self._remove(worker, reason="idle")
                    evicted.append(worker.worker_id)
        return evicted

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Worker sweep failed")

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def terminate_all(self) -> None:
        await self.stop_sweeper()
        with self._lock:
            for worker in list(self._workers.values()):
                self._remove(worker, reason="shutdown")

    async def __aenter__(self):
        self.start_sweeper()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.terminate_all()

    # -----------------------------
    # Introspection
    # -----------------------------
    def workers(self) -> List[RecognitionWorker]:
        with self._lock:
            return list(self._workers.values())

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            per_lang: Dict[str, Dict[str, int]] = {}
            for w in self._workers.values():
                s = per_lang.setdefault(w.language, {"busy": 0, "idle": 0})
                s["busy" if w.busy else "idle"] += 1
            return {
                "total": len(self._workers),
                "busy": sum(1 for w in self._workers.values() if w.busy),
                "creating": self._creating,
                "max_concurrent": self.max_concurrent,
                "languages": per_lang,
            }
