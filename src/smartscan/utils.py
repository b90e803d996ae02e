# src/smartscan/utils.py
from __future__ import annotations

import asyncio
import importlib
import inspect
import json
import logging
import time
from concurrent.futures import Executor
from pathlib import Path
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("smartscan")


def import_obj(dotted: str):
    """Load `module.Attr` from a dotted path."""
    mod_path, _, attr = dotted.rpartition(".")
    if not mod_path or not attr:
        raise ImportError(f"Invalid backend path, {dotted}")
    mod = importlib.import_module(mod_path)
    try:
        return getattr(mod, attr)
    except AttributeError as e:
        raise ImportError(f"Backend class not found, {dotted}") from e


def elapsed_ms(start: float) -> int:
    return int(round((time.perf_counter() - start) * 1000))


def call_async(executor: Optional[Executor], fn: Callable, *args) -> "asyncio.Future":
    """
    Schedule `fn(*args)` without blocking the event loop.
    Coroutine functions are awaited directly, blocking ones run on `executor`.
    """
    if inspect.iscoroutinefunction(fn):
        return asyncio.ensure_future(fn(*args))
    loop = asyncio.get_running_loop()
    return loop.run_in_executor(executor, fn, *args)


def append_jsonl(path: Optional[Path], record: Dict[str, Any]) -> None:
    """Append one timestamped JSON line. Failures are logged, never raised."""
    if not path:
        return
    try:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            entry = {"timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"), **record}
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
    except Exception:
        logger.exception("Failed to write log entry to %s", path)
