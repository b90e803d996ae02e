# tests/test_pool.py
import asyncio

import pytest

from smartscan.exceptions import BackendLoadError, CapacityExceededError
from smartscan.pool import BackendWorkerFactory, RecognitionWorkerPool

from conftest import FakeOCREngine, FakeWorkerFactory, ocr_output


def make_pool(clock, max_concurrent=2, idle_timeout=30.0, **kwargs):
    factory = FakeWorkerFactory(lambda: FakeOCREngine([ocr_output("ok", 0.9)]))
    pool = RecognitionWorkerPool(factory, max_concurrent=max_concurrent, idle_timeout=idle_timeout,
                                 clock=clock, **kwargs)
    return pool, factory


def test_released_worker_is_reused(clock):
    pool, factory = make_pool(clock)

    async def scenario():
        w1 = await pool.acquire("eng")
        pool.release(w1)
        w2 = await pool.acquire("eng")
        return w1, w2

    w1, w2 = asyncio.run(scenario())
    assert w1 is w2
    assert len(factory.created) == 1
    assert w2.busy is True
    assert w2.uses == 1


def test_busy_worker_is_never_handed_out(clock):
    pool, factory = make_pool(clock)

    async def scenario():
        w1 = await pool.acquire("eng")
        w2 = await pool.acquire("eng")
        return w1, w2

    w1, w2 = asyncio.run(scenario())
    assert w1.worker_id != w2.worker_id
    assert len(factory.created) == 2


def test_capacity_exceeded_fails_fast(clock):
    pool, factory = make_pool(clock, max_concurrent=1)

    async def scenario():
        await pool.acquire("eng")
        await pool.acquire("eng")

    with pytest.raises(CapacityExceededError) as info:
        asyncio.run(scenario())
    assert info.value.code == "capacity_exceeded"
    assert len(factory.created) == 1


def test_sweep_evicts_only_expired_idle_workers(clock):
    pool, factory = make_pool(clock)

    async def scenario():
        idle = await pool.acquire("eng")
        busy = await pool.acquire("eng")
        pool.release(idle)
        return idle, busy

    idle, busy = asyncio.run(scenario())

    clock.advance(29)
    assert pool.sweep() == []

    clock.advance(2)
    assert pool.sweep() == [idle.worker_id]
    assert factory.terminated == [idle.engine]
    assert idle.engine.closed
    assert [w.worker_id for w in pool.workers()] == [busy.worker_id]


def test_lease_releases_on_error(clock):
    pool, _ = make_pool(clock)

    async def scenario():
        with pytest.raises(ValueError):
            async with pool.lease("eng"):
                raise ValueError("boom")

    asyncio.run(scenario())
    stats = pool.stats()
    assert stats["busy"] == 0
    assert stats["total"] == 1
    assert stats["languages"] == {"eng": {"busy": 0, "idle": 1}}


def test_wedged_worker_is_discarded_by_lease(clock):
    pool, factory = make_pool(clock)

    async def scenario():
        async with pool.lease("eng") as worker:
            worker.wedged = True
        return worker

    worker = asyncio.run(scenario())
    assert pool.workers() == []
    assert factory.terminated == [worker.engine]


def test_idle_worker_of_other_language_is_evicted_to_make_room(clock):
    pool, factory = make_pool(clock, max_concurrent=1)

    async def scenario():
        eng = await pool.acquire("eng")
        pool.release(eng)
        vie = await pool.acquire("vie")
        return eng, vie

    eng, vie = asyncio.run(scenario())
    assert [w.worker_id for w in pool.workers()] == [vie.worker_id]
    assert factory.terminated == [eng.engine]
    assert [lang for lang, _ in factory.created] == ["eng", "vie"]


def test_background_sweeper_runs_independently(clock):
    pool, factory = make_pool(clock, sweep_interval=0.01)

    async def scenario():
        async with pool:
            worker = await pool.acquire("eng")
            pool.release(worker)
            clock.advance(60)
            await asyncio.sleep(0.1)
            return worker

    worker = asyncio.run(scenario())
    assert worker.engine in factory.terminated
    assert pool.workers() == []


def test_terminate_all(clock):
    pool, factory = make_pool(clock)

    async def scenario():
        await pool.acquire("eng")
        await pool.acquire("vie")
        await pool.terminate_all()

    asyncio.run(scenario())
    assert pool.workers() == []
    assert len(factory.terminated) == 2


def test_backend_factory_wraps_import_errors():
    factory = BackendWorkerFactory("smartscan.ocr_backends.nope.Missing")
    pool = RecognitionWorkerPool(factory)

    async def scenario():
        await pool.acquire("eng")

    with pytest.raises(BackendLoadError):
        asyncio.run(scenario())
    assert pool.stats()["creating"] == 0
    assert pool.workers() == []


def test_max_concurrent_must_be_positive():
    with pytest.raises(ValueError):
        RecognitionWorkerPool(FakeWorkerFactory(lambda: None), max_concurrent=0)


def test_first_worker_starts_the_sweeper(clock):
    pool, _ = make_pool(clock)

    async def scenario():
        before = pool._sweeper
        await pool.acquire("eng")
        running = pool._sweeper is not None and not pool._sweeper.done()
        await pool.terminate_all()
        return before, running

    before, running = asyncio.run(scenario())
    assert before is None
    assert running
    assert pool._sweeper is None
