from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from pycollate.config import EngineConfig
from pycollate.engine import CorrelationEngine
from pycollate.models.record import AggregateRecord

IP = "203.0.113.7"
WORKERS = 16


class _CountingClock:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls = 0

    def __call__(self) -> int:
        with self._lock:
            self.calls += 1
            return 1_700_000_000_000 + self.calls


@pytest.mark.asyncio
async def test_concurrent_deposits_create_one_record() -> None:
    loop = asyncio.get_running_loop()
    clock = _CountingClock()
    barrier = threading.Barrier(WORKERS)
    engine = CorrelationEngine(lambda *_: None, EngineConfig(quiescence_delay=5.0), loop=loop, clock=clock)

    def worker(index: int) -> None:
        barrier.wait()
        engine.deposit(IP, f"key-{index}", str(index))

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        await asyncio.gather(*(loop.run_in_executor(pool, worker, i) for i in range(WORKERS)))

    record = engine.peek(IP)
    assert record is not None
    assert len(engine) == 1
    assert clock.calls == 1
    assert record.first_seen == 1_700_000_000_001
    assert record.properties == {f"key-{i}": str(i) for i in range(WORKERS)}

    await engine.aclose(flush=False)


@pytest.mark.asyncio
async def test_concurrent_force_deliver_delivers_once() -> None:
    loop = asyncio.get_running_loop()
    delivered: list[str] = []
    lock = threading.Lock()
    barrier = threading.Barrier(WORKERS)

    def callback(identity: str, _record: AggregateRecord) -> None:
        with lock:
            delivered.append(identity)

    engine = CorrelationEngine(callback, EngineConfig(quiescence_delay=None, allow_unbounded=True))
    engine.deposit(IP, "k", "v")

    def worker() -> bool:
        barrier.wait()
        return engine.force_deliver(IP)

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        results = await asyncio.gather(*(loop.run_in_executor(pool, worker) for _ in range(WORKERS)))

    assert results.count(True) == 1
    assert delivered == [IP]


@pytest.mark.asyncio
async def test_force_deliver_from_thread_racing_timer() -> None:
    loop = asyncio.get_running_loop()
    loop_thread = threading.get_ident()
    delivered_on: list[int] = []
    forced: list[bool] = []

    def callback(_identity: str, _record: AggregateRecord) -> None:
        delivered_on.append(threading.get_ident())

    engine = CorrelationEngine(callback, EngineConfig(quiescence_delay=0.05))
    async with engine:
        for _ in range(5):
            engine.deposit(IP, "k", "v")
            await asyncio.sleep(0.048)
            forced.append(await loop.run_in_executor(None, engine.force_deliver, IP))
            await asyncio.sleep(0.05)

    # Every cycle delivered exactly once, and force_deliver reports True
    # only when it, not the timer on the loop thread, did the delivering.
    assert len(delivered_on) == 5
    assert forced == [thread != loop_thread for thread in delivered_on]


@pytest.mark.asyncio
async def test_many_identities_from_threads() -> None:
    loop = asyncio.get_running_loop()
    identities = [f"198.51.100.{i}" for i in range(40)]
    delivered: dict[str, AggregateRecord] = {}
    lock = threading.Lock()
    all_done = asyncio.Event()

    def callback(identity: str, record: AggregateRecord) -> None:
        with lock:
            delivered[identity] = record
            if len(delivered) == len(identities):
                loop.call_soon_threadsafe(all_done.set)

    engine = CorrelationEngine(callback, EngineConfig(quiescence_delay=0.1), loop=loop)

    def worker(identity: str) -> None:
        for key in ("screen", "tz", "lang"):
            engine.deposit(identity, key, f"{identity}-{key}")
        engine.deposit_extension(identity, "thread", threading.get_ident())

    with ThreadPoolExecutor(max_workers=8) as pool:
        await asyncio.gather(*(loop.run_in_executor(pool, worker, identity) for identity in identities))

    await asyncio.wait_for(all_done.wait(), 2.0)
    await engine.aclose()

    assert set(delivered) == set(identities)
    for identity, record in delivered.items():
        assert record.identity == identity
        assert len(record.properties) == 3
        assert "thread" in record.extensions
