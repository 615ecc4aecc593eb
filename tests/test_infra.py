import asyncio

import pytest
from sqlalchemy import text

from coursepay.infra.sql import make_async_engine, normalize_async_url
from coursepay.infra.timings import aggregates, timeit


@pytest.mark.parametrize("url,expected", [
    ("sqlite:///./x.db", "sqlite+aiosqlite:///./x.db"),
    ("postgres://u@h/db", "postgresql+asyncpg://u@h/db"),
    ("postgresql://u@h/db", "postgresql+asyncpg://u@h/db"),
    ("postgresql+asyncpg://u@h/db", "postgresql+asyncpg://u@h/db"),
])
def test_normalize_async_url(url, expected):
    assert normalize_async_url(url) == expected


async def test_gate_limit_bounds_transactions(tmp_path):
    db = make_async_engine(f"sqlite:///{tmp_path}/gate.db", gate_limit=1)
    entered = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with db.gated():
            entered.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await entered.wait()

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(db.gated().__aenter__(), timeout=0.05)

    release.set()
    await task
    async with db.gated():
        pass
    await db.engine.dispose()


async def test_sqlite_reads_hold_their_snapshot(tmp_path):
    db = make_async_engine(f"sqlite:///{tmp_path}/snap.db")
    async with db.engine.begin() as conn:
        await conn.execute(text("CREATE TABLE t (v INTEGER)"))
        await conn.execute(text("INSERT INTO t VALUES (1)"))

    async with db.SessionAsync() as a, db.SessionAsync() as b:
        async with a.begin():
            first = (await a.execute(text("SELECT v FROM t"))).scalar_one()
            async with b.begin():
                await b.execute(text("UPDATE t SET v = 2"))
            again = (await a.execute(text("SELECT v FROM t"))).scalar_one()
    assert first == again == 1
    await db.engine.dispose()


async def test_timeit_records_aggregates():
    async with timeit("test.step"):
        await asyncio.sleep(0)
    [row] = [r for r in aggregates() if r["kind"] == "test.step"]
    assert row["n"] >= 1
    assert row["mean"] >= 0
