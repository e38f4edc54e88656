import asyncio
import logging

import asyncpg

from quorumbot.postgres_handler import PostgresHandler


class DummyPool:
    def __init__(self):
        self.closed = False
        self.executed = []

    async def close(self):
        self.closed = True

    async def execute(self, *args, **kwargs):
        self.executed.append(args)


def test_dsn_conversion_and_table(monkeypatch):
    pool = DummyPool()

    async def fake_create_pool(url, *args, **kwargs):
        assert url.startswith("postgresql://")
        return pool

    async def run_test():
        monkeypatch.setattr(asyncpg, "create_pool", fake_create_pool)
        handler = PostgresHandler("postgresql+asyncpg://u:p@localhost/db")
        await handler.connect()
        await handler.aclose()

    asyncio.run(run_test())
    assert "moderation_logs" in pool.executed[0][0]
    assert pool.closed


def test_info_records_inserted_debug_filtered():
    async def run_test():
        pool = DummyPool()
        handler = PostgresHandler("postgresql://u:p@localhost/db")
        handler.pool = pool
        logger = logging.getLogger("quorumbot.test_pg")
        logger.setLevel(logging.DEBUG)
        logger.addHandler(handler)
        try:
            logger.debug("debug message")
            logger.info("Verdict applied user_id=5")
        finally:
            logger.removeHandler(handler)
        await handler.aclose()
        return pool

    pool = asyncio.run(run_test())
    assert len(pool.executed) == 1
    sql, name, level, message, _ = pool.executed[0]
    assert sql.startswith("INSERT INTO moderation_logs")
    assert (name, level, message) == ("quorumbot.test_pg", "INFO", "Verdict applied user_id=5")


def test_emit_without_loop_is_noop():
    handler = PostgresHandler("postgresql://u:p@localhost/db")
    handler.pool = DummyPool()
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
    handler.emit(record)
    assert handler.pool.executed == []
