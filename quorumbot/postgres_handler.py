import asyncio
import logging
from datetime import datetime, timezone

import asyncpg


class PostgresHandler(logging.Handler):
    """Write log records to Postgres so moderation history is queryable.

    Kicks, verifications and scan summaries all go through the
    ``quorumbot`` loggers, so this table doubles as the moderation audit
    trail.
    """

    def __init__(self, dsn: str, table: str = "moderation_logs") -> None:
        super().__init__()
        self.dsn = dsn
        self.table = table
        self.pool: asyncpg.Pool | None = None
        self._tasks: set[asyncio.Task] = set()
        # DEBUG records stay out of the database
        self.setLevel(logging.INFO)

    async def connect(self) -> None:
        url = self.dsn.replace("postgresql+asyncpg://", "postgresql://")
        self.pool = await asyncpg.create_pool(url)

        create_sql = f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                id SERIAL PRIMARY KEY,
                logger_name TEXT NOT NULL,
                log_level TEXT NOT NULL,
                message TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """
        await self.pool.execute(create_sql)

    async def aclose(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.pool:
            await self.pool.close()
            self.pool = None

    def close(self) -> None:
        if self.pool:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(self.pool.close())
            else:
                loop.create_task(self.pool.close())
            self.pool = None
        super().close()

    def emit(self, record: logging.LogRecord) -> None:
        if not self.pool:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        coro = self.pool.execute(
            f"INSERT INTO {self.table} (logger_name, log_level, message, created_at) VALUES ($1, $2, $3, $4)",
            record.name,
            record.levelname,
            record.getMessage(),
            ts,
        )
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
