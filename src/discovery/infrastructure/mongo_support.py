from __future__ import annotations

import asyncio
import inspect
from threading import Lock
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from ..domain.errors import PersistenceError


class MotorRunner:
    """Drives motor coroutines from synchronous store methods.

    One private event loop per store: motor binds its client to the loop
    that first uses it. The lock serialises callers from FastAPI's
    threadpool, since a loop cannot be re-entered.
    """

    def __init__(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._lock = Lock()

    def run(self, awaitable: Any) -> Any:
        if not inspect.isawaitable(awaitable):
            return awaitable
        with self._lock:
            return self._loop.run_until_complete(awaitable)

    def close(self) -> None:
        with self._lock:
            self._loop.close()


def connect_database(runner: MotorRunner, mongo_url: str, mongo_db: str) -> AsyncIOMotorDatabase:
    async def _connect() -> AsyncIOMotorClient:
        client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=500)
        await client.server_info()
        return client

    try:
        client = runner.run(_connect())
    except Exception as exc:
        raise PersistenceError(f"MongoDB unreachable at {mongo_url}") from exc
    return client[mongo_db]
