import asyncio

from tessera.service.runtime import get_runtime
from tessera.storage.redis_cache import RedisCache


class StubAsyncClient:
    def __init__(self, exc=None):
        self.exc = exc
        self.closed = False

    async def aclose(self):
        if self.exc is not None:
            raise self.exc
        self.closed = True


def _cache(client) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.client = client
    return cache


class TestRuntimeShutdown:
    """Closing the Redis client from async and sync callers."""

    async def test_aclose_awaits_cache(self):
        runtime = get_runtime()
        client = StubAsyncClient()
        runtime.cache = _cache(client)

        await runtime.aclose()

        assert client.closed

    async def test_close_inside_loop_keeps_task(self):
        runtime = get_runtime()
        client = StubAsyncClient()
        runtime.cache = _cache(client)

        runtime.close()

        assert runtime._close_task is not None
        await runtime._close_task
        assert client.closed

    async def test_close_failure_is_collected(self):
        runtime = get_runtime()
        runtime.cache = _cache(StubAsyncClient(exc=OSError("connection reset")))

        runtime.close()
        task = runtime._close_task
        await asyncio.wait([task])

        assert isinstance(task.exception(), OSError)
        runtime.cache = None

    def test_close_without_loop_runs_to_completion(self):
        runtime = get_runtime()
        client = StubAsyncClient()
        runtime.cache = _cache(client)

        runtime.close()

        assert client.closed
        assert runtime._close_task is None
        runtime.cache = None
