"""Shared fixtures: a live Redis for BullMQ tests and worker helpers.

BullMQ runs its queue operations as Lua scripts, so queue and worker tests
need a real Redis server. Set ``REDIS_URL`` to point at one; tests that
need it are skipped when it cannot be reached.
"""

import asyncio
import logging
import os
import uuid

import pytest
import pytest_asyncio
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from candidate_pipeline.queue.connection import build_connection_descriptor, create_redis
from candidate_pipeline.queue.consumer import CandidateEvaluationWorker, WorkerOptions
from candidate_pipeline.queue.gateway import CandidateEvaluationQueue

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

DEFAULT_TEST_REDIS_URL = "redis://localhost:6379/15"


# ============================================================
# Redis
# ============================================================

@pytest_asyncio.fixture
async def redis_url():
    """URL of a reachable Redis server, or skip the test."""
    url = os.getenv("REDIS_URL", DEFAULT_TEST_REDIS_URL)
    client = aioredis.Redis.from_url(url, socket_connect_timeout=1)
    try:
        await client.ping()
    except (RedisError, OSError):
        pytest.skip(f"Redis not reachable at {url}")
    finally:
        await client.aclose()
    return url


@pytest_asyncio.fixture
async def redis(redis_url):
    """Async Redis client for the test server; closed at teardown."""
    client = create_redis(build_connection_descriptor(redis_url))
    yield client
    await client.aclose()


@pytest.fixture
def connection(redis_url):
    return build_connection_descriptor(redis_url)


@pytest_asyncio.fixture
async def queue_name(redis_url):
    """Unique queue name; its keys are deleted at teardown."""
    name = f"candidate-evaluation-test-{uuid.uuid4().hex[:8]}"
    yield name

    client = aioredis.Redis.from_url(redis_url)
    try:
        keys = [key async for key in client.scan_iter(match=f"bull:{name}:*")]
        if keys:
            await client.delete(*keys)
    finally:
        await client.aclose()


@pytest_asyncio.fixture
async def queue(connection, queue_name):
    q = CandidateEvaluationQueue(connection, queue_name=queue_name)
    yield q
    await q.close()


# ============================================================
# Worker
# ============================================================

def fast_options(**overrides) -> WorkerOptions:
    """Worker options with test-friendly timings."""
    values = dict(
        concurrency=1,
        lock_duration_ms=2_000,
        stalled_interval_ms=500,
    )
    values.update(overrides)
    return WorkerOptions(**values)


@pytest.fixture
def worker_options():
    return fast_options


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02) -> None:
    """Poll an async or sync predicate until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def until():
    return wait_until


@pytest_asyncio.fixture
async def start_worker(connection, queue_name):
    """Start workers in the background; stops any still running at teardown.

    Returns a factory ``(processor, options) -> (worker, stop_event, task)``.
    """
    running = []

    def _start(processor, options=None):
        worker = CandidateEvaluationWorker(
            connection, processor, options or fast_options(), queue_name=queue_name
        )
        stop_event = asyncio.Event()
        task = asyncio.create_task(worker.run(stop_event))
        running.append((stop_event, task))
        return worker, stop_event, task

    yield _start

    for stop_event, task in running:
        stop_event.set()
    await asyncio.gather(*(task for _, task in running), return_exceptions=True)
