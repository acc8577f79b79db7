import logging

import pytest_asyncio

from storyq import JobQueue, AsyncJobStore


@pytest_asyncio.fixture
async def queue():
    logging.getLogger("storyq").setLevel(logging.DEBUG)

    instance = JobQueue("test", concurrency=1, backoff_base=10)
    try:
        yield instance
    finally:
        await instance.close(cancel=True)


@pytest_asyncio.fixture
async def store(database_url):
    logging.getLogger("storyq").setLevel(logging.DEBUG)

    instance = AsyncJobStore(database_url)
    try:
        await instance.create_all()
        yield instance
    finally:
        await instance.drop_all()
        await instance.dispose()
