import pytest


@pytest.fixture
def anyio_backend():
    # The code under test is built on asyncio primitives (asyncio.Lock,
    # asyncio.create_task, asyncio.gather), so run async tests on asyncio only.
    return "asyncio"
