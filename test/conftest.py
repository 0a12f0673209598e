#
# For pytest
#

import asyncio

import pytest

from atakrelay.config import Config
from fakes import FakeClientFactory


@pytest.fixture
def loop():
    "Fresh event loop per test, use loop.run_until_complete"
    l = asyncio.new_event_loop()
    asyncio.set_event_loop(l)
    yield l
    # Network threads are joined in the default executor
    l.run_until_complete(l.shutdown_default_executor())
    l.close()
    asyncio.set_event_loop(None)


@pytest.fixture
def config():
    "Defaults only, don't pick up settings of the machine running the tests"
    return Config.from_env({})


@pytest.fixture
def clients():
    "Fake broker that acknowledges everything"
    return FakeClientFactory('ack')
