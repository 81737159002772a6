import pytest

from tests.fakes import InMemoryRedis, ProcessorStub


@pytest.fixture
def fake_redis():
    return InMemoryRedis()


@pytest.fixture
def processors():
    return ProcessorStub()
