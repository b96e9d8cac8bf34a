import pytest

from tests.fakes import FakeConnector, FakeEmulator


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def emulator():
    return FakeEmulator()
