from __future__ import annotations

import pytest

from tests.fakes import FakeCentral, FakePeripheral, Harness, make_config


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def central() -> FakeCentral:
    return FakeCentral()


@pytest.fixture
def peripheral() -> FakePeripheral:
    return FakePeripheral()


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def ready_harness(harness: Harness) -> Harness:
    harness.bring_up()
    return harness
