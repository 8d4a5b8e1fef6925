from __future__ import annotations

import io

import pytest

from fakes import FakeTime


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def out():
    return io.StringIO()
