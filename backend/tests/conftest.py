from __future__ import annotations

from uuid import uuid4

import pytest

from tests.fakes import FakeRepository


@pytest.fixture
def repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def tenant_id():
    return uuid4()
