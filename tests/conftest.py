"""Shared fixtures."""

from collections.abc import Iterator

import pytest
from aioresponses import aioresponses as aioresponses_cls
from pydantic import SecretStr

from conformance_harness.callback_keys import CallbackKeys, CallbackLinks
from conformance_harness.repository.memory import MemoryRepository

CALLBACK_BASE_URL = "http://harness.test"


@pytest.fixture
def aioresponses() -> Iterator[aioresponses_cls]:
    """Intercept outbound aiohttp requests."""
    with aioresponses_cls() as mocked:
        yield mocked


@pytest.fixture
def repository() -> MemoryRepository:
    """Create an empty in-memory repository."""
    return MemoryRepository()


@pytest.fixture
def links() -> CallbackLinks:
    """Create callback links signed with a test secret."""
    return CallbackLinks(
        keys=CallbackKeys(secret=SecretStr("test-secret")),
        base_url=CALLBACK_BASE_URL,
    )
