"""Shared fixtures for client tests."""

from __future__ import annotations

import pytest

from recordsync.core.config import StoreConfig
from tests.client.fakes import FakeAttachments, FakeFeed, FakeGateway


@pytest.fixture
def store_config() -> StoreConfig:
    """Short timeouts so timed-out attempts finish quickly."""
    return StoreConfig(operation_timeout=0.05, completed_removal_delay=0.05)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def attachments() -> FakeAttachments:
    return FakeAttachments()


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()
