"""Pytest configuration and fixtures for unit tests."""

import pytest

from src.main import Board
from tests.unit.mocks import FailingNotifier, FlakyStore, InterleavingStore, RecordingNotifier


@pytest.fixture
def flaky_store() -> FlakyStore:
    """Provides an in-memory store that can be told to abort transactions."""
    return FlakyStore()


@pytest.fixture
def flaky_board(flaky_store, network_policy, transaction_config, test_scheduler) -> Board:
    return Board(
        flaky_store,
        job_scheduler=test_scheduler,
        network_policy=network_policy,
        transaction_config=transaction_config,
    )


@pytest.fixture
def interleaving_store() -> InterleavingStore:
    """Provides an in-memory store where another client can write between a read and a commit."""
    return InterleavingStore()


@pytest.fixture
def interleaving_board(interleaving_store, network_policy, transaction_config, test_scheduler) -> Board:
    return Board(
        interleaving_store,
        job_scheduler=test_scheduler,
        network_policy=network_policy,
        transaction_config=transaction_config,
    )


@pytest.fixture
def failing_notifier() -> FailingNotifier:
    return FailingNotifier()


@pytest.fixture
def recording_notifier() -> RecordingNotifier:
    return RecordingNotifier()
