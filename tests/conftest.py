"""Pytest configuration and shared fixtures."""

from collections.abc import Iterable
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.core.document_store import USERS, ArrayUnion, DocumentStore
from src.core.memory_store import InMemoryDocumentStore
from src.core.retry import RetryConfig, RetryPolicy
from src.core.session import AuthUser
from src.domain.create_models import TaskCreate
from src.domain.task import Task
from src.domain.user import new_user_document
from src.main import Board


# Shared test utilities


async def create_test_user(
    store: DocumentStore,
    uid: str,
    *,
    friends: Iterable[str] = (),
    **fields: Any,
) -> None:
    """Store a user profile with sensible defaults."""
    document = new_user_document(uid=uid, email=f"{uid}@example.com", display_name=uid.title())
    await store.set(USERS, uid, {**document, "friends": list(friends), **fields})


async def make_friends(store: DocumentStore, first: str, second: str) -> None:
    await store.update(USERS, first, {"friends": ArrayUnion(second)})
    await store.update(USERS, second, {"friends": ArrayUnion(first)})


def sign_in_as(board: Board, uid: str) -> AuthUser:
    """Attach an identity to the board session without running the sign-in sequence."""
    user = AuthUser(uid=uid, email=f"{uid}@example.com", display_name=uid.title())
    board.session.user = user
    return user


async def create_test_task(
    board: Board,
    *,
    name: str = "Write report",
    subtasks: Iterable[str] = ("Draft", "Review"),
    difficulty: int = 3,
    workload: int = 3,
    risk: int = 3,
    **fields: Any,
) -> Task:
    """Create a task owned by the signed-in user."""
    payload = TaskCreate(
        name=name,
        subtasks=list(subtasks),
        difficulty=difficulty,
        workload=workload,
        risk=risk,
        **fields,
    )
    return await board.tasks.create_task(payload)


# Fixtures


@pytest.fixture(autouse=True)
def mock_asyncio_sleep():
    """Mock asyncio.sleep to avoid actual delays in retry paths."""
    with patch("src.core.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """Provides a fresh in-memory document store for each test."""
    return InMemoryDocumentStore()


@pytest.fixture
def network_policy() -> RetryPolicy:
    """Network retries without a circuit breaker tripping across tests."""
    return RetryPolicy(RetryConfig(max_attempts=3, base_delay=1.0, circuit_breaker_threshold=1000))


@pytest.fixture
def transaction_config() -> RetryConfig:
    return RetryConfig(max_attempts=3, base_delay=0.5, circuit_breaker_threshold=1000)


@pytest.fixture
def test_scheduler() -> AsyncIOScheduler:
    """A scheduler that is never started, so jobs are only recorded."""
    return AsyncIOScheduler()


@pytest.fixture
def board(store, network_policy, transaction_config, test_scheduler) -> Board:
    return Board(
        store,
        job_scheduler=test_scheduler,
        network_policy=network_policy,
        transaction_config=transaction_config,
    )


@pytest.fixture
async def alice(board, store) -> AuthUser:
    """Signed-in user ``alice`` with friends ``bob`` and ``carol``; ``dave`` exists but is not a friend."""
    await create_test_user(store, "alice", friends=["bob", "carol"])
    await create_test_user(store, "bob", friends=["alice"])
    await create_test_user(store, "carol", friends=["alice"])
    await create_test_user(store, "dave")
    return sign_in_as(board, "alice")
