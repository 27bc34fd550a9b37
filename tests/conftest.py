"""Test fixtures shared by all tests."""

from collections.abc import Generator

import pytest

from gitops_local.cluster import InMemoryCluster
from gitops_local.controller import ControllerConfig
from gitops_local.store import InMemoryStore
from gitops_local.task import TaskService, task_service_context

from .fakes import DEST_NAMESPACE, FakeFetcher, SleepRecorder, namespace


@pytest.fixture(autouse=True)
def task_service_scope() -> Generator[TaskService, None, None]:
    """Track the tasks started by each test with a fresh task service."""
    with task_service_context() as service:
        yield service


@pytest.fixture
def store() -> InMemoryStore:
    """Create an in-memory store for testing."""
    return InMemoryStore()


@pytest.fixture
def cluster() -> InMemoryCluster:
    """Create an in-memory cluster with the destination namespace."""
    cluster = InMemoryCluster()
    cluster.create(namespace(DEST_NAMESPACE))
    return cluster


@pytest.fixture
def fetcher() -> FakeFetcher:
    """Create a fetcher serving documents from memory."""
    return FakeFetcher()


@pytest.fixture
def sleep() -> SleepRecorder:
    """Record retry and health check delays instead of sleeping."""
    return SleepRecorder()


@pytest.fixture
def config(sleep: SleepRecorder) -> ControllerConfig:
    """Controller settings that never wait on the clock."""
    return ControllerConfig(
        health_grace_period=3.0,
        health_check_interval=1.0,
        sleep=sleep,
    )
