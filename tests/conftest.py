"""Shared pytest fixtures for gridsheet tests."""

import pytest
from fastapi.testclient import TestClient

import gridsheet.app as grid_app
from gridsheet.engine import GridEngine


@pytest.fixture
def engine() -> GridEngine:
    return GridEngine(num_columns=10)


@pytest.fixture
def guarded_engine() -> GridEngine:
    return GridEngine(num_columns=10, cycle_guard=True)


@pytest.fixture
def client():
    grid_app.engine.clear()
    with TestClient(grid_app.app) as test_client:
        yield test_client
    grid_app.engine.clear()
