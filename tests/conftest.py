"""Pytest configuration and fixtures."""

import os

import pytest


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """Isolate environment variables for each test.

    This prevents test pollution where one test's environment
    changes affect other tests.
    """
    # Save current environment
    original_env = os.environ.copy()

    yield

    # Restore original environment
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def users_schema():
    """Schema with an indexed users table and a posts table."""
    from deposit.schema import TableSchema

    return {
        "users": TableSchema(key="id", indexes=("name", "city")),
        "posts": TableSchema(key="slug"),
    }


@pytest.fixture
def sample_users():
    """Users with distinct names and a repeated city."""
    return [
        {"id": 1, "name": "Alice", "city": "Paris", "age": 30},
        {"id": 2, "name": "Bob", "city": "London", "age": 25},
        {"id": 3, "name": "Carol", "city": "Paris", "age": 35},
        {"id": 4, "name": "Dave", "city": "Berlin", "age": 25},
    ]


@pytest.fixture
def kv_store():
    """Backing mapping for key-value adapters."""
    return {}


@pytest.fixture
def kv_adapter(users_schema, kv_store):
    """Key-value adapter over a plain dict."""
    from deposit.adapters import KeyValueAdapter

    return KeyValueAdapter("app", 1, users_schema, store=kv_store)


@pytest.fixture
def sqlite_adapter(users_schema, tmp_path):
    """SQLite adapter backed by a file in a temporary directory."""
    from deposit.adapters import SQLiteAdapter

    return SQLiteAdapter("app", 1, users_schema, directory=tmp_path)


@pytest.fixture(params=["keyvalue", "sqlite"])
def adapter(request):
    """Each adapter variant in turn."""
    if request.param == "keyvalue":
        return request.getfixturevalue("kv_adapter")
    return request.getfixturevalue("sqlite_adapter")
