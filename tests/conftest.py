# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Pytest configuration and shared fixtures for RelAlchemy tests.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Generator

import pytest

from relalchemy import RelSession, SchemaRegistry, SQLiteExecutor

from . import cleanup_test_db, create_test_db_path
from ._schema import build_blog_registry


@pytest.fixture(scope="function")
def blog_registry() -> SchemaRegistry:
    """Fresh, finalized blog schema; every test gets its own registry."""
    return build_blog_registry()


@pytest.fixture(scope="function")
def models(blog_registry: SchemaRegistry) -> Dict[str, Any]:
    """Entity classes synthesized by the registry, keyed by entity name."""
    return {meta.name: meta.entity_class for meta in blog_registry.all_entities()}


@pytest.fixture(scope="function")
def session(blog_registry: SchemaRegistry) -> Generator[RelSession, None, None]:
    """Autocommit session over an in-memory SQLite database with the schema created."""
    session = RelSession(blog_registry)
    session.create_schema()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def shared_executor() -> Generator[SQLiteExecutor, None, None]:
    """One in-memory database shared by several sessions."""
    executor = SQLiteExecutor()
    try:
        yield executor
    finally:
        executor.close()


@pytest.fixture(scope="function")
def test_db_path() -> Generator[Path, None, None]:
    """Temporary SQLite database file, removed afterwards."""
    db_path = create_test_db_path()
    try:
        yield db_path
    finally:
        cleanup_test_db(db_path)
