# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Test suite for RelAlchemy ORM.

This package contains tests for all components of the RelAlchemy ORM:
- Schema registry and relationship resolution
- Cascade planning
- Query building, SQL compilation and result mapping
- Session, repository and transaction behavior against SQLite
"""

from pathlib import Path
import tempfile
import uuid


def create_test_db_path() -> Path:
    """Unique SQLite database file path in the temp directory."""
    return Path(tempfile.gettempdir()) / f"test_relalchemy_{uuid.uuid4().hex[:8]}.sqlite"


def cleanup_test_db(db_path: Path) -> None:
    for suffix in ("", "-journal", "-wal", "-shm"):
        candidate = db_path.with_name(db_path.name + suffix)
        if candidate.exists():
            candidate.unlink()


__all__ = [
    "cleanup_test_db",
    "create_test_db_path",
]
