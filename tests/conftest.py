"""Shared pytest fixtures for all tests."""

import tempfile
from pathlib import Path

import pytest

from common.constants import KIB
from orchestrator.database import init_database
from tests.doubles import ARCHIVAL, PRIMARY, FailingBackend, build_service


@pytest.fixture
def test_db(monkeypatch):
    """
    Create a temporary test database for each test.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        monkeypatch.setattr("orchestrator.database.DATABASE_PATH", str(db_path))
        monkeypatch.setattr("orchestrator.config.DATABASE_PATH", str(db_path))
        init_database()
        yield db_path


@pytest.fixture
def memory_backends():
    """Primary and archival memory backends with small multipart parts."""
    return {
        PRIMARY: FailingBackend(PRIMARY, multipart_part_size=64 * KIB),
        ARCHIVAL: FailingBackend(ARCHIVAL, multipart_part_size=64 * KIB),
    }


@pytest.fixture
def storage(test_db):
    """(service, backends, health_table) over healthy memory backends."""
    return build_service()
