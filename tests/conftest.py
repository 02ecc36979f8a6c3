"""Common test fixtures for NoteVault."""

import logging
import tempfile
from pathlib import Path

import pytest

from notevault.config import config
from notevault.observability import metrics
from notevault.services.vault_service import VaultService
from notevault.storage.content_codec import ContentCodec
from notevault.storage.repository_index import RepositoryIndex
from notevault.storage.version_store import VersionStore

# Key derivation is deliberately slow; tests use the minimum allowed cost
FAST_KDF_ITERATIONS = 1000


@pytest.fixture
def temp_dir():
    """Create a temporary directory holding the repository root and logs."""
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def test_config(temp_dir, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "root_dir", temp_dir / "vault")
    monkeypatch.setattr(config, "log_dir", temp_dir / "logs")
    monkeypatch.setattr(config, "kdf_iterations", FAST_KDF_ITERATIONS)
    monkeypatch.setattr(config, "version_retention", "discard")
    yield config


@pytest.fixture
def codec(test_config):
    return ContentCodec(iterations=FAST_KDF_ITERATIONS)


@pytest.fixture
def version_store(test_config):
    """An in-memory version store."""
    store = VersionStore(db_url="sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def repository_index(test_config):
    """A repository index over an empty temporary root."""
    index = RepositoryIndex(root_dir=test_config.root_dir)
    yield index
    index.close()


@pytest.fixture
def vault_service(repository_index):
    service = VaultService(index=repository_index)
    yield service


@pytest.fixture
def reopen(test_config):
    """Open a fresh index over the test root, as a restarted process would."""
    opened = []

    def _reopen() -> RepositoryIndex:
        index = RepositoryIndex(root_dir=test_config.root_dir)
        opened.append(index)
        return index

    yield _reopen
    for index in opened:
        index.close()


@pytest.fixture
def clean_logger():
    """Detach any handlers configure_logging adds to the package logger."""
    package_logger = logging.getLogger("notevault")
    before = list(package_logger.handlers)
    level = package_logger.level
    yield package_logger
    for handler in package_logger.handlers:
        if handler not in before:
            handler.close()
    package_logger.handlers = before
    package_logger.setLevel(level)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


def _snapshot(index: RepositoryIndex):
    return [
        (
            folder.id,
            folder.name,
            [
                (
                    note.id,
                    note.title,
                    note.body,
                    sorted(note.tag_ids),
                    note.favorite,
                    note.encrypted,
                    note.ciphertext,
                    note.updated_at,
                )
                for note in folder.notes.values()
            ],
        )
        for folder in index.folders()
    ]


@pytest.fixture
def snapshot():
    """Comparable view of everything an index knows about folders and notes."""
    return _snapshot
