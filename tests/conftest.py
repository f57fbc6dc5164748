# tests/conftest.py
"""
Pytest configuration and shared fixtures for ConvoRecall tests.
"""

import hashlib
import re
import shutil
import tempfile
from typing import Any, Dict, List

import pytest

from convo_recall.database import DatabaseManager
from convo_recall.vectors import EmbeddingUnavailableError

FAKE_DIMENSIONS = 64


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test."
    )


class FakeEmbedder:
    """
    Deterministic bag-of-words embedder.

    Each word is hashed into one of FAKE_DIMENSIONS buckets, so texts that
    share words have positive cosine similarity and identical texts have 1.0.
    """

    def __init__(self, available: bool = True, fail: bool = False):
        self.available = available
        self.fail = fail
        self.calls = 0

    def is_available(self) -> bool:
        return self.available

    def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.fail or not self.available:
            raise EmbeddingUnavailableError("fake embedder failure")
        vector = [0.0] * FAKE_DIMENSIONS
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % FAKE_DIMENSIONS
            vector[bucket] += 1.0
        return vector

    def embed_batch(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        return [self.embed(t) for t in texts]

    def model_info(self) -> Dict[str, Any]:
        return {"provider": "fake", "model": "fake-bow", "dimensions": FAKE_DIMENSIONS}


@pytest.fixture
def temp_storage():
    """Create a temporary storage directory."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
async def db_manager(temp_storage):
    """Create a database manager with temporary storage."""
    db = DatabaseManager(temp_storage)
    await db.init_db()
    yield db
    await db.close()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()
