"""Shared test doubles."""

import asyncio
import hashlib
import re

import numpy as np
import pytest

from ragwatch.config import StoreSettings
from ragwatch.errors import ConfigurationError, TransientBackendError
from ragwatch.filters import IndexingConfig
from ragwatch.vectorstore import VectorStore


class FakeEmbedder:
    """Deterministic bag-of-words embedder.

    Each word is hashed into one of ``dim`` buckets, so identical texts get
    identical vectors and texts sharing words are close under cosine.
    """

    def __init__(self, dim=64, fail_on=None, config_error=False, delay=0.0):
        self.dim = dim
        self.fail_on = set(fail_on or ())
        self.config_error = config_error
        self.delay = delay
        self.calls = []

    def vector(self, text):
        vec = np.full(self.dim, 0.01, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dim
            vec[bucket] += 1.0
        return vec

    async def embed(self, text):
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.config_error:
            raise ConfigurationError("Ollama not reachable at http://localhost:11434")
        if any(token in text for token in self.fail_on):
            raise TransientBackendError("backend timed out")
        return self.vector(text)


def make_store(tmp_path, embedder=None, project_id="demo", indexing=None, **settings):
    settings.setdefault("max_chars", 200)
    settings.setdefault("overlap", 20)
    return VectorStore(
        project_id,
        embedder or FakeEmbedder(),
        db_path=tmp_path / "index.db",
        base_table="test_embeddings",
        indexing=indexing or IndexingConfig(),
        settings=StoreSettings(**settings),
    )


@pytest.fixture
def project(tmp_path):
    """A small Python project to index."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "main.py").write_text("def main():\n    print('hello world')\n")
    (root / "README.md").write_text("# Demo\nA tiny demo project about penguins.\n")
    src = root / "src"
    src.mkdir()
    (src / "math_utils.py").write_text("def add(a, b):\n    return a + b\n")
    return root
