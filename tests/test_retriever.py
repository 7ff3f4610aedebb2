"""Tests for ragwatch.retriever."""

from unittest import mock

import numpy as np
import pytest
from conftest import make_store

from ragwatch.chunker import build_file_header
from ragwatch.retriever import ContentRetriever
from ragwatch.vectorstore import SearchHit


class TestContentRetriever:
    @pytest.mark.asyncio
    async def test_embeds_query_and_searches_top_k(self):
        store = mock.MagicMock()
        vector = np.ones(4, dtype=np.float32)
        hits = [SearchHit("a.py", "chunk", 0.1)]
        store.embed = mock.AsyncMock(return_value=vector)
        store.similarity_search = mock.AsyncMock(return_value=hits)

        retriever = ContentRetriever(store, top_k=3)
        assert await retriever.retrieve("how do I add?") == hits
        store.embed.assert_awaited_once_with("how do I add?")
        store.similarity_search.assert_awaited_once_with(vector, 3)

    @pytest.mark.asyncio
    async def test_blank_query_skips_backend(self):
        store = mock.MagicMock()
        store.embed = mock.AsyncMock()
        assert await ContentRetriever(store).retrieve("   ") == []
        store.embed.assert_not_awaited()

    def test_default_top_k(self):
        assert ContentRetriever(mock.MagicMock()).top_k == 6

    @pytest.mark.asyncio
    async def test_against_real_index(self, tmp_path, project):
        async with make_store(tmp_path) as store:
            await store.index_project(project)
            query = build_file_header("src/math_utils.py") + (
                project / "src" / "math_utils.py"
            ).read_text()
            texts = await ContentRetriever(store, top_k=2).retrieve_text(query)
        assert len(texts) == 2
        assert texts[0].startswith("FILE: src/math_utils.py")
