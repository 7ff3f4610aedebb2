"""Query path: fetch the indexed chunks most relevant to a prompt."""

from __future__ import annotations

import logging

from ragwatch.vectorstore import SearchHit, VectorStore

logger = logging.getLogger(__name__)


class ContentRetriever:
    """Embeds a query and returns the nearest chunks from a project's index."""

    def __init__(self, store: VectorStore, top_k: int = 6) -> None:
        self.store = store
        self.top_k = top_k

    async def retrieve(self, query: str) -> list[SearchHit]:
        """Return up to ``top_k`` hits for *query*, closest first.

        Args:
            query: Natural language query or code snippet

        Returns:
            List of SearchHit objects; empty for a blank query or empty index
        """
        if not query.strip() or self.top_k <= 0:
            return []
        vector = await self.store.embed(query)
        hits = await self.store.similarity_search(vector, self.top_k)
        logger.debug("Retrieved %d chunks for query (%d chars)", len(hits), len(query))
        return hits

    async def retrieve_text(self, query: str) -> list[str]:
        return [hit.chunk_text for hit in await self.retrieve(query)]
