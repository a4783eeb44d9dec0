"""
Memory Retriever - Top-k memory highlights for a user

Wraps the external memory store. Store contract:
    search(user_id, query_vector, limit) -> [{'highlight': str, 'similarity': float}, ...]

Only hits with similarity above RELEVANCE_THRESHOLD are kept. Store
failures yield no memories (the reply is still generated).
"""

import logging
from typing import Dict, List, Sequence

from carecall.contracts import RetrievedMemories
from carecall.core.topic_tracker import cosine_similarity

logger = logging.getLogger(__name__)

RELEVANCE_THRESHOLD = 0.7
DEFAULT_LIMIT = 5


class MemoryRetriever:
    """Relevance-filtered view over a memory store"""

    def __init__(self, memory_store, relevance_threshold: float = RELEVANCE_THRESHOLD):
        """
        Raises:
            TypeError: If memory_store lacks search()
        """
        if not callable(getattr(memory_store, 'search', None)):
            raise TypeError("memory_store must have callable search() method")
        self.memory_store = memory_store
        self.relevance_threshold = relevance_threshold

    def retrieve_memories(self, user_id: str, query_vector: Sequence[float],
                          limit: int = DEFAULT_LIMIT) -> RetrievedMemories:
        try:
            hits = self.memory_store.search(user_id, list(query_vector), limit)
        except Exception as e:
            logger.error(f"Memory search failed for user {user_id}: {type(e).__name__}: {e}")
            return RetrievedMemories()

        relevant = [h for h in hits if h.get('similarity', 0.0) > self.relevance_threshold][:limit]
        logger.info(f"Retrieved {len(relevant)}/{len(hits)} relevant memories for user {user_id}")
        return RetrievedMemories(
            highlights=tuple(h['highlight'] for h in relevant),
            scores=tuple(h['similarity'] for h in relevant),
        )


class InMemoryMemoryStore:
    """
    Brute-force cosine search over per-user highlights.

    Used by the console harness and tests; production deployments point
    MemoryRetriever at a vector database exposing the same search().
    """

    def __init__(self, embedder=None):
        """
        Args:
            embedder: Optional object with embed(text); needed only for add_text()
        """
        self.embedder = embedder
        self._memories: Dict[str, List[Dict]] = {}

    def add(self, user_id: str, highlight: str, vector: Sequence[float]) -> None:
        self._memories.setdefault(user_id, []).append(
            {'highlight': highlight, 'vector': list(vector)}
        )

    def add_text(self, user_id: str, highlight: str) -> None:
        if self.embedder is None:
            raise RuntimeError("add_text() requires an embedder")
        self.add(user_id, highlight, self.embedder.embed(highlight))

    def search(self, user_id: str, query_vector: Sequence[float],
               limit: int = DEFAULT_LIMIT) -> List[Dict]:
        scored = [
            {'highlight': m['highlight'], 'similarity': cosine_similarity(m['vector'], query_vector)}
            for m in self._memories.get(user_id, [])
        ]
        scored.sort(key=lambda h: h['similarity'], reverse=True)
        return scored[:limit]

    def load_json(self, data: Dict[str, List[str]]) -> int:
        """Embed and add {'<userId>': ['highlight', ...]}; returns count added"""
        count = 0
        for user_id, highlights in data.items():
            for highlight in highlights:
                self.add_text(user_id, highlight)
                count += 1
        return count
