"""
Topic Tracker - Running topic centroid, topic-change detection and fatigue

Responsibilities:
- Detect topic changes (cosine similarity vs. a length-aware threshold)
- Maintain the topic centroid as an exact incremental mean
- Score topic fatigue from the message count in the current topic
- Decide when cached memory highlights have drifted from the topic
- Load/save TopicState on the Session Store (rag:topic:<conversationId>)

Design principles:
- Pure vector math on plain lists (embeddings are small and per-turn)
- TopicState is a value: update methods return a new state
- No decay: every message in a topic weighs the same in the centroid
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from carecall.persistence import DEFAULT_TTL_SECONDS, SessionStoreError
from carecall.utils.helpers import topic_key, utc_now_iso
from carecall.utils.intent_classifier import similarity_threshold

logger = logging.getLogger(__name__)

CACHE_DRIFT_THRESHOLD = 0.88
FATIGUE_SATURATION_MESSAGES = 15
FATIGUE_EXPONENT = 1.8


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors (0.0 if either is zero).

    Raises:
        ValueError: If the vectors differ in length
    """
    if len(a) != len(b):
        raise ValueError(f"Vectors must have the same length ({len(a)} != {len(b)})")

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def incremental_mean(centroid: Sequence[float], vector: Sequence[float], n: int) -> List[float]:
    """
    centroid' = (centroid * (n - 1) + vector) / n, n = post-increment count

    Examples:
        >>> incremental_mean([1.0, 0.0], [0.0, 1.0], 2)
        [0.5, 0.5]
    """
    if n < 1:
        raise ValueError("n must be >= 1")
    return [(c * (n - 1) + v) / n for c, v in zip(centroid, vector)]


def fatigue_score(message_count: int) -> float:
    """
    min(1, (count / 15) ** 1.8)

    Examples:
        >>> fatigue_score(0)
        0.0
        >>> fatigue_score(15)
        1.0
    """
    if message_count <= 0:
        return 0.0
    return min(1.0, (message_count / FATIGUE_SATURATION_MESSAGES) ** FATIGUE_EXPONENT)


@dataclass(frozen=True)
class TopicState:
    """
    Per-conversation topic state (overwritten every turn).

    Attributes:
        current_vector: Embedding of the latest embedded message
        centroid: Running mean of the current topic's embeddings
        cached_highlights: Memory snippets served from cache
        cache_anchor: Centroid snapshot at last cache refresh
        message_count: Embedded messages in the current topic
        topic_started_at: ISO timestamp of the current topic's first message
        last_similarity: Similarity computed on the latest turn
        fatigue: Fatigue score after the latest CheckFatigue
    """
    current_vector: Optional[Tuple[float, ...]] = None
    centroid: Optional[Tuple[float, ...]] = None
    cached_highlights: Tuple[str, ...] = ()
    cache_anchor: Optional[Tuple[float, ...]] = None
    message_count: int = 0
    topic_started_at: Optional[str] = None
    last_similarity: Optional[float] = None
    fatigue: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'current_vector': list(self.current_vector) if self.current_vector is not None else None,
            'centroid': list(self.centroid) if self.centroid is not None else None,
            'cached_highlights': list(self.cached_highlights),
            'cache_anchor': list(self.cache_anchor) if self.cache_anchor is not None else None,
            'message_count': self.message_count,
            'topic_started_at': self.topic_started_at,
            'last_similarity': self.last_similarity,
            'fatigue': self.fatigue,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "TopicState":
        def vec(value):
            return tuple(float(x) for x in value) if value is not None else None

        return TopicState(
            current_vector=vec(data.get('current_vector')),
            centroid=vec(data.get('centroid')),
            cached_highlights=tuple(data.get('cached_highlights', [])),
            cache_anchor=vec(data.get('cache_anchor')),
            message_count=int(data.get('message_count', 0)),
            topic_started_at=data.get('topic_started_at'),
            last_similarity=data.get('last_similarity'),
            fatigue=float(data.get('fatigue', 0.0)),
        )


class TopicTracker:
    """Topic-change detection and centroid bookkeeping for one store"""

    def __init__(self, store,
                 threshold_fn: Callable[[int], float] = similarity_threshold,
                 drift_threshold: float = CACHE_DRIFT_THRESHOLD,
                 ttl_seconds: int = DEFAULT_TTL_SECONDS):
        """
        Args:
            store: Session Store (get/set/delete)
            threshold_fn: message length (words) -> similarity threshold
            drift_threshold: Anchor/centroid similarity below which the cache is stale
            ttl_seconds: Topic state lifetime

        Raises:
            TypeError: If threshold_fn is not callable
        """
        if not callable(threshold_fn):
            raise TypeError("threshold_fn must be callable")
        self.store = store
        self.threshold_fn = threshold_fn
        self.drift_threshold = drift_threshold
        self.ttl_seconds = ttl_seconds

    # ========================
    # Persistence
    # ========================

    def load(self, conversation_id: str) -> TopicState:
        """Stored state, or a fresh TopicState if missing/corrupt"""
        try:
            data = self.store.get(topic_key(conversation_id))
        except SessionStoreError as e:
            logger.error(f"Topic state read failed for {conversation_id}: {e}")
            return TopicState()

        if data is None:
            return TopicState()
        try:
            return TopicState.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.error(f"Discarding corrupt topic state for {conversation_id}: {e}")
            return TopicState()

    def save(self, conversation_id: str, state: TopicState) -> None:
        self.store.set(topic_key(conversation_id), state.to_dict(), self.ttl_seconds)

    def clear(self, conversation_id: str) -> None:
        self.store.delete(topic_key(conversation_id))
        logger.info(f"Cleared topic state for {conversation_id}")

    # ========================
    # Pure operations
    # ========================

    def detect_topic_change(self, state: TopicState, vector: Sequence[float],
                            message_length: int) -> Tuple[bool, Optional[float]]:
        """
        Compare a new embedding with the topic centroid.

        Returns:
            tuple: (changed, similarity). No centroid means a new topic
            (changed=True, similarity=None).
        """
        if state.centroid is None:
            logger.debug("No topic centroid yet: treating as new topic")
            return True, None

        similarity = cosine_similarity(state.centroid, vector)
        threshold = self.threshold_fn(message_length)
        changed = similarity < threshold
        logger.debug(f"Topic similarity={similarity:.3f}, threshold={threshold:.2f}, changed={changed}")
        return changed, similarity

    def update(self, state: TopicState, vector: Sequence[float], changed: bool,
               similarity: Optional[float] = None) -> TopicState:
        """
        Fold a new embedding into the topic.

        On topic change the centroid resets to the vector and the count to 1;
        otherwise the centroid becomes the running mean over count + 1 messages.
        """
        vector = tuple(float(x) for x in vector)
        if changed or state.centroid is None:
            logger.info(f"Topic change (previous topic had {state.message_count} messages)")
            return replace(
                state,
                current_vector=vector,
                centroid=vector,
                message_count=1,
                topic_started_at=utc_now_iso(),
                last_similarity=similarity,
            )

        count = state.message_count + 1
        return replace(
            state,
            current_vector=vector,
            centroid=tuple(incremental_mean(state.centroid, vector, count)),
            message_count=count,
            last_similarity=similarity,
        )

    def fatigue(self, state: TopicState) -> float:
        return fatigue_score(state.message_count)

    def with_fatigue(self, state: TopicState) -> TopicState:
        return replace(state, fatigue=self.fatigue(state))

    def cache_drifted(self, state: TopicState) -> bool:
        """
        True when the cache anchor no longer represents the topic.

        Stale iff similarity(anchor, centroid) < drift_threshold. A missing
        anchor or centroid counts as stale.
        """
        if state.cache_anchor is None or state.centroid is None:
            return True
        try:
            similarity = cosine_similarity(state.cache_anchor, state.centroid)
        except ValueError as e:
            logger.warning(f"Cache anchor incompatible with centroid: {e}")
            return True
        # Rounded so a similarity of exactly the threshold is not stale
        return round(similarity, 9) < self.drift_threshold

    def refresh_cache(self, state: TopicState, highlights: Sequence[str]) -> TopicState:
        """Store highlights and snapshot the current centroid as anchor"""
        return replace(
            state,
            cached_highlights=tuple(highlights),
            cache_anchor=state.centroid,
        )
