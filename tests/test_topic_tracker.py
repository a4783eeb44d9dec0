"""
Test Topic Tracker - centroid, topic change, fatigue and cache drift

Run with: pytest tests/test_topic_tracker.py
"""

import sys
import os
import math
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from carecall.core.topic_tracker import (
    TopicState,
    TopicTracker,
    cosine_similarity,
    fatigue_score,
    incremental_mean,
)
from carecall.persistence import InMemorySessionStore


def _tracker(**kwargs):
    return TopicTracker(InMemorySessionStore(), **kwargs)


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 1]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1, 0], [1, 0, 0])


def test_incremental_mean_equals_arithmetic_mean():
    """Centroid after n same-topic messages is the plain mean of all n"""
    vectors = [[1.0, 2.0, 0.0], [0.5, 1.5, 0.2], [0.9, 2.2, 0.1], [1.1, 1.8, 0.05]]
    tracker = _tracker(threshold_fn=lambda n: -1.0)   # never a topic change

    state = TopicState()
    for vector in vectors:
        changed, similarity = tracker.detect_topic_change(state, vector, 8)
        state = tracker.update(state, vector, changed, similarity)

    expected = [sum(col) / len(vectors) for col in zip(*vectors)]
    assert state.message_count == 4
    for got, want in zip(state.centroid, expected):
        assert got == pytest.approx(want)

    assert incremental_mean([1.0, 0.0], [0.0, 1.0], 2) == [0.5, 0.5]
    print("✓ Incremental mean test passed")


def test_first_message_starts_topic():
    tracker = _tracker()
    changed, similarity = tracker.detect_topic_change(TopicState(), [1.0, 0.0], 6)
    assert changed is True
    assert similarity is None

    state = tracker.update(TopicState(), [1.0, 0.0], changed, similarity)
    assert state.centroid == (1.0, 0.0)
    assert state.message_count == 1
    assert state.topic_started_at is not None


def test_topic_change_resets_centroid_and_count():
    tracker = _tracker()
    state = TopicState(centroid=(1.0, 0.0), message_count=6)

    changed, similarity = tracker.detect_topic_change(state, [0.0, 1.0], 8)
    assert changed
    assert similarity == pytest.approx(0.0)

    state = tracker.update(state, [0.0, 1.0], changed, similarity)
    assert state.centroid == (0.0, 1.0)
    assert state.message_count == 1


def test_threshold_depends_on_message_length():
    """0.62 similarity is the same topic for short messages, a change for long ones"""
    angle = math.acos(0.62)
    vector = [math.cos(angle), math.sin(angle)]
    state = TopicState(centroid=(1.0, 0.0), message_count=2)
    tracker = _tracker()

    assert tracker.detect_topic_change(state, vector, 6)[0] is False     # threshold 0.60
    assert tracker.detect_topic_change(state, vector, 12)[0] is True     # threshold 0.65
    assert tracker.detect_topic_change(state, vector, 20)[0] is True     # threshold 0.70


def test_fatigue_score():
    assert fatigue_score(0) == 0.0
    assert fatigue_score(1) < 0.01
    assert fatigue_score(15) == 1.0
    assert fatigue_score(40) == 1.0
    assert fatigue_score(5) < fatigue_score(10) < fatigue_score(14)


def test_cache_drift_boundary():
    """Stale iff similarity(anchor, centroid) < 0.88"""
    tracker = _tracker()

    def at(similarity):
        angle = math.acos(similarity)
        return (math.cos(angle), math.sin(angle))

    exactly = TopicState(centroid=at(0.88), cache_anchor=(1.0, 0.0), cached_highlights=("x",))
    below = TopicState(centroid=at(0.8799), cache_anchor=(1.0, 0.0), cached_highlights=("x",))
    above = TopicState(centroid=at(0.95), cache_anchor=(1.0, 0.0), cached_highlights=("x",))

    assert tracker.cache_drifted(exactly) is False
    assert tracker.cache_drifted(below) is True
    assert tracker.cache_drifted(above) is False
    assert tracker.cache_drifted(TopicState(centroid=(1.0, 0.0))) is True

    print("✓ Cache drift boundary test passed")


def test_refresh_cache_anchors_current_centroid():
    tracker = _tracker()
    state = TopicState(centroid=(0.3, 0.7), message_count=3)
    refreshed = tracker.refresh_cache(state, ["likes jazz"])
    assert refreshed.cached_highlights == ("likes jazz",)
    assert refreshed.cache_anchor == (0.3, 0.7)
    assert tracker.cache_drifted(refreshed) is False


def test_save_load_clear():
    store = InMemorySessionStore()
    tracker = TopicTracker(store)
    state = tracker.with_fatigue(TopicState(centroid=(0.1, 0.2), message_count=9,
                                            cached_highlights=("a", "b"), cache_anchor=(0.1, 0.2)))
    tracker.save("c-1", state)

    assert store.get("rag:topic:c-1")['message_count'] == 9
    loaded = tracker.load("c-1")
    assert loaded == state
    assert loaded.fatigue == pytest.approx(fatigue_score(9))

    tracker.clear("c-1")
    assert tracker.load("c-1") == TopicState()


def test_corrupt_topic_state_is_fresh():
    store = InMemorySessionStore()
    store.set("rag:topic:c-1", {'centroid': ['not', 'numbers']})
    assert TopicTracker(store).load("c-1") == TopicState()
