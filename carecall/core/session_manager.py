"""
Health-check session manager - load/save/delete checkpoints on the Session Store

Responsibilities:
- Map (user_id, conversation_id) to the checkpoint key
- Create fresh sessions from a question list
- Save snapshots with TTL (abandonment is implicit via expiry)
- Treat corrupt or expired snapshots as missing
"""

import logging
from typing import List, Optional

from carecall.contracts import Question
from carecall.core.health_check_session import HealthCheckSession
from carecall.persistence import DEFAULT_TTL_SECONDS, SessionStoreError
from carecall.utils.helpers import health_check_key, parse_health_check_key

logger = logging.getLogger(__name__)


class HealthCheckSessionManager:
    """Thin adapter between HealthCheckSession and a Session Store"""

    def __init__(self, store, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        """
        Args:
            store: Session Store (get/set/delete)
            ttl_seconds: Checkpoint lifetime

        Raises:
            TypeError: If store is missing get/set/delete
            ValueError: If ttl_seconds is not positive
        """
        for method in ('get', 'set', 'delete'):
            if not callable(getattr(store, method, None)):
                raise TypeError(f"store must have callable {method}() method")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        self.store = store
        self.ttl_seconds = ttl_seconds

    def create(self, user_id: str, conversation_id: str,
               questions: List[Question]) -> HealthCheckSession:
        """New session (not yet saved)"""
        session = HealthCheckSession(
            user_id=user_id,
            conversation_id=conversation_id,
            questions=list(questions),
        )
        logger.info(f"Created health check session for {user_id}/{conversation_id} "
                    f"({len(questions)} questions)")
        return session

    def load(self, user_id: str, conversation_id: str) -> Optional[HealthCheckSession]:
        return self.load_by_key(health_check_key(user_id, conversation_id))

    def load_by_key(self, key: str) -> Optional[HealthCheckSession]:
        """
        Load a session by checkpoint key.

        Returns:
            HealthCheckSession, or None if missing, expired, corrupt or
            the key is malformed
        """
        if parse_health_check_key(key) is None:
            logger.warning(f"Malformed health check key: {key!r}")
            return None

        try:
            snapshot = self.store.get(key)
        except SessionStoreError as e:
            logger.error(f"Session store read failed for {key}: {e}")
            return None

        if snapshot is None:
            return None

        try:
            return HealthCheckSession.from_snapshot(snapshot)
        except (ValueError, TypeError) as e:
            logger.error(f"Discarding corrupt health check snapshot {key}: {e}")
            return None

    def save(self, session: HealthCheckSession) -> str:
        """
        Persist snapshot with TTL.

        Returns:
            str: Checkpoint key
        """
        key = health_check_key(session.user_id, session.conversation_id)
        session.touch()
        self.store.set(key, session.to_snapshot(), self.ttl_seconds)
        logger.debug(f"Saved checkpoint {key} (index={session.current_question_index}, "
                     f"attempts={session.question_attempts}, step={session.step.value})")
        return key

    def delete(self, user_id: str, conversation_id: str) -> None:
        key = health_check_key(user_id, conversation_id)
        self.store.delete(key)
        logger.info(f"Deleted checkpoint {key}")

    def exists(self, user_id: str, conversation_id: str) -> bool:
        return self.load(user_id, conversation_id) is not None
