"""
Session Store and result persistence.

Turn-boundary persistence for health-check checkpoints, topic state and
call sessions, plus the audit writer used by Finalize.

Session Store contract (all implementations):
    get(key) -> value | None
    set(key, value, ttl_seconds)
    delete(key)

Values are JSON-safe (dicts, lists, strings, numbers). Expired entries
behave exactly like missing ones.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from carecall.utils.helpers import (
    call_session_key,
    generate_results_filename,
    phone_key,
    user_key,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600

CALL_TYPE_GENERAL = "general"
CALL_TYPE_HEALTH_CHECK = "health_check"
VALID_CALL_TYPES = {CALL_TYPE_GENERAL, CALL_TYPE_HEALTH_CHECK}


class SessionStoreError(Exception):
    """Raised when a stored payload cannot be decoded"""
    pass


class InMemorySessionStore:
    """
    Process-local Session Store with TTL.

    Used by tests and the console harness. Values are stored as JSON text
    so callers never share references with the store.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry['expires_at'] is not None and entry['expires_at'] <= self._clock():
            logger.debug(f"Session key expired: {key}")
            del self._entries[key]
            return None
        return json.loads(entry['value'])

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = DEFAULT_TTL_SECONDS) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._entries[key] = {'value': json.dumps(value), 'expires_at': expires_at}

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def keys(self) -> List[str]:
        """Live (non-expired) keys"""
        return [k for k in list(self._entries) if self.get(k) is not None]


class JsonFileSessionStore:
    """
    Session Store backed by one JSON file per key.

    Layout:
        outputs/sessions/
            health_check%3Au-1%3Ac-9.json   {"value": ..., "expires_at": 1730000000.0}
            session%3Ac-9.json

    Design:
    - Overwrite on set (last writer wins)
    - Expired files are removed lazily on read
    - Corrupt files raise SessionStoreError (callers treat as missing)
    """

    def __init__(self, base_dir: str = "outputs/sessions",
                 clock: Callable[[], float] = time.time):
        """
        Args:
            base_dir: Directory for session files (created if missing)
            clock: Seconds-since-epoch source (injectable for tests)
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        logger.info(f"JsonFileSessionStore initialized: {self.base_dir}")

    def _path_for(self, key: str) -> Path:
        return self.base_dir / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> Optional[Any]:
        """
        Raises:
            SessionStoreError: If the stored file is not valid JSON
        """
        filepath = self._path_for(key)
        if not filepath.exists():
            return None

        try:
            with open(filepath, 'r') as f:
                entry = json.load(f)
        except json.JSONDecodeError as e:
            raise SessionStoreError(f"Corrupt session file for {key}: {e}") from e

        expires_at = entry.get('expires_at')
        if expires_at is not None and expires_at <= self._clock():
            logger.debug(f"Session key expired: {key}")
            filepath.unlink(missing_ok=True)
            return None
        return entry.get('value')

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = DEFAULT_TTL_SECONDS) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with open(self._path_for(key), 'w') as f:
            json.dump({'value': value, 'expires_at': expires_at}, f, indent=2, ensure_ascii=False)

    def delete(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)


def register_call(store, conversation_id: str, user_id: str, phone: Optional[str] = None,
                  call_type: str = CALL_TYPE_GENERAL,
                  ttl_seconds: int = DEFAULT_TTL_SECONDS) -> Dict[str, Any]:
    """
    Register a call session and its lookup mappings.

    Writes:
        session:<conversationId>  -> call session record
        rag:user:<userId>         -> {'conversationId': ...}
        rag:phone:<digits>        -> {'conversationId': ...} (when phone given)

    Returns:
        dict: The call session record

    Raises:
        ValueError: If call_type is unknown, ids are empty, or user_id
            contains ":" (it delimits checkpoint keys)
    """
    if call_type not in VALID_CALL_TYPES:
        raise ValueError(f"Unknown call type: {call_type}")
    if not conversation_id or not user_id:
        raise ValueError("conversation_id and user_id are required")
    if ":" in user_id:
        raise ValueError(f"user_id must not contain ':': {user_id!r}")

    record = {
        'conversationId': conversation_id,
        'userId': user_id,
        'callType': call_type,
        'phone': phone,
        'healthCheckCompleted': False,
        'endCallDetected': False,
        'createdAt': utc_now_iso(),
    }
    store.set(call_session_key(conversation_id), record, ttl_seconds)
    store.set(user_key(user_id), {'conversationId': conversation_id}, ttl_seconds)
    if phone:
        store.set(phone_key(phone), {'conversationId': conversation_id}, ttl_seconds)

    logger.info(f"Registered call {conversation_id} for user {user_id} (callType={call_type})")
    return record


class HealthCheckResultWriter:
    """
    Persists finalized health-check results as JSON files.

    Layout:
        outputs/health_checks/<userId>/health_check_20251126_153045_a3f7e2b9.json

    Design:
    - Append-only (one new file per completed health check)
    - Failures raise; Finalize decides what the user hears
    """

    def __init__(self, base_dir: str = "outputs/health_checks"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"HealthCheckResultWriter initialized: {self.base_dir}")

    def persist_health_check_results(self, user_id: str, conversation_id: str,
                                     parsed_answers: Dict[str, Any],
                                     answers: Optional[List[Dict[str, Any]]] = None) -> str:
        """
        Write parsed records (and the raw answer audit) to a new file.

        Returns:
            str: Absolute path to saved file

        Raises:
            FileExistsError: If the generated filename already exists
            OSError: If the file cannot be written
        """
        user_dir = self.base_dir / user_id
        user_dir.mkdir(exist_ok=True)

        filepath = user_dir / generate_results_filename()
        if filepath.exists():
            raise FileExistsError(f"Results file already exists: {filepath}")

        payload = {
            'user_id': user_id,
            'conversation_id': conversation_id,
            'completed_at': utc_now_iso(),
            'parsed': parsed_answers,
            'answers': answers or [],
        }
        with open(filepath, 'w') as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)

        abs_path = str(filepath.absolute())
        logger.info(f"Saved health check results for {user_id}/{conversation_id}: {filepath.name}")
        return abs_path
