"""
Utility helpers for the check-in call engine

Simple utility functions for Session Store keys, ids, timestamps and filenames.
"""

import re
import uuid
from datetime import datetime, timezone

HEALTH_CHECK_KEY_PREFIX = "health_check"
TOPIC_KEY_PREFIX = "rag:topic"
USER_KEY_PREFIX = "rag:user"
PHONE_KEY_PREFIX = "rag:phone"
CALL_SESSION_KEY_PREFIX = "session"


def health_check_key(user_id, conversation_id):
    """
    Checkpoint key for a health check (also its Session Store key)

    Examples:
        >>> health_check_key('u-1', 'c-9')
        'health_check:u-1:c-9'
    """
    return f"{HEALTH_CHECK_KEY_PREFIX}:{user_id}:{conversation_id}"


def parse_health_check_key(key):
    """
    Split a checkpoint key back into (user_id, conversation_id)

    User ids never contain ":"; everything after the user id is the
    conversation id.

    Returns:
        tuple or None: None if key is not a health check key
    """
    if not isinstance(key, str):
        return None
    parts = key.split(":", 2)
    if len(parts) != 3 or parts[0] != HEALTH_CHECK_KEY_PREFIX or not parts[1] or not parts[2]:
        return None
    return parts[1], parts[2]


def topic_key(conversation_id):
    return f"{TOPIC_KEY_PREFIX}:{conversation_id}"


def user_key(user_id):
    return f"{USER_KEY_PREFIX}:{user_id}"


def phone_key(phone):
    return f"{PHONE_KEY_PREFIX}:{normalize_phone(phone)}"


def call_session_key(conversation_id):
    return f"{CALL_SESSION_KEY_PREFIX}:{conversation_id}"


def normalize_phone(phone):
    """
    Strip spaces, dashes and parentheses from a phone number

    Examples:
        >>> normalize_phone('+1 (555) 010-2030')
        '+15550102030'
    """
    return re.sub(r"[\s\-()]", "", phone or "")


def generate_conversation_id(short=True):
    """
    Generate unique conversation identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID.

    Examples:
        >>> generate_conversation_id()
        'a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def utc_now_iso():
    """Current UTC time as ISO-8601 string"""
    return datetime.now(timezone.utc).isoformat()


def generate_results_filename(prefix="health_check", extension="json"):
    """
    Generate timestamped filename with unique ID

    Format: {prefix}_{YYYYMMDD_HHMMSS}_{short_uuid}.{extension}

    Examples:
        >>> generate_results_filename()
        'health_check_20251126_153045_a3f7e2b9.json'
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    short_id = generate_conversation_id(short=True)
    return f"{prefix}_{timestamp}_{short_id}.{extension}"
