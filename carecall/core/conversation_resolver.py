"""
Conversation Resolver - maps an inbound request to a call session

Resolution order (first hit wins):
    1. Explicit conversation id on the request
    2. Explicit user id -> rag:user:<userId>
    3. "user ID: <id>" in the system message -> rag:user:<userId>
    4. "phone: <number>" in the system message -> rag:phone:<digits>

The conversation id is then looked up at session:<conversationId>.
No identity, or no call session behind it, resolves to None and the
Supervisor falls through to the unrouted reply path.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from carecall.commands import ChatRequest
from carecall.persistence import CALL_TYPE_GENERAL, SessionStoreError
from carecall.utils.helpers import call_session_key, phone_key, user_key

logger = logging.getLogger(__name__)

USER_ID_PATTERN = re.compile(r'user\s*ID[:\s]+([a-f0-9\-]+)', re.IGNORECASE)
PHONE_PATTERN = re.compile(r'phone[:\s]+(\+?[\d\s\-()]+)', re.IGNORECASE)


@dataclass(frozen=True)
class ResolvedCall:
    """
    Call session behind a request.

    Attributes:
        conversation_id: Conversation identifier
        user_id: User identifier
        call_type: 'general' | 'health_check'
        session: Raw call session record (session:<conversationId>)
        source: Which resolution step matched
    """
    conversation_id: str
    user_id: str
    call_type: str
    session: Dict[str, Any]
    source: str


class ConversationResolver:
    """Resolves requests against the Session Store"""

    def __init__(self, store):
        if not callable(getattr(store, 'get', None)):
            raise TypeError("store must have callable get() method")
        self.store = store

    def resolve(self, request: ChatRequest) -> Optional[ResolvedCall]:
        conversation_id, source = self._resolve_conversation_id(request)
        if conversation_id is None:
            logger.warning("No conversation identity in request")
            return None

        session = self._get(call_session_key(conversation_id))
        if not isinstance(session, dict) or not session.get('userId'):
            logger.warning(f"No call session for conversation {conversation_id} (via {source})")
            return None

        resolved = ResolvedCall(
            conversation_id=conversation_id,
            user_id=session['userId'],
            call_type=session.get('callType') or CALL_TYPE_GENERAL,
            session=session,
            source=source,
        )
        logger.info(f"Resolved conversation {conversation_id} via {source} (callType={resolved.call_type})")
        return resolved

    def _resolve_conversation_id(self, request: ChatRequest):
        if request.conversation_id:
            return request.conversation_id, 'conversation_id'

        if request.user_id:
            conversation_id = self._mapped(user_key(request.user_id))
            if conversation_id:
                return conversation_id, 'user_id'

        system = request.system_message
        if system:
            match = USER_ID_PATTERN.search(system)
            if match:
                conversation_id = self._mapped(user_key(match.group(1)))
                if conversation_id:
                    return conversation_id, 'system_user_id'

            match = PHONE_PATTERN.search(system)
            if match:
                conversation_id = self._mapped(phone_key(match.group(1).strip()))
                if conversation_id:
                    return conversation_id, 'system_phone'

        return None, None

    def _mapped(self, key: str) -> Optional[str]:
        mapping = self._get(key)
        if isinstance(mapping, dict):
            return mapping.get('conversationId')
        return None

    def _get(self, key: str):
        try:
            return self.store.get(key)
        except SessionStoreError as e:
            logger.error(f"Unreadable store entry {key}: {e}")
            return None
