"""
Supervisor - routes each inbound turn to one state machine

Responsibilities:
- Resolve the request to a call session (ConversationResolver)
- Dispatch on the stored callType:
    general      -> ConversationMachine.run()
    health_check -> HealthCheckMachine.handle(ResumeHealthCheck(...))
- Keep the call session record in step with the machines
  (endCallDetected latch, callType switch, healthCheckCompleted)
- Answer unresolved requests on the unrouted path

Design principles:
- Exactly one machine advances per turn
- The checkpoint key is derived, never stored by the caller:
  health_check:<userId>:<conversationId>
- Invalid lifecycles (expired checkpoint) become a spoken message, not an error
"""

import logging
from typing import Any, Dict, List, Optional

from carecall.commands import ChatRequest, ResumeHealthCheck
from carecall.core.conversation_resolver import ConversationResolver, ResolvedCall
from carecall.persistence import (
    CALL_TYPE_GENERAL,
    CALL_TYPE_HEALTH_CHECK,
    DEFAULT_TTL_SECONDS,
    SessionStoreError,
)
from carecall.results import IllegalCommand, SupervisorReply, TurnResult
from carecall.utils.helpers import call_session_key, health_check_key, phone_key, user_key
from carecall.utils.prompt_builder import (
    ALREADY_COMPLETED_MESSAGE,
    MISSING_SESSION_MESSAGE,
    UNROUTED_APOLOGY,
)

logger = logging.getLogger(__name__)


class Supervisor:
    """
    Top-level dispatcher.

    All state lives in the Session Store; a Supervisor instance can
    serve any number of calls.
    """

    def __init__(self, store, conversation_machine, health_check_machine, topic_tracker, llm,
                 resolver: Optional[ConversationResolver] = None,
                 ttl_seconds: int = DEFAULT_TTL_SECONDS):
        """
        Args:
            store: Session Store (get/set/delete)
            conversation_machine: ConversationMachine
            health_check_machine: HealthCheckMachine
            topic_tracker: TopicTracker (cleared on end_conversation)
            llm: Object with generate(); used for the unrouted path
            resolver: ConversationResolver (default: one over store)
            ttl_seconds: TTL for rewritten call session records

        Raises:
            TypeError: If a collaborator is missing a required method
        """
        for method in ('get', 'set', 'delete'):
            if not callable(getattr(store, method, None)):
                raise TypeError(f"store must have callable {method}() method")
        if not callable(getattr(conversation_machine, 'run', None)):
            raise TypeError("conversation_machine must have callable run() method")
        if not callable(getattr(health_check_machine, 'handle', None)):
            raise TypeError("health_check_machine must have callable handle() method")
        if not callable(getattr(topic_tracker, 'clear', None)):
            raise TypeError("topic_tracker must have callable clear() method")
        if not callable(getattr(llm, 'generate', None)):
            raise TypeError("llm must have callable generate() method")

        self.store = store
        self.conversation = conversation_machine
        self.health_check = health_check_machine
        self.topic_tracker = topic_tracker
        self.llm = llm
        self.resolver = resolver or ConversationResolver(store)
        self.ttl_seconds = ttl_seconds

        logger.info("Supervisor initialized")

    def handle(self, request: ChatRequest) -> SupervisorReply:
        """
        Process one inbound turn.

        Args:
            request: ChatRequest from the webhook layer

        Returns:
            SupervisorReply
        """
        resolved = self.resolver.resolve(request)
        if resolved is None:
            return self._unrouted(request)

        if resolved.call_type == CALL_TYPE_HEALTH_CHECK:
            return self._route_health_check(request, resolved)
        return self._route_conversation(request, resolved)

    def end_conversation(self, conversation_id: str) -> bool:
        """
        Drop everything stored for a call.

        Deletes topic state, any health-check checkpoint, the user and
        phone mappings that still point at this call, and the call
        session itself.
        An unreadable call session is deleted and treated as missing.

        Returns:
            bool: True if a call session existed
        """
        session = self._get(call_session_key(conversation_id))
        self.topic_tracker.clear(conversation_id)

        if not isinstance(session, dict):
            self.store.delete(call_session_key(conversation_id))
            logger.info(f"end_conversation: no call session for {conversation_id}")
            return False

        user_id = session.get('userId')
        if user_id:
            self.store.delete(health_check_key(user_id, conversation_id))
            self._delete_mapping(user_key(user_id), conversation_id)
        if session.get('phone'):
            self._delete_mapping(phone_key(session['phone']), conversation_id)
        self.store.delete(call_session_key(conversation_id))

        logger.info(f"Conversation {conversation_id} ended")
        return True

    # ========================
    # Routes
    # ========================

    def _route_conversation(self, request: ChatRequest, resolved: ResolvedCall) -> SupervisorReply:
        session = dict(resolved.session)
        result = self.conversation.run(
            resolved.user_id,
            resolved.conversation_id,
            list(request.messages),
            end_call_latched=bool(session.get('endCallDetected')),
            health_check_completed=bool(session.get('healthCheckCompleted')),
            system_prompt=request.system_message or None,
        )

        if result.is_end_call and not session.get('healthCheckCompleted'):
            session['endCallDetected'] = True

        suspended = False
        complete = False
        if result.handed_off and result.health_check is not None:
            logger.info(f"Call {resolved.conversation_id} switched to health check")
            session['callType'] = CALL_TYPE_HEALTH_CHECK
            suspended = result.health_check.suspended
            complete = result.health_check.health_check_complete
            if complete:
                self._mark_health_check_complete(session)

        self._save_session(resolved.conversation_id, session)

        return SupervisorReply(
            reply=result.response,
            routed=True,
            call_type=session['callType'],
            conversation_id=resolved.conversation_id,
            suspended=suspended,
            health_check_complete=complete,
            debug={'source': resolved.source, 'steps': result.steps, **result.debug},
        )

    def _route_health_check(self, request: ChatRequest, resolved: ResolvedCall) -> SupervisorReply:
        session = dict(resolved.session)
        key = health_check_key(resolved.user_id, resolved.conversation_id)
        result = self.health_check.handle(
            ResumeHealthCheck(key, request.latest_user_message),
            recent_messages=self._recent(request.messages),
        )

        if isinstance(result, IllegalCommand):
            return self._health_check_unavailable(resolved, session, result)

        if result.health_check_complete:
            self._mark_health_check_complete(session)
        self._save_session(resolved.conversation_id, session)

        return SupervisorReply(
            reply=result.system_output,
            routed=True,
            call_type=session['callType'],
            conversation_id=resolved.conversation_id,
            suspended=result.suspended,
            health_check_complete=result.health_check_complete,
            debug={'source': resolved.source, 'turn_metadata': result.turn_metadata, **result.debug},
        )

    def _health_check_unavailable(self, resolved: ResolvedCall, session: Dict[str, Any],
                                  rejected: IllegalCommand) -> SupervisorReply:
        completed = bool(session.get('healthCheckCompleted'))
        reply = ALREADY_COMPLETED_MESSAGE if completed else MISSING_SESSION_MESSAGE
        logger.warning(f"Health check resume rejected for {resolved.conversation_id}: {rejected.reason}")

        # Back to general conversation; the latch must not restart the check
        session['callType'] = CALL_TYPE_GENERAL
        session['endCallDetected'] = False
        self._save_session(resolved.conversation_id, session)

        return SupervisorReply(
            reply=reply,
            routed=True,
            call_type=CALL_TYPE_GENERAL,
            conversation_id=resolved.conversation_id,
            suspended=False,
            health_check_complete=completed,
            debug={'source': resolved.source, 'rejected': rejected.reason},
        )

    def _unrouted(self, request: ChatRequest) -> SupervisorReply:
        logger.warning("Unrouted request: replying without orchestration")
        try:
            reply = self.llm.generate(request.system_message, self._recent(request.messages),
                                      max_tokens=256, temperature=0.7)
        except Exception as e:
            logger.error(f"Unrouted generation failed: {type(e).__name__}: {e}")
            return SupervisorReply(reply=UNROUTED_APOLOGY, routed=False,
                                   debug={'errors': [{'context': 'unrouted', 'error': str(e)}]})

        reply = str(reply or '').strip() or UNROUTED_APOLOGY
        return SupervisorReply(reply=reply, routed=False)

    # ========================
    # Call session helpers
    # ========================

    @staticmethod
    def _recent(messages) -> List[Dict[str, str]]:
        return [dict(m) for m in messages if m.get('role') in ('user', 'assistant')]

    @staticmethod
    def _mark_health_check_complete(session: Dict[str, Any]) -> None:
        session['healthCheckCompleted'] = True
        session['callType'] = CALL_TYPE_GENERAL
        session['endCallDetected'] = False

    def _save_session(self, conversation_id: str, session: Dict[str, Any]) -> None:
        try:
            self.store.set(call_session_key(conversation_id), session, self.ttl_seconds)
        except Exception as e:
            logger.error(f"Failed to save call session {conversation_id}: {type(e).__name__}: {e}")

    def _get(self, key: str):
        try:
            return self.store.get(key)
        except SessionStoreError as e:
            logger.error(f"Unreadable store entry {key}: {e}")
            return None

    def _delete_mapping(self, key: str, conversation_id: str) -> None:
        mapping = self._get(key)
        if isinstance(mapping, dict) and mapping.get('conversationId') == conversation_id:
            self.store.delete(key)
