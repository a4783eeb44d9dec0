"""
Conversation Machine - General companionship dialogue for one turn

Responsibilities:
- Gate memory retrieval on a pure classification of the latest message
- Track the topic (embedding, centroid, fatigue) and refresh memories
  only when the topic changed or fatigue is building
- Generate the reply as structured {response, is_end_call_detected}
- Detect end of call and hand off to the health check

Design principles:
- One pass per turn, explicit steps (see machine_states)
- Turn state (classification, memories, reply) is never persisted;
  only TopicState is written back to the Session Store
- Malformed model output is recovered locally (raw text, is_end_call=False)
- Collaborator failures degrade the turn, they never raise to the caller

Step graph:
    ClassifyIntent -> RetrieveMemories -> CheckFatigue -> GenerateResponse
                   -> SkipRAG ------------------------> GenerateResponse
    GenerateResponse -> DetectEndCall -> StartHealthCheck | Done
    ClassifyIntent -> StartHealthCheck   (end of call already latched)
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from carecall.commands import StartHealthCheck
from carecall.core.topic_tracker import TopicState
from carecall.results import ConversationTurnResult, TurnResult
from carecall.utils.intent_classifier import classify_intent
from carecall.utils.machine_states import (
    CONVERSATION_TRANSITIONS,
    ConversationEvent,
    ConversationStep,
    transition,
)
from carecall.utils.prompt_builder import (
    GENERAL_FALLBACK_MESSAGE,
    build_conversation_prompt,
    fatigue_guidance,
)

logger = logging.getLogger(__name__)

RETRIEVAL_FATIGUE_THRESHOLD = 0.25
MEMORY_LIMIT = 5
RECENT_MESSAGE_COUNT = 10


def parse_model_reply(raw: str) -> Tuple[str, bool, Optional[str]]:
    """
    Read {response, is_end_call_detected} from model output.

    Returns:
        tuple: (response, is_end_call, anomaly). anomaly is None when the
        output had the expected shape; otherwise it names the problem and
        the raw text is used as the response with is_end_call=False.

    Examples:
        >>> parse_model_reply('{"response": "Take care!", "is_end_call_detected": true}')
        ('Take care!', True, None)
        >>> parse_model_reply('Sure, happy to chat.')
        ('Sure, happy to chat.', False, 'not_json')
    """
    text = (raw or "").strip()
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text, False, 'not_json'

    if not isinstance(parsed, dict):
        return text, False, 'not_object'

    response = parsed.get('response')
    if not isinstance(response, str) or not response.strip():
        return text, False, 'missing_response'

    flag = parsed.get('is_end_call_detected')
    if not isinstance(flag, bool):
        return response.strip(), False, 'missing_end_call_flag'

    return response.strip(), flag, None


class _TurnState:
    """Transient per-pass fields (ConversationTurnState)"""

    def __init__(self, latest_message: str):
        self.latest_message = latest_message
        self.classification = None
        self.vector: Optional[List[float]] = None
        self.topic: Optional[TopicState] = None
        self.pending_topic: Optional[TopicState] = None
        self.topic_changed = False
        self.memories: Tuple[str, ...] = ()
        self.memories_fetched = False
        self.guidance = ""
        self.response: Optional[str] = None
        self.is_end_call = False
        self.end_call_flag_read = False
        self.handed_off = False
        self.health_check: Optional[TurnResult] = None


class ConversationMachine:
    """
    Drives one general-conversation turn.

    Functional core design:
    - Collaborators cached, conversation state external (Session Store)
    - run() advances from ClassifyIntent to Done and returns a
      ConversationTurnResult
    """

    def __init__(self, llm, embedder, topic_tracker, memory_retriever, health_check_machine,
                 end_call_detector=None,
                 memory_limit: int = MEMORY_LIMIT,
                 recent_message_count: int = RECENT_MESSAGE_COUNT,
                 retrieval_fatigue_threshold: float = RETRIEVAL_FATIGUE_THRESHOLD):
        """
        Args:
            llm: Object with generate_json(system_prompt, messages, max_tokens=, temperature=)
            embedder: Object with embed(text) -> list[float]
            topic_tracker: TopicTracker
            memory_retriever: MemoryRetriever
            health_check_machine: HealthCheckMachine (hand-off target)
            end_call_detector: Optional detect(text) -> bool fallback, consulted only
                when the model's end-call flag cannot be read
            memory_limit: Max memory snippets per retrieval
            recent_message_count: Conversation messages passed to the model
            retrieval_fatigue_threshold: Fatigue above which memories are refreshed

        Raises:
            TypeError: If any collaborator is missing a required method
        """
        self._validate_modules(llm, embedder, topic_tracker, memory_retriever,
                               health_check_machine, end_call_detector)

        self.llm = llm
        self.embedder = embedder
        self.tracker = topic_tracker
        self.retriever = memory_retriever
        self.health_check = health_check_machine
        self.end_call_detector = end_call_detector
        self.memory_limit = memory_limit
        self.recent_message_count = recent_message_count
        self.retrieval_fatigue_threshold = retrieval_fatigue_threshold

        logger.info("Conversation Machine initialized")

    def _validate_modules(self, llm, embedder, topic_tracker, memory_retriever,
                          health_check_machine, end_call_detector):
        """Validate module interfaces"""
        if not callable(getattr(llm, 'generate_json', None)):
            raise TypeError("llm must have callable generate_json() method")
        if not callable(getattr(embedder, 'embed', None)):
            raise TypeError("embedder must have callable embed() method")
        for method in ('load', 'save', 'detect_topic_change', 'update', 'cache_drifted', 'refresh_cache'):
            if not callable(getattr(topic_tracker, method, None)):
                raise TypeError(f"topic_tracker must have callable {method}() method")
        if not callable(getattr(memory_retriever, 'retrieve_memories', None)):
            raise TypeError("memory_retriever must have callable retrieve_memories() method")
        if not callable(getattr(health_check_machine, 'handle', None)):
            raise TypeError("health_check_machine must have callable handle() method")
        if end_call_detector is not None and not callable(getattr(end_call_detector, 'detect', None)):
            raise TypeError("end_call_detector must have callable detect() method")

    def run(self, user_id: str, conversation_id: str, messages: List[Dict[str, str]],
            end_call_latched: bool = False, health_check_completed: bool = False,
            system_prompt: Optional[str] = None) -> ConversationTurnResult:
        """
        Run one conversation turn.

        Args:
            user_id: User identifier
            conversation_id: Conversation identifier (topic state key)
            messages: Full message list, latest user message last
            end_call_latched: End of call was detected on an earlier turn
            health_check_completed: Health check already ran this call
            system_prompt: Caller's persona prompt (replaces the default)

        Returns:
            ConversationTurnResult
        """
        recent = [m for m in messages if m.get('role') in ('user', 'assistant')]
        recent = recent[-self.recent_message_count:] if self.recent_message_count else []
        latest = next((m.get('content', '') for m in reversed(messages) if m.get('role') == 'user'), '')

        turn = _TurnState(latest or '')
        debug: Dict[str, Any] = {'errors': []}
        steps: List[str] = []
        step = ConversationStep.CLASSIFY_INTENT

        while step != ConversationStep.DONE:
            steps.append(step.value)

            if step == ConversationStep.CLASSIFY_INTENT:
                event = self._classify_intent(turn, end_call_latched, health_check_completed, debug)
            elif step == ConversationStep.RETRIEVE_MEMORIES:
                event = self._retrieve_memories(turn, user_id, conversation_id, debug)
            elif step == ConversationStep.CHECK_FATIGUE:
                event = self._check_fatigue(turn, conversation_id, debug)
            elif step == ConversationStep.SKIP_RAG:
                event = ConversationEvent.SKIPPED
            elif step == ConversationStep.GENERATE_RESPONSE:
                event = self._generate_response(turn, user_id, recent, system_prompt, debug)
            elif step == ConversationStep.DETECT_END_CALL:
                event = self._detect_end_call(turn, health_check_completed, debug)
            elif step == ConversationStep.START_HEALTH_CHECK:
                event = self._start_health_check(turn, user_id, conversation_id, recent, debug)
            else:
                raise ValueError(f"Conversation cannot run from step {step.value}")

            next_step, _ = transition(CONVERSATION_TRANSITIONS, step, event)
            logger.debug(f"Conversation {step.value} --{event.value}--> {next_step.value}")
            step = next_step

        steps.append(ConversationStep.DONE.value)

        return ConversationTurnResult(
            response=turn.response or GENERAL_FALLBACK_MESSAGE,
            is_end_call=turn.is_end_call,
            handed_off=turn.handed_off,
            health_check=turn.health_check,
            debug=debug,
            steps=steps,
        )

    # ========================
    # Steps
    # ========================

    def _classify_intent(self, turn: _TurnState, end_call_latched: bool,
                         health_check_completed: bool, debug: Dict[str, Any]) -> ConversationEvent:
        if end_call_latched and not health_check_completed:
            logger.info("End of call latched from a previous turn: starting health check")
            turn.is_end_call = True
            debug['end_call_latched'] = True
            return ConversationEvent.END_CALL_LATCHED

        turn.classification = classify_intent(turn.latest_message)
        debug['classification'] = {
            'should_process_rag': turn.classification.should_process_rag,
            'message_length': turn.classification.message_length,
            'length_bucket': turn.classification.length_bucket,
        }
        if turn.classification.should_process_rag:
            return ConversationEvent.RAG_WARRANTED
        return ConversationEvent.RAG_NOT_WARRANTED

    def _retrieve_memories(self, turn: _TurnState, user_id: str, conversation_id: str,
                           debug: Dict[str, Any]) -> ConversationEvent:
        turn.topic = self.tracker.load(conversation_id)

        try:
            turn.vector = list(self.embedder.embed(turn.latest_message))
        except Exception as e:
            logger.error(f"Embedding failed: {type(e).__name__}: {e}")
            debug['errors'].append({'context': 'embed', 'error': str(e)})
            return ConversationEvent.MEMORIES_READY

        try:
            changed, similarity = self.tracker.detect_topic_change(
                turn.topic, turn.vector, turn.classification.message_length
            )
        except ValueError as e:
            logger.warning(f"Topic comparison failed ({e}); treating as new topic")
            changed, similarity = True, None

        prior_fatigue = turn.topic.fatigue
        turn.topic_changed = changed
        turn.pending_topic = self.tracker.update(turn.topic, turn.vector, changed, similarity)
        debug['topic'] = {'changed': changed, 'similarity': similarity, 'prior_fatigue': prior_fatigue}

        if not (changed or prior_fatigue > self.retrieval_fatigue_threshold):
            logger.debug("Same topic, low fatigue: no memory retrieval")
            return ConversationEvent.MEMORIES_READY

        if (not changed and turn.pending_topic.cached_highlights
                and not self.tracker.cache_drifted(turn.pending_topic)):
            turn.memories = turn.pending_topic.cached_highlights
            debug['memory_source'] = 'cache'
        else:
            retrieved = self.retriever.retrieve_memories(user_id, turn.vector, self.memory_limit)
            turn.memories = tuple(retrieved.highlights)
            turn.memories_fetched = True
            debug['memory_source'] = 'store'

        debug['memories'] = list(turn.memories)
        logger.info(f"Memories for turn: {len(turn.memories)} ({debug['memory_source']})")
        return ConversationEvent.MEMORIES_READY

    def _check_fatigue(self, turn: _TurnState, conversation_id: str,
                       debug: Dict[str, Any]) -> ConversationEvent:
        if turn.pending_topic is None:
            # Nothing embedded this turn: report the stored fatigue unchanged
            fatigue = turn.topic.fatigue if turn.topic is not None else 0.0
        else:
            state = turn.pending_topic
            if turn.memories_fetched:
                state = self.tracker.refresh_cache(state, turn.memories)
            state = self.tracker.with_fatigue(state)
            fatigue = state.fatigue
            try:
                self.tracker.save(conversation_id, state)
            except Exception as e:
                logger.error(f"Failed to save topic state for {conversation_id}: {type(e).__name__}: {e}")
                debug['errors'].append({'context': 'topic_save', 'error': str(e)})

        turn.guidance = fatigue_guidance(fatigue)
        debug['fatigue'] = fatigue
        if turn.guidance:
            debug['fatigue_guidance'] = turn.guidance
        return ConversationEvent.GUIDANCE_READY

    def _generate_response(self, turn: _TurnState, user_id: str, recent, system_prompt,
                           debug: Dict[str, Any]) -> ConversationEvent:
        prompt = build_conversation_prompt(user_id, turn.memories, turn.guidance, base_prompt=system_prompt)
        try:
            raw = self.llm.generate_json(prompt, recent, max_tokens=256, temperature=0.7)
        except Exception as e:
            logger.error(f"Response generation failed: {type(e).__name__}: {e}")
            debug['errors'].append({'context': 'generate', 'error': str(e)})
            turn.response = GENERAL_FALLBACK_MESSAGE
            turn.is_end_call = False
            return ConversationEvent.RESPONSE_READY

        response, is_end_call, anomaly = parse_model_reply(raw)
        if anomaly is not None:
            logger.warning(f"Malformed model reply ({anomaly}); using raw text, is_end_call=False")
            debug['parse_anomaly'] = anomaly

        turn.response = response or GENERAL_FALLBACK_MESSAGE
        turn.is_end_call = is_end_call
        turn.end_call_flag_read = anomaly is None
        return ConversationEvent.RESPONSE_READY

    def _detect_end_call(self, turn: _TurnState, health_check_completed: bool,
                         debug: Dict[str, Any]) -> ConversationEvent:
        if turn.end_call_flag_read:
            if turn.is_end_call:
                debug['end_call_source'] = 'model'
        elif self.end_call_detector is not None:
            if self.end_call_detector.detect(turn.latest_message):
                turn.is_end_call = True
                debug['end_call_source'] = 'detector'

        if turn.is_end_call and not health_check_completed:
            return ConversationEvent.END_CALL
        return ConversationEvent.CONTINUE

    def _start_health_check(self, turn: _TurnState, user_id: str, conversation_id: str,
                            recent, debug: Dict[str, Any]) -> ConversationEvent:
        try:
            result = self.health_check.handle(StartHealthCheck(user_id, conversation_id),
                                              recent_messages=recent)
        except Exception as e:
            logger.error(f"Health check hand-off failed: {type(e).__name__}: {e}")
            debug['errors'].append({'context': 'hand_off', 'error': str(e)})
            return ConversationEvent.HEALTH_CHECK_UNAVAILABLE

        if not isinstance(result, TurnResult):
            logger.warning(f"Health check hand-off rejected: {result.reason}")
            debug['hand_off_rejected'] = result.reason
            if turn.response is None:
                turn.response = result.reason
            return ConversationEvent.HEALTH_CHECK_UNAVAILABLE

        logger.info(f"Handed off to health check {result.checkpoint_key}")
        turn.handed_off = True
        turn.health_check = result
        turn.response = result.system_output
        return ConversationEvent.HEALTH_CHECK_STARTED
