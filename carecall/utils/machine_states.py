"""
Enumerated states, events and transition tables for both state machines.

Invariants:
- Every (state, event) pair the machines emit appears in a table
- Unknown pairs raise IllegalTransition (a programming error, never masked)
- Tables are pure data; transition() has no side effects
- Side effects are returned as names; the machine executes them

Design:
- Steps are string-based enums so they serialize straight into checkpoints
- HEALTH_CHECK_TRANSITIONS drives HealthCheckMachine
- CONVERSATION_TRANSITIONS drives ConversationMachine
"""

from enum import Enum
from typing import Dict, Tuple


class IllegalTransition(Exception):
    """Raised when a machine emits an event its current step cannot accept"""
    pass


class HealthCheckStep(str, Enum):
    """
    Health-check machine steps.

    INIT:            Catalog built or loaded, indices zeroed
    ASK_QUESTION:    Render current question (with retry/clarification hint)
    AWAIT_ANSWER:    Suspended; checkpoint persisted, no computation running
    VALIDATE:        Validate reply, decide retry / advance / clarify / skip
    CHECK_FOLLOW_UP: All catalog questions done; maybe append one follow-up
    FINALIZE:        Parse valid answers, hand to persistence, close
    COMPLETE:        Terminal
    """
    INIT = "init"
    ASK_QUESTION = "ask_question"
    AWAIT_ANSWER = "await_answer"
    VALIDATE = "validate"
    CHECK_FOLLOW_UP = "check_follow_up"
    FINALIZE = "finalize"
    COMPLETE = "complete"


class HealthCheckEvent(str, Enum):
    CATALOG_READY = "catalog_ready"
    QUESTION_RENDERED = "question_rendered"
    NO_QUESTIONS_LEFT = "no_questions_left"
    ANSWER_RECEIVED = "answer_received"
    EXIT_REQUESTED = "exit_requested"
    REATTACHED = "reattached"
    VALID_ANSWER = "valid_answer"
    INVALID_RETRY = "invalid_retry"
    INVALID_CEILING = "invalid_ceiling"
    CLARIFICATION_REQUESTED = "clarification_requested"
    REFUSED = "refused"
    FOLLOW_UP_ADDED = "follow_up_added"
    NO_FOLLOW_UP = "no_follow_up"
    RESULTS_HANDLED = "results_handled"


class Effect(str, Enum):
    """Side effects requested by a health-check transition"""
    RECORD_ANSWER = "record_answer"
    RECORD_SKIP = "record_skip"
    ADVANCE_INDEX = "advance_index"
    INCREMENT_ATTEMPTS = "increment_attempts"
    SET_CLARIFICATION = "set_clarification"
    PERSIST_CHECKPOINT = "persist_checkpoint"
    DELETE_CHECKPOINT = "delete_checkpoint"


HEALTH_CHECK_TRANSITIONS: Dict[Tuple[HealthCheckStep, HealthCheckEvent],
                               Tuple[HealthCheckStep, Tuple[Effect, ...]]] = {
    (HealthCheckStep.INIT, HealthCheckEvent.CATALOG_READY):
        (HealthCheckStep.ASK_QUESTION, ()),

    (HealthCheckStep.ASK_QUESTION, HealthCheckEvent.QUESTION_RENDERED):
        (HealthCheckStep.AWAIT_ANSWER, (Effect.PERSIST_CHECKPOINT,)),
    (HealthCheckStep.ASK_QUESTION, HealthCheckEvent.NO_QUESTIONS_LEFT):
        (HealthCheckStep.CHECK_FOLLOW_UP, ()),

    (HealthCheckStep.AWAIT_ANSWER, HealthCheckEvent.ANSWER_RECEIVED):
        (HealthCheckStep.VALIDATE, ()),
    (HealthCheckStep.AWAIT_ANSWER, HealthCheckEvent.EXIT_REQUESTED):
        (HealthCheckStep.FINALIZE, ()),
    (HealthCheckStep.AWAIT_ANSWER, HealthCheckEvent.REATTACHED):
        (HealthCheckStep.ASK_QUESTION, ()),

    (HealthCheckStep.VALIDATE, HealthCheckEvent.VALID_ANSWER):
        (HealthCheckStep.ASK_QUESTION, (Effect.RECORD_ANSWER, Effect.ADVANCE_INDEX)),
    (HealthCheckStep.VALIDATE, HealthCheckEvent.INVALID_RETRY):
        (HealthCheckStep.ASK_QUESTION, (Effect.INCREMENT_ATTEMPTS,)),
    (HealthCheckStep.VALIDATE, HealthCheckEvent.INVALID_CEILING):
        (HealthCheckStep.ASK_QUESTION, (Effect.RECORD_ANSWER, Effect.ADVANCE_INDEX)),
    (HealthCheckStep.VALIDATE, HealthCheckEvent.CLARIFICATION_REQUESTED):
        (HealthCheckStep.ASK_QUESTION, (Effect.SET_CLARIFICATION,)),
    (HealthCheckStep.VALIDATE, HealthCheckEvent.REFUSED):
        (HealthCheckStep.ASK_QUESTION, (Effect.RECORD_SKIP, Effect.ADVANCE_INDEX)),

    (HealthCheckStep.CHECK_FOLLOW_UP, HealthCheckEvent.FOLLOW_UP_ADDED):
        (HealthCheckStep.ASK_QUESTION, ()),
    (HealthCheckStep.CHECK_FOLLOW_UP, HealthCheckEvent.NO_FOLLOW_UP):
        (HealthCheckStep.FINALIZE, ()),

    (HealthCheckStep.FINALIZE, HealthCheckEvent.RESULTS_HANDLED):
        (HealthCheckStep.COMPLETE, (Effect.DELETE_CHECKPOINT,)),
}


class ConversationStep(str, Enum):
    CLASSIFY_INTENT = "classify_intent"
    RETRIEVE_MEMORIES = "retrieve_memories"
    CHECK_FATIGUE = "check_fatigue"
    SKIP_RAG = "skip_rag"
    GENERATE_RESPONSE = "generate_response"
    DETECT_END_CALL = "detect_end_call"
    START_HEALTH_CHECK = "start_health_check"
    DONE = "done"


class ConversationEvent(str, Enum):
    RAG_WARRANTED = "rag_warranted"
    RAG_NOT_WARRANTED = "rag_not_warranted"
    END_CALL_LATCHED = "end_call_latched"
    MEMORIES_READY = "memories_ready"
    GUIDANCE_READY = "guidance_ready"
    SKIPPED = "skipped"
    RESPONSE_READY = "response_ready"
    END_CALL = "end_call"
    CONTINUE = "continue"
    HEALTH_CHECK_STARTED = "health_check_started"
    HEALTH_CHECK_UNAVAILABLE = "health_check_unavailable"


CONVERSATION_TRANSITIONS: Dict[Tuple[ConversationStep, ConversationEvent],
                               Tuple[ConversationStep, Tuple[Effect, ...]]] = {
    (ConversationStep.CLASSIFY_INTENT, ConversationEvent.RAG_WARRANTED):
        (ConversationStep.RETRIEVE_MEMORIES, ()),
    (ConversationStep.CLASSIFY_INTENT, ConversationEvent.RAG_NOT_WARRANTED):
        (ConversationStep.SKIP_RAG, ()),
    (ConversationStep.CLASSIFY_INTENT, ConversationEvent.END_CALL_LATCHED):
        (ConversationStep.START_HEALTH_CHECK, ()),

    (ConversationStep.RETRIEVE_MEMORIES, ConversationEvent.MEMORIES_READY):
        (ConversationStep.CHECK_FATIGUE, ()),
    (ConversationStep.CHECK_FATIGUE, ConversationEvent.GUIDANCE_READY):
        (ConversationStep.GENERATE_RESPONSE, ()),
    (ConversationStep.SKIP_RAG, ConversationEvent.SKIPPED):
        (ConversationStep.GENERATE_RESPONSE, ()),

    (ConversationStep.GENERATE_RESPONSE, ConversationEvent.RESPONSE_READY):
        (ConversationStep.DETECT_END_CALL, ()),

    (ConversationStep.DETECT_END_CALL, ConversationEvent.END_CALL):
        (ConversationStep.START_HEALTH_CHECK, ()),
    (ConversationStep.DETECT_END_CALL, ConversationEvent.CONTINUE):
        (ConversationStep.DONE, ()),

    (ConversationStep.START_HEALTH_CHECK, ConversationEvent.HEALTH_CHECK_STARTED):
        (ConversationStep.DONE, ()),
    (ConversationStep.START_HEALTH_CHECK, ConversationEvent.HEALTH_CHECK_UNAVAILABLE):
        (ConversationStep.DONE, ()),
}


def transition(table, step, event):
    """
    Look up the next step for (step, event).

    Args:
        table: HEALTH_CHECK_TRANSITIONS or CONVERSATION_TRANSITIONS
        step: Current step
        event: Event emitted by the current step

    Returns:
        tuple: (next_step, effects)

    Raises:
        IllegalTransition: If the pair is not in the table

    Examples:
        >>> transition(HEALTH_CHECK_TRANSITIONS, HealthCheckStep.VALIDATE, HealthCheckEvent.INVALID_RETRY)
        (<HealthCheckStep.ASK_QUESTION: 'ask_question'>, (<Effect.INCREMENT_ATTEMPTS: 'increment_attempts'>,))
    """
    try:
        return table[(step, event)]
    except KeyError:
        raise IllegalTransition(f"No transition from {step.value!r} on {event.value!r}") from None
