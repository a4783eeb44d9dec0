"""
Health Check Session - Per-call health-check state (dumb container)

Responsibilities:
- Hold the ordered question list, current index and attempt counter
- Hold the append-only AnswerRecord list
- Serialize to / from the JSON snapshot stored in the Session Store

Design principles:
- No business logic (HealthCheckMachine decides every mutation)
- Questions stored as plain dicts, rebuilt with Question.from_dict()
- Snapshot is lossless: from_snapshot(s.to_snapshot()) == s

CRITICAL: question_index vs attempt_count
- current_question_index is 0-indexed and never decreases
- question_attempts counts invalid replies to the CURRENT question
  (reset to 0 whenever the index advances)
- AnswerRecord.attempt_count is question_attempts + 1 at the time of recording
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from carecall.contracts import Question
from carecall.utils.helpers import utc_now_iso
from carecall.utils.machine_states import HealthCheckStep

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


@dataclass(frozen=True)
class AnswerRecord:
    """
    One recorded answer (append-only).

    Attributes:
        question_index: Index of the question in the session list
        question: The Question answered
        raw_answer: User's reply text as heard
        validated_answer: Normalized answer (or best-effort parse when invalid)
        is_valid: Validation outcome
        attempt_count: Replies it took (1 = first try)
    """
    question_index: int
    question: Question
    raw_answer: str
    validated_answer: str
    is_valid: bool
    attempt_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'question_index': self.question_index,
            'question': self.question.to_dict(),
            'raw_answer': self.raw_answer,
            'validated_answer': self.validated_answer,
            'is_valid': self.is_valid,
            'attempt_count': self.attempt_count,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "AnswerRecord":
        return AnswerRecord(
            question_index=data['question_index'],
            question=Question.from_dict(data['question']),
            raw_answer=data.get('raw_answer', ''),
            validated_answer=data.get('validated_answer', ''),
            is_valid=data.get('is_valid', False),
            attempt_count=data.get('attempt_count', 1),
        )


@dataclass
class HealthCheckSession:
    """Mutable health-check state for one (user, conversation)"""

    user_id: str
    conversation_id: str
    questions: List[Question] = field(default_factory=list)
    current_question_index: int = 0
    question_attempts: int = 0
    answers: List[AnswerRecord] = field(default_factory=list)
    is_complete: bool = False
    started_at: str = field(default_factory=utc_now_iso)
    last_updated_at: str = field(default_factory=utc_now_iso)

    # Machine bookkeeping (persisted so a resumed machine reattaches exactly)
    step: HealthCheckStep = HealthCheckStep.INIT
    last_response: Optional[str] = None
    last_validation_error: Optional[str] = None
    pending_clarification: Optional[str] = None
    follow_up_count: int = 0

    # ========================
    # Queries
    # ========================

    @property
    def current_question(self) -> Optional[Question]:
        """Question at current index, None once all are answered"""
        if self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    @property
    def has_remaining_questions(self) -> bool:
        return self.current_question_index < len(self.questions)

    def valid_answers(self) -> List[AnswerRecord]:
        return [a for a in self.answers if a.is_valid]

    # ========================
    # Mutations (called by HealthCheckMachine only)
    # ========================

    def append_answer(self, record: AnswerRecord) -> None:
        self.answers.append(record)
        self.touch()

    def advance(self) -> None:
        """Move to the next question and reset the attempt counter"""
        self.current_question_index += 1
        self.question_attempts = 0
        self.last_validation_error = None
        self.pending_clarification = None
        self.touch()

    def touch(self) -> None:
        self.last_updated_at = utc_now_iso()

    # ========================
    # Snapshot
    # ========================

    def to_snapshot(self) -> Dict[str, Any]:
        """JSON-safe snapshot for the Session Store"""
        return {
            'version': SNAPSHOT_VERSION,
            'user_id': self.user_id,
            'conversation_id': self.conversation_id,
            'questions': [q.to_dict() for q in self.questions],
            'current_question_index': self.current_question_index,
            'question_attempts': self.question_attempts,
            'answers': [a.to_dict() for a in self.answers],
            'is_complete': self.is_complete,
            'started_at': self.started_at,
            'last_updated_at': self.last_updated_at,
            'step': self.step.value,
            'last_response': self.last_response,
            'last_validation_error': self.last_validation_error,
            'pending_clarification': self.pending_clarification,
            'follow_up_count': self.follow_up_count,
        }

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "HealthCheckSession":
        """
        Rebuild a session from a stored snapshot.

        Raises:
            ValueError: If required keys are missing or the step is unknown
        """
        try:
            session = cls(
                user_id=snapshot['user_id'],
                conversation_id=snapshot['conversation_id'],
                questions=[Question.from_dict(q) for q in snapshot.get('questions', [])],
                current_question_index=snapshot.get('current_question_index', 0),
                question_attempts=snapshot.get('question_attempts', 0),
                answers=[AnswerRecord.from_dict(a) for a in snapshot.get('answers', [])],
                is_complete=snapshot.get('is_complete', False),
                started_at=snapshot.get('started_at') or utc_now_iso(),
                last_updated_at=snapshot.get('last_updated_at') or utc_now_iso(),
                step=HealthCheckStep(snapshot.get('step', HealthCheckStep.INIT.value)),
                last_response=snapshot.get('last_response'),
                last_validation_error=snapshot.get('last_validation_error'),
                pending_clarification=snapshot.get('pending_clarification'),
                follow_up_count=snapshot.get('follow_up_count', 0),
            )
        except KeyError as e:
            raise ValueError(f"Health check snapshot missing key: {e}") from e

        if session.current_question_index < 0 or session.question_attempts < 0:
            raise ValueError("Health check snapshot has negative index or attempts")
        return session
