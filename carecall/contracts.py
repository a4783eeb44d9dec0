"""
Semantic contracts for the check-in call orchestration engine.

This module defines immutable data structures that serve as contracts
between modules. They define shape and semantics; validation of user
answers lives in answer_validator, not here.

Design principles:
- Frozen dataclasses (immutable after creation)
- JSON round trip through to_dict()/from_dict() (no live references persisted)
- No dependencies on other carecall modules

Contents:
- QuestionKind / QuestionCategory: tagged-variant discriminators
- Question: one health-check question (scale | boolean | text)
- ValidationResult: outcome of validating a raw answer
- IntentClassification: output of the pure ClassifyIntent step
- HealthCondition / Medication / QuestionSourceData: catalog inputs
- RetrievedMemories: memory store output

Usage:
    from carecall.contracts import Question, QuestionKind
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class QuestionKind(str, Enum):
    """Answer shape expected by a question (variant tag)."""
    SCALE = "scale"
    BOOLEAN = "boolean"
    TEXT = "text"


class QuestionCategory(str, Enum):
    """What a question is about. Drives finalize-time parsing."""
    GENERAL = "general"
    SYMPTOM = "symptom"
    CONDITION_SPECIFIC = "condition-specific"
    MEDICATION = "medication"


# Sentinel stored for optional questions the user skipped
NOT_ANSWERED = "not answered"


@dataclass(frozen=True)
class Question:
    """
    Immutable health-check question.

    A tagged variant: `kind` selects which kind-specific fields apply.
    - SCALE: min_value / max_value (inclusive)
    - BOOLEAN: no extra fields
    - TEXT: optional

    Questions are persisted as plain dicts and re-created with from_dict()
    when a session is reloaded, so the same stored fields always produce an
    equal Question.

    Attributes:
        id: Stable identifier (e.g. 'overall_wellbeing', 'medication:med-42')
        question: Question text
        category: QuestionCategory
        kind: QuestionKind
        context: Why the question is asked (included in prompts)
        min_value: Lower bound for SCALE questions
        max_value: Upper bound for SCALE questions
        optional: TEXT questions only; empty/'skip' answers are accepted
        related_to: Medication or condition id, when the question targets one

    Examples:
        >>> q = Question.scale('sleep', 'How did you sleep?', QuestionCategory.GENERAL)
        >>> q.kind
        <QuestionKind.SCALE: 'scale'>
        >>> Question.from_dict(q.to_dict()) == q
        True
    """
    id: str
    question: str
    category: QuestionCategory
    kind: QuestionKind
    context: str = ""
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    optional: bool = False
    related_to: Optional[str] = None

    @classmethod
    def scale(cls, id: str, question: str, category: QuestionCategory,
              context: str = "", min_value: int = 1, max_value: int = 10,
              related_to: Optional[str] = None) -> "Question":
        return cls(id=id, question=question, category=category, kind=QuestionKind.SCALE,
                   context=context, min_value=min_value, max_value=max_value,
                   related_to=related_to)

    @classmethod
    def boolean(cls, id: str, question: str, category: QuestionCategory,
                context: str = "", related_to: Optional[str] = None) -> "Question":
        return cls(id=id, question=question, category=category, kind=QuestionKind.BOOLEAN,
                   context=context, related_to=related_to)

    @classmethod
    def text(cls, id: str, question: str, category: QuestionCategory,
             context: str = "", optional: bool = True,
             related_to: Optional[str] = None) -> "Question":
        return cls(id=id, question=question, category=category, kind=QuestionKind.TEXT,
                   context=context, optional=optional, related_to=related_to)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-safe dict (only fields relevant to the kind)."""
        data = {
            'id': self.id,
            'question': self.question,
            'category': self.category.value,
            'type': self.kind.value,
            'context': self.context,
            'related_to': self.related_to,
        }
        if self.kind == QuestionKind.SCALE:
            data['min'] = self.min_value
            data['max'] = self.max_value
        elif self.kind == QuestionKind.TEXT:
            data['optional'] = self.optional
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Question":
        """
        Rebuild a Question from its stored fields.

        Unknown kinds fall back to an optional TEXT question so that a
        corrupted or newer payload never blocks a call.

        Raises:
            KeyError: If 'id' or 'question' is missing
        """
        try:
            kind = QuestionKind(data.get('type', QuestionKind.TEXT.value))
        except ValueError:
            kind = QuestionKind.TEXT
        try:
            category = QuestionCategory(data.get('category', QuestionCategory.GENERAL.value))
        except ValueError:
            category = QuestionCategory.GENERAL

        if kind == QuestionKind.SCALE:
            return Question.scale(
                data['id'], data['question'], category,
                context=data.get('context', ''),
                min_value=data.get('min') if data.get('min') is not None else 1,
                max_value=data.get('max') if data.get('max') is not None else 10,
                related_to=data.get('related_to'),
            )
        if kind == QuestionKind.BOOLEAN:
            return Question.boolean(
                data['id'], data['question'], category,
                context=data.get('context', ''),
                related_to=data.get('related_to'),
            )
        return Question.text(
            data['id'], data['question'], category,
            context=data.get('context', ''),
            optional=data.get('optional', True),
            related_to=data.get('related_to'),
        )


@dataclass(frozen=True)
class ValidationResult:
    """
    Outcome of validating one raw answer.

    Attributes:
        is_valid: Whether the answer fits the question's shape
        validated_answer: Normalized answer ('yes'/'no', '7', trimmed text,
            NOT_ANSWERED) or, when invalid, the best-effort parse / raw text
        error: Human-readable hint for the retry prompt (None when valid)
    """
    is_valid: bool
    validated_answer: str
    error: Optional[str] = None


@dataclass(frozen=True)
class IntentClassification:
    """
    Pure classification of the latest user message.

    Used only to gate the cost of memory retrieval.
    """
    should_process_rag: bool
    is_continuation: bool
    is_short_response: bool
    message_length: int
    length_bucket: str
    has_substantive_content: bool


@dataclass(frozen=True)
class HealthCondition:
    id: str
    condition: str


@dataclass(frozen=True)
class Medication:
    id: str
    name: str


@dataclass(frozen=True)
class QuestionSourceData:
    """Active conditions and medications for one user, in source order."""
    active_conditions: Tuple[HealthCondition, ...] = ()
    active_medications: Tuple[Medication, ...] = ()


@dataclass(frozen=True)
class RetrievedMemories:
    """Top-k memory snippets for a user."""
    highlights: Tuple[str, ...] = ()
    scores: Tuple[float, ...] = field(default_factory=tuple)
