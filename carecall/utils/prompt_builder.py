"""
Prompt Builder - Construct model prompts from explicit inputs

Responsibilities:
- Health-check question prompts (progress, previous answers, retry note,
  clarification request)
- Deterministic question rendering when the model is unavailable
- General conversation system prompt (memories + fatigue guidance)
- Reply-intent, answer-extraction and follow-up prompts
- User-facing fixed messages

NOT responsible for:
- Deciding which question comes next
- Validating answers
- LLM calls

Design principles:
- Stateless functions, every input an explicit parameter
- Fail-fast validation of specs (no partial builds)
- Question kind handled in one place (_format_hint)
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from carecall.contracts import Question, QuestionKind

logger = logging.getLogger(__name__)


OPENING_LINE = "Before you go, let's do a quick health check-in."
CLOSING_MESSAGE = (
    "Thank you for completing the health check! Your responses have been recorded. "
    "Is there anything else I can help you with?"
)
CLOSING_FALLBACK_MESSAGE = (
    "Thank you for completing the health check! "
    "Is there anything else I can help you with?"
)
ALREADY_COMPLETED_MESSAGE = "Your health check for this session is complete. Thank you!"
MISSING_SESSION_MESSAGE = "I'm sorry, I couldn't find your health check session."
UNROUTED_APOLOGY = "I'm sorry, I'm having trouble responding right now. Could you say that again?"
GENERAL_FALLBACK_MESSAGE = "I'm sorry, could you say that again?"

NO_FOLLOW_UP = "NO_FOLLOW_UP"
CANNOT_EXTRACT = "CANNOT_EXTRACT"

# Reply intents inside a health check
REPLY_ANSWERING = "ANSWERING"
REPLY_ASKING = "ASKING"
REPLY_REFUSING = "REFUSING"
VALID_REPLY_INTENTS = {REPLY_ANSWERING, REPLY_ASKING, REPLY_REFUSING}

# Fatigue guidance tiers (lower bound, text), highest first
FATIGUE_TIERS = (
    (0.75, "TOPIC CHANGE RECOMMENDED: This topic has been discussed extensively. "
           "Gently steer the conversation toward something new."),
    (0.50, "TOPIC FRESHNESS NEEDED: This topic has been covered thoroughly. "
           "Look for a natural opening to a fresh subject."),
    (0.25, "TOPIC ENGAGEMENT NOTE: Watch for cues about the user's interest in this topic."),
)


class PromptBuildError(Exception):
    """Raised when prompt cannot be built due to invalid/incomplete spec"""
    pass


@dataclass(frozen=True)
class QuestionPromptSpec:
    """
    Everything needed to phrase one health-check question.

    Validation enforced at construction - fail-fast.
    """
    question: Question
    question_number: int          # 1-indexed
    total_questions: int
    previous_answers: Tuple[Tuple[str, str], ...] = ()   # (question text, validated answer)
    attempts: int = 0
    validation_error: Optional[str] = None
    clarification: Optional[str] = None                # user's clarifying question

    def __post_init__(self):
        if not isinstance(self.question, Question):
            raise PromptBuildError(f"question must be Question, got: {type(self.question).__name__}")
        if self.question_number < 1 or self.question_number > self.total_questions:
            raise PromptBuildError(
                f"question_number {self.question_number} outside 1..{self.total_questions}"
            )
        if self.attempts < 0:
            raise PromptBuildError("attempts must be non-negative")

    @property
    def is_opening(self) -> bool:
        """First question, first attempt, no clarification pending"""
        return self.question_number == 1 and self.attempts == 0 and not self.clarification

    @property
    def is_retry(self) -> bool:
        return self.attempts > 0


def _format_hint(question: Question) -> str:
    if question.kind == QuestionKind.SCALE:
        return f"a number between {question.min_value} and {question.max_value}"
    if question.kind == QuestionKind.BOOLEAN:
        return '"yes" or "no"'
    return "a short text response"


def build_question_prompt(spec: QuestionPromptSpec) -> str:
    """
    System prompt asking the model to phrase the current question.

    Sections, in order: role + progress, opening line (first question
    only), previous valid responses, then either the clarification request
    or the current question with its retry note.
    """
    question = spec.question
    lines = [
        "You are conducting a health check-in with an elderly user.",
        f"Progress: Question {spec.question_number} of {spec.total_questions}.",
        "",
    ]

    if spec.is_opening:
        lines += ["## Starting Health Check", f'Tell the user: "{OPENING_LINE}"', ""]

    if spec.previous_answers:
        lines.append("## Previous Responses")
        lines += [f"- {text}: {answer}" for text, answer in spec.previous_answers]
        lines.append("")

    if spec.clarification:
        lines += [
            "## Clarification Request",
            f'The user asked: "{spec.clarification}"',
            "Kindly answer their question, then gently re-ask the following question:",
            f'"{question.question}"',
        ]
    else:
        lines += [
            "## Current Question",
            f"Type: {question.kind.value}",
            f"Category: {question.category.value}",
        ]
        if question.kind == QuestionKind.SCALE:
            lines.append(f"Scale range: {question.min_value}-{question.max_value}")
        if question.context:
            lines.append(f"Why we ask: {question.context}")
        lines += [
            "",
            "## Instructions",
            "Ask the following question in a warm, conversational way:",
            f'"{question.question}"',
        ]
        if spec.is_retry:
            lines += ["", "NOTE: The user's previous answer was not valid."]
            if spec.validation_error:
                lines.append(f"Reason: {spec.validation_error}")
            lines.append(f"Gently explain that you need {_format_hint(question)} and ask again.")

    lines += ["", "Be empathetic and conversational. Reply with only what you would say to the user."]
    return "\n".join(lines)


def render_question(spec: QuestionPromptSpec) -> str:
    """
    Deterministic rendering of the current question (no model involved).

    Used when the model fails, and by tests.

    Examples:
        >>> render_question(QuestionPromptSpec(q, 1, 4))
        "Before you go, let's do a quick health check-in. On a scale of 1-10, how are you feeling overall right now?"
    """
    question = spec.question
    parts = []
    if spec.is_opening:
        parts.append(OPENING_LINE)
    if spec.clarification:
        parts.append("Good question.")
    elif spec.is_retry:
        if spec.validation_error:
            parts.append(f"Sorry, I didn't quite catch that. {spec.validation_error}.")
        else:
            parts.append(f"Sorry, I didn't quite catch that. I need {_format_hint(question)}.")
    parts.append(question.question)
    return " ".join(parts)


def fatigue_guidance(score: float) -> str:
    """
    Guidance text for a fatigue score (empty below 0.25).

    Examples:
        >>> fatigue_guidance(0.1)
        ''
        >>> fatigue_guidance(0.8).startswith('TOPIC CHANGE RECOMMENDED')
        True
    """
    for lower_bound, text in FATIGUE_TIERS:
        if score >= lower_bound:
            return text
    return ""


def build_conversation_prompt(user_id: str, memories: Sequence[str] = (),
                              guidance: str = "", base_prompt: Optional[str] = None) -> str:
    """
    System prompt for the general conversation turn.

    The model must answer with a JSON object so the end-of-call flag can
    be read without a second call.
    """
    sections = [
        base_prompt or (
            f"You are a warm, patient companion having a phone conversation with user {user_id}. "
            "Give thoughtful, contextual responses based on the conversation history "
            "and any relevant memories from past interactions. Keep replies short enough to be spoken aloud."
        )
    ]

    if memories:
        memory_lines = "\n".join(f"{i}. {m}" for i, m in enumerate(memories, start=1))
        sections.append(
            "# RELEVANT MEMORIES FROM PAST CONVERSATIONS\n"
            f"{memory_lines}\n\n"
            "Use these memories to provide continuity and personalization."
        )

    if guidance:
        sections.append(guidance)

    sections.append(
        "# OUTPUT FORMAT\n"
        "Respond with ONLY a JSON object (no markdown):\n"
        '{"response": "<what you say to the user>", "is_end_call_detected": <true|false>}\n'
        "Set is_end_call_detected to true when the user is saying goodbye or wants to end the call."
    )
    return "\n\n".join(sections)


def build_reply_intent_prompt(raw_answer: str) -> str:
    return (
        "Classify the following user message as exactly one of: ANSWERING, ASKING, REFUSING.\n"
        "ANSWERING = the user is attempting to give an answer, even if poorly formatted.\n"
        "ASKING = the user is asking a clarifying question.\n"
        "REFUSING = the user is explicitly declining to answer.\n"
        "Respond with only the classification word, nothing else.\n\n"
        f'User message: "{raw_answer}"'
    )


def build_extraction_prompt(question: Question, raw_answer: str) -> str:
    return (
        f'The user was asked: "{question.question}"\n'
        f"Expected answer format: {_format_hint(question)}\n"
        f'The user responded: "{raw_answer}"\n\n'
        f"Extract a valid {question.kind.value} answer from their response. "
        'Return only the extracted value (e.g. "yes", "no", "7", or a short text). '
        f"If no valid answer can be extracted, respond with exactly: {CANNOT_EXTRACT}"
    )


def build_follow_up_prompt(question: Question, validated_answer: str) -> str:
    return (
        f'A health check patient answered "{validated_answer}" to the question: "{question.question}".\n'
        "Does this answer warrant a brief follow-up question to gather more useful health information?\n"
        "If yes, return a JSON object with this exact shape (no markdown, no explanation):\n"
        f'{{"question": "...", "category": "{question.category.value}", "context": "..."}}\n'
        f"If no follow-up is needed, respond with exactly: {NO_FOLLOW_UP}"
    )
