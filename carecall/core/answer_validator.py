"""
Answer Validator - Validate raw answers against a question's expected shape

Responsibilities:
- Scale: extract the first integer, check it lies in [min, max]
- Boolean: match an affirmative/negative vocabulary, normalize to 'yes'/'no'
- Text: accept any non-empty answer; optional questions accept empty/'skip'

Design principles:
- Pure functions, one dispatch on question.kind
- Structured results only: nothing escapes as an exception
- Error strings are written for the retry prompt, not for logs
"""

import logging
import re
from typing import Optional

from carecall.contracts import NOT_ANSWERED, Question, QuestionKind, ValidationResult

logger = logging.getLogger(__name__)

# Boolean normalization mappings
TRUE_VALUES = {'yes', 'y', 'yeah', 'yep', 'yup', 'true', '1', 'sure', 'i did', 'i have'}
FALSE_VALUES = {'no', 'n', 'nope', 'nah', 'false', '0', "i didn't", 'i did not', "i haven't", 'not yet'}

# Optional text answers meaning "nothing to add"
SKIP_VALUES = {'', 'skip', 'pass', 'n/a'}

NUMBER_WORDS = {
    'zero': 0, 'one': 1, 'two': 2, 'three': 3, 'four': 4, 'five': 5,
    'six': 6, 'seven': 7, 'eight': 8, 'nine': 9, 'ten': 10,
    'eleven': 11, 'twelve': 12, 'thirteen': 13, 'fourteen': 14, 'fifteen': 15,
    'sixteen': 16, 'seventeen': 17, 'eighteen': 18, 'nineteen': 19, 'twenty': 20,
}

_INTEGER_PATTERN = re.compile(r'-?\d+')
_WORD_PATTERN = re.compile(r"[a-z]+")
_EDGE_PUNCTUATION = " \t\n.,!?;:'\"()"


def extract_integer(text: str) -> Optional[int]:
    """
    First integer in text, else the first number word (zero..twenty).

    Examples:
        >>> extract_integer("I'd say 7, maybe 8")
        7
        >>> extract_integer("about six")
        6
        >>> extract_integer("pretty good") is None
        True
    """
    match = _INTEGER_PATTERN.search(text)
    if match:
        return int(match.group())
    for word in _WORD_PATTERN.findall(text.lower()):
        if word in NUMBER_WORDS:
            return NUMBER_WORDS[word]
    return None


def validate_scale(question: Question, answer: str) -> ValidationResult:
    low, high = question.min_value, question.max_value
    value = extract_integer(answer)
    if value is None:
        return ValidationResult(
            is_valid=False,
            validated_answer=answer,
            error=f"Please provide a number between {low} and {high}",
        )
    if value < low or value > high:
        return ValidationResult(
            is_valid=False,
            validated_answer=str(value),
            error=f"Please provide a number between {low} and {high}",
        )
    return ValidationResult(is_valid=True, validated_answer=str(value))


def validate_boolean(question: Question, answer: str) -> ValidationResult:
    normalized = answer.strip(_EDGE_PUNCTUATION).lower()
    if normalized in TRUE_VALUES:
        return ValidationResult(is_valid=True, validated_answer='yes')
    if normalized in FALSE_VALUES:
        return ValidationResult(is_valid=True, validated_answer='no')
    return ValidationResult(
        is_valid=False,
        validated_answer=answer,
        error="Please answer with yes or no",
    )


def validate_text(question: Question, answer: str) -> ValidationResult:
    trimmed = answer.strip()
    if question.optional and trimmed.strip(_EDGE_PUNCTUATION).lower() in SKIP_VALUES:
        return ValidationResult(is_valid=True, validated_answer=NOT_ANSWERED)
    if not trimmed:
        return ValidationResult(
            is_valid=False,
            validated_answer=answer,
            error="Please provide an answer",
        )
    return ValidationResult(is_valid=True, validated_answer=trimmed)


_VALIDATORS = {
    QuestionKind.SCALE: validate_scale,
    QuestionKind.BOOLEAN: validate_boolean,
    QuestionKind.TEXT: validate_text,
}


def validate(question: Question, raw_answer) -> ValidationResult:
    """
    Validate a raw answer for a question.

    Never raises. Non-string answers, unknown kinds and unexpected failures
    all produce an invalid ValidationResult.

    Args:
        question: Question being answered
        raw_answer: User's reply text

    Returns:
        ValidationResult

    Examples:
        >>> from carecall.contracts import QuestionCategory
        >>> q = Question.scale('sleep', 'Sleep 1-10?', QuestionCategory.GENERAL)
        >>> validate(q, 'a solid 8').validated_answer
        '8'
        >>> validate(q, '12').is_valid
        False
    """
    if raw_answer is None:
        raw_answer = ''
    if not isinstance(raw_answer, str):
        logger.warning(f"Non-string answer ({type(raw_answer).__name__}) treated as text")
        raw_answer = str(raw_answer)

    validator = _VALIDATORS.get(getattr(question, 'kind', None))
    if validator is None:
        logger.warning(f"No validator for question kind: {getattr(question, 'kind', None)}")
        return ValidationResult(is_valid=False, validated_answer=raw_answer,
                                error="Unsupported question type")

    try:
        result = validator(question, raw_answer)
    except Exception as e:
        logger.error(f"Validator crashed for {getattr(question, 'id', '?')}: {type(e).__name__}: {e}")
        return ValidationResult(is_valid=False, validated_answer=raw_answer,
                                error="Could not understand the answer")

    logger.debug(f"Validated {question.id}: valid={result.is_valid}, answer={result.validated_answer!r}")
    return result
