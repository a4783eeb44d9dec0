"""
End-of-call detector (keyword fallback).

Used only when the model's is_end_call_detected flag is unavailable
(generation failed or the reply was not the expected JSON object).
"""

import logging
import re

logger = logging.getLogger(__name__)

END_CALL_PATTERNS = [
    re.compile(r"\b(goodbye|bye|good\s*bye|see\s*you|talk\s*to\s*you\s*later|ttyl)\b", re.IGNORECASE),
    re.compile(r"\b(thank\s*you|thanks)\b.*\b(bye|goodbye|later)\b", re.IGNORECASE),
    re.compile(r"\b(have\s*to\s*go|need\s*to\s*go|gotta\s*go|must\s*go)\b", re.IGNORECASE),
    re.compile(r"\b(that'?s?\s*all|that'?s?\s*it|nothing\s*else)\b", re.IGNORECASE),
    re.compile(r"\b(end\s*(the\s*)?call|hang\s*up)\b", re.IGNORECASE),
]

# Health-check exit intent: phrases always exit, bare words only exit when
# the reply is not a valid answer or is at most SHORT_EXIT_WORDS words long
EXIT_PHRASE_PATTERN = re.compile(
    r"\b(i have to go|i need to go|skip all|i'?m done|i am done|good\s*bye)\b", re.IGNORECASE
)
EXIT_WORD_PATTERN = re.compile(r"\b(stop|quit|bye)\b", re.IGNORECASE)
SHORT_EXIT_WORDS = 3


class EndCallDetector:
    """Keyword/regex end-of-call detection"""

    def __init__(self, patterns=None):
        self.patterns = patterns if patterns is not None else END_CALL_PATTERNS

    def detect(self, message: str) -> bool:
        if not message:
            return False
        detected = any(pattern.search(message) for pattern in self.patterns)
        if detected:
            logger.info(f"End of call phrase detected: {message[:80]!r}")
        return detected


def is_exit_intent(reply: str, is_valid_answer: bool = False) -> bool:
    """
    True if a health-check reply asks to stop the check.

    Args:
        reply: User's reply text
        is_valid_answer: Whether the reply validates for the current question

    Examples:
        >>> is_exit_intent("Sorry, I need to go now")
        True
        >>> is_exit_intent("quite good, maybe a 7")
        False
        >>> is_exit_intent("I can't stop coughing", is_valid_answer=True)
        False
    """
    normalized = (reply or "").strip()
    if EXIT_PHRASE_PATTERN.search(normalized):
        return True
    if EXIT_WORD_PATTERN.search(normalized):
        return not is_valid_answer or len(normalized.split()) <= SHORT_EXIT_WORDS
    return False
