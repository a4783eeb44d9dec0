"""
Intent classifier - decide whether a user message is worth a memory lookup

Pure, deterministic classification of the latest user message. Used only
to gate retrieval cost; it never changes what the user hears directly.

Also owns the length-aware similarity threshold used by the Topic Tracker,
so terse replies don't register as topic changes.
"""

import logging
import re

from carecall.contracts import IntentClassification

logger = logging.getLogger(__name__)

# Whole-message patterns that carry no topical content
FILLER_PATTERNS = [
    re.compile(r"^(ok|okay|sure|yes|no|yep|yeah|nope|alright|got it|thanks|thank you)\.?$", re.IGNORECASE),
    re.compile(r"^(hmm|umm|uh|ah|oh|well)\.?$", re.IGNORECASE),
]
BACKCHANNEL_PATTERN = re.compile(
    r"^(uh-?huh|mm-?hmm|mhm|right|i see|makes sense|interesting|yeah|yep|yup|ok|okay|got it|sure)\.?$",
    re.IGNORECASE,
)

# Words that never make a message substantive on their own
FUNCTION_WORDS = {
    'a', 'an', 'the', 'and', 'or', 'but', 'so', 'to', 'of', 'in', 'on', 'at',
    'it', 'is', 'i', 'me', 'my', 'you', 'we', 'oh', 'ah', 'um', 'uh', 'hmm',
    'ok', 'okay', 'yes', 'no', 'yeah', 'yep', 'well', 'just', 'really', 'very',
}

MIN_RAG_WORDS = 5

LENGTH_SHORT = "short"
LENGTH_MEDIUM = "medium"
LENGTH_LONG = "long"

_WORD_PATTERN = re.compile(r"[A-Za-z']+")


def word_count(message: str) -> int:
    return len(message.split())


def length_bucket(count: int) -> str:
    if count <= MIN_RAG_WORDS:
        return LENGTH_SHORT
    if count <= 15:
        return LENGTH_MEDIUM
    return LENGTH_LONG


def is_filler(message: str) -> bool:
    text = message.strip()
    return any(pattern.match(text) for pattern in FILLER_PATTERNS)


def is_backchannel(message: str) -> bool:
    return bool(BACKCHANNEL_PATTERN.match(message.strip()))


def has_substantive_content(message: str) -> bool:
    """True if any word of 3+ letters is not a function word, or it's a question"""
    if '?' in message:
        return True
    return any(
        len(word) >= 3 and word.lower() not in FUNCTION_WORDS
        for word in _WORD_PATTERN.findall(message)
    )


def classify_intent(message: str) -> IntentClassification:
    """
    Classify the latest user message.

    Retrieval runs only for messages longer than five words that are
    not filler or backchannel.

    Examples:
        >>> classify_intent("ok").should_process_rag
        False
        >>> classify_intent("I went to my granddaughter's recital last weekend").should_process_rag
        True
    """
    message = message or ""
    count = word_count(message)
    filler = is_filler(message)
    backchannel = is_backchannel(message)
    substantive = has_substantive_content(message)

    should_process_rag = count > MIN_RAG_WORDS and not filler and not backchannel and substantive

    classification = IntentClassification(
        should_process_rag=should_process_rag,
        is_continuation=not should_process_rag,
        is_short_response=count <= MIN_RAG_WORDS,
        message_length=count,
        length_bucket=length_bucket(count),
        has_substantive_content=substantive,
    )
    logger.debug(f"Intent: words={count}, rag={should_process_rag}, "
                 f"filler={filler}, backchannel={backchannel}")
    return classification


def similarity_threshold(message_length: int) -> float:
    """
    Topic-change threshold for a message of message_length words.

    Longer messages carry more signal, so they must stay closer to the
    topic centroid to count as "same topic".

    Examples:
        >>> similarity_threshold(4)
        0.6
        >>> similarity_threshold(12)
        0.65
        >>> similarity_threshold(20)
        0.7
    """
    if message_length > 15:
        return 0.70
    if message_length > 10:
        return 0.65
    return 0.60
