"""
Answer Interpreter - LLM-assisted reading of health-check replies

Responsibilities:
- Classify an invalid reply as ANSWERING | ASKING | REFUSING
- Extract a usable value from a loosely phrased answer
- Propose one optional follow-up question after the last answer

Design principles:
- Consulted only after deterministic validation fails (or for follow-ups)
- Every failure degrades to the deterministic path:
  classification -> ANSWERING, extraction -> None, follow-up -> None
- Extracted values are returned raw; the caller re-validates them
"""

import json
import logging
import time
from typing import Optional

from carecall.contracts import Question, QuestionCategory
from carecall.utils.prompt_builder import (
    CANNOT_EXTRACT,
    NO_FOLLOW_UP,
    REPLY_ANSWERING,
    VALID_REPLY_INTENTS,
    build_extraction_prompt,
    build_follow_up_prompt,
    build_reply_intent_prompt,
)

logger = logging.getLogger(__name__)

FOLLOW_UP_PREFIX = "follow_up_"


class AnswerInterpreter:
    """Wraps the language model for reply classification and extraction"""

    def __init__(self, llm, temperature: float = 0.0, max_tokens: int = 64):
        """
        Args:
            llm: Object with generate(system_prompt, messages, max_tokens=, temperature=)
                 and generate_json(...)
            temperature: Sampling temperature (default 0.0)
            max_tokens: Max tokens for classification/extraction

        Raises:
            TypeError: If llm lacks generate() or generate_json()
        """
        if not callable(getattr(llm, 'generate', None)):
            raise TypeError("llm must have callable generate() method")
        if not callable(getattr(llm, 'generate_json', None)):
            raise TypeError("llm must have callable generate_json() method")

        self.llm = llm
        self.temperature = temperature
        self.max_tokens = max_tokens

        logger.info(f"Answer Interpreter initialized (temp={temperature}, max_tokens={max_tokens})")

    def classify_reply(self, raw_answer: str) -> str:
        """ANSWERING | ASKING | REFUSING (ANSWERING on any failure)"""
        try:
            content = self.llm.generate(
                build_reply_intent_prompt(raw_answer), [],
                max_tokens=8, temperature=self.temperature,
            )
        except Exception as e:
            logger.error(f"Reply classification failed: {type(e).__name__}: {e}")
            return REPLY_ANSWERING

        intent = str(content).strip().strip('."\'').upper()
        if intent not in VALID_REPLY_INTENTS:
            logger.debug(f"Unrecognized reply intent {intent!r}, defaulting to ANSWERING")
            return REPLY_ANSWERING
        return intent

    def extract_answer(self, question: Question, raw_answer: str) -> Optional[str]:
        """Candidate value for question, or None if nothing usable"""
        try:
            content = self.llm.generate(
                build_extraction_prompt(question, raw_answer), [],
                max_tokens=self.max_tokens, temperature=self.temperature,
            )
        except Exception as e:
            logger.error(f"Answer extraction failed for {question.id}: {type(e).__name__}: {e}")
            return None

        extracted = str(content).strip().strip('"')
        if not extracted or extracted == CANNOT_EXTRACT:
            return None
        logger.info(f"Extracted candidate for {question.id}: {extracted!r}")
        return extracted

    def generate_follow_up(self, question: Question, validated_answer: str,
                           question_index: int) -> Optional[Question]:
        """
        One optional free-text follow-up, or None.

        Returns:
            Question with id 'follow_up_<index>_<ms>' and the source question's
            category unless the model names a valid one.
        """
        try:
            content = self.llm.generate_json(
                build_follow_up_prompt(question, validated_answer), [],
                max_tokens=128, temperature=self.temperature,
            )
        except Exception as e:
            logger.error(f"Follow-up generation failed: {type(e).__name__}: {e}")
            return None

        text = str(content).strip()
        if not text or NO_FOLLOW_UP in text:
            return None

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"Follow-up output is not JSON: {e}")
            return None

        if not isinstance(parsed, dict) or not parsed.get('question'):
            logger.warning("Follow-up JSON missing 'question'")
            return None

        try:
            category = QuestionCategory(parsed.get('category', question.category.value))
        except ValueError:
            category = question.category

        follow_up = Question.text(
            f"{FOLLOW_UP_PREFIX}{question_index}_{int(time.time() * 1000)}",
            str(parsed['question']),
            category,
            context=str(parsed.get('context', '')),
            optional=True,
        )
        logger.info(f"Follow-up proposed: {follow_up.question!r}")
        return follow_up
