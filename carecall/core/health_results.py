"""
Health Results - Parse recorded answers into domain records at Finalize

Responsibilities:
- Turn valid AnswerRecords into a health log (wellbeing, sleep, symptoms, notes)
- One medication log per answered medication question
- One condition log per answered condition question
- Add metadata (user, conversation, generated_at)

Design principles:
- Pure transformation (no I/O, no LLM)
- Only valid answers become records; 'not answered' is skipped
- Dispatch on question id and category, never on question wording
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from carecall.contracts import NOT_ANSWERED, QuestionCategory

logger = logging.getLogger(__name__)

# Symptom answers meaning "no symptoms"
NO_SYMPTOM_VALUES = {'no', 'none', 'nothing', 'nope', NOT_ANSWERED}

SCHEMA_VERSION = "1.0.0"


def _to_int(value: str):
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Scale answer is not an integer: {value!r}")
        return None


def parse_health_check_answers(answers) -> Dict[str, Any]:
    """
    Build domain records from AnswerRecords.

    Args:
        answers: Iterable of AnswerRecord (invalid ones are ignored)

    Returns:
        dict: {
            'health_log': {'overall_wellbeing', 'physical_symptoms',
                           'sleep_quality', 'general_notes'},
            'medication_logs': [{'medication_id', 'medication_taken'}],
            'health_condition_logs': [{'health_condition_id', 'symptoms', 'notes'}]
        }

    Example:
        >>> parsed = parse_health_check_answers(session.valid_answers())
        >>> parsed['health_log']['overall_wellbeing']
        7
    """
    health_log: Dict[str, Any] = {
        'overall_wellbeing': None,
        'physical_symptoms': [],
        'sleep_quality': None,
        'general_notes': None,
    }
    medication_logs: List[Dict[str, Any]] = []
    condition_logs: List[Dict[str, Any]] = []

    for record in answers:
        if not record.is_valid:
            continue
        answer = record.validated_answer
        if not answer or answer == NOT_ANSWERED:
            continue

        question = record.question
        if question.id == 'overall_wellbeing':
            health_log['overall_wellbeing'] = _to_int(answer)
        elif question.id == 'sleep_assessment':
            health_log['sleep_quality'] = _to_int(answer)
        elif question.id == 'extra_notes':
            health_log['general_notes'] = answer
        elif question.category == QuestionCategory.SYMPTOM:
            if answer.strip().lower() not in NO_SYMPTOM_VALUES:
                symptoms = [s.strip() for s in answer.split(',') if s.strip()]
                health_log['physical_symptoms'].extend(symptoms)
        elif question.category == QuestionCategory.MEDICATION and question.related_to:
            medication_logs.append({
                'medication_id': question.related_to,
                'medication_taken': answer.lower() == 'yes',
            })
        elif question.category == QuestionCategory.CONDITION_SPECIFIC and question.related_to:
            condition_logs.append({
                'health_condition_id': question.related_to,
                'symptoms': list(health_log['physical_symptoms']),
                'notes': answer,
            })
        else:
            logger.debug(f"No domain record for question {question.id}")

    return {
        'health_log': health_log,
        'medication_logs': medication_logs,
        'health_condition_logs': condition_logs,
    }


def format_results(user_id: str, conversation_id: str, parsed: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap parsed records with metadata for the persistence collaborator"""
    return {
        'schema_version': SCHEMA_VERSION,
        'metadata': {
            'user_id': user_id,
            'conversation_id': conversation_id,
            'generated_at': datetime.now(timezone.utc).isoformat(),
        },
        **parsed,
    }
