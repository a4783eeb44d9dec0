"""
Question Catalog Builder - Ordered health-check questions for one user

Responsibilities:
- Emit the fixed prefix (wellbeing, symptoms, sleep, notes)
- Append one condition question per active health condition
- Append one medication-adherence question per active medication
- Fall back to the fixed prefix when the profile lookup fails

Design principles:
- Deterministic: same source data always yields the same list
- Source order preserved for conditions and medications
- Lookup failures are logged and masked, never raised to the call
"""

import json
import logging
from pathlib import Path
from typing import List

from carecall.contracts import (
    HealthCondition,
    Medication,
    Question,
    QuestionCategory,
    QuestionSourceData,
)

logger = logging.getLogger(__name__)

CONDITION_QUESTION_PREFIX = "health_condition"
MEDICATION_QUESTION_PREFIX = "medication_tracking"


def fixed_questions() -> List[Question]:
    """The four questions every health check starts with."""
    return [
        Question.scale(
            "overall_wellbeing",
            "On a scale of 1-10, how are you feeling overall right now?",
            QuestionCategory.GENERAL,
            context="Helps understand the user's state of mind when they provided their other answers.",
        ),
        Question.text(
            "physical_symptoms_assessment",
            "Are you experiencing any physical symptoms at the moment? (e.g., pain, nausea, dizziness)",
            QuestionCategory.SYMPTOM,
            context="Used to identify any physical issues or discomfort the user is feeling right now.",
            optional=False,
        ),
        Question.scale(
            "sleep_assessment",
            "How would you rate your sleep last night from 1-10?",
            QuestionCategory.GENERAL,
            context="Helps determine how sleep quality might be affecting the user's energy or mood today.",
        ),
        Question.text(
            "extra_notes",
            "Is there anything else you'd like to note about how you're feeling?",
            QuestionCategory.GENERAL,
            context="Allows the user to provide additional details that weren't covered by other questions.",
            optional=False,
        ),
    ]


def condition_question(condition: HealthCondition) -> Question:
    return Question.text(
        f"{CONDITION_QUESTION_PREFIX}:{condition.id}",
        f"How has your {condition.condition} been lately? Any changes or concerns?",
        QuestionCategory.CONDITION_SPECIFIC,
        context="Tracks the status of a pre-existing condition to identify flare-ups or improvements over time.",
        optional=True,
        related_to=condition.id,
    )


def medication_question(medication: Medication) -> Question:
    return Question.boolean(
        f"{MEDICATION_QUESTION_PREFIX}:{medication.id}",
        f"Have you taken your {medication.name} today?",
        QuestionCategory.MEDICATION,
        context="Tracks daily medication adherence to ensure the user is following their prescribed treatment plan.",
        related_to=medication.id,
    )


class JsonProfileSource:
    """
    Question source data read from a JSON profiles file.

    Layout:
        {
          "<userId>": {
            "health_conditions": [{"id": "...", "condition": "...", "is_active": true}],
            "medications": [{"id": "...", "name": "...", "is_active": true}]
          }
        }

    Inactive entries are filtered out here; unknown users have no
    conditions or medications.
    """

    def __init__(self, profiles_path: str = "data/user_profiles.json"):
        self.profiles_path = Path(profiles_path)

    def load_question_source_data(self, user_id: str) -> QuestionSourceData:
        """
        Raises:
            FileNotFoundError: If the profiles file doesn't exist
            ValueError: If the file is not valid JSON
        """
        if not self.profiles_path.exists():
            raise FileNotFoundError(f"User profiles not found: {self.profiles_path}")

        with open(self.profiles_path, 'r') as f:
            profiles = json.load(f)

        profile = profiles.get(user_id, {})
        conditions = tuple(
            HealthCondition(id=str(c['id']), condition=c['condition'])
            for c in profile.get('health_conditions', [])
            if c.get('is_active', True)
        )
        medications = tuple(
            Medication(id=str(m['id']), name=m['name'])
            for m in profile.get('medications', [])
            if m.get('is_active', True)
        )
        return QuestionSourceData(active_conditions=conditions, active_medications=medications)


class QuestionCatalogBuilder:
    """Builds the ordered question list for a user's health check"""

    def __init__(self, source):
        """
        Args:
            source: Object with load_question_source_data(user_id) -> QuestionSourceData

        Raises:
            TypeError: If source lacks load_question_source_data()
        """
        if not callable(getattr(source, 'load_question_source_data', None)):
            raise TypeError("source must have callable load_question_source_data() method")
        self.source = source

    def build(self, user_id: str) -> List[Question]:
        """
        Ordered question list for user_id.

        Always starts with fixed_questions(). If the source lookup fails
        the fixed prefix alone is returned.
        """
        questions = fixed_questions()

        try:
            data = self.source.load_question_source_data(user_id)
        except Exception as e:
            logger.error(f"Question source lookup failed for user {user_id}: {type(e).__name__}: {e}")
            logger.info(f"Using fixed catalog ({len(questions)} questions) for user {user_id}")
            return questions

        questions.extend(condition_question(c) for c in data.active_conditions)
        questions.extend(medication_question(m) for m in data.active_medications)

        logger.info(
            f"Built catalog for user {user_id}: {len(questions)} questions "
            f"({len(data.active_conditions)} conditions, {len(data.active_medications)} medications)"
        )
        return questions
