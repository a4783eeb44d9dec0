"""
Test Question Catalog Builder

Run with: pytest tests/test_question_catalog.py
"""

import sys
import os
import json
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from carecall.contracts import (
    HealthCondition,
    Medication,
    Question,
    QuestionCategory,
    QuestionKind,
    QuestionSourceData,
)
from carecall.core.question_catalog import JsonProfileSource, QuestionCatalogBuilder, fixed_questions


class MockSource:
    """Mock question source"""

    def __init__(self, data=None, error=None):
        self.data = data or QuestionSourceData()
        self.error = error
        self.calls = []

    def load_question_source_data(self, user_id):
        self.calls.append(user_id)
        if self.error:
            raise self.error
        return self.data


def test_fixed_prefix():
    questions = fixed_questions()
    assert [q.id for q in questions] == [
        "overall_wellbeing", "physical_symptoms_assessment", "sleep_assessment", "extra_notes"
    ]
    assert questions[0].kind == QuestionKind.SCALE
    assert (questions[0].min_value, questions[0].max_value) == (1, 10)
    assert questions[1].category == QuestionCategory.SYMPTOM
    assert all(q.context for q in questions)


def test_conditions_then_medications_in_source_order():
    source = MockSource(QuestionSourceData(
        active_conditions=(HealthCondition("c1", "arthritis"), HealthCondition("c2", "asthma")),
        active_medications=(Medication("m1", "Metformin"),),
    ))
    questions = QuestionCatalogBuilder(source).build("user-1")

    assert len(questions) == 7
    assert [q.id for q in questions[4:]] == [
        "health_condition:c1", "health_condition:c2", "medication_tracking:m1"
    ]
    assert "arthritis" in questions[4].question
    assert questions[4].optional
    assert questions[4].related_to == "c1"
    assert questions[6].kind == QuestionKind.BOOLEAN
    assert "Metformin" in questions[6].question
    assert source.calls == ["user-1"]

    print("✓ Catalog ordering test passed")


def test_lookup_failure_falls_back_to_fixed_prefix():
    builder = QuestionCatalogBuilder(MockSource(error=RuntimeError("db down")))
    questions = builder.build("user-1")
    assert [q.id for q in questions] == [q.id for q in fixed_questions()]


def test_deterministic():
    source = MockSource(QuestionSourceData(active_medications=(Medication("m1", "Aspirin"),)))
    builder = QuestionCatalogBuilder(source)
    assert builder.build("u") == builder.build("u")


def test_builder_requires_source_method():
    with pytest.raises(TypeError):
        QuestionCatalogBuilder(object())


def test_question_dict_round_trip():
    for question in fixed_questions():
        assert Question.from_dict(question.to_dict()) == question


def test_json_profile_source(tmp_path):
    profiles = {
        "u-1": {
            "health_conditions": [
                {"id": "c1", "condition": "gout", "is_active": True},
                {"id": "c2", "condition": "old injury", "is_active": False},
            ],
            "medications": [{"id": 42, "name": "Lisinopril"}],
        }
    }
    path = tmp_path / "profiles.json"
    path.write_text(json.dumps(profiles))

    source = JsonProfileSource(str(path))
    data = source.load_question_source_data("u-1")
    assert data.active_conditions == (HealthCondition("c1", "gout"),)
    assert data.active_medications == (Medication("42", "Lisinopril"),)

    assert source.load_question_source_data("nobody") == QuestionSourceData()


def test_json_profile_source_missing_file(tmp_path):
    source = JsonProfileSource(str(tmp_path / "missing.json"))
    with pytest.raises(FileNotFoundError):
        source.load_question_source_data("u-1")
