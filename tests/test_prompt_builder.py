"""
Test prompt construction and deterministic question rendering

Run with: pytest tests/test_prompt_builder.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from carecall.contracts import Question, QuestionCategory
from carecall.core.question_catalog import fixed_questions
from carecall.utils.prompt_builder import (
    NO_FOLLOW_UP,
    OPENING_LINE,
    PromptBuildError,
    QuestionPromptSpec,
    build_conversation_prompt,
    build_follow_up_prompt,
    build_question_prompt,
    fatigue_guidance,
    render_question,
)

QUESTIONS = fixed_questions()
WELLBEING = QUESTIONS[0]
SYMPTOMS = QUESTIONS[1]


def test_render_opening_question():
    rendered = render_question(QuestionPromptSpec(WELLBEING, 1, 4))
    assert rendered == f"{OPENING_LINE} {WELLBEING.question}"


def test_render_later_question_has_no_opening():
    assert render_question(QuestionPromptSpec(SYMPTOMS, 2, 4)) == SYMPTOMS.question


def test_render_retry_with_and_without_reason():
    with_reason = render_question(QuestionPromptSpec(
        WELLBEING, 1, 4, attempts=1, validation_error="Please answer with a number between 1 and 10",
    ))
    assert with_reason.startswith("Sorry, I didn't quite catch that. Please answer with a number")
    assert OPENING_LINE not in with_reason

    without_reason = render_question(QuestionPromptSpec(WELLBEING, 1, 4, attempts=1))
    assert "I need a number between 1 and 10." in without_reason


def test_render_clarification():
    rendered = render_question(QuestionPromptSpec(WELLBEING, 1, 4, clarification="What scale?"))
    assert rendered == f"Good question. {WELLBEING.question}"


def test_question_prompt_sections():
    prompt = build_question_prompt(QuestionPromptSpec(
        SYMPTOMS, 2, 4,
        previous_answers=((WELLBEING.question, "7"),),
        attempts=1,
        validation_error="An answer is required",
    ))
    assert "Progress: Question 2 of 4." in prompt
    assert "## Starting Health Check" not in prompt
    assert f"- {WELLBEING.question}: 7" in prompt
    assert "Category: symptom" in prompt
    assert "Reason: An answer is required" in prompt


def test_question_prompt_clarification_replaces_current_question():
    prompt = build_question_prompt(QuestionPromptSpec(WELLBEING, 1, 4, clarification="Why?"))
    assert "## Clarification Request" in prompt
    assert "## Current Question" not in prompt
    assert "## Starting Health Check" not in prompt


@pytest.mark.parametrize("kwargs", [
    {'question': "not a question", 'question_number': 1, 'total_questions': 4},
    {'question': WELLBEING, 'question_number': 0, 'total_questions': 4},
    {'question': WELLBEING, 'question_number': 5, 'total_questions': 4},
    {'question': WELLBEING, 'question_number': 1, 'total_questions': 4, 'attempts': -1},
])
def test_invalid_prompt_spec(kwargs):
    with pytest.raises(PromptBuildError):
        QuestionPromptSpec(**kwargs)


@pytest.mark.parametrize("score,prefix", [
    (0.0, ""),
    (0.24, ""),
    (0.25, "TOPIC ENGAGEMENT NOTE"),
    (0.6, "TOPIC FRESHNESS NEEDED"),
    (1.0, "TOPIC CHANGE RECOMMENDED"),
])
def test_fatigue_guidance_tiers(score, prefix):
    guidance = fatigue_guidance(score)
    if prefix:
        assert guidance.startswith(prefix)
    else:
        assert guidance == ""


def test_conversation_prompt():
    prompt = build_conversation_prompt(
        "u-1", memories=["Loves jazz", "Has a cat named Milo"], guidance=fatigue_guidance(0.8),
    )
    assert "user u-1" in prompt
    assert "1. Loves jazz\n2. Has a cat named Milo" in prompt
    assert "TOPIC CHANGE RECOMMENDED" in prompt
    assert '"is_end_call_detected"' in prompt


def test_conversation_prompt_keeps_caller_base_prompt():
    prompt = build_conversation_prompt("u-1", base_prompt="You are Rosa, a companion.")
    assert prompt.startswith("You are Rosa, a companion.")
    assert "RELEVANT MEMORIES" not in prompt
    assert prompt.rstrip().endswith("wants to end the call.")


def test_follow_up_prompt_names_category():
    question = Question.boolean("medication:med-1", "Did you take your Metformin today?",
                                QuestionCategory.MEDICATION)
    prompt = build_follow_up_prompt(question, "no")
    assert '"category": "medication"' in prompt
    assert NO_FOLLOW_UP in prompt
