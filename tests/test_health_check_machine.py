"""
Unit tests for the Health Check Machine

Tests the command lifecycle (start, resume, reattach), retries, exit
intent, finalize and failure masking with mocked collaborators.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from carecall.commands import ResumeHealthCheck, StartHealthCheck
from carecall.contracts import Medication, NOT_ANSWERED, Question, QuestionCategory
from carecall.core.health_check_machine import HealthCheckMachine
from carecall.core.question_catalog import fixed_questions, medication_question
from carecall.core.session_manager import HealthCheckSessionManager
from carecall.persistence import InMemorySessionStore
from carecall.results import IllegalCommand, TurnResult
from carecall.utils.prompt_builder import (
    CLOSING_FALLBACK_MESSAGE,
    CLOSING_MESSAGE,
    OPENING_LINE,
    REPLY_ANSWERING,
    REPLY_ASKING,
    REPLY_REFUSING,
)


# ========================
# Mock Modules
# ========================

class MockLLM:
    """Mock language model; empty output makes the machine render questions itself"""

    def __init__(self, output="", error=None):
        self.output = output
        self.error = error
        self.prompts = []

    def generate(self, system_prompt, messages=None, max_tokens=256, temperature=0.3):
        self.prompts.append(system_prompt)
        if self.error:
            raise self.error
        return self.output

    def generate_json(self, system_prompt, messages=None, max_tokens=256, temperature=0.0):
        return self.generate(system_prompt, messages, max_tokens, temperature)


class MockCatalog:
    """Mock catalog builder"""

    def __init__(self, questions=None, error=None):
        self.questions = questions if questions is not None else fixed_questions()
        self.error = error

    def build(self, user_id):
        if self.error:
            raise self.error
        return list(self.questions)


class MockResultsSink:
    """Mock persistence collaborator"""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def persist_health_check_results(self, user_id, conversation_id, parsed_answers, answers=None):
        if self.error:
            raise self.error
        self.calls.append((user_id, conversation_id, parsed_answers, answers))
        return f"/tmp/{user_id}/health_check.json"


class MockInterpreter:
    """Mock answer interpreter with scripted outputs"""

    def __init__(self, intent=REPLY_ANSWERING, extracted=None, follow_up=None):
        self.intent = intent
        self.extracted = extracted
        self.follow_up = follow_up
        self.extract_calls = 0

    def classify_reply(self, raw_answer):
        return self.intent

    def extract_answer(self, question, raw_answer):
        self.extract_calls += 1
        return self.extracted

    def generate_follow_up(self, question, validated_answer, question_index):
        follow_up, self.follow_up = self.follow_up, None
        return follow_up


KEY = "health_check:u-1:c-1"


def _machine(store=None, llm=None, catalog=None, sink=None, **kwargs):
    store = store if store is not None else InMemorySessionStore()
    return HealthCheckMachine(
        llm=llm or MockLLM(),
        session_manager=HealthCheckSessionManager(store),
        catalog_builder=catalog or MockCatalog(),
        results_sink=sink or MockResultsSink(),
        **kwargs,
    )


def _start(machine):
    return machine.handle(StartHealthCheck("u-1", "c-1"))


def _answer(machine, reply):
    return machine.handle(ResumeHealthCheck(KEY, reply))


# ========================
# Lifecycle
# ========================

def test_start_suspends_on_first_question():
    store = InMemorySessionStore()
    machine = _machine(store)

    result = _start(machine)

    assert isinstance(result, TurnResult)
    assert result.suspended
    assert not result.health_check_complete
    assert result.checkpoint_key == KEY
    assert result.system_output.startswith(OPENING_LINE)
    assert "how are you feeling overall" in result.system_output
    assert result.turn_metadata['question_index'] == 0
    assert result.turn_metadata['total_questions'] == 4
    assert store.get(KEY)['step'] == "await_answer"

    print("✓ Start test passed")


def test_llm_phrasing_used_when_available():
    llm = MockLLM(output="  Before we finish, how would you rate your day from 1 to 10?  ")
    result = _start(_machine(llm=llm))
    assert result.system_output == "Before we finish, how would you rate your day from 1 to 10?"
    assert OPENING_LINE in llm.prompts[0]


def test_valid_answer_advances():
    machine = _machine()
    _start(machine)
    result = _answer(machine, "I'd say a 7")

    assert result.suspended
    assert result.turn_metadata['question_index'] == 1
    assert result.turn_metadata['answers_recorded'] == 1
    assert "physical symptoms" in result.system_output
    assert not result.system_output.startswith(OPENING_LINE)


def test_retry_ceiling_records_invalid_answer():
    """Two out-of-range scale answers: one invalid record, attempt_count 2, index advanced once"""
    store = InMemorySessionStore()
    machine = _machine(store)
    _start(machine)

    first = _answer(machine, "15")
    assert first.turn_metadata['question_index'] == 0
    assert first.turn_metadata['question_attempts'] == 1
    assert "Please provide a number between 1 and 10" in first.system_output

    second = _answer(machine, "12")
    assert second.turn_metadata['question_index'] == 1
    assert second.turn_metadata['question_attempts'] == 0
    answers = store.get(KEY)['answers']
    assert len(answers) == 1
    assert answers[0]['attempt_count'] == 2
    assert answers[0]['is_valid'] is False
    assert answers[0]['validated_answer'] == "12"

    third = _answer(machine, "no, nothing today")
    assert third.turn_metadata['question_index'] == 2
    assert store.get(KEY)['answers'][1]['is_valid'] is True

    print("✓ Retry ceiling test passed")


def test_complete_run_persists_and_deletes_checkpoint():
    store = InMemorySessionStore()
    sink = MockResultsSink()
    questions = [fixed_questions()[0], medication_question(Medication("m1", "Metformin"))]
    machine = _machine(store, catalog=MockCatalog(questions), sink=sink)

    _start(machine)
    _answer(machine, "8")
    result = _answer(machine, "yep")

    assert result.health_check_complete
    assert not result.suspended
    assert result.system_output == CLOSING_MESSAGE
    assert store.get(KEY) is None

    report = result.report
    assert report.persisted
    assert report.parsed['health_log']['overall_wellbeing'] == 8
    assert report.parsed['medication_logs'] == [{'medication_id': "m1", 'medication_taken': True}]
    assert len(report.answers) == 2

    assert len(sink.calls) == 1
    user_id, conversation_id, parsed, answers = sink.calls[0]
    assert (user_id, conversation_id) == ("u-1", "c-1")
    assert parsed['metadata']['conversation_id'] == "c-1"
    assert len(answers) == 2


def test_invalid_ceiling_answers_not_persisted_as_records():
    questions = [fixed_questions()[0]]
    machine = _machine(catalog=MockCatalog(questions), max_retry_attempts=1)
    _start(machine)
    result = _answer(machine, "99")

    assert result.health_check_complete
    assert result.report.parsed['health_log']['overall_wellbeing'] is None
    assert result.report.answers[0]['is_valid'] is False


def test_exit_intent_finalizes_early():
    machine = _machine()
    _start(machine)
    _answer(machine, "7")
    result = _answer(machine, "sorry dear, I have to go")

    assert result.health_check_complete
    assert result.system_output == CLOSING_MESSAGE
    assert len(result.report.answers) == 1
    assert result.debug['exit_intent'] is True


def test_answers_containing_exit_words_are_recorded():
    machine = _machine()
    _start(machine)

    result = _answer(machine, "quite good actually, maybe a 7")
    assert not result.health_check_complete
    assert 'exit_intent' not in result.debug
    assert result.turn_metadata['question_index'] == 1

    result = _answer(machine, "I can't stop coughing since Tuesday")
    assert not result.health_check_complete
    assert result.turn_metadata['question_index'] == 2
    assert result.turn_metadata['answers_recorded'] == 2


def test_bare_stop_still_exits_on_text_question():
    machine = _machine()
    _start(machine)
    _answer(machine, "7")
    result = _answer(machine, "Please stop")

    assert result.health_check_complete
    assert result.debug['exit_intent'] is True


def test_conversation_id_with_colon_round_trips():
    machine = _machine()
    started = machine.handle(StartHealthCheck("u-1", "call:abc"))
    assert started.checkpoint_key == "health_check:u-1:call:abc"

    result = machine.handle(ResumeHealthCheck(started.checkpoint_key, "7"))
    assert isinstance(result, TurnResult)
    assert result.suspended
    assert result.turn_metadata['question_index'] == 1


def test_persistence_failure_still_completes():
    sink = MockResultsSink(error=IOError("disk full"))
    machine = _machine(catalog=MockCatalog([fixed_questions()[0]]), sink=sink)
    _start(machine)
    result = _answer(machine, "6")

    assert result.health_check_complete
    assert result.system_output == CLOSING_FALLBACK_MESSAGE
    assert result.report.persisted is False
    assert result.debug['errors'][0]['context'] == "persist"


# ========================
# Invalid lifecycles
# ========================

def test_resume_after_checkpoint_deleted():
    store = InMemorySessionStore()
    machine = _machine(store)
    _start(machine)
    store.delete(KEY)

    result = _answer(machine, "7")
    assert isinstance(result, IllegalCommand)
    assert result.command_type == "ResumeHealthCheck"


def test_resume_with_malformed_key():
    result = _machine().handle(ResumeHealthCheck("rag:topic:c-1", "7"))
    assert isinstance(result, IllegalCommand)
    assert "Malformed" in result.reason


def test_resume_without_start():
    assert isinstance(_answer(_machine(), "7"), IllegalCommand)


def test_start_twice_reattaches():
    machine = _machine()
    _start(machine)
    _answer(machine, "7")

    result = _start(machine)
    assert result.suspended
    assert result.turn_metadata['question_index'] == 1
    assert result.turn_metadata['answers_recorded'] == 1
    assert result.debug['reattached'] is True


# ========================
# Collaborator failures
# ========================

def test_catalog_failure_uses_fixed_prefix():
    machine = _machine(catalog=MockCatalog(error=RuntimeError("profile service down")))
    result = _start(machine)
    assert result.turn_metadata['total_questions'] == 4
    assert result.debug['errors'][0]['context'] == "catalog"


def test_llm_failure_renders_question():
    result = _start(_machine(llm=MockLLM(error=RuntimeError("CUDA OOM"))))
    assert result.system_output.startswith(OPENING_LINE)
    assert result.debug['rendered_fallback'] is True
    assert result.debug['errors'][0]['context'] == "ask"


def test_constructor_validation():
    with pytest.raises(TypeError):
        HealthCheckMachine(object(), HealthCheckSessionManager(InMemorySessionStore()),
                           MockCatalog(), MockResultsSink())
    with pytest.raises(TypeError):
        _machine(sink=object())
    with pytest.raises(ValueError):
        _machine(max_retry_attempts=0)


# ========================
# Answer interpreter
# ========================

def test_clarification_does_not_consume_attempt():
    store = InMemorySessionStore()
    machine = _machine(store, answer_interpreter=MockInterpreter(intent=REPLY_ASKING))
    _start(machine)

    result = _answer(machine, "what do you mean by overall?")
    assert result.turn_metadata['question_index'] == 0
    assert result.turn_metadata['question_attempts'] == 0
    assert result.system_output.startswith("Good question.")
    assert store.get(KEY)['pending_clarification'] is None


def test_refusal_skips_question():
    store = InMemorySessionStore()
    machine = _machine(store, answer_interpreter=MockInterpreter(intent=REPLY_REFUSING))
    _start(machine)

    result = _answer(machine, "I'd rather not say")
    assert result.turn_metadata['question_index'] == 1
    answer = store.get(KEY)['answers'][0]
    assert answer['validated_answer'] == NOT_ANSWERED
    assert answer['is_valid'] is False


def test_extraction_rescues_first_attempt():
    interpreter = MockInterpreter(extracted="6")
    store = InMemorySessionStore()
    machine = _machine(store, answer_interpreter=interpreter)
    _start(machine)

    result = _answer(machine, "somewhere in the middle, a bit above half")
    assert result.turn_metadata['question_index'] == 1
    assert store.get(KEY)['answers'][0]['validated_answer'] == "6"
    assert store.get(KEY)['answers'][0]['is_valid'] is True
    assert interpreter.extract_calls == 1


def test_follow_up_question_appended():
    follow_up = Question.text("follow_up_0_1", "Which medication was it?", QuestionCategory.MEDICATION)
    questions = [medication_question(Medication("m1", "Metformin"))]
    machine = _machine(
        catalog=MockCatalog(questions),
        answer_interpreter=MockInterpreter(follow_up=follow_up),
        max_follow_up_questions=1,
    )
    _start(machine)

    result = _answer(machine, "no")
    assert result.suspended
    assert result.system_output.endswith("Which medication was it?")
    assert result.turn_metadata['total_questions'] == 2

    result = _answer(machine, "skip")
    assert result.health_check_complete
    assert result.report.answers[-1]['validated_answer'] == NOT_ANSWERED
