"""
Health Check Machine - Question-by-question health check (Functional Core)

Responsibilities:
- Build or reattach to the per-call HealthCheckSession
- Ask one question at a time and suspend until the user replies
- Validate replies with bounded retries, then advance
- Optionally consult an AnswerInterpreter (clarifications, refusals,
  extraction, follow-ups)
- Finalize: parse valid answers, hand them to persistence, close

Design principles:
- Explicit steps with a pure transition table (see machine_states)
- Suspension is serialization: the AwaitAnswer checkpoint is written to the
  Session Store and nothing runs until a ResumeHealthCheck arrives
- One question never blocks the call: after MAX_RETRY_ATTEMPTS invalid
  replies the last one is recorded as invalid and the index advances
- Collaborator failures (model, persistence, catalog lookup) are logged,
  recorded in debug['errors'] and masked behind a best-effort reply
"""

import logging
from typing import Any, Dict, List, Optional, Union

from carecall.commands import ResumeHealthCheck, StartHealthCheck
from carecall.contracts import NOT_ANSWERED
from carecall.core.answer_validator import validate
from carecall.core.health_check_session import AnswerRecord, HealthCheckSession
from carecall.core.health_results import format_results, parse_health_check_answers
from carecall.core.question_catalog import fixed_questions
from carecall.results import HealthCheckReport, IllegalCommand, TurnResult
from carecall.utils.end_call_detector import is_exit_intent
from carecall.utils.helpers import health_check_key, parse_health_check_key
from carecall.utils.machine_states import (
    HEALTH_CHECK_TRANSITIONS,
    Effect,
    HealthCheckEvent,
    HealthCheckStep,
    transition,
)
from carecall.utils.prompt_builder import (
    ALREADY_COMPLETED_MESSAGE,
    CLOSING_FALLBACK_MESSAGE,
    CLOSING_MESSAGE,
    REPLY_ASKING,
    REPLY_REFUSING,
    QuestionPromptSpec,
    build_question_prompt,
    render_question,
)

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 2
MAX_FOLLOW_UP_QUESTIONS = 0
RECENT_MESSAGE_COUNT = 4

# Upper bound on internal steps per turn (each turn ends at AwaitAnswer or Complete)
MAX_STEPS_PER_TURN = 50


class _TurnContext:
    """Per-turn scratch values consumed by effects (never persisted)"""

    def __init__(self, raw_answer: Optional[str] = None):
        self.raw_answer = raw_answer
        self.validated_answer: Optional[str] = None
        self.is_valid = False
        self.validation_error: Optional[str] = None
        self.output: Optional[str] = None
        self.report: Optional[HealthCheckReport] = None


class HealthCheckMachine:
    """
    Drives the structured health check.

    Functional core design:
    - Ephemeral per turn (collaborators cached, session state external)
    - handle() loads the checkpoint, steps until suspension or completion,
      and returns a TurnResult
    """

    def __init__(self, llm, session_manager, catalog_builder, results_sink,
                 answer_interpreter=None,
                 max_retry_attempts: int = MAX_RETRY_ATTEMPTS,
                 max_follow_up_questions: int = MAX_FOLLOW_UP_QUESTIONS,
                 recent_message_count: int = RECENT_MESSAGE_COUNT):
        """
        Args:
            llm: Object with generate(system_prompt, messages, max_tokens=, temperature=)
            session_manager: HealthCheckSessionManager
            catalog_builder: Object with build(user_id) -> list[Question]
            results_sink: Object with persist_health_check_results(user_id,
                conversation_id, parsed_answers, answers)
            answer_interpreter: Optional AnswerInterpreter
            max_retry_attempts: Replies allowed per question before advancing
            max_follow_up_questions: Follow-ups the interpreter may append
            recent_message_count: Conversation messages passed when asking

        Raises:
            TypeError: If any collaborator is missing a required method
            ValueError: If max_retry_attempts < 1 or max_follow_up_questions < 0
        """
        self._validate_modules(llm, session_manager, catalog_builder, results_sink, answer_interpreter)

        if max_retry_attempts < 1:
            raise ValueError("max_retry_attempts must be >= 1")
        if max_follow_up_questions < 0:
            raise ValueError("max_follow_up_questions must be >= 0")

        self.llm = llm
        self.sessions = session_manager
        self.catalog_builder = catalog_builder
        self.results_sink = results_sink
        self.interpreter = answer_interpreter
        self.max_retry_attempts = max_retry_attempts
        self.max_follow_up_questions = max_follow_up_questions
        self.recent_message_count = recent_message_count

        logger.info(
            f"Health Check Machine initialized (max_retry_attempts={max_retry_attempts}, "
            f"max_follow_ups={max_follow_up_questions}, interpreter={answer_interpreter is not None})"
        )

    def _validate_modules(self, llm, session_manager, catalog_builder, results_sink, answer_interpreter):
        """Validate module interfaces"""
        if not callable(getattr(llm, 'generate', None)):
            raise TypeError("llm must have callable generate() method")

        for method in ('load', 'load_by_key', 'create', 'save', 'delete'):
            if not callable(getattr(session_manager, method, None)):
                raise TypeError(f"session_manager must have callable {method}() method")

        if not callable(getattr(catalog_builder, 'build', None)):
            raise TypeError("catalog_builder must have callable build() method")

        if not callable(getattr(results_sink, 'persist_health_check_results', None)):
            raise TypeError("results_sink must have callable persist_health_check_results() method")

        if answer_interpreter is not None:
            for method in ('classify_reply', 'extract_answer', 'generate_follow_up'):
                if not callable(getattr(answer_interpreter, method, None)):
                    raise TypeError(f"answer_interpreter must have callable {method}() method")

    # ========================
    # Command handling
    # ========================

    def handle(self, command, recent_messages: Optional[List[Dict[str, str]]] = None
               ) -> Union[TurnResult, IllegalCommand]:
        """
        Process one command.

        Args:
            command: StartHealthCheck | ResumeHealthCheck
            recent_messages: Conversation so far ({'role', 'content'}), used
                only to phrase questions naturally

        Returns:
            TurnResult, or IllegalCommand for invalid lifecycles
        """
        recent_messages = list(recent_messages or [])[-self.recent_message_count:] if self.recent_message_count else []

        if isinstance(command, StartHealthCheck):
            return self._start(command, recent_messages)
        if isinstance(command, ResumeHealthCheck):
            return self._resume(command, recent_messages)

        return IllegalCommand(
            reason=f"Unsupported command: {type(command).__name__}",
            command_type=type(command).__name__,
        )

    def _start(self, command: StartHealthCheck, recent_messages) -> Union[TurnResult, IllegalCommand]:
        debug: Dict[str, Any] = {'errors': []}
        session = self.sessions.load(command.user_id, command.conversation_id)

        if session is not None and session.is_complete:
            return IllegalCommand(reason=ALREADY_COMPLETED_MESSAGE, command_type='StartHealthCheck')

        if session is not None and session.step == HealthCheckStep.AWAIT_ANSWER:
            logger.info(f"Reattaching to health check {health_check_key(session.user_id, session.conversation_id)} "
                        f"at question {session.current_question_index + 1}")
            debug['reattached'] = True
            self._advance(session, HealthCheckEvent.REATTACHED, _TurnContext())
            return self._run(session, _TurnContext(), recent_messages, debug)

        if session is not None:
            logger.warning(f"Discarding checkpoint in unexpected step {session.step.value}")

        try:
            questions = self.catalog_builder.build(command.user_id)
        except Exception as e:
            logger.error(f"Catalog build failed for {command.user_id}: {type(e).__name__}: {e}")
            debug['errors'].append({'context': 'catalog', 'error': str(e)})
            questions = fixed_questions()

        session = self.sessions.create(command.user_id, command.conversation_id, questions)
        self._advance(session, HealthCheckEvent.CATALOG_READY, _TurnContext())
        debug['started'] = True
        return self._run(session, _TurnContext(), recent_messages, debug)

    def _resume(self, command: ResumeHealthCheck, recent_messages) -> Union[TurnResult, IllegalCommand]:
        if parse_health_check_key(command.checkpoint_key) is None:
            return IllegalCommand(
                reason=f"Malformed checkpoint key: {command.checkpoint_key!r}",
                command_type='ResumeHealthCheck',
            )

        session = self.sessions.load_by_key(command.checkpoint_key)
        if session is None:
            return IllegalCommand(
                reason=f"No suspended health check for {command.checkpoint_key}",
                command_type='ResumeHealthCheck',
            )
        if session.step != HealthCheckStep.AWAIT_ANSWER:
            return IllegalCommand(
                reason=f"Health check is not awaiting an answer (step={session.step.value})",
                command_type='ResumeHealthCheck',
            )

        debug: Dict[str, Any] = {'errors': []}
        ctx = _TurnContext(raw_answer=command.user_reply or '')

        answer_is_valid = validate(session.current_question, ctx.raw_answer).is_valid
        if is_exit_intent(ctx.raw_answer, is_valid_answer=answer_is_valid):
            logger.info(f"Exit intent during health check for {session.user_id}, finalizing early")
            debug['exit_intent'] = True
            self._advance(session, HealthCheckEvent.EXIT_REQUESTED, ctx)
        else:
            self._advance(session, HealthCheckEvent.ANSWER_RECEIVED, ctx)

        return self._run(session, ctx, recent_messages, debug)

    # ========================
    # Step loop
    # ========================

    def _run(self, session: HealthCheckSession, ctx: _TurnContext,
             recent_messages, debug: Dict[str, Any]) -> TurnResult:
        """Step until the machine suspends (AwaitAnswer) or completes"""
        for _ in range(MAX_STEPS_PER_TURN):
            step = session.step

            if step == HealthCheckStep.AWAIT_ANSWER:
                return self._build_turn_result(session, ctx.output, suspended=True, debug=debug)

            if step == HealthCheckStep.COMPLETE:
                return self._build_turn_result(session, ctx.output, suspended=False, debug=debug,
                                               report=ctx.report)

            if step == HealthCheckStep.ASK_QUESTION:
                event = self._ask_question(session, ctx, recent_messages, debug)
            elif step == HealthCheckStep.VALIDATE:
                event = self._validate_answer(session, ctx, debug)
            elif step == HealthCheckStep.CHECK_FOLLOW_UP:
                event = self._check_follow_up(session, debug)
            elif step == HealthCheckStep.FINALIZE:
                event = self._finalize(session, ctx, debug)
            else:
                raise ValueError(f"Health check cannot run from step {step.value}")

            self._advance(session, event, ctx, debug)

        raise RuntimeError(f"Health check exceeded {MAX_STEPS_PER_TURN} steps in one turn")

    def _advance(self, session: HealthCheckSession, event: HealthCheckEvent,
                 ctx: _TurnContext, debug: Optional[Dict[str, Any]] = None) -> None:
        next_step, effects = transition(HEALTH_CHECK_TRANSITIONS, session.step, event)
        logger.debug(f"Health check {session.step.value} --{event.value}--> {next_step.value}")
        session.step = next_step
        for effect in effects:
            self._apply_effect(session, effect, ctx, debug if debug is not None else {'errors': []})

    def _apply_effect(self, session: HealthCheckSession, effect: Effect,
                      ctx: _TurnContext, debug: Dict[str, Any]) -> None:
        if effect == Effect.RECORD_ANSWER:
            session.append_answer(AnswerRecord(
                question_index=session.current_question_index,
                question=session.current_question,
                raw_answer=ctx.raw_answer or '',
                validated_answer=ctx.validated_answer or '',
                is_valid=ctx.is_valid,
                attempt_count=session.question_attempts + 1,
            ))
        elif effect == Effect.RECORD_SKIP:
            session.append_answer(AnswerRecord(
                question_index=session.current_question_index,
                question=session.current_question,
                raw_answer=ctx.raw_answer or '',
                validated_answer=NOT_ANSWERED,
                is_valid=False,
                attempt_count=session.question_attempts + 1,
            ))
        elif effect == Effect.ADVANCE_INDEX:
            session.advance()
        elif effect == Effect.INCREMENT_ATTEMPTS:
            session.question_attempts += 1
            session.last_validation_error = ctx.validation_error
        elif effect == Effect.SET_CLARIFICATION:
            session.pending_clarification = ctx.raw_answer
            session.last_validation_error = ctx.validation_error
        elif effect == Effect.PERSIST_CHECKPOINT:
            try:
                self.sessions.save(session)
            except Exception as e:
                logger.error(f"Failed to persist checkpoint for {session.user_id}: {type(e).__name__}: {e}")
                debug['errors'].append({'context': 'checkpoint', 'error': str(e)})
        elif effect == Effect.DELETE_CHECKPOINT:
            try:
                self.sessions.delete(session.user_id, session.conversation_id)
            except Exception as e:
                logger.error(f"Failed to delete checkpoint for {session.user_id}: {type(e).__name__}: {e}")
                debug['errors'].append({'context': 'checkpoint_delete', 'error': str(e)})

    # ========================
    # Steps
    # ========================

    def _ask_question(self, session: HealthCheckSession, ctx: _TurnContext,
                      recent_messages, debug: Dict[str, Any]) -> HealthCheckEvent:
        question = session.current_question
        if question is None:
            return HealthCheckEvent.NO_QUESTIONS_LEFT

        spec = QuestionPromptSpec(
            question=question,
            question_number=session.current_question_index + 1,
            total_questions=len(session.questions),
            previous_answers=tuple(
                (a.question.question, a.validated_answer) for a in session.valid_answers()
            ),
            attempts=session.question_attempts,
            validation_error=session.last_validation_error,
            clarification=session.pending_clarification,
        )

        output = None
        try:
            output = self.llm.generate(build_question_prompt(spec), recent_messages,
                                       max_tokens=200, temperature=0.3)
        except Exception as e:
            logger.error(f"Question generation failed for {question.id}: {type(e).__name__}: {e}")
            debug['errors'].append({'context': 'ask', 'error': str(e), 'question_id': question.id})

        if not output or not str(output).strip():
            output = render_question(spec)
            debug['rendered_fallback'] = True

        logger.info(
            f"Asking question {spec.question_number}/{spec.total_questions} ({question.id}, "
            f"retry={spec.is_retry}, clarification={bool(spec.clarification)})"
        )

        ctx.output = str(output).strip()
        session.last_response = ctx.output
        session.pending_clarification = None
        return HealthCheckEvent.QUESTION_RENDERED

    def _validate_answer(self, session: HealthCheckSession, ctx: _TurnContext,
                         debug: Dict[str, Any]) -> HealthCheckEvent:
        question = session.current_question
        result = validate(question, ctx.raw_answer)
        debug['validation'] = {
            'question_id': question.id,
            'is_valid': result.is_valid,
            'validated_answer': result.validated_answer,
            'error': result.error,
            'attempts': session.question_attempts,
        }
        logger.info(f"Validated {question.id}: valid={result.is_valid}, attempts={session.question_attempts}")

        if result.is_valid:
            ctx.validated_answer, ctx.is_valid = result.validated_answer, True
            return HealthCheckEvent.VALID_ANSWER

        ctx.validation_error = result.error
        at_ceiling = session.question_attempts >= self.max_retry_attempts - 1

        if self.interpreter is not None:
            intent = self.interpreter.classify_reply(ctx.raw_answer)
            debug['reply_intent'] = intent

            if intent == REPLY_ASKING:
                return HealthCheckEvent.CLARIFICATION_REQUESTED
            if intent == REPLY_REFUSING:
                logger.info(f"User declined {question.id}, skipping")
                return HealthCheckEvent.REFUSED

            if session.question_attempts == 0 or at_ceiling:
                extracted = self.interpreter.extract_answer(question, ctx.raw_answer)
                if extracted is not None:
                    revalidation = validate(question, extracted)
                    debug['extracted'] = {'value': extracted, 'is_valid': revalidation.is_valid}
                    if revalidation.is_valid:
                        ctx.validated_answer, ctx.is_valid = revalidation.validated_answer, True
                        return HealthCheckEvent.VALID_ANSWER

        if not at_ceiling:
            return HealthCheckEvent.INVALID_RETRY

        logger.warning(
            f"Retry ceiling reached for {question.id} after {session.question_attempts + 1} attempts; "
            f"recording invalid answer and moving on"
        )
        ctx.validated_answer, ctx.is_valid = result.validated_answer, False
        return HealthCheckEvent.INVALID_CEILING

    def _check_follow_up(self, session: HealthCheckSession, debug: Dict[str, Any]) -> HealthCheckEvent:
        if self.interpreter is None or session.follow_up_count >= self.max_follow_up_questions:
            return HealthCheckEvent.NO_FOLLOW_UP
        if not session.answers or not session.answers[-1].is_valid:
            return HealthCheckEvent.NO_FOLLOW_UP

        last = session.answers[-1]
        follow_up = self.interpreter.generate_follow_up(last.question, last.validated_answer,
                                                        last.question_index)
        if follow_up is None:
            return HealthCheckEvent.NO_FOLLOW_UP

        session.questions.append(follow_up)
        session.follow_up_count += 1
        debug['follow_up_added'] = follow_up.id
        return HealthCheckEvent.FOLLOW_UP_ADDED

    def _finalize(self, session: HealthCheckSession, ctx: _TurnContext,
                  debug: Dict[str, Any]) -> HealthCheckEvent:
        valid = session.valid_answers()
        parsed = parse_health_check_answers(valid)
        answers = [a.to_dict() for a in session.answers]

        logger.info(
            f"Health check complete for {session.user_id}/{session.conversation_id}: "
            f"{len(session.answers)} answers, {len(valid)} valid"
        )

        persisted = False
        results_path = None
        try:
            results_path = self.results_sink.persist_health_check_results(
                session.user_id,
                session.conversation_id,
                format_results(session.user_id, session.conversation_id, parsed),
                answers,
            )
            persisted = True
            ctx.output = CLOSING_MESSAGE
        except Exception as e:
            logger.error(f"Failed to persist health check results for {session.user_id}: "
                         f"{type(e).__name__}: {e}")
            debug['errors'].append({'context': 'persist', 'error': str(e)})
            ctx.output = CLOSING_FALLBACK_MESSAGE

        session.is_complete = True
        session.last_response = ctx.output
        ctx.report = HealthCheckReport(
            user_id=session.user_id,
            conversation_id=session.conversation_id,
            answers=answers,
            parsed=parsed,
            persisted=persisted,
            results_path=results_path if isinstance(results_path, str) else None,
        )
        return HealthCheckEvent.RESULTS_HANDLED

    # ========================
    # Result
    # ========================

    def _build_turn_result(self, session: HealthCheckSession, output: Optional[str],
                           suspended: bool, debug: Dict[str, Any],
                           report: Optional[HealthCheckReport] = None) -> TurnResult:
        return TurnResult(
            system_output=output or session.last_response or '',
            checkpoint_key=health_check_key(session.user_id, session.conversation_id),
            suspended=suspended,
            health_check_complete=session.is_complete,
            debug=debug,
            turn_metadata={
                'question_index': session.current_question_index,
                'total_questions': len(session.questions),
                'question_attempts': session.question_attempts,
                'answers_recorded': len(session.answers),
                'step': session.step.value,
            },
            report=report,
        )
