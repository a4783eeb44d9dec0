"""
Result types returned by the state machines and the Supervisor.

These are the ONLY return types from the command handlers.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class HealthCheckReport:
    """
    Outcome of Finalize.

    Attributes:
        user_id: User identifier
        conversation_id: Conversation identifier
        answers: Full AnswerRecord list as dicts (invalid ceiling entries included)
        parsed: Domain records built from valid answers
            {'health_log', 'medication_logs', 'health_condition_logs'}
        persisted: Whether the persistence collaborator accepted the records
        results_path: Audit file path, when one was written
    """
    user_id: str
    conversation_id: str
    answers: List[Dict[str, Any]]
    parsed: Dict[str, Any]
    persisted: bool
    results_path: Optional[str] = None


@dataclass(frozen=True)
class TurnResult:
    """
    Successful HealthCheckMachine turn.

    Returned by: StartHealthCheck, ResumeHealthCheck

    Attributes:
        system_output: Text to speak to the user (question or closing message)
        checkpoint_key: Key the next ResumeHealthCheck must carry
        suspended: True when the machine is waiting at AwaitAnswer
        health_check_complete: True once Finalize has run
        debug: Validation outcome, interpreter output, swallowed errors
        turn_metadata: question index, attempts, step
        report: Finalize output (only when health_check_complete)
    """
    system_output: str
    checkpoint_key: str
    suspended: bool
    health_check_complete: bool
    debug: Dict[str, Any]
    turn_metadata: Dict[str, Any]
    report: Optional[HealthCheckReport] = None


@dataclass(frozen=True)
class ConversationTurnResult:
    """
    One pass of the ConversationMachine.

    Attributes:
        response: Reply text (general reply, or first health question on hand-off)
        is_end_call: Whether end of call was detected this turn
        handed_off: Whether the health check was started this turn
        health_check: TurnResult of the hand-off, when handed_off
        debug: Classification, memories, fatigue guidance, parse anomalies
        steps: States visited, in order
    """
    response: str
    is_end_call: bool
    handed_off: bool
    health_check: Optional[TurnResult] = None
    debug: Dict[str, Any] = field(default_factory=dict)
    steps: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SupervisorReply:
    """
    What the Supervisor hands back to the webhook layer.

    Attributes:
        reply: Text for the assistant message
        routed: False when no identity resolved (unrouted reply path)
        call_type: 'general' | 'health_check' after this turn (None if unrouted)
        conversation_id: Resolved conversation id (None if unrouted)
        suspended: Health check waiting for the next answer
        health_check_complete: Health check finished on this turn
        debug: Routing details
    """
    reply: str
    routed: bool
    call_type: Optional[str] = None
    conversation_id: Optional[str] = None
    suspended: bool = False
    health_check_complete: bool = False
    debug: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IllegalCommand:
    """
    Command rejected by the HealthCheckMachine (invalid lifecycle transition).

    Examples:
    - ResumeHealthCheck when no checkpoint exists (expired or never started)
    - ResumeHealthCheck whose key is malformed
    - ResumeHealthCheck on a checkpoint that is not suspended

    Attributes:
        reason: Human-readable explanation
        command_type: Name of rejected command type
    """
    reason: str
    command_type: str
