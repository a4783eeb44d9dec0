"""
Console Test Harness for the Supervisor

Registers one call, then runs typed lines through Supervisor.handle()
exactly as the webhook would, printing replies and routing metadata.
"""

import logging
import sys

from app import build_supervisor
from carecall.commands import ChatRequest
from carecall.config import Settings
from carecall.persistence import register_call
from carecall.utils.helpers import generate_conversation_id

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a warm companion making a daily check-in call."


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def print_debug_info(reply):
    """Print routing details from a SupervisorReply"""
    print("-" * 60)
    print(f"callType={reply.call_type} suspended={reply.suspended} "
          f"healthCheckComplete={reply.health_check_complete}")

    debug = reply.debug
    if 'steps' in debug:
        print(f"Steps: {' -> '.join(debug['steps'])}")
    if 'turn_metadata' in debug:
        meta = debug['turn_metadata']
        print(f"Question {meta['question_index'] + 1}/{meta['total_questions']} "
              f"(attempts={meta['question_attempts']}, step={meta['step']})")
    if debug.get('memories'):
        print(f"Memories: {debug['memories']}")
    if debug.get('fatigue_guidance'):
        print(f"Fatigue: {debug['fatigue']:.2f}")
    for error in debug.get('errors', []):
        print(f"ERROR ({error['context']}): {error['error']}")
    print("-" * 60)


def main():
    """Run console test"""
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    user_id = sys.argv[1] if len(sys.argv) > 1 else "user-001"

    print_separator()
    print("CHECK-IN CALL - CONSOLE TEST")
    print_separator()
    print("\nInitializing modules (this may take 30 seconds)...")

    try:
        supervisor, store = build_supervisor(settings)
    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        import traceback
        traceback.print_exc()
        return 1

    conversation_id = generate_conversation_id()
    register_call(store, conversation_id, user_id, ttl_seconds=settings.session_ttl)

    print(f"\nCall {conversation_id} for user {user_id}")
    print("Type 'quit' to end the call\n")

    messages = [{'role': 'system', 'content': SYSTEM_PROMPT}]

    while True:
        try:
            user_input = input("> ").strip()
            if not user_input:
                continue
            if user_input.lower() == 'quit':
                break

            messages.append({'role': 'user', 'content': user_input})
            reply = supervisor.handle(
                ChatRequest.from_messages(messages, conversation_id=conversation_id)
            )
            messages.append({'role': 'assistant', 'content': reply.reply})

            print(f"\nAssistant: {reply.reply}\n")
            print_debug_info(reply)

            if reply.health_check_complete:
                print_separator()
                print("HEALTH CHECK COMPLETE")
                print_separator()

        except KeyboardInterrupt:
            print("\n\nCall interrupted by user (Ctrl+C)")
            break

    supervisor.end_conversation(conversation_id)
    print_separator()
    print("Console test complete")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
