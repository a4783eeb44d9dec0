"""
Flask webhook for the check-in call engine

The telephony layer posts OpenAI-style chat completions here; every
request is one turn routed through the Supervisor.

Endpoints:
    POST   /v1/chat/completions   one turn
    POST   /calls                 register a call session
    DELETE /calls/<conversationId> end a call
    GET    /health                liveness
"""

import json
import logging
import os
import time

from flask import Flask, jsonify, request

from carecall.commands import ChatRequest
from carecall.config import Settings
from carecall.core.answer_interpreter import AnswerInterpreter
from carecall.core.conversation_machine import ConversationMachine
from carecall.core.health_check_machine import HealthCheckMachine
from carecall.core.memory_retriever import InMemoryMemoryStore, MemoryRetriever
from carecall.core.question_catalog import JsonProfileSource, QuestionCatalogBuilder
from carecall.core.session_manager import HealthCheckSessionManager
from carecall.core.supervisor import Supervisor
from carecall.core.topic_tracker import TopicTracker
from carecall.persistence import HealthCheckResultWriter, JsonFileSessionStore, register_call
from carecall.utils.end_call_detector import EndCallDetector
from carecall.utils.helpers import generate_conversation_id

logger = logging.getLogger(__name__)

MEMORIES_PATH = "data/memories.json"


def build_supervisor(settings, llm=None, embedder=None, store=None, memories_path=MEMORIES_PATH):
    """
    Wire every component from settings.

    Args:
        settings: Settings
        llm: Language model client (default: HuggingFaceClient from settings)
        embedder: Embedder (default: HuggingFaceEmbedder from settings)
        store: Session Store (default: JsonFileSessionStore under session_dir)
        memories_path: JSON {userId: [highlight, ...]} seeding the memory store

    Returns:
        tuple: (supervisor, store)
    """
    if llm is None or embedder is None:
        # Model weights load here, once per process (~30 seconds)
        from carecall.utils.hf_client import HuggingFaceClient, HuggingFaceEmbedder
        if llm is None:
            llm = HuggingFaceClient(
                model_name=settings.model_name,
                load_in_4bit=settings.load_in_4bit,
                device=settings.device,
            )
            logger.info(f"Model info: {llm.get_model_info()}")
        if embedder is None:
            embedder = HuggingFaceEmbedder(model_name=settings.embedding_model)

    store = store if store is not None else JsonFileSessionStore(settings.session_dir)

    memory_store = InMemoryMemoryStore(embedder)
    if memories_path and os.path.exists(memories_path):
        with open(memories_path, "r") as f:
            count = memory_store.load_json(json.load(f))
        logger.info(f"Loaded {count} memory highlights from {memories_path}")

    topic_tracker = TopicTracker(store, ttl_seconds=settings.session_ttl)

    health_check = HealthCheckMachine(
        llm=llm,
        session_manager=HealthCheckSessionManager(store, ttl_seconds=settings.session_ttl),
        catalog_builder=QuestionCatalogBuilder(JsonProfileSource(settings.profiles_path)),
        results_sink=HealthCheckResultWriter(settings.results_dir),
        answer_interpreter=AnswerInterpreter(llm),
        max_retry_attempts=settings.max_retry_attempts,
        max_follow_up_questions=settings.max_follow_ups,
    )

    conversation = ConversationMachine(
        llm=llm,
        embedder=embedder,
        topic_tracker=topic_tracker,
        memory_retriever=MemoryRetriever(memory_store),
        health_check_machine=health_check,
        end_call_detector=EndCallDetector(),
        memory_limit=settings.memory_limit,
        recent_message_count=settings.recent_messages,
    )

    supervisor = Supervisor(
        store=store,
        conversation_machine=conversation,
        health_check_machine=health_check,
        topic_tracker=topic_tracker,
        llm=llm,
        ttl_seconds=settings.session_ttl,
    )
    return supervisor, store


def _error(message, status):
    return jsonify({'error': {'message': message, 'type': 'invalid_request_error'}}), status


def create_app(supervisor, store, ttl_seconds=3600):
    """
    Flask application over an already wired Supervisor.

    Args:
        supervisor: Supervisor
        store: Session Store shared with the supervisor (for /calls)
        ttl_seconds: TTL for registered call sessions
    """
    app = Flask(__name__)

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({'status': 'ok'})

    @app.route('/v1/chat/completions', methods=['POST'])
    def chat_completions():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return _error("Request body must be a JSON object", 400)

        messages = data.get('messages')
        if not isinstance(messages, list) or not messages:
            return _error("'messages' must be a non-empty list", 400)
        for message in messages:
            if (not isinstance(message, dict) or not isinstance(message.get('role'), str)
                    or not isinstance(message.get('content', ''), str)):
                return _error("Each message needs a string 'role' and 'content'", 400)

        chat_request = ChatRequest.from_messages(
            messages,
            conversation_id=data.get('conversation_id'),
            user_id=data.get('user'),
        )

        try:
            reply = supervisor.handle(chat_request)
        except Exception as e:
            logger.error(f"Turn failed: {type(e).__name__}: {e}")
            return jsonify({'error': {'message': 'Internal error', 'type': 'server_error'}}), 500

        return jsonify({
            'id': f"chatcmpl-{generate_conversation_id()}",
            'object': 'chat.completion',
            'created': int(time.time()),
            'choices': [{
                'index': 0,
                'message': {'role': 'assistant', 'content': reply.reply},
                'finish_reason': 'stop',
            }],
            'carecall': {
                'callType': reply.call_type,
                'suspended': reply.suspended,
                'healthCheckComplete': reply.health_check_complete,
            },
        })

    @app.route('/calls', methods=['POST'])
    def create_call():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return _error("Request body must be a JSON object", 400)

        try:
            record = register_call(
                store,
                conversation_id=data.get('conversationId') or '',
                user_id=data.get('userId') or '',
                phone=data.get('phone'),
                call_type=data.get('callType') or 'general',
                ttl_seconds=ttl_seconds,
            )
        except ValueError as e:
            return _error(str(e), 400)

        return jsonify(record), 201

    @app.route('/calls/<conversation_id>', methods=['DELETE'])
    def end_call(conversation_id):
        supervisor.end_conversation(conversation_id)
        return '', 204

    return app


if __name__ == '__main__':
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger.info("Initializing models (this takes ~30 seconds)...")
    supervisor, store = build_supervisor(settings)
    app = create_app(supervisor, store, ttl_seconds=settings.session_ttl)

    print("\n" + "=" * 60)
    print("CHECK-IN CALL ENGINE - WEBHOOK")
    print("=" * 60)
    print("\nPOST http://localhost:5000/v1/chat/completions")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    app.run(host='0.0.0.0', port=int(os.getenv('PORT', '5000')))
