"""
Test the Flask webhook endpoints with Flask's test client

Run with: pytest tests/test_app.py
"""

import sys
import os
import json
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from app import build_supervisor, create_app
from carecall.config import Settings
from carecall.persistence import InMemorySessionStore
from carecall.utils.prompt_builder import OPENING_LINE


class MockLLM:
    def __init__(self, end_call=False):
        self.end_call = end_call

    def generate(self, system_prompt, messages=None, max_tokens=256, temperature=0.3):
        return ""

    def generate_json(self, system_prompt, messages=None, max_tokens=256, temperature=0.0):
        return json.dumps({"response": "How nice!", "is_end_call_detected": self.end_call})


class MockEmbedder:
    def embed(self, text):
        return [0.5, 0.5]


def _client(tmp_path, end_call=False):
    settings = Settings(
        results_dir=str(tmp_path / "results"),
        profiles_path=str(tmp_path / "missing_profiles.json"),
    )
    store = InMemorySessionStore()
    supervisor, store = build_supervisor(settings, llm=MockLLM(end_call), embedder=MockEmbedder(),
                                         store=store, memories_path=None)
    app = create_app(supervisor, store)
    app.config['TESTING'] = True
    return app.test_client(), store


def _chat(client, content, conversation_id="c-1"):
    return client.post('/v1/chat/completions', json={
        'messages': [
            {'role': 'system', 'content': "You are a companion."},
            {'role': 'user', 'content': content},
        ],
        'conversation_id': conversation_id,
    })


def test_health(tmp_path):
    client, _ = _client(tmp_path)
    response = client.get('/health')
    assert response.status_code == 200
    assert response.get_json() == {'status': 'ok'}


def test_register_call(tmp_path):
    client, store = _client(tmp_path)
    response = client.post('/calls', json={'conversationId': "c-1", 'userId': "u-1", 'phone': "555 0100"})

    assert response.status_code == 201
    assert response.get_json()['callType'] == "general"
    assert store.get("rag:phone:5550100") == {'conversationId': "c-1"}


def test_register_call_rejects_bad_body(tmp_path):
    client, _ = _client(tmp_path)
    assert client.post('/calls', json={'userId': "u-1"}).status_code == 400
    assert client.post('/calls', json={'conversationId': "c", 'userId': "u", 'callType': "x"}).status_code == 400
    assert client.post('/calls', data="nope", content_type='text/plain').status_code == 400


def test_chat_completion_shape(tmp_path):
    client, _ = _client(tmp_path)
    client.post('/calls', json={'conversationId': "c-1", 'userId': "u-1"})

    response = _chat(client, "We baked bread together all afternoon yesterday")
    assert response.status_code == 200
    body = response.get_json()
    assert body['object'] == "chat.completion"
    assert body['choices'][0]['message'] == {'role': 'assistant', 'content': "How nice!"}
    assert body['choices'][0]['finish_reason'] == "stop"
    assert body['carecall'] == {'callType': "general", 'suspended': False, 'healthCheckComplete': False}


def test_chat_hand_off_reports_health_check(tmp_path):
    client, _ = _client(tmp_path, end_call=True)
    client.post('/calls', json={'conversationId': "c-1", 'userId': "u-1"})

    body = _chat(client, "Alright, goodbye for now").get_json()
    assert body['choices'][0]['message']['content'].startswith(OPENING_LINE)
    assert body['carecall']['callType'] == "health_check"
    assert body['carecall']['suspended'] is True


@pytest.mark.parametrize("payload", [
    None,
    {'messages': []},
    {'messages': "hello"},
    {'messages': [{'content': "no role"}]},
])
def test_chat_rejects_malformed_bodies(tmp_path, payload):
    client, _ = _client(tmp_path)
    if payload is None:
        response = client.post('/v1/chat/completions', data="{", content_type='application/json')
    else:
        response = client.post('/v1/chat/completions', json=payload)
    assert response.status_code == 400
    assert 'error' in response.get_json()


def test_end_call(tmp_path):
    client, store = _client(tmp_path)
    client.post('/calls', json={'conversationId': "c-1", 'userId': "u-1"})

    response = client.delete('/calls/c-1')
    assert response.status_code == 204
    assert store.get("session:c-1") is None
    assert store.get("rag:user:u-1") is None
