"""
Test identity resolution order

Run with: pytest tests/test_conversation_resolver.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import unittest

from carecall.commands import ChatRequest
from carecall.core.conversation_resolver import ConversationResolver
from carecall.persistence import InMemorySessionStore, register_call


USER_A = "3f2a9c1e-0000-4b1d-9a7e-aa11bb22cc33"
USER_B = "7b8c9d0e-1111-4c2d-8b8f-dd44ee55ff66"


class TestConversationResolver(unittest.TestCase):

    def setUp(self):
        self.store = InMemorySessionStore()
        register_call(self.store, "conv-a", USER_A, phone="+1 555 010 2030")
        register_call(self.store, "conv-b", USER_B, call_type="health_check")
        self.resolver = ConversationResolver(self.store)

    def _request(self, system="", **kwargs):
        messages = [{'role': 'system', 'content': system}, {'role': 'user', 'content': "hello"}]
        return ChatRequest.from_messages(messages, **kwargs)

    def test_explicit_conversation_id_wins(self):
        resolved = self.resolver.resolve(self._request(
            system=f"user ID: {USER_A}", conversation_id="conv-b", user_id=USER_A,
        ))
        self.assertEqual(resolved.conversation_id, "conv-b")
        self.assertEqual(resolved.user_id, USER_B)
        self.assertEqual(resolved.call_type, "health_check")
        self.assertEqual(resolved.source, "conversation_id")

    def test_explicit_user_id_before_system_prompt(self):
        resolved = self.resolver.resolve(self._request(system=f"user ID: {USER_B}", user_id=USER_A))
        self.assertEqual(resolved.conversation_id, "conv-a")
        self.assertEqual(resolved.source, "user_id")

    def test_unknown_user_id_falls_through_to_system_prompt(self):
        resolved = self.resolver.resolve(self._request(system=f"User ID: {USER_B}", user_id="stranger"))
        self.assertEqual(resolved.conversation_id, "conv-b")
        self.assertEqual(resolved.source, "system_user_id")

    def test_phone_in_system_prompt(self):
        resolved = self.resolver.resolve(self._request(system="Caller phone: +1 (555) 010-2030"))
        self.assertEqual(resolved.conversation_id, "conv-a")
        self.assertEqual(resolved.source, "system_phone")

    def test_no_identity(self):
        self.assertIsNone(self.resolver.resolve(self._request(system="You are a companion.")))

    def test_identity_without_call_session(self):
        self.store.delete("session:conv-a")
        self.assertIsNone(self.resolver.resolve(self._request(conversation_id="conv-a")))
        self.assertIsNone(self.resolver.resolve(self._request(conversation_id="never-registered")))

    def test_store_required(self):
        with self.assertRaises(TypeError):
            ConversationResolver(object())


if __name__ == '__main__':
    unittest.main()
