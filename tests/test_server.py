"""
Tests for the MCP tool functions, called directly against a SQLite store.
"""

import json
import tempfile
import unittest
from contextlib import asynccontextmanager
from pathlib import Path
from unittest import mock

from hypermaps import server
from hypermaps.errors import RateLimitError
from hypermaps.storage import RelationalStore


class CannedClient:
    def __init__(self, body):
        self.body = body

    @asynccontextmanager
    async def stream(self, turns):
        async def reads():
            yield self.body

        yield reads()


class ServerTestCase(unittest.IsolatedAsyncioTestCase):

    body = '0:"Hello"\n0:" world"\nd:{"finishReason":"stop"}\n'

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = RelationalStore(Path(self._tmp.name) / "test.db")
        mock.patch.object(server, "_store", self.store).start()
        mock.patch.object(server, "_client", CannedClient(self.body)).start()
        mock.patch.dict(server._views, clear=True).start()
        self.addCleanup(mock.patch.stopall)

    def tearDown(self):
        self.store.close()
        self._tmp.cleanup()


class TestConversationTools(ServerTestCase):

    async def test_send_message_returns_reply(self):
        result = await server.send_message("conv-1", "What is X?")

        user, reply = self.store.messages.query_by_conversation("conv-1")
        self.assertEqual(result, f"Assistant (`{reply.id}`):\n\nHello world")
        self.assertEqual(reply.parent_message_id, user.id)

    async def test_generate_response_rejects_unknown_message(self):
        result = await server.generate_response("conv-1", "missing")
        self.assertTrue(result.startswith("Error:"))

    def test_graph_and_list(self):
        view = server._get_view("conv-1")
        user = view.create_message("Question")

        graph = json.loads(server.get_graph("conv-1"))
        listing = server.list_messages("conv-1")

        self.assertEqual([n["id"] for n in graph["nodes"]], [user.id])
        self.assertIn(f"`{user.id}`", listing)
        self.assertIn("No messages", server.list_messages("conv-2"))

    def test_connect_nodes(self):
        view = server._get_view("conv-1")
        user = view.create_message("Question")
        reply = view.create_message("Answer", role="assistant")

        self.assertIn("rejected", server.connect_nodes("conv-1", reply.id, user.id))
        self.assertIn("Connected", server.connect_nodes("conv-1", user.id, reply.id))
        self.assertEqual(self.store.messages.get(reply.id).parent_message_id, user.id)

    def test_edit_move_delete(self):
        message = server._get_view("conv-1").create_message("Question")

        server.edit_message("conv-1", message.id, "Better question")
        server.move_node("conv-1", message.id, 10, 20)
        stored = self.store.messages.get(message.id)
        self.assertEqual(stored.content, "Better question")
        self.assertEqual((stored.x, stored.y), (10, 20))

        self.assertIn("Error:", server.edit_message("conv-1", message.id, "x", role="system"))
        server.delete_message("conv-1", message.id)
        self.assertIsNone(self.store.messages.get(message.id))

    def test_add_comment(self):
        payload = {
            "id": "c1",
            "content": "note",
            "createdAt": "2025-01-01T00:00:00Z",
            "conversationId": "conv-1",
            "position": 0,
            "x": 1,
            "y": 2,
        }
        self.assertEqual(json.loads(server.add_comment(payload))["status"], "ok")

        invalid = server.add_comment({"id": "c2"})
        self.assertTrue(invalid.startswith("Error:"))
        self.assertIn('"conversationId"', invalid)

    def test_publish_requires_space_backend(self):
        self.assertIn("space store backend", server.publish_message("m1"))

    def test_search_messages(self):
        server._get_view("conv-1").create_message("quantum computing")
        self.assertIn("Found 1 messages", server.search_messages("quantum"))
        self.assertIn("No messages found", server.search_messages("bananas"))


class TestFailedGeneration(ServerTestCase):

    body = '3:"rate limit exceeded"\n'

    async def test_error_offers_retry(self):
        result = await server.send_message("conv-1", "Hi")

        self.assertTrue(result.startswith(RateLimitError.user_message))
        self.assertIn("retry_last_message", result)
        self.assertEqual(len(self.store.messages.query_by_conversation("conv-1")), 1)

        retried = await server.retry_last_message("conv-1")
        self.assertTrue(retried.startswith(RateLimitError.user_message))


if __name__ == "__main__":
    unittest.main()
