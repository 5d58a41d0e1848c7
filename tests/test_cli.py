"""
Tests for the click command line interface.
"""

import json
import tempfile
import unittest
from contextlib import asynccontextmanager
from pathlib import Path
from unittest import mock

from click.testing import CliRunner

from hypermaps.cli import cli
from hypermaps.errors import NetworkError, RetryLimitError


class OfflineClient:
    """Completion client whose every request fails to connect."""

    requests = 0

    def __init__(self, *args, **kwargs):
        pass

    @asynccontextmanager
    async def stream(self, turns):
        OfflineClient.requests += 1
        raise NetworkError("connection refused")
        yield

    async def aclose(self):
        pass


PAYLOAD = {
    "id": "c1",
    "content": "note",
    "createdAt": "2025-01-01T00:00:00Z",
    "conversationId": "conv-1",
    "position": 0,
    "x": 1,
    "y": 2,
}


class TestCli(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        patcher = mock.patch("hypermaps.config.SQLITE_PATH", Path(self._tmp.name) / "h.db")
        patcher.start()
        self.addCleanup(patcher.stop)
        self.runner = CliRunner()

    def tearDown(self):
        self._tmp.cleanup()

    def invoke(self, *args, **kwargs):
        return self.runner.invoke(cli, ["--backend", "relational", *args], **kwargs)

    def test_comment_then_graph(self):
        result = self.invoke("comment", "-", input=json.dumps(PAYLOAD))
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(json.loads(result.output)["status"], "ok")

        result = self.invoke("graph", "conv-1")
        self.assertEqual(result.exit_code, 0, result.output)
        graph = json.loads(result.output)
        self.assertEqual([(n["id"], n["type"]) for n in graph["nodes"]], [("c1", "comment")])
        self.assertEqual(graph["edges"], [])

    def test_invalid_comment_exits_nonzero(self):
        result = self.invoke("comment", "-", input=json.dumps({"id": "c1"}))
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Invalid payload", result.output)

    def test_malformed_json(self):
        result = self.invoke("comment", "-", input="{not json")
        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("not valid JSON", result.output)

    def test_search_without_hits(self):
        result = self.invoke("search", "anything")
        self.assertEqual(result.exit_code, 0)
        self.assertIn("No messages found", result.output)

    def test_chat_dismiss_rearms_retries(self):
        OfflineClient.requests = 0
        commands = ["Hi", "/retry", "/retry", "/retry", "/retry", "/dismiss", "/retry", "/quit"]

        with mock.patch("hypermaps.completion.CompletionClient", OfflineClient):
            result = self.invoke("chat", "conv-1", input="\n".join(commands) + "\n")

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn(RetryLimitError.user_message, result.output)
        self.assertIn("Type /dismiss to re-arm retries.", result.output)
        self.assertIn("Error dismissed.", result.output)
        # The submit, three capped retries and one more after dismissing
        self.assertEqual(OfflineClient.requests, 5)


if __name__ == "__main__":
    unittest.main()
