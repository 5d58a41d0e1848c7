"""
Tests for comment payload ingestion.
"""

import tempfile
import unittest
from pathlib import Path

from hypermaps.errors import ValidationError
from hypermaps.ingest import ingest_comment, parse_comment_payload
from hypermaps.storage import RelationalStore

VALID = {
    "id": "c1",
    "content": "Remember to cite sources",
    "createdAt": "2025-01-01T12:00:00+00:00",
    "conversationId": "conv-1",
    "position": 0,
    "x": 850,
    "y": 40,
}


class TestIngestComment(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = RelationalStore(Path(self._tmp.name) / "test.db")

    def tearDown(self):
        self.store.close()
        self._tmp.cleanup()

    def test_valid_payload_is_stored_and_echoed(self):
        result = ingest_comment(VALID, self.store)

        self.assertEqual(result["status"], "ok")
        self.assertEqual(result["data"]["conversationId"], "conv-1")
        self.assertEqual(result["data"]["x"], 850.0)
        stored = self.store.comments.get("c1")
        self.assertEqual(stored.content, "Remember to cite sources")
        self.assertEqual((stored.x, stored.y), (850.0, 40.0))

    def test_snake_case_fields_are_accepted(self):
        payload = dict(VALID, conversation_id="conv-2", created_at=VALID["createdAt"])
        del payload["conversationId"], payload["createdAt"]
        ingest_comment(payload, self.store)
        self.assertEqual([c.id for c in self.store.comments.query_by_conversation("conv-2")], ["c1"])

    def test_invalid_payload_reports_every_issue(self):
        payload = dict(VALID, position="first")
        del payload["y"]

        with self.assertLogs("hypermaps.ingest", level="WARNING"):
            with self.assertRaises(ValidationError) as ctx:
                ingest_comment(payload, self.store)

        paths = sorted(issue["path"] for issue in ctx.exception.issues)
        self.assertEqual(paths, [["position"], ["y"]])
        self.assertIsNone(self.store.comments.get("c1"))

    def test_non_object_payload(self):
        with self.assertLogs("hypermaps.ingest", level="WARNING"):
            with self.assertRaises(ValidationError) as ctx:
                parse_comment_payload(["not", "an", "object"])
        self.assertTrue(ctx.exception.issues)


if __name__ == "__main__":
    unittest.main()
