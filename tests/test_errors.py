"""
Unit tests for provider error classification.
"""

import unittest

import pydantic

from hypermaps.errors import (
    AuthenticationError,
    GenerationError,
    ModelUnavailableError,
    NetworkError,
    PersistenceError,
    RateLimitError,
    UnknownError,
    ValidationError,
    classify_error,
)
from hypermaps.models import CommentPayload


class TestClassifyError(unittest.TestCase):

    def test_text_matching(self):
        cases = {
            "Invalid API key provided": AuthenticationError,
            "rate limit exceeded": RateLimitError,
            "Rate Limit reached for requests": RateLimitError,
            "The model `gpt-x` does not exist": ModelUnavailableError,
            "TypeError: Failed to fetch": NetworkError,
            "network unreachable": NetworkError,
            "something odd happened": UnknownError,
        }
        for text, expected in cases.items():
            with self.subTest(text=text):
                self.assertIsInstance(classify_error(text), expected)

    def test_status_code_wins(self):
        self.assertIsInstance(classify_error("Internal", 401), AuthenticationError)
        self.assertIsInstance(classify_error("Internal", 429), RateLimitError)
        self.assertIsInstance(classify_error("Internal", 503), ModelUnavailableError)
        self.assertIsInstance(classify_error("Internal", 500), UnknownError)

    def test_user_messages_are_distinct(self):
        classes = [
            AuthenticationError,
            RateLimitError,
            ModelUnavailableError,
            NetworkError,
            UnknownError,
            PersistenceError,
        ]
        messages = {cls.user_message for cls in classes}
        self.assertEqual(len(messages), len(classes))

    def test_persistence_is_not_a_generation_error(self):
        self.assertNotIsInstance(PersistenceError(), GenerationError)
        self.assertIn("resend", PersistenceError.user_message)


class TestValidationError(unittest.TestCase):

    def test_from_pydantic_lists_every_issue(self):
        try:
            CommentPayload.model_validate({"id": "c1", "x": "left"})
        except pydantic.ValidationError as exc:
            error = ValidationError.from_pydantic(exc)
        paths = {tuple(issue["path"]) for issue in error.issues}
        self.assertIn(("content",), paths)
        self.assertIn(("x",), paths)
        self.assertIn(("conversationId",), paths)


if __name__ == "__main__":
    unittest.main()
