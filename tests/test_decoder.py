"""
Unit tests for the tagged-record stream decoder.
"""

import unittest

from hypermaps.decoder import StreamDecoder, decode_record


def _texts(events):
    return [e.text for e in events if e.kind == "chunk"]


class TestDecodeRecord(unittest.TestCase):

    def test_text_record(self):
        event = decode_record('0:"Hello"')
        self.assertEqual(event.kind, "chunk")
        self.assertEqual(event.text, "Hello")

    def test_text_record_keeps_escapes(self):
        event = decode_record('0:"line\\nnext \\"quoted\\""')
        self.assertEqual(event.text, 'line\nnext "quoted"')

    def test_error_record(self):
        event = decode_record('3:"rate limit exceeded"')
        self.assertEqual(event.kind, "error")
        self.assertEqual(event.text, "rate limit exceeded")

    def test_finish_record_carries_metadata(self):
        event = decode_record('d:{"finishReason":"stop","usage":{"promptTokens":3}}')
        self.assertEqual(event.kind, "end")
        self.assertEqual(event.payload["finishReason"], "stop")

    def test_data_and_annotation_records_pass_through(self):
        self.assertEqual(decode_record('2:[{"a":1}]').kind, "data")
        self.assertEqual(decode_record('8:[{"b":2}]').kind, "data")

    def test_step_records_are_ignored(self):
        self.assertIsNone(decode_record('f:{"messageId":"m1"}'))
        self.assertIsNone(decode_record('e:{"finishReason":"stop"}'))

    def test_unknown_tag_is_ignored(self):
        with self.assertLogs("hypermaps.decoder", level="WARNING"):
            self.assertIsNone(decode_record('z:"future"'))

    def test_malformed_json_is_skipped(self):
        with self.assertLogs("hypermaps.decoder", level="WARNING"):
            self.assertIsNone(decode_record('0:"unterminated'))

    def test_record_without_separator_is_skipped(self):
        with self.assertLogs("hypermaps.decoder", level="WARNING"):
            self.assertIsNone(decode_record("garbage"))

    def test_non_string_text_payload_is_skipped(self):
        with self.assertLogs("hypermaps.decoder", level="WARNING"):
            self.assertIsNone(decode_record("0:42"))

    def test_blank_and_crlf_lines(self):
        self.assertIsNone(decode_record(""))
        self.assertIsNone(decode_record("\r"))
        self.assertEqual(decode_record('0:"x"\r').text, "x")


class TestStreamDecoder(unittest.TestCase):

    def test_whole_records(self):
        decoder = StreamDecoder()
        events = decoder.feed('0:"Hello"\n0:" world"\nd:{"finishReason":"stop"}\n')
        self.assertEqual(_texts(events), ["Hello", " world"])
        self.assertEqual(events[-1].kind, "end")
        self.assertTrue(decoder.finished)

    def test_record_split_across_reads(self):
        decoder = StreamDecoder()
        self.assertEqual(decoder.feed('0:"Hel'), [])
        events = decoder.feed('lo"\n0:"!"\n')
        self.assertEqual(_texts(events), ["Hello", "!"])

    def test_concatenation_independent_of_split_points(self):
        body = '0:"The "\n0:"quick "\n0:"brown"\n0:" fox"\nd:{"finishReason":"stop"}\n'
        expected = "The quick brown fox"
        for size in (1, 2, 3, 5, 7, 11, len(body)):
            decoder = StreamDecoder()
            buffer = ""
            for start in range(0, len(body), size):
                buffer += "".join(_texts(decoder.feed(body[start:start + size])))
            self.assertEqual(buffer, expected, f"split size {size}")

    def test_error_stops_processing(self):
        decoder = StreamDecoder()
        events = decoder.feed('0:"a"\n3:"boom"\n0:"b"\n')
        self.assertEqual([e.kind for e in events], ["chunk", "error"])
        self.assertEqual(decoder.feed('0:"c"\n'), [])

    def test_malformed_record_does_not_abort_stream(self):
        decoder = StreamDecoder()
        with self.assertLogs("hypermaps.decoder", level="WARNING"):
            events = decoder.feed('0:"a"\n0:{bad\n0:"b"\n')
        self.assertEqual(_texts(events), ["a", "b"])

    def test_close_flushes_trailing_record(self):
        decoder = StreamDecoder()
        self.assertEqual(decoder.feed('0:"tail"'), [])
        self.assertEqual(_texts(decoder.close()), ["tail"])
        self.assertEqual(decoder.close(), [])


if __name__ == "__main__":
    unittest.main()
