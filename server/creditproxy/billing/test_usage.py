import json
import unittest

from server.creditproxy.billing.usage import (
    SseLineBuffer,
    StreamUsageMeter,
    TokenUsage,
    UsageAccumulator,
    extract_from_document,
    extract_from_event,
)
from server.creditproxy.providers import ProviderDialect


def _sse(*events: dict, done: bool = False, event_names: bool = False) -> bytes:
    parts = []
    for event in events:
        if event_names:
            parts.append(f"event: {event.get('type', 'message')}\n")
        parts.append(f"data: {json.dumps(event)}\n\n")
    if done:
        parts.append("data: [DONE]\n\n")
    return "".join(parts).encode("utf-8")


ANTHROPIC_STREAM = _sse(
    {"type": "message_start", "message": {"id": "msg_1", "usage": {"input_tokens": 120, "output_tokens": 1}}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "héllo wörld ✓"}},
    {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 340}},
    {"type": "message_stop"},
    event_names=True,
)

OPENAI_STREAM = _sse(
    {"id": "c1", "choices": [{"delta": {"content": "Hi"}}], "usage": None},
    {"id": "c1", "choices": [{"delta": {"content": " there"}}], "usage": None},
    {"id": "c1", "choices": [], "usage": {"prompt_tokens": 55, "completion_tokens": 21, "total_tokens": 76}},
    done=True,
)

GOOGLE_STREAM = _sse(
    {"candidates": [{"content": {"parts": [{"text": "a"}]}}], "usageMetadata": {"promptTokenCount": 9}},
    {
        "candidates": [{"content": {"parts": [{"text": "b"}]}}],
        "usageMetadata": {"promptTokenCount": 9, "candidatesTokenCount": 14, "totalTokenCount": 23},
    },
)

# streamGenerateContent without alt=sse: a JSON array written out chunk by chunk.
GOOGLE_ARRAY_STREAM = (
    b'[{"candidates": [{"content": {"parts": [{"text": "a"}]}}], "usageMetadata": {"promptTokenCount": 9}}'
    b',\r\n{"candidates": [{"content": {"parts": [{"text": "data: b"}]}}],'
    b' "usageMetadata": {"promptTokenCount": 9, "candidatesTokenCount": 14}}\r\n]'
)


def _meter(dialect: ProviderDialect, chunks: list[bytes]) -> TokenUsage:
    meter = StreamUsageMeter(dialect)
    for chunk in chunks:
        meter.feed(chunk)
    return meter.finish()


class TestExtractFromDocument(unittest.TestCase):
    def test_anthropic(self) -> None:
        body = json.dumps({"type": "message", "usage": {"input_tokens": 11, "output_tokens": 7}})
        self.assertEqual(extract_from_document(ProviderDialect.anthropic, body), TokenUsage(11, 7))

    def test_openai(self) -> None:
        body = json.dumps({"usage": {"prompt_tokens": 30, "completion_tokens": 12, "total_tokens": 42}}).encode()
        self.assertEqual(extract_from_document(ProviderDialect.openai, body), TokenUsage(30, 12))

    def test_openai_responses_api_names(self) -> None:
        body = json.dumps({"usage": {"input_tokens": 4, "output_tokens": 5}})
        self.assertEqual(extract_from_document(ProviderDialect.openai, body), TokenUsage(4, 5))

    def test_google(self) -> None:
        body = json.dumps({"usageMetadata": {"promptTokenCount": 8, "candidatesTokenCount": 3}})
        self.assertEqual(extract_from_document(ProviderDialect.google, body), TokenUsage(8, 3))

    def test_malformed_or_missing_fields_yield_zero(self) -> None:
        bodies = [
            b"",
            b"not json",
            b"[]",
            b'{"usage": "lots"}',
            b'{"usage": {"input_tokens": "12", "output_tokens": null}}',
            b'{"usage": {"input_tokens": -3, "output_tokens": true}}',
        ]
        for dialect in ProviderDialect:
            for body in bodies:
                with self.subTest(dialect=dialect, body=body):
                    self.assertEqual(extract_from_document(dialect, body), TokenUsage())

    def test_wrong_dialect_fields_are_ignored(self) -> None:
        body = json.dumps({"usage": {"prompt_tokens": 30, "completion_tokens": 12}})
        self.assertEqual(extract_from_document(ProviderDialect.google, body), TokenUsage())

    def test_google_chunk_array(self) -> None:
        self.assertEqual(extract_from_document(ProviderDialect.google, GOOGLE_ARRAY_STREAM), TokenUsage(9, 14))

    def test_deeply_nested_body_yields_zero(self) -> None:
        body = b"[" * 200_000 + b"]" * 200_000
        for dialect in ProviderDialect:
            with self.subTest(dialect=dialect):
                self.assertEqual(extract_from_document(dialect, body), TokenUsage())

    def test_idempotent(self) -> None:
        body = json.dumps({"usage": {"input_tokens": 11, "output_tokens": 7}})
        first = extract_from_document(ProviderDialect.anthropic, body)
        second = extract_from_document(ProviderDialect.anthropic, body)
        self.assertEqual(first, second)


class TestExtractFromEvent(unittest.TestCase):
    def test_later_non_zero_supersedes(self) -> None:
        acc = UsageAccumulator()
        extract_from_event(ProviderDialect.anthropic, acc, {"type": "message_start", "message": {"usage": {"input_tokens": 120, "output_tokens": 0}}})
        extract_from_event(ProviderDialect.anthropic, acc, {"type": "message_delta", "usage": {"output_tokens": 5}})
        extract_from_event(ProviderDialect.anthropic, acc, {"type": "message_delta", "usage": {"output_tokens": 340}})
        self.assertEqual(acc.snapshot(), TokenUsage(120, 340))

    def test_zero_does_not_erase(self) -> None:
        acc = UsageAccumulator()
        extract_from_event(ProviderDialect.openai, acc, {"usage": {"prompt_tokens": 10, "completion_tokens": 4}})
        extract_from_event(ProviderDialect.openai, acc, {"usage": {"prompt_tokens": 0, "completion_tokens": 0}})
        extract_from_event(ProviderDialect.openai, acc, {"usage": None})
        self.assertEqual(acc.snapshot(), TokenUsage(10, 4))

    def test_repeating_an_event_is_safe(self) -> None:
        acc = UsageAccumulator()
        event = {"usageMetadata": {"promptTokenCount": 9, "candidatesTokenCount": 14}}
        for _ in range(3):
            extract_from_event(ProviderDialect.google, acc, event)
        self.assertEqual(acc.snapshot(), TokenUsage(9, 14))


class TestSseLineBuffer(unittest.TestCase):
    def test_line_split_across_chunks(self) -> None:
        buf = SseLineBuffer()
        self.assertEqual(buf.feed(b'data: {"a"'), [])
        self.assertEqual(buf.feed(b': 1}\n\ndata: [DO'), ['{"a": 1}'])
        self.assertEqual(buf.feed(b"NE]\n"), ["[DONE]"])
        self.assertEqual(buf.flush(), [])

    def test_many_lines_in_one_chunk_and_crlf(self) -> None:
        buf = SseLineBuffer()
        out = buf.feed(b"event: x\r\ndata: one\r\n\r\n: comment\r\ndata:two\r\n")
        self.assertEqual(out, ["one", "two"])

    def test_flush_returns_unterminated_tail(self) -> None:
        buf = SseLineBuffer()
        self.assertEqual(buf.feed(b"data: tail"), [])
        self.assertEqual(buf.flush(), ["tail"])

    def test_multibyte_character_split(self) -> None:
        encoded = "data: ✓\n".encode("utf-8")
        buf = SseLineBuffer()
        self.assertEqual(buf.feed(encoded[:7]), [])
        self.assertEqual(buf.feed(encoded[7:]), ["✓"])


class TestStreamUsageMeter(unittest.TestCase):
    def test_anthropic_start_and_delta(self) -> None:
        self.assertEqual(_meter(ProviderDialect.anthropic, [ANTHROPIC_STREAM]), TokenUsage(120, 340))

    def test_openai_final_chunk(self) -> None:
        self.assertEqual(_meter(ProviderDialect.openai, [OPENAI_STREAM]), TokenUsage(55, 21))

    def test_google_cumulative_metadata(self) -> None:
        self.assertEqual(_meter(ProviderDialect.google, [GOOGLE_STREAM]), TokenUsage(9, 14))

    def test_chunking_does_not_change_the_result(self) -> None:
        streams = [
            (ProviderDialect.anthropic, ANTHROPIC_STREAM),
            (ProviderDialect.openai, OPENAI_STREAM),
            (ProviderDialect.google, GOOGLE_STREAM),
        ]
        for dialect, stream in streams:
            whole = _meter(dialect, [stream])
            with self.subTest(dialect=dialect, split="bytewise"):
                self.assertEqual(_meter(dialect, [stream[i : i + 1] for i in range(len(stream))]), whole)
            for size in (2, 3, 7, 16, 61):
                with self.subTest(dialect=dialect, size=size):
                    chunks = [stream[i : i + size] for i in range(0, len(stream), size)]
                    self.assertEqual(_meter(dialect, chunks), whole)
            for cut in range(1, len(stream)):
                self.assertEqual(_meter(dialect, [stream[:cut], stream[cut:]]), whole)

    def test_google_array_stream_is_read_at_the_end(self) -> None:
        stream = GOOGLE_ARRAY_STREAM
        self.assertEqual(_meter(ProviderDialect.google, [stream]), TokenUsage(9, 14))
        for size in (1, 5, 33):
            with self.subTest(size=size):
                chunks = [stream[i : i + size] for i in range(0, len(stream), size)]
                self.assertEqual(_meter(ProviderDialect.google, chunks), TokenUsage(9, 14))

    def test_deeply_nested_event_is_ignored(self) -> None:
        stream = b"data: " + b"[" * 200_000 + b"]" * 200_000 + b"\n\n" + OPENAI_STREAM
        self.assertEqual(_meter(ProviderDialect.openai, [stream]), TokenUsage(55, 21))

    def test_stream_without_trailing_newline(self) -> None:
        stream = ANTHROPIC_STREAM.rstrip(b"\n")
        self.assertEqual(_meter(ProviderDialect.anthropic, [stream]), TokenUsage(120, 340))

    def test_garbage_events_are_ignored(self) -> None:
        stream = b"data: {broken\n\ndata: 42\n\n" + OPENAI_STREAM
        self.assertEqual(_meter(ProviderDialect.openai, [stream]), TokenUsage(55, 21))


if __name__ == "__main__":
    unittest.main()
