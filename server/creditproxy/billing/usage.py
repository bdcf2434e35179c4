"""Token usage extraction from provider responses.

Buffered responses are parsed as one JSON document. Streamed responses are
SSE-style `data: <payload>` lines; network chunks are fed through a
persistent line buffer so that events split across chunks are reassembled
before they are decoded. A stream that carries no `data:` line at all (Gemini
without `alt=sse` sends a JSON array of chunks) is parsed as one document
once it ends.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from server.creditproxy.providers import ProviderDialect

STREAM_DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class TokenUsage:
    tokens_in: int = 0
    tokens_out: int = 0

    @property
    def is_empty(self) -> bool:
        return self.tokens_in <= 0 and self.tokens_out <= 0


@dataclass
class UsageAccumulator:
    tokens_in: int = 0
    tokens_out: int = 0

    def observe(self, usage: TokenUsage) -> None:
        # A later non-zero count supersedes an earlier one; zeros never erase.
        if usage.tokens_in > 0:
            self.tokens_in = usage.tokens_in
        if usage.tokens_out > 0:
            self.tokens_out = usage.tokens_out

    def snapshot(self) -> TokenUsage:
        return TokenUsage(tokens_in=self.tokens_in, tokens_out=self.tokens_out)


def _count(value) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float) and value.is_integer():
        return max(0, int(value))
    return 0


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _anthropic_usage(block: dict) -> TokenUsage:
    return TokenUsage(
        tokens_in=_count(block.get("input_tokens")),
        tokens_out=_count(block.get("output_tokens")),
    )


def _openai_usage(block: dict) -> TokenUsage:
    # Chat Completions names the fields prompt/completion, the Responses API input/output.
    return TokenUsage(
        tokens_in=_count(block.get("prompt_tokens")) or _count(block.get("input_tokens")),
        tokens_out=_count(block.get("completion_tokens")) or _count(block.get("output_tokens")),
    )


def _google_usage(block: dict) -> TokenUsage:
    return TokenUsage(
        tokens_in=_count(block.get("promptTokenCount")),
        tokens_out=_count(block.get("candidatesTokenCount")),
    )


def _anthropic_document(data: dict) -> TokenUsage:
    return _anthropic_usage(_dict(data.get("usage")))


def _openai_document(data: dict) -> TokenUsage:
    usage = _dict(data.get("usage"))
    if not usage:
        # Responses API stream events wrap the final document.
        usage = _dict(_dict(data.get("response")).get("usage"))
    return _openai_usage(usage)


def _google_document(data: dict) -> TokenUsage:
    return _google_usage(_dict(data.get("usageMetadata")))


def _anthropic_event(event: dict) -> TokenUsage:
    # message_start carries the input count, message_delta the running output count.
    if event.get("type") == "message_start":
        return _anthropic_usage(_dict(_dict(event.get("message")).get("usage")))
    return _anthropic_usage(_dict(event.get("usage")))


_DOCUMENT_READERS: Mapping[ProviderDialect, Callable[[dict], TokenUsage]] = MappingProxyType(
    {
        ProviderDialect.anthropic: _anthropic_document,
        ProviderDialect.openai: _openai_document,
        ProviderDialect.google: _google_document,
    }
)

_EVENT_READERS: Mapping[ProviderDialect, Callable[[dict], TokenUsage]] = MappingProxyType(
    {
        ProviderDialect.anthropic: _anthropic_event,
        ProviderDialect.openai: _openai_document,
        ProviderDialect.google: _google_document,
    }
)


def extract_from_document(dialect: ProviderDialect, body: bytes | str) -> TokenUsage:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError, RecursionError):
        return TokenUsage()
    reader = _DOCUMENT_READERS[dialect]
    if isinstance(data, list):
        # Array of stream chunks; usage counts are cumulative.
        accumulator = UsageAccumulator()
        for item in data:
            if isinstance(item, dict):
                accumulator.observe(reader(item))
        return accumulator.snapshot()
    if not isinstance(data, dict):
        return TokenUsage()
    return reader(data)


def extract_from_event(dialect: ProviderDialect, accumulator: UsageAccumulator, event: dict) -> None:
    if not isinstance(event, dict):
        return
    accumulator.observe(_EVENT_READERS[dialect](event))


def parse_event_payload(payload: str) -> dict | None:
    payload = payload.strip()
    if not payload or payload == STREAM_DONE_SENTINEL:
        return None
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, RecursionError):
        return None
    return data if isinstance(data, dict) else None


class SseLineBuffer:
    """Reassembles `data:` payloads from arbitrarily split byte chunks."""

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        if not chunk:
            return []
        data = self._pending + chunk
        lines = data.split(b"\n")
        self._pending = lines.pop()
        return [payload for payload in map(_data_payload, lines) if payload is not None]

    def flush(self) -> list[str]:
        tail, self._pending = self._pending, b""
        payload = _data_payload(tail)
        return [payload] if payload is not None else []


def _data_payload(raw_line: bytes) -> str | None:
    line = raw_line.rstrip(b"\r").decode("utf-8", errors="replace")
    if not line.startswith("data:"):
        return None
    payload = line[5:]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


class StreamUsageMeter:
    """Per-request usage meter for a streamed upstream response."""

    def __init__(self, dialect: ProviderDialect) -> None:
        self.dialect = dialect
        self._lines = SseLineBuffer()
        self._accumulator = UsageAccumulator()
        # Raw body kept until the first `data:` line proves the stream is SSE.
        self._raw: bytearray | None = bytearray()

    def feed(self, chunk: bytes) -> None:
        payloads = self._lines.feed(chunk)
        if self._raw is not None:
            if payloads:
                self._raw = None
            else:
                self._raw += chunk
        for payload in payloads:
            self._observe(payload)

    def finish(self) -> TokenUsage:
        payloads = self._lines.flush()
        if self._raw is not None and not payloads:
            raw, self._raw = bytes(self._raw), None
            return extract_from_document(self.dialect, raw)
        for payload in payloads:
            self._observe(payload)
        return self._accumulator.snapshot()

    def _observe(self, payload: str) -> None:
        event = parse_event_payload(payload)
        if event is not None:
            extract_from_event(self.dialect, self._accumulator, event)
