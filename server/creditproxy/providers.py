"""Upstream providers, their wire dialects and path-based routing."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType


class ProviderDialect(str, Enum):
    anthropic = "anthropic"
    openai = "openai"
    google = "google"


@dataclass(frozen=True)
class Provider:
    name: str
    dialect: ProviderDialect
    base_url: str

    def upstream_url(self, path: str, query: str = "") -> str:
        url = self.base_url.rstrip("/") + path
        if query:
            url = f"{url}?{query}"
        return url


DEFAULT_PROVIDERS: tuple[Provider, ...] = (
    Provider("anthropic", ProviderDialect.anthropic, "https://api.anthropic.com"),
    Provider("openai", ProviderDialect.openai, "https://api.openai.com"),
    Provider("google", ProviderDialect.google, "https://generativelanguage.googleapis.com"),
    Provider("xai", ProviderDialect.openai, "https://api.x.ai"),
    Provider("deepseek", ProviderDialect.openai, "https://api.deepseek.com"),
)

# Checked in order; first substring found in the request path wins.
_PATH_RULES: tuple[tuple[str, ProviderDialect], ...] = (
    ("/v1/messages", ProviderDialect.anthropic),
    ("/chat/completions", ProviderDialect.openai),
    (":generateContent", ProviderDialect.google),
    (":streamGenerateContent", ProviderDialect.google),
)


def detect_dialect(path: str) -> ProviderDialect | None:
    for needle, dialect in _PATH_RULES:
        if needle in path:
            return dialect
    return None


class ProviderRouter:
    """Maps an inbound request path to the provider that should serve it.

    The configured default provider handles every path whose dialect it speaks
    and every path no rule recognises. A path in another dialect goes to the
    first registered provider of that dialect.
    """

    def __init__(self, providers: Iterable[Provider], *, default_provider: str) -> None:
        by_name: dict[str, Provider] = {}
        by_dialect: dict[ProviderDialect, Provider] = {}
        for provider in providers:
            by_name[provider.name] = provider
            by_dialect.setdefault(provider.dialect, provider)
        if not by_name:
            raise ValueError("At least one provider is required.")
        default = by_name.get(default_provider)
        if default is None:
            raise ValueError(
                f"Unknown provider {default_provider!r} (known: {', '.join(sorted(by_name))})."
            )
        self._by_dialect: Mapping[ProviderDialect, Provider] = MappingProxyType(by_dialect)
        self.default = default

    def resolve(self, path: str) -> Provider:
        dialect = detect_dialect(path)
        if dialect is None or dialect == self.default.dialect:
            return self.default
        return self._by_dialect.get(dialect, self.default)


def is_streaming_request(path: str, body: bytes) -> bool:
    if ":streamGenerateContent" in path:
        return True
    if not body:
        return False
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError):
        return False
    return isinstance(data, dict) and data.get("stream") is True


def _anthropic_rejection(message: str) -> dict:
    return {"type": "error", "error": {"type": "rate_limit_error", "message": message}}


def _openai_rejection(message: str) -> dict:
    return {"error": {"message": message, "type": "rate_limit_error", "code": "credit_exceeded"}}


def _google_rejection(message: str) -> dict:
    return {
        "error": {
            "code": 429,
            "message": message,
            "status": "RESOURCE_EXHAUSTED",
            "details": [
                {
                    "@type": "type.googleapis.com/google.rpc.ErrorInfo",
                    "reason": "credit_exceeded",
                }
            ],
        }
    }


_REJECTIONS: Mapping[ProviderDialect, Callable[[str], dict]] = MappingProxyType(
    {
        ProviderDialect.anthropic: _anthropic_rejection,
        ProviderDialect.openai: _openai_rejection,
        ProviderDialect.google: _google_rejection,
    }
)


def credit_exceeded_body(dialect: ProviderDialect, message: str) -> dict:
    return _REJECTIONS[dialect](message)


def proxy_error_body(message: str = "Credit proxy error") -> dict:
    return {"error": {"message": message, "type": "proxy_error"}}
