"""Relay of inbound requests to upstream providers with credit metering.

Each request moves through ADMITTING -> RELAYING -> SETTLING -> CLOSED, or
ends in ERRORED. Settlement runs as a response background task once the
last byte has been handed to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum

import anyio
import httpx
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect, Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from server.creditproxy.billing.guard import CreditGuard
from server.creditproxy.billing.usage import StreamUsageMeter, TokenUsage, extract_from_document
from server.creditproxy.providers import (
    Provider,
    ProviderRouter,
    credit_exceeded_body,
    is_streaming_request,
    proxy_error_body,
)

logger = logging.getLogger(__name__)

_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)
_DROP_REQUEST_HEADERS = _HOP_BY_HOP | {"host", "content-length", "accept-encoding"}
# Relayed bodies are always decoded, so the upstream length and encoding no longer apply.
_DROP_RESPONSE_HEADERS = _HOP_BY_HOP | {"content-length", "content-encoding"}


class ForwardState(str, Enum):
    admitting = "ADMITTING"
    relaying = "RELAYING"
    settling = "SETTLING"
    closed = "CLOSED"
    errored = "ERRORED"


@dataclass
class Exchange:
    provider: Provider
    method: str
    path: str
    state: ForwardState = ForwardState.admitting
    streaming: bool = False
    status_code: int | None = None
    remaining_cents: int | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    upstream: httpx.Response | None = None

    @property
    def billable(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    async def release(self) -> None:
        upstream, self.upstream = self.upstream, None
        if upstream is not None:
            with anyio.CancelScope(shield=True):
                await upstream.aclose()


def proxy_error_response(status_code: int = 502, message: str = "Credit proxy error") -> JSONResponse:
    return JSONResponse(proxy_error_body(message), status_code=status_code)


def forward_request_headers(request: Request) -> list[tuple[bytes, bytes]]:
    headers = [
        (name, value)
        for name, value in request.headers.raw
        if name.decode("latin-1").lower() not in _DROP_REQUEST_HEADERS
    ]
    headers.append((b"accept-encoding", b"identity"))
    return headers


def relay_response_headers(upstream: httpx.Response) -> dict[str, str]:
    return {
        name: value
        for name, value in upstream.headers.items()
        if name.lower() not in _DROP_RESPONSE_HEADERS
    }


class ProxyForwarder:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        router: ProviderRouter,
        guard: CreditGuard,
        user_id: str,
        model: str,
        credit_exceeded_message: str,
        max_body_bytes: int | None = None,
    ) -> None:
        self.client = client
        self.router = router
        self.guard = guard
        self.user_id = user_id
        self.model = model
        self.credit_exceeded_message = credit_exceeded_message
        self.max_body_bytes = max_body_bytes

    async def forward(self, request: Request) -> Response:
        provider = self.router.resolve(request.url.path)
        exchange = Exchange(provider=provider, method=request.method, path=request.url.path)

        if self._declared_too_large(request):
            exchange.state = ForwardState.errored
            return proxy_error_response(413, "Request body too large.")
        try:
            body = await request.body()
        except ClientDisconnect:
            exchange.state = ForwardState.errored
            logger.warning("Client disconnected before %s %s was read", exchange.method, exchange.path)
            return proxy_error_response()
        if self.max_body_bytes is not None and len(body) > self.max_body_bytes:
            exchange.state = ForwardState.errored
            return proxy_error_response(413, "Request body too large.")

        admission = await self.guard.check_admission(self.user_id)
        exchange.remaining_cents = admission.remaining_cents
        if not admission.admitted:
            exchange.state = ForwardState.closed
            if admission.degraded:
                return proxy_error_response(503, "Credit ledger unavailable")
            logger.info("Credit exceeded for user %s, blocking request", self.user_id)
            return JSONResponse(
                credit_exceeded_body(provider.dialect, self.credit_exceeded_message),
                status_code=429,
            )

        exchange.state = ForwardState.relaying
        exchange.streaming = is_streaming_request(exchange.path, body)
        upstream_request = self.client.build_request(
            request.method,
            provider.upstream_url(request.url.path, request.url.query),
            headers=forward_request_headers(request),
            content=body,
        )
        try:
            exchange.upstream = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            exchange.state = ForwardState.errored
            logger.error("Upstream request to %s failed: %s", provider.name, e)
            return proxy_error_response()

        exchange.status_code = exchange.upstream.status_code
        if exchange.streaming:
            return StreamingResponse(
                self._relay_stream(exchange),
                status_code=exchange.status_code,
                headers=relay_response_headers(exchange.upstream),
                background=BackgroundTask(self._complete, exchange),
            )
        return await self._relay_buffered(exchange)

    def _declared_too_large(self, request: Request) -> bool:
        if self.max_body_bytes is None:
            return False
        try:
            declared = int(request.headers.get("content-length", ""))
        except ValueError:
            return False
        return declared > self.max_body_bytes

    async def _relay_buffered(self, exchange: Exchange) -> Response:
        upstream = exchange.upstream
        try:
            content = await upstream.aread()
        except httpx.HTTPError as e:
            exchange.state = ForwardState.errored
            logger.error("Upstream response from %s failed: %s", exchange.provider.name, e)
            return proxy_error_response()
        finally:
            await exchange.release()

        if exchange.billable:
            exchange.usage = extract_from_document(exchange.provider.dialect, content)
        exchange.state = ForwardState.settling
        return Response(
            content=content,
            status_code=exchange.status_code,
            headers=relay_response_headers(upstream),
            background=BackgroundTask(self._complete, exchange),
        )

    async def _relay_stream(self, exchange: Exchange) -> AsyncIterator[bytes]:
        meter = StreamUsageMeter(exchange.provider.dialect)
        try:
            async for chunk in exchange.upstream.aiter_bytes():
                yield chunk
                meter.feed(chunk)
            usage = meter.finish()
            if exchange.billable:
                exchange.usage = usage
            exchange.state = ForwardState.settling
        except httpx.HTTPError as e:
            exchange.state = ForwardState.errored
            logger.error("Upstream stream from %s failed: %s", exchange.provider.name, e)
        finally:
            if exchange.state is ForwardState.relaying:
                # Caller went away mid-stream; nothing is charged.
                exchange.state = ForwardState.errored
                logger.info("Caller disconnected during %s %s stream", exchange.method, exchange.path)
            await exchange.release()

    async def _complete(self, exchange: Exchange) -> None:
        await exchange.release()
        if exchange.state is not ForwardState.settling:
            return
        usage = exchange.usage
        if usage.is_empty:
            exchange.state = ForwardState.closed
            return
        cost = await self.guard.settle(self.user_id, self.model, usage.tokens_in, usage.tokens_out)
        exchange.state = ForwardState.closed
        mode = "Streamed" if exchange.streaming else "Logged"
        if exchange.remaining_cents is None:
            logger.info("%s: %din/%dout = %d cents", mode, usage.tokens_in, usage.tokens_out, cost)
        else:
            logger.info(
                "%s: %din/%dout = %d cents | remaining: ~%d cents",
                mode,
                usage.tokens_in,
                usage.tokens_out,
                cost,
                exchange.remaining_cents - cost,
            )
