from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from server.creditproxy.billing.guard import CreditGuard
from server.creditproxy.billing.ledger import LedgerStore, build_ledger
from server.creditproxy.billing.pricing import load_pricing_table
from server.creditproxy.cli import add_runtime_args, apply_runtime_overrides
from server.creditproxy.config import Settings
from server.creditproxy.forwarder import ProxyForwarder
from server.creditproxy.providers import DEFAULT_PROVIDERS, ProviderRouter
from server.creditproxy.routes import health, proxy

logger = logging.getLogger("server.creditproxy")


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    # Only connecting is bounded; streamed responses may legitimately run long.
    timeout = httpx.Timeout(None, connect=settings.upstream_connect_timeout_seconds)
    return httpx.AsyncClient(timeout=timeout, follow_redirects=False)


def create_app(
    settings: Settings | None = None,
    *,
    ledger: LedgerStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    if settings is None:
        load_dotenv()
        settings = Settings.from_env()

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    pricing = load_pricing_table(settings.pricing_file)
    if settings.ai_model not in pricing:
        logger.warning(
            "No pricing for model %s, charging as %s", settings.ai_model, pricing.default_model
        )
    router = ProviderRouter(DEFAULT_PROVIDERS, default_provider=settings.ai_provider)
    guard = CreditGuard(
        ledger=ledger if ledger is not None else build_ledger(settings),
        pricing=pricing,
        instance_id=settings.instance_id,
        default_cap_cents=settings.default_cap_cents,
        ledger_timeout_seconds=settings.ledger_timeout_seconds,
        fail_open=settings.ledger_fail_open,
    )
    client = http_client if http_client is not None else build_http_client(settings)
    forwarder = ProxyForwarder(
        client=client,
        router=router,
        guard=guard,
        user_id=settings.user_id,
        model=settings.ai_model,
        credit_exceeded_message=settings.credit_exceeded_message,
        max_body_bytes=settings.max_body_mb * 1024 * 1024,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("Credit proxy listening on http://%s:%d", settings.host, settings.port)
        logger.info(
            "User: %s, Instance: %s, Model: %s, Provider: %s, Ledger: %s (fail %s)",
            settings.user_id or "-",
            settings.instance_id or "-",
            settings.ai_model,
            router.default.name,
            settings.ledger_backend,
            "open" if settings.ledger_fail_open else "closed",
        )
        try:
            yield
        finally:
            await client.aclose()

    app = FastAPI(
        title="credit-proxy",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.pricing = pricing
    app.state.guard = guard
    app.state.forwarder = forwarder

    app.include_router(health.router)
    app.include_router(proxy.router)
    return app


if __name__ != "__main__":
    app = create_app()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the metering credit proxy.")
    add_runtime_args(parser)
    args = parser.parse_args()

    load_dotenv()
    apply_runtime_overrides(args)
    settings = Settings.from_env()
    uvicorn.run("server.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
