from __future__ import annotations

from fastapi import APIRouter, Request

from server.creditproxy.forwarder import ProxyForwarder

router = APIRouter()

_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


@router.api_route("/{path:path}", methods=_METHODS, include_in_schema=False)
async def proxy(request: Request, path: str):
    forwarder: ProxyForwarder = request.app.state.forwarder
    return await forwarder.forward(request)
