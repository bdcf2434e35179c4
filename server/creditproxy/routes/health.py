from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse

from server.creditproxy.billing.guard import CreditGuard
from server.creditproxy.billing.ledger import LedgerError
from server.creditproxy.config import Settings

router = APIRouter()


# Any method; never relayed upstream.
@router.api_route(
    "/health",
    methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    response_class=PlainTextResponse,
)
def health():
    return "ok"


@router.get("/readyz")
async def readyz(request: Request):
    settings: Settings = request.app.state.settings
    guard: CreditGuard = request.app.state.guard

    if not settings.user_id:
        raise HTTPException(status_code=503, detail="USER_ID missing")
    if settings.ledger_backend == "rest" and not (settings.supabase_url and settings.supabase_key):
        raise HTTPException(status_code=503, detail="SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY missing")

    try:
        await guard.call_ledger(guard.ledger.get_balance, settings.user_id)
    except LedgerError as exc:
        raise HTTPException(status_code=503, detail="Credit ledger unavailable") from exc

    return {"ok": True}
