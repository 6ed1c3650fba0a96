"""HTTP surface for the dispatcher."""

from typing import Any

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse

from licensehub.dispatch import Dispatcher

router = APIRouter(tags=["dispatch"])


def _dispatcher(request: Request) -> Dispatcher:
    return request.app.state.container.dispatcher


def _respond(result: dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=result["statusCode"], content=result)


@router.post("/dispatch")
async def dispatch(request: Request, payload: dict[str, Any] = Body(...)) -> JSONResponse:
    """Run one action. The HTTP status mirrors ``statusCode``."""
    return _respond(await _dispatcher(request).dispatch(payload))


@router.post("/webhooks/donation")
async def donation_webhook(request: Request, payload: dict[str, Any] = Body(...)) -> JSONResponse:
    """Payment provider callback, forwarded as a ``donation-webhook`` action."""
    command = {
        "action": "donation-webhook",
        "verificationToken": payload.get("verification_token"),
        "amount": payload.get("amount"),
        "fromName": payload.get("from_name"),
        "message": payload.get("message"),
    }
    return _respond(await _dispatcher(request).dispatch(command))
