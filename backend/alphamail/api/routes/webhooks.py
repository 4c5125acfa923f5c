"""Resend delivery event webhook.

Supported event types:
- email.bounced: recipient marked ``bounced``
- email.complained: recipient marked ``complained``
- email.delivery_delayed / email.failed: logged only

Marked recipients stop receiving weekly check-ins.
"""

import logging
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from alphamail.api.deps import AppServices
from alphamail.api.routes.email import INTERNAL_ERROR, client_ip
from alphamail.models.conversation import WebhookEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

STATUS_BY_EVENT = {
    "email.bounced": "bounced",
    "email.complained": "complained",
}
LOGGED_EVENTS = frozenset({"email.delivery_delayed", "email.failed"})


def recipients(data: dict[str, Any]) -> list[str]:
    """Lowercased recipient addresses of a delivery event."""
    to = data.get("to")
    if isinstance(to, str):
        to = [to]
    if not isinstance(to, list):
        return []
    return [address.strip().lower() for address in to if isinstance(address, str) and address.strip()]


@router.post("/resend-events")
async def resend_events(request: Request, services: AppServices) -> JSONResponse:
    """Record bounces and complaints reported by Resend."""
    body = await request.body()
    verification = services.verifier.verify(body, request.headers, "events")
    if not verification.verified:
        logger.warning(
            "SECURITY: Invalid webhook signature",
            extra={
                "endpoint": "events",
                "client_ip": client_ip(request),
                "reason": verification.error,
            },
        )
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"success": False, "error": "Invalid webhook signature"},
        )

    try:
        event = WebhookEvent.model_validate(verification.payload or {})
    except ValidationError:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Invalid payload"},
        )

    email_status = STATUS_BY_EVENT.get(event.type)
    if email_status is None:
        if event.type in LOGGED_EVENTS:
            logger.warning(
                "Email delivery problem",
                extra={"event_type": event.type, "email_id": event.data.get("email_id")},
            )
            return JSONResponse(content={"success": True, "action": "logged"})
        return JSONResponse(content={"success": True, "action": "ignored"})

    updated = 0
    try:
        for address in recipients(event.data):
            updated += await services.store.mark_email_status(address, email_status)
    except Exception:
        logger.exception("Failed to record delivery event", extra={"event_type": event.type})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": INTERNAL_ERROR},
        )

    logger.info(
        "Recorded delivery event",
        extra={"event_type": event.type, "status": email_status, "profiles": updated},
    )
    return JSONResponse(content={"success": True, "action": email_status})
