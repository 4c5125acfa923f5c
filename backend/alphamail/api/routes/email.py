"""Email API routes.

Provides endpoints for:
- Inbound email webhook (the conversation pipeline)
- Weekly check-in trigger (cron)
- Onboarding prompt for a newly confirmed account
- Welcome email after web signup
"""

import hmac
import logging
from email.utils import parseaddr
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from alphamail.api.deps import AppServices
from alphamail.core.exceptions import NotFoundError
from alphamail.models.conversation import WebhookEvent
from alphamail.services.conversation import InboundMessage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/email", tags=["email"])

INBOUND_EVENT_TYPE = "email.received"
INTERNAL_ERROR = "Internal server error"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def client_ip(request: Request) -> str:
    """Best-effort caller address for audit logs."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------


class OnboardingRequest(BaseModel):
    """Body of the onboarding prompt and welcome email triggers."""

    token: str | None = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/inbound")
async def inbound_email(request: Request, services: AppServices) -> JSONResponse:
    """Handle an inbound email delivered by Resend.

    Only ``email.received`` events are processed. The response body always
    carries ``success`` and, on success, an ``action`` tag naming the path
    taken. Internal error details are never returned.
    """
    body = await request.body()
    verification = services.verifier.verify(body, request.headers, "inbound")
    if not verification.verified:
        logger.warning(
            "SECURITY: Invalid webhook signature",
            extra={
                "endpoint": "inbound",
                "client_ip": client_ip(request),
                "reason": verification.error,
            },
        )
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid webhook signature")

    try:
        event = WebhookEvent.model_validate(verification.payload or {})
        if event.type != INBOUND_EVENT_TYPE:
            logger.info("Ignoring webhook event", extra={"event_type": event.type})
            return JSONResponse(content={"success": True, "action": "ignored"})

        own_address = parseaddr(services.settings.FROM_EMAIL)[1].lower()
        message = InboundMessage.from_webhook(
            event.inbound_email(),
            delivery_id=request.headers.get("svix-id"),
            own_addresses=[own_address] if own_address else [],
        )
        if message is None:
            return _error(status.HTTP_400_BAD_REQUEST, "No sender email")

        result = await services.engine.handle(message)
        return JSONResponse(content=result.to_response())
    except ValidationError:
        logger.warning("Malformed inbound webhook payload")
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid payload")
    except Exception:
        logger.exception("Error processing inbound email")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, INTERNAL_ERROR)


@router.post("/checkin")
async def send_weekly_checkins(request: Request, services: AppServices) -> JSONResponse:
    """Send the Sunday check-in to every active sender with a goal.

    Requires ``Authorization: Bearer <CRON_SECRET>`` when a cron secret is set.
    """
    cron_secret = services.settings.CRON_SECRET
    if cron_secret:
        supplied = request.headers.get("authorization", "")
        if not hmac.compare_digest(supplied, f"Bearer {cron_secret}"):
            logger.warning(
                "SECURITY: Unauthorized check-in trigger",
                extra={"client_ip": client_ip(request)},
            )
            return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    try:
        run = await services.checkins.send_weekly_checkins()
    except Exception:
        logger.exception("Weekly check-in run failed")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, INTERNAL_ERROR)

    content: dict[str, Any] = {"success": True, "sent": run.sent, "errors": run.errors}
    return JSONResponse(content=content)


@router.post("/onboarding")
async def send_onboarding_email(payload: OnboardingRequest, services: AppServices) -> JSONResponse:
    """Send the onboarding prompt to the owner of a Supabase access token."""
    if not payload.token:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing token")

    user = await services.store.get_user_for_token(payload.token)
    if user is None or not user.get("email"):
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid token")

    try:
        await services.onboarding.send_onboarding_prompt(user["id"], user["email"])
    except Exception:
        logger.exception("Failed to send onboarding email", extra={"user_id": user["id"]})
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, INTERNAL_ERROR)

    logger.info("Onboarding email sent", extra={"user_id": user["id"]})
    return JSONResponse(content={"success": True})


@router.post("/welcome")
async def send_welcome_email(payload: OnboardingRequest, services: AppServices) -> JSONResponse:
    """Send the welcome email to a user who just signed up on the web."""
    if not payload.token:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing token")

    user = await services.store.get_user_for_token(payload.token)
    if user is None:
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid token")

    try:
        await services.onboarding.send_welcome_email(user["id"])
    except NotFoundError:
        return _error(status.HTTP_404_NOT_FOUND, "Profile not found")
    except Exception:
        logger.exception("Failed to send welcome email", extra={"user_id": user["id"]})
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, INTERNAL_ERROR)

    return JSONResponse(content={"success": True})
