"""Account routes for the signed-in user."""

import logging

from fastapi import APIRouter, HTTPException, status

from alphamail.api.deps import AppServices, CurrentUser
from alphamail.core.exceptions import NotFoundError, sanitize_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/user", tags=["user"])


@router.post("/link-pending-emails")
async def link_pending_emails(current_user: CurrentUser, services: AppServices) -> dict[str, object]:
    """Move messages sent before signup into the user's history."""
    try:
        linked = await services.onboarding.link_pending_emails(
            current_user["id"], current_user["email"].lower()
        )
    except Exception as e:
        logger.exception("Failed to link pending emails", extra={"user_id": current_user["id"]})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=sanitize_error(e),
        ) from e
    return {"success": True, "linked": linked}


@router.post("/update-summary")
async def update_summary(current_user: CurrentUser, services: AppServices) -> dict[str, object]:
    """Regenerate the journey summary now."""
    try:
        summary = await services.summaries.regenerate(current_user["id"])
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found") from e
    except Exception as e:
        logger.exception("Failed to update summary", extra={"user_id": current_user["id"]})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=sanitize_error(e),
        ) from e
    return {"success": True, "summary": summary}
