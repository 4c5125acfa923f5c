"""FastAPI dependencies for authentication and the service graph."""

import logging
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from alphamail.core.config import Settings
from alphamail.core.llm import LLMClient
from alphamail.core.resilience import RetryPolicy
from alphamail.db.store import ConversationStore
from alphamail.services.checkin import CheckinService
from alphamail.services.composer import ResponseComposer
from alphamail.services.conversation import ConversationEngine
from alphamail.services.email_service import EmailService
from alphamail.services.fact_extractor import FactExtractor
from alphamail.services.onboarding import OnboardingService
from alphamail.services.summary import JourneySummaryService
from alphamail.services.thread_resolver import ThreadResolver
from alphamail.services.webhook_verifier import WebhookVerifier

logger = logging.getLogger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


@dataclass
class Services:
    """Capabilities built once at startup and shared by every request."""

    store: ConversationStore
    engine: ConversationEngine
    verifier: WebhookVerifier
    checkins: CheckinService
    onboarding: OnboardingService
    summaries: JourneySummaryService
    settings: Settings


def build_services(settings: Settings) -> Services:
    """Wire the service graph from settings.

    The text model, mailer and store are constructed here and passed
    explicitly to everything that needs them.
    """
    store = ConversationStore()
    mailer = EmailService(settings.RESEND_API_KEY.get_secret_value(), settings.FROM_EMAIL)
    llm = LLMClient(settings.ANTHROPIC_API_KEY.get_secret_value(), settings.LLM_MODEL)
    extractor = FactExtractor(
        llm,
        RetryPolicy(
            max_attempts=settings.AI_MAX_ATTEMPTS,
            initial_delay=settings.AI_INITIAL_DELAY_SECONDS,
        ),
        max_history=settings.THREAD_HISTORY_LIMIT,
    )
    composer = ResponseComposer(settings.APP_URL)
    onboarding = OnboardingService(store, mailer)
    summaries = JourneySummaryService(store, extractor, settings.SUMMARY_HISTORY_LIMIT)

    engine = ConversationEngine(
        store=store,
        extractor=extractor,
        thread_resolver=ThreadResolver(store),
        mailer=mailer,
        composer=composer,
        onboarding=onboarding,
        summaries=summaries,
        thread_history_limit=settings.THREAD_HISTORY_LIMIT,
        recent_history_limit=settings.RECENT_HISTORY_LIMIT,
    )
    verifier = WebhookVerifier(
        settings.webhook_secret_for,
        allow_unsigned=not settings.is_production,
    )
    return Services(
        store=store,
        engine=engine,
        verifier=verifier,
        checkins=CheckinService(store, mailer, composer),
        onboarding=onboarding,
        summaries=summaries,
        settings=settings,
    )


def get_services(request: Request) -> Services:
    """Return the service graph attached to the application at startup."""
    services: Services | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not ready",
        )
    return services


AppServices = Annotated[Services, Depends(get_services)]


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    services: AppServices,
) -> dict[str, Any]:
    """Validate the bearer access token and return ``{"id", "email"}``.

    Raises:
        HTTPException: If authentication fails.
    """
    if credentials is None:
        logger.warning("AUTH: No credentials provided in request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await services.store.get_user_for_token(credentials.credentials)
    if user is None or not user.get("email"):
        logger.warning("AUTH: Token validation returned no user")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


# Type aliases for common dependency patterns
CurrentUser = Annotated[dict[str, Any], Depends(get_current_user)]
