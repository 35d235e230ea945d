import secrets
from collections.abc import AsyncGenerator, Callable
from typing import Annotated

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.service_container import Services
from app.services.balance_projector import BalanceProjector
from app.services.expiry_sweeper import ExpirySweeper
from app.services.pack_catalog import PackCatalog
from app.services.payment_reconciler import PaymentReconciler
from app.services.stripe_service import StripeService
from common.core.app_error import Errors
from common.core.config_service import ConfigService, FeatureFlags
from common.core.jwt_utils import JWTValidator, TokenData
from common.core.request_context import RequestContext
from common.db.db_utils import use_session
from common.utils.utils import get_logger
from ledger_db.crud.ledger import LedgerDAO

logger = get_logger()

# Security scheme; a missing header is reported by get_current_user_token
security = HTTPBearer(auto_error=False)


def get_services() -> Services:
    return Services.instance()


def get_config_service(services: Annotated[Services, Depends(get_services)]) -> ConfigService:
    return services.config_service


async def get_db(services: Annotated[Services, Depends(get_services)]) -> AsyncGenerator[AsyncSession]:
    """Dependency for async database session."""
    async with services.db.new_session() as session:
        async with use_session(session):
            yield session


def get_ledger_dao(services: Annotated[Services, Depends(get_services)]) -> LedgerDAO:
    return services.ledger_dao


def get_pack_catalog(services: Annotated[Services, Depends(get_services)]) -> PackCatalog:
    return services.pack_catalog


def get_balance_projector(services: Annotated[Services, Depends(get_services)]) -> BalanceProjector:
    return services.balance_projector


def get_expiry_sweeper(services: Annotated[Services, Depends(get_services)]) -> ExpirySweeper:
    return services.expiry_sweeper


def get_stripe_service(services: Annotated[Services, Depends(get_services)]) -> StripeService:
    return services.stripe_service


def get_payment_reconciler(services: Annotated[Services, Depends(get_services)]) -> PaymentReconciler:
    return services.payment_reconciler


def get_jwt_validator(config: Annotated[ConfigService, Depends(get_config_service)]) -> JWTValidator:
    return JWTValidator(config.auth)


async def get_current_user_token(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    jwt_validator: Annotated[JWTValidator, Depends(get_jwt_validator)],
) -> TokenData:
    """Dependency to get current user token data from JWT."""
    if credentials is None or not credentials.credentials:
        raise Errors.Auth.UNAUTHORIZED.create("Missing bearer token")
    return jwt_validator.validate_token(credentials.credentials)


async def get_current_user(token_data: Annotated[TokenData, Depends(get_current_user_token)]) -> TokenData:
    """The caller, as identified by the hosted auth provider."""
    request_context = RequestContext.get_or_none()
    if request_context is not None:
        request_context.user_id = token_data.user_id
    return token_data


async def get_admin_user(current_user: Annotated[TokenData, Depends(get_current_user)]) -> TokenData:
    """Dependency to get current admin user."""
    if not current_user.is_admin:
        logger.warning("Admin endpoint called by non-admin", user_id=current_user.user_id)
        raise Errors.Auth.FORBIDDEN.create()
    return current_user


async def require_internal_token(
    config: Annotated[ConfigService, Depends(get_config_service)],
    x_internal_token: Annotated[str | None, Header(alias="X-Internal-Token")] = None,
) -> None:
    """Service-to-service calls share a static token."""
    expected = config.auth.internal_api_token
    if not expected:
        logger.error("Internal API token is not configured; rejecting call")
        raise Errors.Auth.UNAUTHORIZED.create("Internal API is not configured")
    if not x_internal_token or not secrets.compare_digest(x_internal_token, expected):
        raise Errors.Auth.UNAUTHORIZED.create("Invalid internal token")


def require_feature(name: str) -> Callable[[ConfigService], None]:
    """Router-level guard answering 404 while the feature flag is off."""
    if name not in FeatureFlags.model_fields:
        raise ValueError(f"Unknown feature flag '{name}'")

    def _guard(config: Annotated[ConfigService, Depends(get_config_service)]) -> None:
        if not getattr(config.features, name):
            raise Errors.Generic.FEATURE_DISABLED.create(details={"feature": name})

    return _guard
