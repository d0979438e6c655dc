import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.database import get_db
from app.utils.security import decode_token
from app.models.user import User
from app.services.currency import ExchangeRateService
from app.services.insights import InsightsService
from app.services.meta_api import MetaAPIService
from app.services.publisher import AdPublisher

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    token = credentials.credentials
    payload = decode_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    result = await db.execute(select(User).where(User.id == _as_uuid(user_id)))
    user = result.scalar_one_or_none()

    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )

    return user


def _as_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )


def get_meta_service() -> MetaAPIService:
    return MetaAPIService()


def get_exchange_rate_service() -> ExchangeRateService:
    return ExchangeRateService()


def get_publisher(
    meta: MetaAPIService = Depends(get_meta_service),
    exchange_rates: ExchangeRateService = Depends(get_exchange_rate_service),
) -> AdPublisher:
    return AdPublisher(meta, exchange_rates)


def get_insights_service(
    meta: MetaAPIService = Depends(get_meta_service),
    exchange_rates: ExchangeRateService = Depends(get_exchange_rate_service),
) -> InsightsService:
    return InsightsService(meta, exchange_rates)
