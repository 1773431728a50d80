# FILE: backend/api/deps.py

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.database import get_db, get_session_factory
from backend.models.user import User
from backend.services.auth_service import TokenError, caller_id
from backend.services.payment_gateway import GatewayRegistry, PaymentGateway

security = HTTPBearer(auto_error=False)


async def get_current_user(
        credentials: HTTPAuthorizationCredentials = Depends(security),
        db: AsyncSession = Depends(get_db),
):
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        user_id = caller_id(credentials.credentials)
    except TokenError as e:
        raise HTTPException(status_code=401, detail=str(e))

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    return {"id": user.id, "email": user.email, "name": user.name}


def get_gateway_registry(request: Request) -> GatewayRegistry:
    return request.app.state.gateways


async def get_gateway(
        registry: GatewayRegistry = Depends(get_gateway_registry),
        db: AsyncSession = Depends(get_db),
) -> PaymentGateway:
    return await registry.get(db, "stripe")


def get_sessions() -> async_sessionmaker:
    return get_session_factory()
