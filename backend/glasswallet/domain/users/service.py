from __future__ import annotations

import secrets
import uuid

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.domain.users.db_models import User
from glasswallet.infra.security import generate_api_key, hash_api_key
from glasswallet.settings import settings


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    company_name: str | None = None,
    credit_balance: int | None = None,
    api_key: str | None = None,
    client_id: str | None = None,
) -> tuple[User, str]:
    """Create a tenant and return it with its plaintext API key (only available here)."""
    raw_key = api_key or generate_api_key()
    user = User(
        email=email.strip().lower(),
        company_name=company_name,
        client_id=client_id or f"gw_client_{secrets.token_hex(8)}",
        api_key_hash=hash_api_key(raw_key),
        credit_balance=settings.signup_credit_cents if credit_balance is None else credit_balance,
    )
    session.add(user)
    await session.flush()
    return user, raw_key


async def get_user(session: AsyncSession, user_id: uuid.UUID) -> User | None:
    return await session.get(User, user_id)


async def get_user_by_api_key(session: AsyncSession, api_key: str) -> User | None:
    result = await session.execute(sa.select(User).where(User.api_key_hash == hash_api_key(api_key)))
    return result.scalar_one_or_none()


async def get_user_by_client_credentials(session: AsyncSession, client_id: str, api_key: str) -> User | None:
    user = await get_user_by_api_key(session, api_key)
    if user is None or not secrets.compare_digest(user.client_id, client_id):
        return None
    return user
