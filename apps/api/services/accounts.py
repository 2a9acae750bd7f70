"""Account provisioning: the user row and its wallet are created together."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import atomic
from models.credit_record import CreditPool, CreditRecordType
from models.user import User
from models.wallet import SubscriptionTier, Wallet
from services.credits import as_utc, credit_bonus_pool, utcnow
from services.ledger import append_credit_record

logger = logging.getLogger(__name__)


async def get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def provision_account(
    user_id: str,
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
    role: str = "user",
    now: Optional[datetime] = None,
) -> Tuple[User, bool]:
    """Create the user and an empty wallet if missing. Returns (user, created)."""
    now = as_utc(now) or utcnow()
    async with atomic(db):
        user = await get_user(db, user_id)
        created = False
        if user is None:
            user = User(
                id=user_id,
                email=email or f"{user_id}@local.invalid",
                name=name,
                role=role,
                created_at=now,
            )
            db.add(user)
            created = True

        wallet_result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
        if wallet_result.scalar_one_or_none() is None:
            wallet = Wallet(
                user_id=user_id,
                daily_credits=0,
                subscription_credits=0,
                bonus_credits=0,
                subscription_tier=SubscriptionTier.FREE.value,
                referral_credits_this_month=0,
                total_referral_credits=0,
                total_referrals=0,
                updated_at=now,
            )
            db.add(wallet)
            await db.flush()

            signup_bonus = max(int(settings.SIGNUP_BONUS_CREDITS), 0)
            if signup_bonus:
                before, after = credit_bonus_pool(wallet, signup_bonus, now)
                await append_credit_record(
                    db,
                    user_id=user_id,
                    record_type=CreditRecordType.SIGNUP_BONUS,
                    amount=signup_bonus,
                    balance_before=before,
                    balance_after=after,
                    pool=CreditPool.BONUS,
                    now=now,
                )
            logger.info("account_provisioned user=%s signup_bonus=%s", user_id, signup_bonus)

    return user, created
