"""Referral code application with anti-fraud limits.

Checks, in order: self referral, referred-at-most-once, both wallets exist,
referrer monthly credit cap, referrals per client IP per UTC day. The
referral row, both bonus credits and both ledger records are written in one
transaction; any rejection rolls back without side effects.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import atomic
from models.credit_record import CreditPool, CreditRecordType
from models.referral import Referral
from models.wallet import Wallet
from services.credits import (
    apply_daily_reset,
    as_utc,
    credit_bonus_pool,
    current_month_key,
    get_day_start,
    lock_wallet,
    utcnow,
)
from services.entitlements import invalidate_entitlements_cache
from services.errors import ReferralError, UserNotFoundError
from services.ledger import append_credit_record

logger = logging.getLogger(__name__)


@dataclass
class ReferralContext:
    """Request facts used for anti-fraud checks."""

    ip_address: str = "unknown"
    user_agent: Optional[str] = None


@dataclass
class ReferralResult:
    referral_id: str
    referrer_id: str
    referred_id: str
    referrer_credits: int
    referred_credits: int


def _roll_monthly_counter(wallet: Wallet, now: datetime) -> None:
    month_key = current_month_key(now)
    if wallet.referral_month_key != month_key:
        wallet.referral_credits_this_month = 0
        wallet.referral_month_key = month_key


async def _lock_pair(db: AsyncSession, referrer_id: str, referred_id: str) -> Dict[str, Wallet]:
    # Stable lock order so two crossing referrals cannot deadlock
    wallets: Dict[str, Wallet] = {}
    for user_id in sorted((referrer_id, referred_id)):
        try:
            wallets[user_id] = await lock_wallet(user_id, db)
        except UserNotFoundError:
            if user_id == referrer_id:
                raise ReferralError("Referrer not found", code="REFERRER_NOT_FOUND") from None
            raise
    return wallets


async def apply_referral_code(
    referred_user_id: str,
    referrer_user_id: str,
    context: ReferralContext,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> ReferralResult:
    """Reward both parties of a referral, or raise ReferralError."""
    if referred_user_id == referrer_user_id:
        raise ReferralError("Cannot refer yourself", code="SELF_REFERRAL")

    now = as_utc(now) or utcnow()
    referrer_reward = max(int(settings.REFERRER_REWARD), 0)
    referred_reward = max(int(settings.REFERRED_REWARD), 0)
    ip_address = (context.ip_address or "unknown").strip() or "unknown"

    async with atomic(db):
        existing = await db.execute(select(Referral.id).where(Referral.referred_id == referred_user_id))
        if existing.scalar_one_or_none():
            raise ReferralError("Referral already applied", code="ALREADY_APPLIED")

        wallets = await _lock_pair(db, referrer_user_id, referred_user_id)
        referrer_wallet = wallets[referrer_user_id]
        referred_wallet = wallets[referred_user_id]

        _roll_monthly_counter(referrer_wallet, now)
        if int(referrer_wallet.referral_credits_this_month or 0) >= int(settings.REFERRAL_MONTHLY_LIMIT):
            raise ReferralError("Referrer reached monthly limit", code="MONTHLY_LIMIT")

        ip_count_result = await db.execute(
            select(func.count(Referral.id)).where(
                Referral.ip_address == ip_address,
                Referral.created_at >= get_day_start(now),
            )
        )
        if int(ip_count_result.scalar() or 0) >= int(settings.REFERRAL_MAX_PER_IP_PER_DAY):
            raise ReferralError("Too many referrals from this IP", code="IP_LIMIT")

        referral = Referral(
            id=str(uuid.uuid4()),
            referrer_id=referrer_user_id,
            referred_id=referred_user_id,
            referrer_credits=referrer_reward,
            referred_credits=referred_reward,
            ip_address=ip_address,
            user_agent=context.user_agent,
            status="completed",
            created_at=now,
        )
        db.add(referral)
        try:
            await db.flush()
        except IntegrityError as exc:
            # Unique index on referred_id settles a race the lookup above cannot see
            raise ReferralError("Referral already applied", code="ALREADY_APPLIED") from exc

        apply_daily_reset(referrer_wallet, now)
        apply_daily_reset(referred_wallet, now)

        referrer_before, referrer_after = credit_bonus_pool(referrer_wallet, referrer_reward, now)
        referrer_wallet.referral_credits_this_month = int(referrer_wallet.referral_credits_this_month or 0) + referrer_reward
        referrer_wallet.total_referral_credits = int(referrer_wallet.total_referral_credits or 0) + referrer_reward
        referrer_wallet.total_referrals = int(referrer_wallet.total_referrals or 0) + 1

        referred_before, referred_after = credit_bonus_pool(referred_wallet, referred_reward, now)

        await append_credit_record(
            db,
            user_id=referrer_user_id,
            record_type=CreditRecordType.REFERRAL_INVITER,
            amount=referrer_reward,
            balance_before=referrer_before,
            balance_after=referrer_after,
            pool=CreditPool.BONUS,
            metadata={"referral_id": referral.id, "referred_user_id": referred_user_id},
            now=now,
        )
        await append_credit_record(
            db,
            user_id=referred_user_id,
            record_type=CreditRecordType.REFERRAL_INVITEE,
            amount=referred_reward,
            balance_before=referred_before,
            balance_after=referred_after,
            pool=CreditPool.BONUS,
            metadata={"referral_id": referral.id, "referrer_id": referrer_user_id},
            now=now,
        )

    invalidate_entitlements_cache(referrer_user_id)
    invalidate_entitlements_cache(referred_user_id)
    logger.info(
        "referral_applied referrer=%s referred=%s ip=%s",
        referrer_user_id,
        referred_user_id,
        ip_address,
    )
    return ReferralResult(
        referral_id=referral.id,
        referrer_id=referrer_user_id,
        referred_id=referred_user_id,
        referrer_credits=referrer_reward,
        referred_credits=referred_reward,
    )


async def get_referral_stats(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = as_utc(now) or utcnow()
    result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise UserNotFoundError(user_id)

    this_month = 0
    if wallet.referral_month_key == current_month_key(now):
        this_month = int(wallet.referral_credits_this_month or 0)
    return {
        "referral_code": user_id,
        "total_referrals": int(wallet.total_referrals or 0),
        "total_credits_earned": int(wallet.total_referral_credits or 0),
        "credits_this_month": this_month,
        "monthly_limit": int(settings.REFERRAL_MONTHLY_LIMIT),
        "reward_per_referral": int(settings.REFERRER_REWARD),
    }


async def list_referral_history(user_id: str, db: AsyncSession, *, limit: int = 20) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Referral)
        .where(Referral.referrer_id == user_id)
        .order_by(Referral.created_at.desc())
        .limit(min(max(int(limit), 1), 100))
    )
    return [
        {
            "id": referral.id,
            "referrer_credits": referral.referrer_credits,
            "status": referral.status,
            "created_at": referral.created_at.isoformat() if referral.created_at else None,
        }
        for referral in result.scalars().all()
    ]
