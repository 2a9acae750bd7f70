"""Admin credit operations."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import atomic
from models.credit_record import CreditPool, CreditRecordType
from models.user import User
from models.wallet import Wallet
from services.audit_log import log_admin_action
from services.credits import apply_daily_reset, as_utc, credit_bonus_pool, lock_wallet, utcnow
from services.entitlements import invalidate_entitlements_cache
from services.errors import InvalidAmountError
from services.ledger import append_credit_record

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500


async def grant_credits(
    admin_id: str,
    target_user_id: str,
    amount: int,
    reason: str,
    db: AsyncSession,
    *,
    admin_email: Optional[str] = None,
    ip_address: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Grant permanent bonus credits and leave both a ledger and an audit trail."""
    grant = int(amount)
    max_grant = int(settings.ADMIN_GRANT_MAX)
    if grant < 1 or grant > max_grant:
        raise InvalidAmountError(f"Amount must be between 1 and {max_grant}")
    reason = (reason or "").strip()
    if not reason or len(reason) > MAX_REASON_LENGTH:
        raise InvalidAmountError(f"Reason must be between 1 and {MAX_REASON_LENGTH} characters")

    now = as_utc(now) or utcnow()
    async with atomic(db):
        wallet = await lock_wallet(target_user_id, db)
        apply_daily_reset(wallet, now)
        before, after = credit_bonus_pool(wallet, grant, now)
        record = await append_credit_record(
            db,
            user_id=target_user_id,
            record_type=CreditRecordType.ADMIN_GRANT,
            amount=grant,
            balance_before=before,
            balance_after=after,
            pool=CreditPool.BONUS,
            metadata={"admin_id": admin_id, "admin_email": admin_email, "reason": reason},
            now=now,
        )
        bonus_after = int(wallet.bonus_credits)

    invalidate_entitlements_cache(target_user_id)
    log_admin_action(
        "grant_credits",
        admin_id,
        admin_email=admin_email,
        target_id=target_user_id,
        target_type="user",
        ip_address=ip_address,
        details={"amount": grant, "reason": reason, "record_id": record.id},
    )
    return {
        "success": True,
        "record_id": record.id,
        "balance_after": after,
        "bonus_credits": bonus_after,
    }


async def search_users(
    email_fragment: str,
    db: AsyncSession,
    *,
    admin_id: str,
    admin_email: Optional[str] = None,
    ip_address: Optional[str] = None,
    limit: int = 20,
) -> List[Dict[str, Any]]:
    fragment = (email_fragment or "").strip()
    if not fragment:
        raise InvalidAmountError("email query must not be empty")

    result = await db.execute(
        select(User, Wallet)
        .outerjoin(Wallet, Wallet.user_id == User.id)
        .where(User.email.ilike(f"%{fragment}%"))
        .order_by(User.email)
        .limit(min(max(int(limit), 1), 100))
    )
    users = [
        {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "subscription_tier": wallet.subscription_tier if wallet else None,
            "daily_credits": wallet.daily_credits if wallet else 0,
            "subscription_credits": wallet.subscription_credits if wallet else 0,
            "bonus_credits": wallet.bonus_credits if wallet else 0,
            "created_at": user.created_at.isoformat() if user.created_at else None,
        }
        for user, wallet in result.all()
    ]
    log_admin_action(
        "search_users",
        admin_id,
        admin_email=admin_email,
        ip_address=ip_address,
        details={"query": fragment, "result_count": len(users)},
    )
    return users
