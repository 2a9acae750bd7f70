"""Balance engine for the three-pool credits system.

Pools:
1. Daily credits: login reward, expire at the end of the UTC day
2. Subscription credits: tier allotment, replaced on renewal/cancellation
3. Bonus credits: purchases, referrals, admin grants; never expire

Consumption priority is daily -> subscription -> bonus.

Every public operation locks the wallet row, works inside one transaction and
appends at most one ledger record per mutation. The ``apply_*``/``credit_*``
primitives never commit so the payment, referral and admin paths can compose
them inside their own transaction.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import atomic
from models.credit_record import CreditPool, CreditRecordType
from models.wallet import SubscriptionTier, Wallet
from services.errors import InvalidAmountError, UserNotFoundError
from services.ledger import append_credit_record

logger = logging.getLogger(__name__)

PAID_TIERS = (SubscriptionTier.STARTER, SubscriptionTier.PRO, SubscriptionTier.MAX)


# ============= Pure rules =============


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp; naive values are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def needs_daily_reset(last_reset_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when the last reset is not on the current UTC calendar day."""
    if last_reset_at is None:
        return True
    current = as_utc(now) or utcnow()
    return as_utc(last_reset_at).date() != current.date()


def get_next_day_start(now: Optional[datetime] = None) -> datetime:
    """Next midnight UTC."""
    current = as_utc(now) or utcnow()
    today = datetime(current.year, current.month, current.day, tzinfo=timezone.utc)
    return today + timedelta(days=1)


def get_day_start(now: Optional[datetime] = None) -> datetime:
    current = as_utc(now) or utcnow()
    return datetime(current.year, current.month, current.day, tzinfo=timezone.utc)


def current_month_key(now: Optional[datetime] = None) -> str:
    current = as_utc(now) or utcnow()
    return current.strftime("%Y-%m")


def parse_tier(tier: Any) -> Optional[SubscriptionTier]:
    if isinstance(tier, SubscriptionTier):
        return tier
    try:
        return SubscriptionTier(str(getattr(tier, "value", tier)).strip().lower())
    except ValueError:
        return None


def get_effective_tier(
    tier: Optional[str],
    expires_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> SubscriptionTier:
    """Tier after accounting for expiry; unknown or expired tiers are free."""
    resolved = parse_tier(tier) if tier else None
    if resolved is None or resolved == SubscriptionTier.FREE:
        return SubscriptionTier.FREE

    current = as_utc(now) or utcnow()
    if expires_at is not None and as_utc(expires_at) < current:
        return SubscriptionTier.FREE
    return resolved


def get_subscription_credits_limit(
    tier: Any,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> int:
    """Subscription pool limit for a tier; 0 once the subscription has expired."""
    current = as_utc(now) or utcnow()
    if expires_at is not None and as_utc(expires_at) < current:
        return 0

    limits = {
        SubscriptionTier.FREE: settings.SUBSCRIPTION_FREE_CREDITS,
        SubscriptionTier.STARTER: settings.SUBSCRIPTION_STARTER_CREDITS,
        SubscriptionTier.PRO: settings.SUBSCRIPTION_PRO_CREDITS,
        SubscriptionTier.MAX: settings.SUBSCRIPTION_MAX_CREDITS,
    }
    resolved = parse_tier(tier) or SubscriptionTier.FREE
    return max(int(limits[resolved]), 0)


# ============= Result types =============


@dataclass
class CreditsBalance:
    daily_credits: int
    subscription_credits: int
    subscription_credits_limit: int
    bonus_credits: int
    total_available: int
    tier: str
    daily_resets_at: datetime
    subscription_resets_at: Optional[datetime]

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["daily_resets_at"] = self.daily_resets_at.isoformat()
        payload["subscription_resets_at"] = (
            self.subscription_resets_at.isoformat() if self.subscription_resets_at else None
        )
        return payload


@dataclass
class ReserveCheck:
    allowed: bool
    balance: CreditsBalance
    code: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ConsumeResult:
    credits_consumed: int
    requested: int
    shortfall: int
    balance: CreditsBalance

    @property
    def is_partial(self) -> bool:
        return self.shortfall > 0


# ============= Wallet primitives (caller owns the transaction) =============


async def lock_wallet(user_id: str, db: AsyncSession) -> Wallet:
    """Load the wallet row under a row lock, refreshing any cached copy."""
    result = await db.execute(
        select(Wallet)
        .where(Wallet.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise UserNotFoundError(user_id)
    return wallet


def apply_daily_reset(wallet: Wallet, now: datetime) -> bool:
    """Expire yesterday's daily credits. Returns True when a reset happened."""
    if not needs_daily_reset(wallet.daily_credits_reset_at, now):
        return False
    wallet.daily_credits = 0
    wallet.daily_credits_reset_at = now
    wallet.updated_at = now
    return True


def build_balance(wallet: Wallet, now: datetime) -> CreditsBalance:
    expires_at = as_utc(wallet.subscription_expires_at)
    tier = get_effective_tier(wallet.subscription_tier, expires_at, now)
    daily = int(wallet.daily_credits or 0)
    subscription = int(wallet.subscription_credits or 0)
    bonus = int(wallet.bonus_credits or 0)
    return CreditsBalance(
        daily_credits=daily,
        subscription_credits=subscription,
        subscription_credits_limit=get_subscription_credits_limit(tier, expires_at, now),
        bonus_credits=bonus,
        total_available=daily + subscription + bonus,
        tier=tier.value,
        daily_resets_at=get_next_day_start(now),
        subscription_resets_at=expires_at,
    )


def credit_bonus_pool(wallet: Wallet, amount: int, now: datetime) -> Tuple[int, int]:
    """Add to the bonus pool; returns (total_before, total_after)."""
    if int(amount) < 0:
        raise InvalidAmountError("Bonus credits cannot be negative")
    before = wallet.total_credits
    wallet.bonus_credits = int(wallet.bonus_credits or 0) + int(amount)
    wallet.updated_at = now
    return before, wallet.total_credits


def apply_subscription_reset(
    wallet: Wallet,
    tier: SubscriptionTier,
    expires_at: Optional[datetime],
    now: datetime,
) -> Tuple[int, int, int]:
    """Overwrite the subscription pool with the tier limit.

    Returns (total_before, total_after, previous_subscription_credits).
    """
    before = wallet.total_credits
    previous = int(wallet.subscription_credits or 0)
    wallet.subscription_credits = get_subscription_credits_limit(tier, expires_at, now)
    wallet.subscription_credits_reset_at = now
    wallet.subscription_tier = SubscriptionTier(tier).value
    wallet.subscription_expires_at = expires_at
    wallet.updated_at = now
    return before, wallet.total_credits, previous


def apply_subscription_clear(wallet: Wallet, now: datetime) -> None:
    wallet.subscription_tier = SubscriptionTier.FREE.value
    wallet.subscription_credits = 0
    wallet.subscription_credits_reset_at = None
    wallet.subscription_expires_at = None
    wallet.subscription_id = None
    wallet.updated_at = now


# ============= Balance engine operations =============


def _invalidate_entitlements(user_id: str) -> None:
    from services.entitlements import invalidate_entitlements_cache

    invalidate_entitlements_cache(user_id)


async def get_balance(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> CreditsBalance:
    """Current balance; expires stale daily credits as a side effect."""
    now = as_utc(now) or utcnow()
    async with atomic(db):
        wallet = await lock_wallet(user_id, db)
        apply_daily_reset(wallet, now)
        return build_balance(wallet, now)


async def grant_daily_login_reward(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> CreditsBalance:
    """Set today's daily credits once per UTC day."""
    now = as_utc(now) or utcnow()
    reward = max(int(settings.DAILY_LOGIN_REWARD), 0)
    async with atomic(db):
        wallet = await lock_wallet(user_id, db)
        if not needs_daily_reset(wallet.daily_credits_reset_at, now):
            return build_balance(wallet, now)

        # Yesterday's daily credits have expired and do not count towards the snapshot
        wallet.daily_credits = 0
        balance_before = wallet.total_credits
        wallet.daily_credits = reward
        wallet.daily_credits_reset_at = now
        wallet.updated_at = now

        await append_credit_record(
            db,
            user_id=user_id,
            record_type=CreditRecordType.DAILY_LOGIN,
            amount=reward,
            balance_before=balance_before,
            balance_after=wallet.total_credits,
            pool=CreditPool.DAILY,
            now=now,
        )
        logger.info("credits_daily_login user=%s reward=%s", user_id, reward)
        balance = build_balance(wallet, now)

    _invalidate_entitlements(user_id)
    return balance


async def check_reserve(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> ReserveCheck:
    """Pre-check before a billable operation whose cost is not known yet."""
    balance = await get_balance(user_id, db, now=now)
    if balance.total_available < int(settings.MIN_RESERVE_CREDITS):
        return ReserveCheck(
            allowed=False,
            balance=balance,
            code="INSUFFICIENT_CREDITS",
            reason="Insufficient credits",
        )
    return ReserveCheck(allowed=True, balance=balance)


async def consume(
    user_id: str,
    db: AsyncSession,
    *,
    cost: int,
    metadata: Any = None,
    now: Optional[datetime] = None,
) -> ConsumeResult:
    """Deduct ``cost`` in daily -> subscription -> bonus order.

    A shortfall is not an error: the call succeeds with a smaller
    ``credits_consumed``. Callers that need a hard minimum run
    ``check_reserve`` first.
    """
    requested = int(cost)
    if requested < 0:
        raise InvalidAmountError("cost must be greater than or equal to 0")

    now = as_utc(now) or utcnow()
    async with atomic(db):
        wallet = await lock_wallet(user_id, db)
        apply_daily_reset(wallet, now)
        balance_before = wallet.total_credits

        remaining = requested
        from_daily = min(remaining, int(wallet.daily_credits or 0))
        remaining -= from_daily
        from_subscription = min(remaining, int(wallet.subscription_credits or 0))
        remaining -= from_subscription
        from_bonus = min(remaining, int(wallet.bonus_credits or 0))
        remaining -= from_bonus

        wallet.daily_credits = int(wallet.daily_credits or 0) - from_daily
        wallet.subscription_credits = int(wallet.subscription_credits or 0) - from_subscription
        wallet.bonus_credits = int(wallet.bonus_credits or 0) - from_bonus

        actual = requested - remaining
        if remaining > 0:
            logger.warning(
                "credits_partial_consumption user=%s requested=%s consumed=%s shortfall=%s",
                user_id,
                requested,
                actual,
                remaining,
            )

        if actual > 0:
            wallet.updated_at = now
            record_metadata = dict(metadata or {})
            record_metadata["requested_cost"] = requested
            if remaining > 0:
                record_metadata["shortfall"] = remaining
            await append_credit_record(
                db,
                user_id=user_id,
                record_type=CreditRecordType.GENERATION,
                amount=-actual,
                balance_before=balance_before,
                balance_after=wallet.total_credits,
                pool=CreditPool.MIXED,
                metadata=record_metadata,
                now=now,
            )
            logger.info(
                "credits_consume user=%s daily=%s subscription=%s bonus=%s",
                user_id,
                from_daily,
                from_subscription,
                from_bonus,
            )

        result = ConsumeResult(
            credits_consumed=actual,
            requested=requested,
            shortfall=remaining,
            balance=build_balance(wallet, now),
        )

    if result.credits_consumed > 0:
        _invalidate_entitlements(user_id)
    return result


async def add_bonus_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    record_type: Optional[CreditRecordType] = None,
    metadata: Any = None,
    now: Optional[datetime] = None,
) -> CreditsBalance:
    """Add permanent bonus credits, optionally recording why."""
    now = as_utc(now) or utcnow()
    async with atomic(db):
        wallet = await lock_wallet(user_id, db)
        apply_daily_reset(wallet, now)
        before, after = credit_bonus_pool(wallet, amount, now)
        if record_type is not None and int(amount) > 0:
            await append_credit_record(
                db,
                user_id=user_id,
                record_type=record_type,
                amount=int(amount),
                balance_before=before,
                balance_after=after,
                pool=CreditPool.BONUS,
                metadata=metadata,
                now=now,
            )
        logger.info("credits_bonus_added user=%s amount=%s", user_id, amount)
        return build_balance(wallet, now)


async def reset_subscription_credits(
    user_id: str,
    db: AsyncSession,
    *,
    tier: SubscriptionTier,
    expires_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> CreditsBalance:
    """Replace the subscription pool on purchase/renewal. Leftovers do not stack."""
    now = as_utc(now) or utcnow()
    async with atomic(db):
        wallet = await lock_wallet(user_id, db)
        apply_daily_reset(wallet, now)
        apply_subscription_reset(wallet, SubscriptionTier(tier), as_utc(expires_at), now)
        logger.info("credits_subscription_reset user=%s tier=%s", user_id, SubscriptionTier(tier).value)
        return build_balance(wallet, now)


async def clear_subscription(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> CreditsBalance:
    """Downgrade to free and drop the subscription pool."""
    now = as_utc(now) or utcnow()
    async with atomic(db):
        wallet = await lock_wallet(user_id, db)
        apply_daily_reset(wallet, now)
        apply_subscription_clear(wallet, now)
        logger.info("credits_subscription_cleared user=%s", user_id)
        return build_balance(wallet, now)
