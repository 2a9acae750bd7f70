"""User entitlements (effective tier + balance) with a short TTL cache."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
import time
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.credits import PAID_TIERS, CreditsBalance, get_balance

_cache: Dict[str, Tuple[float, "UserEntitlements"]] = {}


@dataclass
class UserEntitlements:
    user_id: str
    tier: str
    is_paid: bool
    balance: CreditsBalance

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["balance"] = self.balance.as_dict()
        return payload


def is_paid_tier(tier: str) -> bool:
    return tier in {paid.value for paid in PAID_TIERS}


async def get_user_entitlements_fresh(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> UserEntitlements:
    """Bypass the cache; use right after purchases or subscription changes."""
    balance = await get_balance(user_id, db, now=now)
    entitlements = UserEntitlements(
        user_id=user_id,
        tier=balance.tier,
        is_paid=is_paid_tier(balance.tier),
        balance=balance,
    )
    ttl = max(int(settings.ENTITLEMENTS_CACHE_TTL_SECONDS), 0)
    if ttl:
        _cache[user_id] = (time.monotonic() + ttl, entitlements)
    return entitlements


async def get_user_entitlements(user_id: str, db: AsyncSession) -> UserEntitlements:
    cached = _cache.get(user_id)
    if cached and cached[0] > time.monotonic():
        return cached[1]
    return await get_user_entitlements_fresh(user_id, db)


def invalidate_entitlements_cache(user_id: Optional[str] = None) -> None:
    """Drop one user's cached entitlements, or all of them."""
    if user_id is None:
        _cache.clear()
    else:
        _cache.pop(user_id, None)
