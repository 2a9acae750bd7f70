"""Append-only audit ledger of credit balance changes."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import uuid

from pydantic import BaseModel, ConfigDict
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_record import CreditPool, CreditRecord, CreditRecordType
from services.errors import LedgerInvariantError

MAX_PAGE_SIZE = 100

_POOL_BY_TYPE = {
    CreditRecordType.SIGNUP_BONUS: CreditPool.BONUS,
    CreditRecordType.REFERRAL_INVITER: CreditPool.BONUS,
    CreditRecordType.REFERRAL_INVITEE: CreditPool.BONUS,
    CreditRecordType.ADMIN_GRANT: CreditPool.BONUS,
    CreditRecordType.PURCHASE: CreditPool.BONUS,
    CreditRecordType.DAILY_LOGIN: CreditPool.DAILY,
    CreditRecordType.SUBSCRIPTION_RESET: CreditPool.SUBSCRIPTION,
    CreditRecordType.GENERATION: CreditPool.MIXED,
}


class CreditRecordMetadata(BaseModel):
    """Known metadata fields per record type. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    # Referral
    referral_id: Optional[str] = None
    referrer_id: Optional[str] = None
    referred_user_id: Optional[str] = None
    # Generation
    task_id: Optional[str] = None
    model_id: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    requested_cost: Optional[int] = None
    shortfall: Optional[int] = None
    # Admin grant
    admin_id: Optional[str] = None
    admin_email: Optional[str] = None
    reason: Optional[str] = None
    # Purchase
    order_id: Optional[str] = None
    package_id: Optional[str] = None
    session_id: Optional[str] = None
    # Subscription
    tier: Optional[str] = None
    previous_credits: Optional[int] = None
    expires_at: Optional[str] = None


def get_pool_for_type(record_type: CreditRecordType) -> CreditPool:
    """Pool a record type draws from or credits to."""
    return _POOL_BY_TYPE.get(CreditRecordType(record_type), CreditPool.BONUS)


def _coerce_metadata(metadata: Any) -> Dict[str, Any]:
    if metadata is None:
        return {}
    if isinstance(metadata, CreditRecordMetadata):
        parsed = metadata
    else:
        parsed = CreditRecordMetadata.model_validate(metadata)
    return parsed.model_dump(exclude_none=True)


async def append_credit_record(
    db: AsyncSession,
    *,
    user_id: str,
    record_type: CreditRecordType,
    amount: int,
    balance_before: int,
    balance_after: int,
    pool: Optional[CreditPool] = None,
    metadata: Any = None,
    now: Optional[datetime] = None,
) -> CreditRecord:
    """Add a record to the caller's transaction. Never commits."""
    if int(balance_after) != int(balance_before) + int(amount):
        raise LedgerInvariantError(
            f"Refusing {record_type} record for {user_id}: "
            f"{balance_before} + {amount} != {balance_after}"
        )

    resolved_type = CreditRecordType(record_type)
    record = CreditRecord(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=resolved_type.value,
        amount=int(amount),
        balance_before=int(balance_before),
        balance_after=int(balance_after),
        credit_pool=CreditPool(pool or get_pool_for_type(resolved_type)).value,
        metadata_json=_coerce_metadata(metadata),
        created_at=now or datetime.now(timezone.utc),
    )
    db.add(record)
    await db.flush()
    return record


async def list_credit_records(
    db: AsyncSession,
    *,
    user_id: Optional[str] = None,
    record_type: Optional[CreditRecordType] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[CreditRecord], int]:
    """Newest-first page of records plus the total matching count."""
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), MAX_PAGE_SIZE)

    conditions = []
    if user_id:
        conditions.append(CreditRecord.user_id == user_id)
    if record_type:
        conditions.append(CreditRecord.type == CreditRecordType(record_type).value)

    total_result = await db.execute(select(func.count(CreditRecord.id)).where(*conditions))
    total = int(total_result.scalar() or 0)

    result = await db.execute(
        select(CreditRecord)
        .where(*conditions)
        .order_by(CreditRecord.created_at.desc(), CreditRecord.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


def serialize_credit_record(record: CreditRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "type": record.type,
        "amount": record.amount,
        "balance_before": record.balance_before,
        "balance_after": record.balance_after,
        "credit_pool": record.credit_pool,
        "metadata": dict(record.metadata_json or {}),
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }
