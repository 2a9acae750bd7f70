"""Admin router. Every route requires the admin role and is audit logged."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.credit_record import CreditRecordType
from routers.auth_scope import AdminContext, require_admin
from services.admin import MAX_REASON_LENGTH, grant_credits, search_users
from services.audit_log import log_admin_action
from services.ledger import MAX_PAGE_SIZE, list_credit_records, serialize_credit_record

router = APIRouter()


class GrantCreditsRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int
    reason: str = Field(min_length=1, max_length=MAX_REASON_LENGTH)


@router.get("/check")
async def admin_check(admin: AdminContext = Depends(require_admin)):
    return {"is_admin": True, "user_id": admin.user_id}


@router.get("/users/search")
async def admin_search_users(
    email: str = Query(min_length=1, max_length=320),
    limit: int = Query(default=20, ge=1, le=100),
    admin: AdminContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    users = await search_users(
        email,
        db,
        admin_id=admin.user_id,
        admin_email=admin.email,
        ip_address=admin.ip_address,
        limit=limit,
    )
    return {"users": users}


@router.post("/credits/grant")
async def admin_grant_credits(
    request: GrantCreditsRequest,
    admin: AdminContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await grant_credits(
        admin.user_id,
        request.user_id,
        request.amount,
        request.reason,
        db,
        admin_email=admin.email,
        ip_address=admin.ip_address,
    )


@router.get("/credits/records")
async def admin_credit_records(
    user_id: Optional[str] = Query(default=None),
    record_type: Optional[CreditRecordType] = Query(default=None, alias="type"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    admin: AdminContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    records, total = await list_credit_records(
        db,
        user_id=user_id,
        record_type=record_type,
        page=page,
        limit=limit,
    )
    log_admin_action(
        "view_credit_records",
        admin.user_id,
        admin_email=admin.email,
        target_id=user_id,
        ip_address=admin.ip_address,
        details={"type": record_type.value if record_type else None, "page": page, "total": total},
    )
    return {
        "records": [serialize_credit_record(record) for record in records],
        "total": total,
        "page": page,
        "limit": limit,
    }
