"""Structured audit log for admin actions, separate from the credit ledger.

One JSON object per line on the ``admin_audit`` logger so log aggregation can
index it.
"""

from datetime import datetime, timezone
import json
import logging
from typing import Any, Dict, Optional

audit_logger = logging.getLogger("admin_audit")

AUDIT_ACTIONS = {"grant_credits", "search_users", "view_credit_records"}


def log_admin_action(
    action: str,
    admin_id: str,
    *,
    admin_email: Optional[str] = None,
    target_id: Optional[str] = None,
    target_type: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown admin audit action: {action}")

    entry: Dict[str, Any] = {
        "type": "admin_audit",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "admin_id": admin_id,
    }
    if admin_email:
        entry["admin_email"] = admin_email
    if target_id:
        entry["target_id"] = target_id
        entry["target_type"] = target_type or "user"
    if ip_address:
        entry["ip_address"] = ip_address
    if details:
        entry["details"] = details

    audit_logger.info(json.dumps(entry, default=str, sort_keys=True))
    return entry
