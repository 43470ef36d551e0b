"""
Account API routes.

- DELETE /api/user/delete: Soft-delete the caller's account
"""
from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from backend.core.auth import AuthIdentity, get_current_identity
from backend.features.users.service import soft_delete_account
from backend.realtime.hub import CHANGE_UPDATE, publish_entitlement_change


router = APIRouter(tags=["account"])


@router.delete("/api/user/delete")
async def delete_account(identity: AuthIdentity = Depends(get_current_identity)):
    """
    Soft-delete the authenticated user's account.

    Purchases go inactive (one-time payments cannot be cancelled, and rows
    are kept for audit) and the user is flagged deleted.
    """
    revoked = await run_in_threadpool(soft_delete_account, identity.user_id)
    if revoked:
        await publish_entitlement_change(
            identity.user_id,
            CHANGE_UPDATE,
            {"user_id": identity.user_id, "status": "inactive", "purchase_type": "lifetime_pro"},
        )
    return {"success": True}
