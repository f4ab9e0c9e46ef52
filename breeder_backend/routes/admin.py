from fastapi import APIRouter, Header, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from ..config import ADMIN_SECRET, USE_POSTGRES
from ..services.animals import revoke_view_only
from ..services.reconciliation import reconcile

router = APIRouter()

def _require_admin(secret: str | None):
    if ADMIN_SECRET and secret and secret == ADMIN_SECRET:
        return True
    raise HTTPException(status_code=403, detail="Admin access required")

@router.post("/admin/reconcile")
async def admin_reconcile(dry_run: bool = Query(True), x_admin_secret: str | None = Header(default=None)):
    """Compare animals with their public projections, grants and membership; repair unless dry_run"""
    _require_admin(x_admin_secret)
    if USE_POSTGRES:
        from ..services.reconciliation_postgres import reconcile as reconcile_postgres
        return await reconcile_postgres(dry_run=dry_run)
    return await run_in_threadpool(reconcile, dry_run)

@router.delete("/admin/animals/{id_public}/viewers/{account_id_public}")
async def admin_revoke_view_only(id_public: str, account_id_public: str, x_admin_secret: str | None = Header(default=None)):
    """Remove a view-only grant. Normal transfers never remove grants."""
    _require_admin(x_admin_secret)
    id_public = id_public.strip().upper()
    account_id_public = account_id_public.strip().upper()
    if USE_POSTGRES:
        from ..services.transfers_postgres import revoke_view_only as revoke_view_only_postgres
        removed = await revoke_view_only_postgres(id_public, account_id_public)
    else:
        removed = await run_in_threadpool(revoke_view_only, id_public, account_id_public)
    return {"ok": True, "removed": removed}
