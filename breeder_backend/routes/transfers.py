from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from ..config import USE_POSTGRES
from ..errors import PreconditionFailed
from ..models import TransferProposalBody
from ..services import transfers as transfers_svc
from ..services.accounts import get_account_by_public_id
from ..services.auth_service import current_account

router = APIRouter()


async def _call(name: str, *args):
    """Run a transfer operation on the configured store."""
    if USE_POSTGRES:
        # Import locally to avoid loading asyncpg in SQLite deployments
        from ..services import transfers_postgres
        return await getattr(transfers_postgres, name)(*args)
    return await run_in_threadpool(getattr(transfers_svc, name), *args)


async def _recipient_id(body: TransferProposalBody) -> int:
    if body.toUserId is not None:
        return body.toUserId
    if not body.toUserPublicId:
        raise PreconditionFailed("toUserId or toUserPublicId is required.")
    to_user_public_id = body.toUserPublicId.strip().upper()
    if USE_POSTGRES:
        from ..services.transfers_postgres import get_account_by_public_id as get_account_by_public_id_postgres
        recipient = await get_account_by_public_id_postgres(to_user_public_id)
    else:
        recipient = await run_in_threadpool(get_account_by_public_id, to_user_public_id)
    return recipient["id"]


@router.post("/transfers", status_code=201)
async def propose_transfer(body: TransferProposalBody, request: Request):
    account = await current_account(request)
    to_user_id = await _recipient_id(body)
    transfer = await _call(
        "propose",
        account["id"],
        to_user_id,
        body.animalId.strip().upper(),
        body.transferType,
        body.offerViewOnly,
        body.transactionId,
    )
    return {"ok": True, "transfer": transfer}


@router.get("/transfers")
async def list_transfers(request: Request):
    account = await current_account(request)
    transfers = await _call("list_transfers_for_account", account["id"])
    return {"count": len(transfers), "transfers": transfers}


@router.get("/transfers/{transfer_id}")
async def get_transfer(transfer_id: int, request: Request):
    account = await current_account(request)
    return await _call("get_transfer_for_party", account["id"], transfer_id)


@router.get("/transfers/{transfer_id}/history")
async def get_transfer_history(transfer_id: int, request: Request):
    """Domain events recorded for a transfer, oldest first"""
    account = await current_account(request)
    events = await _call("get_transfer_history", account["id"], transfer_id)
    return {"count": len(events), "events": events}


@router.post("/transfers/{transfer_id}/accept")
async def accept_transfer(transfer_id: int, request: Request):
    account = await current_account(request)
    result = await _call("accept", transfer_id, account["id"])
    return {"ok": True, **result}


@router.post("/transfers/{transfer_id}/decline")
async def decline_transfer(transfer_id: int, request: Request):
    account = await current_account(request)
    transfer = await _call("decline", transfer_id, account["id"])
    return {"ok": True, "transfer": transfer}


@router.post("/transfers/{transfer_id}/accept-view-only")
async def accept_view_only(transfer_id: int, request: Request):
    account = await current_account(request)
    result = await _call("accept_view_only", transfer_id, account["id"])
    return {"ok": True, **result}
