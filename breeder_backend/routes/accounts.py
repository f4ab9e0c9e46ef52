from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from ..config import USE_POSTGRES, VALID_KEYS
from ..models import PrivacyPrefsBody, ValidateKeyBody
from ..services import accounts as accounts_svc
from ..services.auth_service import current_account

router = APIRouter()


async def _call(name: str, *args):
    if USE_POSTGRES:
        from ..services import transfers_postgres
        return await getattr(transfers_postgres, name)(*args)
    return await run_in_threadpool(getattr(accounts_svc, name), *args)


@router.post("/validate-key")
def validate_key(body: ValidateKeyBody):
    return {"valid": body.key in VALID_KEYS}


@router.get("/accounts/me")
async def get_me(request: Request):
    account = await current_account(request)
    return await _call("get_account", account["id"])


@router.put("/accounts/me/privacy")
async def update_privacy(body: PrivacyPrefsBody, request: Request):
    """
    Change owner-level privacy preferences. Public projections of the
    caller's animals are refreshed before the response is sent.
    """
    account = await current_account(request)
    updated = await _call(
        "update_privacy_preferences",
        account["id"],
        body.showRemarksPublic,
        body.showGeneticCodePublic,
    )
    return {"ok": True, "account": updated}
