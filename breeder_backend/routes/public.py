from fastapi import APIRouter
from fastapi.concurrency import run_in_threadpool
from ..config import USE_POSTGRES
from ..services import public_projections

router = APIRouter()


async def _call(name: str, *args):
    if USE_POSTGRES:
        from ..services import transfers_postgres
        return await getattr(transfers_postgres, name)(*args)
    return await run_in_threadpool(getattr(public_projections, name), *args)


@router.get("/public/animals/{id_public}")
async def public_animal(id_public: str):
    """Privacy-filtered animal document. No authentication."""
    return await _call("get_public_animal", id_public.strip().upper())


@router.get("/public/owners/{owner_id_public}/animals")
async def public_animals_for_owner(owner_id_public: str):
    animals = await _call("list_public_animals_for_owner", owner_id_public.strip().upper())
    return {"count": len(animals), "animals": animals}
