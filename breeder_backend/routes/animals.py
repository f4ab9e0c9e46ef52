from fastapi import APIRouter, Request, Query
from ..models import AnimalBody, AnimalUpdateBody
from ..services import animals as animals_svc
from ..services.auth_service import require_account

router = APIRouter()


@router.post("/animals", status_code=201)
def create_animal(body: AnimalBody, request: Request):
    account = require_account(request)
    animal = animals_svc.create_animal(
        account["id"],
        body.details,
        is_public=body.isPublic,
        include_remarks=body.includeRemarks,
        include_genetic_code=body.includeGeneticCode,
        section_privacy=body.sectionPrivacy,
    )
    return {"ok": True, "animal": animal}


@router.get("/animals")
def list_animals(request: Request, include_hidden: bool = Query(False)):
    """Owned animals followed by animals shared with the caller as view-only"""
    account = require_account(request)
    animals = animals_svc.list_animals_for_account(account["id"], include_hidden=include_hidden)
    return {"count": len(animals), "animals": animals}


@router.get("/animals/{id_public}")
def get_animal(id_public: str, request: Request):
    account = require_account(request)
    return animals_svc.get_animal_for_reader(account["id"], id_public.strip().upper())


@router.patch("/animals/{id_public}")
def update_animal(id_public: str, body: AnimalUpdateBody, request: Request):
    account = require_account(request)
    animal = animals_svc.update_animal(
        account["id"],
        id_public.strip().upper(),
        details=body.details,
        is_public=body.isPublic,
        include_remarks=body.includeRemarks,
        include_genetic_code=body.includeGeneticCode,
        section_privacy=body.sectionPrivacy,
    )
    return {"ok": True, "animal": animal}


@router.post("/animals/{id_public}/hide")
def hide_animal(id_public: str, request: Request):
    account = require_account(request)
    return {"ok": True, **animals_svc.hide_view_only_animal(account["id"], id_public.strip().upper())}


@router.post("/animals/{id_public}/restore")
def restore_animal(id_public: str, request: Request):
    account = require_account(request)
    return {"ok": True, **animals_svc.restore_view_only_animal(account["id"], id_public.strip().upper())}
