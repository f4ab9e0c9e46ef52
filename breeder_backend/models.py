from pydantic import BaseModel
from typing import Optional, Dict, Any

class ValidateKeyBody(BaseModel):
    key: str

class TransferProposalBody(BaseModel):
    animalId: str
    transferType: str = "sale"
    # Either the internal id or the public CTU id of the recipient
    toUserId: int | None = None
    toUserPublicId: str | None = None
    offerViewOnly: bool = False
    transactionId: str | None = None

class AnimalBody(BaseModel):
    details: Dict[str, Any]
    isPublic: bool = False
    includeRemarks: bool = False
    includeGeneticCode: bool = False
    sectionPrivacy: Optional[Dict[str, bool]] = None

class AnimalUpdateBody(BaseModel):
    details: Optional[Dict[str, Any]] = None
    isPublic: bool | None = None
    includeRemarks: bool | None = None
    includeGeneticCode: bool | None = None
    sectionPrivacy: Optional[Dict[str, bool]] = None

class PrivacyPrefsBody(BaseModel):
    showRemarksPublic: bool | None = None
    showGeneticCodePublic: bool | None = None
