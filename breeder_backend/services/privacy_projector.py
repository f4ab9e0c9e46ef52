"""
Privacy Projector

Maps a private animal record plus its owner's privacy preferences to the
document stored in the public projection store.

Key principles:
- Pure: no database access, no clock, no randomness
- Deterministic: identical inputs give a byte-identical canonical encoding
- The owner preferences passed in must be the CURRENT owner's, so an
  ownership change re-evaluates every owner-gated field
"""

import hashlib
import json
from typing import Any, Dict, Mapping, Optional

# Always published when the animal is public
BASE_FIELDS = [
    "name",
    "species",
    "prefix",
    "suffix",
    "gender",
    "birthDate",
    "deceasedDate",
    "status",
    "color",
    "coat",
    "coatPattern",
    "earset",
    "breed",
    "strain",
    "breederyId",
    "breederId_public",
    "sireId_public",
    "damId_public",
    "imageUrl",
    "photoUrl",
    "tags",
    "microchipNumber",
    "pedigreeRegistrationId",
    "isNeutered",
    "isForSale",
    "availableForBreeding",
    "inbreedingCoefficient",
]

# Section name -> detail fields published when the section is public
SECTION_FIELDS: Dict[str, list] = {
    "lifeStage": ["lifeStage"],
    "currentMeasurements": ["currentWeight", "currentLength", "measurementUnits"],
    "growthHistory": ["growthRecords"],
    "origin": ["origin"],
    "estrusCycle": ["heatStatus", "lastHeatDate", "ovulationDate"],
    "mating": ["isPregnant", "isNursing", "isInMating", "matingDates", "expectedDueDate",
               "litterCount", "nursingStartDate", "weaningDate"],
    "studInformation": ["isStudAnimal", "fertilityStatus", "fertilityNotes"],
    "damInformation": ["isDamAnimal", "damFertilityStatus", "damFertilityNotes"],
    "preventiveCare": ["vaccinations", "dewormingRecords", "parasiteControl"],
    "proceduresAndDiagnostics": ["medicalProcedures", "labResults"],
    "activeMedicalRecords": ["medicalConditions", "allergies", "medications"],
    "veterinaryCare": ["vetVisits", "primaryVet"],
    "nutrition": ["dietType", "feedingSchedule", "supplements"],
    "husbandry": ["housingType", "bedding", "enrichment"],
    "environment": ["temperatureRange", "humidity", "lighting", "noise"],
    "behavior": ["temperament", "handlingTolerance", "socialStructure"],
    "activity": ["activityCycle"],
    "endOfLife": ["causeOfDeath", "necropsyResults"],
    "legalAdministrative": ["insurance", "legalStatus"],
    "breedingHistory": ["breedingRole", "lastMatingDate", "successfulMatings",
                        "lastPregnancyDate", "offspringCount"],
    "currentOwner": ["currentOwner", "ownershipHistory"],
    # Gated further by the animal toggle and the owner preference, see below
    "remarks": [],
    "geneticCode": [],
}

SECTIONS = sorted(SECTION_FIELDS)


def effective_section_privacy(section_privacy: Optional[Mapping[str, Any]]) -> Dict[str, bool]:
    """Known sections with their public flag; unset sections are public."""
    section_privacy = section_privacy or {}
    return {section: bool(section_privacy.get(section, True)) for section in SECTIONS}


def project(animal: Mapping[str, Any], owner_prefs: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Build the public document for an animal.

    Args:
        animal: Animal record with id_public, owner_id_public, is_public,
            include_remarks, include_genetic_code, section_privacy, details
        owner_prefs: The current owner's show_remarks_public and
            show_genetic_code_public preferences

    Returns:
        The public document, or None when the animal must not be public
    """
    if not animal.get("is_public"):
        return None

    details = animal.get("details") or {}
    sections = effective_section_privacy(animal.get("section_privacy"))

    document: Dict[str, Any] = {
        "id_public": animal["id_public"],
        "ownerId_public": animal["owner_id_public"],
        "sectionPrivacy": sections,
    }

    for field in BASE_FIELDS:
        if field in details:
            document[field] = details[field]

    for section in SECTIONS:
        if not sections[section]:
            continue
        for field in SECTION_FIELDS[section]:
            if field in details:
                document[field] = details[field]

    if (
        sections["remarks"]
        and animal.get("include_remarks")
        and owner_prefs.get("show_remarks_public")
    ):
        document["remarks"] = details.get("remarks", "")

    if (
        sections["geneticCode"]
        and animal.get("include_genetic_code")
        and owner_prefs.get("show_genetic_code_public")
    ):
        document["geneticCode"] = details.get("geneticCode")

    return dict(sorted(document.items()))


def canonical_json(document: Mapping[str, Any]) -> str:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def content_hash(document: Mapping[str, Any]) -> str:
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()
