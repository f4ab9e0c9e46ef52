import pytest
from fastapi.testclient import TestClient

from breeder_backend.app import app

ALICE = {"X-User-Key": "alice-key"}
BOB = {"X-User-Key": "bob-key"}
CAROL = {"X-User-Key": "carol-key"}
ADMIN = {"X-Admin-Secret": "test-admin-secret"}


@pytest.fixture
def client(database):
    # No context manager: the database fixture has already created the schema
    return TestClient(app)


def _me(client, headers):
    response = client.get("/accounts/me", headers=headers)
    assert response.status_code == 200
    return response.json()


def _create_animal(client, headers, **body):
    payload = {"details": {"name": "Luna", "species": "Fancy Mouse"}, "isPublic": True}
    payload.update(body)
    response = client.post("/animals", json=payload, headers=headers)
    assert response.status_code == 201
    return response.json()["animal"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"]["status"] == "healthy"


def test_requests_without_credentials_are_rejected(client):
    assert client.get("/transfers").status_code == 401
    assert client.get("/animals", headers={"X-User-Key": "not-a-key"}).status_code == 401


def test_validate_key(client):
    assert client.post("/validate-key", json={"key": "alice-key"}).json() == {"valid": True}
    assert client.post("/validate-key", json={"key": "nope"}).json() == {"valid": False}


def test_sale_over_http(client):
    bob = _me(client, BOB)
    animal = _create_animal(client, ALICE)

    response = client.post(
        "/transfers",
        json={"toUserPublicId": f" {bob['id_public'].lower()} ", "animalId": animal["id_public"].lower(), "transferType": "sale"},
        headers=ALICE,
    )
    assert response.status_code == 201
    transfer = response.json()["transfer"]

    assert client.get("/notifications/unread-count", headers=BOB).json() == {"count": 1}

    response = client.post(f"/transfers/{transfer['id']}/accept", headers=BOB)
    assert response.status_code == 200
    body = response.json()
    assert body["transfer"]["status"] == "accepted"
    assert body["animal"]["ownerId_public"] == bob["id_public"]

    public = client.get(f"/public/animals/{animal['id_public']}").json()
    assert public["ownerId_public"] == bob["id_public"]
    owners = client.get(f"/public/owners/{bob['id_public']}/animals").json()
    assert owners["count"] == 1

    # Alice keeps read access to the animal she sold
    shared = client.get(f"/animals/{animal['id_public']}", headers=ALICE).json()
    assert shared["access"] == "view_only"

    history = client.get(f"/transfers/{transfer['id']}/history", headers=ALICE).json()
    assert history["events"][0]["event_type"] == "transfer_proposed"


def test_error_kinds_are_returned(client):
    bob = _me(client, BOB)
    _me(client, CAROL)
    animal = _create_animal(client, ALICE)

    response = client.post(
        "/transfers",
        json={"toUserId": bob["id"], "animalId": animal["id_public"], "transferType": "sale"},
        headers=ALICE,
    )
    transfer_id = response.json()["transfer"]["id"]

    response = client.post(f"/transfers/{transfer_id}/accept", headers=CAROL)
    assert response.status_code == 403
    assert response.json()["kind"] == "Unauthorized"

    assert client.post(f"/transfers/{transfer_id}/decline", headers=BOB).status_code == 200

    response = client.post(f"/transfers/{transfer_id}/accept", headers=BOB)
    assert response.status_code == 409
    assert response.json()["kind"] == "InvalidState"

    response = client.post(
        "/transfers",
        json={"toUserId": bob["id"], "animalId": "CTC9999", "transferType": "sale"},
        headers=ALICE,
    )
    assert response.status_code == 422
    assert response.json()["kind"] == "PreconditionFailed"

    response = client.post(
        "/transfers",
        json={"toUserPublicId": "CTU9999", "animalId": animal["id_public"], "transferType": "sale"},
        headers=ALICE,
    )
    assert response.status_code == 404
    assert response.json()["kind"] == "NotFound"

    response = client.get(f"/transfers/{transfer_id}", headers=CAROL)
    assert response.status_code == 404


def test_transfer_list_is_scoped_to_parties(client):
    bob = _me(client, BOB)
    animal = _create_animal(client, ALICE)
    client.post(
        "/transfers",
        json={"toUserId": bob["id"], "animalId": animal["id_public"], "transferType": "sale"},
        headers=ALICE,
    )

    assert client.get("/transfers", headers=ALICE).json()["count"] == 1
    assert client.get("/transfers", headers=BOB).json()["count"] == 1
    assert client.get("/transfers", headers=CAROL).json()["count"] == 0


def test_privacy_update_reprojects_before_responding(client):
    animal = _create_animal(
        client,
        ALICE,
        includeRemarks=True,
        details={"name": "Luna", "remarks": "Shy at first"},
    )
    assert "remarks" not in client.get(f"/public/animals/{animal['id_public']}").json()

    response = client.put("/accounts/me/privacy", json={"showRemarksPublic": True}, headers=ALICE)
    assert response.status_code == 200
    assert response.json()["account"]["show_remarks_public"] is True

    assert client.get(f"/public/animals/{animal['id_public']}").json()["remarks"] == "Shy at first"


def test_patch_and_hide(client):
    bob = _me(client, BOB)
    animal = _create_animal(client, ALICE)

    response = client.patch(f"/animals/{animal['id_public']}", json={"isPublic": False}, headers=ALICE)
    assert response.status_code == 200
    assert client.get(f"/public/animals/{animal['id_public']}").status_code == 404

    assert client.patch(f"/animals/{animal['id_public']}", json={"isPublic": True}, headers=BOB).status_code == 403

    transfer = client.post(
        "/transfers",
        json={"toUserId": bob["id"], "animalId": animal["id_public"], "transferType": "sale", "offerViewOnly": True},
        headers=ALICE,
    ).json()["transfer"]
    client.post(f"/transfers/{transfer['id']}/accept-view-only", headers=BOB)

    assert client.get("/animals", headers=BOB).json()["count"] == 1
    assert client.post(f"/animals/{animal['id_public']}/hide", headers=BOB).json()["hidden"] is True
    assert client.get("/animals", headers=BOB).json()["count"] == 0
    assert client.post(f"/animals/{animal['id_public']}/restore", headers=BOB).json()["hidden"] is False


def test_notification_endpoints(client):
    bob = _me(client, BOB)
    animal = _create_animal(client, ALICE)
    client.post(
        "/transfers",
        json={"toUserId": bob["id"], "animalId": animal["id_public"], "transferType": "sale"},
        headers=ALICE,
    )

    [note] = client.get("/notifications", headers=BOB).json()["notifications"]
    assert client.patch(f"/notifications/{note['id']}/read", headers=BOB).json()["notification"]["read"] is True
    assert client.get("/notifications/unread-count", headers=BOB).json() == {"count": 0}
    assert client.delete(f"/notifications/{note['id']}", headers=ALICE).status_code == 404
    assert client.delete(f"/notifications/{note['id']}", headers=BOB).status_code == 200


def test_admin_endpoints_require_secret(client):
    assert client.post("/admin/reconcile").status_code == 403

    response = client.post("/admin/reconcile?dry_run=true", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["dry_run"] is True


def test_admin_revoke(client):
    bob = _me(client, BOB)
    animal = _create_animal(client, ALICE)
    transfer = client.post(
        "/transfers",
        json={"toUserId": bob["id"], "animalId": animal["id_public"], "transferType": "sale", "offerViewOnly": True},
        headers=ALICE,
    ).json()["transfer"]
    client.post(f"/transfers/{transfer['id']}/accept", headers=BOB)

    response = client.delete(f"/admin/animals/{animal['id_public']}/viewers/{bob['id_public']}", headers=ADMIN)
    assert response.json() == {"ok": True, "removed": True}
    assert client.get(f"/animals/{animal['id_public']}", headers=BOB).status_code == 404
