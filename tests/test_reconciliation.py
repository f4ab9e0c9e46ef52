import json

from breeder_backend import db
from breeder_backend.services import transfers
from breeder_backend.services.animals import revoke_view_only, view_only_account_ids
from breeder_backend.services.public_projections import get_public_animal
from breeder_backend.services.reconciliation import reconcile


def _execute(sql, params=()):
    with db.transaction() as conn:
        conn.execute(sql, params)


def test_clean_database_has_no_drift(alice, bob, make_animal):
    animal = make_animal(alice)
    transfers.accept(transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")["id"], bob["id"])

    report = reconcile(dry_run=True)

    assert report["dry_run"] is True
    assert all(count == 0 for count in report["counts"].values())


def test_stale_projection_is_replaced(alice, bob, make_animal):
    animal = make_animal(alice)
    # A projection left behind with the previous owner's id
    _execute(
        "UPDATE animals SET owner_id = ?, owner_id_public = ? WHERE id = ?",
        (bob["id"], bob["id_public"], animal["id"]),
    )

    dry = reconcile(dry_run=True)
    assert dry["items"]["stale"] == [animal["id_public"]]
    assert get_public_animal(animal["id_public"])["ownerId_public"] == alice["id_public"]

    fixed = reconcile(dry_run=False)
    assert fixed["counts"]["stale"] == 1
    assert get_public_animal(animal["id_public"])["ownerId_public"] == bob["id_public"]
    assert reconcile(dry_run=True)["counts"]["stale"] == 0


def test_ghost_and_missing_projections(alice, make_animal):
    hidden = make_animal(alice, name="Hidden")
    shown = make_animal(alice, name="Shown")
    _execute("UPDATE animals SET is_public = 0 WHERE id = ?", (hidden["id"],))
    _execute("DELETE FROM public_animals WHERE id_public = ?", (shown["id_public"],))
    _execute(
        "INSERT INTO public_animals (id_public, owner_id_public, document, content_hash, projected_at) VALUES (?, ?, ?, ?, ?)",
        ("CTC9999", alice["id_public"], json.dumps({"id_public": "CTC9999"}), "x", db.utc_now()),
    )

    report = reconcile(dry_run=False)

    assert sorted(report["items"]["ghosts"]) == sorted([hidden["id_public"], "CTC9999"])
    assert report["items"]["missing"] == [shown["id_public"]]
    with db.read_connection() as conn:
        ids = [r[0] for r in conn.execute("SELECT id_public FROM public_animals ORDER BY id_public")]
    assert ids == [shown["id_public"]]


def test_duplicate_projections_are_collapsed(alice, make_animal):
    animal = make_animal(alice)
    # Databases from before the unique index
    _execute("DROP INDEX uniq_public_animals_id_public")
    _execute(
        "INSERT INTO public_animals (id_public, owner_id_public, document, content_hash, projected_at) VALUES (?, ?, ?, ?, ?)",
        (animal["id_public"], "CTU0", "{}", "old", db.utc_now()),
    )

    report = reconcile(dry_run=False)

    assert report["items"]["duplicates"] == [animal["id_public"]]
    with db.read_connection() as conn:
        count = conn.execute(
            "SELECT COUNT(*) FROM public_animals WHERE id_public = ?", (animal["id_public"],)
        ).fetchone()[0]
    assert count == 1
    assert get_public_animal(animal["id_public"])["ownerId_public"] == alice["id_public"]


def test_missing_previous_owner_grant_is_restored(alice, bob, make_animal):
    animal = make_animal(alice)
    transfers.accept(transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")["id"], bob["id"])
    _execute("DELETE FROM animal_view_grants WHERE animal_id = ?", (animal["id"],))

    report = reconcile(dry_run=False)

    assert report["counts"]["missing_view_grants"] == 1
    with db.read_connection() as conn:
        assert alice["id"] in view_only_account_ids(conn, animal["id"])


def test_revoked_grant_is_not_restored(alice, bob, make_animal):
    animal = make_animal(alice)
    transfers.accept(transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")["id"], bob["id"])
    assert revoke_view_only(animal["id_public"], alice["id_public"]) is True

    report = reconcile(dry_run=False)

    assert report["counts"]["missing_view_grants"] == 0
    with db.read_connection() as conn:
        assert alice["id"] not in view_only_account_ids(conn, animal["id"])


def test_membership_drift(alice, bob, make_animal):
    animal = make_animal(alice)
    _execute("DELETE FROM account_animals WHERE animal_id = ?", (animal["id"],))
    _execute(
        "INSERT INTO account_animals (account_id, animal_id, added_at) VALUES (?, ?, ?)",
        (bob["id"], animal["id"], db.utc_now()),
    )

    dry = reconcile(dry_run=True)
    assert sorted(e["action"] for e in dry["items"]["membership_drift"]) == ["add", "remove"]

    reconcile(dry_run=False)
    with db.read_connection() as conn:
        rows = conn.execute("SELECT account_id FROM account_animals WHERE animal_id = ?", (animal["id"],)).fetchall()
    assert [r[0] for r in rows] == [alice["id"]]
