import logging
import sqlite3
import threading

import pytest

from breeder_backend import db
from breeder_backend.errors import InvalidState, NotFound, PreconditionFailed, Unauthorized
from breeder_backend.services import notifications, transfers
from breeder_backend.services.accounts import list_owned_animal_ids, update_privacy_preferences
from breeder_backend.services.animals import find_animal, get_animal_for_reader, view_only_account_ids
from breeder_backend.services.event_emitter import get_events_for_transfer
from breeder_backend.services.public_projections import get_public_animal


def _animal(id_public):
    with db.read_connection() as conn:
        return find_animal(conn, id_public)


def _viewers(animal):
    with db.read_connection() as conn:
        return view_only_account_ids(conn, animal["id"])


def _transfer_count():
    with db.read_connection() as conn:
        return conn.execute("SELECT COUNT(*) FROM transfers").fetchone()[0]


def _projection_rows(id_public):
    with db.read_connection() as conn:
        return conn.execute("SELECT COUNT(*) FROM public_animals WHERE id_public = ?", (id_public,)).fetchone()[0]


def test_accepted_sale_moves_ownership(alice, bob, make_animal, recording_sink):
    animal = make_animal(alice, section_privacy={"remarks": True})
    transfer = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")
    assert transfer["status"] == "pending"
    assert transfer["to_user_public"] == bob["id_public"]

    result = transfers.accept(transfer["id"], bob["id"])

    assert result["transfer"]["status"] == "accepted"
    assert result["transfer"]["responded_at"]
    assert result["animal"] == {"id_public": animal["id_public"], "name": "Luna", "ownerId_public": bob["id_public"]}

    stored = _animal(animal["id_public"])
    assert stored["owner_id"] == bob["id"]
    assert stored["owner_id_public"] == bob["id_public"]
    assert stored["sold_status"] == "sold"
    assert stored["original_owner_id"] == alice["id"]
    assert alice["id"] in _viewers(stored)

    assert get_public_animal(animal["id_public"])["ownerId_public"] == bob["id_public"]
    assert _projection_rows(animal["id_public"]) == 1

    assert stored["id"] in list_owned_animal_ids(bob["id"])
    assert stored["id"] not in list_owned_animal_ids(alice["id"])

    event_types = [e["event_type"] for e in get_events_for_transfer(transfer["id"])]
    assert event_types[0] == "transfer_proposed"
    assert event_types[-1] == "transfer_accepted"
    assert "ownership_changed" in event_types
    assert "view_only_granted" in event_types

    assert [c["type"] for c in recording_sink.calls] == ["transfer_request", "transfer_accepted"]
    assert recording_sink.calls[0]["account_id"] == bob["id"]
    assert recording_sink.calls[1]["account_id"] == alice["id"]


def test_sold_animal_cannot_be_sold_again(alice, bob, make_animal):
    animal = make_animal(alice)
    transfer = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")
    transfers.accept(transfer["id"], bob["id"])
    before = _transfer_count()

    # Alice is no longer the owner and the animal is marked sold
    with pytest.raises(PreconditionFailed):
        transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")

    assert _transfer_count() == before


def test_owner_cannot_resell_a_sold_animal(alice, bob, carol, make_animal):
    animal = make_animal(alice)
    transfers.accept(transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")["id"], bob["id"])

    with pytest.raises(PreconditionFailed):
        transfers.propose(bob["id"], carol["id"], animal["id_public"], "sale")


def test_duplicate_pending_offer_is_rejected(alice, bob, make_animal):
    animal = make_animal(alice)
    transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")

    with pytest.raises(PreconditionFailed):
        transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")
    assert _transfer_count() == 1


def test_propose_validation(alice, bob, make_animal):
    animal = make_animal(alice)
    with pytest.raises(NotFound):
        transfers.propose(alice["id"], 9999, animal["id_public"], "sale")
    with pytest.raises(PreconditionFailed):
        transfers.propose(alice["id"], bob["id"], "CTC9999", "sale")
    with pytest.raises(PreconditionFailed):
        transfers.propose(alice["id"], alice["id"], animal["id_public"], "sale")
    with pytest.raises(PreconditionFailed):
        transfers.propose(bob["id"], alice["id"], animal["id_public"], "sale")
    assert _transfer_count() == 0


def test_concurrent_accepts_have_one_winner(alice, bob, make_animal):
    animal = make_animal(alice)
    transfer = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")

    barrier = threading.Barrier(2)
    outcomes = []

    def accept():
        barrier.wait()
        try:
            outcomes.append(transfers.accept(transfer["id"], bob["id"]))
        except InvalidState as e:
            outcomes.append(e)

    threads = [threading.Thread(target=accept) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    successes = [o for o in outcomes if isinstance(o, dict)]
    failures = [o for o in outcomes if isinstance(o, InvalidState)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert successes[0]["transfer"]["status"] == "accepted"

    events = [e["event_type"] for e in get_events_for_transfer(transfer["id"])]
    assert events.count("transfer_accepted") == 1
    assert events.count("ownership_changed") == 1


def test_accept_and_decline_race_has_one_winner(alice, bob, make_animal):
    animal = make_animal(alice)
    transfer = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")

    barrier = threading.Barrier(2)
    outcomes = {}

    def run(name, fn):
        barrier.wait()
        try:
            outcomes[name] = fn(transfer["id"], bob["id"])
        except InvalidState as e:
            outcomes[name] = e

    threads = [
        threading.Thread(target=run, args=("accept", transfers.accept)),
        threading.Thread(target=run, args=("decline", transfers.decline)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    errors = [v for v in outcomes.values() if isinstance(v, InvalidState)]
    assert len(errors) == 1

    final = transfers.get_transfer_for_party(bob["id"], transfer["id"])
    owner = _animal(animal["id_public"])["owner_id"]
    if isinstance(outcomes["decline"], InvalidState):
        assert final["status"] == "accepted" and owner == bob["id"]
    else:
        assert final["status"] == "declined" and owner == alice["id"]


def test_responding_twice_is_invalid_state(alice, bob, make_animal):
    animal = make_animal(alice)
    transfer = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")
    transfers.accept(transfer["id"], bob["id"])

    with pytest.raises(InvalidState):
        transfers.accept(transfer["id"], bob["id"])
    with pytest.raises(InvalidState):
        transfers.decline(transfer["id"], bob["id"])


def test_only_recipient_may_respond(alice, bob, carol, make_animal):
    animal = make_animal(alice)
    transfer = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")

    with pytest.raises(Unauthorized):
        transfers.accept(transfer["id"], carol["id"])
    with pytest.raises(Unauthorized):
        transfers.decline(transfer["id"], alice["id"])
    with pytest.raises(NotFound):
        transfers.accept(424242, bob["id"])

    assert transfers.get_transfer_for_party(bob["id"], transfer["id"])["status"] == "pending"


def test_decline_leaves_animal_untouched(alice, bob, make_animal, recording_sink):
    animal = make_animal(alice)
    transfer = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale", transaction_id="txn-42")

    declined = transfers.decline(transfer["id"], bob["id"])

    assert declined["status"] == "declined"
    assert declined["transaction_id"] == "txn-42"
    stored = _animal(animal["id_public"])
    assert stored["owner_id"] == alice["id"]
    assert stored["sold_status"] is None
    assert _viewers(stored) == []
    assert recording_sink.calls[-1]["type"] == "transfer_declined"


def test_purchase_view_only_offer(alice, bob, make_animal, recording_sink):
    # Bob logged the purchase of an animal bred by Alice and offers her read access
    animal = make_animal(bob, name="Pepper")
    transfer = transfers.propose(bob["id"], alice["id"], animal["id_public"], "purchase", offer_view_only=True)
    assert recording_sink.calls[-1]["type"] == "view_only_offer"

    result = transfers.accept_view_only(transfer["id"], alice["id"])

    assert result["already_granted"] is False
    assert result["transfer"]["status"] == "accepted"
    stored = _animal(animal["id_public"])
    assert stored["owner_id"] == bob["id"]
    assert stored["sold_status"] is None
    assert alice["id"] in _viewers(stored)
    assert recording_sink.calls[-1]["type"] == "view_only_accepted"
    assert recording_sink.calls[-1]["account_id"] == bob["id"]

    # Accepting again while holding the grant is a no-op
    calls = len(recording_sink.calls)
    again = transfers.accept_view_only(transfer["id"], alice["id"])
    assert again["already_granted"] is True
    assert again["transfer"]["status"] == "accepted"
    assert len(recording_sink.calls) == calls


def test_purchase_requires_view_only(alice, bob, make_animal):
    animal = make_animal(bob)
    with pytest.raises(PreconditionFailed):
        transfers.propose(bob["id"], alice["id"], animal["id_public"], "purchase", offer_view_only=False)


def test_accept_view_only_rejects_ownership_transfers(alice, bob, make_animal):
    animal = make_animal(alice)
    transfer = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")
    with pytest.raises(PreconditionFailed):
        transfers.accept_view_only(transfer["id"], bob["id"])


def test_sale_with_view_only_offer_grants_recipient(alice, bob, make_animal):
    animal = make_animal(alice)
    transfer = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale", offer_view_only=True)

    result = transfers.accept(transfer["id"], bob["id"])

    assert result["animal"]["ownerId_public"] == alice["id_public"]
    stored = _animal(animal["id_public"])
    assert stored["owner_id"] == alice["id"]
    assert stored["sold_status"] is None
    assert bob["id"] in _viewers(stored)


def test_accept_of_vanished_animal_rolls_back(alice, bob, make_animal):
    animal = make_animal(alice)
    transfer = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")

    with db.transaction() as conn:
        conn.execute("DELETE FROM account_animals WHERE animal_id = ?", (animal["id"],))
        conn.execute("DELETE FROM animals WHERE id = ?", (animal["id"],))

    with pytest.raises(NotFound):
        transfers.accept(transfer["id"], bob["id"])

    assert transfers.get_transfer_for_party(bob["id"], transfer["id"])["status"] == "pending"
    assert [e["event_type"] for e in get_events_for_transfer(transfer["id"])] == ["transfer_proposed"]


def test_accept_after_animal_changed_hands_rolls_back(alice, bob, carol, make_animal):
    animal = make_animal(alice)
    to_bob = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")
    to_carol = transfers.propose(alice["id"], carol["id"], animal["id_public"], "sale")
    transfers.accept(to_carol["id"], carol["id"])

    with pytest.raises(PreconditionFailed):
        transfers.accept(to_bob["id"], bob["id"])

    assert transfers.get_transfer_for_party(bob["id"], to_bob["id"])["status"] == "pending"
    stored = _animal(animal["id_public"])
    assert stored["owner_id"] == carol["id"]
    assert bob["id"] not in _viewers(stored)


def test_view_only_offer_lapses_when_sender_sells(alice, bob, carol, make_animal):
    animal = make_animal(alice, details={"name": "Luna", "remarks": "private vet notes"})
    share = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale", offer_view_only=True)
    transfers.accept(transfers.propose(alice["id"], carol["id"], animal["id_public"], "sale")["id"], carol["id"])

    with pytest.raises(PreconditionFailed):
        transfers.accept(share["id"], bob["id"])
    with pytest.raises(PreconditionFailed):
        transfers.accept_view_only(share["id"], bob["id"])

    assert transfers.get_transfer_for_party(bob["id"], share["id"])["status"] == "pending"
    stored = _animal(animal["id_public"])
    assert stored["owner_id"] == carol["id"]
    assert bob["id"] not in _viewers(stored)
    with pytest.raises(NotFound):
        get_animal_for_reader(bob["id"], animal["id_public"])
    assert [e["event_type"] for e in get_events_for_transfer(share["id"])] == ["transfer_proposed"]


def test_buyer_shares_purchased_animal_back_with_breeder(alice, bob, make_animal):
    animal = make_animal(alice, name="X2")
    transfers.accept(transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")["id"], bob["id"])

    offer = transfers.propose(bob["id"], alice["id"], animal["id_public"], "purchase", offer_view_only=True)
    result = transfers.accept_view_only(offer["id"], alice["id"])

    assert result["already_granted"] is False
    assert result["transfer"]["status"] == "accepted"
    stored = _animal(animal["id_public"])
    assert stored["owner_id"] == bob["id"]
    assert stored["owner_id_public"] == bob["id_public"]
    assert alice["id"] in _viewers(stored)
    assert get_animal_for_reader(alice["id"], animal["id_public"])["access"] == "view_only"
    assert get_public_animal(animal["id_public"])["ownerId_public"] == bob["id_public"]


def test_view_only_access_survives_later_transfers(alice, bob, carol, make_animal):
    animal = make_animal(alice)
    share = transfers.propose(alice["id"], carol["id"], animal["id_public"], "sale", offer_view_only=True)
    transfers.accept(share["id"], carol["id"])

    transfers.accept(transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")["id"], bob["id"])

    viewers = _viewers(_animal(animal["id_public"]))
    assert carol["id"] in viewers
    assert alice["id"] in viewers
    assert bob["id"] not in viewers


def test_projection_uses_new_owner_preferences(alice, bob, make_animal):
    update_privacy_preferences(alice["id"], show_remarks_public=True)
    animal = make_animal(alice, include_remarks=True, details={"remarks": "Calm and friendly"})
    assert get_public_animal(animal["id_public"])["remarks"] == "Calm and friendly"

    transfers.accept(transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")["id"], bob["id"])

    public = get_public_animal(animal["id_public"])
    assert public["ownerId_public"] == bob["id_public"]
    assert "remarks" not in public


def test_private_animal_stays_unpublished_after_sale(alice, bob, make_animal):
    animal = make_animal(alice, is_public=False)
    transfers.accept(transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")["id"], bob["id"])
    with pytest.raises(NotFound):
        get_public_animal(animal["id_public"])


def test_failed_notification_does_not_fail_transfer(alice, bob, make_animal, monkeypatch, caplog):
    animal = make_animal(alice)

    def unavailable():
        raise sqlite3.OperationalError("notification store unavailable")

    monkeypatch.setattr(notifications, "transaction", unavailable)

    with caplog.at_level(logging.ERROR, logger=notifications.logger.name):
        transfer = transfers.propose(alice["id"], bob["id"], animal["id_public"], "sale")
        result = transfers.accept(transfer["id"], bob["id"])

    assert result["transfer"]["status"] == "accepted"
    assert "Failed to emit transfer_request notification" in caplog.text
    assert notifications.unread_count(bob["id"]) == 0


def test_list_transfers_and_history(alice, bob, carol, make_animal):
    first = make_animal(alice, name="First")
    second = make_animal(alice, name="Second")
    t1 = transfers.propose(alice["id"], bob["id"], first["id_public"], "sale")
    t2 = transfers.propose(alice["id"], carol["id"], second["id_public"], "sale")

    assert [t["id"] for t in transfers.list_transfers_for_account(alice["id"])] == [t2["id"], t1["id"]]
    assert [t["id"] for t in transfers.list_transfers_for_account(bob["id"])] == [t1["id"]]

    with pytest.raises(NotFound):
        transfers.get_transfer_for_party(carol["id"], t1["id"])

    transfers.decline(t1["id"], bob["id"])
    history = transfers.get_transfer_history(alice["id"], t1["id"])
    assert [e["event_type"] for e in history] == ["transfer_proposed", "transfer_declined"]
    assert history[1]["payload"]["new_status"] == "declined"
