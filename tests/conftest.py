import os

# Configuration is read at import time
os.environ.setdefault("VALID_KEYS", "alice-key,bob-key,carol-key")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")
os.environ["USE_POSTGRES"] = "false"

import pytest

from breeder_backend import db
from breeder_backend.services import notifications
from breeder_backend.services.accounts import create_account
from breeder_backend.services.animals import create_animal


@pytest.fixture(autouse=True)
def database(tmp_path):
    db.init_db(str(tmp_path / "breeder.db"))
    default_sink = notifications.get_sink()
    yield db.get_db_path()
    notifications.set_sink(default_sink)


@pytest.fixture
def alice():
    return create_account("uid-alice", "alice@example.com", "Alice")


@pytest.fixture
def bob():
    return create_account("uid-bob", "bob@example.com", "Bob")


@pytest.fixture
def carol():
    return create_account("uid-carol", "carol@example.com", "Carol")


@pytest.fixture
def make_animal():
    def _make(owner, name="Luna", is_public=True, **kwargs):
        details = {"name": name, "species": "Fancy Mouse", "gender": "Female"}
        details.update(kwargs.pop("details", {}))
        return create_animal(owner["id"], details, is_public=is_public, **kwargs)
    return _make


class RecordingSink(notifications.NotificationSink):
    """Stores notifications and records every call."""

    def __init__(self):
        self.calls = []

    def emit(self, account_id, type, message, metadata=None, status=None):
        self.calls.append({"account_id": account_id, "type": type, "message": message,
                           "metadata": metadata or {}, "status": status})
        return super().emit(account_id, type, message, metadata, status)


@pytest.fixture
def recording_sink():
    sink = RecordingSink()
    notifications.set_sink(sink)
    return sink
