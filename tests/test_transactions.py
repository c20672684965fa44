"""
Dual writes run inside one transaction.

Mongomock has no sessions, so the collections are wrapped to record the
session each call carries and the client hands out fake sessions that
remember whether their transaction committed or aborted.
"""
from contextlib import contextmanager

import pytest

import auth
import bills
import database
import reconciliation
import works
from conftest import bill_payload

WRITES = {"insert_one", "update_one", "delete_one", "delete_many", "find_one_and_update"}


class FakeSession:

    def __init__(self):
        self.committed = False
        self.aborted = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    @contextmanager
    def start_transaction(self):
        try:
            yield
        except Exception:
            self.aborted = True
            raise
        self.committed = True


class RecordingCollection:

    def __init__(self, collection, calls):
        self._collection = collection
        self._calls = calls

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            session = kwargs.pop("session", None)
            self._calls.append((self._collection.name, name, session))
            return attr(*args, **kwargs)
        return call


class RecordingDatabase:

    def __init__(self, db, calls):
        self._db = db
        self._calls = calls

    def __getitem__(self, name):
        return RecordingCollection(self._db[name], self._calls)

    def __getattr__(self, name):
        return getattr(self._db, name)


class Recorder:

    def __init__(self):
        self.calls = []
        self.sessions = []

    def start_session(self):
        session = FakeSession()
        self.sessions.append(session)
        return session

    def writes(self, collection):
        return [(method, session) for name, method, session in self.calls if name == collection and method in WRITES]


@pytest.fixture
def recorder(clean_db, monkeypatch) -> Recorder:
    rec = Recorder()
    recording = RecordingDatabase(clean_db, rec.calls)
    for module in (database, bills, works, reconciliation, auth):
        monkeypatch.setattr(module, "db", recording)
    monkeypatch.setattr(database, "USE_TRANSACTIONS", True)
    monkeypatch.setattr(database.client, "start_session", rec.start_session)
    return rec


class TestBillTransactions:

    def test_create_paid_bill_shares_one_session(self, client, headers, recorder) -> None:
        assert client.post("/bills", json=bill_payload(status="paid"), headers=headers).status_code == 201

        session = recorder.sessions[-1]
        assert recorder.writes("bills") == [("insert_one", session)]
        assert recorder.writes("earnings") == [("insert_one", session)]
        assert session.committed and not session.aborted

    def test_update_and_delete_share_one_session(self, client, headers, recorder) -> None:
        bill = client.post("/bills", json=bill_payload(), headers=headers).json()

        client.put(f"/bills/{bill['id']}", json=bill_payload(status="paid"), headers=headers)
        update = recorder.sessions[-1]
        assert ("update_one", update) in recorder.writes("bills")
        assert ("insert_one", update) in recorder.writes("earnings")

        client.delete(f"/bills/{bill['id']}", headers=headers)
        delete = recorder.sessions[-1]
        assert ("delete_one", delete) in recorder.writes("bills")
        assert ("delete_one", delete) in recorder.writes("earnings")
        assert update.committed and delete.committed

    def test_conflict_aborts_without_writing_bill(self, client, headers, clean_db, recorder) -> None:
        bill = client.post("/bills", json=bill_payload(), headers=headers).json()
        clean_db["earnings"].insert_one({
            "amount": 1, "type": "Sales", "source": f"Bill #{bill['serialNumber']}", "reference": bill["id"],
        })

        r = client.put(f"/bills/{bill['id']}", json=bill_payload(status="paid"), headers=headers)

        assert r.status_code == 409
        session = recorder.sessions[-1]
        assert session.aborted and not session.committed
        assert ("update_one", session) not in recorder.writes("bills")


class TestWorkTransactions:

    def test_patch_shares_one_session(self, client, headers, recorder) -> None:
        client.post("/clients", json={"name": "Acme Corp", "email": "billing@acme.com", "phone": "9876543210"}, headers=headers)
        work = client.post("/works", json={
            "particulars": "Cards", "type": "Card", "size": "A4", "party": "Acme Corp",
            "quantity": 3, "rate": 10, "paid": True,
        }, headers=headers).json()["data"]
        created = recorder.sessions[-1]
        assert recorder.writes("works") == [("insert_one", created)]
        assert recorder.writes("earnings") == [("insert_one", created)]

        client.patch(f"/works/{work['id']}", json={"quantity": 5}, headers=headers)

        patched = recorder.sessions[-1]
        assert ("update_one", patched) in recorder.writes("works")
        assert ("update_one", patched) in recorder.writes("earnings")
        assert patched.committed


class TestPasswordResetTransaction:

    def test_token_and_email_share_one_session(self, client, user, recorder) -> None:
        client.post("/auth/reset-password", json={"email": "owner@example.com"})

        session = recorder.sessions[-1]
        assert recorder.writes("password_reset") == [("insert_one", session)]
        assert recorder.writes("outbox") == [("insert_one", session)]
        assert session.committed
