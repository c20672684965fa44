"""
Registration, sessions and the password-reset flow.
"""
from auth import hash_password, verify_password
from conftest import register


class TestPasswords:

    def test_hash_round_trip(self) -> None:
        stored = hash_password("secret123")
        assert verify_password("secret123", stored)
        assert not verify_password("secret124", stored)

    def test_salted(self) -> None:
        assert hash_password("secret123") != hash_password("secret123")

    def test_malformed_hash(self) -> None:
        assert not verify_password("secret123", "")


class TestSessions:

    def test_register_returns_token_without_hash(self, client) -> None:
        body = register(client, "Someone@Example.com")
        assert body["token"]
        assert body["user"]["email"] == "someone@example.com"
        assert "password_hash" not in body["user"]

    def test_duplicate_email(self, client, user) -> None:
        r = client.post("/auth/register", json={"email": "owner@example.com", "name": "Again", "password": "secret123"})
        assert r.status_code == 409

    def test_login_and_me(self, client, user) -> None:
        r = client.post("/auth/login", json={"email": "owner@example.com", "password": "secret123"})
        assert r.status_code == 200
        token = r.json()["token"]

        me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
        assert me["id"] == user["user"]["id"]

    def test_bad_password(self, client, user) -> None:
        r = client.post("/auth/login", json={"email": "owner@example.com", "password": "nope-nope"})
        assert r.status_code == 401

    def test_missing_and_unknown_token(self, client) -> None:
        assert client.get("/auth/me").status_code == 401
        assert client.get("/auth/me", headers={"Authorization": "Bearer deadbeef"}).status_code == 401


class TestPasswordReset:

    def test_request_enqueues_email(self, client, user, clean_db) -> None:
        r = client.post("/auth/reset-password", json={"email": "owner@example.com"})

        assert r.status_code == 200
        [message] = list(clean_db["outbox"].find())
        assert message["to"] == "owner@example.com"
        assert message["status"] == "pending"
        reset = clean_db["password_reset"].find_one()
        assert reset["token"] in message["html"]

    def test_unknown_email_gives_same_answer(self, client, user, clean_db) -> None:
        known = client.post("/auth/reset-password", json={"email": "owner@example.com"}).json()
        unknown = client.post("/auth/reset-password", json={"email": "ghost@example.com"}).json()

        assert known == unknown
        assert clean_db["outbox"].count_documents({}) == 1

    def test_confirm_changes_password_and_drops_sessions(self, client, user, headers, clean_db) -> None:
        client.post("/auth/reset-password", json={"email": "owner@example.com"})
        token = clean_db["password_reset"].find_one()["token"]

        r = client.post("/auth/reset-password/confirm", json={"token": token, "newPassword": "fresh-pass"})

        assert r.status_code == 200
        assert client.get("/auth/me", headers=headers).status_code == 401
        assert client.post("/auth/login", json={"email": "owner@example.com", "password": "secret123"}).status_code == 401
        assert client.post("/auth/login", json={"email": "owner@example.com", "password": "fresh-pass"}).status_code == 200
        assert clean_db["password_reset"].count_documents({}) == 0

    def test_confirm_rejects_unknown_token(self, client) -> None:
        r = client.post("/auth/reset-password/confirm", json={"token": "nope", "newPassword": "fresh-pass"})
        assert r.status_code == 400
