"""Tests for registration, login, tokens, profiles and the user directory."""

from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone

import jwt as pyjwt
import pytest

from config import JWT_ALGORITHM, JWT_SECRET
from security import hash_password, verify_password


class TestPasswords:
    def test_round_trip(self, mongo):
        hashed = hash_password("secret1")
        assert hashed.startswith("pbkdf2_sha256$")
        assert verify_password("secret1", hashed)
        assert not verify_password("secret2", hashed)

    def test_salted(self, mongo):
        assert hash_password("secret1") != hash_password("secret1")

    def test_garbage_hash(self):
        assert not verify_password("secret1", "not-a-hash")


class TestRegistration:
    def test_register_and_login(self, client):
        resp = client.post("/api/auth/register", json={
            "email": "a@example.com", "username": "alice", "password": "secret1", "role": "seller",
        })
        assert resp.status_code == 201
        uid = resp.json()["user_id"]

        login = client.post("/api/auth/login", json={"username": "alice", "password": "secret1"})
        assert login.status_code == 200
        assert login.json()["user"] == {"id": uid, "role": "seller", "username": "alice",
                                        "email": "a@example.com"}

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {login.json()['token']}"})
        assert me.json()["id"] == uid

    def test_account_lands_in_role_registry(self, client, mongo, buyer, seller):
        assert mongo["buyer"].count_documents({"username": "recyclr"}) == 1
        assert mongo["seller"].count_documents({"username": "greenco"}) == 1
        assert mongo["seller"].count_documents({"username": "recyclr"}) == 0

    def test_duplicate_email_across_registries(self, client, seller):
        resp = client.post("/api/auth/register", json={
            "email": seller["email"], "username": "other", "password": "secret1", "role": "buyer",
        })
        assert resp.status_code == 409

    def test_duplicate_username(self, client, seller):
        resp = client.post("/api/auth/register", json={
            "email": "new@example.com", "username": "greenco", "password": "secret1", "role": "buyer",
        })
        assert resp.status_code == 409

    def test_short_password(self, client):
        resp = client.post("/api/auth/register", json={
            "email": "b@example.com", "username": "bob", "password": "12345", "role": "buyer",
        })
        assert resp.status_code == 400

    @pytest.mark.parametrize("override", [
        {"role": "admin"}, {"email": "not-an-email"}, {"username": ""},
    ])
    def test_invalid_payload(self, client, override):
        payload = {"email": "c@example.com", "username": "carol", "password": "secret1", "role": "buyer"}
        assert client.post("/api/auth/register", json={**payload, **override}).status_code == 422


class TestLogin:
    def test_wrong_password(self, client, buyer):
        resp = client.post("/api/auth/login", json={"username": "recyclr", "password": "wrong!!"})
        assert resp.status_code == 401

    def test_username_whitespace_matches_registration(self, client):
        resp = client.post("/api/auth/register", json={
            "email": "bob@example.com", "username": " bob ", "password": "secret1", "role": "buyer",
        })
        assert resp.json()["username"] == "bob"
        login = client.post("/api/auth/login", json={"username": " bob ", "password": "secret1"})
        assert login.status_code == 200
        assert login.json()["user"]["username"] == "bob"

    def test_unknown_user(self, client, mongo):
        resp = client.post("/api/auth/login", json={"username": "ghost", "password": "secret1"})
        assert resp.status_code == 401

    def test_missing_token(self, client):
        assert client.get("/api/auth/me").status_code == 401

    def test_garbage_token(self, client):
        resp = client.get("/api/auth/me", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid token"

    def test_expired_token(self, client, buyer):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        token = pyjwt.encode({"sub": buyer["id"], "role": "buyer", "username": "recyclr", "exp": past},
                             JWT_SECRET, algorithm=JWT_ALGORITHM)
        resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Token expired"

    def test_deleted_account(self, client, mongo, buyer):
        mongo["buyer"].delete_many({})
        assert client.get("/api/auth/me", headers=buyer["headers"]).status_code == 401


class TestProfile:
    def test_defaults(self, client, buyer):
        body = client.get("/api/profile", headers=buyer["headers"]).json()
        assert body["username"] == "recyclr"
        assert body["email"] == buyer["email"]
        assert body["avatar_url"] is None

    def test_update_fields_and_username(self, client, mongo, buyer):
        resp = client.put("/api/profile", headers=buyer["headers"], json={
            "phone_number": "0912345678", "location": "Taipei", "username": "recyclr2",
        })
        assert resp.status_code == 200
        body = resp.json()
        assert (body["phone_number"], body["location"], body["username"]) == ("0912345678", "Taipei", "recyclr2")
        assert mongo["buyer"].count_documents({"username": "recyclr2"}) == 1
        login = client.post("/api/auth/login", json={"username": "recyclr2", "password": "secret1"})
        assert login.status_code == 200

    def test_username_taken(self, client, buyer, seller):
        resp = client.put("/api/profile", headers=buyer["headers"], json={"username": "greenco"})
        assert resp.status_code == 409

    def test_password_change_requires_current(self, client, buyer):
        resp = client.put("/api/profile", headers=buyer["headers"],
                          json={"password": "newpass1", "confirm_password": "newpass1"})
        assert resp.status_code == 400

    def test_password_mismatch(self, client, buyer):
        resp = client.put("/api/profile", headers=buyer["headers"], json={
            "password": "newpass1", "confirm_password": "newpass2", "current_password": "secret1",
        })
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Passwords do not match"

    def test_password_too_short(self, client, buyer):
        resp = client.put("/api/profile", headers=buyer["headers"], json={
            "password": "abc", "confirm_password": "abc", "current_password": "secret1",
        })
        assert resp.status_code == 400

    def test_wrong_current_password(self, client, buyer):
        resp = client.put("/api/profile", headers=buyer["headers"], json={
            "email": "new@example.com", "current_password": "nope123",
        })
        assert resp.status_code == 401

    def test_change_email_and_password(self, client, buyer):
        resp = client.put("/api/profile", headers=buyer["headers"], json={
            "email": "new@example.com", "password": "newpass1", "confirm_password": "newpass1",
            "current_password": "secret1",
        })
        assert resp.status_code == 200
        assert resp.json()["email"] == "new@example.com"
        assert client.post("/api/auth/login", json={"username": "recyclr", "password": "secret1"}).status_code == 401
        assert client.post("/api/auth/login", json={"username": "recyclr", "password": "newpass1"}).status_code == 200

    def test_avatar_upload(self, client, buyer):
        png = b"\x89PNG\r\n\x1a\nfake"
        resp = client.post("/api/profile/avatar", headers=buyer["headers"],
                           files={"file": ("me.png", png, "image/png")})
        assert resp.status_code == 200
        expected = "data:image/png;base64," + base64.b64encode(png).decode()
        assert resp.json()["avatar_url"] == expected
        assert client.get("/api/profile", headers=buyer["headers"]).json()["avatar_url"] == expected

    def test_avatar_must_be_image(self, client, buyer):
        resp = client.post("/api/profile/avatar", headers=buyer["headers"],
                           files={"file": ("notes.txt", b"hello", "text/plain")})
        assert resp.status_code == 400


class TestDirectory:
    def test_each_side_sees_the_other(self, client, buyer, seller, make_user):
        make_user("metalworks", "seller")
        as_buyer = client.get("/api/users", headers=buyer["headers"]).json()["items"]
        assert sorted(u["username"] for u in as_buyer) == ["greenco", "metalworks"]
        as_seller = client.get("/api/users", headers=seller["headers"]).json()["items"]
        assert [u["username"] for u in as_seller] == ["recyclr"]

    def test_search_username_or_email(self, client, buyer, seller, make_user):
        make_user("metalworks", "seller", email="contact@metal.io")
        hits = client.get("/api/users", params={"q": "METAL.IO"}, headers=buyer["headers"]).json()["items"]
        assert [u["username"] for u in hits] == ["metalworks"]

    def test_find_buyers_by_location(self, client, buyer, seller, make_user):
        other = make_user("tainan_buyer", "buyer")
        client.put("/api/profile", headers=buyer["headers"], json={"location": "Taipei City"})
        client.put("/api/profile", headers=other["headers"], json={"location": "Tainan"})
        hits = client.get("/api/buyers", params={"location": "taipei"}, headers=seller["headers"]).json()["items"]
        assert [b["username"] for b in hits] == ["recyclr"]
        assert hits[0]["location"] == "Taipei City"
        hits = client.get("/api/buyers", params={"q": "tainan"}, headers=seller["headers"]).json()["items"]
        assert [b["username"] for b in hits] == ["tainan_buyer"]

    def test_find_buyers_is_for_sellers(self, client, buyer):
        assert client.get("/api/buyers", headers=buyer["headers"]).status_code == 403
