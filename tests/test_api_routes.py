"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Public, authenticated and admin routes through the FastAPI TestClient.

The engine, config, award context and signature verifier dependencies
are overridden so every request runs against the in-memory test
database and never touches an RPC node.
"""

from __future__ import annotations

import jwt
import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_WALLET, WALLET_A, WALLET_B, FakeVerifier, create_user, deposit_metadata
from nuvia.api.deps import (
    JWT_ALGORITHM,
    JWT_SECRET,
    get_award_context,
    get_config,
    get_engine,
    get_signature_verifier,
    issue_token,
)
from nuvia.api.main import app
from nuvia.services.xp_service import AwardContext


class _Recovers:
    def __init__(self, address):
        self.address = address

    def recover(self, message, signature):
        return self.address


@pytest.fixture
def client(seeded_engine, nuvia_config, registry):
    """TestClient wired to the seeded in-memory database.

    Not used as a context manager, so the lifespan hook (which would build
    the production engine) never runs.
    """
    app.dependency_overrides[get_engine] = lambda: seeded_engine
    app.dependency_overrides[get_config] = lambda: nuvia_config
    app.dependency_overrides[get_award_context] = lambda: AwardContext(
        registry=registry, verifier=FakeVerifier(sender=WALLET_A), referral=nuvia_config.referral
    )
    app.dependency_overrides[get_signature_verifier] = lambda: _Recovers(WALLET_A)
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def user_id(seeded_engine):
    return create_user(seeded_engine, WALLET_A, logged_in=True)


@pytest.fixture
def user_token(user_id):
    return issue_token(user_id, WALLET_A, False)


@pytest.fixture
def admin_token(seeded_engine):
    admin_id = create_user(seeded_engine, ADMIN_WALLET, is_admin=True)
    return issue_token(admin_id, ADMIN_WALLET, True)


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _deposit(client, token, tx):
    return client.post(
        "/api/events",
        json={"action_type": "deposit", "metadata": deposit_metadata(tx=tx)},
        headers=_auth(token),
    )


# ===========================================================================
# Health & public reads
# ===========================================================================
class TestPublic:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_rules_are_public(self, client):
        resp = client.get("/api/xp/rules")
        assert resp.status_code == 200
        actions = {r["action_type"] for r in resp.json()["rules"]}
        assert {"deposit", "supply", "claim_faucet"} <= actions

    def test_leaderboard_without_snapshot(self, client):
        resp = client.get("/api/leaderboard", params={"period": "daily"})
        assert resp.status_code == 200
        assert resp.json()["rows"] == []

    def test_leaderboard_unknown_period(self, client):
        assert client.get("/api/leaderboard", params={"period": "monthly"}).status_code == 400

    def test_latest_snapshot_before_first_run(self, client):
        resp = client.get("/api/leaderboard/snapshot/latest", params={"period": "weekly"})
        assert resp.status_code == 404


# ===========================================================================
# Wallet login
# ===========================================================================
class TestAuthFlow:
    def test_nonce_then_verify(self, client):
        resp = client.post("/api/auth/nonce", json={"wallet_address": WALLET_A})
        assert resp.status_code == 200
        challenge = resp.json()
        assert challenge["message"].endswith(challenge["nonce"])

        resp = client.post("/api/auth/verify", json={
            "wallet_address": WALLET_A,
            "signature": "0xsig",
            "nonce": challenge["nonce"],
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["user"]["first_login"] is True

        me = client.get("/api/auth/me", headers=_auth(body["token"]))
        assert me.status_code == 200
        assert me.json()["wallet_address"] == WALLET_A

    def test_nonce_rejects_bad_wallet(self, client):
        resp = client.post("/api/auth/nonce", json={"wallet_address": "0x123"})
        assert resp.status_code == 400

    def test_verify_rejects_wrong_nonce(self, client):
        client.post("/api/auth/nonce", json={"wallet_address": WALLET_A})
        resp = client.post("/api/auth/verify", json={
            "wallet_address": WALLET_A, "signature": "0xsig", "nonce": "nope",
        })
        assert resp.status_code == 401

    def test_missing_token(self, client):
        resp = client.get("/api/xp/me")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing token"

    def test_garbage_token(self, client):
        resp = client.get("/api/xp/me", headers=_auth("not.a.jwt"))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid token"

    def test_token_signed_with_other_secret(self, client, user_id):
        token = jwt.encode({"sub": str(user_id)}, "x" * 64, algorithm=JWT_ALGORITHM)
        assert client.get("/api/xp/me", headers=_auth(token)).status_code == 401


# ===========================================================================
# Event submission & balances
# ===========================================================================
class TestEvents:
    def test_deposit_awards_xp(self, client, user_token):
        resp = _deposit(client, user_token, "0xaaa")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["xp_awarded"] == 100
        assert body["reason_code"] == "awarded"

        me = client.get("/api/xp/me", headers=_auth(user_token)).json()
        assert me["total_xp"] == 100
        assert me["recent"][0]["reason"] == "deposit"

    def test_duplicate_is_not_paid_twice(self, client, user_token):
        _deposit(client, user_token, "0xaaa")
        body = _deposit(client, user_token, "0xAAA").json()
        assert body["success"] is False
        assert body["duplicate"] is True
        assert body["reason_code"] == "duplicate"

        ledger = client.get("/api/xp/ledger", headers=_auth(user_token)).json()
        assert ledger["total"] == 1

    def test_policy_rejection_is_200(self, client, user_token):
        resp = client.post(
            "/api/events",
            json={"action_type": "deposit", "metadata": deposit_metadata(tx="0xbbb", amount="1")},
            headers=_auth(user_token),
        )
        assert resp.status_code == 200
        assert resp.json()["reason_code"] == "below_min_amount"

        events = client.get(
            "/api/events/me", params={"status": "failed"}, headers=_auth(user_token)
        ).json()["events"]
        assert [e["tx_hash"] for e in events] == ["0xbbb"]

    def test_unknown_user(self, client):
        token = issue_token(4242, WALLET_B, False)
        resp = _deposit(client, token, "0xccc")
        assert resp.status_code == 404

    def test_empty_action_type(self, client, user_token):
        resp = client.post("/api/events", json={"action_type": ""}, headers=_auth(user_token))
        assert resp.status_code == 422


# ===========================================================================
# Quests
# ===========================================================================
class TestQuests:
    def test_complete_and_claim(self, client, user_token):
        for tx in ("0x01", "0x02", "0x03"):
            _deposit(client, user_token, tx)

        quests = client.get("/api/quests/today", headers=_auth(user_token)).json()["quests"]
        [daily] = [q for q in quests if q["name"] == "Daily Depositor"]
        assert daily["progress"]["is_completed"] is True

        resp = client.post(
            "/api/quests/claim", json={"quest_id": daily["id"]}, headers=_auth(user_token)
        )
        assert resp.status_code == 200
        assert resp.json()["total_xp"] == 300 + 50

        again = client.post(
            "/api/quests/claim", json={"quest_id": daily["id"]}, headers=_auth(user_token)
        )
        assert again.status_code == 400

        history = client.get("/api/quests/history", headers=_auth(user_token)).json()["history"]
        assert [h["quest_name"] for h in history] == ["Daily Depositor"]

    def test_unknown_cadence(self, client, user_token):
        resp = client.get("/api/quests", params={"cadence": "hourly"}, headers=_auth(user_token))
        assert resp.status_code == 400


# ===========================================================================
# Referrals
# ===========================================================================
class TestReferrals:
    def test_apply_and_view(self, client, seeded_engine, user_id):
        invitee = create_user(seeded_engine, WALLET_B)
        token = issue_token(invitee, WALLET_B, False)

        resp = client.post("/api/referrals/apply", json={"code": "NUV-AAAAAA"}, headers=_auth(token))
        assert resp.status_code == 200
        assert resp.json()["referral"]["status"] == "pending"

        again = client.post("/api/referrals/apply", json={"code": "NUV-AAAAAA"}, headers=_auth(token))
        assert again.status_code == 409

        mine = client.get("/api/referrals/me", headers=_auth(issue_token(user_id, WALLET_A, False)))
        assert mine.json()["stats"]["total"] == 1

    def test_invalid_and_self_codes(self, client, user_token):
        bad = client.post("/api/referrals/apply", json={"code": "NUV-ZZZZZZ"}, headers=_auth(user_token))
        assert bad.status_code == 404
        own = client.post("/api/referrals/apply", json={"code": "NUV-AAAAAA"}, headers=_auth(user_token))
        assert own.status_code == 400


# ===========================================================================
# Admin routes
# ===========================================================================
class TestAdminAuthGuards:
    ADMIN_GET_ENDPOINTS = ["/api/admin/rules", "/api/admin/audit-log"]

    @pytest.mark.parametrize("endpoint", ADMIN_GET_ENDPOINTS)
    def test_get_rejects_no_auth(self, client, endpoint):
        assert client.get(endpoint).status_code == 401

    @pytest.mark.parametrize("endpoint", ADMIN_GET_ENDPOINTS)
    def test_get_rejects_non_admin(self, client, endpoint, user_token):
        resp = client.get(endpoint, headers=_auth(user_token))
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Not admin"

    def test_post_rejects_non_admin(self, client, user_token):
        resp = client.post("/api/admin/rules", json={"action_type": "swap", "xp_amount": 5},
                           headers=_auth(user_token))
        assert resp.status_code == 403

    def test_forged_admin_claim_is_rejected(self, client):
        token = jwt.encode({"sub": "1", "is_admin": True}, "y" * 64, algorithm=JWT_ALGORITHM)
        assert client.get("/api/admin/rules", headers=_auth(token)).status_code == 401

    def test_admin_claim_from_real_secret(self, client, admin_token):
        payload = jwt.decode(admin_token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        assert payload["is_admin"] is True
        assert client.get("/api/admin/rules", headers=_auth(admin_token)).status_code == 200


class TestAdminRoutes:
    def test_rule_lifecycle(self, client, admin_token):
        created = client.post(
            "/api/admin/rules",
            json={"action_type": "swap", "xp_amount": 20, "cooldown_minutes": 30},
            headers=_auth(admin_token),
        )
        assert created.status_code == 201

        dup = client.post("/api/admin/rules", json={"action_type": "swap", "xp_amount": 1},
                          headers=_auth(admin_token))
        assert dup.status_code == 400

        patched = client.patch("/api/admin/rules/swap", json={"xp_amount": 25},
                               headers=_auth(admin_token))
        assert patched.json()["xp_amount"] == 25

        removed = client.delete("/api/admin/rules/swap", headers=_auth(admin_token))
        assert removed.json()["is_active"] is False
        assert client.delete("/api/admin/rules/teleport", headers=_auth(admin_token)).status_code == 404

        audit = client.get("/api/admin/audit-log", headers=_auth(admin_token)).json()["entries"]
        assert [e["action_type"] for e in audit] == ["UPDATE", "UPDATE", "CREATE"]

    def test_adjust_and_leaderboard(self, client, admin_token, user_id):
        resp = client.post(
            "/api/admin/xp/adjust",
            json={"user_id": user_id, "delta_xp": 75, "note": "beta tester"},
            headers=_auth(admin_token),
        )
        assert resp.status_code == 200
        assert resp.json()["balance_after"] == 75

        overdraw = client.post(
            "/api/admin/xp/adjust",
            json={"user_id": user_id, "delta_xp": -500, "reason": "penalty"},
            headers=_auth(admin_token),
        )
        assert overdraw.status_code == 409

        gen = client.post("/api/admin/leaderboard/generate", headers=_auth(admin_token))
        assert gen.json()["total_users"] == 1

        board = client.get("/api/leaderboard").json()
        assert board["rows"][0]["user_id"] == user_id
        assert board["rows"][0]["score"] == 75

        rank = client.get("/api/leaderboard/me", headers=_auth(issue_token(user_id, WALLET_A, False)))
        assert rank.json()["rank"] == 1

        latest = client.get("/api/leaderboard/snapshot/latest").json()
        assert latest["period"] == "all-time"
        assert latest["total_users"] == 1
        assert latest["rows"] == board["rows"]

    def test_reconcile(self, client, admin_token):
        resp = client.post("/api/admin/reconcile", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["drifted"] == 0

    def test_flagged_user_review(self, client, admin_token, seeded_engine):
        other = create_user(seeded_engine, WALLET_B, logged_in=True)
        resp = _deposit(client, issue_token(other, WALLET_B, False), "0xf00")
        assert resp.json()["reason_code"] == "verification_failed"

        flagged = client.get("/api/admin/users/suspicious", headers=_auth(admin_token)).json()
        assert [u["id"] for u in flagged["users"]] == [other]
        assert flagged["users"][0]["reasons"] == ["Transaction sender does not match wallet"]

        cleared = client.post(f"/api/admin/users/{other}/clear-flags", headers=_auth(admin_token))
        assert cleared.json()["is_suspicious"] is False
        assert client.get("/api/admin/users/suspicious", headers=_auth(admin_token)).json()["users"] == []
        assert client.post("/api/admin/users/999/clear-flags", headers=_auth(admin_token)).status_code == 404


# ===========================================================================
# Waitlist
# ===========================================================================
class TestWaitlist:
    def test_join_lookup_and_stats(self, client):
        first = client.post("/api/waitlist/join", json={"email": "a@example.com"})
        assert first.status_code == 201
        code = first.json()["referral_code"]
        assert first.json()["position"] == 1

        second = client.post(
            "/api/waitlist/join",
            json={"wallet_address": WALLET_B, "referral_code": code},
        )
        assert second.json()["position"] == 2

        standing = client.get(f"/api/waitlist/position/{WALLET_B}").json()
        assert standing["position"] == 2
        assert standing["total_waitlist"] == 2

        verified = client.get(f"/api/waitlist/verify/{code.lower()}").json()
        assert verified == {"valid": True, "referral_code": code, "referral_count": 1}

        stats = client.get("/api/waitlist/stats").json()
        assert stats["total"] == 2
        assert stats["top_referrers"] == [{"referral_code": code, "referral_count": 1}]

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"email": "broken"},
            {"email": "a@example.com", "referral_code": "NUVIA-NOPE00"},
        ],
    )
    def test_join_rejections(self, client, payload):
        assert client.post("/api/waitlist/join", json=payload).status_code == 400

    def test_duplicate_email(self, client):
        client.post("/api/waitlist/join", json={"email": "a@example.com"})
        resp = client.post("/api/waitlist/join", json={"email": "a@example.com"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Email already registered in waitlist"

    def test_unknown_lookups(self, client):
        assert client.get("/api/waitlist/position/nobody@example.com").status_code == 404
        assert client.get("/api/waitlist/verify/NUVIA-NOPE00").status_code == 404

    def test_admin_approval(self, client, admin_token):
        client.post("/api/waitlist/join", json={"email": "a@example.com"})
        resp = client.post("/api/admin/waitlist/1/approve", headers=_auth(admin_token))
        assert resp.json() == {"id": 1, "status": "approved"}
        again = client.post("/api/admin/waitlist/1/approve", headers=_auth(admin_token))
        assert again.status_code == 409
        assert client.post("/api/admin/waitlist/9/approve", headers=_auth(admin_token)).status_code == 404
