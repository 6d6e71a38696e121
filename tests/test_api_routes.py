"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Integration tests for the public, ledger and admin API routes using the
FastAPI TestClient against the seeded in-memory ledger.

These tests verify:
- Auth guards on ledger and admin endpoints
- Staking error → HTTP status mapping
- Token amounts leave the API as decimal strings
- Projected public reads after a sync pass
"""

from __future__ import annotations

import jwt
import pytest
from conftest import ALICE, BOB, make_account_token, sync_projection

from aureus.api.deps import JWT_ALGORITHM, JWT_SECRET


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def alice():
    return _auth(make_account_token(ALICE))


@pytest.fixture
def bob():
    return _auth(make_account_token(BOB))


@pytest.fixture
def admin(admin_token):
    return _auth(admin_token)


def _stake(client, headers, amount=1_000_000_000, package_id=0):
    return client.post(
        "/api/ledger/stake", json={"amount": amount, "package_id": package_id}, headers=headers,
    )


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ===========================================================================
# Auth guards
# ===========================================================================
class TestAuthGuards:
    ADMIN_GET_ENDPOINTS = [
        "/api/admin/packages",
        "/api/admin/settings",
        "/api/admin/audit",
        "/api/admin/sync",
    ]

    @pytest.mark.parametrize("endpoint", ADMIN_GET_ENDPOINTS)
    def test_admin_rejects_no_auth(self, client, endpoint):
        assert client.get(endpoint).status_code == 401

    @pytest.mark.parametrize("endpoint", ADMIN_GET_ENDPOINTS)
    def test_admin_rejects_invalid_token(self, client, endpoint):
        resp = client.get(endpoint, headers={"Authorization": "Bearer invalid"})
        assert resp.status_code == 401

    @pytest.mark.parametrize("endpoint", ADMIN_GET_ENDPOINTS)
    def test_admin_rejects_non_admin(self, client, alice, endpoint):
        assert client.get(endpoint, headers=alice).status_code == 403

    def test_stake_requires_token(self, client):
        resp = client.post("/api/ledger/stake", json={"amount": 10**9, "package_id": 0})
        assert resp.status_code == 401

    def test_subject_must_be_an_address(self, client):
        token = jwt.encode({"sub": "12345"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        assert _stake(client, _auth(token)).status_code == 401

    def test_admin_pause_requires_admin(self, client, alice):
        assert client.post("/api/admin/pause", headers=alice).status_code == 403


# ===========================================================================
# Ledger writes
# ===========================================================================
class TestLedgerRoutes:
    def test_stake(self, client, alice):
        resp = _stake(client, alice)
        assert resp.status_code == 201
        body = resp.json()
        assert body["position_id"] == 0
        assert body["principal_paid"] == "0"
        assert body["tx_hash"].startswith("0x")
        event = body["events"][0]
        assert event["eventName"] == "Staked"
        assert event["eventData"]["amount"] == "1000000000"
        assert event["eventData"]["user"] == ALICE

    def test_stake_accepts_decimal_string(self, client, alice):
        resp = _stake(client, alice, amount="2000000000")
        assert resp.status_code == 201
        pos = client.get("/api/ledger/positions/0").json()
        assert pos["principal"] == "2000000000"

    def test_invalid_amount_is_400(self, client, alice):
        resp = _stake(client, alice, amount=5)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_amount"

    def test_unknown_package_is_400(self, client, alice):
        resp = _stake(client, alice, package_id=99)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_package"

    def test_missing_position_is_404(self, client, alice):
        resp = client.get("/api/ledger/positions/42")
        assert resp.status_code == 404
        assert resp.json() == {"error": "position_not_found", "detail": "Position 42 not found"}

    def test_locked_withdraw_is_409(self, client, alice):
        _stake(client, alice)
        resp = client.post("/api/ledger/positions/0/withdraw", headers=alice)
        assert resp.status_code == 409
        assert resp.json()["error"] == "still_locked"

    def test_other_owner_gets_404(self, client, alice, bob):
        _stake(client, alice)
        resp = client.post("/api/ledger/positions/0/withdraw", headers=bob)
        assert resp.status_code == 404

    def test_emergency_requires_pause(self, client, alice, admin):
        _stake(client, alice)
        resp = client.post("/api/ledger/positions/0/emergency-withdraw", headers=alice)
        assert resp.status_code == 409
        assert resp.json()["error"] == "contract_not_paused"

        assert client.post("/api/admin/pause", json={"reason": "drill"}, headers=admin).status_code == 200
        resp = client.post("/api/ledger/positions/0/emergency-withdraw", headers=alice)
        assert resp.status_code == 200
        body = resp.json()
        assert body["principal_paid"] == "1000000000"
        assert body["events"][0]["eventName"] == "EmergencyWithdrawn"

    def test_paused_stake_is_409(self, client, alice, admin):
        client.post("/api/admin/pause", headers=admin)
        resp = _stake(client, alice)
        assert resp.status_code == 409
        assert resp.json()["error"] == "contract_paused"

    def test_my_positions_and_claimable(self, client, alice, bob):
        _stake(client, alice)
        _stake(client, bob)
        mine = client.get("/api/ledger/positions", headers=alice).json()["positions"]
        assert [p["position_id"] for p in mine] == [0]
        assert isinstance(mine[0]["reward_total"], str)

        claimable = client.get("/api/ledger/positions/0/claimable").json()
        assert claimable["position_id"] == 0
        assert claimable["claimable"].isdigit()

    def test_state_amounts_are_strings(self, client):
        state = client.get("/api/ledger/state").json()
        assert state["reward_balance"] == str(10**30)
        assert state["total_locked"] == "0"
        assert state["block_height"] == 2
        assert state["paused"] is False


# ===========================================================================
# Admin routes
# ===========================================================================
class TestAdminRoutes:
    def test_update_package(self, client, admin):
        resp = client.put(
            "/api/admin/packages/1",
            json={"lock_period_seconds": 86_400 * 30, "apy_basis_points": 1500, "enabled": True},
            headers=admin,
        )
        assert resp.status_code == 200
        assert resp.json()["events"][0]["eventName"] == "PackageUpdated"
        packages = client.get("/api/admin/packages", headers=admin).json()["packages"]
        assert packages[1]["apy_basis_points"] == 1500

    def test_out_of_bounds_package_is_400(self, client, admin):
        resp = client.put(
            "/api/admin/packages/1",
            json={"lock_period_seconds": 60, "apy_basis_points": 1500},
            headers=admin,
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_parameter"

    def test_patch_params(self, client, admin):
        resp = client.patch(
            "/api/admin/params",
            json={"min_stake_amount": 5000, "emergency_policy": "forfeit_all", "reason": "tune"},
            headers=admin,
        )
        assert resp.status_code == 200
        state = resp.json()
        assert state["min_stake_amount"] == "5000"
        assert state["emergency_policy"] == "forfeit_all"

    def test_bad_policy_is_422(self, client, admin):
        resp = client.patch("/api/admin/params", json={"emergency_policy": "yolo"}, headers=admin)
        assert resp.status_code == 422

    def test_pause_twice_is_409(self, client, admin):
        assert client.post("/api/admin/pause", headers=admin).status_code == 200
        resp = client.post("/api/admin/pause", headers=admin)
        assert resp.status_code == 409
        assert client.post("/api/admin/unpause", headers=admin).status_code == 200

    def test_reward_liquidity(self, client, admin):
        assert client.post(
            "/api/admin/rewards/fund", json={"amount": 0}, headers=admin,
        ).status_code == 422
        assert client.post(
            "/api/admin/rewards/fund", json={"amount": 500}, headers=admin,
        ).status_code == 200
        resp = client.post(
            "/api/admin/rewards/withdraw-excess", json={"amount": 10**31}, headers=admin,
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "exceeds_excess"

    def test_settings_round_trip_is_audited(self, client, admin):
        resp = client.put(
            "/api/admin/settings",
            json=[{"key": "sync.confirmations", "value": 3}],
            headers=admin,
        )
        assert resp.json() == {"updated": 1}
        settings = client.get("/api/admin/settings", headers=admin).json()["settings"]
        assert {s["key"]: s["value"] for s in settings}["sync.confirmations"] == 3

        audit = client.get("/api/admin/audit?target_table=settings", headers=admin).json()
        assert audit["total"] == 1
        assert audit["entries"][0]["before"]["value"] == 12
        assert audit["entries"][0]["after"]["value"] == 3

    def test_sync_run_and_reconcile(self, client, alice, admin):
        # Seeded settings (12 confirmations) apply only to node sources.
        _stake(client, alice)
        run = client.post("/api/admin/sync/run", headers=admin).json()
        assert run["status"] == "COMPLETED"
        assert run["last_processed_block"] == 3
        assert run["events_failed"] == 0

        status = client.get("/api/admin/sync", headers=admin).json()["sync"]
        assert status["last_processed_block"] == 3

        report = client.post("/api/admin/reconcile", headers=admin).json()
        assert report["positions"]["checked"] == 1
        assert report["positions"]["corrected"] == 0
        assert report["solvency"]["solvent"] is True
        assert report["solvency"]["total_locked"] == "1000000000"


# ===========================================================================
# Public reads (projection)
# ===========================================================================
class TestPublicRoutes:
    def test_sync_404_before_first_pass(self, client):
        assert client.get("/api/sync").status_code == 404

    def test_projected_reads(self, client, alice, bob, funded_engine):
        _stake(client, alice)
        _stake(client, bob, amount=3_000_000_000, package_id=1)
        sync_projection(funded_engine)

        packages = client.get("/api/packages").json()["packages"]
        assert len(packages) == 4

        listed = client.get(f"/api/positions?owner={ALICE}").json()
        assert listed["total"] == 1
        pos = listed["positions"][0]
        assert pos["principal"] == "1000000000"
        assert isinstance(pos["claimable_reward"], str)

        one = client.get(f"/api/positions/{pos['id']}").json()
        assert one["position_key"] == f"{ALICE}:0:0"

        summary = client.get(f"/api/accounts/{ALICE}/summary").json()
        assert summary["total_staked"] == "1000000000"
        assert summary["active_positions"] == 1

        txs = client.get(f"/api/accounts/{BOB}/transactions").json()
        assert [t["event_name"] for t in txs["transactions"]] == ["Staked"]
        assert txs["transactions"][0]["amount"] == "3000000000"

        stats = client.get("/api/stats").json()
        assert stats["unique_stakers"] == 2
        assert stats["total_locked"] == "4000000000"

        sync = client.get("/api/sync").json()
        assert sync["status"] == "COMPLETED"

    def test_bad_status_filter_is_422(self, client):
        assert client.get("/api/positions?status=open").status_code == 422

    def test_bad_owner_is_400(self, client):
        resp = client.get("/api/accounts/not-an-address/summary")
        assert resp.status_code == 400

    def test_missing_projected_position(self, client):
        assert client.get("/api/positions/12345").status_code == 404

    def test_leaderboard_and_account_history(self, client, alice, bob, funded_engine):
        _stake(client, alice)
        _stake(client, bob, amount=3_000_000_000, package_id=1)
        sync_projection(funded_engine)

        board = client.get("/api/leaderboard?limit=1").json()
        assert board["total"] == 2
        assert board["leaderboard"] == [
            {"rank": 1, "owner": BOB, "total_staked": "3000000000", "stakes_count": 1},
        ]

        summary = client.get(f"/api/accounts/{ALICE}/transactions/summary").json()
        assert summary["total_staked"] == "1000000000"
        assert summary["total_withdrawn"] == "0"
        assert summary["transaction_count"] == 1

        rewards = client.get(f"/api/accounts/{ALICE}/rewards").json()
        assert rewards["total"] == 0
        assert rewards["rewards"] == []

    def test_transaction_lookup(self, client, alice, funded_engine):
        tx_hash = _stake(client, alice).json()["tx_hash"]
        sync_projection(funded_engine)

        tx = client.get(f"/api/transactions/{tx_hash}").json()
        assert tx["tx_hash"] == tx_hash
        assert [e["event_name"] for e in tx["events"]] == ["Staked"]

        assert client.get("/api/transactions/0x" + "00" * 32).status_code == 404
        resp = client.get("/api/transactions/0xnothex")
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_parameter"

    def test_event_listings(self, client, alice, funded_engine):
        _stake(client, alice)
        sync_projection(funded_engine)

        recent = client.get("/api/events/recent?limit=2").json()["events"]
        assert [e["event_name"] for e in recent] == ["Staked", "RewardFunded"]
        assert recent[0]["event_data"]["amount"] == "1000000000"

        assert client.get("/api/events/unprocessed").json() == {
            "total": 0, "failed": 0, "events": [],
        }
