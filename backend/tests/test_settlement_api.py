"""
Settlement API Tests
Testing: route wiring, role guard, error mapping, JWT decoding, optimistic
investor saves
"""
from datetime import datetime, timedelta

import jwt
import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError

from auth import ALGORITHM, SECRET_KEY, decode_access_token, get_current_user
from conftest import make_contract, make_full_payment, make_installment_payment, make_user, run
from ledger_core.ledger_store import ConcurrentModificationError
from settlement_routes import create_settlement_routes


@pytest.fixture
def api(client, db, engine, stamping_trigger, commission_calculator):
    app = FastAPI()
    app.include_router(create_settlement_routes(
        client, db, engine, stamping_trigger, commission_calculator
    ))
    app.dependency_overrides[get_current_user] = lambda: {"user_id": "finance-1", "role": "finance"}
    return app


class TestSettleEndpoint:
    """POST /api/settlement/payments/{order_id}/settle"""

    def test_settle_full_payment(self, api, db):
        owner = make_user(db)
        make_contract(db, "CTR-1", owner)
        make_full_payment(db, "INV-1", owner, chain_id="CTR-1")

        response = TestClient(api).post("/api/settlement/payments/INV-1/settle")

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["order_id"] == "INV-1"
        assert data["asset_created"] is True
        assert data["investor_updated"] is True
        assert data["already_processed"] is False

    def test_repeat_settle_reports_already_processed(self, api, db):
        owner = make_user(db)
        make_contract(db, "CHAIN-1", owner)
        make_installment_payment(db, "CIC-1", owner, "CHAIN-1")
        http = TestClient(api)

        first = http.post("/api/settlement/payments/CIC-1/settle").json()
        second = http.post("/api/settlement/payments/CIC-1/settle").json()

        assert second["already_processed"] is True
        assert second["next_installment_created"] == first["next_installment_created"]

    def test_unknown_payment_404(self, api):
        response = TestClient(api).post("/api/settlement/payments/NOPE/settle")
        assert response.status_code == 404

    def test_unsupported_kind_400(self, api, db):
        owner = make_user(db)
        make_full_payment(db, "TOPUP-1", owner, kind="topup")

        response = TestClient(api).post("/api/settlement/payments/TOPUP-1/settle")
        assert response.status_code == 400

    def test_storage_failure_500(self, api, db):
        owner = make_user(db)
        make_full_payment(db, "INV-2", owner)
        db.payments.failures["update_one"] = PyMongoError("connection reset")

        response = TestClient(api).post("/api/settlement/payments/INV-2/settle")

        assert response.status_code == 500
        assert run(db.payments.find_one({"order_id": "INV-2"}))["processed"] is False

    def test_concurrent_investor_write_409(self, api, db):
        owner = make_user(db)
        make_full_payment(db, "INV-3", owner)
        db.investors.failures["insert_one"] = ConcurrentModificationError("investors", str(owner["_id"]), 0)

        response = TestClient(api).post("/api/settlement/payments/INV-3/settle")
        assert response.status_code == 409

    def test_non_finance_role_forbidden(self, api, db):
        api.dependency_overrides[get_current_user] = lambda: {"user_id": "u1", "role": "investor"}

        response = TestClient(api).post("/api/settlement/payments/INV-1/settle")
        assert response.status_code == 403


class TestStampAndBackfillEndpoints:
    """Stamp re-trigger and commission backfill"""

    def test_stamp_after_approval(self, api, db, engine):
        owner = make_user(db)
        make_contract(db, "CTR-9", owner, approved=False)
        make_full_payment(db, "INV-9", owner, chain_id="CTR-9")
        run(engine.settle_in_transaction("INV-9"))
        run(db.contracts.update_one(
            {"contract_id": "CTR-9"},
            {"$set": {"admin_approval_status": "approved", "status": "approved"}}
        ))

        response = TestClient(api).post("/api/settlement/contracts/CTR-9/stamp")

        assert response.status_code == 200
        data = response.json()
        assert data["stamped"] is True
        assert data["stamp_ref"] == "https://stamp.example/contract-CTR-9.pdf"

    def test_stamp_unknown_contract_404(self, api):
        response = TestClient(api).post("/api/settlement/contracts/NOPE/stamp")
        assert response.status_code == 404

    def test_backfill(self, api, db):
        owner = make_user(db)
        agent = make_user(db, "Agus Setiawan", role="marketing", referral_code="AGT01")
        make_full_payment(db, "INV-10", owner, referral_code="AGT01", processed=True)

        response = TestClient(api).post(f"/api/settlement/agents/{agent['_id']}/commissions/backfill")

        assert response.status_code == 200
        data = response.json()
        assert data["commissions_created"] == 1
        assert data["total_commission"] == 200000

    def test_backfill_unknown_agent_404(self, api):
        response = TestClient(api).post("/api/settlement/agents/000000000000000000000000/commissions/backfill")
        assert response.status_code == 404


class TestAccessToken:
    """JWT decoding"""

    def token(self, **claims):
        payload = {"user_id": "u1", "role": "finance", "type": "access",
                   "exp": datetime.utcnow() + timedelta(minutes=5)}
        payload.update(claims)
        return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)

    def test_valid_token(self):
        assert decode_access_token(self.token())["role"] == "finance"

    def test_expired_token(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(self.token(exp=datetime.utcnow() - timedelta(minutes=1)))
        assert exc_info.value.status_code == 401

    def test_refresh_token_rejected(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(self.token(type="refresh"))
        assert exc_info.value.status_code == 401

    def test_garbage_token(self):
        with pytest.raises(HTTPException):
            decode_access_token("not-a-token")


class TestInvestorVersioning:
    """Optimistic concurrency on the investor aggregate"""

    def test_stale_write_rejected(self, db, store):
        investor = run(store.save_investor({"user_id": "u1", "name": "Siti", "investments": []}))
        assert investor["version"] == 1

        stale = run(store.find_investor("u1"))
        fresh = run(store.find_investor("u1"))
        run(store.save_investor(fresh))

        with pytest.raises(ConcurrentModificationError):
            run(store.save_investor(stale))
        assert run(store.find_investor("u1"))["version"] == 2

    def test_duplicate_new_investor_rejected(self, store):
        run(store.save_investor({"user_id": "u2", "name": "Budi", "investments": []}))

        with pytest.raises(ConcurrentModificationError):
            run(store.save_investor({"user_id": "u2", "name": "Budi", "investments": []}))
