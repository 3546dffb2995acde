"""
HTTP tests through the FastAPI app with an in-process transport.
"""
import pytest
from httpx import ASGITransport, AsyncClient

from storefront.core.errors import FulfillmentError
from storefront.models.account import AccountRole
from storefront.services.auth_service import create_token
from tests.fakes import FakeFulfillment

GENERATE_BODY = {
    "kind": "MAIN_IMAGE",
    "product_name": "Ceramic Mug",
    "product_type": "mug",
    "images": ["https://cdn.example.com/in/mug.png"],
}


@pytest.fixture
def fake_client():
    return FakeFulfillment(outputs=["https://cdn.example.com/out/0.png", "https://cdn.example.com/out/1.png"])


@pytest.fixture
def app(engine, session_factory, fake_client):
    from storefront.main import create_app

    return create_app(engine=engine, session_factory=session_factory, client=fake_client, background=False)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def user_headers(client):
    resp = await client.post("/api/auth/register", json={
        "email": "shopper@example.com", "password": "secret123", "name": "Shopper",
    })
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['token']}"}


@pytest.fixture
async def admin_headers(make_account):
    admin_id = await make_account(role=AccountRole.ADMIN, email="admin@example.com")
    return {"Authorization": f"Bearer {create_token(admin_id, 'admin@example.com')}"}


class TestAuthAPI:

    @pytest.mark.asyncio
    async def test_register_login_me(self, client, user_headers):
        login = await client.post("/api/auth/login", json={"email": "shopper@example.com", "password": "secret123"})
        assert login.status_code == 200
        assert login.json()["user"]["role"] == AccountRole.USER

        me = await client.get("/api/auth/me", headers=user_headers)
        assert me.status_code == 200
        assert me.json()["email"] == "shopper@example.com"

    @pytest.mark.asyncio
    async def test_bad_password(self, client, user_headers):
        resp = await client.post("/api/auth/login", json={"email": "shopper@example.com", "password": "wrong-one"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_duplicate_registration(self, client, user_headers):
        resp = await client.post("/api/auth/register", json={"email": "shopper@example.com", "password": "secret123"})

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "CONFLICT"

    @pytest.mark.asyncio
    async def test_missing_or_bad_token(self, client):
        assert (await client.get("/api/credits/balance")).status_code == 401
        bad = await client.get("/api/credits/balance", headers={"Authorization": "Bearer not-a-jwt"})
        assert bad.status_code == 401


class TestCreditsAPI:

    @pytest.mark.asyncio
    async def test_balance_after_registration(self, client, user_headers):
        resp = await client.get("/api/credits/balance", headers=user_headers)

        assert resp.json() == {"paid": 0, "bonus": 600, "total": 600}

    @pytest.mark.asyncio
    async def test_history_lists_registration_bonus(self, client, user_headers):
        resp = await client.get("/api/credits/history", headers=user_headers)
        body = resp.json()

        assert body["total"] == 1
        assert body["items"][0]["kind"] == "SYSTEM_REWARD"
        assert body["items"][0]["amount"] == 600

    @pytest.mark.asyncio
    async def test_redeem_and_reuse(self, client, user_headers, admin_headers):
        minted = await client.post("/api/admin/redemption-codes", headers=admin_headers,
                                   json={"count": 1, "paid": 1000, "bonus": 0})
        code = minted.json()["codes"][0]

        first = await client.post("/api/credits/redeem", headers=user_headers, json={"code": code.lower()})
        again = await client.post("/api/credits/redeem", headers=user_headers, json={"code": code})

        assert first.status_code == 200
        assert first.json()["balance"] == {"paid": 1000, "bonus": 600, "total": 1600}
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_checkin_once(self, client, user_headers):
        first = await client.post("/api/credits/checkin", headers=user_headers)
        second = await client.post("/api/credits/checkin", headers=user_headers)
        status = await client.get("/api/credits/checkin", headers=user_headers)

        assert first.status_code == 200
        assert first.json()["balance"]["bonus"] == 800
        assert second.status_code == 409
        assert status.json()["can_check_in"] is False

    @pytest.mark.asyncio
    async def test_public_costs(self, client):
        resp = await client.get("/api/config/costs")

        assert resp.status_code == 200
        assert resp.json()["costs"]["MAIN_IMAGE_STANDARD_COST"] == 199


class TestGenerateAPI:

    @pytest.mark.asyncio
    async def test_generate_edit_unlock(self, client, user_headers):
        gen = await client.post("/api/generate", headers=user_headers, json=GENERATE_BODY)
        assert gen.status_code == 200
        job = gen.json()["job"]
        assert job["status"] == "COMPLETED"
        assert gen.json()["balance"]["bonus"] == 401

        edit = await client.post("/api/generate/edit", headers=user_headers, json={
            "job_id": job["id"], "image_index": 1, "prompt": "make it blue",
        })
        assert edit.status_code == 200
        assert edit.json()["new_image_url"] == "https://cdn.example.com/edited.png"
        assert edit.json()["balance"]["bonus"] == 202

        unlock = await client.post(f"/api/generate/{job['id']}/unlock-watermark", headers=user_headers)
        assert unlock.status_code == 200
        assert unlock.json()["charged"] == 100

        fetched = await client.get(f"/api/generate/{job['id']}", headers=user_headers)
        assert fetched.json()["outputs"][1] == "https://cdn.example.com/edited.png"
        assert fetched.json()["watermark_unlocked"] is True

        history = await client.get("/api/history", headers=user_headers)
        assert history.json()["page"]["total"] == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_402(self, client, user_headers, fake_client):
        for _ in range(3):
            assert (await client.post("/api/generate", headers=user_headers, json=GENERATE_BODY)).status_code == 200

        resp = await client.post("/api/generate", headers=user_headers, json=GENERATE_BODY)

        assert resp.status_code == 402
        assert resp.json()["success"] is False
        assert resp.json()["error"]["code"] == "INSUFFICIENT_FUNDS"
        assert resp.json()["error"]["context"] == {"required": 199, "available": 3}
        assert len(fake_client.generate_calls) == 3

    @pytest.mark.asyncio
    async def test_fulfillment_failure_is_502_and_refunded(self, client, user_headers, fake_client):
        fake_client.error = FulfillmentError("Generation service returned HTTP 500")

        resp = await client.post("/api/generate", headers=user_headers, json=GENERATE_BODY)
        balance = await client.get("/api/credits/balance", headers=user_headers)

        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "FULFILLMENT_FAILED"
        assert balance.json()["total"] == 600

    @pytest.mark.asyncio
    async def test_request_validation(self, client, user_headers):
        resp = await client.post("/api/generate", headers=user_headers, json={**GENERATE_BODY, "images": []})
        assert resp.status_code == 422

        resp = await client.post("/api/generate", headers=user_headers, json={**GENERATE_BODY, "kind": "POSTER"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_other_users_job_is_forbidden(self, client, user_headers, make_account):
        gen = await client.post("/api/generate", headers=user_headers, json=GENERATE_BODY)
        other_id = await make_account(email="other@example.com")
        other_headers = {"Authorization": f"Bearer {create_token(other_id, 'other@example.com')}"}

        resp = await client.get(f"/api/generate/{gen.json()['job']['id']}", headers=other_headers)

        assert resp.status_code == 403


class TestWatermarkAPI:

    @pytest.mark.asyncio
    async def test_submit_and_status(self, client, user_headers):
        resp = await client.post("/api/watermark/submit", headers=user_headers, json={
            "urls": ["https://cdn.example.com/raw/a.png", "https://cdn.example.com/raw/b.png"],
        })
        assert resp.status_code == 200
        assert resp.json()["cost"] == 100
        assert resp.json()["balance"]["bonus"] == 500

        status = await client.get("/api/watermark/queue-status", headers=user_headers)
        assert status.json() == {"pending_count": 2, "processing_count": 0, "queue_position": 0, "total_waiting": 2}

        history = await client.get("/api/watermark/history", headers=user_headers)
        assert [t["status"] for t in history.json()] == ["PENDING", "PENDING"]


class TestAppealsAPI:

    @pytest.mark.asyncio
    async def test_appeal_flow(self, client, user_headers, admin_headers):
        job = (await client.post("/api/generate", headers=user_headers, json=GENERATE_BODY)).json()["job"]

        filed = await client.post("/api/appeals", headers=user_headers, json={"job_id": job["id"], "reason": "Blurry"})
        assert filed.status_code == 200
        assert filed.json()["refund_amount"] == 199

        assert (await client.get("/api/admin/appeals", headers=user_headers)).status_code == 403

        queue = await client.get("/api/admin/appeals?status=PENDING", headers=admin_headers)
        assert [a["id"] for a in queue.json()] == [filed.json()["id"]]

        resolved = await client.post(f"/api/admin/appeals/{filed.json()['id']}/resolve", headers=admin_headers,
                                     json={"action": "APPROVE"})
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "APPROVED"

        again = await client.post(f"/api/admin/appeals/{filed.json()['id']}/resolve", headers=admin_headers,
                                  json={"action": "APPROVE"})
        assert again.status_code == 409

        balance = await client.get("/api/credits/balance", headers=user_headers)
        assert balance.json() == {"paid": 199, "bonus": 401, "total": 600}


class TestAdminPricingAPI:

    @pytest.mark.asyncio
    async def test_price_update_applies_to_next_job(self, client, user_headers, admin_headers):
        update = await client.put("/api/admin/config/costs", headers=admin_headers,
                                  json={"key": "MAIN_IMAGE_STANDARD_COST", "value": 150})
        assert update.status_code == 200

        gen = await client.post("/api/generate", headers=user_headers, json=GENERATE_BODY)
        assert gen.json()["job"]["cost"] == 150

        costs = await client.get("/api/admin/config/costs", headers=admin_headers)
        by_key = {c["key"]: c["value"] for c in costs.json()}
        assert by_key["MAIN_IMAGE_STANDARD_COST"] == "150"

    @pytest.mark.asyncio
    async def test_invalid_price_is_400(self, client, admin_headers):
        resp = await client.put("/api/admin/config/costs", headers=admin_headers,
                                json={"key": "IMAGE_EDIT_COST", "value": "12.5"})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
