import pytest

from models.generation_attempt import ATTEMPT_FAILED, ATTEMPT_SUCCEEDED, GenerationAttempt
from models.pending_payment import PAYMENT_SUCCESS, PendingPayment
from models.user import User
from services.admin import upsert_admin
from services.crypto import hash_password, verify_password
from services.session_token import create_session_token


ADMIN_PASSWORD = "correct horse battery staple"


async def _login(client, session_maker):
    async with session_maker() as session:
        await upsert_admin("root", ADMIN_PASSWORD, session)
    response = await client.post("/admin/login", json={"username": "root", "password": ADMIN_PASSWORD})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


def test_password_hash_round_trip():
    stored = hash_password("s3cret-value")
    assert stored.startswith("pbkdf2_sha256$")
    assert verify_password("s3cret-value", stored)
    assert not verify_password("wrong", stored)
    assert not verify_password("s3cret-value", "not-a-hash")


@pytest.mark.asyncio
async def test_login_sets_admin_cookie(api_client, session_maker):
    async with session_maker() as session:
        await upsert_admin("root", ADMIN_PASSWORD, session)

    bad = await api_client.post("/admin/login", json={"username": "root", "password": "nope"})
    assert bad.status_code == 401

    response = await api_client.post("/admin/login", json={"username": "root", "password": ADMIN_PASSWORD})
    assert response.status_code == 200
    assert "admin_session" in response.cookies

    api_client.cookies.set("admin_session", response.cookies["admin_session"])
    stats = await api_client.get("/admin/stats")
    assert stats.status_code == 200


@pytest.mark.asyncio
async def test_admin_routes_reject_user_sessions(api_client):
    user_token = create_session_token("regular-user", "user@example.com")["token"]
    response = await api_client.get("/admin/stats", headers={"Authorization": f"Bearer {user_token}"})
    assert response.status_code == 401

    anonymous = await api_client.get("/admin/users")
    assert anonymous.status_code == 401


@pytest.mark.asyncio
async def test_block_unblock_flow(api_client, session_maker):
    headers = await _login(api_client, session_maker)
    async with session_maker() as session:
        session.add(User(id="member-7", email="member7@example.com"))
        await session.commit()

    blocked = await api_client.post("/admin/users/member-7/block", json={"reason": "spam"}, headers=headers)
    assert blocked.status_code == 200
    assert blocked.json()["block"]["reason"] == "spam"

    again = await api_client.post("/admin/users/member-7/block", headers=headers)
    assert again.status_code == 400

    missing = await api_client.post("/admin/users/ghost/block", headers=headers)
    assert missing.status_code == 404

    users = await api_client.get("/admin/users", headers=headers)
    assert users.json()["users"][0]["is_blocked"] is True

    unblocked = await api_client.post("/admin/users/member-7/unblock", headers=headers)
    assert unblocked.status_code == 200
    assert unblocked.json()["deactivated"] == 1

    not_blocked = await api_client.post("/admin/users/member-7/unblock", headers=headers)
    assert not_blocked.status_code == 404


@pytest.mark.asyncio
async def test_block_by_identifier_requires_one_identifier(api_client, session_maker):
    headers = await _login(api_client, session_maker)

    empty = await api_client.post("/admin/blocks", json={}, headers=headers)
    assert empty.status_code == 422

    created = await api_client.post("/admin/blocks", json={"session_id": "sess-abc"}, headers=headers)
    assert created.status_code == 200

    listed = await api_client.get("/admin/blocks", headers=headers)
    assert [entry["session_id"] for entry in listed.json()["blocks"]] == ["sess-abc"]


@pytest.mark.asyncio
async def test_users_and_stats_aggregate_ledger(api_client, session_maker):
    headers = await _login(api_client, session_maker)
    async with session_maker() as session:
        session.add(User(id="member-8", email="member8@example.com"))
        session.add_all(
            [
                GenerationAttempt(user_id="member-8", status=ATTEMPT_SUCCEEDED, funding_pool="free"),
                GenerationAttempt(user_id="member-8", status=ATTEMPT_FAILED, funding_pool="free"),
                GenerationAttempt(network_address="192.0.2.1", status=ATTEMPT_SUCCEEDED, funding_pool="anonymous"),
                PendingPayment(
                    processor_reference="ref-paid",
                    user_id="member-8",
                    payer_email="member8@example.com",
                    amount=500,
                    currency="KES",
                    half_units=10,
                    status=PAYMENT_SUCCESS,
                ),
            ]
        )
        await session.commit()

    users = await api_client.get("/admin/users", headers=headers)
    assert users.status_code == 200
    row = users.json()["users"][0]
    assert row["id"] == "member-8"
    assert row["generation_count"] == 2
    assert row["paid_credits"] == 0
    assert users.json()["pagination"]["total"] == 1

    stats = await api_client.get("/admin/stats", headers=headers)
    payload = stats.json()
    assert payload["total_generations"] == 3
    assert payload["recent_generations"] == 3
    assert payload["generations_by_status"] == {ATTEMPT_SUCCEEDED: 2, ATTEMPT_FAILED: 1}
    assert payload["revenue"] == [{"currency": "KES", "payments": 1, "amount": 500, "display_amount": "KES 5.00"}]
