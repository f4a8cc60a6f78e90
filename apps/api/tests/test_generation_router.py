import asyncio

import pytest
from sqlalchemy.future import select

from models.generation_attempt import ATTEMPT_FAILED, ATTEMPT_SUCCEEDED, GenerationAttempt
from models.user import User
from services.block_list import block_account, block_identifiers
from services.credits import get_credit_balance, grant_credits
from services.image_generation import ImageGenerationError, ImageGenerator
from services.session_token import create_session_token


MEMBER_ID = "gen-member"
MEMBER_HEADER = {"Authorization": f"Bearer {create_session_token(MEMBER_ID, 'member@example.com')['token']}"}
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


async def _generate(client, *, headers=None, files=None, **form):
    data = {"prompt": "A watercolor portrait", **form}
    return await client.post("/generation/generate", data=data, files=files, headers=headers or {})


async def _attempts(session_maker):
    async with session_maker() as session:
        return (await session.execute(select(GenerationAttempt))).scalars().all()


@pytest.mark.asyncio
async def test_anonymous_generation_until_limit(api_client, session_maker, fake_generator):
    first = await _generate(api_client)
    second = await _generate(api_client)
    third = await _generate(api_client)

    assert first.status_code == 200
    assert first.json()["remaining"] == 1
    assert first.json()["url"].startswith("data:image/png;base64,")
    assert second.json()["remaining"] == 0
    assert third.status_code == 429
    assert third.json() == {
        "message": third.json()["message"],
        "remaining": 0,
        "is_authenticated": False,
    }
    assert len(fake_generator.calls) == 2
    assert sorted(row.status for row in await _attempts(session_maker)) == [ATTEMPT_SUCCEEDED, ATTEMPT_SUCCEEDED]


@pytest.mark.asyncio
async def test_usage_endpoint_reports_entitlement(api_client):
    anonymous = await api_client.get("/generation/usage")
    assert anonymous.status_code == 200
    assert anonymous.json()["remaining"] == 2
    assert anonymous.json()["is_authenticated"] is False
    assert anonymous.json()["unlimited"] is False

    member = await api_client.get("/generation/usage", headers=MEMBER_HEADER)
    assert member.json()["remaining"] == 3
    assert member.json()["is_authenticated"] is True


@pytest.mark.asyncio
async def test_invalid_token_is_rejected_not_downgraded(api_client):
    response = await api_client.get("/generation/usage", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_generator_failure_marks_attempt_failed_and_refunds(api_client, session_maker, fake_generator):
    async with session_maker() as session:
        user = User(id=MEMBER_ID, email="member@example.com")
        session.add(user)
        await session.commit()
        await grant_credits(MEMBER_ID, session, half_units=1)

    fake_generator.error = ImageGenerationError("provider down")
    response = await _generate(
        api_client,
        headers=MEMBER_HEADER,
        files={"image1": ("face.png", PNG_BYTES, "image/png")},
        cost_class="half",
        mode="image-editing",
    )
    assert response.status_code == 500

    rows = await _attempts(session_maker)
    assert [row.status for row in rows] == [ATTEMPT_FAILED]
    assert rows[0].error_message == "provider down"
    async with session_maker() as session:
        assert await get_credit_balance(MEMBER_ID, session) == 1

    status = await api_client.get("/generation/usage", headers=MEMBER_HEADER)
    assert status.json()["free_remaining"] == 3


@pytest.mark.asyncio
async def test_cancelled_generation_marks_attempt_failed(api_client, session_maker, fake_generator):
    fake_generator.error = asyncio.CancelledError()

    # The transport may surface the disconnect as an exception; the ledger is what matters.
    try:
        await _generate(api_client)
    except asyncio.CancelledError:
        pass

    rows = await _attempts(session_maker)
    assert [row.status for row in rows] == [ATTEMPT_FAILED]

    usage = await api_client.get("/generation/usage")
    assert usage.json()["remaining"] == 2


@pytest.mark.asyncio
async def test_blocked_account_gets_plain_limit_response(api_client, session_maker, fake_generator):
    async with session_maker() as session:
        session.add(User(id=MEMBER_ID, email="member@example.com"))
        await session.commit()
        await block_account(user_id=MEMBER_ID, admin_id="admin-1", db=session)

    response = await _generate(api_client, headers=MEMBER_HEADER)
    assert response.status_code == 429
    assert response.json()["remaining"] == 0
    assert response.json()["is_authenticated"] is True
    assert fake_generator.calls == []
    assert await _attempts(session_maker) == []

    status = await api_client.get("/generation/block-status", headers=MEMBER_HEADER)
    assert status.json() == {"blocked": True}


@pytest.mark.asyncio
async def test_blocked_session_id_applies_to_anonymous_requesters(api_client, session_maker):
    async with session_maker() as session:
        await block_identifiers(admin_id="admin-1", db=session, session_id="sess-bad")

    blocked = await _generate(api_client, headers={"X-Client-Session": "sess-bad"})
    assert blocked.status_code == 429
    allowed = await _generate(api_client, headers={"X-Client-Session": "sess-good"})
    assert allowed.status_code == 200


@pytest.mark.asyncio
async def test_input_validation(api_client, fake_generator):
    too_long = await _generate(api_client, prompt="x" * 5001)
    assert too_long.status_code == 400

    bad_type = await _generate(
        api_client,
        files={"image1": ("notes.txt", b"hello", "text/plain")},
        mode="image-editing",
    )
    assert bad_type.status_code == 400

    editing_without_image = await _generate(api_client, mode="image-editing")
    assert editing_without_image.status_code == 400

    assert fake_generator.calls == []


def test_image_generator_requires_generate():
    class Incomplete(ImageGenerator):
        pass

    with pytest.raises(TypeError):
        Incomplete()
