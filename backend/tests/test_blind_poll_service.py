"""
Blind-token poll service tests

Client side of the protocol is simulated with the same suite the server
uses: prepare, blind, request a blind signature, finalize, redeem.
"""

import secrets

import pytest
from sqlalchemy import select

from anonvote.crypto import blind_rsa
from anonvote.errors import (
    Conflict, Forbidden, InvalidState, NotFound, Unauthorized, ValidationError
)
from anonvote.models import ConsumedToken, PendingSignature, PollStatus

OPTIONS = [{"id": "yes", "label": "Yes"}, {"id": "no", "label": "No"}]


async def _open_poll(service, db, role_id="voters"):
    poll = await service.create_poll(db, "Adopt the proposal?", OPTIONS, role_id, "admin")
    return await service.update_poll(db, poll["id"], "admin", status=PollStatus.OPEN)


async def _obtain_token(service, db, user_id, poll_id):
    """Run the client half of issuance; returns redeem arguments"""
    token = f"poll-{poll_id}-{secrets.token_hex(16)}"
    prepared = service.suite.prepare(token.encode("utf-8"))
    blinding = service.suite.blind(service.public_key, prepared)
    blind_sig = await service.request_signature(
        db, user_id, poll_id, blind_rsa.to_base64(blinding.blinded_message)
    )
    signature = service.suite.finalize(
        service.public_key, prepared, blind_rsa.from_base64(blind_sig), blinding.inverse
    )
    return {
        "token": token,
        "signature": blind_rsa.to_base64(signature),
        "prepared_message": blind_rsa.to_base64(prepared),
    }


# ============================================================================
# Issuance and redemption
# ============================================================================

@pytest.mark.asyncio
async def test_issue_and_redeem(db_session, blind_service):
    """Two members vote; tallies appear once the poll closes"""
    poll = await _open_poll(blind_service, db_session)
    alice = await _obtain_token(blind_service, db_session, "alice", poll["id"])
    bob = await _obtain_token(blind_service, db_session, "bob", poll["id"])

    result = await blind_service.redeem_vote(db_session, poll_id=poll["id"], option_id="yes", **alice)
    assert result == {"success": True, "message": "Vote recorded"}
    await blind_service.redeem_vote(db_session, poll_id=poll["id"], option_id="yes", **bob)

    closed = await blind_service.update_poll(db_session, poll["id"], "admin", status=PollStatus.CLOSED)
    assert closed["results"] == {"yes": 2, "no": 0}
    assert closed["total_votes"] == 2


@pytest.mark.asyncio
async def test_blind_signature_is_not_stored(db_session, blind_service):
    poll = await _open_poll(blind_service, db_session)
    await _obtain_token(blind_service, db_session, "alice", poll["id"])

    rows = (await db_session.execute(select(PendingSignature))).scalars().all()
    assert len(rows) == 1
    assert rows[0].user_id == "alice"
    assert rows[0].signature == "issued"


@pytest.mark.asyncio
async def test_one_signature_per_member(db_session, blind_service):
    poll = await _open_poll(blind_service, db_session)
    await _obtain_token(blind_service, db_session, "alice", poll["id"])

    with pytest.raises(Conflict):
        await _obtain_token(blind_service, db_session, "alice", poll["id"])

    status = await blind_service.user_status(db_session, "alice", poll["id"])
    assert status == {"poll_id": poll["id"], "eligible": True, "token_claimed": True}


@pytest.mark.asyncio
async def test_request_signature_checks(db_session, blind_service):
    """Authentication, poll state and eligibility come before the blinded value"""
    poll = await _open_poll(blind_service, db_session)
    draft = await blind_service.create_poll(db_session, "Draft?", OPTIONS, "voters", "admin")

    with pytest.raises(Unauthorized):
        await blind_service.request_signature(db_session, None, poll["id"], "AAAA")
    with pytest.raises(NotFound):
        await blind_service.request_signature(db_session, "alice", 9999, "AAAA")
    with pytest.raises(InvalidState):
        await blind_service.request_signature(db_session, "alice", draft["id"], "AAAA")
    with pytest.raises(Forbidden):
        await blind_service.request_signature(db_session, "mallory", poll["id"], "AAAA")
    with pytest.raises(ValidationError):
        await blind_service.request_signature(db_session, "alice", poll["id"], "not base64!")
    with pytest.raises(ValidationError):
        await blind_service.request_signature(db_session, "alice", poll["id"], "AAAA")

    # Rejected requests leave no issuance record
    status = await blind_service.user_status(db_session, "alice", poll["id"])
    assert status["token_claimed"] is False


@pytest.mark.asyncio
async def test_double_redeem_rejected(db_session, blind_service):
    poll = await _open_poll(blind_service, db_session)
    alice = await _obtain_token(blind_service, db_session, "alice", poll["id"])
    await blind_service.redeem_vote(db_session, poll_id=poll["id"], option_id="yes", **alice)

    with pytest.raises(Forbidden):
        await blind_service.redeem_vote(db_session, poll_id=poll["id"], option_id="no", **alice)

    consumed = (await db_session.execute(select(ConsumedToken))).scalars().all()
    assert [row.token_hash for row in consumed] == [blind_rsa.hash_token(alice["token"])]

    closed = await blind_service.update_poll(db_session, poll["id"], "admin", status=PollStatus.CLOSED)
    assert closed["results"] == {"yes": 1, "no": 0}


@pytest.mark.asyncio
async def test_token_bound_to_poll(db_session, blind_service):
    first = await _open_poll(blind_service, db_session)
    second = await _open_poll(blind_service, db_session)
    alice = await _obtain_token(blind_service, db_session, "alice", first["id"])

    with pytest.raises(ValidationError, match="Token does not belong to this poll"):
        await blind_service.redeem_vote(db_session, poll_id=second["id"], option_id="yes", **alice)


@pytest.mark.asyncio
async def test_invalid_signature_rejected(db_session, blind_service):
    poll = await _open_poll(blind_service, db_session)
    alice = await _obtain_token(blind_service, db_session, "alice", poll["id"])

    raw = bytearray(blind_rsa.from_base64(alice["signature"]))
    raw[-1] ^= 0x01
    forged = dict(alice, signature=blind_rsa.to_base64(bytes(raw)))
    with pytest.raises(Unauthorized, match="Invalid signature"):
        await blind_service.redeem_vote(db_session, poll_id=poll["id"], option_id="yes", **forged)

    # A token the server never signed
    other = dict(alice, token=f"poll-{poll['id']}-forged")
    other["prepared_message"] = blind_rsa.to_base64(
        blind_service.suite.prepare(other["token"].encode("utf-8"))
    )
    with pytest.raises(Unauthorized):
        await blind_service.redeem_vote(db_session, poll_id=poll["id"], option_id="yes", **other)

    # The genuine token still works afterwards
    result = await blind_service.redeem_vote(db_session, poll_id=poll["id"], option_id="yes", **alice)
    assert result["success"] is True


@pytest.mark.asyncio
async def test_redeem_input_checks(db_session, blind_service):
    poll = await _open_poll(blind_service, db_session)
    alice = await _obtain_token(blind_service, db_session, "alice", poll["id"])

    with pytest.raises(ValidationError, match="Prepared message is required"):
        await blind_service.redeem_vote(
            db_session, alice["token"], alice["signature"], poll["id"], "yes"
        )
    with pytest.raises(ValidationError, match="Invalid option"):
        await blind_service.redeem_vote(db_session, poll_id=poll["id"], option_id="maybe", **alice)
    with pytest.raises(ValidationError, match="Prepared message does not match token"):
        await blind_service.redeem_vote(
            db_session, poll_id=poll["id"], option_id="yes",
            **dict(alice, prepared_message=blind_rsa.to_base64(b"\x00" * 40)),
        )
    with pytest.raises(NotFound):
        await blind_service.redeem_vote(db_session, poll_id=9999, option_id="yes", **alice)


@pytest.mark.asyncio
async def test_redeem_on_closed_poll(db_session, blind_service):
    """Poll state is checked before the option"""
    poll = await _open_poll(blind_service, db_session)
    alice = await _obtain_token(blind_service, db_session, "alice", poll["id"])
    await blind_service.update_poll(db_session, poll["id"], "admin", status=PollStatus.CLOSED)

    with pytest.raises(InvalidState):
        await blind_service.redeem_vote(db_session, poll_id=poll["id"], option_id="maybe", **alice)


# ============================================================================
# Poll lifecycle
# ============================================================================

@pytest.mark.asyncio
async def test_poll_lifecycle(db_session, blind_service):
    poll = await blind_service.create_poll(db_session, "  Question?  ", OPTIONS, "voters", "admin")
    assert poll["status"] == "DRAFT"
    assert poll["question"] == "Question?"
    assert "results" not in poll

    edited = await blind_service.update_poll(
        db_session, poll["id"], "admin",
        options=[{"id": "a", "label": "A"}, {"id": "b", "label": "B"}, {"id": "c", "label": "C"}],
    )
    assert [o["id"] for o in edited["options"]] == ["a", "b", "c"]

    with pytest.raises(InvalidState):
        await blind_service.update_poll(db_session, poll["id"], "admin", status=PollStatus.CLOSED)

    opened = await blind_service.update_poll(db_session, poll["id"], "admin", status=PollStatus.OPEN)
    assert opened["status"] == "OPEN"
    assert "results" not in opened

    with pytest.raises(InvalidState):
        await blind_service.update_poll(db_session, poll["id"], "admin", question="Changed?")
    with pytest.raises(InvalidState):
        await blind_service.delete_poll(db_session, poll["id"], "admin")

    closed = await blind_service.update_poll(db_session, poll["id"], "admin", status=PollStatus.CLOSED)
    assert closed["results"] == {"a": 0, "b": 0, "c": 0}
    with pytest.raises(InvalidState):
        await blind_service.update_poll(db_session, poll["id"], "admin", status=PollStatus.OPEN)


@pytest.mark.asyncio
async def test_delete_draft_poll(db_session, blind_service):
    poll = await blind_service.create_poll(db_session, "Remove me?", OPTIONS, "voters", "admin")
    await blind_service.delete_poll(db_session, poll["id"], "admin")

    with pytest.raises(NotFound):
        await blind_service.get_poll(db_session, poll["id"])


@pytest.mark.asyncio
async def test_option_validation(db_session, blind_service):
    with pytest.raises(ValidationError):
        await blind_service.create_poll(db_session, "Q?", [{"id": "a", "label": "A"}], "voters", "admin")
    with pytest.raises(ValidationError):
        await blind_service.create_poll(
            db_session, "Q?", [{"id": "a", "label": "A"}, {"id": "a", "label": "B"}], "voters", "admin"
        )
    with pytest.raises(ValidationError):
        await blind_service.create_poll(
            db_session, "Q?", [{"id": "a", "label": "A"}, {"id": "b", "label": " "}], "voters", "admin"
        )
    with pytest.raises(ValidationError):
        await blind_service.create_poll(db_session, " ", OPTIONS, "voters", "admin")


@pytest.mark.asyncio
async def test_list_polls_by_status(db_session, blind_service):
    await blind_service.create_poll(db_session, "Draft?", OPTIONS, "voters", "admin")
    opened = await _open_poll(blind_service, db_session)

    open_polls = await blind_service.list_polls(db_session, PollStatus.OPEN)
    assert [p["id"] for p in open_polls] == [opened["id"]]
    assert len(await blind_service.list_polls(db_session)) == 2


def test_public_key_description(blind_service):
    info = blind_service.get_public_key()
    assert info["suite"] == blind_rsa.SUITE_RANDOMIZED
    assert info["modulus_bits"] == 2048
    assert info["public_key"].startswith("-----BEGIN PUBLIC KEY-----")


# ============================================================================
# Concurrent redemption
# ============================================================================

@pytest.mark.asyncio
async def test_concurrent_redeem_loses_on_unique_constraint(db_session, session_factory, blind_service, monkeypatch):
    """Both requests pass the lookup; the second insert fails and nothing is counted"""
    poll = await _open_poll(blind_service, db_session)
    alice = await _obtain_token(blind_service, db_session, "alice", poll["id"])

    async with session_factory() as other:
        other.add(ConsumedToken(token_hash=blind_rsa.hash_token(alice["token"]), poll_id=poll["id"]))
        await other.commit()

    async def not_consumed(db, token_hash):
        return False

    monkeypatch.setattr(blind_service, "_token_consumed", not_consumed)
    with pytest.raises(Conflict, match="Already voted"):
        await blind_service.redeem_vote(db_session, poll_id=poll["id"], option_id="yes", **alice)

    closed = await blind_service.update_poll(db_session, poll["id"], "admin", status=PollStatus.CLOSED)
    assert closed["results"] == {"yes": 0, "no": 0}
    assert closed["total_votes"] == 0
