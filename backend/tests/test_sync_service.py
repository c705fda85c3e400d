"""
Group membership, sync and identity registration tests
"""

import pytest
from sqlalchemy import select

from anonvote.config import settings
from anonvote.crypto.group import compute_root, generate_group_id
from anonvote.crypto.identity import generate_identity
from anonvote.errors import (
    CapabilityUnavailable, Conflict, Forbidden, InvalidState, NotFound, ValidationError
)
from anonvote.models import AuditLog, GroupCategory

ALICE = generate_identity("alice-secret")
BOB = generate_identity("bob-secret")
CAROL = generate_identity("carol-secret")


async def _voters_group(group_service, db):
    return await group_service.create_group(db, "Voters", "voters", GroupCategory.ALL, actor="admin")


# ============================================================================
# Group sync
# ============================================================================

@pytest.mark.asyncio
async def test_sync_adds_members_with_identity(db_session, group_service, sync_service, identity_service):
    group = await _voters_group(group_service, db_session)
    await identity_service.register_identity(db_session, "alice", str(ALICE.commitment))
    await identity_service.register_identity(db_session, "bob", str(BOB.commitment))

    result = await sync_service.sync_group_members(db_session, group.id, actor="admin")
    assert result.to_dict() == {
        "group_id": group.id,
        "group_name": "Voters",
        "added_count": 2,
        "already_member_count": 0,
        "no_identity_count": 1,
    }

    group = await group_service.get_group(db_session, group.id)
    assert group.merkle_root == str(compute_root([ALICE.commitment, BOB.commitment]))
    assert group.member_count == 2
    assert group.tree_size == 2

    audit = (await db_session.execute(select(AuditLog.event_type))).scalars().all()
    assert "group_synced" in audit


@pytest.mark.asyncio
async def test_sync_is_idempotent(db_session, group_service, sync_service, identity_service):
    group = await _voters_group(group_service, db_session)
    await identity_service.register_identity(db_session, "alice", str(ALICE.commitment))
    await sync_service.sync_group_members(db_session, group.id)
    root = (await group_service.get_group(db_session, group.id)).merkle_root

    result = await sync_service.sync_group_members(db_session, group.id)
    assert result.added_count == 0
    assert result.already_member_count == 1
    assert (await group_service.get_group(db_session, group.id)).merkle_root == root


@pytest.mark.asyncio
async def test_sync_empty_role(db_session, group_service, sync_service):
    group = await group_service.create_group(db_session, "Nobody", "unused-role")
    result = await sync_service.sync_group_members(db_session, group.id)
    assert (result.added_count, result.already_member_count, result.no_identity_count) == (0, 0, 0)
    assert (await group_service.get_group(db_session, group.id)).merkle_root == "0"


@pytest.mark.asyncio
async def test_sync_blocked_while_poll_open(
    db_session, group_service, sync_service, identity_service, anon_service, monkeypatch
):
    await identity_service.register_identity(db_session, "alice", str(ALICE.commitment))
    poll = await anon_service.create_poll(db_session, "Q?", ["A", "B"], "admin")
    await anon_service.open_poll(db_session, poll["id"])

    await identity_service.register_identity(db_session, "bob", str(BOB.commitment))
    with pytest.raises(InvalidState):
        await sync_service.sync_group_members(db_session, poll["group_id"])

    monkeypatch.setattr(settings, "SYNC_WHILE_OPEN", "allow")
    result = await sync_service.sync_group_members(db_session, poll["group_id"])
    assert result.added_count == 1


@pytest.mark.asyncio
async def test_sync_never_restores_removed_member(db_session, group_service, sync_service, identity_service):
    group = await _voters_group(group_service, db_session)
    await identity_service.register_identity(db_session, "alice", str(ALICE.commitment))
    await identity_service.register_identity(db_session, "bob", str(BOB.commitment))
    await sync_service.sync_group_members(db_session, group.id)

    await group_service.remove_member(db_session, group.id, str(ALICE.commitment), actor="admin")
    result = await sync_service.sync_group_members(db_session, group.id)

    assert result.added_count == 0
    assert result.already_member_count == 2
    group = await group_service.get_group(db_session, group.id)
    assert group.member_count == 1
    assert group.merkle_root == str(compute_root([0, BOB.commitment]))


# ============================================================================
# Per-user sync
# ============================================================================

@pytest.mark.asyncio
async def test_sync_user_to_groups(db_session, group_service, sync_service, identity_service):
    voters = await _voters_group(group_service, db_session)
    treasury = await group_service.create_group(db_session, "Treasury", "treasury", GroupCategory.TREASURY)
    await group_service.create_group(db_session, "Admins", "admins")

    assert (await sync_service.sync_user_to_groups(db_session, "alice"))["has_identity"] is False

    await identity_service.register_identity(db_session, "alice", str(ALICE.commitment))
    result = await sync_service.sync_user_to_groups(db_session, "alice")
    assert result["has_identity"] is True
    assert sorted(result["added"]) == sorted([voters.id, treasury.id])
    assert result["deferred"] == []

    again = await sync_service.sync_user_to_groups(db_session, "alice")
    assert again["added"] == []
    assert sorted(again["already_member"]) == sorted([voters.id, treasury.id])


@pytest.mark.asyncio
async def test_sync_user_deferred_while_poll_open(
    db_session, group_service, sync_service, identity_service, anon_service
):
    await identity_service.register_identity(db_session, "alice", str(ALICE.commitment))
    poll = await anon_service.create_poll(db_session, "Q?", ["A", "B"], "admin")
    await anon_service.open_poll(db_session, poll["id"])

    await identity_service.register_identity(db_session, "carol", str(CAROL.commitment))
    result = await sync_service.sync_user_to_groups(db_session, "carol")
    assert result["deferred"] == [poll["group_id"]]
    assert result["added"] == []


# ============================================================================
# Explicit join and removal
# ============================================================================

@pytest.mark.asyncio
async def test_join_group(db_session, group_service):
    treasury = await group_service.create_group(db_session, "Treasury", "treasury", GroupCategory.TREASURY)

    joined = await group_service.join_group(db_session, treasury.id, str(ALICE.commitment), "alice")
    assert joined == {
        "group_id": treasury.id,
        "index": 0,
        "merkle_root": str(ALICE.commitment),
    }

    with pytest.raises(Conflict):
        await group_service.join_group(db_session, treasury.id, str(ALICE.commitment), "alice")
    with pytest.raises(Forbidden, match="Not eligible"):
        await group_service.join_group(db_session, treasury.id, str(BOB.commitment), "bob")
    with pytest.raises(ValidationError):
        await group_service.join_group(db_session, treasury.id, "not-a-number", "alice")
    with pytest.raises(NotFound):
        await group_service.join_group(db_session, "missing", str(ALICE.commitment), "alice")


@pytest.mark.asyncio
async def test_join_requires_registered_commitment(db_session, group_service, identity_service):
    group = await _voters_group(group_service, db_session)
    await identity_service.register_identity(db_session, "bob", str(BOB.commitment))

    with pytest.raises(Forbidden, match="does not match"):
        await group_service.join_group(db_session, group.id, str(CAROL.commitment), "bob")

    joined = await group_service.join_group(db_session, group.id, str(BOB.commitment), "bob")
    assert joined["index"] == 0


@pytest.mark.asyncio
async def test_join_blocked_while_poll_open(db_session, group_service, identity_service, anon_service):
    await identity_service.register_identity(db_session, "alice", str(ALICE.commitment))
    poll = await anon_service.create_poll(db_session, "Q?", ["A", "B"], "admin")
    await anon_service.open_poll(db_session, poll["id"])

    with pytest.raises(InvalidState):
        await group_service.join_group(db_session, poll["group_id"], str(BOB.commitment), "bob")
    with pytest.raises(InvalidState):
        await group_service.remove_member(db_session, poll["group_id"], str(ALICE.commitment))


@pytest.mark.asyncio
async def test_remove_member_tombstones(db_session, group_service, sync_service, identity_service):
    group = await _voters_group(group_service, db_session)
    for user_id, identity in (("alice", ALICE), ("bob", BOB), ("carol", CAROL)):
        await identity_service.register_identity(db_session, user_id, str(identity.commitment))
    await sync_service.sync_group_members(db_session, group.id)

    removed = await group_service.remove_member(db_session, group.id, str(BOB.commitment), actor="admin")
    assert removed["index"] == 1
    assert removed["merkle_root"] == str(compute_root([ALICE.commitment, 0, CAROL.commitment]))

    group = await group_service.get_group(db_session, group.id)
    data = await group_service.describe_group(db_session, group, include_members=True)
    assert data["members"] == [str(ALICE.commitment), "0", str(CAROL.commitment)]
    assert data["member_count"] == 2
    assert data["tree_size"] == 3

    with pytest.raises(NotFound, match="Member not found"):
        await group_service.remove_member(db_session, group.id, str(BOB.commitment))
    with pytest.raises(NotFound):
        await group_service.remove_member(db_session, group.id, "garbage")


@pytest.mark.asyncio
async def test_create_group_conflict(db_session, group_service):
    group = await _voters_group(group_service, db_session)
    assert group.id == generate_group_id("voters", GroupCategory.ALL)

    with pytest.raises(Conflict):
        await _voters_group(group_service, db_session)
    with pytest.raises(ValidationError):
        await group_service.create_group(db_session, "X", "voters", "NOT_A_CATEGORY")

    default = await group_service.ensure_default_group(db_session)
    assert default.id == group.id


# ============================================================================
# Identities
# ============================================================================

@pytest.mark.asyncio
async def test_register_identity(db_session, identity_service):
    first = await identity_service.register_identity(db_session, "alice", str(ALICE.commitment))
    assert first == {"success": True, "commitment": str(ALICE.commitment), "already_exists": False}

    # The first commitment sticks
    second = await identity_service.register_identity(db_session, "alice", str(BOB.commitment))
    assert second["already_exists"] is True
    assert second["commitment"] == str(ALICE.commitment)

    assert await identity_service.get_identity(db_session, "alice") == {
        "has_identity": True,
        "commitment": str(ALICE.commitment),
    }
    assert (await identity_service.get_identity(db_session, "bob"))["has_identity"] is False


@pytest.mark.asyncio
async def test_register_identity_rejects_bad_input(db_session, identity_service):
    with pytest.raises(ValidationError):
        await identity_service.register_identity(db_session, "alice", "12abc")
    with pytest.raises(ValidationError):
        await identity_service.register_identity(db_session, "", str(ALICE.commitment))

    await identity_service.register_identity(db_session, "alice", str(ALICE.commitment))
    with pytest.raises(Conflict):
        await identity_service.register_identity(db_session, "bob", str(ALICE.commitment))


@pytest.mark.asyncio
async def test_batch_identities(db_session, identity_service):
    await identity_service.register_identity(db_session, "alice", str(ALICE.commitment))

    report = await identity_service.batch_create_identities(db_session, dry_run=True)
    assert report == {
        "dry_run": True,
        "total_eligible": 3,
        "already_have_identity": 1,
        "would_create": 2,
        "sample_ids": ["bob", "carol"],
    }

    stats = await identity_service.identity_stats(db_session)
    assert stats["with_identity"] == 1
    assert stats["without_identity"] == 2
    assert stats["percent_complete"] == 33

    with pytest.raises(CapabilityUnavailable):
        await identity_service.batch_create_identities(db_session, dry_run=False)
