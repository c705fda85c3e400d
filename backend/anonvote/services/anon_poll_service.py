"""
AnonVote Anonymous Poll Service
Group-membership polls voted on with linkable ring proofs

Vote pipeline (order matters):
1. Structural parse of the proof payload
2. Poll exists and is OPEN
3. Proof scope equals the scope derived from this poll
4. Proof verifies (off the event loop, bounded by a timeout)
5. Proof root equals the persisted group root
6. Option index in range
7. Nullifier unused for this poll
8. Nullifier insert + tally increment in one transaction

In DEFERRED mode step 4 is skipped at cast time; the vote is stored
PENDING with its proof and only counted once verify_pending() accepts it.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from anonvote.config import settings
from anonvote.crypto.proof import Proof, poll_scope, verify_proof
from anonvote.errors import (
    Conflict, CryptoFailure, Forbidden, InvalidState, NotFound, ValidationError
)
from anonvote.models import (
    AnonPoll, AnonPollResult, AnonVoteNullifier, GroupCategory,
    NullifierStatus, PollStatus, VerificationMode,
)
from anonvote.services.audit import log_audit
from anonvote.services.group_service import GroupService, get_group_service
from anonvote.services.sync_service import SyncService, get_sync_service

logger = logging.getLogger(__name__)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AnonPollService:
    """Service for anonymous group polls"""

    def __init__(
        self,
        group_service: Optional[GroupService] = None,
        sync_service: Optional[SyncService] = None,
        verify_timeout: Optional[float] = None,
    ):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.group_service = group_service or get_group_service()
        self.sync_service = sync_service or get_sync_service()
        self.verify_timeout = verify_timeout or settings.PROOF_VERIFY_TIMEOUT_SECONDS

    # ========================================================================
    # Poll management
    # ========================================================================

    async def _get_poll(self, db: AsyncSession, poll_id: int) -> AnonPoll:
        result = await db.execute(select(AnonPoll).where(AnonPoll.id == poll_id))
        poll = result.scalar_one_or_none()
        if poll is None:
            raise NotFound("Poll not found")
        return poll

    async def describe_poll(self, db: AsyncSession, poll: AnonPoll) -> Dict[str, Any]:
        """Public view of a poll; counts are included only once CLOSED"""
        group = await self.group_service.get_group(db, poll.group_id)
        data = {
            "id": poll.id,
            "question": poll.question,
            "description": poll.description,
            "options": poll.options,
            "group_id": poll.group_id,
            "group_name": group.name,
            "merkle_root": group.merkle_root,
            "member_count": group.member_count,
            "category": poll.category.value,
            "status": poll.status.value,
            "verification_mode": poll.verification_mode.value,
            "closes_at": poll.closes_at.isoformat() if poll.closes_at else None,
            "created_at": poll.created_at.isoformat() if poll.created_at else None,
        }
        if poll.status == PollStatus.CLOSED:
            result = await db.execute(
                select(AnonPollResult).where(AnonPollResult.poll_id == poll.id)
            )
            counts = {row.option_index: row.count for row in result.scalars().all()}
            data["results"] = [counts.get(i, 0) for i in range(len(poll.options))]
            data["total_votes"] = sum(data["results"])
        return data

    async def create_poll(
        self,
        db: AsyncSession,
        question: str,
        options: List[str],
        created_by: str,
        group_id: Optional[str] = None,
        description: Optional[str] = None,
        category: Union[GroupCategory, str] = GroupCategory.ALL,
        verification_mode: Union[VerificationMode, str] = VerificationMode.IMMEDIATE,
        closes_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if not question or not question.strip():
            raise ValidationError("Question is required")
        if not isinstance(options, list) or len(options) < 2:
            raise ValidationError("At least two options are required")
        labels = [o.strip() if isinstance(o, str) else "" for o in options]
        if any(not label for label in labels):
            raise ValidationError("Option labels must be non-empty")
        if len(set(labels)) != len(labels):
            raise ValidationError("Option labels must be unique")
        try:
            category = GroupCategory(category)
            verification_mode = VerificationMode(verification_mode)
        except ValueError:
            raise ValidationError("Invalid category or verification mode")

        if group_id:
            group = await self.group_service.get_group(db, group_id)
        else:
            group = await self.group_service.ensure_default_group(db)

        poll = AnonPoll(
            question=question.strip(),
            description=description,
            options=labels,
            group_id=group.id,
            category=category,
            status=PollStatus.DRAFT,
            verification_mode=verification_mode,
            closes_at=closes_at,
            created_by=created_by,
        )
        db.add(poll)
        await db.flush()
        for index in range(len(labels)):
            db.add(AnonPollResult(poll_id=poll.id, option_index=index, count=0))
        log_audit(
            db, "anon_poll_created", "anon_poll", poll.id,
            {"group_id": group.id, "mode": verification_mode.value}, created_by,
        )
        await db.commit()
        await db.refresh(poll)

        self.logger.info(f"Anonymous poll {poll.id} created on group {group.name}")
        return await self.describe_poll(db, poll)

    async def list_polls(self, db: AsyncSession, status: Optional[PollStatus] = None) -> List[Dict[str, Any]]:
        query = select(AnonPoll).order_by(AnonPoll.id.desc())
        if status is not None:
            query = query.where(AnonPoll.status == status)
        result = await db.execute(query)
        return [await self.describe_poll(db, poll) for poll in result.scalars().all()]

    async def get_poll(self, db: AsyncSession, poll_id: int) -> Dict[str, Any]:
        return await self.describe_poll(db, await self._get_poll(db, poll_id))

    async def open_poll(self, db: AsyncSession, poll_id: int, actor: Optional[str] = None) -> Dict[str, Any]:
        """
        DRAFT -> OPEN. Syncs the group first so the root voters prove
        against is fixed at open time. When another open poll already froze
        the group, the existing root is used as is.
        """
        poll = await self._get_poll(db, poll_id)
        if poll.status != PollStatus.DRAFT:
            raise InvalidState("Only draft polls can be opened")
        group_id = poll.group_id

        sync_result = None
        if not await self.group_service.membership_frozen(db, group_id):
            sync_result = await self.sync_service.sync_group_members(
                db, group_id, actor=actor, check_open_polls=False
            )
        else:
            self.logger.info(f"Group {group_id[:12]}... frozen by another open poll; skipping sync")

        poll = await self._get_poll(db, poll_id)
        if poll.status != PollStatus.DRAFT:
            raise InvalidState("Only draft polls can be opened")
        poll.status = PollStatus.OPEN
        log_audit(db, "anon_poll_opened", "anon_poll", poll.id, None, actor)
        await db.commit()

        data = await self.describe_poll(db, poll)
        data["sync"] = sync_result.to_dict() if sync_result else None
        return data

    async def close_poll(self, db: AsyncSession, poll_id: int, actor: Optional[str] = None) -> Dict[str, Any]:
        poll = await self._get_poll(db, poll_id)
        if poll.status != PollStatus.OPEN:
            raise InvalidState("Only open polls can be closed")
        poll.status = PollStatus.CLOSED
        log_audit(db, "anon_poll_closed", "anon_poll", poll.id, None, actor)
        await db.commit()
        return await self.describe_poll(db, poll)

    async def update_status(
        self,
        db: AsyncSession,
        poll_id: int,
        status: Union[PollStatus, str],
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            status = PollStatus(status)
        except ValueError:
            raise ValidationError("Invalid status")
        poll = await self._get_poll(db, poll_id)
        if poll.status == PollStatus.DRAFT and status == PollStatus.OPEN:
            return await self.open_poll(db, poll_id, actor)
        if poll.status == PollStatus.OPEN and status == PollStatus.CLOSED:
            return await self.close_poll(db, poll_id, actor)
        raise InvalidState(f"Cannot move poll from {poll.status.value} to {status.value}")

    # ========================================================================
    # Voting
    # ========================================================================

    async def _verify_with_timeout(self, proof: Union[Proof, Dict[str, Any]]) -> bool:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(verify_proof, proof), timeout=self.verify_timeout
            )
        except asyncio.TimeoutError:
            self.logger.warning("Proof verification timed out")
            return False

    async def cast_vote(self, db: AsyncSession, poll_id: Any, proof_data: Any) -> Dict[str, Any]:
        """
        Record one anonymous vote

        Returns:
            {"success": True, "status": "VERIFIED" | "PENDING"}
        """
        if isinstance(poll_id, bool) or not isinstance(poll_id, int):
            raise ValidationError("Poll id is required")
        try:
            proof = proof_data if isinstance(proof_data, Proof) else Proof.from_dict(proof_data)
        except ValueError:
            raise ValidationError("Malformed proof")

        poll = await self._get_poll(db, poll_id)
        if poll.status != PollStatus.OPEN:
            raise InvalidState("Poll is not open")
        closes_at = _utc(poll.closes_at)
        if closes_at is not None and datetime.now(timezone.utc) >= closes_at:
            raise InvalidState("Poll is not open")

        if int(proof.scope) != poll_scope(poll_id):
            raise CryptoFailure("Invalid proof")

        deferred = poll.verification_mode == VerificationMode.DEFERRED
        if not deferred and not await self._verify_with_timeout(proof):
            raise CryptoFailure("Invalid proof")

        group = await self.group_service.get_group(db, poll.group_id)
        if proof.merkle_tree_root != group.merkle_root:
            raise CryptoFailure("Invalid proof")

        option_index = int(proof.message)
        if option_index >= len(poll.options):
            raise ValidationError("Invalid option")

        if await self._nullifier_used(db, poll_id, proof.nullifier):
            raise Forbidden("Already voted")

        status = NullifierStatus.PENDING if deferred else NullifierStatus.VERIFIED
        try:
            db.add(AnonVoteNullifier(
                poll_id=poll_id,
                nullifier=proof.nullifier,
                option_index=option_index,
                status=status,
                proof_data=proof.to_dict() if deferred else None,
                verified_at=None if deferred else datetime.now(timezone.utc),
            ))
            await db.flush()
            if not deferred:
                await self._increment_count(db, poll_id, option_index)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise Conflict("Already voted")

        self.logger.info(f"Anonymous vote recorded on poll {poll_id} ({status.value})")
        return {"success": True, "status": status.value}

    async def _nullifier_used(self, db: AsyncSession, poll_id: int, nullifier: str) -> bool:
        result = await db.execute(
            select(AnonVoteNullifier.id).where(
                AnonVoteNullifier.poll_id == poll_id,
                AnonVoteNullifier.nullifier == nullifier,
            )
        )
        return result.scalar_one_or_none() is not None

    async def _increment_count(self, db: AsyncSession, poll_id: int, option_index: int) -> None:
        result = await db.execute(
            update(AnonPollResult)
            .where(AnonPollResult.poll_id == poll_id, AnonPollResult.option_index == option_index)
            .values(count=AnonPollResult.count + 1)
        )
        if result.rowcount == 0:
            db.add(AnonPollResult(poll_id=poll_id, option_index=option_index, count=1))
            await db.flush()

    async def vote_status(self, db: AsyncSession, poll_id: int, nullifier: str) -> Dict[str, Any]:
        """Lets a voter check their own nullifier without revealing anything new"""
        await self._get_poll(db, poll_id)
        result = await db.execute(
            select(AnonVoteNullifier.status).where(
                AnonVoteNullifier.poll_id == poll_id,
                AnonVoteNullifier.nullifier == nullifier,
            )
        )
        status = result.scalar_one_or_none()
        return {"voted": status is not None, "status": status.value if status else None}

    async def verify_pending(self, db: AsyncSession, poll_id: Optional[int] = None) -> Dict[str, int]:
        """
        Verify PENDING votes in bulk

        Each vote is settled in its own transaction: VERIFIED plus tally
        increment, or REJECTED (invalid or timed out) with no tally change.
        """
        query = select(AnonVoteNullifier.id).where(AnonVoteNullifier.status == NullifierStatus.PENDING)
        if poll_id is not None:
            query = query.where(AnonVoteNullifier.poll_id == poll_id)
        pending_ids = list((await db.execute(query.order_by(AnonVoteNullifier.id))).scalars().all())

        verified = rejected = 0
        for vote_id in pending_ids:
            vote = (await db.execute(
                select(AnonVoteNullifier).where(AnonVoteNullifier.id == vote_id)
            )).scalar_one()
            if vote.status != NullifierStatus.PENDING:
                continue

            proof = vote.proof_data or {}
            valid = (
                str(proof.get("nullifier")) == vote.nullifier
                and str(proof.get("message")) == str(vote.option_index)
                and await self._verify_with_timeout(proof)
            )

            vote.proof_data = None
            vote.verified_at = datetime.now(timezone.utc)
            if valid:
                vote.status = NullifierStatus.VERIFIED
                await self._increment_count(db, vote.poll_id, vote.option_index)
                verified += 1
            else:
                vote.status = NullifierStatus.REJECTED
                rejected += 1
            await db.commit()

        self.logger.info(f"Pending verification finished: verified={verified}, rejected={rejected}")
        return {"processed": verified + rejected, "verified": verified, "rejected": rejected}


# Global anonymous poll service instance
_anon_poll_service: Optional[AnonPollService] = None


def get_anon_poll_service() -> AnonPollService:
    """Get global anonymous poll service instance"""
    global _anon_poll_service
    if _anon_poll_service is None:
        _anon_poll_service = AnonPollService()
    return _anon_poll_service
