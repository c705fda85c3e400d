"""
AnonVote Group Service
Persistence of Semaphore-style groups and their ordered member logs
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from anonvote.config import settings
from anonvote.crypto import curve
from anonvote.crypto.group import Group, generate_group_id
from anonvote.crypto.identity import parse_commitment
from anonvote.eligibility import EligibilitySource, get_eligibility_source
from anonvote.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationError
from anonvote.models import (
    AnonPoll, GroupCategory, PollStatus, SemaphoreGroup, SemaphoreGroupMember, UserIdentity
)
from anonvote.services.audit import log_audit

logger = logging.getLogger(__name__)


def root_to_str(root: int) -> str:
    return str(root)


class GroupService:
    """Service for group membership storage"""

    def __init__(self, eligibility: Optional[EligibilitySource] = None):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._eligibility = eligibility

    @property
    def eligibility(self) -> EligibilitySource:
        return self._eligibility or get_eligibility_source()

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get_group(self, db: AsyncSession, group_id: str) -> SemaphoreGroup:
        result = await db.execute(select(SemaphoreGroup).where(SemaphoreGroup.id == group_id))
        group = result.scalar_one_or_none()
        if group is None:
            raise NotFound("Group not found")
        return group

    async def load_members(self, db: AsyncSession, group_id: str) -> List[SemaphoreGroupMember]:
        result = await db.execute(
            select(SemaphoreGroupMember)
            .where(SemaphoreGroupMember.group_id == group_id)
            .order_by(SemaphoreGroupMember.leaf_index)
        )
        return list(result.scalars().all())

    @staticmethod
    def build_tree(members: Iterable[SemaphoreGroupMember]) -> Group:
        """Rebuild the in-memory tree from stored slots (inactive slots are 0)"""
        return Group([int(m.commitment) if m.active else 0 for m in members])

    async def load_tree(self, db: AsyncSession, group_id: str) -> Group:
        return self.build_tree(await self.load_members(db, group_id))

    async def has_open_poll(self, db: AsyncSession, group_id: str) -> bool:
        result = await db.execute(
            select(func.count(AnonPoll.id)).where(
                AnonPoll.group_id == group_id,
                AnonPoll.status == PollStatus.OPEN,
            )
        )
        return (result.scalar() or 0) > 0

    async def membership_frozen(self, db: AsyncSession, group_id: str) -> bool:
        """True when the sync policy forbids changing this group's root now"""
        if settings.SYNC_WHILE_OPEN == "allow":
            return False
        return await self.has_open_poll(db, group_id)

    async def describe_group(
        self, db: AsyncSession, group: SemaphoreGroup, include_members: bool = False
    ) -> Dict[str, Any]:
        data = {
            "id": group.id,
            "name": group.name,
            "category": group.category.value,
            "role_id": group.role_id,
            "role_name": group.role_name,
            "merkle_root": group.merkle_root,
            "member_count": group.member_count,
            "tree_size": group.tree_size,
        }
        if include_members:
            members = await self.load_members(db, group.id)
            # Clients rebuild the tree from this exact ordered leaf list
            data["members"] = [m.commitment if m.active else "0" for m in members]
        return data

    async def list_groups(self, db: AsyncSession) -> List[Dict[str, Any]]:
        result = await db.execute(select(SemaphoreGroup).order_by(SemaphoreGroup.name))
        return [await self.describe_group(db, g) for g in result.scalars().all()]

    # ========================================================================
    # Creation
    # ========================================================================

    async def create_group(
        self,
        db: AsyncSession,
        name: str,
        role_id: str,
        category: Union[GroupCategory, str] = GroupCategory.ALL,
        role_name: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> SemaphoreGroup:
        if not name or not role_id:
            raise ValidationError("Group name and role_id are required")
        try:
            category = GroupCategory(category)
        except ValueError:
            raise ValidationError("Invalid category")

        group_id = generate_group_id(role_id, category)
        existing = await db.execute(select(SemaphoreGroup.id).where(SemaphoreGroup.id == group_id))
        if existing.scalar_one_or_none() is not None:
            raise Conflict("Group already exists")

        group = SemaphoreGroup(
            id=group_id,
            name=name,
            category=category,
            role_id=role_id,
            role_name=role_name,
            merkle_root="0",
            member_count=0,
            tree_size=0,
        )
        db.add(group)
        log_audit(db, "group_created", "group", group_id, {"category": category.value}, actor)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise Conflict("Group already exists")

        self.logger.info(f"Group '{name}' created ({group_id[:12]}...)")
        return group

    async def ensure_default_group(self, db: AsyncSession) -> SemaphoreGroup:
        """Get or create the group used by polls that name none"""
        group_id = generate_group_id(settings.DEFAULT_GROUP_ROLE_ID, GroupCategory.ALL)
        result = await db.execute(select(SemaphoreGroup).where(SemaphoreGroup.id == group_id))
        group = result.scalar_one_or_none()
        if group is not None:
            return group
        try:
            return await self.create_group(
                db,
                name=settings.DEFAULT_GROUP_NAME,
                role_id=settings.DEFAULT_GROUP_ROLE_ID,
                category=GroupCategory.ALL,
                role_name=settings.DEFAULT_GROUP_ROLE_NAME,
            )
        except Conflict:
            # created concurrently
            return await self.get_group(db, group_id)

    # ========================================================================
    # Membership changes
    # ========================================================================

    async def append_members(
        self,
        db: AsyncSession,
        group: SemaphoreGroup,
        commitments: List[int],
        tree: Optional[Group] = None,
    ) -> List[int]:
        """
        Stage new leaf slots and the updated root in the caller's transaction

        A concurrent writer taking the same slot surfaces as IntegrityError
        on flush or commit.
        """
        if tree is None:
            tree = await self.load_tree(db, group.id)
        indices = []
        for commitment in commitments:
            index = tree.add_member(commitment)
            db.add(SemaphoreGroupMember(
                group_id=group.id,
                commitment=str(commitment),
                leaf_index=index,
                active=True,
            ))
            indices.append(index)

        group.merkle_root = root_to_str(tree.root)
        group.member_count = tree.member_count
        group.tree_size = tree.size
        await db.flush()
        return indices

    async def join_group(
        self,
        db: AsyncSession,
        group_id: str,
        commitment: str,
        user_id: str,
    ) -> Dict[str, Any]:
        """Explicitly add a member's commitment; returns its index and the new root"""
        try:
            value = parse_commitment(commitment)
        except ValueError:
            raise ValidationError("Invalid commitment")

        group = await self.get_group(db, group_id)
        if not await self.eligibility.has_role(user_id, group.role_id):
            raise Forbidden("Not eligible for this group")

        identity = (await db.execute(
            select(UserIdentity).where(UserIdentity.user_id == user_id)
        )).scalar_one_or_none()
        if identity is not None and identity.commitment != str(value):
            raise Forbidden("Commitment does not match registered identity")

        existing = await db.execute(
            select(SemaphoreGroupMember.id).where(
                SemaphoreGroupMember.group_id == group_id,
                SemaphoreGroupMember.commitment == str(value),
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise Conflict("Already a member")

        if await self.membership_frozen(db, group_id):
            raise InvalidState("Group has an open poll")

        try:
            if identity is None:
                db.add(UserIdentity(user_id=user_id, commitment=str(value)))
            [index] = await self.append_members(db, group, [value])
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise Conflict("Already a member")

        self.logger.info(f"Member joined group {group_id[:12]}... at index {index}")
        return {"group_id": group_id, "index": index, "merkle_root": group.merkle_root}

    async def remove_member(
        self,
        db: AsyncSession,
        group_id: str,
        commitment: str,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Tombstone a member's slot; the index is never reused"""
        group = await self.get_group(db, group_id)
        if await self.membership_frozen(db, group_id):
            raise InvalidState("Group has an open poll")

        members = await self.load_members(db, group_id)
        tree = self.build_tree(members)
        try:
            index = tree.remove_member(int(commitment) if curve.is_decimal(str(commitment)) else -1)
        except ValueError:
            raise NotFound("Member not found")

        members[index].active = False
        group.merkle_root = root_to_str(tree.root)
        group.member_count = tree.member_count
        log_audit(db, "group_member_removed", "group", group_id, {"index": index}, actor)
        await db.commit()

        self.logger.info(f"Member at index {index} removed from group {group_id[:12]}...")
        return {"group_id": group_id, "index": index, "merkle_root": group.merkle_root}


# Global group service instance
_group_service: Optional[GroupService] = None


def get_group_service() -> GroupService:
    """Get global group service instance"""
    global _group_service
    if _group_service is None:
        _group_service = GroupService()
    return _group_service
