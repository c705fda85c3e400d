"""
AnonVote Group Membership Sync
Brings group member logs in line with the external role source

Sync only ever appends. Members removed by an admin stay removed, and a
member who lost the role keeps their slot until removed explicitly.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from anonvote.eligibility import EligibilitySource, get_eligibility_source
from anonvote.errors import Conflict, InvalidState
from anonvote.models import SemaphoreGroup, SemaphoreGroupMember, UserIdentity
from anonvote.services.audit import log_audit
from anonvote.services.group_service import GroupService, get_group_service

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    group_id: str
    group_name: str
    added_count: int
    already_member_count: int
    no_identity_count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncService:
    """Service for syncing group membership from the eligibility source"""

    def __init__(
        self,
        group_service: Optional[GroupService] = None,
        eligibility: Optional[EligibilitySource] = None,
    ):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.group_service = group_service or get_group_service()
        self._eligibility = eligibility

    @property
    def eligibility(self) -> EligibilitySource:
        return self._eligibility or get_eligibility_source()

    async def sync_group_members(
        self,
        db: AsyncSession,
        group_id: str,
        actor: Optional[str] = None,
        check_open_polls: bool = True,
    ) -> SyncResult:
        """
        Add every eligible member with a registered identity who is not yet
        in the group, and persist the new root in the same transaction.
        """
        group = await self.group_service.get_group(db, group_id)
        if check_open_polls and await self.group_service.membership_frozen(db, group_id):
            raise InvalidState("Group has an open poll")

        # Eligibility snapshot; no lock is held across this call
        eligible = list(dict.fromkeys(await self.eligibility.list_members_with_role(group.role_id)))

        identities: List[UserIdentity] = []
        if eligible:
            result = await db.execute(
                select(UserIdentity)
                .where(UserIdentity.user_id.in_(eligible))
                .order_by(UserIdentity.id)
            )
            identities = list(result.scalars().all())

        members = await self.group_service.load_members(db, group_id)
        known = {m.commitment for m in members}
        to_add = [int(i.commitment) for i in identities if i.commitment not in known]
        already = len(identities) - len(to_add)

        if to_add:
            try:
                tree = self.group_service.build_tree(members)
                await self.group_service.append_members(db, group, to_add, tree=tree)
                log_audit(
                    db, "group_synced", "group", group_id,
                    {"added": len(to_add), "member_count": group.member_count}, actor,
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise Conflict("Group was modified concurrently")

        sync_result = SyncResult(
            group_id=group.id,
            group_name=group.name,
            added_count=len(to_add),
            already_member_count=already,
            no_identity_count=len(eligible) - len(identities),
        )
        self.logger.info(
            f"Group {group.name} synced: added={sync_result.added_count}, "
            f"already={sync_result.already_member_count}, "
            f"no_identity={sync_result.no_identity_count}"
        )
        return sync_result

    async def sync_user_to_groups(self, db: AsyncSession, user_id: str) -> Dict[str, Any]:
        """
        Add one member to every group whose role they hold

        Idempotent. Groups with an open poll are reported as deferred when
        the sync policy blocks changes during voting.
        """
        identity = (await db.execute(
            select(UserIdentity).where(UserIdentity.user_id == user_id)
        )).scalar_one_or_none()
        if identity is None:
            return {"has_identity": False, "added": [], "already_member": [], "deferred": []}

        commitment = identity.commitment
        roles = set(await self.eligibility.get_user_roles(user_id))
        group_ids: List[str] = []
        if roles:
            result = await db.execute(
                select(SemaphoreGroup.id)
                .where(SemaphoreGroup.role_id.in_(roles))
                .order_by(SemaphoreGroup.name)
            )
            group_ids = list(result.scalars().all())

        added, already, deferred = [], [], []
        for group_id in group_ids:
            existing = await db.execute(
                select(SemaphoreGroupMember.id).where(
                    SemaphoreGroupMember.group_id == group_id,
                    SemaphoreGroupMember.commitment == commitment,
                )
            )
            if existing.scalar_one_or_none() is not None:
                already.append(group_id)
                continue
            if await self.group_service.membership_frozen(db, group_id):
                deferred.append(group_id)
                continue
            try:
                group = await self.group_service.get_group(db, group_id)
                await self.group_service.append_members(db, group, [int(commitment)])
                await db.commit()
                added.append(group_id)
            except IntegrityError:
                # Another request added the slot first
                await db.rollback()
                already.append(group_id)

        self.logger.info(
            f"User sync: added={len(added)}, already={len(already)}, deferred={len(deferred)}"
        )
        return {"has_identity": True, "added": added, "already_member": already, "deferred": deferred}


# Global sync service instance
_sync_service: Optional[SyncService] = None


def get_sync_service() -> SyncService:
    """Get global sync service instance"""
    global _sync_service
    if _sync_service is None:
        _sync_service = SyncService()
    return _sync_service
